"""
Intake and validation of multipart chat requests.

Validation runs before any extraction or upstream work, in this order:
  (a) each attachment is within MAX_FILE_SIZE           -> 413, names the file
  (b) each attachment's media type is supported         -> 400
  (c) the attachments together are within MAX_TOTAL_FILES_SIZE -> 413
"""

import json
import logging
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from auraiq import config
from auraiq.errors import PayloadTooLargeError, ValidationError
from auraiq.models.chat import Attachment, HistoryMessage, IncomingRequest, TaskType
from auraiq.services.extractor import normalize_media_type

logger = logging.getLogger(__name__)

TEXT_MEDIA_PREFIXES = (
    "text/",
    "application/json",
    "application/javascript",
    "application/xml",
    "application/x-python-script",
    "application/typescript",
)

OCTET_STREAM = "application/octet-stream"


def is_text_based(media_type: str) -> bool:
    """text/*, JSON, JavaScript, XML and friends, plus the octet-stream fallback."""
    media_type = normalize_media_type(media_type)
    return media_type == OCTET_STREAM or media_type.startswith(TEXT_MEDIA_PREFIXES)


def is_supported_media_type(media_type: str) -> bool:
    media_type = normalize_media_type(media_type)
    return (
        media_type in config.ALLOWED_FILE_TYPES
        or media_type.startswith("image/")
        or is_text_based(media_type)
    )


def _megabytes(size: int) -> int:
    return size // (1024 * 1024)


def check_attachment(name: str, media_type: str, size: int) -> None:
    """
    Apply the per-file rules (size first, then type).

    Raises:
        PayloadTooLargeError: size exceeds MAX_FILE_SIZE
        ValidationError: media type is not supported
    """
    if size > config.MAX_FILE_SIZE:
        raise PayloadTooLargeError(
            f'File "{name}" exceeds maximum size of {_megabytes(config.MAX_FILE_SIZE)}MB'
        )
    if not is_supported_media_type(media_type):
        raise ValidationError(
            f'File type "{media_type}" is not supported',
            error_code="unsupported_file_type",
        )


def check_total_size(total_size: int) -> None:
    if total_size > config.MAX_TOTAL_FILES_SIZE:
        raise PayloadTooLargeError(
            f"Total file size exceeds maximum of {_megabytes(config.MAX_TOTAL_FILES_SIZE)}MB",
            error_code="total_size_exceeded",
        )


async def read_attachments(uploads) -> tuple[Attachment, ...]:
    """
    Read uploaded parts into Attachments, validating as they are read.

    The declared size (when the server knows it) is checked before the body is
    read; the actual size is checked again afterwards.
    """
    attachments = []
    total_size = 0

    for index, upload in enumerate(uploads or []):
        name = upload.filename or f"file-{index + 1}"
        media_type = normalize_media_type(upload.content_type) or OCTET_STREAM

        declared_size = getattr(upload, "size", None)
        if declared_size is not None:
            check_attachment(name, media_type, declared_size)

        content = await upload.read()
        check_attachment(name, media_type, len(content))

        total_size += len(content)
        attachments.append(Attachment(name=name, media_type=media_type, content=content))

    check_total_size(total_size)
    return tuple(attachments)


def parse_history(raw: Optional[str]) -> tuple[HistoryMessage, ...]:
    """Parse the JSON-encoded history field; missing or empty means no history."""
    if not raw or not raw.strip():
        return ()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("history must be a JSON array", error_code="invalid_history")
    if not isinstance(data, list):
        raise ValidationError("history must be a JSON array", error_code="invalid_history")

    try:
        return tuple(HistoryMessage(**entry) for entry in data)
    except (TypeError, PydanticValidationError) as e:
        logger.info(f"Rejected history payload: {e}")
        raise ValidationError(
            "history entries must have id, text, and sender ('user' or 'ai')",
            error_code="invalid_history",
        )


def parse_context_file_urls(raw: Optional[str]) -> tuple[str, ...]:
    if not raw or not raw.strip():
        return ()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("contextFileUrls must be a JSON array", error_code="invalid_context_urls")

    if not isinstance(data, list) or not all(isinstance(url, str) for url in data):
        raise ValidationError(
            "contextFileUrls must be a JSON array of strings",
            error_code="invalid_context_urls",
        )

    for url in data:
        if not url.startswith(("http://", "https://")):
            raise ValidationError(
                f"Context file URL is not an http(s) address: {url}",
                error_code="invalid_context_urls",
            )
    return tuple(data)


def parse_task_type(raw: Optional[str]) -> TaskType:
    if not raw or not raw.strip():
        return TaskType.AUTO
    try:
        return TaskType(raw.strip().lower())
    except ValueError:
        allowed = ", ".join(t.value for t in TaskType)
        raise ValidationError(
            f"taskType must be one of: {allowed}",
            error_code="invalid_task_type",
        )


async def build_incoming_request(
    input_text: Optional[str],
    task_type: Optional[str] = None,
    context: Optional[str] = None,
    history: Optional[str] = None,
    uploads=None,
    context_file_urls: Optional[str] = None,
) -> IncomingRequest:
    """
    Validate the raw multipart fields and return an immutable IncomingRequest.

    A missing input is the same as an empty one; whether the request has
    anything to send is decided after extraction.

    Raises:
        ValidationError / PayloadTooLargeError on the first rule violated.
    """
    parsed_task_type = parse_task_type(task_type)
    parsed_history = parse_history(history)
    parsed_urls = parse_context_file_urls(context_file_urls)
    attachments = await read_attachments(uploads)

    return IncomingRequest(
        input=input_text or "",
        task_type=parsed_task_type,
        context=context or None,
        history=parsed_history,
        attachments=attachments,
        context_file_urls=parsed_urls,
    )
