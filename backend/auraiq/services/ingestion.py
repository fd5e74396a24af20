"""
Concurrent ingestion of attachments and context files.

Every source is processed as its own task. Tasks never raise: each returns an
ExtractionOutcome carrying either content or the inline note that replaces it,
so one malformed file cannot cancel or hide the others. ``assemble`` then
folds the outcomes into one text blob and one image list.

Merge order is by declaration, not by completion time: context files first (in
the order their URLs were sent), then new attachments (in upload order).
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from auraiq import config
from auraiq.errors import ExtractionError
from auraiq.models.chat import (
    AssembledContent,
    Attachment,
    ExtractionOutcome,
    IncomingRequest,
    SourceFile,
)
from auraiq.services.extractor import TEXT_FALLBACK, normalize_media_type, resolve_extractor
from auraiq.services.token_budget import truncate_content

logger = logging.getLogger(__name__)

ATTACHMENT_LABEL = "Content of attached file"
CONTEXT_FILE_LABEL = "Content from context file"


def context_file_name(url: str) -> str:
    """Last path segment of the URL, percent-decoded."""
    name = unquote(urlparse(url).path.rstrip("/").rsplit("/", 1)[-1])
    return name or "context file"


async def extract_attachment(attachment: Attachment, store) -> ExtractionOutcome:
    """Run the registered extractor for one uploaded file."""
    outcome = ExtractionOutcome(
        name=attachment.name,
        label=ATTACHMENT_LABEL,
        token_budget=config.FILE_TOKEN_BUDGET,
    )

    entry = resolve_extractor(attachment.media_type)
    if entry is None:
        logger.warning(f"No extractor for {attachment.name} ({attachment.media_type}); skipping")
        outcome.error = f"[System note: Unsupported file type for {attachment.name}]"
        return outcome

    source = SourceFile(
        name=attachment.name,
        media_type=attachment.media_type,
        content=attachment.content,
    )
    try:
        outcome.content = await entry.extract(source, store)
    except Exception as e:
        logger.warning(f"Failed to process {entry.kind} file {attachment.name}: {e}")
        outcome.error = f"[System note: Failed to read {entry.kind} file {attachment.name}]"

    return outcome


async def fetch_context_file(url: str, http_client: httpx.AsyncClient) -> tuple[str, bytes]:
    """
    Download a context file and return (media type, body).

    The body is streamed and abandoned as soon as it passes MAX_FILE_SIZE, the
    same ceiling uploads are held to.

    Raises:
        httpx.HTTPError: the fetch failed or returned a non-2xx status
        ExtractionError: the body is larger than MAX_FILE_SIZE
    """
    limit = config.MAX_FILE_SIZE

    async with http_client.stream("GET", url) as response:
        response.raise_for_status()

        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            raise ExtractionError(f"Context file {url} is {declared} bytes; limit is {limit}")

        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > limit:
                raise ExtractionError(f"Context file {url} exceeds {limit} bytes")

        media_type = normalize_media_type(response.headers.get("content-type"))

    return media_type, bytes(body)


async def extract_context_file(url: str, http_client: httpx.AsyncClient, store) -> ExtractionOutcome:
    """
    Fetch a previously stored context file and extract it.

    The response's content type picks the extractor; unknown types are read as
    text. Any fetch or extraction failure becomes a note naming the URL.
    """
    name = context_file_name(url)
    outcome = ExtractionOutcome(
        name=name,
        label=CONTEXT_FILE_LABEL,
        token_budget=config.CONTEXT_FILE_TOKEN_BUDGET,
    )

    try:
        media_type, body = await fetch_context_file(url, http_client)

        entry = resolve_extractor(media_type) or TEXT_FALLBACK
        source = SourceFile(name=name, media_type=media_type, content=body, url=url)
        outcome.content = await entry.extract(source, store)
    except (httpx.HTTPError, ExtractionError) as e:
        logger.warning(f"Failed to fetch and process context file from {url}: {e}")
        outcome.error = f"[System note: Failed to load context from {url}]"
    except Exception as e:
        logger.warning(f"Unexpected error processing context file {url}: {e}", exc_info=True)
        outcome.error = f"[System note: Failed to load context from {url}]"

    return outcome


async def gather_sources(
    request: IncomingRequest,
    store,
    http_client: Optional[httpx.AsyncClient] = None,
) -> list[ExtractionOutcome]:
    """
    Extract all context files and attachments concurrently.

    Returns one outcome per source in merge order.
    """
    if not request.context_file_urls and not request.attachments:
        return []

    owns_client = http_client is None
    if owns_client:
        http_client = httpx.AsyncClient(
            timeout=config.CONTEXT_FETCH_TIMEOUT_SECONDS,
            follow_redirects=True,
        )

    try:
        tasks = [extract_context_file(url, http_client, store) for url in request.context_file_urls]
        tasks += [extract_attachment(attachment, store) for attachment in request.attachments]
        results = await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        if owns_client:
            await http_client.aclose()

    names = list(request.context_file_urls) + [a.name for a in request.attachments]
    outcomes = []
    for index, result in enumerate(results):
        if isinstance(result, ExtractionOutcome):
            outcomes.append(result)
            continue
        # extract_* catch their own errors; this only covers bugs in them
        logger.error(f"Extraction task for {names[index]} failed: {result!r}")
        is_context = index < len(request.context_file_urls)
        outcomes.append(ExtractionOutcome(
            name=names[index],
            label=CONTEXT_FILE_LABEL if is_context else ATTACHMENT_LABEL,
            token_budget=0,
            error=f"[System note: Failed to process {names[index]}]",
        ))

    return outcomes


def assemble(input_text: str, outcomes: list[ExtractionOutcome]) -> AssembledContent:
    """
    Fold extraction outcomes into the request's text and image list.

    Each non-empty text is cut to its per-file budget and wrapped in
    ``--- <label>: <name> ---`` / ``--- End of <name> ---`` delimiters.
    Failed sources contribute their note instead.
    """
    parts = [input_text or ""]
    image_urls: list[str] = []
    failures: list[str] = []

    for outcome in outcomes:
        if not outcome.ok:
            parts.append(f"\n\n{outcome.error}")
            failures.append(outcome.name)
            continue

        content = outcome.content
        image_urls.extend(content.image_urls)

        if not content.text:
            continue

        truncated = truncate_content(content.text, outcome.token_budget)
        parts.append(
            f"\n\n--- {outcome.label}: {outcome.name} ---\n"
            f"{truncated.content}\n"
            f"--- End of {outcome.name} ---"
        )
        if truncated.was_truncated:
            parts.append("\n[Note: Content was truncated due to size]")

    return AssembledContent(text="".join(parts), image_urls=image_urls, failures=failures)


async def ingest(
    request: IncomingRequest,
    store,
    http_client: Optional[httpx.AsyncClient] = None,
) -> AssembledContent:
    """Extract every source of ``request`` and merge the results."""
    outcomes = await gather_sources(request, store, http_client)
    assembled = assemble(request.input, outcomes)

    if assembled.failures:
        logger.warning(f"{len(assembled.failures)} source(s) degraded: {assembled.failures}")

    return assembled
