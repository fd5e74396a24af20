"""
Chat API endpoints.

  POST /api/chat       multipart message + attachments, streamed reply
  POST /api/chat/iq1   JSON messages to the IQ1 model, streamed reply
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import StreamingResponse

from auraiq.auth import get_current_user
from auraiq.errors import ValidationError
from auraiq.models.chat import Iq1ChatRequest
from auraiq.services.ingestion import ingest
from auraiq.services.intake import build_incoming_request
from auraiq.services.model_router import select_model
from auraiq.services.rate_limiter import (
    RateLimiter,
    get_chat_rate_limiter,
    get_iq1_rate_limiter,
)
from auraiq.services.storage import SupabaseObjectStore, get_object_store
from auraiq.services.stream_proxy import (
    SSE_HEADERS,
    StreamProxy,
    build_messages,
    build_user_content,
)
from auraiq.services.upstream import get_chat_provider, get_iq1_provider

router = APIRouter()

logger = logging.getLogger(__name__)


@router.post("")
async def chat(
    input: Optional[str] = Form(None),
    task_type: Optional[str] = Form(None, alias="taskType"),
    context: Optional[str] = Form(None),
    history: Optional[str] = Form(None),
    files: List[UploadFile] = File(default=[]),
    context_file_urls: Optional[str] = Form(None, alias="contextFileUrls"),
    user_id: str = Depends(get_current_user),
    limiter: RateLimiter = Depends(get_chat_rate_limiter),
    store: SupabaseObjectStore = Depends(get_object_store),
    provider=Depends(get_chat_provider),
):
    """
    Send one chat message with optional attachments and stream the reply.

    Pipeline: validate -> admit -> extract -> route -> proxy. Validation and
    quota errors are returned as JSON before any file is processed. A file that
    cannot be read does not fail the request; it is replaced by a note in the
    text sent to the model.

    Requires authentication.
    """
    request = await build_incoming_request(
        input_text=input,
        task_type=task_type,
        context=context,
        history=history,
        uploads=files,
        context_file_urls=context_file_urls,
    )

    quota = await limiter.allow(user_id)
    if not quota.allowed:
        logger.info(f"Rate limit hit for user {user_id}")
    quota.raise_for_quota()

    logger.info(
        f"Chat request from {user_id}: {len(request.attachments)} attachment(s), "
        f"{len(request.context_file_urls)} context file(s), task={request.task_type.value}"
    )

    assembled = await ingest(request, store)

    model = select_model(assembled.has_image, request.task_type, assembled.text)

    user_content = build_user_content(assembled.text, assembled.image_urls)
    if not user_content:
        raise ValidationError("Input is empty.", error_code="empty_input")

    messages = build_messages(user_content, request.context, request.history)

    proxy = StreamProxy(provider, messages, model)
    await proxy.open()

    return StreamingResponse(
        proxy.relay(),
        media_type="text/event-stream",
        headers={
            **SSE_HEADERS,
            **quota.headers(),
            "X-Model-Name": proxy.model_name,
        },
    )


@router.post("/iq1")
async def chat_iq1(
    body: Iq1ChatRequest,
    user_id: str = Depends(get_current_user),
    limiter: RateLimiter = Depends(get_iq1_rate_limiter),
    provider=Depends(get_iq1_provider),
):
    """
    Stream a reply from the IQ1 model configured by IQ1_PROVIDER.

    Requires authentication.
    """
    quota = await limiter.allow(user_id)
    quota.raise_for_quota()

    messages = [message.model_dump() for message in body.messages]
    if body.system_prompt:
        messages.insert(0, {"role": "system", "content": body.system_prompt})
    if not messages:
        raise ValidationError("Invalid messages format", error_code="invalid_messages")

    logger.info(f"IQ1 request from {user_id} via {provider.name}")

    proxy = StreamProxy(provider, messages)
    await proxy.open()

    return StreamingResponse(
        proxy.relay(),
        media_type="text/event-stream",
        headers={
            **SSE_HEADERS,
            **quota.headers(),
            "X-Model-Provider": provider.name,
            "X-Model-Name": proxy.model_name,
        },
    )
