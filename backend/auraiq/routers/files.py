"""
Stored file management endpoints.
"""

import logging

from fastapi import APIRouter, Depends

from auraiq.auth import get_current_user
from auraiq.errors import GatewayError, ValidationError
from auraiq.models.chat import DeleteFilesRequest
from auraiq.services.storage import SupabaseObjectStore, get_object_store

router = APIRouter()

logger = logging.getLogger(__name__)


@router.post("/delete")
async def delete_files(
    body: DeleteFilesRequest,
    user_id: str = Depends(get_current_user),
    store: SupabaseObjectStore = Depends(get_object_store),
):
    """
    Delete previously stored chat media by URL.

    URLs outside the chat media bucket are ignored.

    Requires authentication.
    """
    if not body.urls:
        raise ValidationError("URLs must be a non-empty array.", error_code="missing_urls")

    try:
        deleted = await store.delete(body.urls)
    except Exception as e:
        logger.error(f"Failed to delete files for {user_id}: {str(e)}")
        raise GatewayError("Failed to delete files.", error_code="delete_failed")

    logger.info(f"Deleted {deleted} stored file(s) for {user_id}")
    return {"success": True, "deleted": deleted}
