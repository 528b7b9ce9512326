import mimetypes

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse

from safety_gateway.clients.blob_store import BlobStore, LocalBlobStore, get_blob_store
from safety_gateway.core.exceptions import BlobNotFoundException, InvalidSignatureException
from safety_gateway.core.logger import logger

router = APIRouter(prefix="/storage", tags=["storage"])


@router.get("/{path:path}")
def download_blob(
    path: str,
    expires: int = Query(...),
    signature: str = Query(..., min_length=1),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Serve a stored upload through a URL issued by ``temporary_url``."""
    if not isinstance(blob_store, LocalBlobStore):
        raise BlobNotFoundException(path)

    if not blob_store.verify(path, expires, signature):
        logger.warning("Rejected storage URL with invalid or expired signature", extra={"path": path})
        raise InvalidSignatureException()

    if not blob_store.exists(path):
        raise BlobNotFoundException(path)

    media_type, _ = mimetypes.guess_type(path)
    return FileResponse(blob_store.resolve(path), media_type=media_type or "application/octet-stream")
