from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from safety_gateway.clients.blob_store import BlobStore, get_blob_store
from safety_gateway.core.config import settings
from safety_gateway.core.exceptions import ValidationException
from safety_gateway.core.logger import logger
from safety_gateway.core.security import (
    get_admitted_user,
    rate_limit_dependency,
    validate_categories,
    validate_image_upload,
    validate_text_content,
)
from safety_gateway.db.session import get_db
from safety_gateway.models.user import User
from safety_gateway.schemas.moderation import (
    ImageModerationResponse,
    ModerationErrorResponse,
    ModerationTextRequest,
    TextModerationResponse,
)
from safety_gateway.services.moderation_service import (
    ImageUpload,
    handle_image_moderation,
    handle_text_moderation,
)

router = APIRouter(tags=["moderation"])

ERROR_RESPONSES = {
    401: {"description": "Missing or invalid API token"},
    422: {"description": "Validation error"},
    429: {"description": "Daily quota or rate limit exceeded"},
    500: {"model": ModerationErrorResponse, "description": "Unexpected failure"},
    502: {"model": ModerationErrorResponse, "description": "Content Safety API error"},
}


@router.post(
    "/text",
    response_model=TextModerationResponse,
    responses=ERROR_RESPONSES,
)
def moderate_text(
    payload: ModerationTextRequest,
    request: Request,
    _: None = Depends(rate_limit_dependency),
    user: User = Depends(get_admitted_user),
    db: Session = Depends(get_db),
):
    """
    Analyze text for Hate, SelfHarm, Sexual and Violence content.

    Every admitted call consumes one unit of the caller's daily quota and is
    recorded in the request history, whether or not the analysis succeeds.
    """
    is_valid, error_msg = validate_text_content(payload.content)
    if not is_valid:
        raise ValidationException(error_msg or "Invalid text content", field="content")

    logger.info(
        "Text moderation request received",
        extra={
            "user_id": user.id,
            "trace_id": getattr(request.state, "trace_id", "unknown"),
            "content_length": len(payload.content)
        }
    )

    outcome = handle_text_moderation(user, payload, db)
    return JSONResponse(status_code=outcome.status_code, content=outcome.payload)


@router.post(
    "/image",
    response_model=ImageModerationResponse,
    responses=ERROR_RESPONSES,
)
def moderate_image(
    request: Request,
    _: None = Depends(rate_limit_dependency),
    user: User = Depends(get_admitted_user),
    image: Optional[UploadFile] = File(None),
    categories: Optional[List[str]] = Form(None),
    bracket_categories: Optional[List[str]] = Form(None, alias="categories[]"),
    output_type: Optional[str] = Form(None, alias="outputType"),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """
    Analyze an uploaded image and store the original bytes.

    The image is uploaded to storage only after a successful analysis.
    Accepts ``categories`` or ``categories[]`` as repeated form fields.
    """
    if image is None:
        raise ValidationException("The image field is required.", field="image")

    # One byte past the limit is enough to detect an oversized file
    data = image.file.read(settings.max_image_bytes + 1)
    detected_type = validate_image_upload(image.filename, data)
    requested = validate_categories((categories or []) + (bracket_categories or []))

    logger.info(
        "Image moderation request received",
        extra={
            "user_id": user.id,
            "trace_id": getattr(request.state, "trace_id", "unknown"),
            "content_type": detected_type,
            "bytes": len(data)
        }
    )

    upload = ImageUpload(filename=image.filename, content_type=detected_type, data=data)
    outcome = handle_image_moderation(user, upload, requested, output_type, db, blob_store)
    return JSONResponse(status_code=outcome.status_code, content=outcome.payload)
