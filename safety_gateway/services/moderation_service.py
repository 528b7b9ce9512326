import base64
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from safety_gateway.clients.blob_store import BlobStore
from safety_gateway.clients.content_safety_client import analyze_text, analyze_image
from safety_gateway.core.config import settings
from safety_gateway.core.exceptions import DatabaseException
from safety_gateway.core.logger import logger
from safety_gateway.models.moderation_request import ContentType, RequestStatus
from safety_gateway.models.user import User
from safety_gateway.schemas.moderation import (
    ALL_CATEGORIES,
    DEFAULT_OUTPUT_TYPE,
    ImageReference,
    ModerationTextRequest,
    RequestMetadata,
)
from safety_gateway.services.ledger_service import append_record
from safety_gateway.services.quota_service import record_usage

UPSTREAM_ERROR = "Azure Content Safety error"


@dataclass
class ModerationOutcome:
    """HTTP status and JSON body for a finished moderation call."""
    status_code: int
    payload: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.status_code == 200


@dataclass
class ImageUpload:
    filename: str
    content_type: str
    data: bytes


def storage_extension(filename: Optional[str], content_type: Optional[str] = None) -> str:
    """
    File extension for a stored upload.

    Uses the client-declared extension, falling back to a guess from the
    declared MIME type. ``jpeg`` becomes ``jpg`` and anything undeterminable
    becomes ``bin``.
    """
    ext = PurePosixPath(filename or "").suffix.lstrip(".")
    if not ext and content_type:
        guessed = mimetypes.guess_extension(content_type)
        ext = guessed.lstrip(".") if guessed else ""

    ext = ext.lower()
    if ext == "jpeg":
        ext = "jpg"
    return ext or "bin"


def build_upload_path(user_id: int, extension: str, now: Optional[datetime] = None, attempt: int = 0) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d-%H%M%S")
    suffix = f"-{attempt}" if attempt else ""
    return f"users/{user_id}/uploads-{stamp}{suffix}.{extension}"


def reserve_upload_path(blob_store: BlobStore, user_id: int, extension: str, now: Optional[datetime] = None) -> str:
    """First upload path for this second that is not already taken in the store."""
    now = now or datetime.now(timezone.utc)
    attempt = 0
    path = build_upload_path(user_id, extension, now)
    while blob_store.exists(path):
        attempt += 1
        path = build_upload_path(user_id, extension, now, attempt)
    return path


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def _categories_analysis(body: Any) -> Any:
    if isinstance(body, dict):
        return body.get("categoriesAnalysis", [])
    return body


def _error_descriptor(error: Exception) -> Dict[str, str]:
    return {"exception": type(error).__name__, "message": str(error)}


def _admit(db: Session, user: User) -> None:
    try:
        record_usage(db, user)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "Database error recording quota usage",
            extra={"user_id": user.id, "error": str(e)},
            exc_info=True
        )
        raise DatabaseException(
            f"Failed to record quota usage: {str(e)}",
            operation="record_usage"
        )


def _append_failure(
    db: Session,
    user: User,
    content_type: ContentType,
    content: str,
    request_metadata: Dict[str, Any],
    error: Exception,
):
    """Write the ledger record for a call that raised."""
    db.rollback()
    try:
        return append_record(
            db, user, content_type, content, request_metadata,
            moderation_result=_error_descriptor(error),
            status=RequestStatus.fail,
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "Database error writing failure record",
            extra={"user_id": user.id, "error": str(e)},
            exc_info=True
        )
        raise DatabaseException(
            f"Failed to write ledger record: {str(e)}",
            operation="append_record"
        )


def handle_text_moderation(user: User, request: ModerationTextRequest, db: Session) -> ModerationOutcome:
    """
    Analyze text for an already authenticated and admitted user.

    Quota is consumed before the upstream call and is not refunded on failure.
    Exactly one ledger record is written whatever the outcome.

    Args:
        user: Authenticated user the request is billed to
        request: Validated text moderation request
        db: Database session

    Returns:
        ModerationOutcome with 200, 502 (upstream rejected) or 500 (exception)
    """
    categories: List[str] = list(request.categories or ALL_CATEGORIES)
    output_type = request.output_type or DEFAULT_OUTPUT_TYPE
    metadata = RequestMetadata(
        categories=categories,
        output_type=output_type,
        api_version=settings.azure_content_safety_api_version,
    ).to_json()

    logger.info(
        "Starting text moderation",
        extra={"user_id": user.id, "content_length": len(request.content)}
    )
    _admit(db, user)

    try:
        status_code, body = analyze_text(request.content, categories, output_type)
        succeeded = _is_success(status_code)

        record = append_record(
            db, user, ContentType.text, request.content, metadata,
            moderation_result=body,
            status=RequestStatus.success if succeeded else RequestStatus.fail,
        )

        if not succeeded:
            logger.warning(
                f"Content Safety rejected text analysis with status {status_code}",
                extra={"user_id": user.id, "request_id": record.id, "status": status_code}
            )
            return ModerationOutcome(502, {
                "error": UPSTREAM_ERROR,
                "status": status_code,
                "details": body,
                "request_id": record.id,
            })

        return ModerationOutcome(200, {
            "request_id": record.id,
            "result": _categories_analysis(body),
        })

    except Exception as e:
        logger.error(
            "Unexpected error in text moderation",
            extra={"user_id": user.id, "error": str(e)},
            exc_info=True
        )
        record = _append_failure(db, user, ContentType.text, request.content, metadata, e)
        return ModerationOutcome(500, {
            "error": "Moderation failed",
            "message": str(e),
            "request_id": record.id,
        })


def handle_image_moderation(
    user: User,
    upload: ImageUpload,
    categories: Optional[List[str]],
    output_type: Optional[str],
    db: Session,
    blob_store: BlobStore,
) -> ModerationOutcome:
    """
    Analyze an uploaded image, then store it when the analysis succeeded.

    An upload failure after a successful analysis is reported separately
    (500, analysis kept in the ledger) from an upstream rejection (502).

    Args:
        user: Authenticated user the request is billed to
        upload: Uploaded file name, declared MIME type and bytes
        categories: Requested categories, all four when empty
        output_type: Severity scale requested from the upstream API
        db: Database session
        blob_store: Storage for the original image bytes

    Returns:
        ModerationOutcome with 200, 502 or 500
    """
    categories = list(categories or ALL_CATEGORIES)
    output_type = output_type or DEFAULT_OUTPUT_TYPE
    original_filename = upload.filename
    metadata = RequestMetadata(
        categories=categories,
        output_type=output_type,
        api_version=settings.azure_content_safety_api_version,
        image=ImageReference(original_filename=original_filename),
    ).to_json()

    logger.info(
        "Starting image moderation",
        extra={"user_id": user.id, "content_type": upload.content_type, "bytes": len(upload.data)}
    )
    _admit(db, user)

    try:
        encoded = base64.b64encode(upload.data).decode("ascii")
        status_code, analysis = analyze_image(encoded, categories, output_type)

        if not _is_success(status_code):
            record = append_record(
                db, user, ContentType.image, f"{original_filename} (analysis failed)", metadata,
                moderation_result=analysis,
                status=RequestStatus.fail,
            )
            logger.warning(
                f"Content Safety rejected image analysis with status {status_code}",
                extra={"user_id": user.id, "request_id": record.id, "status": status_code}
            )
            return ModerationOutcome(502, {
                "error": UPSTREAM_ERROR,
                "status": status_code,
                "details": analysis,
                "request_id": record.id,
            })

        content_type = upload.content_type or "application/octet-stream"
        path = reserve_upload_path(blob_store, user.id, storage_extension(original_filename, content_type))

        if not blob_store.put(path, upload.data, content_type):
            record = append_record(
                db, user, ContentType.image, f"{original_filename} (upload failed)", metadata,
                moderation_result=analysis,
                status=RequestStatus.fail,
            )
            logger.error(
                "Upload failed after successful analysis",
                extra={"user_id": user.id, "request_id": record.id}
            )
            return ModerationOutcome(500, {
                "error": "Upload failed after successful analysis",
                "request_id": record.id,
                "analysis": analysis,
            })

        exists = blob_store.exists(path)
        stored_metadata = RequestMetadata(
            categories=categories,
            output_type=output_type,
            api_version=settings.azure_content_safety_api_version,
            image=ImageReference(original_filename=original_filename, path=path),
        ).to_json()

        record = append_record(
            db, user, ContentType.image, path, stored_metadata,
            moderation_result=analysis,
            status=RequestStatus.success,
        )

        return ModerationOutcome(200, {
            "message": "Analyzed and uploaded successfully",
            "request_id": record.id,
            "analysis": analysis,
            "upload": {
                "path": path,
                "original_filename": original_filename,
                "content_type": content_type,
                "bytes": len(upload.data),
                "exists": exists,
            },
        })

    except Exception as e:
        logger.error(
            "Unexpected error in image moderation",
            extra={"user_id": user.id, "error": str(e)},
            exc_info=True
        )
        record = _append_failure(
            db, user, ContentType.image, f"{original_filename} (exception thrown)", metadata, e
        )
        return ModerationOutcome(500, {
            "error": "Moderation or upload failed unexpectedly",
            "message": str(e),
            "request_id": record.id,
        })
