from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from safety_gateway.clients.blob_store import BlobStore, get_blob_store
from safety_gateway.core.config import settings
from safety_gateway.core.security import get_current_user, rate_limit_dependency
from safety_gateway.db.session import get_db
from safety_gateway.models.moderation_request import ModerationRequest, ContentType
from safety_gateway.models.user import User
from safety_gateway.schemas.moderation import ModerationRecordPage, ModerationRecordResponse
from safety_gateway.schemas.user import UsageSummary
from safety_gateway.services.ledger_service import get_record, query_records
from safety_gateway.services.quota_service import remaining

router = APIRouter(tags=["history"])


def serialize_record(record: ModerationRequest, image_url: Optional[str] = None) -> ModerationRecordResponse:
    return ModerationRecordResponse(
        id=record.id,
        content_type=record.content_type.value,
        content=record.content,
        request_metadata=record.request_metadata or {},
        moderation_result=record.moderation_result,
        status=record.status.value,
        created_at=record.created_at,
        updated_at=record.updated_at,
        image_url=image_url,
    )


def _stored_image_path(record: ModerationRequest) -> Optional[str]:
    if record.content_type != ContentType.image:
        return None
    image = (record.request_metadata or {}).get("image") or {}
    return image.get("path")


@router.get("/requests", response_model=ModerationRecordPage)
def list_requests(
    search: Optional[str] = Query(None, max_length=255),
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1, le=100),
    _: None = Depends(rate_limit_dependency),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Paginated moderation history of the caller, newest first."""
    result = query_records(
        db,
        owner_id=user.id,
        search=search,
        page=page,
        page_size=page_size or settings.history_page_size,
    )
    return ModerationRecordPage(
        items=[serialize_record(r) for r in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        pages=result.pages,
        search=(search or "").strip(),
    )


@router.get("/requests/{record_id}", response_model=ModerationRecordResponse)
def show_request(
    record_id: int,
    _: None = Depends(rate_limit_dependency),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """
    One record of the caller's history.

    Image records that were stored successfully carry a short-lived signed
    ``image_url``. Records of other users are reported as not found.
    """
    record = get_record(db, owner_id=user.id, record_id=record_id)

    image_url = None
    path = _stored_image_path(record)
    if path:
        image_url = blob_store.temporary_url(path, timedelta(minutes=settings.blob_url_ttl_minutes))

    return serialize_record(record, image_url=image_url)


@router.get("/usage", response_model=UsageSummary)
def usage(user: User = Depends(get_current_user)):
    """Daily quota status of the caller."""
    return UsageSummary(
        user_id=user.id,
        requests_used=user.requests_used,
        requests_limit=user.requests_limit,
        remaining=remaining(user),
    )
