"""
Request ledger: the append-only audit trail of moderation attempts.

Records are created once and never updated or deleted here. Every read is
scoped to the owning user; a record that belongs to someone else is reported
exactly like a record that does not exist.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import String, cast, or_
from sqlalchemy.orm import Session

from safety_gateway.models.moderation_request import ModerationRequest, ContentType, RequestStatus
from safety_gateway.models.user import User
from safety_gateway.core.exceptions import RecordNotFoundException
from safety_gateway.core.logger import logger

LIKE_ESCAPE = "\\"


@dataclass
class LedgerPage:
    items: List[ModerationRequest]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0


def append_record(
    db: Session,
    user: User,
    content_type: ContentType,
    content: str,
    request_metadata: Dict[str, Any],
    moderation_result: Optional[Any],
    status: RequestStatus,
) -> ModerationRequest:
    """Persist one ledger record and return it with its id assigned."""
    record = ModerationRequest(
        user_id=user.id,
        content_type=content_type,
        content=content,
        request_metadata=request_metadata,
        moderation_result=moderation_result,
        status=status,
    )
    db.add(record)
    db.commit()
    db.refresh(record)

    logger.info(
        f"Ledger record {record.id} written",
        extra={
            "request_id": record.id,
            "user_id": user.id,
            "content_type": content_type.value,
            "status": status.value
        }
    )
    return record


def _like_pattern(term: str) -> str:
    escaped = (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )
    return f"%{escaped}%"


def query_records(
    db: Session,
    owner_id: int,
    search: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> LedgerPage:
    """
    List a user's records newest first.

    A non-blank ``search`` term matches, case-insensitively, anywhere in the
    content, the content type label, or the original filename of an image.
    """
    query = db.query(ModerationRequest).filter(ModerationRequest.user_id == owner_id)

    term = (search or "").strip()
    if term:
        pattern = _like_pattern(term)
        original_filename = ModerationRequest.request_metadata["image"]["original_filename"].as_string()
        query = query.filter(or_(
            ModerationRequest.content.ilike(pattern, escape=LIKE_ESCAPE),
            cast(ModerationRequest.content_type, String).ilike(pattern, escape=LIKE_ESCAPE),
            original_filename.ilike(pattern, escape=LIKE_ESCAPE),
        ))

    page = max(page, 1)
    total = query.count()
    items = (
        query.order_by(ModerationRequest.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return LedgerPage(items=items, total=total, page=page, page_size=page_size)


def get_record(db: Session, owner_id: int, record_id: int) -> ModerationRequest:
    """Fetch one of the owner's records or raise ``RecordNotFoundException``."""
    record = db.query(ModerationRequest).filter(
        ModerationRequest.id == record_id,
        ModerationRequest.user_id == owner_id
    ).first()

    if record is None:
        raise RecordNotFoundException(record_id)
    return record
