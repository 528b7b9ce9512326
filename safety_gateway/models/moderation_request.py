from datetime import datetime, timezone
from sqlalchemy import Column, Integer, Text, Enum, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship
import enum

from safety_gateway.db.session import Base
from safety_gateway.models.user import User  # noqa: F401  registers the "User" mapper


def _utcnow():
    return datetime.now(timezone.utc)


class ContentType(str, enum.Enum):
    text = "text"
    image = "image"


class RequestStatus(str, enum.Enum):
    success = "success"
    fail = "fail"


class ModerationRequest(Base):
    """One ledger entry per moderation attempt; written once, never updated."""

    __tablename__ = "moderation_requests"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content_type = Column(Enum(ContentType), nullable=False)

    # Analyzed text, the blob path, or "<filename> (<failure>)" for images
    content = Column(Text, nullable=False)
    request_metadata = Column(JSON, nullable=False)
    moderation_result = Column(JSON, nullable=True)  # raw upstream body or {exception, message}

    status = Column(Enum(RequestStatus), nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationship
    user = relationship("User", back_populates="moderation_requests")
