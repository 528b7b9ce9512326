from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship

from safety_gateway.core.config import settings
from safety_gateway.db.session import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True, index=True)
    api_token = Column(String(64), nullable=True, unique=True, index=True)

    # Daily quota; requests_used is zeroed by the reset-daily-requests job
    requests_used = Column(Integer, nullable=False, default=0)
    requests_limit = Column(Integer, nullable=False, default=lambda: settings.default_requests_limit)

    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    moderation_requests = relationship("ModerationRequest", back_populates="user")
