import secrets
import string
from typing import Optional

from sqlalchemy.orm import Session

from safety_gateway.models.user import User
from safety_gateway.schemas.user import UserCreate
from safety_gateway.core.config import settings
from safety_gateway.core.logger import logger

TOKEN_ALPHABET = string.ascii_letters + string.digits


def generate_token(length: int = 32) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def get_user_by_token(db: Session, token: str) -> Optional[User]:
    """Exact-match lookup of a bearer token."""
    if not token:
        return None
    return db.query(User).filter(User.api_token == token).first()


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email).first()


def create_user(db: Session, data: UserCreate) -> User:
    """Create a user with a fresh API token."""
    user = User(
        name=data.name,
        email=str(data.email),
        api_token=generate_token(),
        requests_used=0,
        requests_limit=(
            data.requests_limit if data.requests_limit is not None
            else settings.default_requests_limit
        ),
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info("Created user", extra={"user_id": user.id})
    return user


def rotate_token(db: Session, user: User) -> str:
    """Replace the user's API token; the old token stops working immediately."""
    user.api_token = generate_token()
    db.commit()
    db.refresh(user)

    logger.info("Rotated API token", extra={"user_id": user.id})
    return user.api_token
