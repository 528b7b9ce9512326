"""
Security utilities and input validation for the Content Safety Gateway.

This module provides the per-IP rate limiter, bearer-token authentication,
daily quota admission and the validators applied to incoming content before
a moderation request is admitted.
"""

import threading
import time
from io import BytesIO
from typing import Dict, List, Optional, Tuple

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from PIL import Image
from sqlalchemy.orm import Session

from safety_gateway.core.config import settings
from safety_gateway.core.logger import logger
from safety_gateway.core.exceptions import (
    AuthenticationException,
    ContentTooLargeException,
    QuotaExceededException,
    RateLimitException,
    ValidationException,
)
from safety_gateway.db.session import get_db
from safety_gateway.models.user import User
from safety_gateway.schemas.moderation import ALL_CATEGORIES
from safety_gateway.services.quota_service import can_admit
from safety_gateway.services.user_service import get_user_by_token

# In-memory rate limiting, per process
rate_limit_storage: Dict[str, List[float]] = {}
_rate_limit_lock = threading.Lock()

# Security scheme
security = HTTPBearer(auto_error=False)


def validate_text_content(content: str) -> Tuple[bool, Optional[str]]:
    """
    Validate text content for presence and size.

    Args:
        content: Text content to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not content or not content.strip():
        return False, "The content field is required."

    if len(content) > settings.max_text_length:
        return False, f"Content exceeds maximum length of {settings.max_text_length} characters"

    return True, None


def validate_categories(categories: Optional[List[str]]) -> List[str]:
    """Return the requested categories, or raise if any is not supported."""
    if not categories:
        return []
    invalid = [c for c in categories if c not in ALL_CATEGORIES]
    if invalid:
        raise ValidationException(
            f"Unsupported categories: {', '.join(invalid)}",
            field="categories",
            details={"allowed": ALL_CATEGORIES}
        )
    return list(categories)


def detect_image_type(data: bytes) -> Optional[str]:
    """MIME type of the image format found in ``data``, or None if it is not an image."""
    try:
        with Image.open(BytesIO(data)) as img:
            image_format = img.format
            img.verify()
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError):
        return None
    if not image_format:
        return None
    return Image.MIME.get(image_format, f"image/{image_format.lower()}")


def validate_image_upload(filename: Optional[str], data: bytes) -> str:
    """
    Validate an uploaded image before it is admitted.

    The bytes themselves are inspected; the client-declared MIME type is
    ignored.

    Returns:
        MIME type of the detected image format

    Raises:
        ValidationException: Missing file, empty file or bytes that are not an image
        ContentTooLargeException: File larger than the configured limit
    """
    if not filename or not data:
        raise ValidationException("Invalid uploaded file", field="image")

    if len(data) > settings.max_image_bytes:
        raise ContentTooLargeException(
            f"The image field must not be greater than {settings.max_image_bytes // 1024} kilobytes.",
            max_size=settings.max_image_bytes,
            actual_size=len(data)
        )

    detected = detect_image_type(data)
    if detected is None:
        raise ValidationException("The image field must be an image.", field="image")
    return detected


def check_rate_limit(client_ip: str, now: Optional[float] = None) -> bool:
    """
    Sliding-window check for a client IP.

    Args:
        client_ip: Client IP address
        now: Current time, for tests

    Returns:
        True if within rate limit, False if exceeded
    """
    current_time = now if now is not None else time.time()
    window_start = current_time - settings.rate_limit_window

    with _rate_limit_lock:
        requests = [t for t in rate_limit_storage.get(client_ip, []) if t > window_start]

        if len(requests) >= settings.rate_limit_requests:
            rate_limit_storage[client_ip] = requests
            return False

        requests.append(current_time)
        rate_limit_storage[client_ip] = requests
        return True


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address from request.

    Args:
        request: FastAPI request object

    Returns:
        Client IP address
    """
    # Check for forwarded headers first (for load balancers/proxies)
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"


def rate_limit_dependency(request: Request) -> None:
    """
    FastAPI dependency for per-IP rate limiting.

    Raises:
        RateLimitException: If the client exceeded its per-window budget
    """
    client_ip = get_client_ip(request)

    if not check_rate_limit(client_ip):
        logger.warning(
            f"Rate limit exceeded for client {client_ip}",
            extra={"client_ip": client_ip, "limit": settings.rate_limit_requests}
        )
        raise RateLimitException(retry_after=settings.rate_limit_window)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Resolve the bearer token to a user.

    Raises:
        AuthenticationException: If the token is missing or unknown
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationException("Missing API token. Provide it as Authorization: Bearer")

    user = get_user_by_token(db, credentials.credentials)
    if user is None:
        logger.warning("Rejected unknown API token")
        raise AuthenticationException("Invalid API token")

    return user


def get_admitted_user(user: User = Depends(get_current_user)) -> User:
    """
    Authenticated user who still has daily quota.

    Raises:
        QuotaExceededException: If the user's usage has reached the limit
    """
    if not can_admit(user):
        logger.warning(
            "Daily request limit reached",
            extra={"user_id": user.id, "requests_used": user.requests_used}
        )
        raise QuotaExceededException(
            requests_used=user.requests_used,
            requests_limit=user.requests_limit
        )
    return user
