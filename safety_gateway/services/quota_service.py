from sqlalchemy import update
from sqlalchemy.orm import Session

from safety_gateway.models.user import User
from safety_gateway.core.logger import logger


def can_admit(user: User) -> bool:
    """True iff the user still has quota left today."""
    return user.requests_used < user.requests_limit


def remaining(user: User) -> int:
    return max(user.requests_limit - user.requests_used, 0)


def record_usage(db: Session, user: User, count: int = 1) -> None:
    """
    Atomically add ``count`` to the user's daily usage and commit.

    The increment is a single UPDATE evaluated by the database so concurrent
    admissions never lose updates. Usage is never rolled back, even when the
    moderation call that consumed it later fails.
    """
    db.execute(
        update(User)
        .where(User.id == user.id)
        .values(requests_used=User.requests_used + count)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(user)

    logger.info(
        "Recorded quota usage",
        extra={
            "user_id": user.id,
            "requests_used": user.requests_used,
            "requests_limit": user.requests_limit
        }
    )


def reset_daily_usage(db: Session) -> int:
    """Zero every user's usage counter. Returns the number of users updated."""
    result = db.execute(
        update(User).values(requests_used=0).execution_options(synchronize_session=False)
    )
    db.commit()

    logger.info(f"Reset daily usage for {result.rowcount} users")
    return result.rowcount
