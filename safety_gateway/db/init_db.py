from safety_gateway.db.session import engine, Base
from safety_gateway.core.logger import logger
from safety_gateway.models.user import User  # noqa: F401
from safety_gateway.models.moderation_request import ModerationRequest  # noqa: F401


def init_db():
    logger.info("Creating tables...")
    Base.metadata.create_all(bind=engine)
    logger.info("Tables created successfully")

if __name__ == "__main__":
    init_db()
