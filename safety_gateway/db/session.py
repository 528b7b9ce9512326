from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from safety_gateway.core.config import settings

# Sync endpoints run in a threadpool, so SQLite connections must be shareable
connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(
    settings.database_url,
    future=True,
    echo=settings.database_echo,
    connect_args=connect_args,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()

# Dependency
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
