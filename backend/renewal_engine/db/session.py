"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from renewal_engine.models import Base
from renewal_engine.core.config import settings

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    # background loops run the sync services in worker threads
    connect_args = {"check_same_thread": False}

# Create engine
engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    pool_recycle=3600,
    connect_args=connect_args
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database (create all tables)"""
    Base.metadata.create_all(bind=engine)
