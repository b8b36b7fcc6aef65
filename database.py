from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from config import settings
from models import Base
import logging

# Configure logger
logger = logging.getLogger(__name__)


def create_db_engine(database_url: str | None = None) -> Engine:
    """Create a database engine for the given URL (defaults to settings)."""
    url = database_url or settings.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable not set")

    connect_args = {}
    if url.startswith("sqlite"):
        # Context reads and action writes run in worker threads
        connect_args["check_same_thread"] = False
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = create_db_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def verify_tables_exist(bind: Engine | None = None):
    """Ensure required tables exist, create if missing."""
    bind = bind or engine
    inspector = inspect(bind)
    existing_tables = set(inspector.get_table_names())
    missing = [name for name in Base.metadata.tables if name not in existing_tables]

    if missing:
        logger.info(f"Creating missing tables: {', '.join(missing)}")
    Base.metadata.create_all(bind=bind)
