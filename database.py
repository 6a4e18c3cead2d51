from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
import logging
import os
from config import settings

logger = logging.getLogger(__name__)

# Database setup
_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "40"))
_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "10"))
_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "1800"))

_IS_SQLITE = settings.DATABASE_URL.startswith("sqlite")

engine = create_engine(
    settings.DATABASE_URL,
    pool_size=_POOL_SIZE,
    max_overflow=_MAX_OVERFLOW,
    pool_timeout=_POOL_TIMEOUT,
    pool_recycle=_POOL_RECYCLE,
    pool_pre_ping=True,
    connect_args={"check_same_thread": False} if _IS_SQLITE else {}
)


def set_sqlite_pragma(dbapi_connection, connection_record):
    """WAL and reasonable SQLite pragmas to improve concurrent access"""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA busy_timeout=5000;")
        cursor.execute("PRAGMA foreign_keys=ON;")
    finally:
        cursor.close()


if _IS_SQLITE:
    event.listen(engine, "connect", set_sqlite_pragma)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def create_tables(bind=None):
    """Create all database tables"""
    from models import Base  # Import here to avoid circular dependency
    try:
        Base.metadata.create_all(bind=bind or engine)
    except OperationalError as exc:
        # Ignore concurrent creation attempts when tables already exist (SQLite multi-worker startup)
        if "already exists" in str(exc).lower():
            logger.info(f"Ignoring table creation race condition: {exc}")
        else:
            raise

def get_db():
    """Database dependency for FastAPI"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def connect_db():
    """Prepare the schema (for startup)"""
    create_tables()
    logger.info(f"Database ready: {engine.url.render_as_string(hide_password=True)}")

def disconnect_db():
    """Release pooled connections (for shutdown)"""
    engine.dispose()
