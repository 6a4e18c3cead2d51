import os
from pathlib import Path
from dotenv import load_dotenv
from typing import Optional

# Load .env robustly (try project root and CWD)
_ROOT = Path(__file__).resolve().parent
_candidates = [
    _ROOT / ".env",
    Path.cwd() / ".env",
]
for p in _candidates:
    if p.exists():
        load_dotenv(p, override=False)

_DATA_DIR_ENV = os.getenv("NOTES_DATA_DIR")
if _DATA_DIR_ENV:
    _DATA_DIR = Path(_DATA_DIR_ENV).expanduser()
else:
    _DATA_DIR = _ROOT / "data"

_DATABASE_URL_ENV = os.getenv("NOTES_DATABASE_URL") or os.getenv("DATABASE_URL")
if not _DATABASE_URL_ENV:
    _DATA_DIR.mkdir(parents=True, exist_ok=True)
    _DATABASE_URL_ENV = f"sqlite:///{_DATA_DIR / 'campaign_notes.db'}"

_CHROMA_DB_PATH_ENV = os.getenv("CHROMA_DB_PATH") or str(_DATA_DIR / "chroma_db")


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


class Settings:
    # Database
    DATABASE_URL: str = _DATABASE_URL_ENV
    DATA_DIR: str = str(_DATA_DIR)

    # ChromaDB / vector projection
    CHROMA_DB_PATH: str = _CHROMA_DB_PATH_ENV

    # Neo4j / graph projection
    NEO4J_URI: str = os.getenv("NEO4J_URI", "bolt://localhost:7687")
    NEO4J_USER: str = os.getenv("NEO4J_USER", "neo4j")
    NEO4J_PASSWORD: str = os.getenv("NEO4J_PASSWORD", "neo4j")

    # API Keys
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    INTERNAL_API_KEY: Optional[str] = os.getenv("INTERNAL_API_KEY")

    # External AI services
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    AI_API_URL: str = os.getenv("AI_API_URL", "http://localhost:8001")
    LLM_MODEL_ROUTE: str = os.getenv("LLM_MODEL_ROUTE", "gemini")

    # Timeouts for external calls (seconds)
    EMBEDDING_TIMEOUT: float = _float_env("EMBEDDING_TIMEOUT", 30.0)
    LLM_TIMEOUT: float = _float_env("LLM_TIMEOUT", 120.0)
    VECTOR_STORE_TIMEOUT: float = _float_env("VECTOR_STORE_TIMEOUT", 15.0)
    GRAPH_STORE_TIMEOUT: float = _float_env("GRAPH_STORE_TIMEOUT", 15.0)

    # Note worker pool
    NOTE_WORKERS_CORE: int = _int_env("NOTE_WORKERS_CORE", 5)
    NOTE_WORKERS_MAX: int = _int_env("NOTE_WORKERS_MAX", 10)
    NOTE_QUEUE_DEPTH: int = _int_env("NOTE_QUEUE_DEPTH", 25)
    NOTE_SUBMIT_TIMEOUT: float = _float_env("NOTE_SUBMIT_TIMEOUT", 0.0)  # 0 = reject when full
    NOTE_SHUTDOWN_TIMEOUT: float = _float_env("NOTE_SHUTDOWN_TIMEOUT", 30.0)

    # Store sync retry policy
    SYNC_RETRY_MAX_ATTEMPTS: int = _int_env("SYNC_RETRY_MAX_ATTEMPTS", 5)
    SYNC_RETRY_BASE_DELAY: float = _float_env("SYNC_RETRY_BASE_DELAY", 30.0)
    SYNC_RETRY_MAX_DELAY: float = _float_env("SYNC_RETRY_MAX_DELAY", 3600.0)
    SYNC_STALE_AFTER: float = _float_env("SYNC_STALE_AFTER", 900.0)

    # Celery
    CELERY_BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    CELERY_RESULT_BACKEND: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

    # HTTP
    CORS_ORIGINS: list = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

settings = Settings()
