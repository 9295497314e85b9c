from typing import Any, Dict, Iterator

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from core.env import env_bool, env_str

load_dotenv()


def resolve_database_url() -> URL:
    """Pick ``DATABASE_URL`` (or ``TEST_DATABASE_URL``) and refuse non-PostgreSQL unless allowed."""
    raw = env_str("DATABASE_URL") or env_str("TEST_DATABASE_URL")
    if not raw:
        raise RuntimeError("DATABASE_URL or TEST_DATABASE_URL must be set.")
    url = make_url(raw)
    if url.get_backend_name() != "postgresql" and not env_bool("DATABASE_ALLOW_NON_POSTGRES", False):
        raise RuntimeError(f"DATABASE_URL must be a PostgreSQL DSN. Current backend: {url.get_backend_name()}")
    return url


def engine_options(url: URL) -> Dict[str, Any]:
    backend = url.get_backend_name()
    if backend == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": backend == "postgresql"}


DATABASE_URL = resolve_database_url()
engine = create_engine(DATABASE_URL, **engine_options(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Declarative base for users, entitlements, usage and purchase mappings."""


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
