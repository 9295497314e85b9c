import pytest
from sqlalchemy.engine import make_url

from database import engine_options, resolve_database_url


def test_postgres_url_is_accepted_and_pinged(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://clipvault:secret@db/clipvault")
    monkeypatch.setenv("DATABASE_ALLOW_NON_POSTGRES", "0")

    url = resolve_database_url()

    assert url.get_backend_name() == "postgresql"
    assert engine_options(url) == {"pool_pre_ping": True}


def test_non_postgres_url_requires_opt_in(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("DATABASE_ALLOW_NON_POSTGRES", "0")
    with pytest.raises(RuntimeError):
        resolve_database_url()

    monkeypatch.setenv("DATABASE_ALLOW_NON_POSTGRES", "1")
    assert resolve_database_url().get_backend_name() == "sqlite"


def test_test_database_url_is_the_fallback(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("DATABASE_ALLOW_NON_POSTGRES", "1")
    assert resolve_database_url().database == ":memory:"

    monkeypatch.delenv("TEST_DATABASE_URL")
    with pytest.raises(RuntimeError):
        resolve_database_url()


def test_sqlite_connections_are_shared_across_threads() -> None:
    options = engine_options(make_url("sqlite+pysqlite:///:memory:"))
    assert options == {"connect_args": {"check_same_thread": False}}
