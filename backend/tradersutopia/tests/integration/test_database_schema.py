"""
Integration tests for schema creation.
"""

from sqlalchemy import create_engine, inspect

from scripts import init_db
from tradersutopia.database.session import create_tables
from tradersutopia.db_base import Base

EXPECTED_TABLES = {"accounts", "subscriptions", "webhook_events", "billing_events"}


def test_create_tables_on_empty_database():
    engine = create_engine("sqlite:///:memory:")

    tables = create_tables(engine)

    assert EXPECTED_TABLES <= set(tables)
    assert set(tables) == set(Base.metadata.tables)


def test_create_tables_is_idempotent(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'billing.db'}")

    first = create_tables(engine)
    second = create_tables(engine)

    assert first == second


def test_init_db_script(tmp_path, monkeypatch):
    database_path = tmp_path / "billing.db"
    monkeypatch.setenv("DATABASE_URL", "postgresql://unused")

    assert init_db.main(["--database-url", f"sqlite:///{database_path}"]) == 0

    tables = inspect(create_engine(f"sqlite:///{database_path}")).get_table_names()
    assert EXPECTED_TABLES <= set(tables)


def test_init_db_script_without_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert init_db.main([]) == 1
