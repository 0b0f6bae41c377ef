"""Tests for database migration helpers."""
import pytest
from sqlalchemy import inspect, text
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from freightsync.db.migrations import run_migrations


@pytest.fixture(name="migration_engine")
def migration_engine_fixture():
    """In-memory SQLite engine with full schema, for testing migrations."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="legacy_engine")
def legacy_engine_fixture():
    """Database whose integration_connection table lacks the nullable token columns."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    with engine.connect() as conn:
        conn.execute(text(
            "CREATE TABLE integration_connection ("
            "id VARCHAR PRIMARY KEY, connection_code VARCHAR, connection_name VARCHAR, "
            "integration_type VARCHAR, provider VARCHAR, access_token VARCHAR)"
        ))
        conn.commit()
    yield engine


def _columns(engine, table):
    return {col["name"] for col in inspect(engine).get_columns(table)}


class TestRunMigrations:
    def test_run_migrations_does_not_raise(self, migration_engine):
        """Migration should complete without errors on a fresh DB."""
        run_migrations(migration_engine)

    def test_run_migrations_is_idempotent(self, migration_engine):
        run_migrations(migration_engine)
        run_migrations(migration_engine)  # second call must be safe

    def test_adds_missing_columns(self, legacy_engine):
        run_migrations(legacy_engine)
        columns = _columns(legacy_engine, "integration_connection")
        assert {"refresh_token", "token_expires_at", "last_error"} <= columns

    def test_missing_tables_left_alone(self, legacy_engine):
        run_migrations(legacy_engine)
        assert not inspect(legacy_engine).has_table("sync_mapping")

    def test_second_run_on_existing_table_is_noop(self, legacy_engine):
        run_migrations(legacy_engine)
        before = _columns(legacy_engine, "integration_connection")
        run_migrations(legacy_engine)
        assert _columns(legacy_engine, "integration_connection") == before
