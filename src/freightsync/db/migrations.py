"""
Idempotent column-migration hook, run from get_engine() after create_all().

create_all() only creates missing tables. The nullable columns listed here
are added to an existing table with ALTER TABLE ADD COLUMN when absent, so
a database whose tables predate them keeps working. Running it again is a
no-op.
"""
from sqlalchemy import inspect, text


def run_migrations(engine) -> None:
    """Add any missing nullable columns to existing tables.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        _add_column_if_missing(conn, "integration_connection", "refresh_token", "TEXT")
        _add_column_if_missing(conn, "integration_connection", "token_expires_at", "TIMESTAMP")
        _add_column_if_missing(conn, "integration_connection", "last_error", "TEXT")
        _add_column_if_missing(conn, "external_id_mapping", "external_data", "JSON")
        _add_column_if_missing(conn, "sync_mapping", "filter_conditions", "JSON")
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Tables that do not exist yet are left to create_all().
    """
    inspector = inspect(conn)
    if not inspector.has_table(table):
        return
    existing_columns = {col["name"] for col in inspector.get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
