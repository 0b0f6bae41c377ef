"""Integration tables: connections, sync mappings, external-id mappings, sync logs."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import Field, SQLModel

from freightsync.models.sync import utcnow

INTEGRATION_TYPES = ("accounting", "tracking", "email", "storage", "messaging", "custom")
PROVIDERS = (
    "accurate",
    "jurnal",
    "xero",
    "google_sheets",
    "whatsapp",
    "telegram",
    "slack",
    "google_drive",
    "dropbox",
)
SYNC_DIRECTIONS = ("push", "pull", "bidirectional")
SYNC_FREQUENCIES = ("realtime", "hourly", "daily", "manual")
SYNC_STATUSES = ("running", "completed", "failed", "partial")


def _new_id() -> str:
    return str(uuid4())


class IntegrationConnection(SQLModel, table=True):
    """One external system endpoint (accounting package, GPS tracker, ...)."""

    __tablename__ = "integration_connection"

    id: str = Field(default_factory=_new_id, primary_key=True)
    connection_code: str = Field(unique=True, index=True)
    connection_name: str
    integration_type: str  # see INTEGRATION_TYPES
    provider: str  # see PROVIDERS

    # base_url, token_url, client_id, client_secret, ...
    config: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    is_active: bool = True
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None

    # OAuth tokens; rewritten by the refresh hook and the re-auth flow
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)


class SyncMapping(SQLModel, table=True):
    """Pairs one local table with one remote entity for a connection."""

    __tablename__ = "sync_mapping"

    id: str = Field(default_factory=_new_id, primary_key=True)
    connection_id: str = Field(foreign_key="integration_connection.id", index=True)
    local_table: str
    remote_entity: str

    # [{"local_field": ..., "remote_field": ..., "transform": ...}, ...]
    field_mappings: List[Dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON)
    )
    sync_direction: str = "push"  # see SYNC_DIRECTIONS
    sync_frequency: str = "realtime"  # see SYNC_FREQUENCIES
    # [{"field": ..., "operator": ..., "value": ...}, ...] or None
    filter_conditions: Optional[List[Dict[str, Any]]] = Field(
        default=None, sa_column=Column(JSON)
    )
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class ExternalIdMapping(SQLModel, table=True):
    """
    Local record id ↔ external system id.

    Looked up before every push to choose create vs. update; written after
    every successful create.
    """

    __tablename__ = "external_id_mapping"
    __table_args__ = (
        UniqueConstraint("connection_id", "local_table", "local_id"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    connection_id: str = Field(foreign_key="integration_connection.id", index=True)
    local_table: str = Field(index=True)
    local_id: str
    external_id: str
    external_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    synced_at: datetime = Field(default_factory=utcnow)


class SyncLog(SQLModel, table=True):
    """Audit row for each sync run."""

    __tablename__ = "sync_log"

    id: str = Field(default_factory=_new_id, primary_key=True)
    connection_id: str = Field(foreign_key="integration_connection.id", index=True)
    mapping_id: Optional[str] = None
    sync_type: str  # "push", "pull", "full_sync"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    status: str = "running"  # "running", "completed", "failed", "partial"
    # [{"record_id", "error_code", "error_message", "timestamp"}, ...]
    error_details: Optional[List[Dict[str, Any]]] = Field(
        default=None, sa_column=Column(JSON)
    )
    created_at: datetime = Field(default_factory=utcnow)
