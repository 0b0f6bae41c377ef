"""Shared test fixtures."""
from datetime import timedelta
from typing import Dict, Generator, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from freightsync.models.integration import (  # noqa: F401
    ExternalIdMapping,
    IntegrationConnection,
    SyncLog,
    SyncMapping,
)
from freightsync.models.sync import AdapterResponse, utcnow
from freightsync.sync.adapter import ExternalApiAdapter


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="connection")
def connection_fixture(test_session: Session) -> IntegrationConnection:
    """A persisted accounting connection with a token valid for an hour."""
    conn = IntegrationConnection(
        connection_code="ACC-01",
        connection_name="Accurate Online",
        integration_type="accounting",
        provider="accurate",
        config={
            "base_url": "https://api.example.test/v1",
            "token_url": "https://auth.example.test/token",
        },
        access_token="access-1",
        refresh_token="refresh-1",
        token_expires_at=utcnow() + timedelta(hours=1),
    )
    test_session.add(conn)
    test_session.commit()
    test_session.refresh(conn)
    return conn


@pytest.fixture(name="invoice_mapping")
def invoice_mapping_fixture(test_session: Session, connection) -> SyncMapping:
    mapping = SyncMapping(
        connection_id=connection.id,
        local_table="invoices",
        remote_entity="sales-invoices",
        field_mappings=[
            {"local_field": "id", "remote_field": "id"},
            {"local_field": "number", "remote_field": "invoiceNo"},
            {"local_field": "total", "remote_field": "amount", "transform": "currency_format"},
        ],
    )
    test_session.add(mapping)
    test_session.commit()
    test_session.refresh(mapping)
    return mapping


class FakeSleep:
    """Records backoff delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay_ms: float) -> None:
        self.delays.append(delay_ms)


@pytest.fixture(name="fake_sleep")
def fake_sleep_fixture() -> FakeSleep:
    return FakeSleep()


class FakeRemote:
    """
    In-memory external system.

    fail_codes maps a payload "id" to the error code every call for that
    record returns.
    """

    def __init__(self, fail_codes: Optional[Dict[str, str]] = None, pull_records=None):
        self.fail_codes = fail_codes or {}
        self.pull_records = pull_records
        self.created: List[dict] = []
        self.updated: List[tuple] = []
        self.fetch_params: List[dict] = []
        self.tokens: List[str] = []
        self.closed = 0

    def _failure(self, payload: dict) -> Optional[AdapterResponse]:
        code = self.fail_codes.get(str(payload.get("id", "")))
        if code:
            return AdapterResponse(success=False, error=f"remote said {code}", error_code=code)
        return None

    async def create_record(self, payload):
        failure = self._failure(payload)
        if failure:
            return failure
        self.created.append(payload)
        return AdapterResponse(success=True, external_id=f"ext-{len(self.created)}")

    async def update_record(self, external_id, payload):
        failure = self._failure(payload)
        if failure:
            return failure
        self.updated.append((external_id, payload))
        return AdapterResponse(success=True)

    async def fetch_records(self, params):
        self.fetch_params.append(params)
        return AdapterResponse(success=True, data=list(self.pull_records or []))

    async def aclose(self):
        self.closed += 1

    def adapter(self) -> ExternalApiAdapter:
        return ExternalApiAdapter(
            create_record=self.create_record,
            update_record=self.update_record,
            fetch_records=self.fetch_records if self.pull_records is not None else None,
            on_token_refreshed=self.tokens.append,
            aclose=self.aclose,
        )


@pytest.fixture(name="remote")
def remote_fixture() -> FakeRemote:
    return FakeRemote()
