"""Integration tests for /sync routes."""
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from freightsync.api.main import create_app
from freightsync.api.routes.sync import get_sync_service
from freightsync.db.engine import get_session
from freightsync.models.integration import SyncLog
from freightsync.models.sync import RetryConfig
from freightsync.sync.service import IntegrationSyncService

from conftest import FakeRemote


@pytest.fixture(name="remote")
def remote_fixture():
    return FakeRemote(pull_records=[{"id": "r1"}])


@pytest.fixture(name="client")
def client_fixture(engine, remote, fake_sleep):
    app = create_app()

    def override_session():
        with Session(engine) as s:
            yield s

    def override_service():
        return IntegrationSyncService(
            engine=engine,
            adapter_factory=lambda conn, mapping: remote.adapter(),
            record_loader=AsyncMock(return_value=[{"id": "inv-1", "number": "INV/001", "total": 5}]),
            retry_config=RetryConfig(max_retries=1, base_delay_ms=1, max_delay_ms=1),
            sleep_fn=fake_sleep,
        )

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_sync_service] = override_service
    with TestClient(app) as c:
        yield c


def _add_log(engine, connection_id, status, started_at, **counts):
    with Session(engine) as s:
        log = SyncLog(
            connection_id=connection_id,
            sync_type="push",
            status=status,
            started_at=started_at,
            completed_at=started_at.replace(minute=started_at.minute + 1),
            **counts,
        )
        s.add(log)
        s.commit()
        return log.id


class TestTriggerRoutes:
    def test_trigger_full_sync_runs_in_background(self, client, engine, connection, invoice_mapping, remote):
        resp = client.post("/sync/trigger", json={"connection_id": connection.id})

        assert resp.status_code == 202
        assert "started" in resp.json()["message"].lower()
        # TestClient runs background tasks before returning
        with Session(engine) as s:
            log = s.exec(select(SyncLog)).one()
        assert log.sync_type == "full_sync"
        assert log.status == "completed"
        assert len(remote.created) == 1

    def test_trigger_pull(self, client, engine, connection, invoice_mapping):
        resp = client.post("/sync/trigger", json={
            "connection_id": connection.id,
            "mapping_id": invoice_mapping.id,
            "sync_type": "pull",
        })
        assert resp.status_code == 202
        with Session(engine) as s:
            log = s.exec(select(SyncLog)).one()
        assert log.sync_type == "pull"
        assert log.records_created == 1

    def test_trigger_does_not_run_when_patched(self, client, connection):
        with patch("freightsync.api.routes.sync._do_sync", new=AsyncMock()) as do_sync:
            resp = client.post("/sync/trigger", json={"connection_id": connection.id})
        assert resp.status_code == 202
        do_sync.assert_awaited_once()

    def test_unknown_connection_404(self, client):
        resp = client.post("/sync/trigger", json={"connection_id": "missing"})
        assert resp.status_code == 404

    def test_push_requires_mapping(self, client, connection):
        resp = client.post("/sync/trigger", json={"connection_id": connection.id, "sync_type": "push"})
        assert resp.status_code == 422

    def test_unknown_mapping_404(self, client, connection):
        resp = client.post("/sync/trigger", json={
            "connection_id": connection.id, "mapping_id": "missing", "sync_type": "push",
        })
        assert resp.status_code == 404

    def test_unknown_sync_type(self, client, connection):
        resp = client.post("/sync/trigger", json={"connection_id": connection.id, "sync_type": "both"})
        assert resp.status_code == 422

    def test_retry_unknown_log_404(self, client):
        assert client.post("/sync/logs/missing/retry").status_code == 404

    def test_retry_creates_new_log(self, client, engine, connection, invoice_mapping):
        with Session(engine) as s:
            failed = SyncLog(
                connection_id=connection.id,
                mapping_id=invoice_mapping.id,
                sync_type="push",
                status="failed",
                records_processed=1,
                records_failed=1,
                error_details=[{"record_id": "inv-1", "error_code": "503",
                                "error_message": "down", "timestamp": "t"}],
            )
            s.add(failed)
            s.commit()
            failed_id = failed.id

        resp = client.post(f"/sync/logs/{failed_id}/retry")

        assert resp.status_code == 202
        with Session(engine) as s:
            logs = s.exec(select(SyncLog).where(SyncLog.id != failed_id)).all()
        assert len(logs) == 1
        assert logs[0].status == "completed"
        assert logs[0].records_created == 1


class TestStatusRoutes:
    def test_status_never_run(self, client):
        resp = client.get("/sync/status")
        assert resp.status_code == 200
        assert resp.json()["status"] == "never_run"

    def test_status_latest_for_connection(self, client, engine, connection):
        _add_log(engine, connection.id, "failed", datetime(2026, 1, 1, 2, 0), records_processed=1, records_failed=1)
        _add_log(engine, connection.id, "completed", datetime(2026, 1, 2, 2, 0), records_processed=4, records_created=4)

        resp = client.get("/sync/status", params={"connection_id": connection.id})
        body = resp.json()
        assert body["status"] == "completed"
        assert body["records_created"] == 4
        assert body["duration_seconds"] == 60

    def test_logs_filtered_by_status(self, client, engine, connection):
        _add_log(engine, connection.id, "failed", datetime(2026, 1, 1, 2, 0))
        _add_log(engine, connection.id, "completed", datetime(2026, 1, 2, 2, 0))

        resp = client.get("/sync/logs", params={"status": "failed"})
        assert [log["status"] for log in resp.json()] == ["failed"]

    def test_logs_bad_status(self, client):
        assert client.get("/sync/logs", params={"status": "done"}).status_code == 422

    def test_stats(self, client, engine, connection):
        _add_log(engine, connection.id, "completed", datetime(2026, 1, 1, 2, 0), records_processed=2, records_created=2)
        _add_log(engine, connection.id, "partial", datetime(2026, 1, 2, 2, 0),
                 records_processed=2, records_created=1, records_failed=1)

        stats = client.get("/sync/stats").json()
        assert stats["total_syncs"] == 2
        assert stats["successful_syncs"] == 1
        assert stats["total_records_failed"] == 1
        assert stats["success_rate"] == 50.0
