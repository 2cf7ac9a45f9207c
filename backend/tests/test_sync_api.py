"""Integration tests for the sync queue endpoints."""
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from conftest import ScriptedCollaborator

from mailsync.errors import PermanentSyncError
from mailsync.jobs import SyncDomain
from mailsync.models import AccountRecord
from mailsync.services.accounts import SqlAccountDirectory
from mailsync.services.collaborators import CollaboratorRegistry
from mailsync.services.governor import ConcurrencyGovernor, GovernorLimits
from mailsync.services.job_store import JobStore
from mailsync.services.sync_service import SyncService, get_sync_service


@pytest.fixture
def service(session_factory, db_session, backoff, clock):
    db_session.add_all([
        AccountRecord(id="acct-work", provider="imap", display_name="Work", protocols={"email": "imap"}),
        AccountRecord(id="acct-home", provider="google", display_name="Home"),
    ])
    db_session.commit()
    registry = CollaboratorRegistry({
        SyncDomain.EMAIL: ScriptedCollaborator(7),
        SyncDomain.CALENDAR: ScriptedCollaborator(PermanentSyncError("calendar disabled")),
    })
    return SyncService(
        JobStore(session_factory, default_max_attempts=5, backoff=backoff, clock=clock),
        SqlAccountDirectory(session_factory),
        registry,
        governor=ConcurrencyGovernor(GovernorLimits()),
    )


@pytest.fixture
def api(client, service):
    """Client wired to a test-local sync service."""
    from mailsync.main import app

    app.dependency_overrides[get_sync_service] = lambda: service
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_sync_service, None)


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_queue_job_returns_id(api, service):
    r = api.post("/api/sync/jobs", json={"account_id": "acct-work", "domain": "email", "payload": {"folder": "INBOX"}})
    assert r.status_code == 201
    data = r.json()
    assert data["status"] == "pending"
    job = service.store.get(data["job_id"])
    assert job.payload == {"folder": "INBOX"}
    assert job.max_attempts == 5


def test_queue_job_unknown_account_is_404(api, service):
    r = api.post("/api/sync/jobs", json={"account_id": "nobody", "domain": "email"})
    assert r.status_code == 404
    assert "nobody" in r.json()["detail"]
    assert service.store.pending_count() == 0


def test_queue_job_validation(api):
    assert api.post("/api/sync/jobs", json={"account_id": "acct-work", "domain": "fax"}).status_code == 422
    assert api.post("/api/sync/jobs", json={"account_id": "", "domain": "email"}).status_code == 422
    r = api.post("/api/sync/jobs", json={"account_id": "acct-work", "domain": "email", "max_attempts": 0})
    assert r.status_code == 422


def test_negative_delay_is_due_now(api, service, clock):
    r = api.post("/api/sync/jobs", json={"account_id": "acct-work", "domain": "email", "run_after_secs": -300})
    assert service.store.get(r.json()["job_id"]).run_after == clock.now


def test_run_returns_summary_and_message(api):
    api.post("/api/sync/jobs", json={"account_id": "acct-work", "domain": "email"})
    api.post("/api/sync/jobs", json={"account_id": "acct-home", "domain": "calendar"})
    r = api.post("/api/sync/run")
    assert r.status_code == 200
    data = r.json()
    assert data["completed_jobs"] == 1
    assert data["failed_jobs"] == 1
    assert data["email_messages_synced"] == 7
    assert data["title"] == "Sync needs attention"
    assert data["message"] == "7 email items | 1 failed jobs"


def test_list_and_get_jobs(api):
    ok = api.post("/api/sync/jobs", json={"account_id": "acct-work", "domain": "email"}).json()["job_id"]
    dead = api.post("/api/sync/jobs", json={"account_id": "acct-home", "domain": "calendar"}).json()["job_id"]
    api.post("/api/sync/jobs", json={"account_id": "acct-home", "domain": "email", "run_after_secs": 3600})
    api.post("/api/sync/run")

    r = api.get("/api/sync/jobs")
    assert r.status_code == 200
    assert r.json()["total"] == 3

    r = api.get("/api/sync/jobs", params={"status": "dead_letter"})
    items = r.json()["items"]
    assert [i["id"] for i in items] == [dead]
    assert items[0]["last_error"] == "calendar disabled"
    assert items[0]["attempt_count"] == 1

    r = api.get("/api/sync/jobs", params={"account_id": "acct-home", "domain": "email"})
    assert r.json()["items"][0]["status"] == "pending"

    r = api.get(f"/api/sync/jobs/{ok}")
    assert r.status_code == 200
    assert r.json()["status"] == "succeeded"
    assert api.get("/api/sync/jobs/missing").status_code == 404


def test_status_counts(api):
    api.post("/api/sync/jobs", json={"account_id": "acct-work", "domain": "email"})
    api.post("/api/sync/jobs", json={"account_id": "acct-work", "domain": "email", "run_after_secs": 60})
    r = api.get("/api/sync/status")
    assert r.status_code == 200
    data = r.json()
    assert data["pending_sync_jobs"] == 2
    assert data["counts"] == {"pending": 2, "running": 0, "succeeded": 0, "dead_letter": 0}
    assert data["registered_domains"] == ["email", "calendar"]


def test_run_async_hands_off_to_celery(api, monkeypatch):
    import mailsync.tasks as tasks

    monkeypatch.setattr(tasks, "run_sync_queue", SimpleNamespace(delay=lambda: SimpleNamespace(id="task-123")))
    r = api.post("/api/sync/run-async")
    assert r.status_code == 202
    assert r.json() == {"task_id": "task-123", "status": "queued"}


def test_queue_job_storage_error_is_503(api, service):
    class BrokenSession:
        def get(self, *args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("unable to open database file"))

        def close(self):
            pass

    service.accounts = SqlAccountDirectory(BrokenSession)
    r = api.post("/api/sync/jobs", json={"account_id": "acct-work", "domain": "email"})
    assert r.status_code == 503
    assert "storage unavailable" in r.json()["detail"]


def test_schedule_endpoint_queues_each_pair_once(api):
    r = api.post("/api/sync/schedule")
    assert r.status_code == 200
    # two accounts x two registered domains
    assert r.json() == {"scheduled_jobs": 4}
    assert api.post("/api/sync/schedule").json() == {"scheduled_jobs": 0}
    assert api.get("/api/sync/status").json()["pending_sync_jobs"] == 4
