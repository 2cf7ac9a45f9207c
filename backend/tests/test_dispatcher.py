"""End-to-end dispatch runs against a real sqlite queue."""
import threading
import time
from datetime import timedelta

import pytest
from sqlalchemy.exc import InterfaceError

from conftest import FakeAccounts, ScriptedCollaborator

from mailsync.errors import PermanentSyncError, TransientSyncError
from mailsync.jobs import JobStatus, SyncDomain
from mailsync.services.collaborators import CollaboratorRegistry
from mailsync.services.dispatcher import SyncDispatcher
from mailsync.services.executor import JobExecutor
from mailsync.services.governor import ConcurrencyGovernor, GovernorLimits
from mailsync.services.summary import SyncRunSummary
from mailsync.services.sync_service import SyncService


def _service(store, collaborators, limits=None, accounts=("A", "B", "C", "D"), timeout_s=5.0):
    directory = FakeAccounts(*accounts)
    registry = CollaboratorRegistry(collaborators)
    governor = ConcurrencyGovernor(limits or GovernorLimits())
    executor = JobExecutor(registry, directory, timeout_s=timeout_s)
    return SyncService(store, directory, registry, governor=governor, executor=executor)


def _record_batches(service):
    batches = []
    original = service.dispatcher._run_batch

    def spy(claimed, summary):
        batches.append([(j.account_id, j.domain) for j in claimed])
        return original(claimed, summary)

    service.dispatcher._run_batch = spy
    return batches


def test_empty_queue_returns_all_zero_summary(store):
    service = _service(store, {SyncDomain.EMAIL: ScriptedCollaborator(1)})
    summary = service.run_queue()
    assert summary == SyncRunSummary(0, 0, 0, 0, 0, 0)
    assert summary.is_empty


def test_round_robin_first_batch_spreads_accounts(store):
    email = ScriptedCollaborator(3)
    calendar = ScriptedCollaborator(2)
    service = _service(
        store,
        {SyncDomain.EMAIL: email, SyncDomain.CALENDAR: calendar},
        GovernorLimits(max_parallel_jobs=2, max_jobs_per_account=1, max_jobs_per_account_domain=1),
    )
    for _ in range(3):
        service.queue_job("A", SyncDomain.EMAIL, {"folder": "INBOX"})
    service.queue_job("B", SyncDomain.CALENDAR, {})

    batches = _record_batches(service)
    summary = service.run_queue()

    assert sorted(batches[0]) == [("A", SyncDomain.EMAIL), ("B", SyncDomain.CALENDAR)]
    assert all(len({acct for acct, _ in batch}) == len(batch) for batch in batches)
    assert summary.completed_jobs == 4
    assert summary.email_messages_synced == 9
    assert summary.calendar_events_synced == 2
    assert summary.tasks_synced == 0


def test_transient_failures_until_dead_letter(store, clock):
    collab = ScriptedCollaborator(TransientSyncError("imap timeout"))
    service = _service(store, {SyncDomain.EMAIL: collab})
    job_id = service.queue_job("A", SyncDomain.EMAIL, {}, max_attempts=3)

    run_afters = [store.get(job_id).run_after]

    first = service.run_queue()
    assert (first.retried_jobs, first.failed_jobs, first.completed_jobs) == (1, 0, 0)
    run_afters.append(store.get(job_id).run_after)

    # not due yet: nothing happens
    assert service.run_queue().is_empty

    clock.now = run_afters[-1]
    second = service.run_queue()
    assert (second.retried_jobs, second.failed_jobs) == (1, 0)
    run_afters.append(store.get(job_id).run_after)

    clock.now = run_afters[-1]
    third = service.run_queue()
    assert (third.retried_jobs, third.failed_jobs) == (0, 1)

    job = store.get(job_id)
    assert job.status == JobStatus.DEAD_LETTER
    assert job.attempt_count == 3
    assert job.last_error == "imap timeout"
    assert run_afters[0] < run_afters[1] < run_afters[2]
    assert len(collab.calls) == 3


def test_permanent_error_dead_letters_on_first_attempt(store):
    service = _service(store, {SyncDomain.TASKS: ScriptedCollaborator(PermanentSyncError("list deleted"))})
    job_id = service.queue_job("A", SyncDomain.TASKS, {}, max_attempts=5)
    summary = service.run_queue()
    assert summary.failed_jobs == 1
    assert summary.retried_jobs == 0
    job = store.get(job_id)
    assert job.status == JobStatus.DEAD_LETTER
    assert job.attempt_count == 1


def test_second_run_is_a_no_op_once_everything_is_terminal(store):
    service = _service(
        store,
        {
            SyncDomain.EMAIL: ScriptedCollaborator(5),
            SyncDomain.CALENDAR: ScriptedCollaborator(PermanentSyncError("403")),
        },
    )
    service.queue_job("A", SyncDomain.EMAIL, {})
    service.queue_job("B", SyncDomain.CALENDAR, {})
    first = service.run_queue()
    assert first.completed_jobs == 1 and first.failed_jobs == 1

    before = {s: n for s, n in store.counts_by_status().items()}
    second = service.run_queue()
    assert second == SyncRunSummary()
    assert store.counts_by_status() == before


def test_budgets_never_exceeded_under_load(store):
    limits = GovernorLimits(max_parallel_jobs=3, max_jobs_per_account=2, max_jobs_per_account_domain=1)
    per_account_active: dict[str, int] = {}
    per_account_peak: dict[str, int] = {}
    lock = threading.Lock()

    class TrackingCollaborator(ScriptedCollaborator):
        def sync(self, account, payload):
            with lock:
                per_account_active[account.id] = per_account_active.get(account.id, 0) + 1
                per_account_peak[account.id] = max(per_account_peak.get(account.id, 0), per_account_active[account.id])
            try:
                return super().sync(account, payload)
            finally:
                with lock:
                    per_account_active[account.id] -= 1

    email = TrackingCollaborator(1, delay_s=0.02)
    calendar = TrackingCollaborator(1, delay_s=0.02)
    tasks = TrackingCollaborator(1, delay_s=0.02)
    service = _service(store, {SyncDomain.EMAIL: email, SyncDomain.CALENDAR: calendar, SyncDomain.TASKS: tasks}, limits)
    for account in ("A", "B", "C", "D"):
        for domain in SyncDomain:
            for _ in range(2):
                service.queue_job(account, domain, {})

    summary = service.run_queue()

    assert summary.completed_jobs == 24
    gov = service.governor
    assert gov.peak_total <= 3
    assert gov.peak_per_account <= 2
    assert gov.peak_per_account_domain <= 1
    assert max(per_account_peak.values()) <= 2
    assert email.max_active + calendar.max_active + tasks.max_active >= 1
    assert gov.in_flight()["total"] == 0


def test_one_failing_account_does_not_block_others(store, clock):
    class PerAccount(ScriptedCollaborator):
        def sync(self, account, payload):
            if account.id == "A":
                raise TransientSyncError("provider outage")
            return super().sync(account, payload)

    service = _service(store, {SyncDomain.EMAIL: PerAccount(4)})
    for account in ("A", "A", "B", "C"):
        service.queue_job(account, SyncDomain.EMAIL, {})
    summary = service.run_queue()
    assert summary.completed_jobs == 2
    assert summary.retried_jobs == 2
    assert summary.email_messages_synced == 8


def test_deadline_stops_new_claims_but_finishes_in_flight(store, clock):
    class ClockAdvancing(ScriptedCollaborator):
        def sync(self, account, payload):
            clock.advance(minutes=10)
            return super().sync(account, payload)

    service = _service(
        store,
        {SyncDomain.EMAIL: ClockAdvancing(1)},
        GovernorLimits(max_parallel_jobs=1, max_jobs_per_account=1, max_jobs_per_account_domain=1),
    )
    ids = [service.queue_job(a, SyncDomain.EMAIL, {}) for a in ("A", "B", "C")]
    summary = service.run_queue(deadline=clock.now + timedelta(minutes=5))

    assert summary.completed_jobs == 1
    statuses = [store.get(i).status for i in ids]
    assert statuses.count(JobStatus.SUCCEEDED) == 1
    assert statuses.count(JobStatus.PENDING) == 2


def test_deadline_already_passed_claims_nothing(store, clock):
    service = _service(store, {SyncDomain.EMAIL: ScriptedCollaborator(1)})
    job_id = service.queue_job("A", SyncDomain.EMAIL, {})
    assert service.run_queue(deadline=clock.now).is_empty
    assert store.get(job_id).status == JobStatus.PENDING


def test_timeout_counts_as_retry(store):
    service = _service(store, {SyncDomain.EMAIL: ScriptedCollaborator(1, delay_s=1.0)}, timeout_s=0.05)
    job_id = service.queue_job("A", SyncDomain.EMAIL, {})
    summary = service.run_queue()
    assert summary.retried_jobs == 1
    assert "timed out" in store.get(job_id).last_error


def test_stale_running_jobs_recovered_at_run_start(store, clock):
    service = _service(store, {SyncDomain.EMAIL: ScriptedCollaborator(2)})
    job_id = service.queue_job("A", SyncDomain.EMAIL, {})
    # simulate a crash: claimed but never completed
    store.claim(job_id, clock.now)
    assert service.run_queue().is_empty

    clock.advance(seconds=service.dispatcher.stale_running_after_s + 1)
    summary = service.run_queue()
    assert summary.completed_jobs == 1
    job = store.get(job_id)
    assert job.status == JobStatus.SUCCEEDED
    assert job.attempt_count == 1


def test_unknown_account_at_execution_is_dead_lettered(store):
    service = _service(store, {SyncDomain.EMAIL: ScriptedCollaborator(1)})
    job_id = store.enqueue("removed-account", SyncDomain.EMAIL, {})
    summary = service.run_queue()
    assert summary.failed_jobs == 1
    assert store.get(job_id).status == JobStatus.DEAD_LETTER


def test_outcome_write_error_still_releases_every_slot(store, monkeypatch):
    service = _service(
        store,
        {SyncDomain.EMAIL: ScriptedCollaborator(1)},
        GovernorLimits(max_parallel_jobs=2, max_jobs_per_account=1, max_jobs_per_account_domain=1),
    )
    service.queue_job("A", SyncDomain.EMAIL, {})
    service.queue_job("B", SyncDomain.EMAIL, {})

    def dropped_connection(job_id, outcome, now=None):
        raise InterfaceError("UPDATE", {}, Exception("connection already closed"))

    monkeypatch.setattr(service.store, "complete", dropped_connection)
    with pytest.raises(InterfaceError):
        service.run_queue()
    assert service.governor.available() == 2
    assert service.governor.in_flight()["total"] == 0


def test_claim_batch_pages_without_skipping_due_jobs(store, clock):
    names = {}
    for name, account in (("A1", "A"), ("A2", "A"), ("B1", "B"), ("C1", "C")):
        names[store.enqueue(account, SyncDomain.EMAIL)] = name
        clock.advance(seconds=1)

    registry = CollaboratorRegistry({SyncDomain.EMAIL: ScriptedCollaborator(1)})
    dispatcher = SyncDispatcher(
        store,
        ConcurrencyGovernor(GovernorLimits(max_parallel_jobs=2, max_jobs_per_account=1, max_jobs_per_account_domain=1)),
        JobExecutor(registry, FakeAccounts("A", "B", "C")),
        scan_limit=2,
    )
    claimed = dispatcher._claim_batch(2)
    assert [names[j.id] for j in claimed] == ["A1", "B1"]


def test_job_for_unregistered_domain_stays_pending(store):
    service = _service(store, {SyncDomain.EMAIL: ScriptedCollaborator(2)})
    tasks_job = service.queue_job("A", SyncDomain.TASKS, {})
    service.queue_job("A", SyncDomain.EMAIL, {})

    summary = service.run_queue()

    assert summary.completed_jobs == 1
    assert summary.failed_jobs == 0
    job = store.get(tasks_job)
    assert job.status == JobStatus.PENDING
    assert job.attempt_count == 0
    assert job.last_error is None


def test_timed_out_job_not_reclaimed_while_its_call_still_runs(store, clock):
    release = threading.Event()

    class Hanging(ScriptedCollaborator):
        def sync(self, account, payload):
            release.wait(5)
            return super().sync(account, payload)

    collab = Hanging(3)
    service = _service(store, {SyncDomain.EMAIL: collab}, timeout_s=0.05)
    job_id = service.queue_job("A", SyncDomain.EMAIL, {})
    assert service.run_queue().retried_jobs == 1

    clock.advance(hours=1)
    assert job_id in service.executor.busy_job_ids()
    assert service.run_queue().is_empty
    assert store.get(job_id).status == JobStatus.PENDING

    release.set()
    give_up = time.monotonic() + 5
    while service.executor.busy_job_ids() and time.monotonic() < give_up:
        time.sleep(0.01)
    summary = service.run_queue()
    assert summary.completed_jobs == 1
    assert len(collab.calls) == 2
