"""
Tests for nfce.jobs: job lifecycle, captcha handoff, janitor.

The portal client is replaced by a fake that asks its solver for one
captcha and returns a canned receipt.
"""

from __future__ import annotations

import asyncio
import base64
from datetime import datetime, timedelta, timezone

import pytest

from nfce.captcha import CaptchaChallenge
from nfce.errors import CaptchaHandoffError, InvoiceNotFoundError, JobNotWaitingError
from nfce.jobs import AsyncCaptchaSolver, Job, JobManager, JobStatus, setup_scheduler
from nfce.models import Receipt
from nfce.portal_client import ScrapeResult

KEY = "29250306057223031484650140003829591141073162"


# ── Helpers ──────────────────────────────────────────────


class FakeClient:
    """Stands in for SefazBAClient: one captcha round, then a receipt."""

    def __init__(self, solver, error: Exception | None = None, challenge_id: str = "1700000000000"):
        self.solver = solver
        self.error = error
        self.challenge_id = challenge_id
        self.solutions: list[str] = []
        self.closed = False

    async def fetch_by_access_key(self, key: str) -> ScrapeResult:
        challenge = CaptchaChallenge(id=self.challenge_id, image=b"PNG")
        solution = await self.solver.solve(challenge)
        self.solutions.append(solution.text)
        if self.error is not None:
            raise self.error
        return ScrapeResult(receipt=Receipt(key=key, total=5733))

    async def close(self) -> None:
        self.closed = True


def _manager(clients: list, error: Exception | None = None, **kwargs) -> JobManager:
    def factory(solver):
        client = FakeClient(solver, error=error)
        clients.append(client)
        return client

    kwargs.setdefault("job_timeout", 5)
    kwargs.setdefault("retention", 120)
    return JobManager(client_factory=factory, **kwargs)


async def _wait_for_status(job: Job, status: JobStatus, timeout: float = 2.0) -> None:
    async def poll():
        while job.status != status:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


# ── Lifecycle ────────────────────────────────────────────


class TestJobLifecycle:
    async def test_full_handoff(self):
        clients: list[FakeClient] = []
        manager = _manager(clients)
        job = manager.create_job(KEY)
        assert job.status is JobStatus.CREATED

        manager.start_job(job)
        assert job.status is JobStatus.RUNNING

        await _wait_for_status(job, JobStatus.WAITING_CAPTCHA)
        snap = job.snapshot()
        assert snap["status"] == "waiting_captcha"
        assert snap["captcha"]["id"] == "1700000000000"
        assert base64.b64decode(snap["captcha"]["image"]) == b"PNG"
        assert snap["captcha"]["contentType"] == "image/png"

        job.submit_captcha("abc12")
        assert job.status is JobStatus.RUNNING
        await job.task

        assert job.status is JobStatus.COMPLETED
        assert job.result.total == 5733
        assert clients[0].solutions == ["abc12"]
        assert clients[0].closed is True

        snap = job.snapshot()
        assert snap["result"]["key"] == KEY
        assert "captcha" not in snap
        assert "error" not in snap

    async def test_failure_is_recorded(self):
        clients: list[FakeClient] = []
        manager = _manager(clients, error=InvoiceNotFoundError("portal responded: nfc-e não encontrada"))
        job = manager.create_job(KEY)
        manager.start_job(job)

        await _wait_for_status(job, JobStatus.WAITING_CAPTCHA)
        job.submit_captcha("abc12")
        await job.task

        assert job.status is JobStatus.FAILED
        assert "não encontrada" in job.error
        assert job.snapshot()["error"] == job.error
        assert clients[0].closed is True

    async def test_deadline_fails_job(self):
        clients: list[FakeClient] = []
        manager = _manager(clients, job_timeout=0.05)
        job = manager.create_job(KEY)
        manager.start_job(job)

        await job.task  # nobody answers the captcha

        assert job.status is JobStatus.FAILED
        assert "deadline" in job.error
        assert clients[0].closed is True

    async def test_cancelled_task_finalizes(self):
        manager = _manager([])
        job = manager.create_job(KEY)
        manager.start_job(job)
        await _wait_for_status(job, JobStatus.WAITING_CAPTCHA)

        job.task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await job.task

        assert job.status is JobStatus.FAILED
        assert job.error == "job cancelled"


# ── Captcha submission ───────────────────────────────────


class TestSubmitCaptcha:
    @pytest.mark.unit
    def test_rejected_when_not_waiting(self):
        job = Job(KEY)
        with pytest.raises(JobNotWaitingError):
            job.submit_captcha("abc12")
        assert job.status is JobStatus.CREATED

    @pytest.mark.unit
    def test_rejected_when_finished(self):
        job = Job(KEY)
        job.set_completed(Receipt(key=KEY))
        with pytest.raises(JobNotWaitingError):
            job.submit_captcha("abc12")
        assert job.status is JobStatus.COMPLETED

    @pytest.mark.unit
    def test_waiting_without_listener_is_handoff_error(self):
        job = Job(KEY)
        job.set_waiting_captcha(CaptchaChallenge(id="1", image=b"PNG"))
        with pytest.raises(CaptchaHandoffError):
            job.submit_captcha("abc12")
        assert job.status is JobStatus.WAITING_CAPTCHA

    async def test_challenge_id_mismatch(self):
        manager = _manager([])
        job = manager.create_job(KEY)
        manager.start_job(job)
        await _wait_for_status(job, JobStatus.WAITING_CAPTCHA)

        with pytest.raises(JobNotWaitingError):
            job.submit_captcha("abc12", challenge_id="stale")
        assert job.status is JobStatus.WAITING_CAPTCHA

        job.submit_captcha("abc12", challenge_id="1700000000000")
        await job.task
        assert job.status is JobStatus.COMPLETED

    async def test_second_submission_rejected(self):
        manager = _manager([])
        job = manager.create_job(KEY)
        manager.start_job(job)
        await _wait_for_status(job, JobStatus.WAITING_CAPTCHA)

        job.submit_captcha("first")
        with pytest.raises(JobNotWaitingError):
            job.submit_captcha("second")
        await job.task
        assert job.status is JobStatus.COMPLETED

    async def test_async_solver_returns_delivered_text(self):
        job = Job(KEY)
        solver = AsyncCaptchaSolver(job)
        pending = asyncio.create_task(solver.solve(CaptchaChallenge(id="c1", image=b"PNG")))
        await _wait_for_status(job, JobStatus.WAITING_CAPTCHA)

        job.submit_captcha("  xyz  ")
        solution = await pending
        assert solution.text == "  xyz  "
        assert solution.challenge_id == "c1"
        assert job.status is JobStatus.RUNNING


# ── Registry and janitor ─────────────────────────────────


class TestJobManager:
    @pytest.mark.unit
    def test_create_and_get(self):
        manager = _manager([])
        job = manager.create_job(KEY)
        assert manager.get_job(job.id) is job
        assert manager.get_job("missing") is None
        assert len(manager) == 1

    @pytest.mark.unit
    def test_job_ids_are_unique(self):
        manager = _manager([])
        ids = {manager.create_job(KEY).id for _ in range(50)}
        assert len(ids) == 50

    @pytest.mark.unit
    def test_cleanup_evicts_after_retention(self):
        manager = _manager([], retention=120)
        created = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
        job = manager.create_job(KEY)
        job.created_at = created

        assert manager.cleanup(now=created + timedelta(seconds=119)) == 0
        assert manager.get_job(job.id) is job

        assert manager.cleanup(now=created + timedelta(seconds=121)) == 1
        assert manager.get_job(job.id) is None

    @pytest.mark.unit
    def test_cleanup_ignores_status(self):
        manager = _manager([], retention=60)
        created = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
        done = manager.create_job(KEY)
        done.set_completed(Receipt(key=KEY))
        fresh = manager.create_job(KEY)
        done.created_at = created
        fresh.created_at = created + timedelta(seconds=50)

        assert manager.cleanup(now=created + timedelta(seconds=61)) == 1
        assert manager.get_job(done.id) is None
        assert manager.get_job(fresh.id) is fresh

    async def test_cleanup_cancels_running_job(self):
        manager = _manager([], retention=60)
        job = manager.create_job(KEY)
        manager.start_job(job)
        await _wait_for_status(job, JobStatus.WAITING_CAPTCHA)

        assert manager.cleanup(now=job.created_at + timedelta(seconds=61)) == 1
        with pytest.raises(asyncio.CancelledError):
            await job.task
        assert job.status is JobStatus.FAILED

    async def test_cleanup_holds_cancelled_task_until_done(self):
        clients: list[FakeClient] = []
        manager = _manager(clients, retention=60)
        job = manager.create_job(KEY)
        manager.start_job(job)
        await _wait_for_status(job, JobStatus.WAITING_CAPTCHA)
        task = job.task

        manager.cleanup(now=job.created_at + timedelta(seconds=61))
        assert task in manager._cancelling

        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0)

        assert not manager._cancelling
        assert clients[0].closed is True

    async def test_shutdown_cancels_everything(self):
        manager = _manager([])
        jobs = [manager.create_job(KEY) for _ in range(3)]
        for job in jobs:
            manager.start_job(job)
        for job in jobs:
            await _wait_for_status(job, JobStatus.WAITING_CAPTCHA)

        await manager.shutdown()

        assert len(manager) == 0
        assert all(job.task.done() for job in jobs)
        assert all(job.status is JobStatus.FAILED for job in jobs)

    @pytest.mark.unit
    def test_setup_scheduler(self):
        scheduler = setup_scheduler(_manager([]))
        job = scheduler.get_job("cleanup_expired_jobs")
        assert job is not None
        assert job.trigger.interval == timedelta(seconds=60)
