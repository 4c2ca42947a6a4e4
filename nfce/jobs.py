"""
In-memory scrape jobs with captcha handoff.

FLOW PER JOB:
1. POST /jobs -> create_job + start_job (status: created -> running).
2. The background task runs one SefazBAClient.fetch_by_access_key with an
   AsyncCaptchaSolver bound to the job.
3. The solver publishes the challenge (waiting_captcha) and parks on a
   single-slot mailbox until POST /jobs/{id}/captcha delivers the answer.
4. The task always finalizes: completed with the receipt, or failed with
   the error text.

CLEANUP:
- APScheduler janitor evicts jobs older than the retention window and
  cancels any that are still running.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from nfce.captcha import CaptchaChallenge, CaptchaSolution, CaptchaSolver
from nfce.config import settings
from nfce.errors import CaptchaHandoffError, JobNotWaitingError, ScrapeTimeoutError
from nfce.models import Receipt
from nfce.portal_client import SefazBAClient

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    WAITING_CAPTCHA = "waiting_captcha"
    COMPLETED = "completed"
    FAILED = "failed"


class Job:
    """One scrape request. Lifecycle fields are guarded by ``_lock``."""

    def __init__(self, access_key: str, job_id: str | None = None):
        self.id = job_id or uuid.uuid4().hex
        self.access_key = access_key
        self.created_at = datetime.now(timezone.utc)
        self.status = JobStatus.CREATED
        self.result: Receipt | None = None
        self.error: str = ""
        self.captcha: CaptchaChallenge | None = None
        self.task: asyncio.Task | None = None
        self._lock = threading.Lock()
        self._waiter: asyncio.Future | None = None

    def set_running(self) -> None:
        with self._lock:
            self.status = JobStatus.RUNNING
            self.captcha = None

    def set_waiting_captcha(self, challenge: CaptchaChallenge) -> None:
        with self._lock:
            self.status = JobStatus.WAITING_CAPTCHA
            self.captcha = challenge

    def set_completed(self, receipt: Receipt) -> None:
        with self._lock:
            self.status = JobStatus.COMPLETED
            self.result = receipt
            self.captcha = None
            self.error = ""

    def set_failed(self, error: str) -> None:
        with self._lock:
            self.status = JobStatus.FAILED
            self.error = error
            self.captcha = None

    async def wait_for_solution(self, challenge: CaptchaChallenge) -> CaptchaSolution:
        """Publish ``challenge`` and park until an answer is delivered."""
        waiter = asyncio.get_running_loop().create_future()
        with self._lock:
            self._waiter = waiter
            self.status = JobStatus.WAITING_CAPTCHA
            self.captcha = challenge
        logger.info("Job %s waiting for captcha %s", self.id, challenge.id)

        try:
            text = await waiter
        finally:
            with self._lock:
                self._waiter = None

        self.set_running()
        return CaptchaSolution(text=text, challenge_id=challenge.id)

    def submit_captcha(self, solution: str, challenge_id: str | None = None) -> None:
        """Hand an answer to the parked task. Never blocks.

        Raises JobNotWaitingError (job untouched) when the job is not waiting
        or the challenge id does not match, CaptchaHandoffError when no task
        is parked on the mailbox.
        """
        with self._lock:
            if self.status != JobStatus.WAITING_CAPTCHA:
                raise JobNotWaitingError(f"job {self.id} is {self.status.value}, not waiting for a captcha")
            if challenge_id and self.captcha is not None and challenge_id != self.captcha.id:
                raise JobNotWaitingError(f"job {self.id} is waiting for captcha {self.captcha.id}, not {challenge_id}")
            waiter = self._waiter
            if waiter is None or waiter.done():
                raise CaptchaHandoffError(f"job {self.id} has no task waiting for the captcha")
            waiter.set_result(solution)
            self.status = JobStatus.RUNNING
            self.captcha = None

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view of the job; absent fields are omitted."""
        with self._lock:
            data: dict[str, Any] = {
                "id": self.id,
                "status": self.status.value,
                "accessKey": self.access_key,
                "createdAt": self.created_at.isoformat(),
            }
            if self.result is not None:
                data["result"] = self.result.to_dict()
            if self.error:
                data["error"] = self.error
            if self.captcha is not None:
                data["captcha"] = {
                    "id": self.captcha.id,
                    "image": base64.b64encode(self.captcha.image).decode("ascii"),
                    "contentType": self.captcha.content_type,
                }
            return data


class AsyncCaptchaSolver:
    """CaptchaSolver that hands the challenge to whoever polls the job."""

    def __init__(self, job: Job):
        self._job = job

    async def solve(self, challenge: CaptchaChallenge) -> CaptchaSolution:
        return await self._job.wait_for_solution(challenge)


ClientFactory = Callable[[CaptchaSolver], SefazBAClient]


def _default_client_factory(solver: CaptchaSolver) -> SefazBAClient:
    return SefazBAClient(captcha_solver=solver)


class JobManager:
    """Registry of jobs. The lock guards membership only."""

    def __init__(
        self,
        client_factory: ClientFactory | None = None,
        job_timeout: float | None = None,
        retention: float | None = None,
    ):
        self._client_factory = client_factory or _default_client_factory
        self._job_timeout = settings.job_timeout_seconds if job_timeout is None else job_timeout
        self._retention = timedelta(
            seconds=settings.job_retention_seconds if retention is None else retention
        )
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()
        self._cancelling: set[asyncio.Task] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def create_job(self, access_key: str) -> Job:
        job = Job(access_key)
        with self._lock:
            self._jobs[job.id] = job
        logger.info("Created job %s for key %s", job.id, access_key)
        return job

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def start_job(self, job: Job) -> None:
        """Mark running and launch the background task. Needs a running loop."""
        job.set_running()
        job.task = asyncio.create_task(self._run(job), name=f"nfce-job-{job.id}")

    async def _run(self, job: Job) -> None:
        client = self._client_factory(AsyncCaptchaSolver(job))
        try:
            result = await asyncio.wait_for(
                client.fetch_by_access_key(job.access_key),
                timeout=self._job_timeout,
            )
            job.set_completed(result.receipt)
            logger.info("Job %s completed", job.id)
        except asyncio.TimeoutError:
            error = ScrapeTimeoutError(f"job exceeded {self._job_timeout}s deadline")
            job.set_failed(str(error))
            logger.warning("Job %s timed out", job.id)
        except asyncio.CancelledError:
            job.set_failed("job cancelled")
            logger.info("Job %s cancelled", job.id)
            raise
        except Exception as e:
            job.set_failed(str(e) or type(e).__name__)
            logger.error("Job %s failed: %s", job.id, e, exc_info=True)
        finally:
            try:
                await client.close()
            except Exception:
                logger.warning("Failed to close portal client for job %s", job.id, exc_info=True)

    def cleanup(self, now: datetime | None = None) -> int:
        """Evict jobs created before ``now - retention``. Returns the count."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - self._retention
        with self._lock:
            expired = [job for job in self._jobs.values() if job.created_at < cutoff]
            for job in expired:
                del self._jobs[job.id]

        for job in expired:
            if job.task is not None and not job.task.done():
                job.task.cancel()
                # the loop holds tasks weakly; keep one until its finally runs
                self._cancelling.add(job.task)
                job.task.add_done_callback(self._cancelling.discard)

        if expired:
            logger.info("Evicted %d expired jobs", len(expired))
        return len(expired)

    async def cleanup_expired(self) -> None:
        """Scheduler entry point."""
        self.cleanup()

    async def shutdown(self) -> None:
        """Cancel every unfinished job and wait for the tasks to settle."""
        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()

        tasks = [job.task for job in jobs if job.task is not None and not job.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d running jobs", len(tasks))


def setup_scheduler(manager: JobManager) -> AsyncIOScheduler:
    """Configure and return the janitor scheduler for ``manager``."""
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        manager.cleanup_expired,
        IntervalTrigger(seconds=settings.janitor_interval_seconds),
        id="cleanup_expired_jobs",
        name="cleanup_expired_jobs",
    )
    return scheduler
