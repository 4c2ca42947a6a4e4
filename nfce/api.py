"""HTTP job API: start scrapes, poll them, answer their captchas."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from nfce.access_key import is_valid_access_key, normalize_access_key
from nfce.config import settings
from nfce.errors import CaptchaHandoffError, JobNotWaitingError
from nfce.jobs import JobManager, setup_scheduler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class CreateJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_key: str = Field(alias="accessKey")


class SubmitCaptchaRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    solution: str
    challenge_id: str | None = Field(default=None, alias="challengeId")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(manager: JobManager | None = None) -> FastAPI:
    """Build the API around ``manager`` (a fresh JobManager by default)."""
    manager = manager or JobManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = setup_scheduler(manager)
        scheduler.start()
        logger.info("Job janitor started (every %ds)", settings.janitor_interval_seconds)
        yield
        scheduler.shutdown(wait=False)
        await manager.shutdown()
        logger.info("Job API stopped")

    app = FastAPI(title="NFC-e Portal Worker", version="0.1.0", lifespan=lifespan)
    app.state.manager = manager

    origins = [o.strip() for o in settings.cors_allow_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "invalid request body"})

    @app.post("/jobs", status_code=202)
    async def create_job(body: CreateJobRequest):
        access_key = normalize_access_key(body.access_key)
        if not access_key:
            raise HTTPException(status_code=400, detail="accessKey is required")
        if not is_valid_access_key(access_key):
            raise HTTPException(status_code=400, detail="invalid accessKey")

        job = manager.create_job(access_key)
        manager.start_job(job)
        return {"jobId": job.id}

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str):
        job = manager.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        return job.snapshot()

    @app.post("/jobs/{job_id}/captcha")
    async def submit_captcha(job_id: str, body: SubmitCaptchaRequest):
        job = manager.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        try:
            job.submit_captcha(body.solution, body.challenge_id)
        except JobNotWaitingError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except CaptchaHandoffError as e:
            logger.error("Captcha handoff failed for job %s: %s", job_id, e)
            raise HTTPException(status_code=500, detail=str(e)) from e
        return {"status": "accepted"}

    return app
