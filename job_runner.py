"""
job_runner.py — bounded worker pool for identification jobs.

  enqueue(job_id)        schedule process_job on the next free slot
  process_job(job_id)    claim → download files → identify → write result
  resume_pending_jobs()  on startup: reset "processing" jobs and enqueue all

At most ``concurrency`` jobs run at once. A failed job is put back to
"pending" and enqueued again right away until it has used ``max_attempts``
claims, then it is marked "failed". Errors that can't succeed on retry
(bad input, limits exceeded) fail the job on the first attempt.

Startup recovery resets every "processing" job unconditionally, which is only
safe while a single process owns the database.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

import config
import database
from enrichment import IdentificationResult, InputFile
from errors import (
    IdentificationError, NotFoundError, NotPendingError, ValidationError,
)
from storage import ObjectStorage

logger = logging.getLogger(__name__)

IdentifyFn = Callable[..., Awaitable[IdentificationResult]]


def error_record(exc: BaseException) -> dict:
    """JSON-safe description of a failure, stored on the job."""
    if isinstance(exc, IdentificationError):
        record = exc.to_dict()
    else:
        record = {
            "message": str(exc) or type(exc).__name__,
            "code": "INTERNAL_ERROR",
            "type": type(exc).__name__,
        }
    trace = getattr(exc, "serp_trace", None)
    if trace:
        record["serpTrace"] = trace
    return record


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, IdentificationError):
        return exc.retryable
    return True


class JobRunner:

    def __init__(
        self,
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        storage: Optional[ObjectStorage] = None,
        identify: Optional[IdentifyFn] = None,
    ) -> None:
        self.concurrency = concurrency or config.ID_QUEUE_CONCURRENCY
        self.max_attempts = max_attempts or config.ID_JOB_MAX_ATTEMPTS
        self._storage = storage
        self._identify = identify
        self._slots = asyncio.Semaphore(self.concurrency)
        self._tasks: set[asyncio.Task] = set()

    @property
    def storage(self) -> ObjectStorage:
        if self._storage is None:
            from storage import get_storage
            self._storage = get_storage()
        return self._storage

    @property
    def identify(self) -> IdentifyFn:
        if self._identify is None:
            from enrichment import run_product_identification
            self._identify = run_product_identification
        return self._identify

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ── Queue ─────────────────────────────────────────────────────────────────

    def enqueue(self, job_id: str) -> asyncio.Task:
        """Schedule the job; returns immediately."""
        task = asyncio.get_running_loop().create_task(self._run_slot(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_slot(self, job_id: str) -> None:
        async with self._slots:
            try:
                await self.process_job(job_id)
            except Exception as exc:
                logger.error("Unexpected error in queue for job %s: %s", job_id, exc, exc_info=True)

    async def join(self) -> None:
        """Wait until no job is queued or running (requeues included)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Worker ────────────────────────────────────────────────────────────────

    async def _load_files(self, files_meta: list[dict]) -> list[InputFile]:
        async def _one(meta: dict) -> InputFile:
            stored = await self.storage.download(meta["path"])
            return InputFile(
                buffer=stored.buffer,
                mime_type=meta.get("mimeType") or stored.content_type or "application/octet-stream",
                original_name=meta.get("originalName") or "upload",
                size=stored.size,
            )
        return list(await asyncio.gather(*[_one(m) for m in files_meta]))

    async def process_job(self, job_id: str) -> None:
        try:
            job = await database.claim_job(job_id)
        except (NotFoundError, NotPendingError):
            return
        except Exception as exc:
            logger.error("Failed to claim job %s: %s", job_id, exc, exc_info=True)
            return

        logger.info("Job %s claimed (attempt %d/%d)", job_id, job.attempts, self.max_attempts)
        payload = job.payload or {}

        try:
            if not job.files:
                raise ValidationError("Job has no files to process")
            files = await self._load_files(job.files)
            result = await self.identify(
                files=files,
                barcodes=payload.get("barcodes") or "",
                locale=payload.get("locale") or config.DEFAULT_LOCALE,
                model_override=payload.get("model") or None,
            )
        except Exception as exc:
            await self._handle_failure(job, exc)
            return

        try:
            await database.update_job(
                job_id,
                status=database.STATUS_DONE,
                finished_at=database.utc_now(),
                result=result.bundle,
                serp_trace=result.serp_trace,
                model_used=result.model_used,
                error=None,
            )
        except Exception as exc:
            logger.error("Failed to store result for job %s: %s", job_id, exc)
            await self._handle_failure(job, exc)
            return
        logger.info("Job %s done (%d search call(s), model=%s)",
                    job_id, len(result.serp_trace), result.model_used)

    async def _handle_failure(self, job: database.Job, exc: Exception) -> None:
        record = error_record(exc)
        retry = is_retryable(exc) and job.attempts < self.max_attempts

        if retry:
            logger.warning("Job %s failed (attempt %d/%d), requeueing: %s",
                           job.id, job.attempts, self.max_attempts, exc)
            await database.update_job(job.id, status=database.STATUS_PENDING, error=record)
            self.enqueue(job.id)
            return

        logger.error("Job %s failed permanently after %d attempt(s): %s",
                     job.id, job.attempts, exc, exc_info=not isinstance(exc, IdentificationError))
        fields: dict[str, Any] = {
            "status": database.STATUS_FAILED,
            "finished_at": database.utc_now(),
            "error": record,
        }
        trace = getattr(exc, "serp_trace", None)
        if trace:
            fields["serp_trace"] = trace
            fields["model_used"] = getattr(exc, "model_used", None)
        await database.update_job(job.id, **fields)

    # ── Recovery / submission ─────────────────────────────────────────────────

    async def resume_pending_jobs(self) -> int:
        """Re-enqueue unfinished jobs after a restart. Returns how many."""
        jobs = await database.list_jobs_by_status(
            [database.STATUS_PENDING, database.STATUS_PROCESSING]
        )
        for job in jobs:
            if job.status == database.STATUS_PROCESSING:
                await database.update_job(job.id, status=database.STATUS_PENDING)
            self.enqueue(job.id)
        logger.info("Job runner resumed %d pending job(s)", len(jobs))
        return len(jobs)

    async def submit_job(
        self,
        files: list[InputFile],
        barcodes: str = "",
        locale: Optional[str] = None,
        model: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> database.Job:
        """Store the raw files, create the job and enqueue it."""
        job_id = job_id or uuid.uuid4().hex
        files_meta = []
        for f in files or []:
            meta = await self.storage.upload_job_file(f.buffer, f.mime_type, job_id, f.original_name)
            files_meta.append({
                "path": meta["path"],
                "mimeType": meta["mimeType"],
                "originalName": meta["originalName"],
            })

        job = await database.create_job(
            {
                "files": files_meta,
                "barcodes": barcodes or "",
                "locale": locale or config.DEFAULT_LOCALE,
                "model": model or None,
            },
            job_id=job_id,
        )
        self.enqueue(job.id)
        return job
