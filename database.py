"""
database.py — async SQLite persistence via aiosqlite.

Tables:
  identification_jobs — one row per identification job (state machine below)

Job lifecycle:
  pending ──claim──▶ processing ──▶ done
     ▲                   │
     └──── requeue ──────┤
                         └──────▶ failed

claim_job() is the only way into "processing" and runs inside a
BEGIN IMMEDIATE transaction, so of N concurrent claims exactly one wins.
payload / result / error / serp_trace are stored as JSON text.

The DB file is created automatically on first run.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import aiosqlite

from errors import NotFoundError, NotPendingError, ValidationError

logger = logging.getLogger(__name__)

# Store the DB in a dedicated data/ directory so Docker volume mounts work
# correctly (mount ./data:/app/data) and the file survives container restarts.
_DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
_DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = str(_DATA_DIR / "pipeline.db")
_lock = asyncio.Lock()          # serialise schema creation

# Seconds a writer waits for another writer's lock before SQLite gives up
_BUSY_TIMEOUT = 30.0

STATUS_PENDING    = "pending"
STATUS_PROCESSING = "processing"
STATUS_DONE       = "done"
STATUS_FAILED     = "failed"
JOB_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_DONE, STATUS_FAILED)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Data model ────────────────────────────────────────────────────────────────

@dataclass
class Job:
    id: str
    status: str
    attempts: int
    payload: dict
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: Optional[Any] = None
    error: Optional[dict] = None
    serp_trace: Optional[list] = None
    model_used: Optional[str] = None
    files: list[dict] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.files = list((self.payload or {}).get("files") or [])


# ── Schema ────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS identification_jobs (
    id          TEXT    PRIMARY KEY,
    status      TEXT    NOT NULL DEFAULT 'pending',
    attempts    INTEGER NOT NULL DEFAULT 0,
    payload     TEXT    NOT NULL,           -- JSON {files, barcodes, locale, model}
    result      TEXT,                       -- JSON ProductBundle (done)
    error       TEXT,                       -- JSON {message, code, type, serpTrace?}
    serp_trace  TEXT,                       -- JSON list of search calls
    model_used  TEXT,
    created_at  TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL,
    started_at  TEXT,
    finished_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON identification_jobs (status);
"""

_JSON_COLUMNS = {"payload", "result", "error", "serp_trace"}
_UPDATABLE = {
    "status", "attempts", "payload", "result", "error", "serp_trace",
    "model_used", "started_at", "finished_at",
}


def _connect() -> aiosqlite.Connection:
    # isolation_level=None: transactions are opened explicitly with BEGIN
    return aiosqlite.connect(DB_PATH, timeout=_BUSY_TIMEOUT, isolation_level=None)


async def init_db() -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    async with _lock:
        async with _connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(_SCHEMA)
    logger.info("Database initialised at %s", DB_PATH)


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, ensure_ascii=False)


def _loads(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


def _row_to_job(r: aiosqlite.Row) -> Job:
    return Job(
        id=r["id"],
        status=r["status"],
        attempts=r["attempts"],
        payload=_loads(r["payload"]) or {},
        result=_loads(r["result"]),
        error=_loads(r["error"]),
        serp_trace=_loads(r["serp_trace"]),
        model_used=r["model_used"],
        created_at=r["created_at"],
        updated_at=r["updated_at"],
        started_at=r["started_at"],
        finished_at=r["finished_at"],
    )


def _validate_payload(payload: Any) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Job payload must be an object")
    files = payload.get("files") or []
    if not isinstance(files, list) or not all(
        isinstance(f, dict) and isinstance(f.get("path"), str) and f["path"] for f in files
    ):
        raise ValidationError("files must be a list of objects with a path")
    barcodes = payload.get("barcodes") or ""
    if not isinstance(barcodes, str):
        raise ValidationError("barcodes must be a string")
    if not files and not barcodes.strip():
        raise ValidationError("Provide at least one image or barcode")
    return {**payload, "files": files, "barcodes": barcodes}


# ── Job operations ────────────────────────────────────────────────────────────

async def create_job(payload: dict, job_id: Optional[str] = None) -> Job:
    """
    Insert a new pending job. Raises ValidationError on a malformed payload
    or when ``job_id`` is already taken.
    """
    clean = _validate_payload(payload)
    job_id = job_id or uuid.uuid4().hex
    now = utc_now()
    try:
        async with _connect() as db:
            await db.execute(
                """INSERT INTO identification_jobs
                   (id, status, attempts, payload, created_at, updated_at)
                   VALUES (?, ?, 0, ?, ?, ?)""",
                (job_id, STATUS_PENDING, _dumps(clean), now, now),
            )
    except aiosqlite.IntegrityError as exc:
        raise ValidationError(f"Job {job_id} already exists") from exc
    logger.info("Job %s created (%d file(s))", job_id, len(clean["files"]))
    return Job(id=job_id, status=STATUS_PENDING, attempts=0, payload=clean,
               created_at=now, updated_at=now)


async def get_job(job_id: str) -> Optional[Job]:
    """Return the job, or None if it doesn't exist."""
    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT * FROM identification_jobs WHERE id = ?", (job_id,)
        ) as cur:
            row = await cur.fetchone()
    return _row_to_job(row) if row else None


async def claim_job(job_id: str) -> Job:
    """
    Atomically move a pending job to processing and count the attempt.

    Raises NotFoundError if the job doesn't exist, NotPendingError if another
    worker got there first (or the job already finished).
    """
    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        await db.execute("BEGIN IMMEDIATE")
        try:
            async with db.execute(
                "SELECT * FROM identification_jobs WHERE id = ?", (job_id,)
            ) as cur:
                row = await cur.fetchone()
            if row is None:
                raise NotFoundError(f"Job {job_id} not found")
            if row["status"] != STATUS_PENDING:
                raise NotPendingError(f"Job {job_id} is {row['status']}, not pending")

            now = utc_now()
            started_at = row["started_at"] or now
            attempts = row["attempts"] + 1
            await db.execute(
                """UPDATE identification_jobs
                   SET status = ?, attempts = ?, started_at = ?, updated_at = ?
                   WHERE id = ?""",
                (STATUS_PROCESSING, attempts, started_at, now, job_id),
            )
            await db.execute("COMMIT")
        except BaseException:
            await db.execute("ROLLBACK")
            raise

    job = _row_to_job(row)
    job.status = STATUS_PROCESSING
    job.attempts = attempts
    job.started_at = started_at
    job.updated_at = now
    return job


async def update_job(job_id: str, **fields: Any) -> None:
    """Merge ``fields`` into the job and stamp updated_at."""
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Unknown job field(s): {', '.join(sorted(unknown))}")
    if "status" in fields and fields["status"] not in JOB_STATUSES:
        raise ValueError(f"Invalid job status: {fields['status']}")

    columns = []
    values: list[Any] = []
    for name, value in fields.items():
        columns.append(f"{name} = ?")
        values.append(_dumps(value) if name in _JSON_COLUMNS else value)
    columns.append("updated_at = ?")
    values.append(utc_now())
    values.append(job_id)

    async with _connect() as db:
        await db.execute(
            f"UPDATE identification_jobs SET {', '.join(columns)} WHERE id = ?",
            values,
        )


async def list_jobs_by_status(statuses: Iterable[str]) -> list[Job]:
    """All jobs in any of ``statuses``, oldest first."""
    statuses = list(statuses)
    if not statuses:
        return []
    placeholders = ", ".join("?" for _ in statuses)
    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            f"SELECT * FROM identification_jobs WHERE status IN ({placeholders}) "
            "ORDER BY created_at",
            statuses,
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_job(r) for r in rows]


async def count_jobs_by_status() -> dict[str, int]:
    """status → count, for the health endpoint."""
    async with _connect() as db:
        async with db.execute(
            "SELECT status, COUNT(*) FROM identification_jobs GROUP BY status"
        ) as cur:
            rows = await cur.fetchall()
    counts = {s: 0 for s in JOB_STATUSES}
    counts.update({status: n for status, n in rows})
    return counts
