"""
job_server.py — HTTP surface for identification jobs.

Runs as an aiohttp web server in the same asyncio event loop as the worker pool.

Endpoints:
  POST /api/jobs        → multipart (images[], barcodes, locale, model) or JSON
                          {barcodes, locale, model}; 202 {jobId, status}
  GET  /api/jobs/{id}   → job status; result + serpTrace once done, error once failed
  GET  /health          → JSON health check with job counts per status
  GET  /storage/...     → locally hosted images (needed for google_lens searches)
"""
from __future__ import annotations

import logging
import os
from typing import Optional

from aiohttp import web

import config
import database as db
from enrichment import InputFile
from errors import IdentificationError, ValidationError
from job_runner import JobRunner

logger = logging.getLogger(__name__)

RUNNER_KEY = web.AppKey("runner", JobRunner)

# Multipart overhead on top of the raw image bytes
_UPLOAD_MARGIN = 1024 * 1024


# ── Request handlers ───────────────────────────────────────────────────────────

async def _read_submission(request: web.Request) -> tuple[list[InputFile], dict]:
    if request.content_type == "application/json":
        try:
            body = await request.json()
        except ValueError as exc:
            raise ValidationError("Request body is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return [], body

    form = await request.post()
    files: list[InputFile] = []
    for field_name in ("images", "images[]"):
        for part in form.getall(field_name, []):
            if not isinstance(part, web.FileField):
                continue
            files.append(InputFile(
                buffer=part.file.read(),
                mime_type=part.content_type or "application/octet-stream",
                original_name=part.filename or "upload",
            ))
    fields = {k: form.get(k) for k in ("barcodes", "locale", "model") if isinstance(form.get(k), str)}
    return files, fields


async def handle_create_job(request: web.Request) -> web.Response:
    runner = request.app[RUNNER_KEY]
    try:
        files, fields = await _read_submission(request)
        barcodes = fields.get("barcodes") or ""
        if not isinstance(barcodes, str):
            raise ValidationError("barcodes must be a string")
        if not files and not barcodes.strip():
            raise ValidationError("Provide at least one image or barcode")
        job = await runner.submit_job(
            files,
            barcodes=barcodes,
            locale=fields.get("locale") or None,
            model=fields.get("model") or None,
        )
    except ValidationError as exc:
        return web.json_response({"error": exc.to_dict()}, status=400)

    logger.info("Job %s submitted via HTTP (%d image(s))", job.id, len(files))
    return web.json_response({"jobId": job.id, "status": job.status}, status=202)


def job_view(job: db.Job) -> dict:
    view = {
        "jobId":      job.id,
        "status":     job.status,
        "attempts":   job.attempts,
        "createdAt":  job.created_at,
        "updatedAt":  job.updated_at,
        "startedAt":  job.started_at,
        "finishedAt": job.finished_at,
        "modelUsed":  job.model_used,
    }
    if job.status == db.STATUS_DONE:
        view["result"] = job.result
        view["serpTrace"] = job.serp_trace or []
    elif job.status == db.STATUS_FAILED:
        view["error"] = job.error
    return view


async def handle_get_job(request: web.Request) -> web.Response:
    job = await db.get_job(request.match_info["job_id"])
    if job is None:
        raise web.HTTPNotFound(
            text='{"error": "Job not found"}',
            content_type="application/json",
        )
    return web.json_response(job_view(job))


async def handle_health(request: web.Request) -> web.Response:
    """Health check — returns 200 OK. Use with uptime monitors."""
    counts = await db.count_jobs_by_status()
    runner = request.app[RUNNER_KEY]
    return web.json_response({"status": "ok", "jobs": counts, "inFlight": runner.in_flight})


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except IdentificationError as exc:
        logger.warning("%s %s failed: %s", request.method, request.path, exc)
        return web.json_response({"error": exc.to_dict()}, status=400 if not exc.retryable else 500)
    except Exception as exc:
        logger.error("%s %s crashed: %s", request.method, request.path, exc, exc_info=True)
        return web.json_response({"error": {"message": "Internal server error"}}, status=500)


# ── App factory ────────────────────────────────────────────────────────────────

def build_web_app(runner: JobRunner, storage_root: Optional[str] = None) -> web.Application:
    app = web.Application(
        middlewares=[error_middleware],
        client_max_size=config.MAX_IMAGE_PAYLOAD_BYTES + _UPLOAD_MARGIN,
    )
    app[RUNNER_KEY] = runner
    app.router.add_get("/health",            handle_health)
    app.router.add_post("/api/jobs",         handle_create_job)
    app.router.add_get("/api/jobs/{job_id}", handle_get_job)
    if storage_root:
        os.makedirs(storage_root, exist_ok=True)
        app.router.add_static("/storage", storage_root, show_index=False)
    return app


async def start_job_server(runner: JobRunner, storage_root: Optional[str] = None) -> web.AppRunner:
    """Start the web server. Returns runner so caller can shut it down cleanly."""
    app = build_web_app(runner, storage_root)
    web_runner = web.AppRunner(app, access_log=logger)
    await web_runner.setup()
    site = web.TCPSite(web_runner, "0.0.0.0", config.JOB_SERVER_PORT)
    await site.start()
    logger.info("Job server listening on port %d", config.JOB_SERVER_PORT)
    return web_runner
