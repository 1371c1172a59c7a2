"""
main.py — Single entry point.

Runs the identification worker pool and the job HTTP server in the same
asyncio event loop — no threads, no subprocesses.

Architecture:
  asyncio event loop
    ├── JobRunner        (bounded worker pool, resumes unfinished jobs on start)
    └── aiohttp web server (job submission / status, hosted images)
         Only started when JOB_SERVER_ENABLED=true.
"""
import asyncio
import logging
import signal
import sys

import config

# Log file lives in the same data/ directory as the database so that a single
# Docker volume mount (./data:/app/data) captures both.
from pathlib import Path
_data_dir = Path(config.DATA_DIR)
_data_dir.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=logging.INFO,
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(str(_data_dir / "pipeline.log"), encoding="utf-8"),
    ],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("openai").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def run() -> None:
    # ── Database bootstrap (must happen before anything else) ─────────────────
    import database as _db
    try:
        await _db.init_db()
        logger.info("Database ready at %s", _db.DB_PATH)
    except Exception as exc:
        logger.critical("FATAL: database init failed: %s", exc, exc_info=True)
        raise

    from job_runner import JobRunner
    from storage import LocalObjectStorage, get_storage

    storage = get_storage()
    runner = JobRunner(storage=storage)

    # ── Job HTTP server ───────────────────────────────────────────────────────
    web_runner = None
    if config.JOB_SERVER_ENABLED:
        from job_server import start_job_server
        storage_root = storage.root if isinstance(storage, LocalObjectStorage) else None
        try:
            web_runner = await start_job_server(runner, storage_root)
        except Exception as exc:
            logger.error("Failed to start job server: %s", exc)
            logger.warning("Continuing without HTTP job submission.")

    # ── Resume jobs left over from the previous process ───────────────────────
    resumed = await runner.resume_pending_jobs()

    stop_event = asyncio.Event()

    def _stop(*_):
        logger.info("Shutdown signal received.")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except (NotImplementedError, RuntimeError):
            # Windows doesn't support add_signal_handler for all signals
            pass

    logger.info(
        "✅ Pipeline running: %d worker slot(s), %d job(s) resumed. Press Ctrl+C to stop.",
        runner.concurrency, resumed,
    )

    # Block until signal received
    try:
        await stop_event.wait()
    except (KeyboardInterrupt, SystemExit):
        pass

    # Graceful shutdown: stop accepting jobs, unfinished ones resume next start
    logger.info("Shutting down…")
    if web_runner:
        await web_runner.cleanup()
        logger.info("Job server stopped.")

    logger.info("Goodbye.")


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
