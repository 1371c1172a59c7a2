"""
Shared pytest fixtures.

Every test gets a clean temporary DATA_DIR via the `tmp_data_dir` fixture so
tests are fully isolated from each other and from the real pipeline.db.
Process-wide state (rate-limit gates, cached secrets, cached search backend
and model provider) is reset around every test.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# ── Make the project root importable without installing the package ────────────
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(autouse=True)
def tmp_data_dir(tmp_path, monkeypatch):
    """
    Redirect DATA_DIR to a fresh tmp directory for every test.
    This gives each test a clean SQLite file and prevents cross-test pollution.
    """
    data = tmp_path / "data"
    data.mkdir()
    monkeypatch.setenv("DATA_DIR", str(data))

    import config
    monkeypatch.setattr(config, "DATA_DIR", str(data))
    monkeypatch.setattr(config, "STORAGE_PUBLIC_BASE_URL", "http://test.local/storage")

    # Patch the module-level DB_PATH that was already computed at import time
    import database
    monkeypatch.setattr(database, "DB_PATH", str(data / "pipeline.db"))
    monkeypatch.setattr(database, "_DATA_DIR", data)

    # Also reset the internal lock so tests don't share state
    import asyncio
    monkeypatch.setattr(database, "_lock", asyncio.Lock())

    yield data


@pytest.fixture(autouse=True)
def reset_process_state():
    import key_store
    import ratelimit
    import search_tool
    from providers import manager

    ratelimit.reset_gates()
    key_store.clear()
    search_tool.reset_backend()
    manager.reset_provider()
    yield
    ratelimit.reset_gates()
    key_store.clear()
    search_tool.reset_backend()
    manager.reset_provider()


@pytest.fixture
def no_backoff(monkeypatch):
    """Retry policy without sleeping."""
    import config
    monkeypatch.setattr(config, "OUTBOUND_BASE_DELAY", 0.0)
    monkeypatch.setattr(config, "OUTBOUND_MAX_DELAY", 0.0)


@pytest_asyncio.fixture
async def db_ready(tmp_data_dir):
    import database
    await database.init_db()
    return database
