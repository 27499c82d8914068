"""Shared test fixtures for the catalog_jobs test suite."""
from __future__ import annotations

import asyncio
import time

import pytest


def pytest_sessionfinish(session, exitstatus):
    """Spawn a watchdog that force-exits if the process hangs at shutdown.

    An aiosqlite connection thread left open by a failing test can keep
    the interpreter alive after the run.  This watchdog ensures pytest
    exits within a few seconds of test completion.
    """
    import os
    import threading

    def _watchdog():
        time.sleep(5)
        os._exit(exitstatus)

    t = threading.Thread(target=_watchdog, daemon=True)
    t.start()


# ── Engine fixtures ──────────────────────────────────────────────────


@pytest.fixture
def wait_until():
    """Poll ``predicate`` on the event loop until it holds or ``timeout`` passes."""

    async def _wait(predicate, timeout: float = 5.0, interval: float = 0.01):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            await asyncio.sleep(interval)
        raise AssertionError(f"condition not met within {timeout}s")

    return _wait


@pytest.fixture
def registry():
    from catalog_jobs.api.jobs.registry import JobRegistry, RetentionPolicy

    return JobRegistry(RetentionPolicy(capacity=100), error_log_size=10, final_error_limit=20)


@pytest.fixture
def runner(registry):
    from catalog_jobs.api.jobs.runner import BackgroundRunner

    return BackgroundRunner(registry, batch_size=50, batch_pause_seconds=0, exclusive_per_owner=False)


@pytest.fixture
async def queue_store(tmp_path):
    from catalog_jobs.api.jobs.queue_store import QueueStore

    s = QueueStore(str(tmp_path / "queue.db"))
    await s.initialize()
    yield s
    await s.close()


# ── API fixtures ─────────────────────────────────────────────────────


@pytest.fixture
async def app(tmp_path, monkeypatch, registry, runner):
    """Create a test FastAPI app with a fresh per-test engine."""
    import catalog_jobs.api.deps.providers as _prov
    from catalog_jobs.api.config import ApiSettings
    from catalog_jobs.api.jobs.facade import JobFacade
    from catalog_jobs.api.jobs.gateway import DurableQueueGateway, LaneConfig
    from catalog_jobs.api.jobs.queue_store import QueueStore
    from catalog_jobs.api.main import create_app

    # Disable auth for tests so mutation endpoints are accessible
    monkeypatch.setenv("CATALOG_JOBS_API_AUTH_ENABLED", "false")

    settings = ApiSettings(queue_db_path=str(tmp_path / "test_queue.db"), start_queue_workers=False)
    store = QueueStore(settings.queue_db_path)
    await store.initialize()
    gateway = DurableQueueGateway(store, poll_interval_seconds=0.01)
    gateway.register_lane(
        LaneConfig(name="bulk-price", concurrency=2, backoff_delay_seconds=0.01, batch_pause_seconds=0),
        lambda item: item,
    )

    # Inject into the provider module
    _prov._job_registry = registry
    _prov._job_runner = runner
    _prov._queue_store = store
    _prov._gateway = gateway
    _prov._job_facade = JobFacade(registry, runner, gateway)

    application = create_app(settings)
    yield application

    # Cleanup
    await gateway.stop()
    await runner.shutdown()
    await store.close()
    _prov.reset_providers()
    _prov.use_settings(None)
    _prov.get_runtime_config.cache_clear()


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app."""
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
