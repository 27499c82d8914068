"""Tests for the durable lane queue: persistence, retry, recovery, retention."""
import asyncio

import pytest

from catalog_jobs.api.jobs.gateway import DurableQueueGateway, LaneConfig, UnknownLaneError
from catalog_jobs.api.jobs.item_loop import AbortJob
from catalog_jobs.api.jobs.models import QueueState
from catalog_jobs.api.jobs.queue_store import QueueStore


def _lane(name="bulk-price", **kw):
    kw.setdefault("concurrency", 1)
    kw.setdefault("backoff_delay_seconds", 0.01)
    kw.setdefault("batch_pause_seconds", 0)
    return LaneConfig(name=name, **kw)


@pytest.fixture
async def gateway(queue_store):
    gw = DurableQueueGateway(queue_store, poll_interval_seconds=0.01)
    yield gw
    await gw.stop()


async def _settled(gateway, lane, job_id):
    status = await gateway.get_status(lane, job_id)
    return status is not None and status.status in (QueueState.completed, QueueState.failed)


def test_backoff_doubles_per_attempt():
    lane = LaneConfig(name="x", backoff_delay_seconds=2.0)
    assert [lane.backoff_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


@pytest.mark.asyncio
async def test_enqueue_and_complete(gateway, wait_until):
    seen = []
    gateway.register_lane(_lane(batch_size=2), seen.append)
    await gateway.start()

    result = await gateway.enqueue("bulk-price", "owner-1", {"items": [{"sku": "A"}, {"sku": "B"}, {"sku": "C"}]})
    assert result.status == "queued"
    assert result.lane == "bulk-price"

    await wait_until(lambda: _settled(gateway, "bulk-price", result.job_id))
    status = await gateway.get_status("bulk-price", result.job_id)
    assert status.status == QueueState.completed
    assert status.progress == 100
    assert status.attempts_made == 1
    assert status.result["job_id"] == result.job_id
    assert status.result["summary"] == {
        "total": 3, "processed": 3, "succeeded": 3, "failed": 0, "success_rate": 100,
    }
    assert status.result["errors"] == []
    assert "timestamp" in status.result
    assert [i["sku"] for i in seen] == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_item_failures_are_recorded_not_retried(gateway, wait_until):
    def process(item):
        if item["sku"] == "BAD":
            raise ValueError("no price")

    gateway.register_lane(_lane(), process)
    await gateway.start()
    result = await gateway.enqueue("bulk-price", "o", {"items": [{"sku": "OK"}, {"sku": "BAD"}]})
    await wait_until(lambda: _settled(gateway, "bulk-price", result.job_id))

    status = await gateway.get_status("bulk-price", result.job_id)
    assert status.status == QueueState.completed
    assert status.attempts_made == 1
    assert status.result["summary"]["failed"] == 1
    assert status.result["errors"] == [{"item_label": "BAD", "message": "no price", "position": 1}]


@pytest.mark.asyncio
async def test_retry_succeeds_on_second_attempt(gateway, wait_until):
    prices = {}
    attempts = {"n": 0}

    def process(item):
        # Idempotent write: re-running an item leaves the same state.
        prices[item["sku"]] = item["price"]
        if item["sku"] == "B" and attempts["n"] == 0:
            attempts["n"] += 1
            raise AbortJob("pricing service timeout")

    gateway.register_lane(_lane(max_attempts=3), process)
    await gateway.start()
    items = [{"sku": "A", "price": 10}, {"sku": "B", "price": 12}, {"sku": "C", "price": 9}]
    result = await gateway.enqueue("bulk-price", "o", {"items": items})
    await wait_until(lambda: _settled(gateway, "bulk-price", result.job_id))

    status = await gateway.get_status("bulk-price", result.job_id)
    assert status.status == QueueState.completed
    assert status.attempts_made == 2
    assert prices == {"A": 10, "B": 12, "C": 9}


@pytest.mark.asyncio
async def test_terminal_failure_after_max_attempts(gateway, wait_until):
    calls = []

    def process(item):
        calls.append(item)
        raise AbortJob("marketplace offline")

    gateway.register_lane(_lane(max_attempts=3), process)
    await gateway.start()
    result = await gateway.enqueue("bulk-price", "o", {"items": [1]})
    await wait_until(lambda: _settled(gateway, "bulk-price", result.job_id))

    status = await gateway.get_status("bulk-price", result.job_id)
    assert status.status == QueueState.failed
    assert status.attempts_made == 3
    assert status.failed_reason == "marketplace offline"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_jobs_survive_restart(tmp_path, wait_until):
    db = str(tmp_path / "durable.db")

    # First process: enqueue without ever starting workers.
    store = QueueStore(db)
    gw = DurableQueueGateway(store, poll_interval_seconds=0.01)
    gw.register_lane(_lane(), lambda item: item)
    result = await gw.enqueue("bulk-price", "o", {"items": [1, 2]})
    await store.close()

    # Second process picks the job up.
    store2 = QueueStore(db)
    gw2 = DurableQueueGateway(store2, poll_interval_seconds=0.01)
    done = []
    gw2.register_lane(_lane(), done.append)
    await gw2.start()
    try:
        await wait_until(lambda: _settled(gw2, "bulk-price", result.job_id))
        assert done == [1, 2]
    finally:
        await gw2.stop()
        await store2.close()


@pytest.mark.asyncio
async def test_stalled_active_job_is_requeued_on_start(tmp_path, wait_until):
    db = str(tmp_path / "stalled.db")
    store = QueueStore(db)
    await store.add("job_stalled", "bulk-price", "o", {"items": [1]}, max_attempts=3)
    claimed = await store.claim_next("bulk-price")
    assert claimed["state"] == "active"
    await store.close()

    store2 = QueueStore(db)
    gw = DurableQueueGateway(store2, poll_interval_seconds=0.01)
    gw.register_lane(_lane(), lambda item: item)
    await gw.start()
    try:
        await wait_until(lambda: _settled(gw, "bulk-price", "job_stalled"))
        status = await gw.get_status("bulk-price", "job_stalled")
        assert status.status == QueueState.completed
        assert status.attempts_made == 2
    finally:
        await gw.stop()
        await store2.close()


@pytest.mark.asyncio
async def test_stop_interrupts_and_leaves_job_active(gateway, queue_store):
    gate = asyncio.Event()

    async def process(item):
        await gate.wait()

    gateway.register_lane(_lane(), process)
    await gateway.start()
    result = await gateway.enqueue("bulk-price", "o", {"items": [1]})
    for _ in range(200):
        row = await queue_store.get(result.job_id)
        if row["state"] == "active":
            break
        await asyncio.sleep(0.01)
    await gateway.stop()
    assert (await queue_store.get(result.job_id))["state"] == "active"


@pytest.mark.asyncio
async def test_lane_concurrency_runs_jobs_in_parallel(gateway, wait_until):
    running = {"now": 0, "peak": 0}

    async def process(item):
        running["now"] += 1
        running["peak"] = max(running["peak"], running["now"])
        await asyncio.sleep(0.05)
        running["now"] -= 1

    gateway.register_lane(_lane(concurrency=3), process)
    await gateway.start()
    ids = [(await gateway.enqueue("bulk-price", f"owner-{i}", {"items": [i]})).job_id for i in range(3)]
    for job_id in ids:
        await wait_until(lambda: _settled(gateway, "bulk-price", job_id))
    assert running["peak"] > 1


@pytest.mark.asyncio
async def test_processor_factory_sees_payload(gateway, wait_until):
    seen = []

    def factory(ctx):
        markup = ctx.payload["markup"]
        return lambda item: seen.append((ctx.owner_id, item * markup))

    gateway.register_lane(_lane(), processor_factory=factory)
    await gateway.start()
    result = await gateway.enqueue("bulk-price", "alice", {"items": [1, 2], "markup": 3})
    await wait_until(lambda: _settled(gateway, "bulk-price", result.job_id))
    assert seen == [("alice", 3), ("alice", 6)]


@pytest.mark.asyncio
async def test_register_lane_requires_one_processor(gateway):
    with pytest.raises(ValueError):
        gateway.register_lane(_lane())
    with pytest.raises(ValueError):
        gateway.register_lane(_lane(), lambda i: i, processor_factory=lambda ctx: (lambda i: i))


@pytest.mark.asyncio
async def test_unknown_lane(gateway):
    gateway.register_lane(_lane(), lambda item: item)
    with pytest.raises(UnknownLaneError):
        await gateway.enqueue("bulk-nothing", "o", {"items": []})
    with pytest.raises(UnknownLaneError):
        await gateway.get_status("bulk-nothing", "job_x")
    assert await gateway.get_status("bulk-price", "job_x") is None


@pytest.mark.asyncio
async def test_payload_must_carry_items(gateway):
    gateway.register_lane(_lane(), lambda item: item)
    with pytest.raises(ValueError):
        await gateway.enqueue("bulk-price", "o", {"rows": [1]})


@pytest.mark.asyncio
async def test_status_lane_mismatch_is_none(gateway):
    gateway.register_lane(_lane("bulk-price"), lambda item: item)
    gateway.register_lane(_lane("bulk-image"), lambda item: item)
    result = await gateway.enqueue("bulk-price", "o", {"items": [1]})
    assert await gateway.get_status("bulk-image", result.job_id) is None
    assert (await gateway.find(result.job_id)).lane == "bulk-price"


@pytest.mark.asyncio
async def test_owner_listing_and_stats(gateway):
    gateway.register_lane(_lane("bulk-price"), lambda item: item)
    gateway.register_lane(_lane("bulk-image"), lambda item: item)
    a = await gateway.enqueue("bulk-price", "alice", {"items": [1]})
    await gateway.enqueue("bulk-price", "bob", {"items": [1]})
    c = await gateway.enqueue("bulk-image", "alice", {"items": [1]})

    jobs = await gateway.list_owner_jobs("alice")
    assert [j.job_id for j in jobs] == [c.job_id, a.job_id]

    stats = await gateway.stats()
    assert stats["bulk-price"] == {"waiting": 2, "active": 0, "completed": 0, "failed": 0, "total": 2}
    assert stats["bulk-image"]["total"] == 1


@pytest.mark.asyncio
async def test_completed_retention_keeps_newest(gateway, wait_until):
    gateway.register_lane(_lane(keep_completed=2), lambda item: item)
    await gateway.start()
    ids = []
    for i in range(4):
        job_id = (await gateway.enqueue("bulk-price", "o", {"items": [i]})).job_id
        await wait_until(lambda: _settled(gateway, "bulk-price", job_id))
        ids.append(job_id)
    stats = await gateway.stats()
    assert stats["bulk-price"]["completed"] == 2
    assert await gateway.get_status("bulk-price", ids[0]) is None
    assert await gateway.get_status("bulk-price", ids[-1]) is not None


@pytest.mark.asyncio
async def test_cleanup_removes_old_finished_jobs(gateway, queue_store, wait_until):
    gateway.register_lane(_lane(), lambda item: item)
    await gateway.start()
    done = await gateway.enqueue("bulk-price", "o", {"items": [1]})
    await wait_until(lambda: _settled(gateway, "bulk-price", done.job_id))
    await gateway.stop()
    waiting = await gateway.enqueue("bulk-price", "o", {"items": [2]})

    assert await gateway.cleanup("bulk-price", max_age_seconds=3600) == 0
    await asyncio.sleep(0.02)
    assert await gateway.cleanup("bulk-price", max_age_seconds=0.01) == 1
    assert await gateway.get_status("bulk-price", done.job_id) is None
    assert await gateway.get_status("bulk-price", waiting.job_id) is not None


@pytest.mark.asyncio
async def test_configured_lanes_use_default_settings(gateway):
    gateway.register_configured_lanes({"bulk-create": lambda i: i, "bulk-image": lambda i: i})
    assert gateway.lanes == ["bulk-create", "bulk-image"]
    assert gateway.lane_config("bulk-create").concurrency == 5
    assert gateway.lane_config("bulk-image").concurrency == 3
    assert gateway.lane_config("bulk-image").max_attempts == 3
    with pytest.raises(UnknownLaneError):
        gateway.register_configured_lanes({"bulk-teleport": lambda i: i})


@pytest.mark.asyncio
async def test_store_write_failure_does_not_kill_worker(gateway, queue_store, wait_until, monkeypatch):
    original = queue_store.mark_completed
    calls = {"n": 0}

    async def flaky_mark_completed(job_id, result):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("database is locked")
        await original(job_id, result)

    monkeypatch.setattr(queue_store, "mark_completed", flaky_mark_completed)
    gateway.register_lane(_lane(concurrency=1), lambda item: item)
    await gateway.start()

    first = await gateway.enqueue("bulk-price", "o", {"items": [1]})
    await wait_until(lambda: _settled(gateway, "bulk-price", first.job_id))
    second = await gateway.enqueue("bulk-price", "o", {"items": [2]})
    await wait_until(lambda: _settled(gateway, "bulk-price", second.job_id))

    first_status = await gateway.get_status("bulk-price", first.job_id)
    assert first_status.status == QueueState.completed
    assert first_status.attempts_made == 2
    assert (await gateway.get_status("bulk-price", second.job_id)).status == QueueState.completed
    assert not any(task.done() for task in gateway._workers)


@pytest.mark.asyncio
async def test_trim_failure_after_completion_keeps_job_completed(gateway, queue_store, wait_until, monkeypatch):
    async def broken_trim(lane, state, keep):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr(queue_store, "trim_finished", broken_trim)
    runs = []
    gateway.register_lane(_lane(), runs.append)
    await gateway.start()

    first = await gateway.enqueue("bulk-price", "o", {"items": ["a"]})
    await wait_until(lambda: _settled(gateway, "bulk-price", first.job_id))
    second = await gateway.enqueue("bulk-price", "o", {"items": ["b"]})
    await wait_until(lambda: _settled(gateway, "bulk-price", second.job_id))

    status = await gateway.get_status("bulk-price", first.job_id)
    assert status.status == QueueState.completed
    assert status.attempts_made == 1
    assert runs == ["a", "b"]
