import pytest

from app.jobs import worker


class _Resource:
    def __init__(self):
        self.events = []

    async def initialize(self):
        self.events.append("initialize")

    async def close(self):
        self.events.append("close")


@pytest.fixture
def resources(monkeypatch):
    pool, redis = _Resource(), _Resource()
    monkeypatch.setattr(worker, "db_pool", pool)
    monkeypatch.setattr(worker, "fast_redis", redis)
    return pool, redis


def test_registry_exposes_background_jobs():
    assert set(worker.JOB_REGISTRY) == {
        "outbox_publisher",
        "sync_queue",
        "token_refresh",
        "data_cleanup",
    }


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch, resources):
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker("dummy")

    assert called["ok"] is True
    pool, redis = resources
    assert pool.events == ["initialize", "close"]
    assert redis.events == ["initialize", "close"]


@pytest.mark.asyncio
async def test_run_worker_closes_resources_when_job_fails(monkeypatch, resources):
    async def broken_job():
        raise RuntimeError("boom")

    monkeypatch.setitem(worker.JOB_REGISTRY, "broken", broken_job)

    with pytest.raises(RuntimeError):
        await worker.run_worker("broken")

    pool, redis = resources
    assert pool.events[-1] == "close"
    assert redis.events[-1] == "close"


@pytest.mark.asyncio
async def test_run_worker_unknown_job(resources):
    with pytest.raises(ValueError):
        await worker.run_worker("missing")

    pool, _ = resources
    assert pool.events == []
