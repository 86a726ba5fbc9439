"""
test_jobs.py — BackgroundJobManager: manual triggers, run history and the
scheduler loops.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from geoalert.alerts.alert_service import AlertService
from geoalert.alerts.models import utc_now
from geoalert.core.logging_config import get_log_context, set_log_context
from geoalert.jobs.background_jobs import BackgroundJobManager, JobStatus


class StaticSource:
    name = "static"

    def __init__(self, documents):
        self.documents = documents

    async def fetch(self):
        return list(self.documents)


def _make_document(external_id: str):
    now = utc_now()
    return {
        "external_id": external_id,
        "title": "Landslide Risk - Pune Ghats",
        "description": "Saturated slopes after continuous rain.",
        "type": "landslide",
        "severity": "medium",
        "location": {"type": "Point", "lon": 73.8567, "lat": 18.5204},
        "radius_km": 15,
        "valid_from": now.isoformat(),
        "valid_until": (now + timedelta(hours=12)).isoformat(),
    }


@pytest.fixture
def service(stores, fast_retry):
    return AlertService(
        stores, sources=[StaticSource([_make_document("ext-landslide")])], retry=fast_retry,
    )


class TestManualTriggers:

    async def test_ingestion_run_recorded(self, service):
        manager = BackgroundJobManager(service, enabled=False)
        run = await manager.run_ingestion()

        assert run.status == JobStatus.COMPLETED
        assert run.trigger == "manual"
        assert run.result["created"] == 1
        assert run.finished
        assert manager.last_run(BackgroundJobManager.INGESTION) is run

    async def test_sweep_run_recorded(self, service):
        manager = BackgroundJobManager(service, enabled=False)
        run = await manager.run_sweep()
        assert run.status == JobStatus.COMPLETED
        assert run.result["expired_alerts"] == 0
        assert run.to_dict()["job_type"] == "expiry_sweep"

    async def test_failure_recorded_not_raised(self, service):
        async def broken():
            raise RuntimeError("store offline")

        service.run_ingestion = broken
        manager = BackgroundJobManager(service, enabled=False)
        run = await manager.run_ingestion()

        assert run.status == JobStatus.FAILED
        assert run.error == "RuntimeError: store offline"
        assert manager.list_runs(status=JobStatus.FAILED) == [run]

    async def test_run_tagged_in_log_context(self, service):
        seen = {}

        async def inspect():
            seen.update(get_log_context())
            return await AlertService.sweep_expired(service)

        service.sweep_expired = inspect
        set_log_context(request_id="req-1")
        manager = BackgroundJobManager(service, enabled=False)
        run = await manager.run_sweep()

        assert seen == {"job": BackgroundJobManager.SWEEP, "run_id": run.run_id}
        assert get_log_context() == {"request_id": "req-1"}
        set_log_context()

    async def test_history_most_recent_first_and_bounded(self, service):
        manager = BackgroundJobManager(service, enabled=False, history_size=3)
        for _ in range(4):
            await manager.run_sweep()
        ingestion = await manager.run_ingestion()

        runs = manager.list_runs()
        assert len(runs) == 3
        assert runs[0] is ingestion
        assert [r.job_type for r in manager.list_runs(BackgroundJobManager.SWEEP)] == [
            BackgroundJobManager.SWEEP
        ] * 2


class TestScheduler:

    async def test_disabled_start_is_noop(self, service):
        manager = BackgroundJobManager(service, enabled=False)
        await manager.start()
        assert not manager.running
        await manager.stop()

    async def test_loops_run_immediately_and_stop(self, service):
        manager = BackgroundJobManager(
            service, enabled=True, ingestion_interval=60, sweep_interval=60,
        )
        await manager.start()
        assert manager.running
        await asyncio.sleep(0.05)
        await manager.stop()

        assert not manager.running
        triggers = {(r.job_type, r.trigger) for r in manager.list_runs()}
        assert triggers == {
            (BackgroundJobManager.INGESTION, "schedule"),
            (BackgroundJobManager.SWEEP, "schedule"),
        }

    async def test_failing_job_keeps_loop_alive(self, service):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            raise RuntimeError("feed down")

        service.run_ingestion = flaky
        manager = BackgroundJobManager(
            service, enabled=True, ingestion_interval=0.01, sweep_interval=60,
        )
        await manager.start()
        await asyncio.sleep(0.1)
        assert manager.running
        await manager.stop()

        assert calls >= 2
        failed = manager.list_runs(BackgroundJobManager.INGESTION, JobStatus.FAILED)
        assert len(failed) == calls
