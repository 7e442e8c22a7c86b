from __future__ import annotations

import asyncio
from typing import Any

from blog_worker.core.config import Settings
from blog_worker.main import MaintenanceSchedule, is_due, next_backoff


class FakeSyncClient:
    def __init__(self, reconcile_reports: list[dict[str, Any]] | None = None) -> None:
        self.reconcile_reports = list(reconcile_reports or [])
        self.calls: list[str] = []

    async def run_scheduled_check(self) -> dict[str, Any]:
        self.calls.append("scheduled")
        return {"submitted": []}

    async def run_reconciliation(self) -> dict[str, Any]:
        self.calls.append("reconcile")
        if self.reconcile_reports:
            return self.reconcile_reports.pop(0)
        return {"completed": True, "truncated": False}


def _settings() -> Settings:
    return Settings(
        otel_enabled=False,
        scheduled_check_interval_seconds=60,
        reconcile_interval_seconds=300,
    )


def test_is_due() -> None:
    assert is_due(None, 60, now=0)
    assert not is_due(100, 60, now=159)
    assert is_due(100, 60, now=160)


def test_next_backoff_grows_and_caps() -> None:
    assert next_backoff(5, max_backoff_seconds=60, jitter=0.0) == 10
    assert next_backoff(5, max_backoff_seconds=60, jitter=0.5) == 12.5
    assert next_backoff(40, max_backoff_seconds=60, jitter=0.0) == 60


def test_run_due_respects_intervals() -> None:
    client = FakeSyncClient()
    schedule = MaintenanceSchedule(client, _settings())

    assert asyncio.run(schedule.run_due(now=1000)) == ["scheduled", "reconcile"]
    assert asyncio.run(schedule.run_due(now=1030)) == []
    assert asyncio.run(schedule.run_due(now=1060)) == ["scheduled"]
    assert asyncio.run(schedule.run_due(now=1300)) == ["scheduled", "reconcile"]
    assert client.calls.count("reconcile") == 2


def test_truncated_sweep_resumes_on_next_poll() -> None:
    client = FakeSyncClient([{"truncated": True, "missing": 1}, {"truncated": False}])
    schedule = MaintenanceSchedule(client, _settings())

    asyncio.run(schedule.run_due(now=1000))
    assert schedule.last_reconcile_at is None

    assert "reconcile" in asyncio.run(schedule.run_due(now=1005))
    assert schedule.last_reconcile_at == 1005
    assert "reconcile" not in asyncio.run(schedule.run_due(now=1010))


def test_skipped_sweep_still_counts_as_run() -> None:
    client = FakeSyncClient([{"skipped": True}])
    schedule = MaintenanceSchedule(client, _settings())

    asyncio.run(schedule.run_due(now=1000))
    assert schedule.last_reconcile_at == 1000
