from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from blog_worker.core.config import Settings, get_settings
from blog_worker.core.telemetry import configure_worker_logging, worker_telemetry
from blog_worker.services.sync_client import SyncClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def is_due(last_run_at: float | None, interval_seconds: float, *, now: float) -> bool:
    return last_run_at is None or now - last_run_at >= interval_seconds


def next_backoff(backoff: float, *, max_backoff_seconds: float, jitter: float | None = None) -> float:
    jitter = random.uniform(0.0, 0.5) if jitter is None else jitter
    return min(backoff * (2.0 + jitter), max_backoff_seconds)


class MaintenanceSchedule:
    """Tracks when the scheduled-publish check and the reconciliation sweep last ran."""

    def __init__(self, client: SyncClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings
        self.last_scheduled_check_at: float | None = None
        self.last_reconcile_at: float | None = None

    async def run_due(self, *, now: float) -> list[str]:
        ran: list[str] = []
        if is_due(self.last_scheduled_check_at, self.settings.scheduled_check_interval_seconds, now=now):
            report = await self.client.run_scheduled_check()
            if report.get("submitted"):
                logger.info("scheduled publish check submitted articles: %s", report["submitted"])
            self.last_scheduled_check_at = now
            ran.append("scheduled")

        if is_due(self.last_reconcile_at, self.settings.reconcile_interval_seconds, now=now):
            report = await self.client.run_reconciliation()
            if report.get("skipped"):
                logger.info("reconciliation sweep skipped; another sweep is running")
            else:
                logger.info(
                    "reconciliation sweep missing=%s stale=%s orphaned=%s truncated=%s",
                    report.get("missing"),
                    report.get("stale"),
                    report.get("orphaned"),
                    report.get("truncated"),
                )
            # A truncated sweep resumes from its cursor on the next poll instead of waiting a full interval.
            if not report.get("truncated"):
                self.last_reconcile_at = now
            ran.append("reconcile")
        return ran


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging(settings.otel_service_name)
    client = SyncClient(
        base_url=settings.api_base_url,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )
    schedule = MaintenanceSchedule(client, settings)
    backoff = settings.poll_interval_seconds

    with worker_telemetry(settings):
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle") as span:
                    ran = await schedule.run_due(now=time.monotonic())
                    span.set_attribute("worker.tasks", ",".join(ran))
                backoff = settings.poll_interval_seconds
                await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - network dependent
                sleep_for = next_backoff(backoff, max_backoff_seconds=settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for


if __name__ == "__main__":
    asyncio.run(run_worker())
