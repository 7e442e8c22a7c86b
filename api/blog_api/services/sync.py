"""Propagation of primary-store changes into the search index.

A pool of worker tasks drains a queue of SyncEvents. At most one propagation
per article id is in flight: an event whose article is already being worked
on is parked, and only the newest parked event per id is kept, so bursts of
edits coalesce into a single index write. The article snapshot, not the event,
decides what the index should hold, which makes every application idempotent.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from opentelemetry import trace

from blog_api.domain.models import DeadLetter, SyncEvent, utcnow
from blog_api.domain.state import is_effectively_visible
from blog_api.domain.text import build_search_document
from blog_api.services.errors import (
    ExhaustedRetryError,
    StaleWriteRejected,
    StoreUnavailableError,
    TransientIndexError,
)
from blog_api.services.protocols import ArticleStore, SearchIndex

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RETRYABLE_ERRORS = (TransientIndexError, StoreUnavailableError, asyncio.TimeoutError)


@dataclass(slots=True)
class SyncStats:
    submitted: int = 0
    upserts: int = 0
    deletes: int = 0
    superseded: int = 0
    coalesced: int = 0
    stale_rejections: int = 0
    retries: int = 0
    dead_lettered: int = 0


class SyncCoordinator:
    def __init__(
        self,
        store: ArticleStore,
        index: SearchIndex,
        *,
        worker_count: int = 4,
        max_attempts: int = 5,
        retry_base_seconds: float = 0.5,
        retry_max_seconds: float = 30.0,
        attempt_timeout_seconds: float = 10.0,
        dead_letter_capacity: int = 1000,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._index = index
        self.worker_count = max(1, worker_count)
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = max(0.0, retry_base_seconds)
        self.retry_max_seconds = max(0.0, retry_max_seconds)
        self.attempt_timeout_seconds = attempt_timeout_seconds
        self._clock = clock
        self._sleep = sleep
        self._queue: asyncio.Queue[SyncEvent] = asyncio.Queue()
        self._inflight: set[int] = set()
        self._parked: dict[int, SyncEvent] = {}
        self._workers: list[asyncio.Task] = []
        self.dead_letters: deque[DeadLetter] = deque(maxlen=max(1, dead_letter_capacity))
        self.stats = SyncStats()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker_loop(), name=f"sync-worker-{number}")
            for number in range(self.worker_count)
        ]
        logger.info("sync coordinator started workers=%s", self.worker_count)

    async def stop(self, *, drain: bool = False, drain_timeout: float | None = None) -> None:
        workers, self._workers = self._workers, []
        if not workers:
            return
        if drain:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("sync drain timed out after %ss; stopping with events pending", drain_timeout)
        inflight = set(self._inflight)
        for worker in workers:
            worker.cancel()
        for worker in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        dropped = inflight | self._discard_pending()
        if dropped:
            # Reconciliation repairs these on its next sweep.
            logger.warning("sync coordinator stopped with undelivered events article_ids=%s", sorted(dropped))
        else:
            logger.info("sync coordinator stopped")

    async def submit(self, event: SyncEvent) -> None:
        self.stats.submitted += 1
        self._queue.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every submitted event reached a terminal outcome."""
        await self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize() + len(self._parked) + len(self._inflight)

    def snapshot_stats(self) -> dict[str, Any]:
        return {
            **asdict(self.stats),
            "queued": self._queue.qsize(),
            "parked": len(self._parked),
            "inflight": len(self._inflight),
            "workers": len(self._workers),
        }

    async def _worker_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if event.article_id in self._inflight:
                    self._park(event)
                    continue
                self._inflight.add(event.article_id)
                try:
                    await self._propagate(event)
                finally:
                    self._inflight.discard(event.article_id)
                    parked = self._parked.pop(event.article_id, None)
                    if parked is not None:
                        # Re-queued before task_done so drain() cannot observe a false idle.
                        self._queue.put_nowait(parked)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("sync worker failed on article_id=%s", event.article_id)
            finally:
                self._queue.task_done()

    def _park(self, event: SyncEvent) -> None:
        current = self._parked.get(event.article_id)
        if current is not None:
            self.stats.coalesced += 1
            if current.source_version > event.source_version:
                return
        self._parked[event.article_id] = event

    def _discard_pending(self) -> set[int]:
        dropped = set(self._parked)
        self._parked.clear()
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            dropped.add(event.article_id)
            self._queue.task_done()

    async def _propagate(self, event: SyncEvent) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                with tracer.start_as_current_span("sync.propagate") as span:
                    span.set_attribute("article.id", event.article_id)
                    span.set_attribute("sync.kind", event.kind.value)
                    span.set_attribute("sync.attempt", attempt)
                    await asyncio.wait_for(self._apply(event), timeout=self.attempt_timeout_seconds)
                return
            except StaleWriteRejected as exc:
                # The index already holds something newer; nothing left to do for this event.
                self.stats.stale_rejections += 1
                logger.debug("sync stale write ignored: %s", exc)
                return
            except RETRYABLE_ERRORS as exc:
                if attempt >= self.max_attempts:
                    await self._dead_letter(event, attempt, exc)
                    return
                delay = self._compute_retry_delay_seconds(attempt=attempt)
                self.stats.retries += 1
                logger.warning(
                    "sync attempt failed article_id=%s attempt=%s error=%r; retry in %.2fs",
                    event.article_id,
                    attempt,
                    exc,
                    delay,
                )
                await self._sleep(delay)
            except Exception as exc:
                logger.exception("sync failed with non-retryable error article_id=%s", event.article_id)
                await self._dead_letter(event, attempt, exc)
                return

    async def _apply(self, event: SyncEvent) -> None:
        snapshot = await self._store.get_snapshot(event.article_id)
        if snapshot is not None and snapshot.sync_version > event.source_version:
            self.stats.superseded += 1
            logger.debug(
                "sync event superseded article_id=%s source_version=%s current=%s",
                event.article_id,
                event.source_version,
                snapshot.sync_version,
            )
            return

        if snapshot is not None and is_effectively_visible(snapshot, now=self._clock()):
            await self._index.upsert(build_search_document(snapshot))
            self.stats.upserts += 1
            return

        version = snapshot.sync_version if snapshot is not None else None
        await self._index.delete(event.article_id, version=version)
        self.stats.deletes += 1

    async def _dead_letter(self, event: SyncEvent, attempts: int, error: BaseException) -> None:
        exhausted = ExhaustedRetryError(event.article_id, attempts, error)
        record = DeadLetter(
            article_id=event.article_id,
            kind=event.kind,
            source_version=event.source_version,
            origin=event.origin,
            attempts=attempts,
            error=repr(error),
            failed_at=self._clock(),
        )
        self.dead_letters.append(record)
        self.stats.dead_lettered += 1
        logger.error("sync event dead-lettered: %s", exhausted)
        try:
            await self._store.record_dead_letter(record)
        except Exception:
            logger.warning("failed to persist dead letter article_id=%s", event.article_id, exc_info=True)

    def _compute_retry_delay_seconds(self, *, attempt: int) -> float:
        if self.retry_base_seconds <= 0:
            return 0.0
        multiplier = max(0, attempt - 1)
        delay = self.retry_base_seconds * (2**multiplier)
        return min(delay, self.retry_max_seconds)

