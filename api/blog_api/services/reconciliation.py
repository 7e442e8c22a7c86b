"""Periodic sweep that finds and repairs divergence between the primary store
and the search index.

The sweep walks the primary store in id order, then the index in id order,
and resumes from a cursor when a previous sweep ran out of its time budget.
Repairs are SyncEvents handed to the coordinator; the sweep never writes to
the index itself.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from opentelemetry import trace

from blog_api.domain.models import (
    Article,
    ReconciliationKind,
    ReconciliationRecord,
    SyncEvent,
    SyncEventKind,
    SyncOrigin,
    utcnow,
)
from blog_api.domain.state import is_effectively_visible
from blog_api.services.errors import SearchIndexError, StoreUnavailableError
from blog_api.services.protocols import ArticleStore, SearchIndex

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")


class SweepPhase(str, Enum):
    ARTICLES = "articles"
    DOCUMENTS = "documents"


class SweepBudgetExceeded(Exception):
    pass


@dataclass(slots=True)
class SweepReport:
    started_at: datetime
    finished_at: datetime | None = None
    skipped: bool = False
    truncated: bool = False
    completed: bool = False
    error: str | None = None
    phase: SweepPhase = SweepPhase.ARTICLES
    after_id: int = 0
    scanned_articles: int = 0
    scanned_documents: int = 0
    records: list[ReconciliationRecord] = field(default_factory=list)

    def count(self, kind: ReconciliationKind) -> int:
        return sum(1 for record in self.records if record.kind is kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "skipped": self.skipped,
            "truncated": self.truncated,
            "completed": self.completed,
            "error": self.error,
            "phase": self.phase.value,
            "after_id": self.after_id,
            "scanned_articles": self.scanned_articles,
            "scanned_documents": self.scanned_documents,
            "missing": self.count(ReconciliationKind.MISSING),
            "stale": self.count(ReconciliationKind.STALE),
            "orphaned": self.count(ReconciliationKind.ORPHANED),
        }


def classify_article(article: Article, index_version: int | None, *, now: datetime) -> ReconciliationRecord | None:
    visible = is_effectively_visible(article, now=now)
    kind: ReconciliationKind | None = None
    if visible and index_version is None:
        kind = ReconciliationKind.MISSING
    elif visible and index_version is not None and index_version < article.sync_version:
        kind = ReconciliationKind.STALE
    elif not visible and index_version is not None:
        kind = ReconciliationKind.ORPHANED
    if kind is None:
        return None
    return ReconciliationRecord(
        article_id=article.id,
        kind=kind,
        primary_version=article.sync_version,
        index_version=index_version,
    )


def repair_event(record: ReconciliationRecord) -> SyncEvent:
    if record.kind is ReconciliationKind.ORPHANED:
        version = record.primary_version if record.primary_version is not None else record.index_version or 0
        return SyncEvent(
            article_id=record.article_id,
            kind=SyncEventKind.DELETE,
            source_version=version,
            origin=SyncOrigin.RECONCILIATION,
        )
    return SyncEvent(
        article_id=record.article_id,
        kind=SyncEventKind.UPSERT,
        source_version=record.primary_version or 0,
        origin=SyncOrigin.RECONCILIATION,
    )


class ReconciliationJob:
    def __init__(
        self,
        store: ArticleStore,
        index: SearchIndex,
        submit: Callable[[SyncEvent], Awaitable[None]],
        *,
        batch_size: int = 200,
        time_budget_seconds: float = 120.0,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._index = index
        self._submit = submit
        self.batch_size = max(1, batch_size)
        self.time_budget_seconds = time_budget_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._lock = asyncio.Lock()
        self.phase = SweepPhase.ARTICLES
        self.after_id = 0
        self.last_report: SweepReport | None = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_sweep(self) -> SweepReport:
        if self._lock.locked():
            logger.warning("reconciliation sweep already running; skipping")
            return SweepReport(started_at=self._clock(), finished_at=self._clock(), skipped=True)

        async with self._lock:
            report = SweepReport(started_at=self._clock(), phase=self.phase, after_id=self.after_id)
            with tracer.start_as_current_span("sync.reconcile_sweep") as span:
                span.set_attribute("sweep.phase", self.phase.value)
                span.set_attribute("sweep.after_id", self.after_id)
                try:
                    await self._sweep(report)
                except SweepBudgetExceeded:
                    report.truncated = True
                except (StoreUnavailableError, SearchIndexError) as exc:
                    report.error = str(exc)
                    logger.warning("reconciliation sweep aborted phase=%s after_id=%s: %s", self.phase.value, self.after_id, exc)
                report.phase = self.phase
                report.after_id = self.after_id
                report.finished_at = self._clock()
                span.set_attribute("sweep.records", len(report.records))
                span.set_attribute("sweep.truncated", report.truncated)

            self.last_report = report
            logger.info(
                "reconciliation sweep finished completed=%s truncated=%s missing=%s stale=%s orphaned=%s",
                report.completed,
                report.truncated,
                report.count(ReconciliationKind.MISSING),
                report.count(ReconciliationKind.STALE),
                report.count(ReconciliationKind.ORPHANED),
            )
            return report

    async def _sweep(self, report: SweepReport) -> None:
        deadline = self._monotonic() + self.time_budget_seconds
        while True:
            if self.phase is SweepPhase.ARTICLES:
                articles = await self._within(deadline, self._store.scan_snapshots(after_id=self.after_id, limit=self.batch_size))
                if not articles:
                    self.phase, self.after_id = SweepPhase.DOCUMENTS, 0
                    continue
                versions = await self._within(deadline, self._index.get_versions(article.id for article in articles))
                now = self._clock()
                for article in articles:
                    record = classify_article(article, versions.get(article.id), now=now)
                    if record is not None:
                        await self._repair(record, report)
                report.scanned_articles += len(articles)
                self.after_id = articles[-1].id
            else:
                documents = await self._within(deadline, self._index.scan(after_id=self.after_id, limit=self.batch_size))
                if not documents:
                    self.phase, self.after_id = SweepPhase.ARTICLES, 0
                    report.completed = True
                    return
                snapshots = await self._within(deadline, self._store.get_snapshots(doc_id for doc_id, _ in documents))
                await self._repair_orphans(documents, snapshots, report)
                report.scanned_documents += len(documents)
                self.after_id = documents[-1][0]

    async def _repair_orphans(
        self,
        documents: Iterable[tuple[int, int]],
        snapshots: dict[int, Article],
        report: SweepReport,
    ) -> None:
        for doc_id, index_version in documents:
            if doc_id in snapshots:
                # Existing articles were classified during the primary scan.
                continue
            record = ReconciliationRecord(
                article_id=doc_id,
                kind=ReconciliationKind.ORPHANED,
                primary_version=None,
                index_version=index_version,
            )
            await self._repair(record, report)

    async def _repair(self, record: ReconciliationRecord, report: SweepReport) -> None:
        report.records.append(record)
        logger.info(
            "reconciliation found %s article_id=%s primary_version=%s index_version=%s",
            record.kind.value,
            record.article_id,
            record.primary_version,
            record.index_version,
        )
        await self._submit(repair_event(record))

    async def _within(self, deadline: float, awaitable: Awaitable[T]) -> T:
        remaining = deadline - self._monotonic()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise SweepBudgetExceeded()
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise SweepBudgetExceeded() from exc
