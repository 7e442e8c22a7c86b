from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from fastapi import HTTPException, status
from starlette.requests import Request

from blog_api.core.config import Settings
from blog_api.domain.models import utcnow
from blog_api.services.articles import ArticleService
from blog_api.services.errors import SearchIndexError
from blog_api.services.protocols import ArticleStore, SearchIndex
from blog_api.services.reconciliation import ReconciliationJob
from blog_api.services.repository import PostgresArticleRepository
from blog_api.services.scheduling import ScheduledPublishChecker
from blog_api.services.search_index import ElasticsearchIndex
from blog_api.services.store import InMemoryArticleStore, InMemorySearchIndex
from blog_api.services.sync import SyncCoordinator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncRuntime:
    store: ArticleStore
    index: SearchIndex
    coordinator: SyncCoordinator
    reconciler: ReconciliationJob
    scheduler: ScheduledPublishChecker
    articles: ArticleService
    shutdown_drain_seconds: float = 5.0

    async def start(self) -> None:
        if isinstance(self.index, ElasticsearchIndex):
            try:
                await self.index.ensure_index()
            except SearchIndexError as exc:
                # Retried before the first document write.
                logger.warning("search index not ready at startup: %s", exc)
        await self.coordinator.start()

    async def close(self) -> None:
        await self.coordinator.stop(drain=True, drain_timeout=self.shutdown_drain_seconds)
        await self.index.close()
        await self.store.close()


def build_store(settings: Settings, *, clock: Callable[[], datetime] = utcnow) -> ArticleStore:
    if settings.store_backend == "memory":
        return InMemoryArticleStore(clock=clock, dead_letter_capacity=settings.sync_dead_letter_capacity)
    return PostgresArticleRepository(
        settings.database_url,
        settings.database_pool_min_size,
        settings.database_pool_max_size,
        clock=clock,
    )


def build_index(settings: Settings) -> SearchIndex:
    if settings.search_backend == "memory":
        return InMemorySearchIndex()
    return ElasticsearchIndex(
        settings.elasticsearch_url,
        settings.elasticsearch_index,
        timeout_seconds=settings.elasticsearch_timeout_seconds,
        username=settings.elasticsearch_username,
        password=settings.elasticsearch_password,
    )


def build_runtime(
    settings: Settings,
    *,
    store: ArticleStore | None = None,
    index: SearchIndex | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> SyncRuntime:
    store = store if store is not None else build_store(settings, clock=clock)
    index = index if index is not None else build_index(settings)
    coordinator = SyncCoordinator(
        store,
        index,
        worker_count=settings.sync_worker_count,
        max_attempts=settings.sync_max_attempts,
        retry_base_seconds=settings.sync_retry_base_seconds,
        retry_max_seconds=settings.sync_retry_max_seconds,
        attempt_timeout_seconds=settings.sync_attempt_timeout_seconds,
        dead_letter_capacity=settings.sync_dead_letter_capacity,
        clock=clock,
    )
    return SyncRuntime(
        store=store,
        index=index,
        coordinator=coordinator,
        reconciler=ReconciliationJob(
            store,
            index,
            coordinator.submit,
            batch_size=settings.reconcile_batch_size,
            time_budget_seconds=settings.reconcile_time_budget_seconds,
            clock=clock,
        ),
        scheduler=ScheduledPublishChecker(
            store,
            coordinator.submit,
            lookback_seconds=settings.scheduled_publish_lookback_seconds,
            batch_size=settings.reconcile_batch_size,
            clock=clock,
        ),
        articles=ArticleService(store, index, coordinator, clock=clock),
        shutdown_drain_seconds=settings.sync_shutdown_drain_seconds,
    )


def get_runtime(request: Request) -> SyncRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="service is starting up")
    return runtime
