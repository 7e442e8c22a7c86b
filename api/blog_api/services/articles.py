"""Article use cases: every mutation commits to the primary store first and
only then hands exactly one SyncEvent to the coordinator."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from blog_api.core.auth import Principal
from blog_api.domain.models import (
    Article,
    ArticleDraft,
    ArticleFilter,
    ArticlePage,
    ArticleSort,
    ArticleStatus,
    PageRequest,
    SearchDocument,
    SearchQuery,
    SyncEvent,
    SyncOrigin,
    utcnow,
)
from blog_api.domain.mutations import is_search_relevant
from blog_api.domain.state import event_kind_for, is_effectively_visible
from blog_api.services.protocols import ArticleStore, SearchIndex
from blog_api.services.sync import SyncCoordinator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SearchResult:
    ids: list[int]
    articles: list[Article]


class ArticleService:
    def __init__(
        self,
        store: ArticleStore,
        index: SearchIndex,
        coordinator: SyncCoordinator,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._index = index
        self._coordinator = coordinator
        self._clock = clock

    async def create_article(self, draft: ArticleDraft, *, principal: Principal) -> Article:
        principal.require_scopes({"article:write"})
        if not principal.is_editor:
            draft.author_id = principal.require_user_id()
        article = await self._store.create(draft, actor_id=principal.user_id)
        await self._emit(article, frozenset({"title", "content", "status"}))
        logger.info("article created id=%s status=%s author_id=%s", article.id, article.status.value, article.author_id)
        return article

    async def update_article(
        self,
        article_id: int,
        changes: dict[str, Any],
        *,
        expected_version: int,
        principal: Principal,
    ) -> Article:
        await self._authorize(article_id, principal)
        article, changed = await self._store.update(
            article_id,
            changes,
            expected_version=expected_version,
            actor_id=principal.user_id,
        )
        await self._emit(article, changed)
        return article

    async def change_status(
        self,
        article_id: int,
        status: ArticleStatus,
        *,
        expected_version: int | None = None,
        publish_time: datetime | None = None,
        principal: Principal,
    ) -> Article:
        await self._authorize(article_id, principal)
        article, changed = await self._store.change_status(
            article_id,
            status,
            expected_version=expected_version,
            publish_time=publish_time,
            actor_id=principal.user_id,
        )
        await self._emit(article, changed)
        if changed:
            logger.info("article status changed id=%s status=%s version=%s", article.id, status.value, article.version)
        return article

    async def delete_article(
        self,
        article_id: int,
        *,
        expected_version: int | None = None,
        principal: Principal,
    ) -> Article:
        await self._authorize(article_id, principal)
        article, changed = await self._store.soft_delete(
            article_id,
            expected_version=expected_version,
            actor_id=principal.user_id,
        )
        await self._emit(article, changed)
        logger.info("article deleted id=%s version=%s", article.id, article.version)
        return article

    async def get_article(self, article_id: int) -> Article:
        return await self._store.get(article_id)

    async def get_article_by_slug(self, slug: str) -> Article:
        return await self._store.get_by_slug(slug)

    async def list_articles(self, article_filter: ArticleFilter, sort: ArticleSort, page: PageRequest) -> ArticlePage:
        return await self._store.query(article_filter, sort, page)

    async def search(self, query: SearchQuery, page: PageRequest) -> SearchResult:
        ids = await self._index.search(query, page)
        snapshots = await self._store.get_snapshots(ids)
        now = self._clock()
        # The index may lag behind the store; never surface an article that is no longer visible.
        articles = [
            snapshots[article_id]
            for article_id in ids
            if article_id in snapshots and is_effectively_visible(snapshots[article_id], now=now)
        ]
        return SearchResult(ids=ids, articles=articles)

    async def find_by_author(self, author_id: int) -> list[SearchDocument]:
        return await self._index.find_by_author(author_id)

    async def _authorize(self, article_id: int, principal: Principal) -> None:
        principal.require_scopes({"article:write"})
        if principal.is_editor:
            return
        article = await self._store.get(article_id)
        principal.require_author(article.author_id)

    async def _emit(self, article: Article, changed: frozenset[str]) -> SyncEvent | None:
        if not is_search_relevant(changed):
            return None
        event = SyncEvent(
            article_id=article.id,
            kind=event_kind_for(article, now=self._clock()),
            source_version=article.sync_version,
            origin=SyncOrigin.MUTATION,
        )
        await self._coordinator.submit(event)
        return event
