"""Interfaces the sync pipeline depends on.

Both the primary store and the search index have a production implementation
(asyncpg / Elasticsearch) and an in-memory one; the pipeline only sees these
protocols.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from blog_api.domain.models import (
    Article,
    ArticleDraft,
    ArticleFilter,
    ArticlePage,
    ArticleSort,
    ArticleStatus,
    DeadLetter,
    PageRequest,
    SearchDocument,
    SearchQuery,
)


@runtime_checkable
class ArticleStore(Protocol):
    async def create(self, draft: ArticleDraft, *, actor_id: int | None = None) -> Article: ...

    async def update(
        self,
        article_id: int,
        changes: dict[str, Any],
        *,
        expected_version: int,
        actor_id: int | None = None,
    ) -> tuple[Article, frozenset[str]]: ...

    async def change_status(
        self,
        article_id: int,
        status: ArticleStatus,
        *,
        expected_version: int | None = None,
        publish_time: datetime | None = None,
        actor_id: int | None = None,
    ) -> tuple[Article, frozenset[str]]: ...

    async def soft_delete(
        self,
        article_id: int,
        *,
        expected_version: int | None = None,
        actor_id: int | None = None,
    ) -> tuple[Article, frozenset[str]]: ...

    async def get(self, article_id: int) -> Article: ...

    async def get_by_slug(self, slug: str) -> Article: ...

    async def get_snapshot(self, article_id: int) -> Article | None: ...

    async def get_snapshots(self, article_ids: Iterable[int]) -> dict[int, Article]: ...

    async def scan_snapshots(self, *, after_id: int, limit: int) -> list[Article]: ...

    async def query(self, article_filter: ArticleFilter, sort: ArticleSort, page: PageRequest) -> ArticlePage: ...

    async def list_due_scheduled(
        self, *, since: datetime, until: datetime, limit: int, after_id: int = 0
    ) -> list[Article]: ...

    async def record_dead_letter(self, dead_letter: DeadLetter) -> None: ...

    async def list_dead_letters(self, *, limit: int) -> list[DeadLetter]: ...

    async def close(self) -> None: ...


@runtime_checkable
class SearchIndex(Protocol):
    async def upsert(self, document: SearchDocument) -> None: ...

    async def delete(self, article_id: int, *, version: int | None = None) -> None: ...

    async def get(self, article_id: int) -> SearchDocument | None: ...

    async def get_versions(self, article_ids: Iterable[int]) -> dict[int, int]: ...

    async def scan(self, *, after_id: int, limit: int) -> list[tuple[int, int]]: ...

    async def search(self, query: SearchQuery, page: PageRequest) -> list[int]: ...

    async def find_by_author(self, author_id: int) -> list[SearchDocument]: ...

    async def close(self) -> None: ...
