from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime
from typing import Any

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
    utcnow,
)
from blog_api.domain.mutations import plan_soft_delete, plan_status, plan_update, prepare_new_article
from blog_api.domain.text import tokenize
from blog_api.services.errors import ArticleNotFound, StaleWriteRejected, ValidationError, VersionConflict


class InMemoryArticleStore:
    """Process-local primary store for tests and single-node development."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow, dead_letter_capacity: int = 1000) -> None:
        self._clock = clock
        self._articles: dict[int, Article] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()
        self.events: list[dict[str, Any]] = []
        self.dead_letters: deque[DeadLetter] = deque(maxlen=dead_letter_capacity)

    async def create(self, draft: ArticleDraft, *, actor_id: int | None = None) -> Article:
        async with self._lock:
            article = prepare_new_article(draft, article_id=self._next_id, now=self._clock())
            self._ensure_unique_slug(article)
            self._next_id += 1
            self._articles[article.id] = article
            self._record_event(article, "created", actor_id, {"status": article.status.value})
            return _copy(article)

    async def update(
        self,
        article_id: int,
        changes: dict[str, Any],
        *,
        expected_version: int,
        actor_id: int | None = None,
    ) -> tuple[Article, frozenset[str]]:
        return await self._mutate(
            article_id,
            expected_version,
            lambda article: plan_update(article, changes, now=self._clock()),
            "updated",
            actor_id,
        )

    async def change_status(
        self,
        article_id: int,
        status: ArticleStatus,
        *,
        expected_version: int | None = None,
        publish_time: datetime | None = None,
        actor_id: int | None = None,
    ) -> tuple[Article, frozenset[str]]:
        return await self._mutate(
            article_id,
            expected_version,
            lambda article: plan_status(article, status, now=self._clock(), explicit_publish_time=publish_time),
            "status_changed",
            actor_id,
        )

    async def soft_delete(
        self,
        article_id: int,
        *,
        expected_version: int | None = None,
        actor_id: int | None = None,
    ) -> tuple[Article, frozenset[str]]:
        return await self._mutate(
            article_id,
            expected_version,
            lambda article: plan_soft_delete(article, now=self._clock()),
            "deleted",
            actor_id,
        )

    async def get(self, article_id: int) -> Article:
        article = self._articles.get(article_id)
        if article is None or article.is_deleted:
            raise ArticleNotFound("article not found")
        return _copy(article)

    async def get_by_slug(self, slug: str) -> Article:
        for article in self._articles.values():
            if article.slug == slug and not article.is_deleted:
                return _copy(article)
        raise ArticleNotFound("article not found")

    async def get_snapshot(self, article_id: int) -> Article | None:
        article = self._articles.get(article_id)
        return _copy(article) if article is not None else None

    async def get_snapshots(self, article_ids: Iterable[int]) -> dict[int, Article]:
        return {
            article_id: _copy(self._articles[article_id]) for article_id in article_ids if article_id in self._articles
        }

    async def scan_snapshots(self, *, after_id: int, limit: int) -> list[Article]:
        ids = sorted(article_id for article_id in self._articles if article_id > after_id)[:limit]
        return [_copy(self._articles[article_id]) for article_id in ids]

    async def query(self, article_filter: ArticleFilter, sort: ArticleSort, page: PageRequest) -> ArticlePage:
        rows = [article for article in self._articles.values() if _matches(article, article_filter)]
        ordered = _sort_articles(rows, sort)
        items = [_copy(article) for article in ordered[page.offset : page.offset + page.limit]]
        return ArticlePage(items=items, total=len(rows), offset=page.offset, limit=page.limit)

    async def list_due_scheduled(
        self,
        *,
        since: datetime,
        until: datetime,
        limit: int,
        after_id: int = 0,
    ) -> list[Article]:
        due = [
            article
            for article in self._articles.values()
            if not article.is_deleted
            and article.status == ArticleStatus.PUBLISHED
            and article.publish_time is not None
            and (since, after_id) < (article.publish_time, article.id)
            and article.publish_time <= until
        ]
        due.sort(key=lambda article: (article.publish_time, article.id))
        return [_copy(article) for article in due[:limit]]

    async def record_dead_letter(self, dead_letter: DeadLetter) -> None:
        self.dead_letters.append(dead_letter)

    async def list_dead_letters(self, *, limit: int) -> list[DeadLetter]:
        return list(reversed(self.dead_letters))[:limit]

    async def close(self) -> None:
        return None

    async def _mutate(
        self,
        article_id: int,
        expected_version: int | None,
        planner: Callable[[Article], tuple[Article, frozenset[str]]],
        event_type: str,
        actor_id: int | None,
    ) -> tuple[Article, frozenset[str]]:
        async with self._lock:
            current = self._articles.get(article_id)
            if current is None or current.is_deleted:
                raise ArticleNotFound("article not found")
            if expected_version is not None and current.version != expected_version:
                raise VersionConflict(article_id, expected_version, current.version)

            updated, changed = planner(_copy(current))
            if changed:
                self._ensure_unique_slug(updated)
                self._articles[article_id] = updated
                self._record_event(updated, event_type, actor_id, {"changed": sorted(changed)})
            return _copy(updated), changed

    def _ensure_unique_slug(self, article: Article) -> None:
        for other in self._articles.values():
            if other.id != article.id and other.slug == article.slug:
                raise ValidationError("slug already exists")

    def _record_event(self, article: Article, event_type: str, actor_id: int | None, payload: dict[str, Any]) -> None:
        self.events.append(
            {
                "article_id": article.id,
                "event_type": event_type,
                "actor_id": actor_id,
                "version": article.version,
                "payload": payload,
                "created_at": self._clock(),
            }
        )


class InMemorySearchIndex:
    """Process-local search index with the same version contract as the Elasticsearch one."""

    def __init__(self) -> None:
        self._documents: dict[int, SearchDocument] = {}
        # Versions of deleted documents, so a late lower-version upsert cannot resurrect them.
        self._tombstones: dict[int, int] = {}

    async def upsert(self, document: SearchDocument) -> None:
        stored = self._documents.get(document.id)
        floor = stored.version if stored is not None else self._tombstones.get(document.id)
        if floor is not None and document.version < floor:
            raise StaleWriteRejected(document.id, document.version, floor)
        if stored is not None and stored.version == document.version:
            return
        self._documents[document.id] = replace(document, tags=list(document.tags))
        self._tombstones.pop(document.id, None)

    async def delete(self, article_id: int, *, version: int | None = None) -> None:
        stored = self._documents.get(article_id)
        if stored is not None and version is not None and version < stored.version:
            raise StaleWriteRejected(article_id, version, stored.version)
        self._documents.pop(article_id, None)
        if version is not None:
            self._tombstones[article_id] = max(version, self._tombstones.get(article_id, version))

    async def get(self, article_id: int) -> SearchDocument | None:
        document = self._documents.get(article_id)
        return replace(document, tags=list(document.tags)) if document is not None else None

    async def get_versions(self, article_ids: Iterable[int]) -> dict[int, int]:
        return {
            article_id: self._documents[article_id].version
            for article_id in article_ids
            if article_id in self._documents
        }

    async def scan(self, *, after_id: int, limit: int) -> list[tuple[int, int]]:
        ids = sorted(article_id for article_id in self._documents if article_id > after_id)[:limit]
        return [(article_id, self._documents[article_id].version) for article_id in ids]

    async def search(self, query: SearchQuery, page: PageRequest) -> list[int]:
        terms = tokenize(query.text)
        wanted_tags = {tag.lower() for tag in query.tags}
        scored: list[tuple[int, SearchDocument]] = []
        for document in self._documents.values():
            if query.author_id is not None and document.author_id != query.author_id:
                continue
            if wanted_tags and not wanted_tags <= {tag.lower() for tag in document.tags}:
                continue
            score = _score(document, terms)
            if terms and score == 0:
                continue
            scored.append((score, document))

        scored.sort(
            key=lambda item: (
                item[0],
                item[1].publish_time.timestamp() if item[1].publish_time else 0.0,
                item[1].id,
            ),
            reverse=True,
        )
        return [document.id for _, document in scored[page.offset : page.offset + page.limit]]

    async def find_by_author(self, author_id: int) -> list[SearchDocument]:
        documents = [document for document in self._documents.values() if document.author_id == author_id]
        documents.sort(key=lambda document: document.id, reverse=True)
        return [replace(document, tags=list(document.tags)) for document in documents]

    async def close(self) -> None:
        return None


def _copy(article: Article) -> Article:
    return replace(article, tags=list(article.tags))


def _matches(article: Article, article_filter: ArticleFilter) -> bool:
    if article.is_deleted:
        return False
    if article_filter.category_id is not None and article.category_id != article_filter.category_id:
        return False
    if article_filter.author_id is not None and article.author_id != article_filter.author_id:
        return False
    if article_filter.status is not None and article.status != article_filter.status:
        return False
    if article_filter.is_top is not None and article.is_top != article_filter.is_top:
        return False
    if article_filter.is_featured is not None and article.is_featured != article_filter.is_featured:
        return False
    if article_filter.title and article_filter.title.strip().lower() not in article.title.lower():
        return False
    return True


def _sort_articles(rows: list[Article], sort: ArticleSort) -> list[Article]:
    descending = sort.sort_dir != "asc"
    with_value = [article for article in rows if getattr(article, sort.sort_by) is not None]
    without_value = [article for article in rows if getattr(article, sort.sort_by) is None]
    with_value.sort(key=lambda article: (getattr(article, sort.sort_by), article.id), reverse=descending)
    without_value.sort(key=lambda article: article.id, reverse=descending)
    # Unpublished rows have no publish_time; they trail in both directions.
    return with_value + without_value


def _score(document: SearchDocument, terms: list[str]) -> int:
    if not terms:
        return 0
    body_tokens = tokenize(document.text)
    title_tokens = set(tokenize(document.title))
    tag_tokens = {token for tag in document.tags for token in tokenize(tag)}
    score = 0
    for term in terms:
        hits = body_tokens.count(term)
        if hits == 0 and term not in tag_tokens:
            return 0
        score += hits
        if term in title_tokens:
            score += 3
        if term in tag_tokens:
            score += 2
    return score
