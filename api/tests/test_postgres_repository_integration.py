from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from blog_api.domain.models import (
    ArticleDraft,
    ArticleFilter,
    ArticleSort,
    ArticleStatus,
    DeadLetter,
    PageRequest,
    SyncEventKind,
    SyncOrigin,
)
from blog_api.domain.tags import decode_tags
from blog_api.services.errors import ArticleNotFound, StoreUnavailableError, TransitionError, ValidationError, VersionConflict
from blog_api.services.repository import PostgresArticleRepository, escape_like

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"
T = TypeVar("T")


@pytest.fixture
def database_url() -> str:
    url = os.getenv("BLOG_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require BLOG_DATABASE_URL or DATABASE_URL")
    _run(_reset(url))
    return url


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _reset(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        await conn.execute("truncate article_events, article_sync_dead_letters, articles restart identity cascade")
    finally:
        await conn.close()


def _repository(database_url: str) -> PostgresArticleRepository:
    return PostgresArticleRepository(database_url, 1, 2)


def test_create_roundtrips_tags_and_status_codes(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            created = await repository.create(
                ArticleDraft(title="Postgres Tips", content="vacuum", author_id=3, tags=["db", "索引"]),
                actor_id=3,
            )
            loaded = await repository.get(created.id)
            assert loaded.tags == ["db", "索引"]
            assert loaded.status == ArticleStatus.DRAFT
            assert (await repository.get_by_slug("postgres-tips")).id == created.id

            conn = await asyncpg.connect(database_url)
            try:
                row = await conn.fetchrow("select tags, status from articles where id = $1", created.id)
                events = await conn.fetchval("select count(*) from article_events where article_id = $1", created.id)
            finally:
                await conn.close()
            assert decode_tags(row["tags"]) == ["db", "索引"]
            assert row["status"] == 0
            assert events == 1
        finally:
            await repository.close()

    _run(scenario())


def test_corrupt_tag_cell_reads_as_empty(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            created = await repository.create(ArticleDraft(title="Legacy", content="body", author_id=1))
            conn = await asyncpg.connect(database_url)
            try:
                await conn.execute("update articles set tags = $1 where id = $2", "{not json", created.id)
            finally:
                await conn.close()
            assert (await repository.get(created.id)).tags == []
        finally:
            await repository.close()

    _run(scenario())


def test_versioned_mutations_and_conflicts(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            created = await repository.create(ArticleDraft(title="Versioned", content="body", author_id=1))
            updated, changed = await repository.update(created.id, {"content": "new body"}, expected_version=1)
            assert changed == frozenset({"content"})
            assert updated.version == updated.sync_version == 2

            with pytest.raises(VersionConflict):
                await repository.update(created.id, {"content": "lost"}, expected_version=1)

            published, _ = await repository.change_status(created.id, ArticleStatus.PUBLISHED)
            assert published.publish_time is not None
            with pytest.raises(TransitionError):
                await repository.change_status(created.id, ArticleStatus.DRAFT)
            assert (await repository.get(created.id)).status == ArticleStatus.PUBLISHED

            flagged, changed = await repository.update(created.id, {"is_featured": True}, expected_version=published.version)
            assert flagged.sync_version == published.sync_version

            await repository.soft_delete(created.id)
            with pytest.raises(ArticleNotFound):
                await repository.get(created.id)
            snapshot = await repository.get_snapshot(created.id)
            assert snapshot is not None and snapshot.is_deleted
        finally:
            await repository.close()

    _run(scenario())


def test_duplicate_slug_is_validation_error(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            await repository.create(ArticleDraft(title="Same", content="a", author_id=1))
            with pytest.raises(ValidationError):
                await repository.create(ArticleDraft(title="Same", content="b", author_id=1))
        finally:
            await repository.close()

    _run(scenario())


def test_query_scan_and_scheduled_listing(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        now = datetime.now(timezone.utc)
        try:
            for number in range(3):
                await repository.create(
                    ArticleDraft(
                        title=f"Post {number}",
                        content="body",
                        author_id=1,
                        status=ArticleStatus.PUBLISHED,
                        publish_time=now + timedelta(minutes=number * 10),
                    )
                )
            await repository.create(ArticleDraft(title="Draft", content="body", author_id=2))

            page = await repository.query(ArticleFilter(), ArticleSort(), PageRequest(limit=10))
            assert page.total == 4
            assert [article.title for article in page.items] == ["Post 2", "Post 1", "Post 0", "Draft"]

            drafts = await repository.query(ArticleFilter(status=ArticleStatus.DRAFT), ArticleSort(), PageRequest())
            assert [article.author_id for article in drafts.items] == [2]

            scanned = await repository.scan_snapshots(after_id=1, limit=2)
            assert [article.id for article in scanned] == [2, 3]
            assert set(await repository.get_snapshots([1, 4, 99])) == {1, 4}

            due = await repository.list_due_scheduled(since=now, until=now + timedelta(minutes=15), limit=10)
            assert [article.title for article in due] == ["Post 0", "Post 1"]
            resumed = await repository.list_due_scheduled(
                since=now, until=now + timedelta(minutes=15), limit=10, after_id=due[0].id
            )
            assert [article.title for article in resumed] == ["Post 1"]

            matched = await repository.query(ArticleFilter(title="_"), ArticleSort(), PageRequest())
            assert matched.total == 0
        finally:
            await repository.close()

    _run(scenario())


def test_dead_letters_are_persisted(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            record = DeadLetter(
                article_id=5,
                kind=SyncEventKind.UPSERT,
                source_version=3,
                origin=SyncOrigin.MUTATION,
                attempts=5,
                error="TransientIndexError('down')",
            )
            await repository.record_dead_letter(record)
            stored = await repository.list_dead_letters(limit=10)
            assert [(item.article_id, item.attempts, item.kind) for item in stored] == [(5, 5, SyncEventKind.UPSERT)]
        finally:
            await repository.close()

    _run(scenario())


def test_missing_database_url_is_unavailable() -> None:
    repository = PostgresArticleRepository(None, 1, 2)
    with pytest.raises(StoreUnavailableError):
        _run(repository.get(1))


def test_title_filter_pattern_is_literal() -> None:
    assert escape_like("50% off_sale") == "50\\% off\\_sale"
    assert escape_like("back\\slash") == "back\\\\slash"
    assert escape_like("plain") == "plain"
