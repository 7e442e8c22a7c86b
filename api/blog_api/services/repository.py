from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from blog_api.domain.models import (
    Article,
    ArticleDraft,
    ArticleFilter,
    ArticlePage,
    ArticleSort,
    ArticleStatus,
    DeadLetter,
    PageRequest,
    SyncEventKind,
    SyncOrigin,
    utcnow,
)
from blog_api.domain.mutations import plan_soft_delete, plan_status, plan_update, prepare_new_article
from blog_api.domain.tags import decode_tags, encode_tags
from blog_api.services.errors import ArticleNotFound, StoreUnavailableError, ValidationError, VersionConflict

ARTICLE_COLUMNS = """
  id,
  title,
  slug,
  summary,
  content,
  cover_image,
  category_id,
  author_id,
  tags,
  status,
  is_top,
  is_featured,
  word_count,
  reading_time,
  publish_time,
  create_time,
  update_time,
  version,
  sync_version,
  deleted_at
"""


class PostgresArticleRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._clock = clock
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create(self, draft: ArticleDraft, *, actor_id: int | None = None) -> Article:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    article_id = await conn.fetchval("select nextval(pg_get_serial_sequence('articles', 'id'))")
                    article = prepare_new_article(draft, article_id=int(article_id), now=self._clock())
                    await conn.execute(
                        """
                        insert into articles (
                          id,
                          title,
                          slug,
                          summary,
                          content,
                          cover_image,
                          category_id,
                          author_id,
                          tags,
                          status,
                          is_top,
                          is_featured,
                          word_count,
                          reading_time,
                          publish_time,
                          create_time,
                          update_time,
                          version,
                          sync_version
                        )
                        values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19)
                        """,
                        *self._article_to_params(article),
                    )
                    await self._record_event(
                        conn,
                        article=article,
                        event_type="created",
                        actor_id=actor_id,
                        payload={"status": article.status.value},
                    )
                    return article
        except pg_exc.UniqueViolationError as exc:
            raise ValidationError("slug already exists") from exc

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
            expected_version=expected_version,
            planner=lambda article: plan_update(article, changes, now=self._clock()),
            event_type="updated",
            actor_id=actor_id,
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
            expected_version=expected_version,
            planner=lambda article: plan_status(
                article,
                status,
                now=self._clock(),
                explicit_publish_time=publish_time,
            ),
            event_type="status_changed",
            actor_id=actor_id,
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
            expected_version=expected_version,
            planner=lambda article: plan_soft_delete(article, now=self._clock()),
            event_type="deleted",
            actor_id=actor_id,
        )

    async def get(self, article_id: int) -> Article:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {ARTICLE_COLUMNS} from articles where id = $1 and deleted_at is null",
            article_id,
        )
        if not row:
            raise ArticleNotFound("article not found")
        return self._row_to_article(row)

    async def get_by_slug(self, slug: str) -> Article:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {ARTICLE_COLUMNS} from articles where slug = $1 and deleted_at is null",
            slug,
        )
        if not row:
            raise ArticleNotFound("article not found")
        return self._row_to_article(row)

    async def get_snapshot(self, article_id: int) -> Article | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {ARTICLE_COLUMNS} from articles where id = $1", article_id)
        return self._row_to_article(row) if row else None

    async def get_snapshots(self, article_ids: Iterable[int]) -> dict[int, Article]:
        ids = list(article_ids)
        if not ids:
            return {}
        pool = await self._get_pool()
        rows = await pool.fetch(f"select {ARTICLE_COLUMNS} from articles where id = any($1::bigint[])", ids)
        return {int(row["id"]): self._row_to_article(row) for row in rows}

    async def scan_snapshots(self, *, after_id: int, limit: int) -> list[Article]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {ARTICLE_COLUMNS}
            from articles
            where id > $1
            order by id asc
            limit $2
            """,
            after_id,
            limit,
        )
        return [self._row_to_article(row) for row in rows]

    async def query(self, article_filter: ArticleFilter, sort: ArticleSort, page: PageRequest) -> ArticlePage:
        pool = await self._get_pool()
        conditions: list[str] = ["a.deleted_at is null"]
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if article_filter.category_id is not None:
            conditions.append(f"a.category_id = {bind(article_filter.category_id)}")
        if article_filter.author_id is not None:
            conditions.append(f"a.author_id = {bind(article_filter.author_id)}")
        if article_filter.status is not None:
            conditions.append(f"a.status = {bind(article_filter.status.code)}")
        if article_filter.is_top is not None:
            conditions.append(f"a.is_top = {bind(int(article_filter.is_top))}")
        if article_filter.is_featured is not None:
            conditions.append(f"a.is_featured = {bind(int(article_filter.is_featured))}")
        normalized_title = self._coerce_text(article_filter.title)
        if normalized_title:
            pattern = f"%{escape_like(normalized_title)}%"
            conditions.append(f"a.title ilike {bind(pattern)} escape '\\'")

        where_sql = " and ".join(conditions)
        sort_expr = self._resolve_article_sort_expr(sort.sort_by)
        direction = "asc" if sort.sort_dir == "asc" else "desc"
        order_by_sql = f"({sort_expr} is null) asc, {sort_expr} {direction}, a.id {direction}"

        total = await pool.fetchval(f"select count(*) from articles a where {where_sql}", *params)
        limit_token = bind(page.limit)
        offset_token = bind(page.offset)
        rows = await pool.fetch(
            f"""
            select {ARTICLE_COLUMNS}
            from articles a
            where {where_sql}
            order by {order_by_sql}
            limit {limit_token}
            offset {offset_token}
            """,
            *params,
        )
        return ArticlePage(
            items=[self._row_to_article(row) for row in rows],
            total=int(total or 0),
            offset=page.offset,
            limit=page.limit,
        )

    async def list_due_scheduled(
        self,
        *,
        since: datetime,
        until: datetime,
        limit: int,
        after_id: int = 0,
    ) -> list[Article]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {ARTICLE_COLUMNS}
            from articles
            where status = $1
              and deleted_at is null
              and (publish_time, id) > ($2::timestamptz, $3::bigint)
              and publish_time <= $4
            order by publish_time asc, id asc
            limit $5
            """,
            ArticleStatus.PUBLISHED.code,
            since,
            after_id,
            until,
            limit,
        )
        return [self._row_to_article(row) for row in rows]

    async def record_dead_letter(self, dead_letter: DeadLetter) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into article_sync_dead_letters (
              article_id,
              kind,
              source_version,
              origin,
              attempts,
              error,
              failed_at
            )
            values ($1, $2, $3, $4, $5, $6, $7)
            """,
            dead_letter.article_id,
            dead_letter.kind.value,
            dead_letter.source_version,
            dead_letter.origin.value,
            dead_letter.attempts,
            dead_letter.error,
            dead_letter.failed_at,
        )

    async def list_dead_letters(self, *, limit: int) -> list[DeadLetter]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select article_id, kind, source_version, origin, attempts, error, failed_at
            from article_sync_dead_letters
            order by failed_at desc, id desc
            limit $1
            """,
            limit,
        )
        return [
            DeadLetter(
                article_id=int(row["article_id"]),
                kind=SyncEventKind(row["kind"]),
                source_version=int(row["source_version"]),
                origin=SyncOrigin(row["origin"]),
                attempts=int(row["attempts"]),
                error=row["error"],
                failed_at=row["failed_at"],
            )
            for row in rows
        ]

    async def _mutate(
        self,
        article_id: int,
        *,
        expected_version: int | None,
        planner: Callable[[Article], tuple[Article, frozenset[str]]],
        event_type: str,
        actor_id: int | None,
    ) -> tuple[Article, frozenset[str]]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"select {ARTICLE_COLUMNS} from articles where id = $1 and deleted_at is null for update",
                        article_id,
                    )
                    if not row:
                        raise ArticleNotFound("article not found")

                    current = self._row_to_article(row)
                    if expected_version is not None and current.version != expected_version:
                        raise VersionConflict(article_id, expected_version, current.version)

                    updated, changed = planner(current)
                    if not changed:
                        return updated, changed

                    status = await conn.execute(
                        """
                        update articles
                        set
                          title = $2,
                          slug = $3,
                          summary = $4,
                          content = $5,
                          cover_image = $6,
                          category_id = $7,
                          author_id = $8,
                          tags = $9,
                          status = $10,
                          is_top = $11,
                          is_featured = $12,
                          word_count = $13,
                          reading_time = $14,
                          publish_time = $15,
                          create_time = $16,
                          update_time = $17,
                          version = $18,
                          sync_version = $19,
                          deleted_at = $20
                        where id = $1 and version = $21
                        """,
                        *self._article_to_params(updated),
                        updated.deleted_at,
                        current.version,
                    )
                    if status != "UPDATE 1":
                        raise VersionConflict(article_id, current.version, None)

                    await self._record_event(
                        conn,
                        article=updated,
                        event_type=event_type,
                        actor_id=actor_id,
                        payload={"changed": sorted(changed), "from_version": current.version},
                    )
                    return updated, changed
        except pg_exc.UniqueViolationError as exc:
            raise ValidationError("slug already exists") from exc

    async def _record_event(
        self,
        conn: asyncpg.Connection,
        *,
        article: Article,
        event_type: str,
        actor_id: int | None,
        payload: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into article_events (
              article_id,
              event_type,
              actor_id,
              version,
              payload
            )
            values ($1, $2, $3, $4, $5::jsonb)
            """,
            article.id,
            event_type,
            actor_id,
            article.version,
            json.dumps(payload),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("BLOG_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc

    @staticmethod
    def _article_to_params(article: Article) -> tuple[Any, ...]:
        return (
            article.id,
            article.title,
            article.slug,
            article.summary,
            article.content,
            article.cover_image,
            article.category_id,
            article.author_id,
            encode_tags(article.tags),
            article.status.code,
            int(article.is_top),
            int(article.is_featured),
            article.word_count,
            article.reading_time,
            article.publish_time,
            article.create_time,
            article.update_time,
            article.version,
            article.sync_version,
        )

    @staticmethod
    def _row_to_article(row: asyncpg.Record) -> Article:
        return Article(
            id=int(row["id"]),
            title=row["title"],
            slug=row["slug"],
            summary=row["summary"],
            content=row["content"],
            cover_image=row["cover_image"],
            category_id=row["category_id"],
            author_id=int(row["author_id"]),
            tags=decode_tags(row["tags"]),
            status=ArticleStatus.from_code(int(row["status"])),
            is_top=bool(row["is_top"]),
            is_featured=bool(row["is_featured"]),
            word_count=int(row["word_count"] or 0),
            reading_time=int(row["reading_time"] or 0),
            publish_time=row["publish_time"],
            create_time=row["create_time"],
            update_time=row["update_time"],
            version=int(row["version"]),
            sync_version=int(row["sync_version"]),
            deleted_at=row["deleted_at"],
        )

    @staticmethod
    def _resolve_article_sort_expr(sort_by: str) -> str:
        sort_map = {
            "publish_time": "a.publish_time",
            "create_time": "a.create_time",
            "update_time": "a.update_time",
        }
        return sort_map.get(sort_by, "a.publish_time")

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)


def escape_like(text: str) -> str:
    """Escape ``\\``, ``%`` and ``_`` so ``text`` matches literally inside a LIKE pattern."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
