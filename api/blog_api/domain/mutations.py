"""Pure article mutation planning shared by every primary store implementation.

Stores load the current row under their own locking discipline, call one of
these helpers to get the next row state, and persist it. Nothing here touches
I/O, so the state machine and version bookkeeping have one code path.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import uuid4

from blog_api.domain.models import (
    SEARCH_RELEVANT_FIELDS,
    UPDATABLE_FIELDS,
    Article,
    ArticleDraft,
    ArticleStatus,
)
from blog_api.domain.state import plan_status_change
from blog_api.domain.text import MAX_TITLE_LENGTH, count_words, generate_slug, is_valid_slug
from blog_api.services.errors import ValidationError


def prepare_new_article(draft: ArticleDraft, *, article_id: int, now: datetime) -> Article:
    title = _require_text(draft.title, "title")
    content = _require_text(draft.content, "content")
    if draft.author_id is None or draft.author_id <= 0:
        raise ValidationError("author_id is required")

    slug = _coerce_slug(draft.slug, title)
    word_count, reading_time = count_words(content)
    article = Article(
        id=article_id,
        title=title,
        slug=slug,
        content=content,
        author_id=draft.author_id,
        summary=draft.summary,
        cover_image=draft.cover_image,
        category_id=draft.category_id,
        tags=list(draft.tags or []),
        status=ArticleStatus.DRAFT,
        is_top=bool(draft.is_top),
        is_featured=bool(draft.is_featured),
        word_count=word_count,
        reading_time=reading_time,
        publish_time=None,
        create_time=now,
        update_time=now,
        version=1,
        sync_version=1,
    )
    if draft.status != ArticleStatus.DRAFT:
        change = plan_status_change(article, draft.status, now=now, explicit_publish_time=draft.publish_time)
        article.status = change.status
        article.publish_time = change.publish_time
    return article


def plan_update(article: Article, changes: dict[str, Any], *, now: datetime) -> tuple[Article, frozenset[str]]:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"fields cannot be updated: {sorted(unknown)}")

    normalized = dict(changes)
    if "title" in normalized:
        normalized["title"] = _require_text(normalized["title"], "title")
    if "content" in normalized:
        normalized["content"] = _require_text(normalized["content"], "content")
    if "slug" in normalized:
        normalized["slug"] = _coerce_slug(normalized["slug"], normalized.get("title", article.title))
    if "tags" in normalized:
        normalized["tags"] = list(normalized["tags"] or [])
    for flag in ("is_top", "is_featured"):
        if flag in normalized:
            normalized[flag] = bool(normalized[flag])

    changed = frozenset(name for name, value in normalized.items() if getattr(article, name) != value)
    if not changed:
        return article, changed

    updated = replace(article, **{name: normalized[name] for name in changed})
    if "content" in changed:
        updated.word_count, updated.reading_time = count_words(updated.content)
    return _bump(updated, changed, now=now), changed


def plan_status(
    article: Article,
    requested: ArticleStatus,
    *,
    now: datetime,
    explicit_publish_time: datetime | None = None,
) -> tuple[Article, frozenset[str]]:
    change = plan_status_change(article, requested, now=now, explicit_publish_time=explicit_publish_time)
    if not change.changed:
        return article, frozenset()

    changed = {"status"} if change.status != article.status else set()
    if change.publish_time != article.publish_time:
        changed.add("publish_time")
    updated = replace(article, status=change.status, publish_time=change.publish_time)
    return _bump(updated, frozenset(changed), now=now), frozenset(changed)


def plan_soft_delete(article: Article, *, now: datetime) -> tuple[Article, frozenset[str]]:
    if article.is_deleted:
        return article, frozenset()
    changed = frozenset({"deleted_at"})
    return _bump(replace(article, deleted_at=now), changed, now=now), changed


def is_search_relevant(changed: frozenset[str]) -> bool:
    return bool(changed & SEARCH_RELEVANT_FIELDS)


def _bump(article: Article, changed: frozenset[str], *, now: datetime) -> Article:
    article.version += 1
    article.update_time = now
    if is_search_relevant(changed):
        article.sync_version = article.version
    return article


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")
    if name == "title" and len(value) > MAX_TITLE_LENGTH:
        raise ValidationError(f"title must be at most {MAX_TITLE_LENGTH} characters")
    return value.strip() if name == "title" else value


def _coerce_slug(slug: str | None, title: str) -> str:
    candidate = slug.strip() if isinstance(slug, str) else ""
    if not candidate:
        # Titles without ascii letters or digits (e.g. CJK) still need a unique, url-safe slug.
        return generate_slug(title) or f"article-{uuid4().hex[:12]}"
    if not is_valid_slug(candidate):
        raise ValidationError("slug may only contain lowercase letters, digits and dashes")
    return candidate
