"""Publish state machine for articles.

draft -> published -> offline -> published ... Publishing is a one-way
disclosure: once an article has been published it can only be withdrawn to
offline, never reverted to draft. The first publication time is kept for good.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from blog_api.domain.models import Article, ArticleStatus, SyncEventKind
from blog_api.services.errors import TransitionError

ALLOWED_TRANSITIONS: dict[ArticleStatus, frozenset[ArticleStatus]] = {
    ArticleStatus.DRAFT: frozenset({ArticleStatus.PUBLISHED, ArticleStatus.OFFLINE}),
    ArticleStatus.PUBLISHED: frozenset({ArticleStatus.OFFLINE}),
    ArticleStatus.OFFLINE: frozenset({ArticleStatus.PUBLISHED}),
}


@dataclass(slots=True, frozen=True)
class StatusChange:
    status: ArticleStatus
    publish_time: datetime | None
    changed: bool


def validate_transition(current: ArticleStatus, requested: ArticleStatus) -> None:
    if current == requested:
        return
    if requested not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise TransitionError(current.value, requested.value)


def resolve_publish_time(
    current_publish_time: datetime | None,
    requested: ArticleStatus,
    *,
    now: datetime,
    explicit_publish_time: datetime | None = None,
) -> datetime | None:
    if requested != ArticleStatus.PUBLISHED:
        return current_publish_time
    if explicit_publish_time is not None:
        return explicit_publish_time
    return current_publish_time or now


def plan_status_change(
    article: Article,
    requested: ArticleStatus,
    *,
    now: datetime,
    explicit_publish_time: datetime | None = None,
) -> StatusChange:
    """Validate a transition and work out the resulting status and publish time.

    The article itself is left untouched; stores apply the returned change
    inside their own write path so a rejected edge never mutates anything.
    """
    validate_transition(article.status, requested)
    publish_time = resolve_publish_time(
        article.publish_time,
        requested,
        now=now,
        explicit_publish_time=explicit_publish_time,
    )
    changed = requested != article.status or publish_time != article.publish_time
    return StatusChange(status=requested, publish_time=publish_time, changed=changed)


def is_effectively_visible(article: Article, *, now: datetime) -> bool:
    if article.is_deleted or article.status != ArticleStatus.PUBLISHED:
        return False
    if article.publish_time is None:
        return False
    return article.publish_time <= now


def event_kind_for(article: Article | None, *, now: datetime) -> SyncEventKind:
    if article is not None and is_effectively_visible(article, now=now):
        return SyncEventKind.UPSERT
    return SyncEventKind.DELETE
