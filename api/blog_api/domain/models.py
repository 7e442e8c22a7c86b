from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 10

ArticleSortBy = Literal["publish_time", "create_time", "update_time"]
SortDir = Literal["asc", "desc"]

# Fields projected into the search document; a change to any of them bumps sync_version.
SEARCH_RELEVANT_FIELDS = frozenset(
    {"title", "summary", "content", "tags", "status", "category_id", "author_id", "publish_time", "deleted_at"}
)
UPDATABLE_FIELDS = frozenset(
    {"title", "slug", "summary", "content", "cover_image", "category_id", "tags", "is_top", "is_featured"}
)


class ArticleStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    OFFLINE = "offline"

    @property
    def code(self) -> int:
        return _STATUS_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> ArticleStatus:
        for status, value in _STATUS_CODES.items():
            if value == code:
                return status
        raise ValueError(f"unknown article status code: {code}")


# Column values used by the original article table.
_STATUS_CODES = {
    ArticleStatus.DRAFT: 0,
    ArticleStatus.PUBLISHED: 1,
    ArticleStatus.OFFLINE: 2,
}


class SyncEventKind(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class SyncOrigin(str, Enum):
    MUTATION = "mutation"
    RECONCILIATION = "reconciliation"
    SCHEDULE = "schedule"


class ReconciliationKind(str, Enum):
    MISSING = "missing"
    STALE = "stale"
    ORPHANED = "orphaned"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Article:
    id: int
    title: str
    slug: str
    content: str
    author_id: int
    summary: str | None = None
    cover_image: str | None = None
    category_id: int | None = None
    tags: list[str] = field(default_factory=list)
    status: ArticleStatus = ArticleStatus.DRAFT
    is_top: bool = False
    is_featured: bool = False
    word_count: int = 0
    reading_time: int = 0
    publish_time: datetime | None = None
    create_time: datetime = field(default_factory=utcnow)
    update_time: datetime = field(default_factory=utcnow)
    version: int = 1
    sync_version: int = 1
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "summary": self.summary,
            "content": self.content,
            "cover_image": self.cover_image,
            "category_id": self.category_id,
            "author_id": self.author_id,
            "tags": list(self.tags),
            "status": self.status.value,
            "is_top": self.is_top,
            "is_featured": self.is_featured,
            "word_count": self.word_count,
            "reading_time": self.reading_time,
            "publish_time": self.publish_time,
            "create_time": self.create_time,
            "update_time": self.update_time,
            "version": self.version,
            "sync_version": self.sync_version,
        }


@dataclass(slots=True)
class ArticleDraft:
    title: str
    content: str
    author_id: int
    slug: str | None = None
    summary: str | None = None
    cover_image: str | None = None
    category_id: int | None = None
    tags: list[str] = field(default_factory=list)
    status: ArticleStatus = ArticleStatus.DRAFT
    is_top: bool = False
    is_featured: bool = False
    publish_time: datetime | None = None


@dataclass(slots=True)
class ArticleFilter:
    category_id: int | None = None
    author_id: int | None = None
    status: ArticleStatus | None = None
    is_top: bool | None = None
    is_featured: bool | None = None
    title: str | None = None


@dataclass(slots=True)
class ArticleSort:
    sort_by: ArticleSortBy = "publish_time"
    sort_dir: SortDir = "desc"


@dataclass(slots=True)
class PageRequest:
    offset: int = 0
    limit: int = DEFAULT_PAGE_SIZE

    def __post_init__(self) -> None:
        self.offset = max(0, self.offset)
        self.limit = min(MAX_PAGE_SIZE, max(1, self.limit))


@dataclass(slots=True)
class ArticlePage:
    items: list[Article]
    total: int
    offset: int
    limit: int


@dataclass(slots=True)
class SearchDocument:
    id: int
    author_id: int
    title: str
    tags: list[str]
    text: str
    version: int
    publish_time: datetime | None = None


@dataclass(slots=True)
class SearchQuery:
    text: str | None = None
    tags: list[str] = field(default_factory=list)
    author_id: int | None = None


@dataclass(slots=True, frozen=True)
class SyncEvent:
    article_id: int
    kind: SyncEventKind
    source_version: int
    origin: SyncOrigin = SyncOrigin.MUTATION


@dataclass(slots=True, frozen=True)
class ReconciliationRecord:
    article_id: int
    kind: ReconciliationKind
    primary_version: int | None = None
    index_version: int | None = None


@dataclass(slots=True)
class DeadLetter:
    article_id: int
    kind: SyncEventKind
    source_version: int
    origin: SyncOrigin
    attempts: int
    error: str
    failed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "article_id": self.article_id,
            "kind": self.kind.value,
            "source_version": self.source_version,
            "origin": self.origin.value,
            "attempts": self.attempts,
            "error": self.error,
            "failed_at": self.failed_at,
        }
