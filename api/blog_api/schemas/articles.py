from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from blog_api.domain.models import MAX_PAGE_SIZE, Article
from blog_api.domain.text import MAX_TITLE_LENGTH

ArticleStatusName = Literal["draft", "published", "offline"]
ArticleSortBy = Literal["publish_time", "create_time", "update_time"]
SortDir = Literal["asc", "desc"]


def ensure_utc(value: datetime | None) -> datetime | None:
    # Visibility compares against an aware clock; naive input is read as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ArticleOut(BaseModel):
    id: int
    title: str
    slug: str
    summary: str | None = None
    content: str
    cover_image: str | None = None
    category_id: int | None = None
    author_id: int
    tags: list[str] = Field(default_factory=list)
    status: ArticleStatusName = "draft"
    is_top: bool = False
    is_featured: bool = False
    word_count: int = 0
    reading_time: int = 0
    publish_time: datetime | None = None
    create_time: datetime
    update_time: datetime
    version: int

    @classmethod
    def from_article(cls, article: Article) -> "ArticleOut":
        return cls(**article.to_dict())


class ArticleListOut(BaseModel):
    items: list[ArticleOut]
    total: int
    offset: int
    limit: int = Field(le=MAX_PAGE_SIZE)


class ArticleCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    content: str = Field(min_length=1)
    slug: str | None = None
    summary: str | None = None
    cover_image: str | None = None
    category_id: int | None = None
    author_id: int | None = Field(default=None, gt=0)
    tags: list[str] = Field(default_factory=list)
    status: ArticleStatusName = "draft"
    is_top: bool = False
    is_featured: bool = False
    publish_time: datetime | None = None

    @field_validator("publish_time")
    @classmethod
    def normalize_publish_time(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class ArticlePatchRequest(BaseModel):
    expected_version: int = Field(ge=1)
    title: str | None = Field(default=None, min_length=1, max_length=MAX_TITLE_LENGTH)
    slug: str | None = None
    summary: str | None = None
    content: str | None = Field(default=None, min_length=1)
    cover_image: str | None = None
    category_id: int | None = None
    tags: list[str] | None = None
    is_top: bool | None = None
    is_featured: bool | None = None

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_unset=True, exclude={"expected_version"})


class ArticleStatusRequest(BaseModel):
    status: ArticleStatusName
    expected_version: int | None = Field(default=None, ge=1)
    publish_time: datetime | None = None

    @field_validator("publish_time")
    @classmethod
    def normalize_publish_time(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)
