from datetime import datetime

from pydantic import BaseModel, Field

from blog_api.domain.models import SearchDocument
from blog_api.schemas.articles import ArticleOut


class SearchResultOut(BaseModel):
    ids: list[int]
    items: list[ArticleOut]
    offset: int
    limit: int


class SearchDocumentOut(BaseModel):
    id: int
    author_id: int
    title: str
    tags: list[str] = Field(default_factory=list)
    version: int
    publish_time: datetime | None = None

    @classmethod
    def from_document(cls, document: SearchDocument) -> "SearchDocumentOut":
        return cls(
            id=document.id,
            author_id=document.author_id,
            title=document.title,
            tags=list(document.tags),
            version=document.version,
            publish_time=document.publish_time,
        )
