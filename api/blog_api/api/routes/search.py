from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from blog_api.api.routes.articles import to_http_error
from blog_api.domain.models import PageRequest, SearchQuery
from blog_api.schemas.articles import ArticleOut
from blog_api.schemas.search import SearchDocumentOut, SearchResultOut
from blog_api.services.errors import SearchIndexError, StoreUnavailableError
from blog_api.services.runtime import SyncRuntime, get_runtime

router = APIRouter()


@router.get("", response_model=SearchResultOut)
async def search_articles(
    q: str | None = Query(default=None, min_length=1),
    tag: list[str] | None = Query(default=None),
    author_id: int | None = Query(default=None),
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    runtime: SyncRuntime = Depends(get_runtime),
) -> SearchResultOut:
    page = PageRequest(offset=offset, limit=limit)
    try:
        result = await runtime.articles.search(SearchQuery(text=q, tags=tag or [], author_id=author_id), page)
    except SearchIndexError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise to_http_error(exc) from exc
    return SearchResultOut(
        ids=result.ids,
        items=[ArticleOut.from_article(article) for article in result.articles],
        offset=page.offset,
        limit=page.limit,
    )


@router.get("/authors/{author_id}", response_model=list[SearchDocumentOut])
async def find_by_author(author_id: int, runtime: SyncRuntime = Depends(get_runtime)) -> list[SearchDocumentOut]:
    try:
        documents = await runtime.articles.find_by_author(author_id)
    except SearchIndexError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [SearchDocumentOut.from_document(document) for document in documents]
