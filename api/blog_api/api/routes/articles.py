from fastapi import APIRouter, Depends, HTTPException, Query, Response, status as http_status

from blog_api.core.auth import Principal
from blog_api.core.security import get_author_principal
from blog_api.domain.models import ArticleDraft, ArticleFilter, ArticleSort, ArticleStatus, PageRequest
from blog_api.schemas.articles import (
    ArticleCreateRequest,
    ArticleListOut,
    ArticleOut,
    ArticlePatchRequest,
    ArticleSortBy,
    ArticleStatusName,
    ArticleStatusRequest,
    SortDir,
)
from blog_api.services.errors import (
    ArticleNotFound,
    BlogError,
    StoreUnavailableError,
    TransitionError,
    ValidationError,
    VersionConflict,
)
from blog_api.services.runtime import SyncRuntime, get_runtime

router = APIRouter()


def to_http_error(exc: BlogError | PermissionError) -> HTTPException:
    if isinstance(exc, PermissionError):
        return HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, ArticleNotFound):
        return HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (VersionConflict, TransitionError)):
        return HTTPException(status_code=http_status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, StoreUnavailableError):
        return HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.get("", response_model=ArticleListOut)
async def list_articles(
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    title: str | None = Query(default=None, min_length=1),
    category_id: int | None = Query(default=None),
    author_id: int | None = Query(default=None),
    article_status: ArticleStatusName | None = Query(default=None, alias="status"),
    is_top: bool | None = Query(default=None),
    is_featured: bool | None = Query(default=None),
    sort_by: ArticleSortBy = Query(default="publish_time"),
    sort_dir: SortDir = Query(default="desc"),
    runtime: SyncRuntime = Depends(get_runtime),
) -> ArticleListOut:
    article_filter = ArticleFilter(
        category_id=category_id,
        author_id=author_id,
        status=ArticleStatus(article_status) if article_status else None,
        is_top=is_top,
        is_featured=is_featured,
        title=title,
    )
    try:
        page = await runtime.articles.list_articles(
            article_filter,
            ArticleSort(sort_by=sort_by, sort_dir=sort_dir),
            PageRequest(offset=offset, limit=limit),
        )
    except StoreUnavailableError as exc:
        raise to_http_error(exc) from exc
    return ArticleListOut(
        items=[ArticleOut.from_article(article) for article in page.items],
        total=page.total,
        offset=page.offset,
        limit=page.limit,
    )


@router.post("", response_model=ArticleOut, status_code=http_status.HTTP_201_CREATED)
async def create_article(
    payload: ArticleCreateRequest,
    principal: Principal = Depends(get_author_principal),
    runtime: SyncRuntime = Depends(get_runtime),
) -> ArticleOut:
    draft = ArticleDraft(
        title=payload.title,
        content=payload.content,
        author_id=payload.author_id or principal.require_user_id(),
        slug=payload.slug,
        summary=payload.summary,
        cover_image=payload.cover_image,
        category_id=payload.category_id,
        tags=list(payload.tags),
        status=ArticleStatus(payload.status),
        is_top=payload.is_top,
        is_featured=payload.is_featured,
        publish_time=payload.publish_time,
    )
    try:
        article = await runtime.articles.create_article(draft, principal=principal)
    except (BlogError, PermissionError) as exc:
        raise to_http_error(exc) from exc
    return ArticleOut.from_article(article)


@router.get("/slug/{slug}", response_model=ArticleOut)
async def get_article_by_slug(slug: str, runtime: SyncRuntime = Depends(get_runtime)) -> ArticleOut:
    try:
        article = await runtime.articles.get_article_by_slug(slug)
    except BlogError as exc:
        raise to_http_error(exc) from exc
    return ArticleOut.from_article(article)


@router.get("/{article_id}", response_model=ArticleOut)
async def get_article(article_id: int, runtime: SyncRuntime = Depends(get_runtime)) -> ArticleOut:
    try:
        article = await runtime.articles.get_article(article_id)
    except BlogError as exc:
        raise to_http_error(exc) from exc
    return ArticleOut.from_article(article)


@router.patch("/{article_id}", response_model=ArticleOut)
async def patch_article(
    article_id: int,
    payload: ArticlePatchRequest,
    principal: Principal = Depends(get_author_principal),
    runtime: SyncRuntime = Depends(get_runtime),
) -> ArticleOut:
    try:
        article = await runtime.articles.update_article(
            article_id,
            payload.changes(),
            expected_version=payload.expected_version,
            principal=principal,
        )
    except (BlogError, PermissionError) as exc:
        raise to_http_error(exc) from exc
    return ArticleOut.from_article(article)


@router.post("/{article_id}/status", response_model=ArticleOut)
async def change_article_status(
    article_id: int,
    payload: ArticleStatusRequest,
    principal: Principal = Depends(get_author_principal),
    runtime: SyncRuntime = Depends(get_runtime),
) -> ArticleOut:
    try:
        article = await runtime.articles.change_status(
            article_id,
            ArticleStatus(payload.status),
            expected_version=payload.expected_version,
            publish_time=payload.publish_time,
            principal=principal,
        )
    except (BlogError, PermissionError) as exc:
        raise to_http_error(exc) from exc
    return ArticleOut.from_article(article)


@router.delete("/{article_id}", status_code=http_status.HTTP_204_NO_CONTENT)
async def delete_article(
    article_id: int,
    expected_version: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(get_author_principal),
    runtime: SyncRuntime = Depends(get_runtime),
) -> Response:
    try:
        await runtime.articles.delete_article(article_id, expected_version=expected_version, principal=principal)
    except (BlogError, PermissionError) as exc:
        raise to_http_error(exc) from exc
    return Response(status_code=http_status.HTTP_204_NO_CONTENT)
