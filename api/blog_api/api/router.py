from fastapi import APIRouter

from blog_api.api.routes import articles, health, search, sync

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(articles.router, prefix="/articles", tags=["articles"])
api_router.include_router(search.router, prefix="/search", tags=["search"])
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
