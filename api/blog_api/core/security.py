import hashlib
import hmac

from fastapi import Depends, Header, HTTPException, status

from blog_api.core.auth import Principal, PrincipalType, parse_user_id
from blog_api.core.config import Settings, get_settings

ROLE_SCOPES: dict[str, set[str]] = {
    "author": {"article:read", "article:write"},
    "editor": {"article:read", "article:write", "sync:read"},
    "admin": {"article:read", "article:write", "sync:read", "sync:write"},
}
SCHEDULER_SCOPES = {"sync:read", "sync:write"}


async def get_author_principal(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_user_role: str | None = Header(default=None, alias="X-User-Role"),
) -> Principal:
    user_id = parse_user_id(x_user_id)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="author auth requires a positive X-User-Id",
        )

    role = (x_user_role or "author").strip().lower()
    if role not in ROLE_SCOPES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"unknown role: {role}")

    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=str(user_id),
        scopes=set(ROLE_SCOPES[role]),
        role=role,
        user_id=user_id,
    )


async def get_scheduler_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Principal:
    if not settings.scheduler_api_key_sha256:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="scheduler auth is not configured",
        )
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"scheduler auth requires {settings.api_key_header}",
        )

    key_hash = hashlib.sha256(x_api_key.encode("utf-8")).hexdigest()
    if not hmac.compare_digest(settings.scheduler_api_key_sha256.lower(), key_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid scheduler credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject="blog-worker",
        scopes=set(SCHEDULER_SCOPES),
    )


def require_sync_scope(scope: str):
    """Sync endpoints accept the scheduler's API key or an editor/admin session."""

    async def dependency(
        x_api_key: str | None = Header(default=None, alias="X-API-Key"),
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
        x_user_role: str | None = Header(default=None, alias="X-User-Role"),
        settings: Settings = Depends(get_settings),
    ) -> Principal:
        if x_api_key:
            principal = await get_scheduler_principal(settings=settings, x_api_key=x_api_key)
        else:
            principal = await get_author_principal(x_user_id=x_user_id, x_user_role=x_user_role)
        try:
            principal.require_scopes({scope})
        except PermissionError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        return principal

    return dependency
