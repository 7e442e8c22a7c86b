from typing import Any

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"service": "blog-api", "status": "ok"}


@router.get("/healthz")
async def healthz(request: Request) -> dict[str, Any]:
    # Liveness stays 200 while the sync runtime is still starting.
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        return {"status": "ok", "sync": "starting"}
    return {
        "status": "ok",
        "sync": "running" if runtime.coordinator.running else "stopped",
        "pending_events": runtime.coordinator.pending(),
    }
