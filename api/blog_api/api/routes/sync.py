from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from blog_api.core.auth import Principal
from blog_api.core.security import require_sync_scope
from blog_api.schemas.sync import DeadLetterOut, ReconcileOut, ScheduledCheckOut, SyncStatsOut
from blog_api.services.errors import StoreUnavailableError
from blog_api.services.runtime import SyncRuntime, get_runtime

router = APIRouter()


@router.get("/stats", response_model=SyncStatsOut)
async def sync_stats(
    _: Principal = Depends(require_sync_scope("sync:read")),
    runtime: SyncRuntime = Depends(get_runtime),
) -> SyncStatsOut:
    return SyncStatsOut(
        **runtime.coordinator.snapshot_stats(),
        reconciliation_running=runtime.reconciler.running,
    )


@router.get("/dead-letters", response_model=list[DeadLetterOut])
async def list_dead_letters(
    limit: int = Query(default=50, ge=1, le=500),
    _: Principal = Depends(require_sync_scope("sync:read")),
    runtime: SyncRuntime = Depends(get_runtime),
) -> list[DeadLetterOut]:
    try:
        records = await runtime.store.list_dead_letters(limit=limit)
    except StoreUnavailableError:
        # Fall back to the coordinator's in-process buffer when the store is down.
        records = list(reversed(runtime.coordinator.dead_letters))[:limit]
    return [DeadLetterOut(**record.to_dict()) for record in records]


@router.post("/reconcile", response_model=ReconcileOut)
async def run_reconciliation(
    _: Principal = Depends(require_sync_scope("sync:write")),
    runtime: SyncRuntime = Depends(get_runtime),
) -> ReconcileOut:
    report = await runtime.reconciler.run_sweep()
    return ReconcileOut(**report.to_dict())


@router.post("/scheduled", response_model=ScheduledCheckOut)
async def run_scheduled_check(
    _: Principal = Depends(require_sync_scope("sync:write")),
    runtime: SyncRuntime = Depends(get_runtime),
) -> ScheduledCheckOut:
    try:
        report = await runtime.scheduler.run_check()
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ScheduledCheckOut(**report.to_dict())
