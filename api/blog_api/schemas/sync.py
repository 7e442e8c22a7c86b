from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class SyncStatsOut(BaseModel):
    submitted: int
    upserts: int
    deletes: int
    superseded: int
    coalesced: int
    stale_rejections: int
    retries: int
    dead_lettered: int
    queued: int
    parked: int
    inflight: int
    workers: int
    reconciliation_running: bool = False


class DeadLetterOut(BaseModel):
    article_id: int
    kind: Literal["upsert", "delete"]
    source_version: int
    origin: Literal["mutation", "reconciliation", "schedule"]
    attempts: int
    error: str
    failed_at: datetime


class ReconcileOut(BaseModel):
    started_at: datetime
    finished_at: datetime | None = None
    skipped: bool
    truncated: bool
    completed: bool
    error: str | None = None
    phase: Literal["articles", "documents"]
    after_id: int
    scanned_articles: int
    scanned_documents: int
    missing: int
    stale: int
    orphaned: int


class ScheduledCheckOut(BaseModel):
    since: datetime
    until: datetime
    submitted: list[int]
    exhausted: bool
