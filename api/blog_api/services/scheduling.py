from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from blog_api.domain.models import SyncEvent, SyncEventKind, SyncOrigin, utcnow
from blog_api.services.protocols import ArticleStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScheduledCheckReport:
    since: datetime
    until: datetime
    submitted: list[int]
    exhausted: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "since": self.since,
            "until": self.until,
            "submitted": list(self.submitted),
            "exhausted": self.exhausted,
        }


class ScheduledPublishChecker:
    """Emits an upsert for each published article whose publish_time became due.

    A published article with a future publish_time is not yet visible, so its
    publish mutation produced a delete. Nothing else happens to the article when
    the time arrives; this check supplies the upsert.
    """

    def __init__(
        self,
        store: ArticleStore,
        submit: Callable[[SyncEvent], Awaitable[None]],
        *,
        lookback_seconds: int = 3600,
        batch_size: int = 200,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._submit = submit
        self.lookback = timedelta(seconds=max(0, lookback_seconds))
        self.batch_size = max(1, batch_size)
        self._clock = clock
        self._lock = asyncio.Lock()
        self.watermark: datetime | None = None
        # Tie-breaker for rows sharing the watermark publish_time.
        self.watermark_id = 0

    async def run_check(self, now: datetime | None = None) -> ScheduledCheckReport:
        async with self._lock:
            until = now or self._clock()
            since = self.watermark or until - self.lookback
            after_id = self.watermark_id if self.watermark is not None else 0
            due = await self._store.list_due_scheduled(
                since=since,
                until=until,
                limit=self.batch_size,
                after_id=after_id,
            )
            for article in due:
                await self._submit(
                    SyncEvent(
                        article_id=article.id,
                        kind=SyncEventKind.UPSERT,
                        source_version=article.sync_version,
                        origin=SyncOrigin.SCHEDULE,
                    )
                )

            # A full batch means more may be due; resume after the last (publish_time, id) seen.
            exhausted = len(due) < self.batch_size
            if exhausted:
                self.watermark, self.watermark_id = until, 0
            else:
                self.watermark, self.watermark_id = due[-1].publish_time, due[-1].id
            if due:
                logger.info("scheduled publish check submitted=%s since=%s until=%s", len(due), since, until)
            return ScheduledCheckReport(
                since=since,
                until=until,
                submitted=[article.id for article in due],
                exhausted=exhausted,
            )
