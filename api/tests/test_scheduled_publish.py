import asyncio
from datetime import datetime, timedelta, timezone

from blog_api.domain.models import ArticleDraft, ArticleStatus, SyncEvent, SyncEventKind, SyncOrigin
from blog_api.services.scheduling import ScheduledPublishChecker
from blog_api.services.store import InMemoryArticleStore, InMemorySearchIndex
from blog_api.services.sync import SyncCoordinator

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


class EventSink:
    def __init__(self) -> None:
        self.events: list[SyncEvent] = []

    async def __call__(self, event: SyncEvent) -> None:
        self.events.append(event)


async def _schedule(store: InMemoryArticleStore, title: str, at: datetime) -> int:
    article = await store.create(
        ArticleDraft(title=title, content="body", author_id=1, status=ArticleStatus.PUBLISHED, publish_time=at)
    )
    return article.id


def test_check_emits_upserts_for_newly_due_articles() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        store = InMemoryArticleStore(clock=clock)
        sink = EventSink()
        checker = ScheduledPublishChecker(store, sink, lookback_seconds=600, clock=clock)
        soon = await _schedule(store, "Soon", NOW + timedelta(minutes=5))
        later = await _schedule(store, "Later", NOW + timedelta(hours=2))

        first = await checker.run_check()
        assert first.submitted == []
        assert first.since == NOW - timedelta(minutes=10)

        clock.now = NOW + timedelta(minutes=6)
        second = await checker.run_check()
        assert second.submitted == [soon]
        assert sink.events == [SyncEvent(soon, SyncEventKind.UPSERT, 1, SyncOrigin.SCHEDULE)]
        assert checker.watermark == clock.now

        clock.now = NOW + timedelta(minutes=7)
        third = await checker.run_check()
        assert third.submitted == []

        clock.now = NOW + timedelta(hours=3)
        fourth = await checker.run_check()
        assert fourth.submitted == [later]

    asyncio.run(scenario())


def test_full_batch_resumes_after_last_seen_article() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        store = InMemoryArticleStore(clock=clock)
        sink = EventSink()
        checker = ScheduledPublishChecker(store, sink, lookback_seconds=3600, batch_size=2, clock=clock)
        ids = [await _schedule(store, f"Post {minute}", NOW + timedelta(minutes=minute)) for minute in (1, 2, 3)]

        clock.now = NOW + timedelta(minutes=10)
        first = await checker.run_check()
        assert first.submitted == ids[:2]
        assert not first.exhausted
        assert checker.watermark == NOW + timedelta(minutes=2)
        assert checker.watermark_id == ids[1]

        second = await checker.run_check()
        assert second.submitted == ids[2:]
        assert second.exhausted
        assert checker.watermark == clock.now
        assert checker.watermark_id == 0

    asyncio.run(scenario())


def test_burst_sharing_one_publish_time_does_not_stall_the_check() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        store = InMemoryArticleStore(clock=clock)
        sink = EventSink()
        checker = ScheduledPublishChecker(store, sink, lookback_seconds=3600, batch_size=2, clock=clock)
        burst = [await _schedule(store, f"Burst {number}", NOW) for number in range(3)]
        later = await _schedule(store, "Later", NOW + timedelta(minutes=1))

        submitted: list[int] = []
        for minute in range(7, 12):
            clock.now = NOW + timedelta(minutes=minute)
            submitted.extend((await checker.run_check()).submitted)

        assert submitted == [*burst, later]
        assert [event.article_id for event in sink.events] == [*burst, later]

    asyncio.run(scenario())


def test_scheduled_article_reaches_index_only_when_due() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        store = InMemoryArticleStore(clock=clock)
        index = InMemorySearchIndex()
        coordinator = SyncCoordinator(store, index, clock=clock)
        checker = ScheduledPublishChecker(store, coordinator.submit, clock=clock)
        draft = await store.create(ArticleDraft(title="Embargoed", content="news", author_id=1))

        await coordinator.start()
        published, _ = await store.change_status(
            draft.id,
            ArticleStatus.PUBLISHED,
            publish_time=NOW + timedelta(minutes=30),
        )
        # Not yet due: the publish mutation itself resolves to a delete.
        await coordinator.submit(SyncEvent(draft.id, SyncEventKind.DELETE, published.sync_version))
        await coordinator.drain()
        assert await index.get(draft.id) is None

        clock.now = NOW + timedelta(minutes=31)
        await checker.run_check()
        await coordinator.drain()
        await coordinator.stop()

        document = await index.get(draft.id)
        assert document is not None
        assert document.version == published.sync_version

    asyncio.run(scenario())
