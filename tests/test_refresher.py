import asyncio
from datetime import timedelta

import pytest

from bookmeta.internal.models import ApiSource


@pytest.mark.asyncio
class TestWorkerPool:
    async def test_drain_waits_for_submitted_jobs(self, refresher_factory):
        refresher = await refresher_factory()
        done = []

        async def job():
            await asyncio.sleep(0)
            done.append(True)

        for _ in range(5):
            assert refresher.submit("noop", job)
        await refresher.drain()

        assert len(done) == 5
        stats = refresher.stats()
        assert stats.submitted == 5
        assert stats.completed == 5
        assert stats.queued == 0

    async def test_failing_job_does_not_stop_the_worker(self, refresher_factory):
        refresher = await refresher_factory(workers=1)
        done = []

        async def broken():
            raise RuntimeError("boom")

        async def fine():
            done.append(True)

        refresher.submit("broken", broken, book_id="x")
        refresher.submit("fine", fine)
        await refresher.drain()

        assert done == [True]
        stats = refresher.stats()
        assert stats.failed == 1
        assert stats.completed == 1
        assert stats.running

    async def test_full_queue_drops_jobs(self, refresher_factory):
        refresher = await refresher_factory(workers=1, queue_size=2)

        async def job():
            pass

        # nothing has had a chance to run yet, so the third job overflows
        results = [refresher.submit("noop", job) for _ in range(3)]

        assert results == [True, True, False]
        assert refresher.stats().dropped == 1
        await refresher.drain()
        assert refresher.stats().completed == 2

    async def test_shutdown_stops_workers(self, refresher_factory):
        refresher = await refresher_factory()
        await refresher.shutdown()

        stats = refresher.stats()
        assert not stats.running
        assert stats.workers == 2


@pytest.mark.asyncio
class TestRefreshJobs:
    async def test_refresh_applies_provider_data(
        self, store, make_book, make_normalized, fake_provider, refresher_factory
    ):
        book = make_book("Dune", source_id="9780441172719", age=timedelta(days=30))
        stale_at = book.last_updated
        primary = fake_provider(
            ApiSource.primary,
            records={
                "9780441172719": make_normalized(
                    source_id="9780441172719", title="Dune", description="Refreshed"
                )
            },
        )
        refresher = await refresher_factory(providers=[primary])

        assert refresher.schedule_refresh(book.id, ApiSource.primary, "9780441172719")
        await refresher.drain()

        refreshed = store.get(book.id)
        assert refreshed.volume_info["description"] == "Refreshed"
        assert refreshed.last_updated > stale_at

    async def test_refresh_without_provider_id_is_not_queued(self, refresher_factory):
        refresher = await refresher_factory()
        assert not refresher.schedule_refresh("0123456789abcdef01234567", ApiSource.primary, None)
        assert refresher.stats().submitted == 0

    async def test_disabled_provider_is_skipped(self, store, make_book, refresher_factory):
        book = make_book("Dune", source=ApiSource.tertiary, age=timedelta(days=30))
        stale_at = book.last_updated
        refresher = await refresher_factory(providers=[])

        refresher.schedule_refresh(book.id, ApiSource.tertiary, book.source_id)
        await refresher.drain()

        assert refresher.stats().completed == 1
        assert store.get(book.id).last_updated == stale_at

    @pytest.mark.parametrize("fail", [True, False])
    async def test_provider_miss_keeps_record(
        self, fail, store, make_book, fake_provider, refresher_factory
    ):
        book = make_book("Dune", source_id="9780441172719", age=timedelta(days=30))
        primary = fake_provider(ApiSource.primary, fail=fail)
        refresher = await refresher_factory(providers=[primary])

        refresher.schedule_refresh(book.id, ApiSource.primary, "9780441172719")
        await refresher.drain()

        assert primary.lookup_calls == ["9780441172719"]
        assert refresher.stats().failed == 0
        assert store.get(book.id).volume_info == {"title": "Dune", "authors": ["Some Author"]}

    async def test_touch_counts_access(self, store, make_book, refresher_factory):
        book = make_book("Dune")
        refresher = await refresher_factory()

        for _ in range(3):
            refresher.schedule_touch(book.id, user_id="reader-1")
        await refresher.drain()

        assert store.get(book.id).usage_count == 3
