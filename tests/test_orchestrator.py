from datetime import timedelta

import pytest
from sqlmodel import select

from bookmeta.internal.models import ApiSource, Book
from bookmeta.internal.orchestrator import SearchOrchestrator
from bookmeta.util.exceptions import PersistenceFailure


@pytest.fixture
def dune(make_normalized):
    def factory(source=ApiSource.secondary, source_id="OL893415W", title="Dune", **kwargs):
        return make_normalized(
            source=source, source_id=source_id, title=title, authors=["Frank Herbert"], **kwargs
        )

    return factory


@pytest.fixture
async def orchestrator_factory(refresher_factory):
    async def factory(*providers, refresher_providers=None):
        refresher = await refresher_factory(
            providers=refresher_providers if refresher_providers is not None else providers
        )
        return SearchOrchestrator(list(providers), refresher)

    return factory


@pytest.mark.asyncio
class TestCacheFirst:
    async def test_enough_cached_hits_skip_providers(self, store, make_book, orchestrator_factory, fake_provider, dune):
        make_book("Dune")
        make_book("Dune Messiah")
        make_book("Children of Dune")
        provider = fake_provider(ApiSource.primary, results=[dune()])
        orchestrator = await orchestrator_factory(provider)

        response = await orchestrator.search(store, None, "dune", max_results=2)

        assert provider.search_calls == []
        assert response.totalItems == 2
        # equal scores, ordered by title
        assert [item.volumeInfo.title for item in response.items] == ["Children of Dune", "Dune"]
        assert all(item.fromCache for item in response.items)
        assert all(item.bookId for item in response.items)

    async def test_start_index_pages_through_cached_hits(self, store, make_book, orchestrator_factory, fake_provider):
        for title in ("Dune", "Dune Messiah", "Children of Dune", "God Emperor of Dune"):
            make_book(title)
        orchestrator = await orchestrator_factory(fake_provider(ApiSource.primary))

        response = await orchestrator.search(store, None, "dune", max_results=2, start_index=2)

        assert [item.volumeInfo.title for item in response.items] == ["Dune Messiah", "God Emperor of Dune"]

    async def test_indexed_hits_are_served(self, indexed_engine, store, make_book, orchestrator_factory, fake_provider, dune):
        make_book("The Lord of the Rings")
        provider = fake_provider(ApiSource.primary, results=[dune()])
        orchestrator = await orchestrator_factory(provider)

        response = await orchestrator.search(store, None, "lord rings", max_results=1)

        assert provider.search_calls == []
        assert [item.volumeInfo.title for item in response.items] == ["The Lord of the Rings"]

    async def test_warm_cache_serves_repeat_query(self, store, orchestrator_factory, fake_provider, dune):
        provider = fake_provider(
            ApiSource.secondary,
            results=[dune(), dune(source_id="OL893526W", title="Dune Messiah")],
        )
        orchestrator = await orchestrator_factory(provider)

        first = await orchestrator.search(store, None, "dune", max_results=2)
        second = await orchestrator.search(store, None, "dune", max_results=2)

        assert not any(item.fromCache for item in first.items)
        assert all(item.fromCache for item in second.items)
        assert len(provider.search_calls) == 1
        assert {item.bookId for item in second.items} == {item.bookId for item in first.items}


@pytest.mark.asyncio
class TestProviderFallback:
    async def test_chain_advances_past_failing_provider(self, store, db_session, orchestrator_factory, fake_provider, dune):
        primary = fake_provider(ApiSource.primary, fail=True)
        secondary = fake_provider(
            ApiSource.secondary,
            results=[dune(), dune(source_id="OL893526W", title="Dune Messiah")],
        )
        tertiary = fake_provider(ApiSource.tertiary, results=[dune(ApiSource.tertiary, "B1gfsG4U6CoC")])
        orchestrator = await orchestrator_factory(primary, secondary, tertiary)

        response = await orchestrator.search(store, None, "dune")

        assert primary.search_calls == [("dune", 1, 10)]
        assert len(secondary.search_calls) == 1
        assert tertiary.search_calls == []
        assert [item.id for item in response.items] == ["OL893415W", "OL893526W"]
        assert all(item.apiSource == ApiSource.secondary for item in response.items)
        assert not any(item.fromCache for item in response.items)
        assert all(item.bookId for item in response.items)
        assert len(db_session.exec(select(Book)).all()) == 2

    async def test_provider_results_replace_cached_hits(self, store, make_book, orchestrator_factory, fake_provider, dune):
        make_book("Dune")
        provider = fake_provider(
            ApiSource.secondary, results=[dune(source_id="OL893526W", title="Dune Messiah")]
        )
        orchestrator = await orchestrator_factory(provider)

        response = await orchestrator.search(store, None, "dune", max_results=10)

        assert [item.volumeInfo.title for item in response.items] == ["Dune Messiah"]

    async def test_force_fresh_bypasses_cache(self, store, make_book, orchestrator_factory, fake_provider, dune):
        make_book("Dune")
        make_book("Dune Messiah")
        provider = fake_provider(ApiSource.secondary, results=[dune()])
        orchestrator = await orchestrator_factory(provider)

        response = await orchestrator.search(store, None, "dune", max_results=1, force_fresh=True)

        assert len(provider.search_calls) == 1
        assert not response.items[0].fromCache

    async def test_no_results_anywhere_is_empty(self, store, orchestrator_factory, fake_provider):
        orchestrator = await orchestrator_factory(
            fake_provider(ApiSource.primary, fail=True), fake_provider(ApiSource.secondary)
        )

        response = await orchestrator.search(store, None, "xyzzy")

        assert response.totalItems == 0
        assert response.items == []
        assert response.kind == "books#volumes"

    async def test_start_index_maps_to_provider_page(self, store, orchestrator_factory, fake_provider, dune):
        provider = fake_provider(ApiSource.secondary, results=[dune()])
        orchestrator = await orchestrator_factory(provider)

        await orchestrator.search(store, None, "dune", max_results=10, start_index=20)

        assert provider.search_calls == [("dune", 3, 10)]

    async def test_total_items_uses_provider_total(self, store, orchestrator_factory, fake_provider, dune):
        results = [dune(source_id=f"OL{i}W", title=f"Dune {i}") for i in range(5)]
        provider = fake_provider(ApiSource.secondary, results=results)
        orchestrator = await orchestrator_factory(provider)

        response = await orchestrator.search(store, None, "dune", max_results=2)

        assert len(response.items) == 2
        assert response.totalItems == 5

    async def test_cache_write_failure_still_serves(self, store, monkeypatch, orchestrator_factory, fake_provider, dune):
        def boom(normalized):
            raise PersistenceFailure("disk full")

        monkeypatch.setattr(store, "upsert_from_provider", boom)
        provider = fake_provider(ApiSource.secondary, results=[dune()])
        orchestrator = await orchestrator_factory(provider)

        response = await orchestrator.search(store, None, "dune")

        assert [item.id for item in response.items] == ["OL893415W"]
        assert response.items[0].bookId is None
        assert orchestrator.refresher.stats().submitted == 0


class TestClamping:
    @pytest.mark.parametrize(
        "requested, expected",
        [(None, 10), (0, 1), (-5, 1), (1, 1), (25, 25), (40, 40), (1000, 40)],
    )
    def test_clamp_max_results(self, requested, expected):
        orchestrator = SearchOrchestrator([], refresher=None)  # pyright: ignore[reportArgumentType]
        assert orchestrator.clamp_max_results(requested) == expected


@pytest.mark.asyncio
class TestBackgroundWork:
    async def test_oversized_request_reaches_provider_clamped(self, store, orchestrator_factory, fake_provider, dune):
        provider = fake_provider(ApiSource.secondary, results=[dune()])
        orchestrator = await orchestrator_factory(provider)

        await orchestrator.search(store, None, "dune", max_results=1000)

        assert provider.search_calls == [("dune", 1, 40)]

    async def test_stale_cached_hit_is_refreshed(self, store, make_book, orchestrator_factory, fake_provider, dune):
        book = make_book("Dune", source_id="9780441172719", age=timedelta(days=10))
        primary = fake_provider(
            ApiSource.primary,
            records={"9780441172719": dune(ApiSource.primary, "9780441172719", description="Refreshed")},
        )
        orchestrator = await orchestrator_factory(primary)

        response = await orchestrator.search(store, None, "dune", max_results=1)
        # served as cached, before the refresh lands
        assert response.items[0].fromCache
        assert response.items[0].volumeInfo.description is None

        await orchestrator.refresher.drain()

        assert primary.lookup_calls == ["9780441172719"]
        refreshed = store.get(book.id)
        assert refreshed.volume_info["description"] == "Refreshed"
        assert refreshed.usage_count == 1

    async def test_recent_search_hit_is_not_refreshed(self, store, make_book, orchestrator_factory, fake_provider):
        # older than the single-record threshold, younger than the search one
        make_book("Dune", source_id="9780441172719", age=timedelta(days=2))
        primary = fake_provider(ApiSource.primary)
        orchestrator = await orchestrator_factory(primary)

        await orchestrator.search(store, None, "dune", max_results=1)
        await orchestrator.refresher.drain()

        assert primary.lookup_calls == []

    async def test_provider_results_are_touched(self, store, orchestrator_factory, fake_provider, dune):
        provider = fake_provider(ApiSource.secondary, results=[dune()])
        orchestrator = await orchestrator_factory(provider)

        response = await orchestrator.search(store, None, "dune", user_id="reader-1")
        await orchestrator.refresher.drain()

        assert store.get(response.items[0].bookId).usage_count == 1
