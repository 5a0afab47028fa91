"""
Free-text book search: warm cache first, then the provider chain.

A request moves through four steps:

1. cache check: indexed text search, topped up by the scored substring
   fallback, for up to twice the requested count;
2. sufficiency gate: enough cached hits are served as-is;
3. provider fallback: providers are tried in chain order and the first one
   with results replaces the cached hits entirely. Its results are written
   back to the cache;
4. serve: stale cached records are queued for refresh, every served record
   is queued for an access touch, and nothing waits on either.

No providers answering is an empty result, not an error.
"""
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog
from aiohttp import ClientSession
from sqlalchemy.exc import SQLAlchemyError

from bookmeta.internal.book_store import BookStore
from bookmeta.internal.env_settings import CacheSettings
from bookmeta.internal.metadata.base import ProviderClient
from bookmeta.internal.models import (
    Book,
    BookSearchItem,
    BookSearchResponse,
    NormalizedBook,
)
from bookmeta.internal.ranking.title_score import (
    normalize_query,
    rank_candidates,
    significant_words,
)
from bookmeta.internal.refresher import BackgroundRefresher
from bookmeta.internal.staleness import StalenessPolicy
from bookmeta.util.exceptions import PersistenceFailure, TextIndexUnavailable
from bookmeta.util.log import logger as default_logger

DEFAULT_MAX_RESULTS = 10


@dataclass
class ProviderHit:
    normalized: NormalizedBook
    stored: Optional[Book]


class SearchOrchestrator:
    providers: list[ProviderClient]
    refresher: BackgroundRefresher
    policy: StalenessPolicy
    settings: CacheSettings

    def __init__(
        self,
        providers: Sequence[ProviderClient],
        refresher: BackgroundRefresher,
        policy: Optional[StalenessPolicy] = None,
        settings: Optional[CacheSettings] = None,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ):
        self.providers = list(providers)
        self.refresher = refresher
        self.settings = settings or CacheSettings()
        self.policy = policy or StalenessPolicy.from_settings(self.settings)
        self.logger = logger or default_logger

    def clamp_max_results(self, max_results: Optional[int]) -> int:
        if max_results is None:
            return DEFAULT_MAX_RESULTS
        return max(1, min(max_results, self.settings.max_results_limit))

    async def search(
        self,
        store: BookStore,
        client_session: ClientSession,
        query: str,
        max_results: Optional[int] = DEFAULT_MAX_RESULTS,
        start_index: int = 0,
        force_fresh: bool = False,
        user_id: Optional[str] = None,
    ) -> BookSearchResponse:
        limit = self.clamp_max_results(max_results)
        start_index = max(0, start_index)
        log = self.logger.bind(query=query, max_results=limit, start_index=start_index)

        if not force_fresh:
            cached = self.cache_check(store, query, limit, start_index)
            if len(cached) >= limit:
                log.debug("Serving search from cache", hits=len(cached))
                return self._serve_cached(cached, user_id)
            log.debug("Cache insufficient, trying providers", hits=len(cached))
        else:
            log.debug("Forced fresh search, skipping cache")

        for provider in self.providers:
            page = start_index // limit + 1
            result = await provider.search_by_title(client_session, query, page, limit)
            if not result.success:
                log.info(
                    "Provider returned nothing, trying next",
                    provider=provider.name,
                    reason=result.error,
                )
                continue

            hits = [self._persist(store, normalized) for normalized in result.results[:limit]]
            log.info("Serving search from provider", provider=provider.name, results=len(hits))
            return self._serve_provider(hits, result.total, user_id)

        log.info("No provider returned results")
        return BookSearchResponse(totalItems=0, items=[])

    def cache_check(self, store: BookStore, query: str, limit: int, start_index: int = 0) -> list[Book]:
        """
        Qualifying cached records for `query`, best first, at most `limit`.

        Up to twice `limit` candidates are gathered past `start_index`: indexed
        hits above the relevance floor first, then scored substring matches not
        already among them.
        """
        wanted = start_index + limit * 2
        hits: list[Book] = []

        try:
            text_hits = store.find_by_text(query, limit=wanted)
            hits = [hit.book for hit in text_hits if hit.score >= self.settings.text_min_score]
        except TextIndexUnavailable as e:
            self.logger.debug("Text index unavailable, using substring search", error=str(e))

        if len(hits) < wanted:
            normalized = normalize_query(query)
            words = significant_words(normalized)
            if words:
                candidates = store.find_by_title_substring(normalized, limit=wanted * 2, words=words)
                ranked = rank_candidates(
                    candidates,
                    query,
                    exclude_ids=[book.id for book in hits],
                    min_score=self.settings.fallback_min_score,
                )
                hits.extend(scored.book for scored in ranked)

        return hits[start_index:start_index + limit]

    def _persist(self, store: BookStore, normalized: NormalizedBook) -> ProviderHit:
        try:
            return ProviderHit(normalized, store.upsert_from_provider(normalized))
        except (SQLAlchemyError, PersistenceFailure) as e:
            store.session.rollback()
            self.logger.warning(
                "Could not cache provider result, serving it uncached",
                source=normalized.source.value,
                source_id=normalized.source_id,
                error=str(e),
            )
            return ProviderHit(normalized, None)

    def _serve_cached(self, books: list[Book], user_id: Optional[str]) -> BookSearchResponse:
        items = []
        for book in books:
            if self.policy.is_search_stale(book.last_updated):
                self.refresher.schedule_refresh(book.id, book.api_source, book.source_id)
            self.refresher.schedule_touch(book.id, user_id)
            items.append(
                BookSearchItem(
                    id=book.public_id,
                    bookId=book.id,
                    volumeInfo=book.get_volume_info(),
                    saleInfo=book.sale_info,
                    apiSource=book.api_source,
                    fromCache=True,
                )
            )
        return BookSearchResponse(totalItems=len(items), items=items)

    def _serve_provider(
        self, hits: list[ProviderHit], total: int, user_id: Optional[str]
    ) -> BookSearchResponse:
        items = []
        for hit in hits:
            if hit.stored is not None:
                self.refresher.schedule_touch(hit.stored.id, user_id)
            items.append(
                BookSearchItem(
                    id=hit.normalized.source_id,
                    bookId=hit.stored.id if hit.stored is not None else None,
                    volumeInfo=hit.normalized.volume_info,
                    saleInfo=hit.normalized.sale_info,
                    apiSource=hit.normalized.source,
                    fromCache=False,
                )
            )
        return BookSearchResponse(totalItems=max(total, len(items)), items=items)
