from typing import Optional, Sequence

import structlog
from aiohttp import ClientSession
from sqlalchemy.exc import SQLAlchemyError

from bookmeta.internal.book_store import BookStore
from bookmeta.internal.identifiers import IdentifierKind, IdentifierRoute, classify_identifier
from bookmeta.internal.metadata.base import ProviderClient
from bookmeta.internal.models import Book, BookDetail, NormalizedBook
from bookmeta.internal.refresher import BackgroundRefresher
from bookmeta.internal.slugs import normalize_title, slug_to_title
from bookmeta.internal.staleness import StalenessPolicy
from bookmeta.util.exceptions import BookNotFound, PersistenceFailure, ProviderUnavailable
from bookmeta.util.log import logger as default_logger


class Resolver:
    """
    Single-book lookup by identifier or title slug.

    Cached records are returned immediately; a record older than the
    single-record threshold is queued for a background refresh first. On a
    miss, the identifier's shape decides which providers may answer, and the
    first answer is written to the cache before it is returned.
    """

    def __init__(
        self,
        providers: Sequence[ProviderClient],
        refresher: BackgroundRefresher,
        policy: Optional[StalenessPolicy] = None,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ):
        self.providers = list(providers)
        self.refresher = refresher
        self.policy = policy or StalenessPolicy()
        self.logger = logger or default_logger

    def classify(self, identifier: str) -> IdentifierRoute:
        return classify_identifier(identifier, self.providers)

    async def resolve(
        self,
        store: BookStore,
        client_session: ClientSession,
        identifier: str,
        user_id: Optional[str] = None,
    ) -> BookDetail:
        identifier = identifier.strip()
        if not identifier:
            raise BookNotFound(identifier)

        book = store.find_by_id(identifier)
        if book is not None:
            return self._serve_cached(book, user_id)

        route = self.classify(identifier)
        if route.identifier != identifier:
            book = store.find_by_id(route.identifier)
            if book is not None:
                return self._serve_cached(book, user_id)

        log = self.logger.bind(identifier=identifier, kind=route.kind.value)
        if route.kind in (IdentifierKind.native, IdentifierKind.other):
            # nothing outside the cache can answer for these
            log.debug("Identifier not cached and not routable to a provider")
            raise BookNotFound(identifier)

        for provider in self._candidates(route):
            try:
                normalized = await provider.get_by_identifier(client_session, route.identifier)
            except BookNotFound:
                log.info("Provider has no match", provider=provider.name)
                continue
            except ProviderUnavailable as e:
                log.warning("Provider lookup failed", provider=provider.name, reason=e.reason)
                continue

            log.info("Resolved from provider", provider=provider.name)
            return self._persist_and_serve(store, normalized, user_id)

        raise BookNotFound(identifier)

    async def resolve_slug(
        self,
        store: BookStore,
        client_session: ClientSession,
        slug: str,
        user_id: Optional[str] = None,
    ) -> BookDetail:
        """
        Look a book up by title slug: exact title, then partial title, then the
        first title-search hit from the provider chain.
        """
        title = slug_to_title(slug).strip()
        normalized_title = normalize_title(title)
        if not normalized_title:
            raise BookNotFound(slug)

        book = store.find_by_title(normalized_title)
        if book is not None:
            return self._serve_cached(book, user_id)

        for provider in self.providers:
            result = await provider.search_by_title(client_session, title, 1, 1)
            if result.success and result.results:
                self.logger.info("Resolved slug from provider", slug=slug, provider=provider.name)
                return self._persist_and_serve(store, result.results[0], user_id)

        raise BookNotFound(slug)

    def _candidates(self, route: IdentifierRoute) -> list[ProviderClient]:
        # the identifier's owner first, then any other provider that recognises it
        claiming = [p for p in self.providers if p.claims_identifier(route.identifier)]
        claiming.sort(key=lambda p: p.source != route.source)
        return claiming

    def _serve_cached(self, book: Book, user_id: Optional[str]) -> BookDetail:
        if self.policy.is_record_stale(book.last_updated):
            self.logger.debug("Serving stale record, refresh queued", book_id=book.id)
            self.refresher.schedule_refresh(book.id, book.api_source, book.source_id)
        self.refresher.schedule_touch(book.id, user_id)
        return BookDetail.from_book(book, from_cache=True)

    def _persist_and_serve(
        self, store: BookStore, normalized: NormalizedBook, user_id: Optional[str]
    ) -> BookDetail:
        try:
            stored = store.upsert_from_provider(normalized)
        except (SQLAlchemyError, PersistenceFailure) as e:
            store.session.rollback()
            self.logger.warning(
                "Could not cache resolved book, serving it uncached",
                source=normalized.source.value,
                source_id=normalized.source_id,
                error=str(e),
            )
            return BookDetail.from_normalized(normalized)

        self.refresher.schedule_touch(stored.id, user_id)
        return BookDetail.from_normalized(normalized, stored)
