"""
Pytest configuration and fixtures for the bookmeta test suite.
"""
import sqlite3
from datetime import datetime, timedelta
from typing import AsyncGenerator, Callable, Generator, Optional

import pytest
from aiohttp import ClientSession
from aioresponses import aioresponses
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from bookmeta.internal.book_store import BookStore
from bookmeta.internal.metadata.base import ProviderSearchResult
from bookmeta.internal.models import (
    ApiSource,
    Book,
    IdentifierField,
    NormalizedBook,
    VolumeInfo,
    authors_to_text,
    utcnow,
)
from bookmeta.internal.refresher import BackgroundRefresher
from bookmeta.util.db import ensure_text_index
from bookmeta.util.exceptions import BookNotFound, ProviderUnavailable


def _fts5_available() -> bool:
    conn = sqlite3.connect(":memory:")
    try:
        conn.execute("CREATE VIRTUAL TABLE fts_check USING fts5(body)")
    except sqlite3.OperationalError:
        return False
    finally:
        conn.close()
    return True


FTS5_AVAILABLE = _fts5_available()


# Database fixtures
@pytest.fixture(scope="function")
def db_engine():
    """In-memory SQLite shared by every session of a test, without the text index."""
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def indexed_engine(db_engine):
    """Same as db_engine, with the FTS5 index and its triggers installed."""
    if not FTS5_AVAILABLE or not ensure_text_index(db_engine):
        pytest.skip("SQLite build without FTS5")
    return db_engine


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture(scope="function")
def store(db_session) -> BookStore:
    return BookStore(db_session)


# Async HTTP mocking fixtures
@pytest.fixture(scope="function")
async def mock_client_session() -> AsyncGenerator[ClientSession, None]:
    """Provide a real ClientSession with aioresponses mocking for HTTP calls."""
    with aioresponses() as mocked:
        async with ClientSession() as session:
            session._mocked = mocked  # pyright: ignore[reportAttributeAccessIssue]
            yield session


# Record factories
def build_normalized(
    source: ApiSource = ApiSource.primary,
    source_id: str = "9780261103252",
    title: str = "The Lord of the Rings",
    authors: Optional[list[str]] = None,
    isbn10: Optional[str] = None,
    isbn13: Optional[str] = None,
    description: Optional[str] = None,
    sale_info: Optional[dict] = None,
) -> NormalizedBook:
    return NormalizedBook(
        source=source,
        source_id=source_id,
        isbn10=isbn10,
        isbn13=isbn13,
        volume_info=VolumeInfo(
            title=title,
            authors=authors if authors is not None else ["J. R. R. Tolkien"],
            description=description,
        ),
        sale_info=sale_info,
    )


@pytest.fixture
def make_normalized() -> Callable[..., NormalizedBook]:
    return build_normalized


@pytest.fixture
def make_book(db_session) -> Callable[..., Book]:
    """Insert a cached record directly, bypassing the provider upsert."""

    def factory(
        title: str,
        source: ApiSource = ApiSource.primary,
        source_id: Optional[str] = None,
        authors: Optional[list[str]] = None,
        last_updated: Optional[datetime] = None,
        age: Optional[timedelta] = None,
        **columns,
    ) -> Book:
        authors = authors if authors is not None else ["Some Author"]
        now = utcnow()
        if last_updated is None:
            last_updated = now - age if age is not None else now
        book = Book(
            title=title,
            authors_text=authors_to_text(authors),
            volume_info={"title": title, "authors": authors},
            api_source=source,
            cached_at=last_updated,
            last_updated=last_updated,
            last_accessed=last_updated,
            **columns,
        )
        owner = IdentifierField.for_source(source).value
        setattr(book, owner, source_id or f"{source.value}-{title.lower().replace(' ', '-')}")
        db_session.add(book)
        db_session.commit()
        db_session.refresh(book)
        return book

    return factory


class FakeProvider:
    """In-memory ProviderClient with call recording."""

    def __init__(
        self,
        source: ApiSource,
        name: Optional[str] = None,
        results: Optional[list[NormalizedBook]] = None,
        records: Optional[dict[str, NormalizedBook]] = None,
        fail: bool = False,
        claims: Callable[[str], bool] = lambda identifier: False,
    ):
        self.source = source
        self.name = name or f"fake-{source.value}"
        self.results = results or []
        self.records = records or {}
        self.fail = fail
        self._claims = claims
        self.search_calls: list[tuple[str, int, int]] = []
        self.lookup_calls: list[str] = []

    def claims_identifier(self, identifier: str) -> bool:
        return self._claims(identifier)

    async def search_by_title(self, client_session, query: str, page: int = 1, page_size: int = 10):
        self.search_calls.append((query, page, page_size))
        if self.fail:
            return ProviderSearchResult(success=False, error="provider down")
        if not self.results:
            return ProviderSearchResult(success=False, error="no results")
        return ProviderSearchResult(
            success=True, results=self.results[:page_size], total=len(self.results)
        )

    async def get_by_identifier(self, client_session, identifier: str) -> NormalizedBook:
        self.lookup_calls.append(identifier)
        if self.fail:
            raise ProviderUnavailable(self.name, "provider down")
        if identifier not in self.records:
            raise BookNotFound(identifier, self.name)
        return self.records[identifier]

    def normalize(self, raw) -> NormalizedBook:
        return raw


@pytest.fixture
def fake_provider() -> Callable[..., FakeProvider]:
    return FakeProvider


@pytest.fixture
async def refresher_factory(db_engine) -> AsyncGenerator[Callable, None]:
    """Start refreshers backed by the test database; all are stopped afterwards."""
    created: list[BackgroundRefresher] = []

    async def factory(providers=(), workers: int = 2, queue_size: int = 32, **kwargs):
        refresher = BackgroundRefresher(
            providers,
            lambda: Session(db_engine),
            workers=workers,
            queue_size=queue_size,
            **kwargs,
        )
        await refresher.start()
        created.append(refresher)
        return refresher

    yield factory
    for refresher in created:
        await refresher.shutdown(drain=False)
