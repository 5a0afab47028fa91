from typing import NamedTuple, Optional, Sequence

from sqlalchemy import func, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from bookmeta.internal.book_queries import (
    by_identifier,
    by_title_contains,
    by_title_or_words,
    fts_match_expression,
    text_search,
)
from bookmeta.internal.identifiers import is_native_key
from bookmeta.internal.models import (
    LOOKUP_FIELDS,
    Book,
    IdentifierField,
    NormalizedBook,
    authors_to_text,
    utcnow,
)
from bookmeta.util.exceptions import (
    PersistenceFailure,
    TextIndexUnavailable,
    handle_database_error,
)
from bookmeta.util.log import logger


class TextHit(NamedTuple):
    book: Book
    score: float


class BookStore:
    """
    Persistence for cached book records.

    All writes are keyed by identifier and issued as targeted UPDATE
    statements, so concurrent access-stat increments and refreshes of the
    same record never clobber each other.
    """

    session: Session

    def __init__(self, session: Session):
        self.session = session

    # Reads

    def find_by_id(self, identifier: str) -> Optional[Book]:
        identifier = identifier.strip()
        if not identifier:
            return None

        if is_native_key(identifier):
            book = self.session.get(Book, identifier.lower())
            if book is not None:
                return book

        for kind in LOOKUP_FIELDS:
            book = self.session.exec(
                select(Book).where(by_identifier(kind, identifier))
            ).first()
            if book is not None:
                return book
        return None

    def find_by_text(self, query: str, limit: int, offset: int = 0) -> list[TextHit]:
        """
        Indexed full-text search ordered by relevance.

        Raises TextIndexUnavailable when the index is missing or the query
        fails, so the caller can fall back to `find_by_title_substring`.
        """
        match = fts_match_expression(query)
        if match is None:
            return []
        try:
            rows = self.session.exec(text_search(match).limit(limit).offset(offset)).all()
        except DBAPIError as e:
            self.session.rollback()
            raise TextIndexUnavailable(str(e)) from e
        return [TextHit(book, float(score)) for book, score in rows]

    def find_by_title_substring(
        self, pattern: str, limit: int, words: Sequence[str] = ()
    ) -> list[Book]:
        """Case-insensitive substring match on title (pattern or any word) and authors."""
        return list(
            self.session.exec(
                select(Book).where(by_title_or_words(pattern, list(words))).limit(limit)
            ).all()
        )

    def find_by_title(self, normalized_title: str) -> Optional[Book]:
        """Exact case-insensitive title match, then the first partial match."""
        book = self.session.exec(
            select(Book).where(func.lower(col(Book.title)) == normalized_title.lower())
        ).first()
        if book is not None:
            return book
        return self.session.exec(
            select(Book).where(by_title_contains(normalized_title)).order_by(col(Book.title))
        ).first()

    def get(self, book_id: str) -> Optional[Book]:
        return self.session.get(Book, book_id, populate_existing=True)

    # Writes

    def upsert_from_provider(self, normalized: NormalizedBook) -> Book:
        """
        Create or update the record owned by `normalized.source_id`.

        Calling this repeatedly with the same provider id updates one record in
        place. A record that already carries one of the ISBNs is adopted
        instead: the provider id is attached, its data and provenance stay, and
        later upserts from the adopting provider leave them alone as well.
        """
        target = self._find_upsert_target(normalized)
        if target is None:
            book = self._insert(normalized)
            if book is not None:
                return book
            # lost an insert race; the winner's row is the target now
            target = self._find_upsert_target(normalized)
            if target is None:
                raise PersistenceFailure(
                    f"could not store {normalized.source.value} book {normalized.source_id}"
                )

        book_id, owned = target
        if owned:
            self._update_fields(book_id, normalized)
        else:
            self._attach_identifier(book_id, normalized)
        book = self.get(book_id)
        if book is None:
            raise PersistenceFailure(f"book {book_id} disappeared during upsert")
        return book

    def apply_refresh(self, book_id: str, normalized: NormalizedBook) -> None:
        """Replace volume/sale info of an existing record and bump last_updated."""
        self._update_fields(book_id, normalized)

    def touch_access(self, book_id: str) -> bool:
        """Count a read. Never raises; a failed touch is logged and dropped."""
        try:
            self.session.exec(  # pyright: ignore[reportCallIssue, reportArgumentType]
                update(Book)
                .where(col(Book.id) == book_id)
                .values(usage_count=col(Book.usage_count) + 1, last_accessed=utcnow())
            )
            self.session.commit()
        except SQLAlchemyError as e:
            handle_database_error(e, "touch access", rollback_session=self.session, book_id=book_id)
            return False
        return True

    def _find_upsert_target(self, normalized: NormalizedBook) -> Optional[tuple[str, bool]]:
        owner_field = IdentifierField.for_source(normalized.source)
        existing = self.session.exec(
            select(Book.id, Book.api_source).where(by_identifier(owner_field, normalized.source_id))
        ).first()
        if existing is not None:
            # an adopted record keeps the data of the provider that created it
            book_id, api_source = existing
            return book_id, api_source == normalized.source

        for kind in (IdentifierField.isbn13, IdentifierField.isbn10):
            value = getattr(normalized, kind.value)
            if not value:
                continue
            shared = self.session.exec(select(Book.id).where(by_identifier(kind, value))).first()
            if shared is not None:
                return shared, False
        return None

    def _insert(self, normalized: NormalizedBook) -> Optional[Book]:
        now = utcnow()
        info = normalized.volume_info
        book = Book(
            title=info.title,
            authors_text=authors_to_text(info.authors),
            volume_info=info.model_dump(mode="json", exclude_none=True),
            sale_info=normalized.sale_info,
            api_source=normalized.source,
            cached_at=now,
            last_updated=now,
            last_accessed=now,
        )
        for kind, value in normalized.identifiers().items():
            setattr(book, kind.value, value)

        self.session.add(book)
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            logger.info(
                "Book insert conflicted, updating existing record",
                source=normalized.source.value,
                source_id=normalized.source_id,
                error=str(e.orig),
            )
            return None
        self.session.refresh(book)
        return book

    def _update_fields(self, book_id: str, normalized: NormalizedBook) -> None:
        info = normalized.volume_info
        self.session.exec(  # pyright: ignore[reportCallIssue, reportArgumentType]
            update(Book)
            .where(col(Book.id) == book_id)
            .values(
                title=info.title,
                authors_text=authors_to_text(info.authors),
                volume_info=info.model_dump(mode="json", exclude_none=True),
                sale_info=normalized.sale_info,
                last_updated=utcnow(),
            )
        )
        self.session.commit()
        self._fill_isbns(book_id, normalized)

    def _attach_identifier(self, book_id: str, normalized: NormalizedBook) -> None:
        owner_field = IdentifierField.for_source(normalized.source)
        column = getattr(Book, owner_field.value)
        self.session.exec(  # pyright: ignore[reportCallIssue, reportArgumentType]
            update(Book)
            .where(col(Book.id) == book_id)
            .values({owner_field.value: func.coalesce(column, normalized.source_id)})
        )
        self.session.commit()
        logger.debug(
            "Attached provider id to existing book",
            book_id=book_id,
            source=normalized.source.value,
            source_id=normalized.source_id,
        )

    def _fill_isbns(self, book_id: str, normalized: NormalizedBook) -> None:
        values = {
            kind.value: func.coalesce(getattr(Book, kind.value), value)
            for kind, value in (
                (IdentifierField.isbn13, normalized.isbn13),
                (IdentifierField.isbn10, normalized.isbn10),
            )
            if value
        }
        if not values:
            return
        try:
            self.session.exec(  # pyright: ignore[reportCallIssue, reportArgumentType]
                update(Book).where(col(Book.id) == book_id).values(values)
            )
            self.session.commit()
        except IntegrityError as e:
            # another record already owns the ISBN; keep the record without it
            self.session.rollback()
            logger.debug(
                "ISBN already owned by another book",
                book_id=book_id,
                error=str(e.orig),
            )
