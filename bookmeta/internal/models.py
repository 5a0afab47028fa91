import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from bookmeta.internal.slugs import create_book_slug


class ApiSource(str, Enum):
    primary = "primary"
    secondary = "secondary"
    tertiary = "tertiary"


class IdentifierField(str, Enum):
    """Columns that can address a book. Values are the column names."""

    native = "id"
    primary = "primary_id"
    secondary = "secondary_id"
    tertiary = "tertiary_id"
    isbn10 = "isbn10"
    isbn13 = "isbn13"

    @classmethod
    def for_source(cls, source: ApiSource) -> "IdentifierField":
        return cls(f"{source.value}_id")


# Lookup order for identifiers that are not storage-native keys
LOOKUP_FIELDS = (
    IdentifierField.primary,
    IdentifierField.secondary,
    IdentifierField.tertiary,
    IdentifierField.isbn13,
    IdentifierField.isbn10,
)


def utcnow() -> datetime:
    # aware UTC; SQLite may hand it back without tzinfo, see staleness._as_naive_utc
    return datetime.now(timezone.utc)


def generate_book_id() -> str:
    return secrets.token_hex(12)


class ImageLinks(BaseModel):
    smallThumbnail: Optional[str] = None
    thumbnail: Optional[str] = None
    small: Optional[str] = None
    medium: Optional[str] = None
    large: Optional[str] = None
    extraLarge: Optional[str] = None


class VolumeInfo(BaseModel):
    """Provider-independent volume metadata, shaped like Google Books volumeInfo."""

    model_config = ConfigDict(extra="ignore")

    title: str
    subtitle: Optional[str] = None
    authors: list[str] = []
    description: Optional[str] = None
    publishedDate: Optional[str] = None
    categories: list[str] = []
    publisher: Optional[str] = None
    pageCount: Optional[int] = None
    averageRating: Optional[float] = None
    ratingsCount: Optional[int] = None
    language: Optional[str] = None
    imageLinks: Optional[ImageLinks] = None
    infoLink: Optional[str] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be empty")
        return value


class NormalizedBook(BaseModel):
    """A provider response mapped onto the canonical book shape."""

    source: ApiSource
    source_id: str
    isbn10: Optional[str] = None
    isbn13: Optional[str] = None
    volume_info: VolumeInfo
    sale_info: Optional[dict[str, Any]] = None

    def identifiers(self) -> dict[IdentifierField, str]:
        found = {IdentifierField.for_source(self.source): self.source_id}
        if self.isbn13:
            found[IdentifierField.isbn13] = self.isbn13
        if self.isbn10:
            found[IdentifierField.isbn10] = self.isbn10
        return found


class Book(SQLModel, table=True):
    id: str = Field(default_factory=generate_book_id, primary_key=True, max_length=24)

    primary_id: Optional[str] = Field(default=None, unique=True)
    secondary_id: Optional[str] = Field(default=None, unique=True)
    tertiary_id: Optional[str] = Field(default=None, unique=True)
    isbn10: Optional[str] = Field(default=None, unique=True)
    isbn13: Optional[str] = Field(default=None, unique=True)

    # denormalized from volume_info for substring search and the text index
    title: str = Field(index=True)
    authors_text: str = ""

    volume_info: dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    sale_info: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    api_source: ApiSource

    cached_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    last_accessed: datetime = Field(default_factory=utcnow)
    usage_count: int = 0

    # engagement aggregates, written by the social features only
    rating_average: Optional[float] = None
    ratings_count: int = 0
    total_reads: int = 0
    total_likes: int = 0
    total_to_be_read: int = 0

    @property
    def source_id(self) -> Optional[str]:
        return getattr(self, IdentifierField.for_source(self.api_source).value)

    @property
    def public_id(self) -> str:
        return (
            self.primary_id
            or self.secondary_id
            or self.tertiary_id
            or self.isbn13
            or self.isbn10
            or self.id
        )

    def get_volume_info(self) -> VolumeInfo:
        return VolumeInfo.model_validate(self.volume_info)


def authors_to_text(authors: list[str]) -> str:
    return ", ".join(a.strip() for a in authors if a.strip())


# Response payloads


class BookSearchItem(BaseModel):
    id: str
    bookId: Optional[str] = None
    volumeInfo: VolumeInfo
    saleInfo: Optional[dict[str, Any]] = None
    apiSource: ApiSource
    fromCache: bool


class BookSearchResponse(BaseModel):
    kind: str = "books#volumes"
    totalItems: int
    items: list[BookSearchItem]


class BookStats(BaseModel):
    rating: Optional[float] = None
    ratingsCount: int = 0
    totalReads: int = 0
    totalLikes: int = 0
    totalToBeRead: int = 0


class BookDetail(BaseModel):
    id: str
    bookId: Optional[str] = None
    slug: str = ""
    volumeInfo: VolumeInfo
    saleInfo: Optional[dict[str, Any]] = None
    apiSource: ApiSource
    fromCache: bool
    stats: BookStats = BookStats()

    @classmethod
    def from_book(cls, book: Book, from_cache: bool) -> "BookDetail":
        return cls(
            id=book.public_id,
            bookId=book.id,
            slug=create_book_slug(book.title),
            volumeInfo=book.get_volume_info(),
            saleInfo=book.sale_info,
            apiSource=book.api_source,
            fromCache=from_cache,
            stats=BookStats(
                rating=book.rating_average,
                ratingsCount=book.ratings_count,
                totalReads=book.total_reads,
                totalLikes=book.total_likes,
                totalToBeRead=book.total_to_be_read,
            ),
        )

    @classmethod
    def from_normalized(
        cls, normalized: NormalizedBook, stored: Optional[Book] = None
    ) -> "BookDetail":
        if stored is not None:
            return cls.from_book(stored, from_cache=False)
        return cls(
            id=normalized.source_id,
            slug=create_book_slug(normalized.volume_info.title),
            volumeInfo=normalized.volume_info,
            saleInfo=normalized.sale_info,
            apiSource=normalized.source,
            fromCache=False,
        )
