"""
ISBNdb provider, the primary catalog.

ISBNdb has the richest ISBN lookup of the chain, so ISBN-shaped identifiers are
routed here first. It needs an API key; without one every call reports the
provider as misconfigured and the chain moves on.
"""
from typing import Any, List, Optional, Union
from urllib.parse import quote

from aiohttp import ClientSession
from pydantic import BaseModel, Field, ValidationError

from bookmeta.internal.identifiers import is_isbn
from bookmeta.internal.metadata.base import HttpProvider
from bookmeta.internal.models import ApiSource, ImageLinks, NormalizedBook, VolumeInfo
from bookmeta.util.exceptions import ProviderMisconfigured, ProviderUnavailable


class IsbndbBook(BaseModel):
    """ISBNdb v2 book payload."""
    title: str = ""
    title_long: Optional[str] = None
    isbn: Optional[str] = None
    isbn13: Optional[str] = None
    publisher: Optional[str] = None
    language: Optional[str] = None
    date_published: Optional[Union[str, int]] = None
    pages: Optional[int] = None
    synopsis: Optional[str] = None
    overview: Optional[str] = None
    excerpt: Optional[str] = None
    image: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    subjects: List[str] = Field(default_factory=list)


class IsbndbSearchResponse(BaseModel):
    total: int = 0
    books: List[dict[str, Any]] = Field(default_factory=list)


class IsbndbProvider(HttpProvider):
    source = ApiSource.primary
    name = "ISBNdb"

    base_url: str
    api_key: str

    def __init__(self, api_key: str, timeout: float = 8.0, base_url: str = "https://api2.isbndb.com"):
        super().__init__(timeout)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    def claims_identifier(self, identifier: str) -> bool:
        return is_isbn(identifier)

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderMisconfigured(self.name, "API key not configured")
        return {"Authorization": self.api_key, "Content-Type": "application/json"}

    async def _search(
        self, client_session: ClientSession, query: str, page: int, page_size: int
    ) -> tuple[list[Any], int]:
        # the query is part of the path, not a parameter
        data = await self._get_json(
            client_session,
            f"{self.base_url}/books/{quote(query, safe='')}",
            params={"page": max(page, 1), "pageSize": min(page_size, 1000)},
            headers=self._headers(),
        )
        try:
            response = IsbndbSearchResponse.model_validate(data)
        except ValidationError as e:
            raise ProviderUnavailable(self.name, "unexpected search payload") from e
        return response.books, response.total

    async def get_by_identifier(self, client_session: ClientSession, identifier: str) -> NormalizedBook:
        data = await self._get_json(
            client_session,
            f"{self.base_url}/book/{quote(identifier, safe='')}",
            headers=self._headers(),
            not_found=identifier,
        )
        if not isinstance(data, dict) or not isinstance(data.get("book"), dict):
            raise ProviderUnavailable(self.name, "unexpected lookup payload")
        try:
            return self.normalize(data["book"])
        except ValidationError as e:
            raise ProviderUnavailable(self.name, "unusable book payload") from e

    def normalize(self, raw: Any) -> NormalizedBook:
        book = IsbndbBook.model_validate(raw)
        source_id = book.isbn13 or book.isbn
        if not source_id:
            raise ValueError("ISBNdb book without an ISBN")

        subtitle = None
        if book.title_long and book.title_long != book.title:
            subtitle = book.title_long.replace(book.title, "", 1).strip(" :-") or None

        image_links = None
        if book.image:
            cover = book.image
            image_links = ImageLinks(
                smallThumbnail=cover,
                thumbnail=cover,
                small=cover,
                medium=cover,
                large=cover,
                extraLarge=cover,
            )

        volume_info = VolumeInfo(
            title=book.title,
            subtitle=subtitle,
            authors=book.authors,
            publisher=book.publisher,
            publishedDate=str(book.date_published) if book.date_published is not None else None,
            description=book.synopsis or book.overview or book.excerpt,
            pageCount=book.pages,
            categories=book.subjects,
            language=book.language,
            imageLinks=image_links,
        )
        return NormalizedBook(
            source=self.source,
            source_id=source_id,
            isbn10=book.isbn if book.isbn and len(book.isbn) == 10 else None,
            isbn13=book.isbn13,
            volume_info=volume_info,
        )
