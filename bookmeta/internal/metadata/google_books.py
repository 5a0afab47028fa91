"""
Google Books API provider, the tertiary catalog.
"""
import re
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession
from pydantic import BaseModel, Field, ValidationError

from bookmeta.internal.metadata.base import HttpProvider, https
from bookmeta.internal.models import ApiSource, ImageLinks, NormalizedBook, VolumeInfo
from bookmeta.util.exceptions import ProviderUnavailable

VOLUME_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{12}$")
MAX_PAGE_SIZE = 40


class GoogleBooksVolumeInfo(BaseModel):
    """Google Books API volume info response model."""
    title: str = ""
    subtitle: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    publisher: Optional[str] = None
    description: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    imageLinks: Optional[Dict[str, str]] = None
    publishedDate: Optional[str] = None
    pageCount: Optional[int] = None
    averageRating: Optional[float] = None
    ratingsCount: Optional[int] = None
    language: Optional[str] = None
    infoLink: Optional[str] = None
    industryIdentifiers: Optional[List[Dict[str, str]]] = None


class GoogleBooksItem(BaseModel):
    """Google Books API item response model."""
    id: str
    volumeInfo: GoogleBooksVolumeInfo
    saleInfo: Optional[Dict[str, Any]] = None


class GoogleBooksResponse(BaseModel):
    """Google Books API search response model."""
    items: List[Dict[str, Any]] = Field(default_factory=list)
    totalItems: int = 0


class GoogleBooksProvider(HttpProvider):
    """Provider for the Google Books volumes API."""

    source = ApiSource.tertiary
    name = "Google Books"

    base_url: str
    api_key: str

    def __init__(
        self,
        api_key: str = "",
        timeout: float = 8.0,
        base_url: str = "https://www.googleapis.com/books/v1/volumes",
    ):
        super().__init__(timeout)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    def claims_identifier(self, identifier: str) -> bool:
        return bool(VOLUME_ID_PATTERN.match(identifier)) and not identifier.isdigit()

    def _with_key(self, params: dict[str, Any]) -> dict[str, Any]:
        # the API works keyless with a lower quota
        if self.api_key:
            params["key"] = self.api_key
        return params

    def _extract_isbns(self, volume_info: GoogleBooksVolumeInfo) -> tuple[Optional[str], Optional[str]]:
        """Extract ISBN-10 and ISBN-13 from industry identifiers."""
        isbn10 = isbn13 = None
        for identifier in volume_info.industryIdentifiers or []:
            kind = identifier.get("type")
            if kind == "ISBN_13" and isbn13 is None:
                isbn13 = identifier.get("identifier")
            elif kind == "ISBN_10" and isbn10 is None:
                isbn10 = identifier.get("identifier")
        return isbn10, isbn13

    def _image_links(self, image_links: Optional[Dict[str, str]]) -> Optional[ImageLinks]:
        if not image_links:
            return None
        return ImageLinks.model_validate({size: https(url) for size, url in image_links.items()})

    async def _search(
        self, client_session: ClientSession, query: str, page: int, page_size: int
    ) -> tuple[list[Any], int]:
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        params = self._with_key(
            {
                "q": query,
                "maxResults": page_size,
                "startIndex": (max(page, 1) - 1) * page_size,
                "printType": "books",
            }
        )
        data = await self._get_json(client_session, self.base_url, params=params)
        try:
            response = GoogleBooksResponse.model_validate(data)
        except ValidationError as e:
            raise ProviderUnavailable(self.name, "unexpected search payload") from e
        return response.items, response.totalItems

    async def get_by_identifier(self, client_session: ClientSession, identifier: str) -> NormalizedBook:
        data = await self._get_json(
            client_session,
            f"{self.base_url}/{identifier}",
            params=self._with_key({}),
            not_found=identifier,
        )
        try:
            return self.normalize(data)
        except ValidationError as e:
            raise ProviderUnavailable(self.name, "unusable volume payload") from e

    def normalize(self, raw: Any) -> NormalizedBook:
        item = GoogleBooksItem.model_validate(raw)
        info = item.volumeInfo
        isbn10, isbn13 = self._extract_isbns(info)

        volume_info = VolumeInfo(
            title=info.title,
            subtitle=info.subtitle,
            authors=info.authors,
            publisher=info.publisher,
            publishedDate=info.publishedDate,
            description=info.description,
            pageCount=info.pageCount,
            categories=info.categories,
            averageRating=info.averageRating,
            ratingsCount=info.ratingsCount,
            language=info.language,
            imageLinks=self._image_links(info.imageLinks),
            infoLink=https(info.infoLink),
        )
        return NormalizedBook(
            source=self.source,
            source_id=item.id,
            isbn10=isbn10,
            isbn13=isbn13,
            volume_info=volume_info,
            sale_info=item.saleInfo,
        )
