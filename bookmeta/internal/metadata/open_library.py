"""
Open Library provider, the secondary catalog.

Search results come from `search.json`, which returns work-level documents.
Their ISBN lists span every edition of the work, so search results never set
the record's ISBN columns. Edition lookups (`OL...M`) do.
"""
import re
from typing import Any, List, Optional, Union

from aiohttp import ClientSession
from pydantic import BaseModel, Field, ValidationError

from bookmeta.internal.metadata.base import HttpProvider, split_isbns
from bookmeta.internal.models import ApiSource, ImageLinks, NormalizedBook, VolumeInfo
from bookmeta.util.exceptions import ProviderUnavailable
from bookmeta.util.log import logger

OPEN_LIBRARY_ID_PATTERN = re.compile(r"^(?:/(?:works|books)/)?(OL\d+[WM])$")

SEARCH_FIELDS = ",".join(
    [
        "key",
        "title",
        "subtitle",
        "author_name",
        "first_publish_year",
        "publisher",
        "cover_i",
        "language",
        "subject",
        "ratings_average",
        "ratings_count",
    ]
)


class OpenLibraryDoc(BaseModel):
    """A search doc, a work or an edition. Only the fields used are modelled."""
    key: str
    title: str = ""
    subtitle: Optional[str] = None
    # search docs
    author_name: List[str] = Field(default_factory=list)
    first_publish_year: Optional[int] = None
    publisher: List[str] = Field(default_factory=list)
    cover_i: Optional[int] = None
    language: List[str] = Field(default_factory=list)
    subject: List[str] = Field(default_factory=list)
    ratings_average: Optional[float] = None
    ratings_count: Optional[int] = None
    # works and editions
    description: Optional[Union[str, dict[str, Any]]] = None
    covers: List[int] = Field(default_factory=list)
    subjects: List[str] = Field(default_factory=list)
    first_publish_date: Optional[str] = None
    publish_date: Optional[str] = None
    publishers: List[str] = Field(default_factory=list)
    number_of_pages: Optional[int] = None
    isbn_10: List[str] = Field(default_factory=list)
    isbn_13: List[str] = Field(default_factory=list)


class OpenLibrarySearchResponse(BaseModel):
    numFound: int = 0
    docs: List[dict[str, Any]] = Field(default_factory=list)


def cover_url(cover_id: Optional[int], size: str = "L") -> Optional[str]:
    if not cover_id or cover_id < 0:
        return None
    return f"https://covers.openlibrary.org/b/id/{cover_id}-{size}.jpg"


def _description(value: Optional[Union[str, dict[str, Any]]]) -> Optional[str]:
    if isinstance(value, dict):
        text = value.get("value")
        return text if isinstance(text, str) else None
    return value


class OpenLibraryProvider(HttpProvider):
    source = ApiSource.secondary
    name = "Open Library"

    base_url: str
    user_agent: str

    def __init__(
        self,
        user_agent: str,
        timeout: float = 8.0,
        base_url: str = "https://openlibrary.org",
    ):
        super().__init__(timeout)
        self.user_agent = user_agent
        self.base_url = base_url.rstrip("/")

    def claims_identifier(self, identifier: str) -> bool:
        return bool(OPEN_LIBRARY_ID_PATTERN.match(identifier))

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": self.user_agent}

    async def _search(
        self, client_session: ClientSession, query: str, page: int, page_size: int
    ) -> tuple[list[Any], int]:
        limit = max(1, min(page_size, 100))
        data = await self._get_json(
            client_session,
            f"{self.base_url}/search.json",
            params={
                "q": query,
                "limit": limit,
                "offset": (max(page, 1) - 1) * limit,
                "fields": SEARCH_FIELDS,
            },
            headers=self._headers(),
        )
        try:
            response = OpenLibrarySearchResponse.model_validate(data)
        except ValidationError as e:
            raise ProviderUnavailable(self.name, "unexpected search payload") from e
        return response.docs, response.numFound

    async def get_by_identifier(self, client_session: ClientSession, identifier: str) -> NormalizedBook:
        match = OPEN_LIBRARY_ID_PATTERN.match(identifier)
        if match is None:
            raise ProviderUnavailable(self.name, f"not an Open Library id: {identifier}")
        ol_id = match.group(1)
        collection = "books" if ol_id.endswith("M") else "works"

        data = await self._get_json(
            client_session,
            f"{self.base_url}/{collection}/{ol_id}.json",
            headers=self._headers(),
            not_found=identifier,
        )
        if not isinstance(data, dict):
            raise ProviderUnavailable(self.name, "unexpected lookup payload")

        # works and editions only reference their authors; the search doc names them
        search_doc = await self._search_doc(client_session, ol_id, collection)
        if search_doc:
            data = {**search_doc, **data}
        try:
            return self.normalize(data)
        except ValidationError as e:
            raise ProviderUnavailable(self.name, "unusable record payload") from e

    async def _search_doc(
        self, client_session: ClientSession, ol_id: str, collection: str
    ) -> Optional[dict[str, Any]]:
        field = "key" if collection == "works" else "edition_key"
        value = f"/works/{ol_id}" if collection == "works" else ol_id
        try:
            docs, _ = await self._search(client_session, f"{field}:{value}", 1, 1)
        except ProviderUnavailable as e:
            logger.debug("Open Library search doc unavailable", identifier=ol_id, error=e.reason)
            return None
        return docs[0] if docs and isinstance(docs[0], dict) else None

    def normalize(self, raw: Any) -> NormalizedBook:
        doc = OpenLibraryDoc.model_validate(raw)
        ol_id = doc.key.rstrip("/").split("/")[-1]
        is_edition = doc.key.startswith("/books/")

        cover = cover_url(doc.cover_i) or cover_url(doc.covers[0] if doc.covers else None)
        image_links = None
        if cover:
            image_links = ImageLinks(
                smallThumbnail=cover,
                thumbnail=cover,
                small=cover,
                medium=cover,
                large=cover,
                extraLarge=cover,
            )

        published = None
        if doc.first_publish_year is not None:
            published = str(doc.first_publish_year)
        else:
            published = doc.first_publish_date or doc.publish_date

        volume_info = VolumeInfo(
            title=doc.title,
            subtitle=doc.subtitle,
            authors=doc.author_name,
            publisher=(doc.publisher or doc.publishers or [None])[0],
            publishedDate=published,
            description=_description(doc.description),
            pageCount=doc.number_of_pages,
            categories=(doc.subject or doc.subjects)[:5],
            averageRating=doc.ratings_average,
            ratingsCount=doc.ratings_count,
            language=doc.language[0] if doc.language else None,
            imageLinks=image_links,
            infoLink=f"{self.base_url}{doc.key}",
        )

        isbn10 = isbn13 = None
        if is_edition:
            isbn10, isbn13 = split_isbns(doc.isbn_10 + doc.isbn_13)

        return NormalizedBook(
            source=self.source,
            source_id=ol_id,
            isbn10=isbn10,
            isbn13=isbn13,
            volume_info=volume_info,
        )
