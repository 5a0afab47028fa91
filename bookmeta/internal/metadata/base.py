import asyncio
import json
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel, Field, ValidationError

from bookmeta.internal.models import ApiSource, NormalizedBook
from bookmeta.util.exceptions import (
    BookNotFound,
    ProviderUnavailable,
    handle_external_api_error,
    handle_validation_error,
)
from bookmeta.util.log import logger


class ProviderSearchResult(BaseModel):
    """Outcome of a title search against one provider."""

    success: bool
    results: list[NormalizedBook] = Field(default_factory=list)
    total: int = 0
    error: Optional[str] = None


@runtime_checkable
class ProviderClient(Protocol):
    """Contract every metadata provider adapter implements."""

    source: ApiSource
    name: str

    def claims_identifier(self, identifier: str) -> bool: ...

    async def search_by_title(
        self, client_session: ClientSession, query: str, page: int, page_size: int
    ) -> ProviderSearchResult: ...

    async def get_by_identifier(
        self, client_session: ClientSession, identifier: str
    ) -> NormalizedBook: ...

    def normalize(self, raw: Any) -> NormalizedBook: ...


def https(url: Optional[str]) -> Optional[str]:
    if url and url.startswith("http://"):
        return url.replace("http://", "https://", 1)
    return url


def split_isbns(values: Sequence[str]) -> tuple[Optional[str], Optional[str]]:
    """Pick the first ISBN-10 and the first ISBN-13 from a list of ISBNs."""
    isbn10 = next((v for v in values if len(v) == 10), None)
    isbn13 = next((v for v in values if len(v) == 13), None)
    return isbn10, isbn13


class HttpProvider:
    """
    Shared plumbing for HTTP providers: per-call timeout, error mapping and the
    never-raising search wrapper.

    Subclasses implement `_search` and `get_by_identifier`, raising
    `ProviderUnavailable` for transport or payload problems and `BookNotFound`
    when the provider positively has no such record.
    """

    source: ApiSource
    name: str
    timeout: float

    def __init__(self, timeout: float = 8.0):
        self.timeout = timeout

    async def _get_json(
        self,
        client_session: ClientSession,
        url: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        not_found: Optional[str] = None,
    ) -> Any:
        try:
            async with client_session.get(
                url,
                params=params,
                headers=headers,
                timeout=ClientTimeout(total=self.timeout),
            ) as response:
                if response.status == 404 and not_found is not None:
                    raise BookNotFound(not_found, self.name)
                if response.status == 401:
                    raise ProviderUnavailable(self.name, "invalid API key")
                if response.status == 429:
                    raise ProviderUnavailable(self.name, "rate limit exceeded")
                if response.status != 200:
                    raise ProviderUnavailable(self.name, f"HTTP {response.status}")
                return await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(self.name, f"timed out after {self.timeout}s") from e
        except ClientError as e:
            raise ProviderUnavailable(self.name, str(e) or type(e).__name__) from e
        except json.JSONDecodeError as e:
            raise ProviderUnavailable(self.name, "malformed JSON response") from e

    async def _search(
        self, client_session: ClientSession, query: str, page: int, page_size: int
    ) -> tuple[list[Any], int]:
        raise NotImplementedError

    def normalize(self, raw: Any) -> NormalizedBook:
        raise NotImplementedError

    def _normalize_all(self, raw_items: list[Any], query: str) -> list[NormalizedBook]:
        books: list[NormalizedBook] = []
        for raw in raw_items:
            try:
                books.append(self.normalize(raw))
            except ValidationError as e:
                handle_validation_error(e, f"{self.name} search item", query=query)
            except ValueError as e:
                logger.debug(f"Skipping unusable {self.name} item", error=str(e), query=query)
        return books

    async def search_by_title(
        self, client_session: ClientSession, query: str, page: int = 1, page_size: int = 10
    ) -> ProviderSearchResult:
        """Search and normalize. Never raises; failures come back as `success=False`."""
        try:
            raw_items, total = await self._search(client_session, query, page, page_size)
        except ProviderUnavailable as e:
            handle_external_api_error(e, self.name, "search", query=query)
            return ProviderSearchResult(success=False, error=e.reason)

        results = self._normalize_all(raw_items, query)
        if not results:
            return ProviderSearchResult(
                success=False, total=total, error=f"No results found in {self.name}"
            )
        return ProviderSearchResult(success=True, results=results, total=max(total, len(results)))
