from typing import Annotated, Optional

from aiohttp import ClientSession
from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlmodel import Session

from bookmeta.internal.book_store import BookStore
from bookmeta.internal.models import BookDetail, BookSearchResponse
from bookmeta.internal.orchestrator import DEFAULT_MAX_RESULTS, SearchOrchestrator
from bookmeta.internal.resolver import Resolver
from bookmeta.util.connection import get_connection
from bookmeta.util.db import get_session
from bookmeta.util.log import logger

router = APIRouter(prefix="/books", tags=["Books"])


class ErrorResponse(BaseModel):
    error: str
    details: Optional[str] = None


def get_orchestrator(request: Request) -> SearchOrchestrator:
    return request.app.state.orchestrator


def get_resolver(request: Request) -> Resolver:
    return request.app.state.resolver


def get_store(session: Annotated[Session, Depends(get_session)]) -> BookStore:
    return BookStore(session)


def get_user_id(x_user_id: Annotated[Optional[str], Header()] = None) -> Optional[str]:
    """Opaque caller identity, used only to attribute access side-effects."""
    if x_user_id is None or not x_user_id.strip():
        return None
    return x_user_id.strip()


@router.get(
    "/search",
    response_model=BookSearchResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def search_books(
    store: Annotated[BookStore, Depends(get_store)],
    client_session: Annotated[ClientSession, Depends(get_connection)],
    orchestrator: Annotated[SearchOrchestrator, Depends(get_orchestrator)],
    user_id: Annotated[Optional[str], Depends(get_user_id)],
    query: Annotated[Optional[str], Query(alias="q")] = None,
    max_results: Annotated[int, Query(alias="maxResults")] = DEFAULT_MAX_RESULTS,
    start_index: Annotated[int, Query(alias="startIndex")] = 0,
    force_fresh: Annotated[bool, Query(alias="forceFresh")] = False,
):
    if query is None or not query.strip():
        return JSONResponse(status_code=400, content={"error": "Search query is required"})

    return await orchestrator.search(
        store,
        client_session,
        query.strip(),
        max_results=max_results,
        start_index=start_index,
        force_fresh=force_fresh,
        user_id=user_id,
    )


@router.get(
    "/by-slug/{slug}",
    response_model=BookDetail,
    responses={404: {"model": ErrorResponse}},
)
async def get_book_by_slug(
    slug: str,
    store: Annotated[BookStore, Depends(get_store)],
    client_session: Annotated[ClientSession, Depends(get_connection)],
    resolver: Annotated[Resolver, Depends(get_resolver)],
    user_id: Annotated[Optional[str], Depends(get_user_id)],
):
    return await resolver.resolve_slug(store, client_session, slug, user_id=user_id)


@router.get(
    "/{identifier:path}",
    response_model=BookDetail,
    responses={404: {"model": ErrorResponse}},
)
async def get_book(
    identifier: str,
    store: Annotated[BookStore, Depends(get_store)],
    client_session: Annotated[ClientSession, Depends(get_connection)],
    resolver: Annotated[Resolver, Depends(get_resolver)],
    user_id: Annotated[Optional[str], Depends(get_user_id)],
):
    logger.debug("Book lookup", identifier=identifier, user_id=user_id)
    return await resolver.resolve(store, client_session, identifier, user_id=user_id)
