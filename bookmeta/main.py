from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import Engine
from sqlmodel import Session

from bookmeta.internal.env_settings import Settings
from bookmeta.internal.metadata import build_providers
from bookmeta.internal.metadata.base import ProviderClient
from bookmeta.internal.orchestrator import SearchOrchestrator
from bookmeta.internal.refresher import BackgroundRefresher
from bookmeta.internal.resolver import Resolver
from bookmeta.internal.staleness import StalenessPolicy
from bookmeta.routers.api import books, cache
from bookmeta.util import db
from bookmeta.util.exceptions import BookNotFound
from bookmeta.util.log import logger, setup_logging
from bookmeta.util.middleware import RequestIdMiddleware


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(BookNotFound)
    async def handle_not_found(request: Request, exc: BookNotFound):
        return JSONResponse(status_code=404, content={"error": "Book not found"})

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error while serving request",
            path=request.url.path,
            error_type=type(exc).__name__,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to process request", "details": str(exc)},
        )


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    providers: Optional[Sequence[ProviderClient]] = None,
) -> FastAPI:
    """
    Build the API application.

    `engine` and `providers` default to the configured database and provider
    chain; tests pass their own.
    """
    settings = settings or Settings()
    target_engine = engine if engine is not None else db.engine

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(
            log_level=settings.app.log_level,
            log_format=settings.app.log_format,
            log_file=settings.app.log_file,
            config_dir=settings.app.config_dir,
        )
        text_index = db.init_db(target_engine)

        chain = list(providers) if providers is not None else build_providers(settings.providers)
        policy = StalenessPolicy.from_settings(settings.cache)
        refresher = BackgroundRefresher(
            chain,
            lambda: Session(target_engine),
            workers=settings.cache.refresh_workers,
            queue_size=settings.cache.refresh_queue_size,
        )
        await refresher.start()

        app.state.refresher = refresher
        app.state.orchestrator = SearchOrchestrator(chain, refresher, policy, settings.cache)
        app.state.resolver = Resolver(chain, refresher, policy)

        logger.info(
            "bookmeta started",
            version=settings.app.version,
            providers=[p.name for p in chain],
            text_index=text_index,
        )
        yield
        await refresher.shutdown()
        logger.info("bookmeta stopped")

    app = FastAPI(
        title="bookmeta",
        version=settings.app.version,
        lifespan=lifespan,
        openapi_url="/openapi.json" if settings.app.openapi_enabled else None,
        docs_url="/docs" if settings.app.openapi_enabled else None,
        redoc_url=None,
    )
    app.add_middleware(RequestIdMiddleware)
    register_exception_handlers(app)
    app.include_router(books.router)
    app.include_router(cache.router)

    if engine is not None:
        def get_session_override():
            with Session(engine) as session:
                yield session

        app.dependency_overrides[db.get_session] = get_session_override

    return app


app = create_app()
