"""
Bounded background worker pool for cache maintenance.

Stale-record refreshes and access-stat touches are submitted here instead of
being awaited by the request that triggered them. Every job runs inside its own
error boundary: a failure is logged and dropped, never retried and never
surfaced to the request. `drain()` waits for everything queued so far, which is
what tests and shutdown rely on.
"""
import asyncio
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog
from aiohttp import ClientSession
from pydantic import BaseModel

from bookmeta.internal.book_store import BookStore
from bookmeta.internal.metadata.base import ProviderClient
from bookmeta.internal.models import ApiSource
from bookmeta.util.db import SessionFactory
from bookmeta.util.exceptions import BookNotFound, ProviderUnavailable
from bookmeta.util.log import logger as default_logger

Job = Callable[[], Awaitable[None]]


class RefresherStats(BaseModel):
    workers: int
    running: bool
    queued: int
    submitted: int
    completed: int
    failed: int
    dropped: int


class BackgroundRefresher:
    def __init__(
        self,
        providers: Sequence[ProviderClient],
        session_factory: SessionFactory,
        workers: int = 4,
        queue_size: int = 256,
        client_session: Optional[ClientSession] = None,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ):
        self.providers = {p.source: p for p in providers}
        self.session_factory = session_factory
        self.worker_count = max(1, workers)
        self.queue: asyncio.Queue[tuple[str, Job, dict[str, Any]]] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self.logger = logger or default_logger

        self._client_session = client_session
        self._owns_client_session = client_session is None
        self._workers: list[asyncio.Task[None]] = []

        self.submitted = 0
        self.completed = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self.running:
            return
        if self._client_session is None:
            self._client_session = ClientSession()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"book-refresher-{i}")
            for i in range(self.worker_count)
        ]
        self.logger.info("Background refresher started", workers=self.worker_count)

    async def drain(self) -> None:
        """Wait until every job submitted so far has finished."""
        await self.queue.join()

    async def shutdown(self, drain: bool = True) -> None:
        if drain and self.running:
            await self.drain()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._owns_client_session and self._client_session is not None:
            await self._client_session.close()
            self._client_session = None
        self.logger.info("Background refresher stopped", completed=self.completed, failed=self.failed)

    def submit(self, name: str, job: Job, **context: Any) -> bool:
        """Queue a job without waiting for it. Returns False if it was dropped."""
        try:
            self.queue.put_nowait((name, job, context))
        except asyncio.QueueFull:
            self.dropped += 1
            self.logger.warning("Background queue full, dropping job", job=name, **context)
            return False
        self.submitted += 1
        return True

    def schedule_refresh(self, book_id: str, source: ApiSource, source_id: Optional[str]) -> bool:
        if not source_id:
            self.logger.debug("No provider id to refresh from", book_id=book_id, source=source.value)
            return False
        return self.submit(
            "refresh",
            lambda: self._refresh(book_id, source, source_id),
            book_id=book_id,
            source=source.value,
        )

    def schedule_touch(self, book_id: str, user_id: Optional[str] = None) -> bool:
        return self.submit("touch", lambda: self._touch(book_id, user_id), book_id=book_id)

    def stats(self) -> RefresherStats:
        return RefresherStats(
            workers=self.worker_count,
            running=self.running,
            queued=self.queue.qsize(),
            submitted=self.submitted,
            completed=self.completed,
            failed=self.failed,
            dropped=self.dropped,
        )

    async def _worker(self, index: int) -> None:
        while True:
            name, job, context = await self.queue.get()
            try:
                await job()
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                self.logger.error(
                    "Background job failed",
                    job=name,
                    worker=index,
                    error=str(e),
                    error_type=type(e).__name__,
                    **context,
                )
            finally:
                self.queue.task_done()

    async def _refresh(self, book_id: str, source: ApiSource, source_id: str) -> None:
        provider = self.providers.get(source)
        if provider is None:
            self.logger.debug("Provider disabled, skipping refresh", book_id=book_id, source=source.value)
            return
        if self._client_session is None:
            raise RuntimeError("refresher is not started")

        try:
            normalized = await provider.get_by_identifier(self._client_session, source_id)
        except (ProviderUnavailable, BookNotFound) as e:
            # at most one attempt per trigger; the next stale read schedules another
            self.logger.info(
                "Background refresh skipped",
                book_id=book_id,
                source=source.value,
                reason=str(e),
            )
            return

        with self.session_factory() as session:
            BookStore(session).apply_refresh(book_id, normalized)
        self.logger.debug("Refreshed stale book", book_id=book_id, source=source.value)

    async def _touch(self, book_id: str, user_id: Optional[str]) -> None:
        with self.session_factory() as session:
            touched = BookStore(session).touch_access(book_id)
        if touched:
            self.logger.debug("Counted book access", book_id=book_id, user_id=user_id)
