"""
Error taxonomy and standard exception logging for bookmeta.

Only `BookNotFound` is ever surfaced to HTTP callers as-is. Provider, index and
persistence failures are recovered where they happen; the helpers below give
them a consistent log shape.
"""
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from bookmeta.util.log import logger


class BookMetaError(Exception):
    """Base class for errors raised by the resolution core."""


class BookNotFound(BookMetaError):
    """No cached record and no provider produced a match for an identifier."""

    def __init__(self, identifier: str, source: str | None = None):
        self.identifier = identifier
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(f"Book '{identifier}' not found{where}")


class ProviderUnavailable(BookMetaError):
    """A provider call failed, timed out or returned an unusable payload."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source} provider unavailable: {reason}")


class ProviderMisconfigured(ProviderUnavailable):
    """A provider is missing required configuration such as an API key."""


class TextIndexUnavailable(BookMetaError):
    """The full-text index is missing or the indexed query failed."""


class PersistenceFailure(BookMetaError):
    """A cache write failed. The read path keeps the data it already has."""


def handle_external_api_error(
    error: Exception,
    service: str,
    operation: str,
    **context: Any
) -> None:
    """
    Standard logging for external API failures.

    Args:
        error: The caught exception
        service: Name of the external service (e.g., "ISBNdb", "Open Library")
        operation: What operation was being attempted (e.g., "search", "lookup")
        **context: Additional context to log (e.g., query=..., identifier=...)

    Example:
        try:
            book = await provider.get_by_identifier(client_session, isbn)
        except ProviderUnavailable as e:
            handle_external_api_error(e, "ISBNdb", "lookup", identifier=isbn)
    """
    logger.warning(
        f"{service} {operation} failed",
        error=str(error),
        error_type=type(error).__name__,
        service=service,
        operation=operation,
        **context
    )


def handle_database_error(
    error: SQLAlchemyError,
    operation: str,
    rollback_session: Any = None,
    **context: Any
) -> None:
    """
    Standard logging and handling for database errors.

    Args:
        error: The caught SQLAlchemy exception
        operation: What database operation was being attempted
        rollback_session: Optional SQLModel Session to rollback
        **context: Additional context to log
    """
    logger.error(
        f"Database {operation} failed",
        error=str(error),
        error_type=type(error).__name__,
        operation=operation,
        **context
    )

    if rollback_session is not None:
        try:
            rollback_session.rollback()
        except SQLAlchemyError as rollback_error:
            logger.warning(
                "Failed to rollback session after database error",
                error=str(rollback_error)
            )


def handle_validation_error(
    error: ValidationError,
    data_source: str,
    **context: Any
) -> None:
    """
    Standard logging for payloads that fail pydantic validation.

    Args:
        error: The caught ValidationError
        data_source: Where the invalid data came from (e.g., "ISBNdb response")
        **context: Additional context to log
    """
    logger.warning(
        f"{data_source} validation failed",
        error=str(error),
        error_type=type(error).__name__,
        data_source=data_source,
        **context
    )
