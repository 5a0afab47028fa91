import logging
import logging.handlers
import pathlib
from typing import Any

import structlog


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "text",
    log_file: str | None = None,
    config_dir: str = "/config",
) -> None:
    """
    Route structlog and stdlib logging through the same handlers.

    bookmeta's own events and library records (uvicorn, sqlalchemy, aiohttp)
    end up in one stream with one renderer, and the optional rotating file
    receives both. Request handlers bind `request_id` through contextvars (see
    `bookmeta.util.middleware`), so every event logged while serving a request
    carries it.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format ("text" or "json")
        log_file: Optional log file name, created under config_dir/logs
        config_dir: Base configuration directory
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    renderer: list[Any]
    if log_format.lower() == "json":
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderer = [structlog.dev.ConsoleRenderer()]

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *renderer,
        ],
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = pathlib.Path(config_dir) / "logs"
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_path / log_file,
            maxBytes=50 * 1024 * 1024,
            backupCount=5,
        )
        # file output is always JSON
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                foreign_pre_chain=shared_processors,
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.format_exc_info,
                    structlog.processors.JSONRenderer(),
                ],
            )
        )
        root_logger.addHandler(file_handler)

    # aiohttp and sqlalchemy log every request/statement at INFO
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str = "bookmeta", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, optionally pre-bound with context."""
    return structlog.stdlib.get_logger(name, **initial_values)


logger = get_logger()
