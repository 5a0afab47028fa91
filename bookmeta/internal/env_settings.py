import pathlib
from typing import Literal

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderSource = Literal["primary", "secondary", "tertiary"]


class DBSettings(BaseModel):
    sqlite_path: str = "books.sqlite"
    """Relative path to the sqlite database given the config directory. If absolute, it ignores the config dir location."""
    use_postgres: bool = False
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "bookmeta"
    postgres_user: str = "bookmeta"
    postgres_password: str = "password"
    postgres_ssl_mode: str = "prefer"

    # Connection Pool Configuration
    pool_size: int = 10
    """SQLAlchemy connection pool size (number of connections to maintain in pool)"""
    max_overflow: int = 20
    """Maximum number of overflow connections beyond pool_size"""
    pool_timeout: int = 30
    """Timeout (seconds) to wait for a connection from the pool"""
    pool_pre_ping: bool = True
    """Enable ping to detect stale connections before using them"""


class ApplicationSettings(BaseModel):
    debug: bool = False
    openapi_enabled: bool = False
    config_dir: str = "/config"
    port: int = 8000
    version: str = "local"
    log_level: str = "INFO"
    """Logging level (DEBUG, INFO, WARNING, ERROR)"""
    log_format: str = "text"
    """Log format: 'text' for human-readable, 'json' for machine-readable"""
    log_file: str | None = None
    """Optional log file path (relative to config_dir/logs/). If not set, logs to stdout only"""


class ProviderSettings(BaseModel):
    enabled: list[ProviderSource] = ["primary", "secondary", "tertiary"]
    """Providers to use. The chain always runs primary, then secondary, then tertiary."""

    provider_timeout_seconds: float = 8.0
    """Total timeout for a single provider HTTP call. A timeout advances the chain."""

    isbndb_api_key: str = ""
    """ISBNdb API key. The primary catalog is skipped when unset."""

    google_books_api_key: str = ""
    """Optional Google Books API key (works without key but has rate limits)"""

    open_library_user_agent: str = "bookmeta/1.0 (+https://github.com/bookmeta/bookmeta)"
    """Open Library asks clients to identify themselves"""


class CacheSettings(BaseModel):
    search_refresh_days: int = 7
    """Records served from a search older than this are refreshed in the background"""

    record_refresh_hours: int = 24
    """Records served from a single lookup older than this are refreshed in the background"""

    text_min_score: float = 0.0
    """Minimum full-text relevance for an indexed match to count as a cache hit"""

    fallback_min_score: int = 2
    """Minimum substring match score for the fallback title search"""

    max_results_limit: int = 40
    """Upper bound for maxResults on search requests"""

    refresh_workers: int = 4
    """Number of background refresh workers"""

    refresh_queue_size: int = 256
    """Pending background jobs beyond this are dropped"""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(  # pyright: ignore[reportUnannotatedClassAttribute]
        env_prefix="BOOKMETA_",
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
        env_file=(".env.local", ".env"),
        extra="ignore",
    )

    db: DBSettings = DBSettings()
    app: ApplicationSettings = ApplicationSettings()
    providers: ProviderSettings = ProviderSettings()
    cache: CacheSettings = CacheSettings()

    def get_sqlite_path(self):
        if self.db.sqlite_path.startswith("/"):
            return self.db.sqlite_path
        return str(pathlib.Path(self.app.config_dir) / self.db.sqlite_path)
