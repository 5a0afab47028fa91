from typing import Callable

import structlog
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, text

from bookmeta.internal.book_queries import TEXT_INDEX_TABLE
from bookmeta.internal.env_settings import Settings

logger = structlog.stdlib.get_logger()

SessionFactory = Callable[[], Session]

db = Settings().db
if db.use_postgres:
    engine = create_engine(
        f"postgresql://{db.postgres_user}:{db.postgres_password}@{db.postgres_host}:{db.postgres_port}/{db.postgres_db}?sslmode={db.postgres_ssl_mode}",
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        pool_pre_ping=db.pool_pre_ping,
    )
else:
    sqlite_path = Settings().get_sqlite_path()
    engine = create_engine(
        f"sqlite+pysqlite:///{sqlite_path}",
        connect_args={"check_same_thread": False},
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_pre_ping=db.pool_pre_ping,
    )


@event.listens_for(engine, "connect")
def receive_connect(dbapi_conn, connection_record):
    if Settings().app.debug:
        logger.debug("Database connection established")


# FTS5 external-content index over book.title/book.authors_text, kept in sync by
# triggers. `rebuild` repopulates it from the content table, which also covers
# rowid renumbering after VACUUM.
TEXT_INDEX_DDL = (
    f"""
    CREATE VIRTUAL TABLE IF NOT EXISTS {TEXT_INDEX_TABLE} USING fts5(
        title, authors_text, content='book', tokenize='porter unicode61'
    )
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS {TEXT_INDEX_TABLE}_ai AFTER INSERT ON book BEGIN
        INSERT INTO {TEXT_INDEX_TABLE}(rowid, title, authors_text)
        VALUES (new.rowid, new.title, new.authors_text);
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS {TEXT_INDEX_TABLE}_ad AFTER DELETE ON book BEGIN
        INSERT INTO {TEXT_INDEX_TABLE}({TEXT_INDEX_TABLE}, rowid, title, authors_text)
        VALUES ('delete', old.rowid, old.title, old.authors_text);
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS {TEXT_INDEX_TABLE}_au AFTER UPDATE OF title, authors_text ON book BEGIN
        INSERT INTO {TEXT_INDEX_TABLE}({TEXT_INDEX_TABLE}, rowid, title, authors_text)
        VALUES ('delete', old.rowid, old.title, old.authors_text);
        INSERT INTO {TEXT_INDEX_TABLE}(rowid, title, authors_text)
        VALUES (new.rowid, new.title, new.authors_text);
    END
    """,
    f"INSERT INTO {TEXT_INDEX_TABLE}({TEXT_INDEX_TABLE}) VALUES ('rebuild')",
)


def ensure_text_index(target: Engine) -> bool:
    """
    Create the full-text index if the database supports it.

    Returns False when the index could not be built; searches then run on the
    substring fallback only.
    """
    if target.dialect.name != "sqlite":
        logger.info(
            "Full-text index not supported on this database, using substring search",
            dialect=target.dialect.name,
        )
        return False
    try:
        with target.begin() as conn:
            for statement in TEXT_INDEX_DDL:
                conn.execute(text(statement))
    except OperationalError as e:
        logger.warning(
            "Could not build full-text index, using substring search",
            error=str(e),
        )
        return False
    logger.info("Full-text index ready", table=TEXT_INDEX_TABLE)
    return True


def init_db(target: Engine = engine) -> bool:
    SQLModel.metadata.create_all(target)
    return ensure_text_index(target)


def get_session():
    with Session(engine) as session:
        yield session
