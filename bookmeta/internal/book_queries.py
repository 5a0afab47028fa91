"""
Query construction for the book cache.

Every filter the store issues is built here so that the storage technology can
change without touching the orchestration code, and so that query shapes can be
unit tested by compiling them.
"""
import re
from typing import Optional

from sqlalchemy import ColumnElement, Label, column, func, literal_column, or_, table
from sqlmodel import col, select
from sqlmodel.sql.expression import Select

from bookmeta.internal.models import Book, IdentifierField

TEXT_INDEX_TABLE = "book_text"

# FTS5 external-content table mirroring book.title / book.authors_text
book_text = table(TEXT_INDEX_TABLE, column("rowid"), column("title"), column("authors_text"))

_token_pattern = re.compile(r"\w+", re.UNICODE)

# dropped from MATCH expressions unless the query has nothing else
STOP_WORDS = frozenset(
    {"a", "an", "and", "at", "by", "for", "from", "in", "is", "of", "on", "or", "the", "to", "with"}
)


def by_identifier(kind: IdentifierField, value: str) -> ColumnElement[bool]:
    return col(getattr(Book, kind.value)) == value


def by_title_contains(text: str) -> ColumnElement[bool]:
    return col(Book.title).icontains(text, autoescape=True)


def by_authors_contains(text: str) -> ColumnElement[bool]:
    return col(Book.authors_text).icontains(text, autoescape=True)


def by_title_or_words(normalized_query: str, words: list[str]) -> ColumnElement[bool]:
    """
    Candidate filter for the fallback title search: the whole query in the
    title, any single significant word in the title, or the whole query in the
    author list.
    """
    clauses = [by_title_contains(normalized_query)]
    clauses.extend(by_title_contains(word) for word in words if word != normalized_query)
    clauses.append(by_authors_contains(normalized_query))
    return or_(*clauses)


def fts_match_expression(query: str) -> Optional[str]:
    """
    Turn free text into an FTS5 MATCH expression.

    Tokens are quoted so user input can never be parsed as FTS syntax, and
    OR-ed so that any term can produce a hit; bm25 ranks the rest.
    """
    tokens = _token_pattern.findall(query.lower())
    if not tokens:
        return None
    meaningful = [t for t in tokens if t not in STOP_WORDS]
    seen: list[str] = []
    for token in meaningful or tokens:
        if token not in seen:
            seen.append(token)
    return " OR ".join(f'"{token}"' for token in seen)


def text_score() -> Label[float]:
    # bm25() is lower-is-better; negate it so larger means more relevant
    return (-func.bm25(literal_column(TEXT_INDEX_TABLE))).label("score")


def text_search(match_expression: str) -> Select[tuple[Book, float]]:
    score = text_score()
    return (
        select(Book, score)
        .join(book_text, book_text.c.rowid == literal_column("book.rowid"))
        .where(literal_column(TEXT_INDEX_TABLE).op("MATCH")(match_expression))
        .order_by(score.desc())
    )
