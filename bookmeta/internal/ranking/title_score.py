"""
Substring scoring for free-text book search when the full-text index is missing
or returns too few hits.

Users type partial or misordered titles ("a lord of the ring") and expect the
canonical record ("The Lord of the Rings"); the score rewards titles that
contain every significant word, the whole query, and each individual word.
"""
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from bookmeta.internal.models import Book

ALL_WORDS_BONUS = 10
EXACT_QUERY_BONUS = 5
PER_WORD_BONUS = 1
MIN_MATCH_SCORE = 2


@dataclass(frozen=True)
class ScoredBook:
    book: Book
    score: int


def normalize_query(query: str) -> str:
    """Trim, lowercase and collapse whitespace."""
    return re.sub(r"\s+", " ", query.strip().lower())


def significant_words(normalized_query: str) -> list[str]:
    """
    Words longer than two characters. A single-word query is always
    significant, whatever its length.
    """
    words = [w for w in normalized_query.split(" ") if w]
    if len(words) == 1:
        return words
    return [w for w in words if len(w) > 2]


def all_words_pattern(words: Sequence[str]) -> re.Pattern[str] | None:
    """
    A pattern that matches when every word appears, in any order. Only built
    for two or more words; a single word is covered by the per-word bonus.
    """
    if len(words) < 2:
        return None
    lookaheads = "".join(f"(?=.*{re.escape(w)})" for w in words)
    return re.compile(f"^{lookaheads}", re.IGNORECASE | re.DOTALL)


def score_title(
    title: str,
    normalized_query: str,
    words: Sequence[str],
    pattern: re.Pattern[str] | None = None,
) -> int:
    title = title.lower()
    if pattern is None:
        pattern = all_words_pattern(words)

    score = 0
    if pattern is not None and pattern.search(title):
        score += ALL_WORDS_BONUS
    if normalized_query and normalized_query in title:
        score += EXACT_QUERY_BONUS
    for word in words:
        if word in title:
            score += PER_WORD_BONUS
    return score


def rank_candidates(
    candidates: Iterable[Book],
    query: str,
    exclude_ids: Iterable[str] = (),
    min_score: int = MIN_MATCH_SCORE,
) -> list[ScoredBook]:
    """
    Score, sort and filter fallback candidates.

    Sorted by score descending, ties broken by case-insensitive title. Anything
    below `min_score` or already present in `exclude_ids` is dropped.
    """
    normalized = normalize_query(query)
    words = significant_words(normalized)
    if not words:
        return []

    pattern = all_words_pattern(words)
    excluded = set(exclude_ids)

    scored = [
        ScoredBook(book=book, score=score_title(book.title, normalized, words, pattern))
        for book in candidates
        if book.id not in excluded
    ]
    scored.sort(key=lambda s: (-s.score, s.book.title.lower()))
    return [s for s in scored if s.score >= min_score]
