import re
from urllib.parse import unquote


def create_book_slug(title: str) -> str:
    """Lowercase the title, drop punctuation and join words with "+", e.g. "the+hobbit"."""
    slug = re.sub(r"[^\w\s-]", "", title.strip().lower())
    slug = re.sub(r"\s+", "+", slug)
    return re.sub(r"\++", "+", slug).strip("+")


def slug_to_title(slug: str) -> str:
    return unquote(slug.replace("+", " "))


def normalize_title(title: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    title = re.sub(r"[^\w\s]", "", title.strip().lower())
    return re.sub(r"\s+", " ", title).strip()
