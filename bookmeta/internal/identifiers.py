import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional, Sequence

from bookmeta.internal.models import ApiSource

if TYPE_CHECKING:
    from bookmeta.internal.metadata.base import ProviderClient

NATIVE_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")
ISBN_PATTERN = re.compile(r"^(\d{10}|\d{13})$")
# provider keys written as paths, e.g. "/works/OL45804W"
PATH_KEY_PATTERN = re.compile(r"^/(?:works|books)/([^/]+)$")


class IdentifierKind(str, Enum):
    native = "native"
    isbn = "isbn"
    provider = "provider"
    other = "other"


@dataclass(frozen=True)
class IdentifierRoute:
    kind: IdentifierKind
    identifier: str
    source: Optional[ApiSource] = None
    """Provider that owns the identifier scheme, for `isbn` and `provider` routes."""


def is_native_key(identifier: str) -> bool:
    return bool(NATIVE_KEY_PATTERN.match(identifier))


def is_isbn(identifier: str) -> bool:
    return bool(ISBN_PATTERN.match(identifier))


def canonical_identifier(identifier: str) -> str:
    """The bare provider key, as stored in the identifier columns."""
    match = PATH_KEY_PATTERN.match(identifier)
    return match.group(1) if match else identifier


def classify_identifier(
    identifier: str, providers: Sequence["ProviderClient"] = ()
) -> IdentifierRoute:
    """
    Decide how an identifier should be resolved from its shape alone.

    24 hex characters is a storage-native key, 10 or 13 digits is an ISBN
    (owned by the first provider that claims ISBNs), anything a provider
    recognises as its own id scheme goes to that provider, and the rest is
    matched against the identifier columns only.
    """
    identifier = identifier.strip()
    if is_native_key(identifier):
        return IdentifierRoute(IdentifierKind.native, identifier.lower())

    if is_isbn(identifier):
        owner = next((p.source for p in providers if p.claims_identifier(identifier)), None)
        return IdentifierRoute(IdentifierKind.isbn, identifier, owner)

    for provider in providers:
        if provider.claims_identifier(identifier):
            return IdentifierRoute(
                IdentifierKind.provider, canonical_identifier(identifier), provider.source
            )

    return IdentifierRoute(IdentifierKind.other, identifier)
