"""
String normalization utilities for identity and attachment matching.

Provides consistent normalization for participant identifiers, email
addresses and attachment names so that the same person or file is
recognized across platforms and sync passes.
"""

from __future__ import annotations

import re
import unicodedata

# Namespaces the platforms put in front of user identifiers ("users/123")
DEFAULT_NAMESPACES = ("users",)

# Shortest digit run treated as an embedded numeric account id
MIN_NUMERIC_ID_LENGTH = 6

_TRAILING_DIGITS = re.compile(r"(\d+)$")
_EMAIL_PATTERN = re.compile(r"^[^@\s/]+@[^@\s/]+\.[^@\s/]+$")


def normalize_string(
    value: str,
    sort_words: bool = False,
    allow_email_chars: bool = False,
    remove_spaces: bool = True,
    strip_punctuation: bool = True,
) -> str:
    """
    Normalize a string for key generation.

    Args:
        value: String to normalize
        sort_words: If True, sort words alphabetically before joining.
        allow_email_chars: If True, preserve @ symbol for email normalization.
                          Only applies when strip_punctuation is True.
        remove_spaces: If True, remove all spaces from the result.
                      If False, multiple spaces are collapsed to single space.
        strip_punctuation: If True, remove non-alphanumeric characters.
                          If False, only normalize unicode and whitespace.

    Returns:
        Normalized lowercase string with special characters handled
    """
    if not value:
        return ""

    # Normalize unicode (decompose accents, etc.)
    normalized = unicodedata.normalize("NFKD", value)

    # Remove combining characters (accents)
    normalized = "".join(c for c in normalized if not unicodedata.combining(c))

    normalized = normalized.lower()

    if strip_punctuation:
        pattern = r"[^a-z0-9@\s]" if allow_email_chars else r"[^a-z0-9\s]"
        normalized = re.sub(pattern, "", normalized)

    # Normalize whitespace
    normalized = re.sub(r"\s+", " ", normalized).strip()

    if sort_words:
        words = normalized.split()
        normalized = "".join(sorted(words))
    elif remove_spaces:
        normalized = normalized.replace(" ", "")

    return normalized


def is_email(value: str | None) -> bool:
    """Check whether a value looks like a bare email address."""
    if not value:
        return False
    return bool(_EMAIL_PATTERN.match(value.strip()))


def normalize_email(value: str | None) -> str:
    """
    Normalize an email address for comparison.

    Args:
        value: Email address, possibly with surrounding whitespace or mixed case

    Returns:
        Lowercased, stripped address, or empty string for empty input
    """
    if not value:
        return ""
    return value.strip().lower()


def email_domain(value: str | None) -> str:
    """Return the domain part of an email address, or empty string."""
    email = normalize_email(value)
    if "@" not in email:
        return ""
    return email.rsplit("@", 1)[1]


def canonical_identifier(identifier: str) -> str:
    """
    Reduce a participant identifier to its canonical form.

    Email addresses are lowercased. Namespaced identifiers such as
    "users/108506371856200018714" lose their namespace prefix.

    Args:
        identifier: Raw identifier from a platform

    Returns:
        Canonical identifier used as the primary key of an identity mapping
    """
    identifier = (identifier or "").strip()
    if is_email(identifier):
        return normalize_email(identifier)
    if "/" in identifier:
        tail = identifier.rstrip("/").rsplit("/", 1)[-1]
        if tail:
            return tail
    return identifier


def identifier_candidates(
    identifier: str, namespaces: tuple[str, ...] = DEFAULT_NAMESPACES
) -> list[str]:
    """
    Build every alias under which an identifier may have been stored.

    Covers the raw value, the value without its namespace prefix, the
    namespaced variants of a bare id, and a trailing numeric account id.

    Args:
        identifier: Raw identifier, bare id or email address
        namespaces: Namespace prefixes to generate for bare ids

    Returns:
        De-duplicated list of candidates, most specific first
    """
    identifier = (identifier or "").strip()
    if not identifier:
        return []

    candidates: list[str] = []

    def add(value: str) -> None:
        if value and value not in candidates:
            candidates.append(value)

    if is_email(identifier):
        add(normalize_email(identifier))
        add(identifier)
        return candidates

    add(identifier)
    bare = canonical_identifier(identifier)
    add(bare)

    if "/" not in identifier:
        for namespace in namespaces:
            add(f"{namespace}/{bare}")

    match = _TRAILING_DIGITS.search(bare)
    if match and match.group(1) != bare:
        digits = match.group(1)
        if len(digits) >= MIN_NUMERIC_ID_LENGTH:
            add(digits)

    return candidates
