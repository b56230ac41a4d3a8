"""Keyword matching for bulk schedule cleanup."""

from __future__ import annotations

from typing import Iterable


def split_keywords(pattern: str) -> list[str]:
    """Split a ``|``-delimited pattern into lower-cased keywords.

    Empty fragments are dropped: ``"bus||"`` yields ``["bus"]``.
    """
    if not isinstance(pattern, str):
        return []
    keywords = []
    for part in pattern.split("|"):
        part = part.strip().lower()
        if part:
            keywords.append(part)
    return keywords


def matches_any_keyword(fields: Iterable[str | None], keywords: list[str]) -> bool:
    if not keywords:
        return False
    haystack = " ".join(str(f) for f in fields if f).lower()
    return any(kw in haystack for kw in keywords)
