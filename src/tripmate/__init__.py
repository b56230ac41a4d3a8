"""Tripmate kernel utilities."""

from .dates import shift_iso_date
from .keywords import matches_any_keyword, split_keywords
from .lang import detect_language

__all__ = [
    "detect_language",
    "matches_any_keyword",
    "shift_iso_date",
    "split_keywords",
]
