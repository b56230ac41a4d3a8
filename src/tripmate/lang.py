"""Reply language detection from the user's message script."""

from __future__ import annotations

import re

_HANGUL_RE = re.compile(r"[가-힯]")
_KANA_RE = re.compile(r"[぀-ヿ]")
_HAN_RE = re.compile(r"[一-鿿]")
_LETTER_RE = re.compile(r"[^\W\d_]")


def detect_language(text: str | None, default: str = "Korean") -> str:
    if not isinstance(text, str) or not text.strip():
        return default
    if _HANGUL_RE.search(text):
        return "Korean"
    # kana before han: Japanese text mixes both
    if _KANA_RE.search(text):
        return "Japanese"
    if _HAN_RE.search(text):
        return "Chinese"
    if _LETTER_RE.search(text):
        return "English"
    return default
