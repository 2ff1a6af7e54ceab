"""Utility helpers for the MediaMesh service."""

from __future__ import annotations

import re
import unicodedata


_LEADING_ARTICLES = ("the ", "a ", "an ")
_NON_WORD_RE = re.compile(r"[^\w\s]+", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_title(value: str | None) -> str:
    """Return a comparison key for titles coming from different sources.

    Accents, punctuation, case and a single leading English article are
    dropped so that ``"The Matrix"`` and ``"matrix"`` compare equal.
    """

    if not value:
        return ""
    value = unicodedata.normalize("NFKD", value)
    value = "".join(char for char in value if not unicodedata.combining(char))
    value = value.replace("&", " and ")
    value = _NON_WORD_RE.sub(" ", value.casefold())
    value = _WHITESPACE_RE.sub(" ", value).strip()
    for article in _LEADING_ARTICLES:
        if value.startswith(article) and len(value) > len(article):
            value = value[len(article):]
            break
    return value


def normalize_source(value: str | None) -> str:
    """Return the canonical spelling of an external source name."""

    return (value or "").strip().lower()
