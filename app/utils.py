"""Utility helpers for the CanonSync service."""

from __future__ import annotations

import re
from datetime import datetime, timezone


WHITESPACE_RE = re.compile(r"\s+")


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime (as stored in SQLite)."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def collapse_whitespace(value: str) -> str:
    """Collapse runs of whitespace into single spaces and strip the ends."""

    return WHITESPACE_RE.sub(" ", value).strip()


def title_from_slug(slug: str) -> str:
    """Derive a readable title from a listing slug (``one-piece`` -> ``One Piece``)."""

    words = [part for part in re.split(r"[-_]+", slug) if part]
    return " ".join(word.capitalize() for word in words) or slug
