"""Helpers for building stable, length-limited identifiers."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_KEY_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


def dedup_key(title: str, *, max_length: int = 120) -> str:
    """Return the normalized signature used to deduplicate open defects.

    Case, punctuation and whitespace differences collapse to the same key, so
    ``"Test failure: FULL suite"`` and ``"test failure -- full suite"`` match.
    """
    normalized = _collapse(_KEY_PATTERN.sub("-", (title or "").strip().lower()))
    if not normalized:
        raise ValueError("Cannot derive a dedup key from an empty title.")
    return abbreviate_slug(normalized, max_length=max_length)


def abbreviate_slug(segment: str, *, fallback: str = "item", max_length: int = 80) -> str:
    """Trim ``segment`` to ``max_length`` while preserving uniqueness via hashing."""
    slug = segment.strip("-") or fallback.strip("-") or "item"
    if len(slug) <= max_length:
        return slug

    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = slug[:prefix_length].rstrip("-") or slug[:prefix_length]
    return f"{prefix}-{digest}"


def _collapse(value: str) -> str:
    return _HYPHEN_COLLAPSE.sub("-", value).strip("-")
