"""Filesystem-safe identifiers for log and artifact file names."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Pattern

_UNSAFE: Pattern[str] = re.compile(r"[^A-Za-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalize ``value`` into a lowercase, filesystem-friendly slug."""
    slug = _normalize((value or "").strip().lower())
    if not slug:
        slug = _normalize(fallback.lower()) or "item"
    if len(slug) > max_length:
        slug = abbreviate_slug(slug, max_length=max_length)
    return slug


def abbreviate_slug(segment: str, *, max_length: int = 80) -> str:
    """Trim ``segment`` to ``max_length`` keeping it unique with a short hash."""
    slug = segment.strip("-") or "item"
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = slug[:prefix_length].rstrip("-") or slug[:prefix_length]
    return f"{prefix}-{digest}"


def timestamped_name(*parts: str, suffix: str = ".json") -> str:
    """Join slugged ``parts`` with a UTC timestamp: ``a__b__20240101T000000000000Z.json``."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    segments = [slugify(part) for part in parts if part]
    segments.append(stamp)
    return "__".join(segments) + suffix


def _normalize(value: str) -> str:
    slug = _UNSAFE.sub("-", value)
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    return slug.strip("-")


__all__ = ["abbreviate_slug", "slugify", "timestamped_name"]
