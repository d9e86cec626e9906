"""Ownership marker helpers shared by the reconcilers.

The controller marks what it creates with ``managed-by=<value>``: as a tag on
Access applications and as the comment of DNS records. That marker is the only
signal that authorizes deleting a remote object that is no longer desired.
"""

from __future__ import annotations

from collections.abc import Iterable

DEFAULT_MANAGED_BY = "docker-cf-tunnel-sync"


def managed_by_value(value: str | None) -> str:
    """Return the trimmed managed-by value, falling back to the default."""
    trimmed = (value or "").strip()
    return trimmed or DEFAULT_MANAGED_BY


def access_managed_tag(value: str | None) -> str:
    return f"managed-by={managed_by_value(value)}"


def dns_managed_comment(value: str | None) -> str:
    return f"managed-by={managed_by_value(value)}"


def merge_tags(existing: Iterable[str], required: str) -> list[str]:
    """De-duplicate ``existing`` (keeping order, dropping blanks) and append ``required``."""
    tags: list[str] = []
    seen: set[str] = set()
    for tag in existing:
        if not tag or tag in seen:
            continue
        seen.add(tag)
        tags.append(tag)
    if required and required not in seen:
        tags.append(required)
    return tags


def has_managed_tag(tags: Iterable[str], managed_tag: str) -> bool:
    return managed_tag in tags


def string_sets_equal(left: Iterable[str], right: Iterable[str]) -> bool:
    """Order-insensitive comparison that still counts duplicates."""
    return sorted(left) == sorted(right)
