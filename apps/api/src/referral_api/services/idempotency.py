"""Deterministic identifiers for correlation and provider idempotency."""

from __future__ import annotations

import hashlib
import re
from typing import Iterable

PROVIDER_KEY_MAX_LENGTH = 45

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9:_\-]")


def _safe_part(value: object, fallback: str = "na") -> str:
    if value is None:
        return fallback
    text = str(value).strip()
    if not text:
        return fallback
    return _UNSAFE_CHARS.sub("-", text)


def _digest(parts: Iterable[str]) -> str:
    raw = "::".join(part for part in parts if part)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def build_correlation_id(*, trigger_type: str, event_id: str, resource_id: str | None) -> str:
    """Stable id threading every job and audit row of one inbound event."""

    prefix = _safe_part(trigger_type, "event").lower()
    digest = _digest([trigger_type, resource_id or "", event_id])
    return f"{prefix}:{digest[:24]}"


def build_idempotency_key(*parts: object) -> str:
    """Join ``parts`` into a provider idempotency key of at most 45 characters.

    Keys longer than the provider limit keep a short readable prefix and are
    completed with a content hash, so equal inputs always produce equal keys.
    """

    normalized = [_safe_part(part).lower() for part in parts if part is not None and part != ""]
    joined = ":".join(normalized)
    if len(joined) <= PROVIDER_KEY_MAX_LENGTH:
        return joined

    prefix = (normalized[0] if normalized else "idemp")[:10]
    hash_length = PROVIDER_KEY_MAX_LENGTH - len(prefix) - 1
    return f"{prefix}:{_digest(normalized)[:hash_length]}"


__all__ = ["PROVIDER_KEY_MAX_LENGTH", "build_correlation_id", "build_idempotency_key"]
