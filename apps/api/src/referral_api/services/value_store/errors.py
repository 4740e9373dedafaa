"""Error taxonomy for value-store (gift card) calls."""

from __future__ import annotations

from typing import Any, Sequence


class ValueStoreError(RuntimeError):
    """Base error raised by value-store clients."""

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        status_code: int | None = None,
        errors: Sequence[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code
        self.errors = list(errors or [])


class TransientValueStoreError(ValueStoreError):
    """Rate limits, timeouts and provider outages; safe to retry later."""


class PermanentValueStoreError(ValueStoreError):
    """Rejected request or missing resource; retrying the same call will not help."""


__all__ = ["PermanentValueStoreError", "TransientValueStoreError", "ValueStoreError"]
