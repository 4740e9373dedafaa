"""Value-store client contract shared by the Square client and test fakes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True)
class GiftCardSnapshot:
    """Current provider-side view of a value store."""

    handle: str
    gan: str | None
    state: str
    balance_cents: int
    activation_url: str | None = None


@dataclass(slots=True)
class ValueStoreActivity:
    """Outcome of a create, activation or top-up call."""

    handle: str
    gan: str | None
    balance_cents: int
    activity_type: str | None
    activation_url: str | None = None


class ValueStoreClient(Protocol):
    async def create_instance(
        self,
        amount_cents: int,
        *,
        idempotency_seed: str,
        reference: str,
    ) -> ValueStoreActivity:
        """Create a value store and load ``amount_cents`` as an owner-funded activation."""
        ...

    async def top_up(
        self,
        handle: str,
        amount_cents: int,
        *,
        idempotency_seed: str,
        reference: str,
    ) -> ValueStoreActivity:
        """Credit an existing value store; never creates a new one."""
        ...

    async def activate_via_order(
        self,
        order_id: str,
        line_item_uid: str,
        *,
        idempotency_seed: str,
        reference: str,
    ) -> ValueStoreActivity:
        """Create a value store funded by a purchased order line item."""
        ...

    async def retrieve(self, handle: str) -> GiftCardSnapshot:
        ...


__all__ = ["GiftCardSnapshot", "ValueStoreActivity", "ValueStoreClient"]
