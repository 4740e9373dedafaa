"""Value-store (gift card) clients."""

from .base import GiftCardSnapshot, ValueStoreActivity, ValueStoreClient
from .errors import PermanentValueStoreError, TransientValueStoreError, ValueStoreError
from .square import SquareGiftCardClient

__all__ = [
    "GiftCardSnapshot",
    "PermanentValueStoreError",
    "SquareGiftCardClient",
    "TransientValueStoreError",
    "ValueStoreActivity",
    "ValueStoreClient",
    "ValueStoreError",
]
