import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from referral_api.app import create_app  # noqa: E402
from referral_api.api.dependencies.session import get_session_factory  # noqa: E402
from referral_api.core.settings import Settings  # noqa: E402
from referral_api.db.base import Base  # noqa: E402
from referral_api.db.session import get_session  # noqa: E402
import referral_api.models  # noqa: E402,F401
from referral_api.observability.rewards import get_reward_pipeline_store  # noqa: E402
from referral_api.services.value_store import (  # noqa: E402
    GiftCardSnapshot,
    PermanentValueStoreError,
    ValueStoreActivity,
)


@dataclass
class FakeValueStore:
    """Value-store double honouring idempotency keys like the real provider."""

    order_error: Exception | None = None
    order_amount_cents: int = 1000
    errors: list[Exception] = field(default_factory=list)
    cards: dict[str, dict[str, Any]] = field(default_factory=dict)
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    on_call: Callable[[str], Awaitable[None]] | None = None
    _keys: dict[str, Any] = field(default_factory=dict)

    async def _enter(self, name: str, details: dict[str, Any]) -> None:
        self.calls.append((name, details))
        if self.on_call is not None:
            await self.on_call(name)
        if self.errors:
            raise self.errors.pop(0)

    def _card_for(self, key: str) -> dict[str, Any]:
        if key not in self._keys:
            number = len(self.cards) + 1
            handle = f"gftc:{number:04d}"
            self.cards[handle] = {
                "handle": handle,
                "gan": f"7783{number:012d}",
                "state": "PENDING",
                "balance_cents": 0,
            }
            self._keys[key] = handle
        return self.cards[self._keys[key]]

    def _activity(self, card: dict[str, Any], activity_type: str | None, url: str | None = None) -> ValueStoreActivity:
        return ValueStoreActivity(
            handle=card["handle"],
            gan=card["gan"],
            balance_cents=card["balance_cents"],
            activity_type=activity_type,
            activation_url=url,
        )

    def _load(self, key: str, card: dict[str, Any], amount_cents: int) -> None:
        if key in self._keys:
            return
        self._keys[key] = card["handle"]
        card["balance_cents"] += amount_cents
        card["state"] = "ACTIVE"

    async def create_instance(self, amount_cents: int, *, idempotency_seed: str, reference: str) -> ValueStoreActivity:
        await self._enter("create_instance", {"amount_cents": amount_cents, "seed": idempotency_seed})
        card = self._card_for(f"{idempotency_seed}:create")
        if amount_cents <= 0:
            return self._activity(card, None)
        self._load(f"{idempotency_seed}:activate-owner", card, amount_cents)
        return self._activity(card, "ACTIVATE")

    async def top_up(self, handle: str, amount_cents: int, *, idempotency_seed: str, reference: str) -> ValueStoreActivity:
        await self._enter("top_up", {"handle": handle, "amount_cents": amount_cents, "seed": idempotency_seed})
        card = self.cards.get(handle)
        if card is None:
            raise PermanentValueStoreError("Gift card not found", operation="top_up", status_code=404)
        activity_type = "ACTIVATE" if card["state"] == "PENDING" else "ADJUST_INCREMENT"
        suffix = "activate" if activity_type == "ACTIVATE" else "adjust"
        self._load(f"{idempotency_seed}:{suffix}", card, amount_cents)
        return self._activity(card, activity_type)

    async def activate_via_order(
        self,
        order_id: str,
        line_item_uid: str,
        *,
        idempotency_seed: str,
        reference: str,
    ) -> ValueStoreActivity:
        await self._enter("activate_via_order", {"order_id": order_id, "seed": idempotency_seed})
        card = self._card_for(f"{idempotency_seed}:create")
        if self.order_error is not None:
            raise self.order_error
        self._load(f"{idempotency_seed}:activate-order", card, self.order_amount_cents)
        return self._activity(card, "ACTIVATE", url=f"https://squareup.test/gift/{card['gan']}")

    async def retrieve(self, handle: str) -> GiftCardSnapshot:
        card = self.cards[handle]
        return GiftCardSnapshot(
            handle=handle,
            gan=card["gan"],
            state=card["state"],
            balance_cents=card["balance_cents"],
        )

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def fake_value_store() -> FakeValueStore:
    return FakeValueStore()


@pytest.fixture
def reward_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        referral_url_base="https://rewards.test/ref",
        wallet_pass_base_url="https://rewards.test/pass",
    )


@pytest.fixture(autouse=True)
def _reset_reward_observability():
    store = get_reward_pipeline_store()
    store.reset()
    yield
    store.reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
