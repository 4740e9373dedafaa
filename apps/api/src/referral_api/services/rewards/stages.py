"""Stage executors for the referral reward pipeline.

Each stage re-checks its precondition against the reward ledger and either
applies its effect exactly once or completes as a no-op. The executor never
commits; the scheduler commits the ledger mutation, the follow-up jobs and the
job completion together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from referral_api.core.settings import Settings, get_settings
from referral_api.models.reward_job import RewardJob, RewardStageEnum
from referral_api.models.reward_ledger import ReferralRewardTypeEnum, RewardProfile
from referral_api.services.idempotency import build_idempotency_key
from referral_api.services.notifications import (
    EmailTransportError,
    NotificationTemplate,
    RewardNotificationService,
)

from .codes import candidate_codes, normalize_code
from .errors import NotificationDeliveryError, PermanentStageError, RetryableStageError
from .fulfillment import FulfillmentResult, FulfillmentStrategy, OrderLink
from .ledger import CustomerContact, RewardLedger

APPLIED = "applied"
SKIPPED = "skipped"


@dataclass(slots=True)
class FollowUp:
    """A job to enqueue once the current stage commits."""

    stage: RewardStageEnum
    context: dict[str, Any]
    qualifier: str | None = None


@dataclass(slots=True)
class StageResult:
    outcome: str
    reason: str | None = None
    follow_ups: list[FollowUp] = field(default_factory=list)
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.outcome == SKIPPED

    @property
    def label(self) -> str:
        return f"{self.outcome}:{self.reason}" if self.reason else self.outcome


def _skip(reason: str) -> StageResult:
    return StageResult(outcome=SKIPPED, reason=reason)


def _order_link_for(profile: RewardProfile) -> OrderLink | None:
    if profile.order_link_order_id and profile.order_link_line_item_uid:
        return OrderLink(profile.order_link_order_id, profile.order_link_line_item_uid)
    return None


def _full_name(profile: RewardProfile) -> str | None:
    parts = [part for part in (profile.given_name, profile.family_name) if part]
    return " ".join(parts) if parts else None


def _notification(customer_id: str, template: NotificationTemplate, **extra: Any) -> FollowUp:
    return FollowUp(
        stage=RewardStageEnum.NOTIFICATION_DISPATCH,
        context={"customer_id": customer_id, "template": template.value, **extra},
        qualifier=f"{template.value}:{customer_id}",
    )


class RewardStageExecutor:
    """Runs one claimed job's stage against the reward ledger."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        fulfillment: FulfillmentStrategy,
        notifications: RewardNotificationService,
        settings: Settings | None = None,
    ) -> None:
        self._ledger = RewardLedger(session)
        self._fulfillment = fulfillment
        self._notifications = notifications
        self._settings = settings or get_settings()
        self._handlers: dict[RewardStageEnum, Callable[[RewardJob], Awaitable[StageResult]]] = {
            RewardStageEnum.SIGNUP_BONUS: self._signup_bonus,
            RewardStageEnum.FIRST_PAYMENT_REWARD: self._first_payment_reward,
            RewardStageEnum.REFERRAL_CODE_ACTIVATION: self._referral_code_activation,
            RewardStageEnum.NOTIFICATION_DISPATCH: self._notification_dispatch,
        }

    async def execute(self, job: RewardJob) -> StageResult:
        handler = self._handlers.get(job.stage)
        if handler is None:
            raise PermanentStageError(f"Unsupported reward stage: {job.stage}")
        result = await handler(job)
        logger.info(
            "Reward stage finished",
            correlation_id=job.correlation_id,
            stage=job.stage.value,
            outcome=result.outcome,
            reason=result.reason,
        )
        return result

    @staticmethod
    def _customer_id(job: RewardJob) -> str:
        customer_id = (job.context or {}).get("customer_id")
        if not customer_id:
            raise PermanentStageError("Job context is missing customer_id")
        return str(customer_id)

    async def _signup_bonus(self, job: RewardJob) -> StageResult:
        context = job.context or {}
        customer_id = self._customer_id(job)
        order_link = None
        if context.get("order_id") and context.get("line_item_uid"):
            order_link = OrderLink(context["order_id"], context["line_item_uid"])

        profile = await self._ledger.ensure_profile(
            customer_id,
            contact=CustomerContact(
                given_name=context.get("given_name"),
                family_name=context.get("family_name"),
                email_address=context.get("email_address"),
            ),
            order_link=order_link,
        )
        if profile.got_signup_bonus:
            return _skip("already_granted")

        code = normalize_code(context.get("referral_code"))
        if code is None:
            return _skip("no_referral_code")
        referrer = await self._ledger.resolve_code(code)
        if referrer is None:
            return _skip("unknown_referral_code")
        if referrer.customer_id == customer_id:
            return _skip("self_referral")

        amount = self._settings.referral_signup_bonus_cents
        result = await self._fulfillment.fulfill(
            customer_id,
            amount,
            profile.value_store_handle,
            idempotency_seed=build_idempotency_key("signup-bonus", customer_id),
            reference=f"signup-bonus:{customer_id}",
            order_link=_order_link_for(profile),
        )

        if not await self._ledger.claim_signup_bonus(customer_id, referral_code=code, fulfillment=result):
            logger.warning(
                "Signup bonus already claimed by a concurrent job",
                customer_id=customer_id,
                correlation_id=job.correlation_id,
            )
            return _skip("already_granted")

        await self._ledger.record_grant(
            referrer_customer_id=referrer.customer_id,
            referred_customer_id=customer_id,
            reward_type=ReferralRewardTypeEnum.SIGNUP_BONUS,
            amount_cents=amount,
            fulfillment=result,
            correlation_id=job.correlation_id,
        )
        return StageResult(
            outcome=APPLIED,
            follow_ups=[
                _notification(customer_id, NotificationTemplate.SIGNUP_BONUS_ISSUED, amount_cents=amount)
            ],
            detail=self._fulfillment_detail(result, referrer_customer_id=referrer.customer_id),
        )

    async def _first_payment_reward(self, job: RewardJob) -> StageResult:
        context = job.context or {}
        customer_id = self._customer_id(job)
        payment_id = context.get("payment_id")

        payer = await self._ledger.ensure_profile(customer_id)
        if payer.first_payment_completed:
            return _skip("already_completed")

        activation = FollowUp(
            stage=RewardStageEnum.REFERRAL_CODE_ACTIVATION,
            context={"customer_id": customer_id},
        )

        referrer = await self._ledger.resolve_code(payer.used_referral_code)
        if referrer is None or referrer.customer_id == customer_id:
            if not await self._ledger.mark_first_payment(customer_id):
                return _skip("already_completed")
            reason = "no_referrer" if payer.used_referral_code is None else "referrer_not_found"
            return StageResult(outcome=APPLIED, reason=reason, follow_ups=[activation])

        already_paid = await self._ledger.grant_exists(
            referrer_customer_id=referrer.customer_id,
            referred_customer_id=customer_id,
            reward_type=ReferralRewardTypeEnum.REFERRER_REWARD,
        )
        if already_paid:
            if not await self._ledger.mark_first_payment(customer_id):
                return _skip("already_completed")
            return StageResult(outcome=APPLIED, reason="reward_already_granted", follow_ups=[activation])

        amount = self._settings.referral_reward_cents
        result = await self._fulfillment.fulfill(
            referrer.customer_id,
            amount,
            referrer.value_store_handle,
            idempotency_seed=build_idempotency_key("referrer-reward", referrer.customer_id, customer_id),
            reference=f"referrer-reward:{customer_id}",
            order_link=_order_link_for(referrer),
        )

        if not await self._ledger.mark_first_payment(customer_id):
            logger.warning(
                "First payment already recorded by a concurrent job",
                customer_id=customer_id,
                correlation_id=job.correlation_id,
            )
            return _skip("already_completed")

        await self._ledger.credit_referrer(referrer.customer_id, amount, result)
        await self._ledger.record_grant(
            referrer_customer_id=referrer.customer_id,
            referred_customer_id=customer_id,
            reward_type=ReferralRewardTypeEnum.REFERRER_REWARD,
            amount_cents=amount,
            fulfillment=result,
            correlation_id=job.correlation_id,
            payment_id=payment_id,
        )
        return StageResult(
            outcome=APPLIED,
            follow_ups=[
                _notification(
                    referrer.customer_id,
                    NotificationTemplate.REFERRER_REWARD_CREDITED,
                    amount_cents=amount,
                    friend_customer_id=customer_id,
                ),
                activation,
            ],
            detail=self._fulfillment_detail(result, referrer_customer_id=referrer.customer_id),
        )

    async def _referral_code_activation(self, job: RewardJob) -> StageResult:
        customer_id = self._customer_id(job)
        profile = await self._ledger.get_profile(customer_id)
        if profile is None:
            raise PermanentStageError(f"No reward profile for customer {customer_id}")
        if profile.activated_as_referrer:
            return _skip("already_activated")

        result: FulfillmentResult | None = None
        if not profile.value_store_handle:
            result = await self._fulfillment.fulfill(
                customer_id,
                0,
                None,
                idempotency_seed=build_idempotency_key("referrer-store", customer_id),
                reference=f"referrer-store:{customer_id}",
            )

        name = _full_name(profile)
        for code in candidate_codes(name, customer_id, self._settings.referral_code_max_probes):
            if await self._ledger.code_taken(code):
                continue
            if await self._ledger.activate_referrer(customer_id, personal_code=code, fulfillment=result):
                break
            refreshed = await self._ledger.get_profile(customer_id)
            if refreshed is not None and refreshed.activated_as_referrer:
                return _skip("already_activated")
        else:
            raise RetryableStageError(f"Could not allocate a unique referral code for {customer_id}")

        detail: dict[str, Any] = {"personal_code": code}
        if result is not None:
            detail.update(self._fulfillment_detail(result))
        return StageResult(
            outcome=APPLIED,
            follow_ups=[
                _notification(customer_id, NotificationTemplate.REFERRAL_CODE_ACTIVATED, referral_code=code)
            ],
            detail=detail,
        )

    async def _notification_dispatch(self, job: RewardJob) -> StageResult:
        context = job.context or {}
        customer_id = self._customer_id(job)
        try:
            template = NotificationTemplate(context.get("template"))
        except ValueError as exc:
            raise PermanentStageError(f"Unknown notification template: {context.get('template')}") from exc

        profile = await self._ledger.get_profile(customer_id)
        if profile is None:
            return _skip("unknown_customer")
        if not profile.email_address:
            return _skip("no_email")

        try:
            receipt = await self._notifications.send(
                template,
                profile.email_address,
                self._template_variables(profile, context),
            )
        except EmailTransportError as exc:
            raise NotificationDeliveryError(str(exc)) from exc

        if not receipt.accepted:
            return _skip(receipt.reason or "not_accepted")
        return StageResult(outcome=APPLIED, detail={"template": template.value})

    def _template_variables(self, profile: RewardProfile, context: dict[str, Any]) -> dict[str, Any]:
        code = profile.personal_code or context.get("referral_code")
        return {
            "display_name": profile.display_name,
            "amount_cents": context.get("amount_cents"),
            "currency": self._settings.referral_currency,
            "gift_card_gan": profile.value_store_gan,
            "activation_url": profile.activation_url,
            "pass_url": profile.pass_url,
            "total_rewards_cents": profile.total_rewards_cents,
            "total_referrals": profile.total_referrals,
            "referral_code": code,
            "referral_url": f"{self._settings.referral_link_base}/{code}" if code else None,
            "reward_cents": self._settings.referral_reward_cents,
        }

    @staticmethod
    def _fulfillment_detail(result: FulfillmentResult, **extra: Any) -> dict[str, Any]:
        return {
            "value_store_handle": result.handle,
            "delivery_channel": result.delivery_channel.value,
            **extra,
        }


__all__ = ["APPLIED", "FollowUp", "RewardStageExecutor", "SKIPPED", "StageResult"]
