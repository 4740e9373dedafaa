"""Ingestion gate: deduplicate platform events and seed the first job."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from referral_api.models.referral_event import record_referral_event
from referral_api.models.reward_job import RewardJobStatusEnum, RewardStageEnum, RewardTriggerEnum
from referral_api.services.idempotency import build_correlation_id

from .codes import normalize_code
from .job_store import RewardJobStore
from .runs import RewardRunRecorder

_COMPLETED_PAYMENT = "COMPLETED"


class InvalidEventError(ValueError):
    """Raised when an inbound event lacks the fields needed to record it."""


@dataclass(slots=True)
class ParsedEvent:
    event_id: str
    event_type: str
    resource_id: str | None
    context: dict[str, Any] = field(default_factory=dict)
    stage: RewardStageEnum | None = None
    skip_reason: str | None = None

    @property
    def trigger(self) -> RewardTriggerEnum | None:
        try:
            return RewardTriggerEnum(self.event_type)
        except ValueError:
            return None


@dataclass(slots=True)
class IngestResult:
    accepted: bool
    correlation_id: str
    job_id: UUID | None = None
    reason: str | None = None

    @property
    def status(self) -> str:
        if not self.accepted:
            return "duplicate"
        return "accepted" if self.job_id is not None else "ignored"


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _pick(source: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = _clean(source.get(key))
        if value:
            return value
    return None


def _custom_attribute_code(attributes: Any) -> str | None:
    if isinstance(attributes, Mapping):
        items = attributes.items()
    elif isinstance(attributes, list):
        items = ((entry.get("key"), entry) for entry in attributes if isinstance(entry, Mapping))
    else:
        return None
    for key, value in items:
        if not key or "referral" not in str(key).lower():
            continue
        if isinstance(value, Mapping):
            value = value.get("value")
        code = _clean(value)
        if code:
            return code
    return None


def extract_referral_code(*sources: Mapping[str, Any]) -> str | None:
    """Referral code from ``referral_code``, ``reference_id`` or custom attributes."""

    for source in sources:
        code = _pick(source, "referral_code", "referralCode")
        if code:
            return normalize_code(code)
    for source in sources:
        code = _pick(source, "reference_id", "referenceId")
        if code:
            return normalize_code(code)
    for source in sources:
        code = _custom_attribute_code(source.get("custom_attributes") or source.get("customAttributes"))
        if code:
            return normalize_code(code)
    return None


def _order_link(*sources: Mapping[str, Any]) -> dict[str, str]:
    for source in sources:
        link = source.get("order_link")
        if isinstance(link, Mapping):
            order_id = _pick(link, "order_id", "orderId")
            line_item_uid = _pick(link, "line_item_uid", "lineItemUid")
            if order_id and line_item_uid:
                return {"order_id": order_id, "line_item_uid": line_item_uid}
    return {}


def parse_event(payload: Mapping[str, Any]) -> ParsedEvent:
    """Normalize a platform webhook body into a :class:`ParsedEvent`."""

    event_id = _pick(payload, "event_id", "eventId")
    event_type = _pick(payload, "type", "event_type", "eventType")
    if not event_id:
        raise InvalidEventError("Event is missing event_id")
    if not event_type:
        raise InvalidEventError("Event is missing its type")

    data = payload.get("data") or {}
    if not isinstance(data, Mapping):
        raise InvalidEventError("Event data must be an object")
    obj = data.get("object") or {}
    resource_id = _pick(data, "id")
    context: dict[str, Any] = {}

    parsed = ParsedEvent(event_id=event_id, event_type=event_type, resource_id=resource_id)

    if event_type == RewardTriggerEnum.CUSTOMER_CREATED.value:
        customer = obj.get("customer") or obj
        customer_id = _pick(customer, "id", "customer_id")
        context.update(
            customer_id=customer_id,
            given_name=_pick(customer, "given_name", "givenName"),
            family_name=_pick(customer, "family_name", "familyName"),
            email_address=_pick(customer, "email_address", "emailAddress", "email"),
            referral_code=extract_referral_code(obj, customer),
        )
        context.update(_order_link(obj, customer))
        parsed.resource_id = resource_id or customer_id
        parsed.stage = RewardStageEnum.SIGNUP_BONUS
    elif event_type == RewardTriggerEnum.BOOKING_CREATED.value:
        booking = obj.get("booking") or obj
        customer_id = _pick(booking, "customer_id", "customerId")
        booking_id = _pick(booking, "id")
        context.update(
            customer_id=customer_id,
            booking_id=booking_id,
            referral_code=extract_referral_code(obj, booking),
        )
        context.update(_order_link(obj, booking))
        parsed.resource_id = resource_id or booking_id
        parsed.stage = RewardStageEnum.SIGNUP_BONUS
    elif event_type == RewardTriggerEnum.PAYMENT_UPDATED.value:
        payment = obj.get("payment") or obj
        payment_id = _pick(payment, "id")
        status = (_pick(payment, "status") or "").upper()
        context.update(
            customer_id=_pick(payment, "customer_id", "customerId"),
            payment_id=payment_id,
            order_id=_pick(payment, "order_id", "orderId"),
            payment_status=status or None,
        )
        parsed.resource_id = resource_id or payment_id
        if status != _COMPLETED_PAYMENT:
            parsed.skip_reason = "payment_not_completed"
        else:
            parsed.stage = RewardStageEnum.FIRST_PAYMENT_REWARD
    else:
        parsed.skip_reason = "unsupported_event_type"

    parsed.context = {key: value for key, value in context.items() if value is not None}
    if parsed.stage is not None and not parsed.context.get("customer_id"):
        parsed.stage = None
        parsed.skip_reason = "missing_customer_id"
    return parsed


class ReferralEventLedger:
    """Records each platform event once and enqueues exactly one job for it."""

    def __init__(self, session: AsyncSession, *, job_store: RewardJobStore | None = None) -> None:
        self._session = session
        self._jobs = job_store or RewardJobStore(session)
        self._runs = RewardRunRecorder(session)

    async def ingest(self, payload: Mapping[str, Any]) -> IngestResult:
        """Record ``payload`` and enqueue its initial stage.

        A repeated ``event_id`` (including one lost to a concurrent insert)
        returns ``accepted=False`` with the original correlation id. The
        caller commits.
        """

        parsed = parse_event(payload)
        correlation_id = build_correlation_id(
            trigger_type=parsed.event_type,
            event_id=parsed.event_id,
            resource_id=parsed.resource_id,
        )

        recorded = await record_referral_event(
            self._session,
            event_id=parsed.event_id,
            event_type=parsed.event_type,
            resource_id=parsed.resource_id,
            correlation_id=correlation_id,
            payload=dict(payload),
        )
        if not recorded.created:
            logger.info(
                "Duplicate referral event ignored",
                event_id=parsed.event_id,
                correlation_id=recorded.event.correlation_id,
            )
            return IngestResult(
                accepted=False,
                correlation_id=recorded.event.correlation_id,
                reason="duplicate",
            )

        trigger = parsed.trigger
        if parsed.stage is None or trigger is None:
            await self._runs.start(
                correlation_id=correlation_id,
                trigger_type=parsed.event_type,
                event_id=parsed.event_id,
                resource_id=parsed.resource_id,
                stage=None,
                status="ignored",
                context={**parsed.context, "reason": parsed.skip_reason},
            )
            logger.info(
                "Referral event recorded without job",
                event_id=parsed.event_id,
                event_type=parsed.event_type,
                reason=parsed.skip_reason,
            )
            return IngestResult(accepted=True, correlation_id=correlation_id, reason=parsed.skip_reason)

        job, _ = await self._jobs.enqueue(
            correlation_id=correlation_id,
            trigger_type=trigger,
            stage=parsed.stage,
            context=parsed.context,
        )
        await self._runs.start(
            correlation_id=correlation_id,
            trigger_type=parsed.event_type,
            event_id=parsed.event_id,
            resource_id=parsed.resource_id,
            stage=parsed.stage.value,
            status=RewardJobStatusEnum.QUEUED.value,
            context=parsed.context,
        )
        logger.info(
            "Referral event accepted",
            event_id=parsed.event_id,
            correlation_id=correlation_id,
            stage=parsed.stage.value,
            job_id=str(job.id),
        )
        return IngestResult(accepted=True, correlation_id=correlation_id, job_id=job.id)


__all__ = [
    "IngestResult",
    "InvalidEventError",
    "ParsedEvent",
    "ReferralEventLedger",
    "extract_referral_code",
    "parse_event",
]
