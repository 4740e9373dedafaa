"""Webhook intake for point-of-sale platform events."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json

from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from referral_api.core.settings import settings
from referral_api.db.session import get_session
from referral_api.schemas.rewards import WebhookIngestResponse
from referral_api.services.rewards import InvalidEventError, ReferralEventLedger

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "x-square-hmacsha256-signature"


def compute_square_signature(signature_key: str, notification_url: str, body: bytes) -> str:
    digest = hmac.new(
        signature_key.encode("utf-8"),
        notification_url.encode("utf-8") + body,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_square_signature(signature_key: str, notification_url: str, body: bytes, signature: str) -> bool:
    expected = compute_square_signature(signature_key, notification_url, body)
    return hmac.compare_digest(expected, signature)


@router.post("/square", status_code=status.HTTP_202_ACCEPTED, response_model=WebhookIngestResponse)
async def square_webhook(request: Request, db: AsyncSession = Depends(get_session)) -> WebhookIngestResponse:
    """Verify a Square webhook, record it in the event ledger and enqueue its first stage."""

    signature_key = settings.square_webhook_signature_key
    if not signature_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Square webhook signature key not configured",
        )

    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Square signature header")

    notification_url = settings.square_webhook_notification_url or str(request.url)
    if not verify_square_signature(signature_key, notification_url, body, signature):
        logger.warning("Rejected Square webhook with invalid signature")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Square signature")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payload must be a JSON object")

    ledger = ReferralEventLedger(db)
    try:
        result = await ledger.ingest(payload)
    except InvalidEventError as exc:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    if result.accepted:
        await db.commit()
    else:
        await db.rollback()

    return WebhookIngestResponse(
        status=result.status,
        correlation_id=result.correlation_id,
        job_id=result.job_id,
    )
