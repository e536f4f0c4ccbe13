"""
Payment API routes.

Minimal surface:
- POST /api/payment/webhook: Stripe webhook ingestion
- POST /api/payment/verify:  Client-triggered checkout verification
- GET  /api/payment/status:  Caller's entitlement status

Webhook status codes (Stripe retries any non-2xx with backoff for ~3 days):
- 200: processed, duplicate, unpaid or ignored event type
- 400: bad signature or malformed payload
- 503: billing disabled or ledger/store unavailable
"""
from typing import Optional
from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field

from proaccess.core.auth import get_current_user_id
from proaccess.features.billing.service import (
    ingest_webhook,
    verify_checkout,
    get_entitlement_status,
)


router = APIRouter(prefix="/payment", tags=["payment"])


class WebhookResponse(BaseModel):
    received: bool
    event_id: str
    outcome: str


class VerifyRequest(BaseModel):
    """Checkout session id from the success redirect."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")


class VerifyResponse(BaseModel):
    granted: bool
    entitlement_state: str
    applied: bool
    payment_status: str


class EntitlementStatusResponse(BaseModel):
    user_id: str
    entitlement_state: str
    is_pro: bool
    pro_since: Optional[str]  # ISO8601
    provider_customer_id: Optional[str]


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    """
    Handle Stripe webhook events.

    The raw body is verified against Stripe-Signature before parsing.
    Deduplication is by checkout session id in the idempotency ledger.
    """
    body = await request.body()
    ack = await run_in_threadpool(ingest_webhook, body, stripe_signature)
    return {"received": True, "event_id": ack.event_id, "outcome": ack.outcome}


@router.post("/verify", response_model=VerifyResponse)
def verify(payload: VerifyRequest, user_id: str = Depends(get_current_user_id)):
    """
    Verify a checkout session for the authenticated user.

    Returns:
        {"granted": bool, "entitlement_state": "free" | "pro", "applied": bool, "payment_status": str}

    Errors:
        401: Missing/invalid bearer credential
        404: Unknown session (or one that belongs to another user)
        503: Stripe unavailable (retry) or store unavailable
    """
    result = verify_checkout(user_id, payload.session_id)
    return {
        "granted": result.granted,
        "entitlement_state": result.entitlement_state.value,
        "applied": result.applied,
        "payment_status": result.payment_status,
    }


@router.get("/status", response_model=EntitlementStatusResponse)
def get_status(user_id: str = Depends(get_current_user_id)):
    """Get the caller's entitlement status."""
    status = get_entitlement_status(user_id)

    pro_since_str = None
    if status["pro_since"]:
        pro_since_str = status["pro_since"].isoformat()

    return {**status, "pro_since": pro_since_str}
