"""
Billing service orchestrator.

Coordinates the two ingress paths that can grant Pro:
- Webhook ingestion (provider-pushed, at-least-once, signed)
- Verify (client-triggered after the checkout redirect, authenticated)

Neither path writes entitlement state itself. Both derive a PaymentSignal
and hand it to the reconciliation engine, keyed by the checkout session id,
so whichever arrives first performs the upgrade and the other is a no-op.

All Stripe-specific code is in stripe_provider.py.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from proaccess.core.config import settings
from proaccess.core.errors import BillingDisabled, SessionNotFound, ValidationError
from proaccess.core.logging import log_event
from proaccess.core.metrics import webhook_events_total, verify_requests_total
from proaccess.features.billing.events import CheckoutPaymentEvent, parse_event
from proaccess.features.billing.provider import PaymentProvider, CheckoutSession
from proaccess.features.billing.stripe_provider import StripeProvider
from proaccess.features.entitlements import store
from proaccess.features.entitlements.state_machine import (
    EntitlementState,
    PaymentSignal,
    SignalSource,
)
from proaccess.features.reconciliation.engine import apply_signal


# Webhook outcomes
OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_NOT_PAID = "not_paid"
OUTCOME_IGNORED = "ignored"


@dataclass(frozen=True)
class WebhookAck:
    event_id: str
    event_type: str
    outcome: str


@dataclass(frozen=True)
class VerifyResult:
    granted: bool
    entitlement_state: EntitlementState
    applied: bool
    payment_status: str


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> PaymentProvider:
    """
    Get the payment provider.

    Raises:
        BillingDisabled: STRIPE_SECRET_KEY not configured
    """
    if not billing_enabled():
        raise BillingDisabled("Stripe is not configured. Set STRIPE_SECRET_KEY.")
    return StripeProvider()


def ingest_webhook(body: bytes, signature_header: Optional[str]) -> WebhookAck:
    """
    Process a provider webhook delivery (idempotent).

    1. Verify signature and replay window
    2. Parse into a recognised payment event or an ignored event
    3. Unpaid sessions are acknowledged without claiming the key
    4. Paid sessions go through claim -> transition -> persist

    Returns:
        WebhookAck (also for duplicates and ignored types)

    Raises:
        BadSignature: Signature invalid or stale; nothing recorded
        MalformedPayload: Verified body lacks required fields
        LedgerUnavailable: Store outage; provider should retry
    """
    provider = get_provider()
    try:
        event = parse_event(provider.verify_webhook(body, signature_header))
    except Exception as e:
        webhook_events_total.inc(labels={"outcome": getattr(e, "code", "error")})
        raise

    if not isinstance(event, CheckoutPaymentEvent):
        webhook_events_total.inc(labels={"outcome": OUTCOME_IGNORED})
        log_event("info", "webhook.ignored", event_type=event.event_type,
                  extra={"event_id": event.event_id})
        return WebhookAck(event.event_id, event.event_type, OUTCOME_IGNORED)

    signal = event.signal
    if not signal.is_success:
        # Delayed payment methods complete later under the same session id
        webhook_events_total.inc(labels={"outcome": OUTCOME_NOT_PAID})
        log_event("info", "webhook.not_paid", user_id=signal.user_id,
                  idempotency_key=signal.idempotency_key, event_type=event.event_type,
                  extra={"payment_status": signal.provider_status})
        return WebhookAck(event.event_id, event.event_type, OUTCOME_NOT_PAID)

    result = apply_signal(signal)
    outcome = OUTCOME_APPLIED if result.applied else OUTCOME_DUPLICATE
    webhook_events_total.inc(labels={"outcome": outcome})
    return WebhookAck(event.event_id, event.event_type, outcome)


def signal_from_session(session: CheckoutSession, user_id: str) -> PaymentSignal:
    return PaymentSignal(
        idempotency_key=session.session_id,
        user_id=user_id,
        amount_minor_units=session.amount_total,
        currency=session.currency,
        provider_status=session.payment_status,
        occurred_at=session.created_at or datetime.now(timezone.utc),
        source=SignalSource.VERIFY,
        provider_customer_id=session.customer_id,
    )


def verify_checkout(user_id: str, session_id: str) -> VerifyResult:
    """
    Confirm a checkout for the authenticated user straight from the provider.

    Args:
        user_id: Caller, already resolved from the bearer credential
        session_id: Checkout session id from the success redirect

    Raises:
        ValidationError: Empty session id
        SessionNotFound: Unknown to the provider, or belongs to another user
        ProviderUnavailable: Transient provider failure (retry; not "unpaid")
        LedgerUnavailable: Store outage
    """
    if not session_id or not session_id.strip():
        raise ValidationError("Session ID is required")

    provider = get_provider()
    try:
        session = provider.retrieve_checkout_session(session_id.strip())
        if session.user_id and session.user_id != user_id:
            log_event("warning", "verify.user_mismatch", user_id=user_id,
                      idempotency_key=session.session_id)
            raise SessionNotFound(f"Checkout session not found: {session_id}")
    except Exception as e:
        verify_requests_total.inc(labels={"outcome": getattr(e, "code", "error")})
        raise

    signal = signal_from_session(session, user_id)
    if not signal.is_success:
        record = store.get_entitlement(user_id)
        state = record.entitlement_state if record else EntitlementState.FREE
        verify_requests_total.inc(labels={"outcome": OUTCOME_NOT_PAID})
        return VerifyResult(
            granted=state is EntitlementState.PRO,
            entitlement_state=state,
            applied=False,
            payment_status=session.payment_status,
        )

    result = apply_signal(signal)
    verify_requests_total.inc(labels={"outcome": OUTCOME_APPLIED if result.applied else OUTCOME_DUPLICATE})
    return VerifyResult(
        granted=result.state is EntitlementState.PRO,
        entitlement_state=result.state,
        applied=result.applied,
        payment_status=session.payment_status,
    )


def get_entitlement_status(user_id: str) -> Dict[str, Any]:
    """
    Get the user's entitlement status from local state.

    Returns:
        {
            "user_id": str,
            "entitlement_state": "free" | "pro",
            "is_pro": bool,
            "pro_since": datetime | None,
            "provider_customer_id": str | None
        }
    """
    record = store.get_entitlement(user_id)
    if not record:
        return {
            "user_id": user_id,
            "entitlement_state": EntitlementState.FREE.value,
            "is_pro": False,
            "pro_since": None,
            "provider_customer_id": None,
        }
    return {
        "user_id": record.user_id,
        "entitlement_state": record.entitlement_state.value,
        "is_pro": record.is_pro,
        "pro_since": record.pro_since,
        "provider_customer_id": record.provider_customer_id,
    }
