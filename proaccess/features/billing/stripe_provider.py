"""
Stripe payment provider implementation.

Implements PaymentProvider using the Stripe SDK: webhook signature
verification (HMAC-SHA256 with timestamp tolerance) and checkout session
retrieval.
"""
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
import stripe

from proaccess.core.config import settings
from proaccess.core.errors import (
    BillingDisabled,
    BadSignature,
    MalformedPayload,
    ProviderUnavailable,
    SessionNotFound,
)
from proaccess.features.billing.provider import CheckoutSession


def user_id_from_metadata(metadata: Optional[Dict[str, Any]], client_reference_id: Optional[str] = None) -> Optional[str]:
    """Checkout sessions carry the user as metadata.userId (or client_reference_id)."""
    metadata = metadata or {}
    return metadata.get("userId") or metadata.get("user_id") or client_reference_id or None


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            tolerance_seconds: Signature replay window (defaults to WEBHOOK_TOLERANCE_SECONDS)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.tolerance_seconds = tolerance_seconds or settings.WEBHOOK_TOLERANCE_SECONDS

        if not self.secret_key:
            raise BillingDisabled("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def verify_webhook(self, body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Verify Stripe-Signature and decode the event."""
        if not self.webhook_secret:
            raise BillingDisabled("STRIPE_WEBHOOK_SECRET not configured")
        if not signature_header:
            raise BadSignature("Missing Stripe-Signature header")

        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError:
            raise BadSignature("Webhook body is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.webhook_secret,
                tolerance=self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            raise BadSignature(f"Invalid signature: {e.user_message or e}")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise MalformedPayload(f"Invalid payload: {e}")
        if not isinstance(event, dict):
            raise MalformedPayload("Event payload must be a JSON object")
        return event

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        """Fetch the checkout session straight from Stripe."""
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing" or e.http_status == 404:
                raise SessionNotFound(f"Checkout session not found: {session_id}")
            raise ProviderUnavailable(f"Stripe rejected session lookup: {e.user_message or e}")
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            raise ProviderUnavailable(f"Stripe unavailable: {e.user_message or e}")
        except stripe.StripeError as e:
            raise ProviderUnavailable(f"Stripe session lookup failed: {e.user_message or e}")

        metadata = dict(session.metadata or {})
        created = getattr(session, "created", None)
        return CheckoutSession(
            session_id=session.id,
            payment_status=session.payment_status or "unpaid",
            user_id=user_id_from_metadata(metadata, getattr(session, "client_reference_id", None)),
            customer_id=_customer_id(getattr(session, "customer", None)),
            amount_total=getattr(session, "amount_total", None),
            currency=getattr(session, "currency", None),
            created_at=datetime.fromtimestamp(created, timezone.utc) if created else None,
            metadata=metadata,
        )


def _customer_id(customer) -> Optional[str]:
    # Unexpanded customers are plain ids; expanded ones are objects
    if customer is None or isinstance(customer, str):
        return customer
    return getattr(customer, "id", None)
