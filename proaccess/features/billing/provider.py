"""
Payment provider protocol.

Defines the interface the reconciliation paths need from a payment
provider. Business logic depends on this, never on the Stripe SDK.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class CheckoutSession:
    """Authoritative view of a checkout session, as reported by the provider."""
    session_id: str
    payment_status: str  # paid, unpaid, no_payment_required
    user_id: Optional[str]
    customer_id: Optional[str]
    amount_total: Optional[int]
    currency: Optional[str]
    created_at: Optional[datetime]
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle:
    - Webhook signature verification (with replay window)
    - Checkout session lookup for the verify path
    """

    def verify_webhook(self, body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook signature and decode the payload.

        Args:
            body: Raw request body, exactly as received
            signature_header: Value of the provider's signature header

        Returns:
            Decoded event payload

        Raises:
            BadSignature: Missing/invalid signature or stale timestamp
            MalformedPayload: Signature valid but body is not a JSON object
        """
        ...

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        """
        Fetch a checkout session by id.

        Raises:
            SessionNotFound: The provider does not know this id
            ProviderUnavailable: Transient failure (network, rate limit, 5xx)
        """
        ...
