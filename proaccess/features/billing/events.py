"""
Webhook event parsing.

Provider events are turned into a closed set of variants. Only the explicitly
listed checkout types produce a payment signal; every other type becomes an
IgnoredEvent so a typo can never silently route an event to nowhere.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from proaccess.core.errors import MalformedPayload
from proaccess.features.billing.stripe_provider import user_id_from_metadata
from proaccess.features.entitlements.state_machine import PaymentSignal, SignalSource


CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"

PAYMENT_EVENT_TYPES = frozenset({CHECKOUT_COMPLETED, CHECKOUT_ASYNC_PAYMENT_SUCCEEDED})


@dataclass(frozen=True)
class CheckoutPaymentEvent:
    event_id: str
    event_type: str
    signal: PaymentSignal


@dataclass(frozen=True)
class IgnoredEvent:
    event_id: str
    event_type: str


WebhookEvent = Union[CheckoutPaymentEvent, IgnoredEvent]


def _require_str(obj: Dict[str, Any], key: str, where: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedPayload(f"Missing {where}.{key}")
    return value


def _timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, timezone.utc)
    return None


def parse_event(event: Dict[str, Any]) -> WebhookEvent:
    """
    Classify a verified provider event.

    Raises:
        MalformedPayload: id/type missing, or a payment event without the
            session fields a signal needs
    """
    event_id = _require_str(event, "id", "event")
    event_type = _require_str(event, "type", "event")

    if event_type not in PAYMENT_EVENT_TYPES:
        return IgnoredEvent(event_id=event_id, event_type=event_type)

    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise MalformedPayload("Missing event.data.object")

    session_id = _require_str(obj, "id", "data.object")
    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    user_id = user_id_from_metadata(metadata, obj.get("client_reference_id"))
    if not user_id:
        raise MalformedPayload("Checkout session carries no user reference")

    status = obj.get("payment_status")
    if not isinstance(status, str) or not status:
        raise MalformedPayload("Missing data.object.payment_status")

    amount = obj.get("amount_total")
    customer = obj.get("customer")

    signal = PaymentSignal(
        idempotency_key=session_id,
        user_id=user_id,
        amount_minor_units=amount if isinstance(amount, int) else None,
        currency=obj.get("currency"),
        provider_status=status,
        occurred_at=_timestamp(event.get("created")) or datetime.now(timezone.utc),
        source=SignalSource.WEBHOOK,
        provider_customer_id=customer if isinstance(customer, str) else None,
        provider_event_id=event_id,
    )
    return CheckoutPaymentEvent(event_id=event_id, event_type=event_type, signal=signal)
