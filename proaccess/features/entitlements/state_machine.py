"""
Entitlement state machine.

Pure transition function shared by the webhook and verify paths. No I/O:
persistence happens in the reconciliation engine after a successful claim.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class EntitlementState(str, Enum):
    FREE = "free"
    PRO = "pro"


class SignalSource(str, Enum):
    WEBHOOK = "webhook"
    VERIFY = "verify"


# Stripe checkout `payment_status` values that grant Pro
SUCCESS_STATUSES = frozenset({"paid"})


@dataclass(frozen=True)
class PaymentSignal:
    """Normalized "something happened to a payment" from either ingress path."""
    idempotency_key: str  # checkout session id, same key space on both paths
    user_id: str
    amount_minor_units: Optional[int]
    currency: Optional[str]
    provider_status: str
    occurred_at: datetime
    source: SignalSource
    provider_customer_id: Optional[str] = None
    provider_event_id: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return is_success(self.provider_status)


def is_success(provider_status: Optional[str]) -> bool:
    return (provider_status or "").lower() in SUCCESS_STATUSES


def transition(current: EntitlementState, signal: PaymentSignal) -> EntitlementState:
    """
    Compute the next entitlement state.

    | current | status  | next |
    |---------|---------|------|
    | free    | success | pro  |
    | pro     | success | pro  |
    | free    | other   | free |
    | pro     | other   | pro  |

    Total and monotone: pro never goes back to free here.
    """
    if current is EntitlementState.PRO:
        return EntitlementState.PRO
    if signal.is_success:
        return EntitlementState.PRO
    return current
