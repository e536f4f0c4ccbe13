from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from proaccess.features.entitlements.state_machine import EntitlementState


class EntitlementRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    entitlement_state: EntitlementState = EntitlementState.FREE
    provider_customer_id: Optional[str] = None
    pro_since: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_pro(self) -> bool:
        return self.entitlement_state is EntitlementState.PRO


class LedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    idempotency_key: str
    source: str
    provider_event_id: Optional[str] = None
    resulting_state: Optional[EntitlementState] = None
    processed_at: datetime
