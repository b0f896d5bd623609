"""
quickbill/models/entitlement.py

Reconciled entitlement view handed to the rest of the application.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Union
from pydantic import BaseModel, ConfigDict


UNLIMITED = "unlimited"


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    """Last known payment provider state."""
    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class TierState(str, Enum):
    """Position in the tier state machine."""
    FREE = "free"
    PRO_ACTIVE = "pro_active"
    PRO_PAST_DUE = "pro_past_due"
    PRO_CANCELED_PENDING = "pro_canceled_pending"


def tier_state(tier: Tier, status: SubscriptionStatus) -> TierState:
    if tier != Tier.PRO:
        return TierState.FREE
    if status == SubscriptionStatus.PAST_DUE:
        return TierState.PRO_PAST_DUE
    if status == SubscriptionStatus.CANCELED:
        return TierState.PRO_CANCELED_PENDING
    return TierState.PRO_ACTIVE


class Entitlement(BaseModel):
    """
    Entitlement represents what a user may do right now.

    - tier/subscription_status: reconciled from cloud profile + provider
    - invoices_this_period: usage since the last period reset
    - period_anchor: next boundary at which usage resets
    - next_billing_date: only present while tier is pro
    - stale: built from a fallback because a source was unreachable
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: Tier
    subscription_status: SubscriptionStatus
    invoices_this_period: int
    max_free_invoices: int
    period_anchor: datetime
    next_billing_date: Optional[datetime] = None
    migration_completed: bool = False
    stale: bool = False
    resolved_at: Optional[datetime] = None

    @property
    def is_pro(self) -> bool:
        return self.tier == Tier.PRO

    @property
    def state(self) -> TierState:
        return tier_state(self.tier, self.subscription_status)

    @property
    def invoices_remaining(self) -> Union[int, str]:
        if self.is_pro:
            return UNLIMITED
        return max(0, self.max_free_invoices - self.invoices_this_period)
