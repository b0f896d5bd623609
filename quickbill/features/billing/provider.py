"""
Payment provider protocol.

Read-only view over the external subscription service plus webhook parsing.
This allows swapping providers without changing reconciliation logic.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime

from quickbill.core.errors import NetworkUnavailableError
from quickbill.models.entitlement import SubscriptionStatus


# Provider-native statuses collapsed onto the four states the resolver understands.
_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.CANCELED,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def map_provider_status(raw_status: Optional[str], cancel_at_period_end: bool = False) -> SubscriptionStatus:
    """Normalize a provider status string.

    A subscription scheduled to cancel at period end is treated as canceled;
    the retained period end becomes the effective downgrade date.
    """
    status = _STATUS_MAP.get((raw_status or "").lower(), SubscriptionStatus.NONE)
    if cancel_at_period_end and status == SubscriptionStatus.ACTIVE:
        return SubscriptionStatus.CANCELED
    return status


@dataclass(frozen=True)
class ProviderSubscription:
    """Current provider-side state of one subscription."""
    subscription_id: str
    status: SubscriptionStatus
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False
    raw_status: Optional[str] = None


@dataclass
class BillingWebhookResult:
    """Result of parsing a billing webhook."""
    event_id: str
    event_type: str
    user_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    status: Optional[SubscriptionStatus]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.
    
    Implementations must handle:
    - Subscription status lookup with a bounded timeout
    - Webhook signature verification and parsing
    """
    
    def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        """
        Fetch the current state of a subscription.
        
        Raises:
            ProviderUnavailableError: Network failure or timeout
            BillingProviderError: Provider rejected the request
        """
        ...
    
    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.
        
        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass


class ProviderUnavailableError(BillingProviderError, NetworkUnavailableError):
    """Provider unreachable or did not answer within the timeout."""
    pass
