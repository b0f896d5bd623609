"""
Stripe payment provider implementation.

Implements PaymentProvider protocol using the Stripe API.
Subscription lookups are bounded by PAYMENT_PROVIDER_TIMEOUT_SECONDS so a slow
provider never blocks entitlement resolution.
"""
import os
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import stripe

from quickbill.core.config import settings
from quickbill.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    ProviderSubscription,
    ProviderUnavailableError,
    map_provider_status,
)
from quickbill.models.entitlement import SubscriptionStatus

logger = logging.getLogger("quickbill.billing")

# Shared across provider instances; lookups are short and independent.
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="stripe-lookup")


def _from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), timezone.utc)


def _period_end(data: Dict[str, Any]) -> Optional[datetime]:
    # Newer API versions moved current_period_end onto subscription items.
    ts = data.get("current_period_end")
    if not ts:
        items = (data.get("items") or {}).get("data") or []
        if items:
            ts = items[0].get("current_period_end")
    return _from_timestamp(ts)


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""
    
    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Initialize Stripe provider.
        
        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
            timeout_seconds: Upper bound for a subscription lookup
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
        self.timeout_seconds = timeout_seconds or settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS
        
        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")
        
        stripe.api_key = self.secret_key
        # Lookups are bounded by timeout_seconds; no SDK retries on top.
        stripe.max_network_retries = 0
    
    def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        """Fetch subscription status from Stripe within the configured timeout."""
        future = _executor.submit(stripe.Subscription.retrieve, subscription_id)
        try:
            data = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise ProviderUnavailableError(
                f"Stripe lookup for {subscription_id} timed out after {self.timeout_seconds}s"
            )
        except stripe.APIConnectionError as e:
            raise ProviderUnavailableError(f"Stripe unreachable: {e}")
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                # Deleted subscriptions are reported as canceled; stored end date applies.
                logger.warning("stripe.subscription_missing", extra={"subscription_id": subscription_id})
                return ProviderSubscription(
                    subscription_id=subscription_id,
                    status=SubscriptionStatus.CANCELED,
                    current_period_end=None,
                    raw_status="missing",
                )
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}")
        
        return self._parse_subscription(data)
    
    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")
        
        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")
        
        try:
            event = stripe.Webhook.construct_event(
                body, sig_header, self.webhook_secret
            )
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")
        
        return self._parse_event(event)
    
    def _parse_subscription(self, data: Dict[str, Any]) -> ProviderSubscription:
        raw_status = data.get("status")
        cancel_at_period_end = bool(data.get("cancel_at_period_end", False))
        return ProviderSubscription(
            subscription_id=data.get("id"),
            status=map_provider_status(raw_status, cancel_at_period_end),
            current_period_end=_period_end(data),
            cancel_at_period_end=cancel_at_period_end,
            raw_status=raw_status,
        )
    
    def _parse_event(self, event: Dict[str, Any]) -> BillingWebhookResult:
        """Parse Stripe event into normalized BillingWebhookResult."""
        event_type = event["type"]
        event_id = event["id"]
        data = event.get("data", {}).get("object", {})
        metadata = dict(data.get("metadata") or {})
        
        user_id = metadata.get("user_id")
        customer_id = data.get("customer")
        subscription_id = None
        status = None
        current_period_end = None
        cancel_at_period_end = False
        
        if event_type.startswith("customer.subscription."):
            sub = self._parse_subscription(data)
            subscription_id = sub.subscription_id
            status = sub.status
            current_period_end = sub.current_period_end
            cancel_at_period_end = sub.cancel_at_period_end
            if event_type == "customer.subscription.deleted":
                status = SubscriptionStatus.CANCELED
        
        elif event_type == "checkout.session.completed":
            subscription_id = data.get("subscription")
            user_id = user_id or data.get("client_reference_id")
            status = SubscriptionStatus.ACTIVE
        
        elif event_type == "invoice.payment_failed":
            subscription_id = data.get("subscription")
            status = SubscriptionStatus.PAST_DUE
        
        elif event_type == "invoice.paid":
            subscription_id = data.get("subscription")
            status = SubscriptionStatus.ACTIVE
            lines = (data.get("lines") or {}).get("data") or []
            if lines:
                current_period_end = _from_timestamp((lines[0].get("period") or {}).get("end"))
        
        return BillingWebhookResult(
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            customer_id=customer_id,
            subscription_id=subscription_id,
            status=status,
            current_period_end=current_period_end,
            cancel_at_period_end=cancel_at_period_end,
            metadata=metadata,
        )
