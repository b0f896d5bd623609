"""
Billing state consumption.

Consumes the results of the provider's checkout/portal flows and webhooks and
folds them into the cloud profile:
- checkout completion links the subscription and flips the user to pro
- subscription updates (past_due, recovered, canceled) go through the same
  reconciliation rules the resolver uses
- webhook events are deduplicated by provider event id

Initiating checkout or portal sessions is not handled here.
"""
import os
import hashlib
from typing import Any, Callable, Dict, Optional
from datetime import datetime, timedelta, timezone
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from quickbill.core.config import settings
from quickbill.core.database import get_db_session, billing_events
from quickbill.core.errors import ConflictRetryExhaustedError
from quickbill.core.logging import log_event
from quickbill.features.billing.provider import (
    PaymentProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    ProviderSubscription,
)
from quickbill.features.billing.stripe_provider import StripeProvider
from quickbill.features.entitlements import policy
from quickbill.features.profiles.store import (
    ProfileRecord,
    compare_and_swap,
    get_or_create_profile,
    get_profile,
    get_profile_by_customer,
    get_profile_by_subscription,
)
from quickbill.models.entitlement import SubscriptionStatus, tier_state


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY"))


def get_provider() -> Optional[PaymentProvider]:
    """Get payment provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def _update_profile(
    user_id: str,
    build_changes: Callable[[ProfileRecord], Dict[str, Any]],
    now: datetime,
    reason: str,
) -> ProfileRecord:
    """Read-modify-conditional-write loop shared by all billing mutations."""
    for _ in range(settings.QUOTA_CAS_MAX_ATTEMPTS):
        profile = get_or_create_profile(user_id, now=now)
        changes = build_changes(profile)
        if not changes:
            return profile
        updated = compare_and_swap(user_id, profile.version, changes, now=now)
        if updated is not None:
            before = tier_state(profile.tier, profile.subscription_status)
            after = tier_state(updated.tier, updated.subscription_status)
            log_event(
                "info",
                "billing.profile_updated",
                user_id=user_id,
                event_type=reason,
                extra={"from_state": before.value, "to_state": after.value},
            )
            return updated
    raise ConflictRetryExhaustedError(f"Could not apply {reason} for {user_id}")


def _reconciled(profile: ProfileRecord, subscription: ProviderSubscription, now: datetime) -> Dict[str, Any]:
    return policy.reconcile(
        profile,
        subscription,
        now=now,
        past_due_grace=timedelta(days=settings.PAST_DUE_GRACE_DAYS),
        recheck_lead=timedelta(hours=settings.PAST_DUE_RECHECK_LEAD_HOURS),
    )


def record_checkout_completed(
    user_id: str,
    stripe_customer_id: Optional[str],
    stripe_subscription_id: str,
    current_period_end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> ProfileRecord:
    """
    Free -> Pro-active on a confirmed checkout.

    Takes effect immediately; quota checks after this see tier=pro without
    waiting for a period reset.
    """
    ts = policy.normalize_now(now)
    subscription = ProviderSubscription(
        subscription_id=stripe_subscription_id,
        status=SubscriptionStatus.ACTIVE,
        current_period_end=current_period_end,
    )

    def build(profile: ProfileRecord) -> Dict[str, Any]:
        changes = _reconciled(profile, subscription, ts)
        if profile.stripe_subscription_id != stripe_subscription_id:
            changes["stripe_subscription_id"] = stripe_subscription_id
        if stripe_customer_id and profile.stripe_customer_id != stripe_customer_id:
            changes["stripe_customer_id"] = stripe_customer_id
        return changes

    return _update_profile(user_id, build, ts, "billing.checkout_completed")


def apply_subscription_update(
    user_id: str,
    status: SubscriptionStatus,
    current_period_end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> ProfileRecord:
    """Fold a provider-reported status change into the profile."""
    ts = policy.normalize_now(now)

    def build(profile: ProfileRecord) -> Dict[str, Any]:
        subscription = ProviderSubscription(
            subscription_id=profile.stripe_subscription_id or "",
            status=status,
            current_period_end=current_period_end,
        )
        return _reconciled(profile, subscription, ts)

    return _update_profile(user_id, build, ts, f"billing.subscription_{status.value}")


def record_cancellation(
    user_id: str,
    effective_end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> ProfileRecord:
    """
    Pro -> Pro-canceled-pending.

    The stored next billing date is kept as the effective end unless the
    provider supplied one; the downgrade itself happens lazily on resolve.
    """
    return apply_subscription_update(user_id, SubscriptionStatus.CANCELED, effective_end, now)


def _find_profile(result: BillingWebhookResult) -> Optional[ProfileRecord]:
    if result.subscription_id:
        profile = get_profile_by_subscription(result.subscription_id)
        if profile:
            return profile
    if result.user_id:
        profile = get_profile(result.user_id)
        if profile:
            return profile
    if result.customer_id:
        return get_profile_by_customer(result.customer_id)
    return None


def apply_webhook_result(result: BillingWebhookResult, now: Optional[datetime] = None) -> Optional[ProfileRecord]:
    """Route a parsed webhook to the matching profile mutation."""
    if result.event_type == "checkout.session.completed":
        if not (result.user_id and result.subscription_id):
            log_event("warning", "billing.checkout_unlinked", event_type=result.event_type,
                      extra={"event_id": result.event_id})
            return None
        return record_checkout_completed(
            result.user_id,
            result.customer_id,
            result.subscription_id,
            current_period_end=result.current_period_end,
            now=now,
        )

    if result.status is None:
        return None

    profile = _find_profile(result)
    if profile is None:
        log_event("warning", "billing.profile_not_found", event_type=result.event_type,
                  extra={"event_id": result.event_id, "subscription_id": result.subscription_id})
        return None
    return apply_subscription_update(profile.user_id, result.status, result.current_period_end, now=now)


def process_webhook_event(headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).
    
    1. Verify signature
    2. Check idempotency (skip if already processed)
    3. Apply state changes
    4. Mark as processed
    
    Raises:
        BillingWebhookError: If signature invalid or billing disabled
    """
    provider = get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled")
    
    result = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()
    
    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    stripe_event_id=result.event_id,
                    event_type=result.event_type,
                    payload_hash=payload_hash,
                    processed=False,
                    received_at=datetime.now(timezone.utc),
                )
            )
    except IntegrityError:
        with get_db_session() as session:
            existing = session.execute(
                select(billing_events.c.processed)
                .where(billing_events.c.stripe_event_id == result.event_id)
            ).fetchone()
        if existing is not None and existing.processed:
            log_event("info", "billing.webhook_duplicate", event_type=result.event_type,
                      extra={"event_id": result.event_id})
            return result
        # Recorded by an earlier delivery that failed to apply
        log_event("info", "billing.webhook_redelivery", event_type=result.event_type,
                  extra={"event_id": result.event_id})
    
    try:
        apply_webhook_result(result)
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(processed=True, processed_at=datetime.now(timezone.utc), error=None)
            )
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(error=str(e))
            )
        raise
    
    return result
