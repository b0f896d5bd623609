"""
Pure reconciliation rules for entitlements.

Every function here is a function of (stored profile, provider answer, now);
nothing reads a clock or touches storage. Expiry and period rollover are
evaluated lazily on each resolve instead of by a scheduler, so they stay
correct no matter how long the app was closed.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from quickbill.models.entitlement import SubscriptionStatus, Tier


def normalize_now(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def period_start_for(now: datetime) -> datetime:
    """First instant of the calendar month containing `now` (UTC)."""
    now = normalize_now(now)
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def next_period_anchor(now: datetime) -> datetime:
    """First instant of the calendar month after `now` (UTC)."""
    start = period_start_for(now)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def rollover_changes(profile, now: datetime) -> Dict[str, Any]:
    """Reset usage once `now` has crossed the stored anchor."""
    if now < profile.period_anchor:
        return {}
    return {
        "invoices_this_period": 0,
        "period_anchor": next_period_anchor(now),
    }


def provider_changes(profile, subscription) -> Dict[str, Any]:
    """Fold the provider's answer into the stored record.

    active promotes to pro, past_due keeps the stored tier, canceled keeps pro
    until the retained end date (handled by expiry_changes).
    """
    changes: Dict[str, Any] = {}
    status = subscription.status
    period_end = subscription.current_period_end

    if status == SubscriptionStatus.ACTIVE:
        changes["tier"] = Tier.PRO
        changes["subscription_status"] = SubscriptionStatus.ACTIVE
        if period_end is not None:
            changes["next_billing_date"] = period_end
    elif status == SubscriptionStatus.PAST_DUE:
        changes["subscription_status"] = SubscriptionStatus.PAST_DUE
        if period_end is not None and profile.tier == Tier.PRO:
            changes["next_billing_date"] = period_end
    elif status == SubscriptionStatus.CANCELED:
        changes["subscription_status"] = SubscriptionStatus.CANCELED
        if period_end is not None and profile.tier == Tier.PRO:
            changes["next_billing_date"] = period_end

    return changes


def expiry_changes(tier: Tier, status: SubscriptionStatus, next_billing_date: Optional[datetime],
                   invoices_this_period: int, max_free_invoices: int, now: datetime,
                   past_due_grace: timedelta) -> Dict[str, Any]:
    """Downgrade pro accounts whose paid time has run out."""
    if tier != Tier.PRO:
        return {}

    expired = False
    if status == SubscriptionStatus.CANCELED:
        expired = next_billing_date is None or now >= next_billing_date
    elif status == SubscriptionStatus.PAST_DUE and next_billing_date is not None:
        expired = now >= next_billing_date + past_due_grace

    if not expired:
        return {}
    return {
        "tier": Tier.FREE,
        "next_billing_date": None,
        "recheck_due_at": None,
        # Usage carried over from pro is capped so free accounts never show more than the ceiling.
        "invoices_this_period": min(invoices_this_period, max_free_invoices),
    }


def recheck_due_at(tier: Tier, status: SubscriptionStatus, next_billing_date: Optional[datetime],
                   lead: timedelta) -> Optional[datetime]:
    """When a past-due account must be re-corroborated with the provider."""
    if tier != Tier.PRO or status != SubscriptionStatus.PAST_DUE or next_billing_date is None:
        return None
    return next_billing_date - lead


def reconcile(profile, subscription=None, *, now: datetime, past_due_grace: timedelta,
              recheck_lead: timedelta, allow_downgrade: bool = True) -> Dict[str, Any]:
    """Compute the field changes that bring `profile` up to date.

    Returns only fields whose value differs from the stored record.
    With allow_downgrade=False (provider unreachable) only a stored canceled
    status past its end date may lower the tier; that needs no provider answer.
    """
    merged: Dict[str, Any] = {}
    if subscription is not None:
        merged.update(provider_changes(profile, subscription))

    tier = merged.get("tier", profile.tier)
    status = merged.get("subscription_status", profile.subscription_status)
    next_billing = merged.get("next_billing_date", profile.next_billing_date)

    merged.update(rollover_changes(profile, now))
    count = merged.get("invoices_this_period", profile.invoices_this_period)

    if allow_downgrade or status == SubscriptionStatus.CANCELED:
        downgrade = expiry_changes(
            tier, status, next_billing, count, profile.max_free_invoices, now, past_due_grace
        )
        merged.update(downgrade)
        tier = merged.get("tier", tier)
        next_billing = merged.get("next_billing_date", next_billing)

    if allow_downgrade:
        merged["recheck_due_at"] = recheck_due_at(tier, status, next_billing, recheck_lead)

    return {
        key: value
        for key, value in merged.items()
        if getattr(profile, key) != value
    }
