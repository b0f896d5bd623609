"""
Entitlement resolution.

resolve() is the single read path for "what may this user do right now":

1. Load (or lazily create) the cloud profile.
2. Corroborate a linked subscription with the payment provider.
3. Apply period rollover and expiry rules and persist them with a
   conditional write.
4. Run the one-time device migration if it has not completed.
5. Mirror the result to the on-device store.

When the cloud store is unreachable the last mirrored snapshot is returned
flagged stale. When only the provider is unreachable the stored tier is kept
(never downgraded) and the result is flagged stale.
"""

from datetime import datetime, timedelta
from typing import Optional, Tuple, Union

from quickbill.core.config import settings
from quickbill.core.errors import ConflictRetryExhaustedError, NetworkUnavailableError
from quickbill.core.logging import log_event
from quickbill.features.billing.provider import (
    BillingProviderError,
    PaymentProvider,
    ProviderSubscription,
    ProviderUnavailableError,
)
from quickbill.features.billing.service import get_provider
from quickbill.features.entitlements import policy
from quickbill.features.local_cache.store import LocalStore, get_local_store, mirror_entitlement
from quickbill.features.migration.service import migrate_if_needed
from quickbill.features.profiles.store import (
    ProfileRecord,
    compare_and_swap,
    get_or_create_profile,
    get_profile,
)
from quickbill.features.quota.service import can_create, record_creation
from quickbill.models.entitlement import Entitlement, tier_state
from quickbill.models.quota import CreationResult

__all__ = [
    "resolve",
    "get_entitlement",
    "is_pro_user",
    "invoices_remaining",
    "can_create_invoice",
    "record_invoice_created",
    "migrate_if_needed",
]


def _cached_fallback(user_id: str, store: LocalStore, error: NetworkUnavailableError) -> Entitlement:
    snapshot = store.get_snapshot(user_id)
    if snapshot is None:
        log_event("warning", "entitlement.unavailable", user_id=user_id,
                  error_code="network_unavailable", extra={"error": str(error)})
        raise error
    log_event("warning", "entitlement.served_from_cache", user_id=user_id,
              error_code="network_unavailable", extra={"error": str(error)})
    return snapshot.model_copy(update={"stale": True})


def _corroborate(
    profile: ProfileRecord,
    provider: Optional[PaymentProvider],
) -> Tuple[Optional[ProviderSubscription], bool]:
    """Ask the provider about a linked subscription. Returns (subscription, stale)."""
    if provider is None or not profile.stripe_subscription_id:
        return None, False
    try:
        return provider.get_subscription(profile.stripe_subscription_id), False
    except ProviderUnavailableError as e:
        log_event("warning", "entitlement.provider_unreachable", user_id=profile.user_id,
                  error_code="network_unavailable", extra={"error": str(e)})
        return None, True
    except BillingProviderError as e:
        log_event("error", "entitlement.provider_error", user_id=profile.user_id,
                  error_code="billing_provider_error", extra={"error": str(e)})
        return None, True


def _persist_reconciliation(
    profile: ProfileRecord,
    subscription: Optional[ProviderSubscription],
    now: datetime,
    allow_downgrade: bool,
) -> ProfileRecord:
    for _ in range(settings.QUOTA_CAS_MAX_ATTEMPTS):
        changes = policy.reconcile(
            profile,
            subscription,
            now=now,
            past_due_grace=timedelta(days=settings.PAST_DUE_GRACE_DAYS),
            recheck_lead=timedelta(hours=settings.PAST_DUE_RECHECK_LEAD_HOURS),
            allow_downgrade=allow_downgrade,
        )
        if not changes:
            return profile

        updated = compare_and_swap(profile.user_id, profile.version, changes, now=now)
        if updated is not None:
            before = tier_state(profile.tier, profile.subscription_status)
            after = tier_state(updated.tier, updated.subscription_status)
            if before != after:
                log_event("info", "entitlement.transition", user_id=profile.user_id,
                          event_type="entitlement.transition",
                          extra={"from_state": before.value, "to_state": after.value})
            if "period_anchor" in changes:
                log_event("info", "entitlement.period_reset", user_id=profile.user_id,
                          event_type="entitlement.period_reset",
                          extra={"period_anchor": updated.period_anchor.isoformat()})
            return updated
        profile = get_or_create_profile(profile.user_id, now=now)

    raise ConflictRetryExhaustedError(f"Could not reconcile entitlement for {profile.user_id}")


def resolve(
    user_id: str,
    *,
    now: Optional[datetime] = None,
    provider: Optional[PaymentProvider] = None,
    cache: Optional[LocalStore] = None,
    run_migration: bool = True,
) -> Entitlement:
    """
    Resolve the current entitlement for `user_id`.

    Raises:
        NetworkUnavailableError: cloud store unreachable and no local snapshot
        ConflictRetryExhaustedError: reconciliation kept losing to concurrent writers
    """
    ts = policy.normalize_now(now)
    store = cache or get_local_store()

    try:
        profile = get_or_create_profile(user_id, now=ts)
    except NetworkUnavailableError as e:
        return _cached_fallback(user_id, store, e)

    subscription, stale = _corroborate(profile, provider if provider is not None else get_provider())

    try:
        profile = _persist_reconciliation(profile, subscription, ts, allow_downgrade=not stale)
    except NetworkUnavailableError as e:
        return _cached_fallback(user_id, store, e)

    if run_migration and not profile.migration_completed:
        try:
            result = migrate_if_needed(user_id, now=ts, cache=store)
            log_event("info", "entitlement.migration_attempted", user_id=user_id,
                      extra={"status": result.status.value, "outstanding": result.outstanding})
            profile = get_profile(user_id) or profile
        except (NetworkUnavailableError, ConflictRetryExhaustedError) as e:
            log_event("warning", "entitlement.migration_deferred", user_id=user_id,
                      error_code=getattr(e, "code", None), extra={"error": str(e)})

    entitlement = profile.to_entitlement(stale=stale, resolved_at=ts)
    mirror_entitlement(entitlement, store)
    log_event("info", "entitlement.resolved", user_id=user_id, event_type="entitlement.resolved",
              extra={"state": entitlement.state.value, "used": entitlement.invoices_this_period,
                     "stale": entitlement.stale})
    return entitlement


def get_entitlement(user_id: str, **kwargs) -> Entitlement:
    return resolve(user_id, **kwargs)


def is_pro_user(user_id: str, **kwargs) -> bool:
    return resolve(user_id, **kwargs).is_pro


def invoices_remaining(user_id: str, **kwargs) -> Union[int, str]:
    """Remaining free invoices this period, or "unlimited" for pro."""
    return resolve(user_id, **kwargs).invoices_remaining


def can_create_invoice(user_id: str, **kwargs) -> bool:
    """Advisory check for UI gating; record_invoice_created() is the enforcement point."""
    return can_create(resolve(user_id, **kwargs))


def record_invoice_created(
    user_id: str,
    *,
    now: Optional[datetime] = None,
    cache: Optional[LocalStore] = None,
) -> CreationResult:
    return record_creation(user_id, now=now, cache=cache)
