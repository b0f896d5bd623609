"""
quickbill/features/quota/service.py

Quota enforcement.

can_create() is advisory: it drives UI gating from whatever entitlement the
caller holds. record_creation() is the enforcement boundary: a
read-check-write cycle against the cloud profile whose write only lands if
no other device changed the record since the read.
"""

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from quickbill.core.config import settings
from quickbill.core.errors import ConflictRetryExhaustedError
from quickbill.core.logging import log_event
from quickbill.features.entitlements import policy
from quickbill.features.local_cache.store import LocalStore, mirror_entitlement
from quickbill.features.profiles.store import compare_and_swap, get_or_create_profile
from quickbill.models.entitlement import Entitlement, Tier
from quickbill.models.quota import CreationResult


def can_create(entitlement: Entitlement) -> bool:
    if entitlement.tier == Tier.PRO:
        return True
    return entitlement.invoices_this_period < entitlement.max_free_invoices


def record_creation(
    user_id: str,
    *,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
    cache: Optional[LocalStore] = None,
) -> CreationResult:
    """
    Conditionally increment the user's invoice count.

    Time-based rules (period rollover, expired pro) are folded into the same
    conditional write, so the ceiling is checked against the current period.

    Returns:
        CreationResult with allowed=True and the new count, or allowed=False
        with error_code="quota_exceeded".

    Raises:
        ConflictRetryExhaustedError: every attempt lost to a concurrent writer
        NetworkUnavailableError: cloud store unreachable
    """
    ts = policy.normalize_now(now)
    attempts_allowed = max_attempts or settings.QUOTA_CAS_MAX_ATTEMPTS

    for attempt in range(1, attempts_allowed + 1):
        profile = get_or_create_profile(user_id, now=ts)
        changes = policy.reconcile(
            profile,
            now=ts,
            past_due_grace=timedelta(days=settings.PAST_DUE_GRACE_DAYS),
            recheck_lead=timedelta(hours=settings.PAST_DUE_RECHECK_LEAD_HOURS),
        )
        current = replace(profile, **changes)

        if current.tier != Tier.PRO and current.invoices_this_period >= current.max_free_invoices:
            log_event(
                "info",
                "quota.exceeded",
                user_id=user_id,
                event_type="quota.exceeded",
                error_code="quota_exceeded",
                extra={"used": current.invoices_this_period, "limit": current.max_free_invoices},
            )
            return CreationResult(
                allowed=False,
                user_id=user_id,
                tier=current.tier,
                invoices_this_period=current.invoices_this_period,
                max_free_invoices=current.max_free_invoices,
                attempts=attempt,
                error_code="quota_exceeded",
            )

        changes["invoices_this_period"] = current.invoices_this_period + 1
        updated = compare_and_swap(user_id, profile.version, changes, now=ts)
        if updated is None:
            log_event(
                "info",
                "quota.conflict",
                user_id=user_id,
                event_type="quota.conflict",
                extra={"attempt": attempt, "expected_version": profile.version},
            )
            continue

        mirror_entitlement(updated.to_entitlement(resolved_at=ts), cache)
        return CreationResult(
            allowed=True,
            user_id=user_id,
            tier=updated.tier,
            invoices_this_period=updated.invoices_this_period,
            max_free_invoices=updated.max_free_invoices,
            attempts=attempt,
        )

    log_event(
        "warning",
        "quota.conflict_retry_exhausted",
        user_id=user_id,
        event_type="quota.conflict",
        error_code="conflict_retry_exhausted",
        extra={"attempts": attempts_allowed},
    )
    raise ConflictRetryExhaustedError(
        f"Could not record invoice creation for {user_id} after {attempts_allowed} attempts"
    )
