"""
quickbill/features/migration/service.py

One-time transfer of pre-account device data into the cloud record.

Idempotent by construction: every copied item is recorded under a per-user
key in migration_records, written in the same transaction as the item
itself. A crash between copying and marking complete leads to a re-run that
skips the recorded keys. The migration_completed flag is only the terminal
marker and is set, together with the seeded usage count, by one
conditional write once nothing is outstanding.
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Optional, Set, Tuple
from uuid import uuid4

from sqlalchemy import select, insert, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from quickbill.core.config import settings
from quickbill.core.database import business_profiles, invoices, migration_records
from quickbill.core.errors import ConflictRetryExhaustedError, NetworkUnavailableError
from quickbill.core.logging import log_event
from quickbill.features.entitlements import policy
from quickbill.features.local_cache.store import LocalStore, get_local_store
from quickbill.features.profiles.store import (
    ProfileRecord,
    cloud_session,
    compare_and_swap,
    get_or_create_profile,
)
from quickbill.models.entitlement import Tier
from quickbill.models.invoice import BusinessInfo
from quickbill.models.migration import MigrationResult, MigrationStatus


BUSINESS_INFO_KEY = "business_info"


def local_invoice_key(invoice: Dict[str, Any]) -> str:
    """Stable identifier for a device invoice; content hash when it never got an id."""
    if invoice.get("id"):
        return f"invoice:{invoice['id']}"
    canonical = json.dumps(invoice, sort_keys=True, default=str)
    return "invoice:sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return policy.normalize_now(datetime.fromisoformat(text))
    except ValueError:
        return None


def invoice_created_at(invoice: Dict[str, Any], fallback: datetime) -> datetime:
    """When the invoice was created on the device.

    Undated invoices count as created now, so they are charged to the current
    period rather than escaping the quota.
    """
    return (
        _parse_timestamp(invoice.get("createdAt"))
        or _parse_timestamp(invoice.get("invoiceDate"))
        or fallback
    )


def get_copied_keys(user_id: str) -> Set[str]:
    with cloud_session() as session:
        rows = session.execute(
            select(migration_records.c.item_key).where(migration_records.c.user_id == user_id)
        ).fetchall()
    return {row.item_key for row in rows}


def _copy_invoice(user_id: str, key: str, invoice: Dict[str, Any], now: datetime) -> bool:
    """Copy one invoice; False when a concurrent run already recorded the key."""
    cloud_id = str(uuid4())
    try:
        with cloud_session() as session:
            session.execute(
                insert(migration_records).values(
                    user_id=user_id,
                    item_key=key,
                    cloud_ref=cloud_id,
                    copied_at=now,
                )
            )
            session.execute(
                insert(invoices).values(
                    id=cloud_id,
                    user_id=user_id,
                    local_id=invoice.get("id"),
                    invoice_number=invoice.get("invoiceNumber"),
                    status=invoice.get("status") or "draft",
                    source="migration",
                    payload=invoice,
                    created_at=invoice_created_at(invoice, now),
                    updated_at=now,
                )
            )
    except IntegrityError:
        return False
    return True


def _copy_business_info(user_id: str, info: Dict[str, Any], now: datetime) -> bool:
    """Copy device business info unless the cloud already has one (cloud wins)."""
    try:
        with cloud_session() as session:
            session.execute(
                insert(migration_records).values(
                    user_id=user_id,
                    item_key=BUSINESS_INFO_KEY,
                    cloud_ref=user_id,
                    copied_at=now,
                )
            )
            existing = session.execute(
                select(business_profiles.c.user_id).where(business_profiles.c.user_id == user_id)
            ).fetchone()
            if existing:
                return False
            session.execute(
                insert(business_profiles).values(user_id=user_id, payload=info, updated_at=now)
            )
    except IntegrityError:
        return False
    return True


def count_migrated_in_period(user_id: str, now: datetime) -> int:
    start = policy.period_start_for(now)
    end = policy.next_period_anchor(now)
    with cloud_session() as session:
        return session.execute(
            select(func.count())
            .select_from(invoices)
            .where(invoices.c.user_id == user_id)
            .where(invoices.c.source == "migration")
            .where(invoices.c.created_at >= start)
            .where(invoices.c.created_at < end)
        ).scalar() or 0


def _finalize(user_id: str, now: datetime) -> Tuple[ProfileRecord, bool]:
    """Set migration_completed and seed usage in one conditional write.

    Returns (profile, finalized_by_this_call).
    """
    migrated_in_period = count_migrated_in_period(user_id, now)
    for _ in range(settings.QUOTA_CAS_MAX_ATTEMPTS):
        profile = get_or_create_profile(user_id, now=now)
        if profile.migration_completed:
            return profile, False

        changes = policy.rollover_changes(profile, now)
        seeded = changes.get("invoices_this_period", profile.invoices_this_period) + migrated_in_period
        if profile.tier != Tier.PRO:
            seeded = min(seeded, profile.max_free_invoices)
        changes.update(
            migration_completed=True,
            invoices_this_period=seeded,
            migration_failures=0,
        )
        updated = compare_and_swap(user_id, profile.version, changes, now=now)
        if updated is not None:
            return updated, True

    raise ConflictRetryExhaustedError(f"Could not mark migration complete for {user_id}")


def _record_failed_run(user_id: str, now: datetime) -> int:
    """Count a run that left items outstanding; returns the running total."""
    for _ in range(settings.QUOTA_CAS_MAX_ATTEMPTS):
        profile = get_or_create_profile(user_id, now=now)
        if profile.migration_completed:
            return 0
        failures = profile.migration_failures + 1
        if compare_and_swap(user_id, profile.version, {"migration_failures": failures}, now=now):
            return failures
    return profile.migration_failures


def _mark_device_claimed(store: LocalStore, user_id: str) -> None:
    try:
        store.mark_migrated(user_id)
    except OSError as e:
        log_event("warning", "migration.device_flag_failed", user_id=user_id, extra={"error": str(e)})


def migrate_if_needed(
    user_id: str,
    *,
    now: Optional[datetime] = None,
    cache: Optional[LocalStore] = None,
) -> MigrationResult:
    """
    Copy pre-account invoices and business info into the user's cloud record.

    No-op once migration_completed is set. Items that fail to copy stay
    outstanding and are retried on the next call.

    Raises:
        NetworkUnavailableError: cloud store unreachable before any work started
        ConflictRetryExhaustedError: completion flag kept losing to concurrent writers
    """
    ts = policy.normalize_now(now)
    store = cache or get_local_store()

    profile = get_or_create_profile(user_id, now=ts)
    if profile.migration_completed:
        return MigrationResult(status=MigrationStatus.ALREADY_COMPLETED)

    owner = store.get_migration_owner()
    if owner and owner != user_id:
        # Device data already belongs to another account; nothing to bring over.
        local_invoices, business_info = [], None
    else:
        local_invoices = store.get_local_invoices()
        business_info = store.get_business_info()

    copied_keys = get_copied_keys(user_id)
    invoices_migrated = 0
    business_info_migrated = False
    outstanding = 0

    for invoice in local_invoices:
        key = local_invoice_key(invoice)
        if key in copied_keys:
            continue
        try:
            if _copy_invoice(user_id, key, invoice, ts):
                invoices_migrated += 1
            copied_keys.add(key)
        except (NetworkUnavailableError, SQLAlchemyError, TypeError, ValueError) as e:
            outstanding += 1
            log_event(
                "warning",
                "migration.item_failed",
                user_id=user_id,
                event_type="migration.item_failed",
                extra={"item_key": key, "error": str(e)},
            )

    if business_info and BUSINESS_INFO_KEY not in copied_keys:
        try:
            if not BusinessInfo.model_validate(business_info).is_empty():
                business_info_migrated = _copy_business_info(user_id, business_info, ts)
        except (NetworkUnavailableError, SQLAlchemyError, TypeError, ValueError) as e:
            outstanding += 1
            log_event(
                "warning",
                "migration.item_failed",
                user_id=user_id,
                event_type="migration.item_failed",
                extra={"item_key": BUSINESS_INFO_KEY, "error": str(e)},
            )

    if outstanding:
        try:
            failed_runs = _record_failed_run(user_id, ts)
        except NetworkUnavailableError:
            failed_runs = profile.migration_failures + 1
        notice = failed_runs >= settings.MIGRATION_NOTICE_THRESHOLD
        log_event(
            "warning" if notice else "info",
            "migration.partial_failure",
            user_id=user_id,
            event_type="migration.partial_failure",
            extra={"outstanding": outstanding, "failed_runs": failed_runs, "copied": invoices_migrated},
        )
        return MigrationResult(
            status=MigrationStatus.PARTIAL_FAILURE,
            invoices_migrated=invoices_migrated,
            business_info_migrated=business_info_migrated,
            outstanding=outstanding,
            failed_runs=failed_runs,
            notice_required=notice,
        )

    updated, finalized = _finalize(user_id, ts)
    if not owner:
        _mark_device_claimed(store, user_id)

    log_event(
        "info",
        "migration.completed" if finalized else "migration.completed_concurrently",
        user_id=user_id,
        event_type="migration.completed",
        extra={
            "invoices_migrated": invoices_migrated,
            "business_info_migrated": business_info_migrated,
            "invoices_this_period": updated.invoices_this_period,
        },
    )
    return MigrationResult(
        status=MigrationStatus.COMPLETED,
        invoices_migrated=invoices_migrated,
        business_info_migrated=business_info_migrated,
    )
