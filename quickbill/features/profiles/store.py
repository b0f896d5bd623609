"""
quickbill/features/profiles/store.py

Cloud profile store: the authoritative per-user entitlement record.

Every mutation goes through compare_and_swap(), a single-row conditional
UPDATE on the `version` column. This is the only ordering guarantee the
entitlement subsystem relies on.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError, OperationalError

from quickbill.core.config import settings
from quickbill.core.database import get_db_session, user_profiles
from quickbill.core.errors import NetworkUnavailableError
from quickbill.features.entitlements.policy import next_period_anchor, normalize_now
from quickbill.models.entitlement import Entitlement, SubscriptionStatus, Tier


logger = logging.getLogger("quickbill.profiles")


@dataclass(frozen=True)
class ProfileRecord:
    user_id: str
    tier: Tier
    subscription_status: SubscriptionStatus
    invoices_this_period: int
    max_free_invoices: int
    period_anchor: datetime
    next_billing_date: Optional[datetime]
    stripe_customer_id: Optional[str]
    stripe_subscription_id: Optional[str]
    migration_completed: bool
    migration_failures: int
    recheck_due_at: Optional[datetime]
    version: int

    def to_entitlement(self, *, stale: bool = False, resolved_at: Optional[datetime] = None) -> Entitlement:
        return Entitlement(
            user_id=self.user_id,
            tier=self.tier,
            subscription_status=self.subscription_status,
            invoices_this_period=self.invoices_this_period,
            max_free_invoices=self.max_free_invoices,
            period_anchor=self.period_anchor,
            next_billing_date=self.next_billing_date if self.tier == Tier.PRO else None,
            migration_completed=self.migration_completed,
            stale=stale,
            resolved_at=resolved_at,
        )


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_record(row) -> ProfileRecord:
    return ProfileRecord(
        user_id=row.user_id,
        tier=Tier(row.tier),
        subscription_status=SubscriptionStatus(row.subscription_status),
        invoices_this_period=int(row.invoices_this_period),
        max_free_invoices=int(row.max_free_invoices),
        period_anchor=as_utc(row.period_anchor),
        next_billing_date=as_utc(row.next_billing_date),
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        migration_completed=bool(row.migration_completed),
        migration_failures=int(row.migration_failures or 0),
        recheck_due_at=as_utc(row.recheck_due_at),
        version=int(row.version),
    )


def _to_column_values(changes: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for key, value in changes.items():
        if not hasattr(user_profiles.c, key):
            raise ValueError(f"Unknown profile field: {key}")
        values[key] = value.value if isinstance(value, Enum) else value
    return values


@contextmanager
def cloud_session():
    """get_db_session() with connectivity failures surfaced as NetworkUnavailableError."""
    try:
        with get_db_session() as session:
            yield session
    except OperationalError as e:
        raise NetworkUnavailableError(f"Cloud profile store unavailable: {e.orig}") from e


def _select_one(session, *criteria) -> Optional[ProfileRecord]:
    row = session.execute(select(user_profiles).where(and_(*criteria))).fetchone()
    return _row_to_record(row) if row else None


def get_profile(user_id: str) -> Optional[ProfileRecord]:
    with cloud_session() as session:
        return _select_one(session, user_profiles.c.user_id == user_id)


def get_profile_by_subscription(stripe_subscription_id: str) -> Optional[ProfileRecord]:
    with cloud_session() as session:
        return _select_one(session, user_profiles.c.stripe_subscription_id == stripe_subscription_id)


def get_profile_by_customer(stripe_customer_id: str) -> Optional[ProfileRecord]:
    with cloud_session() as session:
        return _select_one(session, user_profiles.c.stripe_customer_id == stripe_customer_id)


def create_default_profile(
    user_id: str,
    now: Optional[datetime] = None,
    max_free_invoices: Optional[int] = None,
) -> ProfileRecord:
    """
    Create the initial Free record (idempotent).

    Two devices signing in at once both attempt the insert; the loser's
    IntegrityError is swallowed and the winner's row is returned.
    """
    ts = normalize_now(now)
    ceiling = max_free_invoices if max_free_invoices is not None else settings.MAX_FREE_INVOICES
    try:
        with cloud_session() as session:
            session.execute(
                insert(user_profiles).values(
                    user_id=user_id,
                    tier=Tier.FREE.value,
                    subscription_status=SubscriptionStatus.NONE.value,
                    invoices_this_period=0,
                    max_free_invoices=ceiling,
                    period_anchor=next_period_anchor(ts),
                    migration_completed=False,
                    migration_failures=0,
                    version=1,
                    created_at=ts,
                    updated_at=ts,
                )
            )
        logger.info("profile.created", extra={"user_id": user_id})
    except IntegrityError:
        logger.info("profile.create_raced", extra={"user_id": user_id})

    profile = get_profile(user_id)
    if profile is None:
        raise NetworkUnavailableError(f"Profile for {user_id} vanished after creation")
    return profile


def get_or_create_profile(user_id: str, now: Optional[datetime] = None) -> ProfileRecord:
    profile = get_profile(user_id)
    if profile is not None:
        return profile
    return create_default_profile(user_id, now=now)


def compare_and_swap(
    user_id: str,
    expected_version: int,
    changes: Dict[str, Any],
    now: Optional[datetime] = None,
) -> Optional[ProfileRecord]:
    """
    Apply `changes` only if the stored version still equals `expected_version`.

    Returns:
        The updated record, or None when a concurrent writer got there first.
    """
    values = _to_column_values(changes)
    values["version"] = expected_version + 1
    values["updated_at"] = normalize_now(now)

    with cloud_session() as session:
        result = session.execute(
            update(user_profiles)
            .where(user_profiles.c.user_id == user_id)
            .where(user_profiles.c.version == expected_version)
            .values(**values)
        )
        if result.rowcount != 1:
            return None
        return _select_one(session, user_profiles.c.user_id == user_id)


def list_due_rechecks(now: datetime, limit: int = 100) -> List[ProfileRecord]:
    """Past-due profiles whose provider state must be re-corroborated."""
    with cloud_session() as session:
        rows = session.execute(
            select(user_profiles)
            .where(user_profiles.c.subscription_status == SubscriptionStatus.PAST_DUE.value)
            .where(user_profiles.c.recheck_due_at.is_not(None))
            .where(user_profiles.c.recheck_due_at <= now)
            .order_by(user_profiles.c.recheck_due_at.asc())
            .limit(limit)
        ).fetchall()
    return [_row_to_record(row) for row in rows]
