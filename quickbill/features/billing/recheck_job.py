"""
Scheduled past-due recheck.

Past-due accounts keep pro only until the grace window after their billing
date. Before that window closes the provider must be asked again, so a
recovered payment is picked up and a failed one downgrades on time even if
the user never opens the app. Each run is recorded in billing_job_runs.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert

from quickbill.core.database import get_db_session, billing_job_runs
from quickbill.core.errors import ConflictRetryExhaustedError, NetworkUnavailableError
from quickbill.core.logging import log_event
from quickbill.features.billing.provider import PaymentProvider
from quickbill.features.billing.service import get_provider
from quickbill.features.entitlements import policy
from quickbill.features.entitlements.service import resolve
from quickbill.features.local_cache.store import LocalStore
from quickbill.features.profiles.store import list_due_rechecks

JOB_NAME = "system.past_due_recheck"


def run_recheck_job(
    now: Optional[datetime] = None,
    limit: int = 100,
    provider: Optional[PaymentProvider] = None,
    cache: Optional[LocalStore] = None,
) -> Dict[str, Any]:
    ts = policy.normalize_now(now)
    provider = provider if provider is not None else get_provider()

    due = list_due_rechecks(ts, limit=limit)
    rechecked = 0
    downgraded = 0
    recovered = 0
    stale = 0
    failed = 0

    for profile in due:
        try:
            entitlement = resolve(
                profile.user_id,
                now=ts,
                provider=provider,
                cache=cache,
                run_migration=False,
            )
        except (NetworkUnavailableError, ConflictRetryExhaustedError) as e:
            failed += 1
            log_event("warning", "recheck.failed", user_id=profile.user_id,
                      error_code=e.code, extra={"error": str(e)})
            continue

        rechecked += 1
        if entitlement.stale:
            stale += 1
        elif not entitlement.is_pro:
            downgraded += 1
        elif entitlement.subscription_status != profile.subscription_status:
            recovered += 1

    stats = {
        "due": len(due),
        "rechecked": rechecked,
        "downgraded": downgraded,
        "recovered": recovered,
        "stale": stale,
        "failed": failed,
    }
    with get_db_session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=JOB_NAME,
                started_at=ts,
                finished_at=datetime.now(timezone.utc),
                status="success" if not failed else "partial",
                stats_json=stats,
            )
        )

    log_event("info", "recheck.completed", event_type=JOB_NAME, extra=stats)
    return {**stats, "timestamp": ts.isoformat()}
