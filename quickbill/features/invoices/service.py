"""
quickbill/features/invoices/service.py

Cloud invoice writes gated by the free-tier quota.
"""

from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import insert, select

from quickbill.core.config import settings
from quickbill.core.database import invoices
from quickbill.core.errors import QuotaExceededError
from quickbill.core.logging import log_event
from quickbill.features.entitlements import policy
from quickbill.features.local_cache.store import LocalStore
from quickbill.features.migration.service import migrate_if_needed
from quickbill.features.profiles.store import as_utc, cloud_session, get_or_create_profile
from quickbill.features.quota.service import record_creation
from quickbill.models.invoice import CloudInvoice, InvoiceData


def upgrade_url() -> str:
    return f"{settings.BACKEND_URL.rstrip('/')}/upgrade"


def _row_to_invoice(row) -> CloudInvoice:
    return CloudInvoice(
        id=row.id,
        user_id=row.user_id,
        invoice_number=row.invoice_number,
        status=row.status,
        source=row.source,
        created_at=as_utc(row.created_at),
        local_id=row.local_id,
    )


def create_invoice(
    user_id: str,
    invoice: InvoiceData,
    *,
    now: Optional[datetime] = None,
    cache: Optional[LocalStore] = None,
) -> CloudInvoice:
    """
    Count the creation against the user's quota, then store the invoice.

    The count is incremented before the row is written, so a failed write
    costs one unit of quota rather than letting concurrent creates overshoot
    the ceiling.

    Raises:
        QuotaExceededError: free ceiling reached for this period
    """
    ts = policy.normalize_now(now)
    if not get_or_create_profile(user_id, now=ts).migration_completed:
        # Prior device usage must be seeded before the ceiling is checked.
        migrate_if_needed(user_id, now=ts, cache=cache)

    result = record_creation(user_id, now=ts, cache=cache)
    if not result.allowed:
        raise QuotaExceededError(
            f"Free plan limit of {result.max_free_invoices} invoices reached for this period",
            used=result.invoices_this_period,
            limit=result.max_free_invoices,
            upgrade_url=upgrade_url(),
        )

    cloud_id = str(uuid4())
    with cloud_session() as session:
        session.execute(
            insert(invoices).values(
                id=cloud_id,
                user_id=user_id,
                local_id=invoice.id,
                invoice_number=invoice.invoice_number or None,
                status=invoice.status or "draft",
                source="app",
                payload=invoice.model_dump(mode="json", by_alias=True, exclude_none=True),
                created_at=ts,
                updated_at=ts,
            )
        )
        row = session.execute(select(invoices).where(invoices.c.id == cloud_id)).fetchone()

    log_event(
        "info",
        "invoice.created",
        user_id=user_id,
        event_type="invoice.created",
        extra={"invoice_id": cloud_id, "invoices_this_period": result.invoices_this_period},
    )
    return _row_to_invoice(row)


def list_invoices(user_id: str, limit: int = 50) -> List[CloudInvoice]:
    with cloud_session() as session:
        rows = session.execute(
            select(invoices)
            .where(invoices.c.user_id == user_id)
            .order_by(invoices.c.created_at.desc())
            .limit(limit)
        ).fetchall()
    return [_row_to_invoice(row) for row in rows]
