"""
Invoice API routes.

- POST /api/invoices: save an invoice to the cloud (counts against the free quota)
- GET  /api/invoices: list the caller's cloud invoices, newest first
"""
from typing import List

from fastapi import APIRouter, Depends, Query

from quickbill.core.auth import get_current_user_id
from quickbill.features.invoices.service import create_invoice, list_invoices
from quickbill.models.invoice import CloudInvoice, InvoiceData


router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post("", response_model=CloudInvoice, status_code=201)
def post_invoice(invoice: InvoiceData, user_id: str = Depends(get_current_user_id)):
    """
    Errors:
        403: Free plan limit reached (body carries used/limit/upgrade_url)
        409: Concurrent updates kept conflicting; safe to retry
        503: Cloud store unreachable
    """
    return create_invoice(user_id, invoice)


@router.get("", response_model=List[CloudInvoice])
def get_invoices(
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
):
    return list_invoices(user_id, limit=limit)
