"""
Entitlement API routes.

- GET  /api/entitlements/me: resolved entitlement for the caller
- GET  /api/entitlements/me/can-create: advisory quota check for UI gating
- POST /api/entitlements/me/migrate: run (or resume) device data migration
"""
from datetime import datetime
from typing import Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from quickbill.core.auth import get_current_user_id
from quickbill.features.entitlements import service
from quickbill.models.entitlement import Entitlement
from quickbill.models.migration import MigrationResult


router = APIRouter(prefix="/entitlements", tags=["entitlements"])


class EntitlementResponse(BaseModel):
    user_id: str
    tier: str
    state: str
    subscription_status: str
    is_pro: bool
    invoices_this_period: int
    max_free_invoices: int
    invoices_remaining: Union[int, str]
    period_anchor: datetime
    next_billing_date: Optional[datetime] = None
    migration_completed: bool
    stale: bool


class CanCreateResponse(BaseModel):
    allowed: bool
    invoices_remaining: Union[int, str]
    stale: bool


def _to_response(entitlement: Entitlement) -> EntitlementResponse:
    return EntitlementResponse(
        user_id=entitlement.user_id,
        tier=entitlement.tier.value,
        state=entitlement.state.value,
        subscription_status=entitlement.subscription_status.value,
        is_pro=entitlement.is_pro,
        invoices_this_period=entitlement.invoices_this_period,
        max_free_invoices=entitlement.max_free_invoices,
        invoices_remaining=entitlement.invoices_remaining,
        period_anchor=entitlement.period_anchor,
        next_billing_date=entitlement.next_billing_date,
        migration_completed=entitlement.migration_completed,
        stale=entitlement.stale,
    )


@router.get("/me", response_model=EntitlementResponse)
def get_my_entitlement(user_id: str = Depends(get_current_user_id)):
    """
    Errors:
        503: Cloud store unreachable and no cached snapshot on this device
    """
    return _to_response(service.get_entitlement(user_id))


@router.get("/me/can-create", response_model=CanCreateResponse)
def get_can_create(user_id: str = Depends(get_current_user_id)):
    entitlement = service.get_entitlement(user_id)
    return CanCreateResponse(
        allowed=service.can_create(entitlement),
        invoices_remaining=entitlement.invoices_remaining,
        stale=entitlement.stale,
    )


@router.post("/me/migrate", response_model=MigrationResult)
def post_migrate(user_id: str = Depends(get_current_user_id)):
    return service.migrate_if_needed(user_id)
