"""
quickbill/models/quota.py

Outcome of a conditional usage increment.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict

from quickbill.models.entitlement import Tier


class CreationResult(BaseModel):
    """
    Result of record_creation.

    allowed=False with error_code="quota_exceeded" is an expected business
    outcome (shown as an upgrade offer), not a failure.
    """
    model_config = ConfigDict(frozen=True)

    allowed: bool
    user_id: str
    tier: Tier
    invoices_this_period: int
    max_free_invoices: int
    attempts: int = 1
    error_code: Optional[str] = None

    @property
    def quota_exceeded(self) -> bool:
        return self.error_code == "quota_exceeded"
