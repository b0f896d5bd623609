"""
quickbill/models/migration.py

Outcome of a local-to-cloud migration run.
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict


class MigrationStatus(str, Enum):
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"
    PARTIAL_FAILURE = "partial_failure"


class MigrationResult(BaseModel):
    """
    invoices_migrated / business_info_migrated count only items copied by this run.
    outstanding > 0 means the run is retried on the next call.
    """
    model_config = ConfigDict(frozen=True)

    status: MigrationStatus
    invoices_migrated: int = 0
    business_info_migrated: bool = False
    outstanding: int = 0
    failed_runs: int = 0
    notice_required: bool = False
