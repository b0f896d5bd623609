"""
quickbill/models/invoice.py

Invoice shapes as persisted on the device (camelCase keys) and in the cloud.
Only the fields the entitlement subsystem reads are typed; the rest passes through.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class InvoiceItem(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    description: str = ""
    quantity: float = 0
    unit_price: float = Field(0, alias="unitPrice")


class BusinessInfo(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str = ""
    email: str = ""
    address: str = ""
    phone: str = ""
    logo: Optional[str] = None

    def is_empty(self) -> bool:
        return not any([self.name, self.email, self.address, self.phone, self.logo])


class InvoiceData(BaseModel):
    """An invoice as the invoice-creation flow hands it over."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    invoice_number: str = Field("", alias="invoiceNumber")
    invoice_date: Optional[str] = Field(None, alias="invoiceDate")
    due_date: Optional[str] = Field(None, alias="dueDate")
    items: List[InvoiceItem] = []
    total: float = 0
    created_at: Optional[str] = Field(None, alias="createdAt")
    status: Optional[str] = None


class CloudInvoice(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    invoice_number: Optional[str]
    status: str
    source: str
    created_at: datetime
    local_id: Optional[str] = None
