"""Tests for quota-gated cloud invoice writes."""

from datetime import datetime, timezone

import pytest

from quickbill.core.errors import QuotaExceededError
from quickbill.features.billing.service import record_checkout_completed
from quickbill.features.invoices.service import create_invoice, list_invoices
from quickbill.features.profiles import store
from quickbill.models.invoice import InvoiceData

NOW = datetime(2026, 10, 15, tzinfo=timezone.utc)


def _invoice(number):
    return InvoiceData.model_validate({"invoiceNumber": number, "items": [{"description": "Design", "quantity": 1, "unitPrice": 250}], "total": 250})


def test_free_user_can_create_up_to_ceiling(local_store):
    for i in range(3):
        created = create_invoice("user_a", _invoice(f"INV-{i}"), now=NOW)
        assert created.source == "app"

    with pytest.raises(QuotaExceededError) as exc_info:
        create_invoice("user_a", _invoice("INV-4"), now=NOW)

    assert exc_info.value.used == 3
    assert exc_info.value.limit == 3
    assert exc_info.value.upgrade_url.endswith("/upgrade")
    assert len(list_invoices("user_a")) == 3
    assert store.get_profile("user_a").invoices_this_period == 3


def test_pro_user_is_not_limited(local_store):
    record_checkout_completed("user_a", "cus_1", "sub_1", now=NOW)
    for i in range(5):
        create_invoice("user_a", _invoice(f"INV-{i}"), now=NOW)
    assert len(list_invoices("user_a")) == 5


def test_list_invoices_is_scoped_to_owner(local_store):
    create_invoice("user_a", _invoice("A-1"), now=NOW)
    create_invoice("user_b", _invoice("B-1"), now=NOW)

    invoices = list_invoices("user_a")
    assert [inv.invoice_number for inv in invoices] == ["A-1"]
    assert invoices[0].user_id == "user_a"
