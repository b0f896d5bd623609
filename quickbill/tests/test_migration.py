"""Tests for the one-time device-to-cloud migration."""

import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func, insert, select

from quickbill.core.database import business_profiles, get_db_session, invoices
from quickbill.core.errors import ConflictRetryExhaustedError, NetworkUnavailableError
from quickbill.features.migration import service as migration
from quickbill.features.profiles import store
from quickbill.models.migration import MigrationStatus

NOW = datetime(2026, 10, 15, tzinfo=timezone.utc)


def _local_invoices():
    return [
        {"id": "inv-1", "invoiceNumber": "INV-001", "createdAt": "2026-10-02T10:00:00.000Z", "total": 100},
        {"id": "inv-2", "invoiceNumber": "INV-002", "createdAt": "2026-10-09T10:00:00.000Z", "total": 80},
        {"id": "inv-3", "invoiceNumber": "INV-003", "createdAt": "2026-09-20T10:00:00.000Z", "total": 50},
        {"id": "inv-4", "invoiceNumber": "INV-004", "createdAt": "2026-08-11T10:00:00.000Z", "total": 20},
        {"id": "inv-5", "invoiceNumber": "INV-005", "createdAt": "2026-03-01T10:00:00.000Z", "total": 10},
    ]


def _cloud_invoice_count(user_id):
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(invoices).where(invoices.c.user_id == user_id)
        ).scalar()


@pytest.fixture
def device_data(local_store):
    local_store.set(local_store.INVOICES_KEY, _local_invoices())
    local_store.set(local_store.SETTINGS_KEY, {"lastBusinessInfo": {"name": "Acme Co", "email": "billing@acme.test"}})
    return local_store


def test_first_sign_in_migrates_and_seeds_current_period(device_data):
    result = migration.migrate_if_needed("user_a", now=NOW, cache=device_data)

    assert result.status == MigrationStatus.COMPLETED
    assert result.invoices_migrated == 5
    assert result.business_info_migrated is True
    assert _cloud_invoice_count("user_a") == 5

    profile = store.get_profile("user_a")
    assert profile.migration_completed is True
    assert profile.invoices_this_period == 2


def test_second_run_changes_nothing(device_data):
    migration.migrate_if_needed("user_a", now=NOW, cache=device_data)
    before = store.get_profile("user_a")

    result = migration.migrate_if_needed("user_a", now=NOW, cache=device_data)

    assert result.status == MigrationStatus.ALREADY_COMPLETED
    assert result.invoices_migrated == 0
    assert _cloud_invoice_count("user_a") == 5
    assert store.get_profile("user_a") == before


def test_failed_item_is_retried_on_next_call(device_data):
    real_copy = migration._copy_invoice

    def flaky_copy(user_id, key, invoice, now):
        if invoice["id"] == "inv-3":
            raise NetworkUnavailableError("write timed out")
        return real_copy(user_id, key, invoice, now)

    with patch("quickbill.features.migration.service._copy_invoice", side_effect=flaky_copy):
        first = migration.migrate_if_needed("user_a", now=NOW, cache=device_data)

    assert first.status == MigrationStatus.PARTIAL_FAILURE
    assert first.outstanding == 1
    assert first.invoices_migrated == 4
    assert store.get_profile("user_a").migration_completed is False

    second = migration.migrate_if_needed("user_a", now=NOW, cache=device_data)
    assert second.status == MigrationStatus.COMPLETED
    assert second.invoices_migrated == 1
    assert _cloud_invoice_count("user_a") == 5
    assert store.get_profile("user_a").invoices_this_period == 2


def test_crash_before_completion_flag_reruns_safely(device_data):
    with patch(
        "quickbill.features.migration.service._finalize",
        side_effect=ConflictRetryExhaustedError("lost"),
    ):
        with pytest.raises(ConflictRetryExhaustedError):
            migration.migrate_if_needed("user_a", now=NOW, cache=device_data)

    assert _cloud_invoice_count("user_a") == 5
    assert store.get_profile("user_a").migration_completed is False

    result = migration.migrate_if_needed("user_a", now=NOW, cache=device_data)
    assert result.status == MigrationStatus.COMPLETED
    assert result.invoices_migrated == 0
    assert _cloud_invoice_count("user_a") == 5
    assert store.get_profile("user_a").invoices_this_period == 2


def test_notice_after_repeated_failed_runs(device_data):
    with patch(
        "quickbill.features.migration.service._copy_invoice",
        side_effect=NetworkUnavailableError("offline"),
    ):
        results = [migration.migrate_if_needed("user_a", now=NOW, cache=device_data) for _ in range(3)]

    assert [r.failed_runs for r in results] == [1, 2, 3]
    assert [r.notice_required for r in results] == [False, False, True]


def test_seed_is_capped_for_free_users(local_store):
    local_store.set(
        local_store.INVOICES_KEY,
        [{"id": f"inv-{i}", "createdAt": "2026-10-0%dT08:00:00Z" % (i + 1)} for i in range(5)],
    )
    migration.migrate_if_needed("user_a", now=NOW, cache=local_store)
    assert store.get_profile("user_a").invoices_this_period == 3


def test_undated_invoices_count_against_current_period(local_store):
    local_store.set(local_store.INVOICES_KEY, [{"invoiceNumber": "DRAFT-1", "total": 5}])
    migration.migrate_if_needed("user_a", now=NOW, cache=local_store)
    assert store.get_profile("user_a").invoices_this_period == 1


def test_invoice_without_id_gets_stable_key():
    invoice = {"invoiceNumber": "X-1", "total": 3}
    assert migration.local_invoice_key(invoice) == migration.local_invoice_key(dict(invoice))
    assert migration.local_invoice_key(invoice).startswith("invoice:sha256:")
    assert migration.local_invoice_key({"id": "abc"}) == "invoice:abc"


def test_existing_cloud_business_info_wins(device_data):
    with get_db_session() as session:
        session.execute(insert(business_profiles).values(user_id="user_a", payload={"name": "Cloud Co"}, updated_at=NOW))

    result = migration.migrate_if_needed("user_a", now=NOW, cache=device_data)

    assert result.business_info_migrated is False
    with get_db_session() as session:
        row = session.execute(select(business_profiles).where(business_profiles.c.user_id == "user_a")).fetchone()
    assert row.payload == {"name": "Cloud Co"}


def test_device_data_migrates_into_one_account_only(device_data):
    migration.migrate_if_needed("user_a", now=NOW, cache=device_data)
    assert device_data.get_migration_owner() == "user_a"

    result = migration.migrate_if_needed("user_b", now=NOW, cache=device_data)

    assert result.status == MigrationStatus.COMPLETED
    assert result.invoices_migrated == 0
    assert _cloud_invoice_count("user_b") == 0
    assert store.get_profile("user_b").invoices_this_period == 0


def test_concurrent_sign_ins_migrate_each_item_once(device_data):
    barrier = threading.Barrier(3)
    results = []

    def sign_in():
        barrier.wait()
        results.append(migration.migrate_if_needed("user_a", now=NOW, cache=device_data))

    with patch("quickbill.features.migration.service.log_event") as mock_log:
        threads = [threading.Thread(target=sign_in) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    finalized = [c for c in mock_log.call_args_list if c.args[1] == "migration.completed"]
    assert len(finalized) == 1
    assert len(results) == 3
    assert all(
        r.status in (MigrationStatus.COMPLETED, MigrationStatus.ALREADY_COMPLETED) for r in results
    )
    assert sum(r.invoices_migrated for r in results) == 5
    assert sum(r.business_info_migrated for r in results) == 1
    assert _cloud_invoice_count("user_a") == 5

    profile = store.get_profile("user_a")
    assert profile.migration_completed is True
    assert profile.invoices_this_period == 2
