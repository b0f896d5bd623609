"""Tests for the cloud profile store and its conditional write."""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from quickbill.core.errors import NetworkUnavailableError
from quickbill.features.profiles import store
from quickbill.models.entitlement import SubscriptionStatus, Tier

NOW = datetime(2026, 10, 15, 9, 30, tzinfo=timezone.utc)


def test_default_profile_is_free_with_next_month_anchor():
    profile = store.get_or_create_profile("user_new", now=NOW)
    assert profile.tier == Tier.FREE
    assert profile.subscription_status == SubscriptionStatus.NONE
    assert profile.invoices_this_period == 0
    assert profile.max_free_invoices == 3
    assert profile.period_anchor == datetime(2026, 11, 1, tzinfo=timezone.utc)
    assert profile.migration_completed is False
    assert profile.version == 1


def test_create_default_profile_is_idempotent():
    first = store.create_default_profile("user_a", now=NOW)
    second = store.create_default_profile("user_a", now=NOW)
    assert first == second


def test_compare_and_swap_bumps_version():
    profile = store.get_or_create_profile("user_a", now=NOW)
    updated = store.compare_and_swap("user_a", profile.version, {"invoices_this_period": 1}, now=NOW)
    assert updated.invoices_this_period == 1
    assert updated.version == profile.version + 1


def test_compare_and_swap_rejects_stale_version():
    profile = store.get_or_create_profile("user_a", now=NOW)
    store.compare_and_swap("user_a", profile.version, {"invoices_this_period": 1}, now=NOW)

    assert store.compare_and_swap("user_a", profile.version, {"invoices_this_period": 5}, now=NOW) is None
    assert store.get_profile("user_a").invoices_this_period == 1


def test_compare_and_swap_stores_enum_values():
    profile = store.get_or_create_profile("user_a", now=NOW)
    updated = store.compare_and_swap(
        "user_a", profile.version, {"tier": Tier.PRO, "subscription_status": SubscriptionStatus.ACTIVE}, now=NOW
    )
    assert updated.tier == Tier.PRO
    assert updated.subscription_status == SubscriptionStatus.ACTIVE


def test_compare_and_swap_rejects_unknown_field():
    profile = store.get_or_create_profile("user_a", now=NOW)
    with pytest.raises(ValueError):
        store.compare_and_swap("user_a", profile.version, {"not_a_column": 1}, now=NOW)


def test_lookup_by_subscription_and_customer():
    profile = store.get_or_create_profile("user_a", now=NOW)
    store.compare_and_swap(
        "user_a", profile.version, {"stripe_subscription_id": "sub_1", "stripe_customer_id": "cus_1"}, now=NOW
    )
    assert store.get_profile_by_subscription("sub_1").user_id == "user_a"
    assert store.get_profile_by_customer("cus_1").user_id == "user_a"
    assert store.get_profile_by_subscription("sub_missing") is None


def test_list_due_rechecks_returns_only_due_past_due_profiles():
    due_at = datetime(2026, 10, 14, tzinfo=timezone.utc)
    for user_id, status, recheck in [
        ("user_due", SubscriptionStatus.PAST_DUE, due_at),
        ("user_later", SubscriptionStatus.PAST_DUE, datetime(2026, 10, 30, tzinfo=timezone.utc)),
        ("user_active", SubscriptionStatus.ACTIVE, None),
    ]:
        profile = store.get_or_create_profile(user_id, now=NOW)
        store.compare_and_swap(
            user_id,
            profile.version,
            {"tier": Tier.PRO, "subscription_status": status, "recheck_due_at": recheck},
            now=NOW,
        )

    due = store.list_due_rechecks(NOW)
    assert [p.user_id for p in due] == ["user_due"]


def test_operational_error_surfaces_as_network_unavailable():
    def broken_session():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    with patch("quickbill.features.profiles.store.get_db_session", side_effect=broken_session):
        with pytest.raises(NetworkUnavailableError):
            store.get_profile("user_a")
