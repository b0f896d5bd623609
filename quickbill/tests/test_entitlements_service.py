"""Tests for entitlement resolution."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from quickbill.core.errors import NetworkUnavailableError
from quickbill.features.billing.provider import ProviderSubscription, ProviderUnavailableError
from quickbill.features.billing.service import record_checkout_completed
from quickbill.features.entitlements import service
from quickbill.features.profiles import store
from quickbill.models.entitlement import SubscriptionStatus, Tier, TierState, UNLIMITED

NOW = datetime(2026, 10, 15, tzinfo=timezone.utc)


def _make_pro(user_id, status=SubscriptionStatus.ACTIVE, next_billing=None):
    profile = store.get_or_create_profile(user_id, now=NOW)
    return store.compare_and_swap(
        user_id,
        profile.version,
        {
            "tier": Tier.PRO,
            "subscription_status": status,
            "next_billing_date": next_billing or NOW + timedelta(days=20),
            "stripe_subscription_id": f"sub_{user_id}",
            "migration_completed": True,
        },
        now=NOW,
    )


def test_new_user_resolves_to_free(local_store):
    entitlement = service.get_entitlement("user_a", now=NOW)
    assert entitlement.tier == Tier.FREE
    assert entitlement.state == TierState.FREE
    assert entitlement.invoices_remaining == 3
    assert entitlement.migration_completed is True
    assert entitlement.stale is False


def test_resolve_runs_pending_migration(local_store):
    local_store.set(local_store.INVOICES_KEY, [{"id": "inv-1", "createdAt": "2026-10-03T00:00:00Z"}])
    entitlement = service.get_entitlement("user_a", now=NOW)
    assert entitlement.invoices_this_period == 1
    assert entitlement.migration_completed is True


def test_canceled_pro_stays_pro_until_end_then_free(local_store, mock_provider):
    end = datetime(2026, 10, 20, tzinfo=timezone.utc)
    _make_pro("user_a", status=SubscriptionStatus.ACTIVE, next_billing=end)
    mock_provider.get_subscription.return_value = ProviderSubscription(
        "sub_user_a", SubscriptionStatus.CANCELED, end
    )

    for moment in (NOW, end - timedelta(hours=1)):
        entitlement = service.get_entitlement("user_a", now=moment, provider=mock_provider)
        assert entitlement.tier == Tier.PRO
        assert entitlement.state == TierState.PRO_CANCELED_PENDING

    after = service.get_entitlement("user_a", now=end, provider=mock_provider)
    assert after.tier == Tier.FREE
    assert after.next_billing_date is None


def test_period_resets_once_after_crossing_anchor(local_store):
    profile = store.get_or_create_profile("user_a", now=NOW)
    store.compare_and_swap("user_a", profile.version, {"invoices_this_period": 3, "migration_completed": True}, now=NOW)

    first = service.get_entitlement("user_a", now=datetime(2026, 11, 1, 0, 5, tzinfo=timezone.utc))
    assert first.invoices_this_period == 0
    assert first.period_anchor == datetime(2026, 12, 1, tzinfo=timezone.utc)

    service.record_invoice_created("user_a", now=datetime(2026, 11, 2, tzinfo=timezone.utc))
    later = service.get_entitlement("user_a", now=datetime(2026, 11, 20, tzinfo=timezone.utc))
    assert later.invoices_this_period == 1


def test_upgrade_makes_can_create_true_immediately(local_store):
    profile = store.get_or_create_profile("user_a", now=NOW)
    store.compare_and_swap("user_a", profile.version, {"invoices_this_period": 3, "migration_completed": True}, now=NOW)
    assert service.can_create_invoice("user_a", now=NOW) is False

    record_checkout_completed("user_a", "cus_1", "sub_1", current_period_end=NOW + timedelta(days=30), now=NOW)

    assert service.can_create_invoice("user_a", now=NOW) is True
    assert service.is_pro_user("user_a", now=NOW) is True
    assert service.invoices_remaining("user_a", now=NOW) == UNLIMITED


def test_provider_timeout_keeps_tier_and_marks_stale(local_store, mock_provider):
    end = datetime(2026, 10, 1, tzinfo=timezone.utc)
    _make_pro("user_a", status=SubscriptionStatus.PAST_DUE, next_billing=end)
    mock_provider.get_subscription.side_effect = ProviderUnavailableError("timed out")

    entitlement = service.get_entitlement("user_a", now=NOW, provider=mock_provider)

    assert entitlement.stale is True
    assert entitlement.tier == Tier.PRO
    assert store.get_profile("user_a").tier == Tier.PRO


def test_canceled_pro_expires_during_provider_outage(local_store, mock_provider):
    end = NOW
    profile = _make_pro("user_a", status=SubscriptionStatus.CANCELED, next_billing=end)
    store.compare_and_swap("user_a", profile.version, {"invoices_this_period": 5}, now=NOW)
    mock_provider.get_subscription.side_effect = ProviderUnavailableError("timed out")
    later = end + timedelta(days=3)

    entitlement = service.get_entitlement("user_a", now=later, provider=mock_provider)

    assert entitlement.tier == Tier.FREE
    assert entitlement.stale is True
    assert entitlement.invoices_this_period == 3
    assert service.can_create_invoice("user_a", now=later, provider=mock_provider) is False
    assert service.record_invoice_created("user_a", now=later).allowed is False
    assert store.get_profile("user_a").tier == Tier.FREE


def test_past_due_recovery_returns_to_active(local_store, mock_provider):
    end = NOW + timedelta(days=3)
    _make_pro("user_a", status=SubscriptionStatus.PAST_DUE, next_billing=end)
    mock_provider.get_subscription.return_value = ProviderSubscription(
        "sub_user_a", SubscriptionStatus.ACTIVE, end + timedelta(days=30)
    )

    entitlement = service.get_entitlement("user_a", now=NOW, provider=mock_provider)

    assert entitlement.state == TierState.PRO_ACTIVE
    assert store.get_profile("user_a").recheck_due_at is None


def test_cloud_unreachable_serves_cached_snapshot(local_store):
    service.get_entitlement("user_a", now=NOW)

    with patch(
        "quickbill.features.entitlements.service.get_or_create_profile",
        side_effect=NetworkUnavailableError("offline"),
    ):
        entitlement = service.get_entitlement("user_a", now=NOW)

    assert entitlement.stale is True
    assert entitlement.user_id == "user_a"


def test_cloud_unreachable_without_snapshot_raises(local_store):
    with patch(
        "quickbill.features.entitlements.service.get_or_create_profile",
        side_effect=NetworkUnavailableError("offline"),
    ):
        with pytest.raises(NetworkUnavailableError):
            service.get_entitlement("user_a", now=NOW)


def test_resolve_mirrors_pro_flag_locally(local_store):
    _make_pro("user_a")
    service.get_entitlement("user_a", now=NOW)
    user_data = local_store.get(local_store.USER_DATA_KEY)
    assert user_data["isPro"] is True
    assert user_data["maxInvoices"] is None
