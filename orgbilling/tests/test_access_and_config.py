import pytest

from orgbilling.app.billing import (
    AccessDeniedError,
    AccessStatus,
    BillingInterval,
    ConfigurationError,
    SubscriptionStatus,
    SubscriptionTier,
    can_access_tier,
    effective_tier,
    has_feature,
    load_billing_config,
    require_access,
)
from orgbilling.app.billing.catalog import DEFAULT_CATALOG

from conftest import PRICES


def test_grace_period_keeps_full_access(make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.PAST_DUE, access_status=AccessStatus.GRACE_PERIOD)

    require_access(subscription, write=True)
    assert effective_tier(subscription) == SubscriptionTier.STARTER


def test_read_only_allows_reads_but_not_writes(make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.CANCELED, access_status=AccessStatus.READ_ONLY)

    require_access(subscription)
    with pytest.raises(AccessDeniedError) as excinfo:
        require_access(subscription, write=True)

    assert excinfo.value.payload["access_status"] == "read_only"
    assert excinfo.value.to_http_exception().status_code == 403
    assert effective_tier(subscription) == SubscriptionTier.FREE


def test_locked_denies_everything(make_subscription):
    subscription = make_subscription(access_status=AccessStatus.LOCKED)

    with pytest.raises(AccessDeniedError):
        require_access(subscription)


def test_feature_lookup_follows_effective_tier(make_subscription):
    professional = make_subscription(tier=SubscriptionTier.PROFESSIONAL, seats_included=20, seats_total=20)
    locked = professional.model_copy(update={"access_status": AccessStatus.LOCKED})

    assert has_feature(professional, "features:sla")
    assert not has_feature(locked, "features:sla")
    assert has_feature(None, "features:basic")
    assert not has_feature(None, "features:analytics")


def test_tier_ranking():
    assert can_access_tier(SubscriptionTier.PROFESSIONAL, SubscriptionTier.STARTER)
    assert can_access_tier(SubscriptionTier.STARTER, SubscriptionTier.STARTER)
    assert not can_access_tier(SubscriptionTier.FREE, SubscriptionTier.STARTER)


def test_catalog_prices_additional_seats():
    assert DEFAULT_CATALOG.subscription_cost(SubscriptionTier.STARTER, BillingInterval.MONTHLY, 7) == 7000
    assert DEFAULT_CATALOG.subscription_cost(SubscriptionTier.STARTER, BillingInterval.ANNUAL, 7) == 70000
    assert DEFAULT_CATALOG.subscription_cost(SubscriptionTier.FREE, BillingInterval.MONTHLY, 1) == 0


def test_load_billing_config_defaults():
    config = load_billing_config({})

    assert config.grace_period_days == 28
    assert config.default_currency == "gbp"
    assert config.conflict_max_attempts == 3
    assert config.grace_sweep_enabled is True
    assert config.grace_sweep_hour_utc == 3
    assert config.stripe_secret_key is None


def test_load_billing_config_reads_environment():
    config = load_billing_config(
        {
            "STRIPE_SECRET_KEY": "sk_live_abc",
            "STRIPE_WEBHOOK_SECRET": "whsec_live",
            "STRIPE_PRICE_STARTER_MONTHLY": "price_sm",
            "STRIPE_PRICE_ADDITIONAL_SEAT": "price_seat",
            "BILLING_GRACE_PERIOD_DAYS": "14",
            "BILLING_SETTLE_SEAT_INVOICES": "no",
            "BILLING_GRACE_SWEEP_HOUR": "42",
            "APP_ENV": "production",
        }
    )

    assert config.prices.for_tier(SubscriptionTier.STARTER, BillingInterval.MONTHLY) == "price_sm"
    assert config.prices.seat_price() == "price_seat"
    assert config.grace_period_days == 14
    assert config.settle_seat_invoices is False
    assert config.grace_sweep_hour_utc == 23
    assert config.require_webhook_secret() == "whsec_live"
    assert config.is_test_mode is False


def test_production_rejects_test_keys():
    with pytest.raises(ConfigurationError):
        load_billing_config({"APP_ENV": "production", "STRIPE_SECRET_KEY": "sk_test_abc"})


def test_invalid_grace_period_is_rejected():
    with pytest.raises(ValueError):
        load_billing_config({"BILLING_GRACE_PERIOD_DAYS": "0"})


def test_price_lookup_in_both_directions():
    assert PRICES.tier_for("price_pro_annual") == SubscriptionTier.PROFESSIONAL
    assert PRICES.tier_for("price_seat") is None
    assert PRICES.tier_for(None) is None

    with pytest.raises(ConfigurationError) as excinfo:
        load_billing_config({}).prices.for_tier(SubscriptionTier.PROFESSIONAL, BillingInterval.ANNUAL)

    assert excinfo.value.payload["setting"] == "STRIPE_PRICE_PROFESSIONAL_ANNUAL"
