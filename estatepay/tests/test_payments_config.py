from decimal import Decimal

import pytest

from estatepay.app.payments import StripePaymentGateway
from estatepay.app.payments.config import (
    DEFAULT_STRIPE_API_VERSION,
    load_auth_config,
    load_database_config,
    load_payments_config,
)
from estatepay.app.services.payments import SandboxPaymentGateway, build_gateway


def test_defaults_select_sandbox_gateway():
    config = load_payments_config({})

    assert config.gateway_name == "sandbox"
    assert config.webhook_secret == "whsec_sandbox"
    assert config.stripe_api_version == DEFAULT_STRIPE_API_VERSION
    assert config.gateway_timeout_seconds == 10.0
    assert config.default_currency == "usd"
    assert config.late_fee_policy.grace_days == 5
    assert config.late_fee_policy.rate == Decimal("0.05")
    assert isinstance(build_gateway(config), SandboxPaymentGateway)


def test_stripe_gateway_requires_credentials():
    with pytest.raises(ValueError):
        load_payments_config({"PAYMENTS_GATEWAY": "stripe"})
    with pytest.raises(ValueError):
        load_payments_config({"PAYMENTS_GATEWAY": "stripe", "STRIPE_SECRET_KEY": "sk_test_1"})


def test_stripe_configuration_builds_stripe_gateway():
    config = load_payments_config(
        {
            "PAYMENTS_GATEWAY": "Stripe",
            "STRIPE_SECRET_KEY": "sk_test_1",
            "STRIPE_WEBHOOK_SECRET": "whsec_live",
            "STRIPE_TIMEOUT_SECONDS": "4.5",
            "LATE_FEE_GRACE_DAYS": "3",
            "LATE_FEE_RATE": "0.1",
            "DEFAULT_CURRENCY": "EUR",
        }
    )

    assert config.gateway_name == "stripe"
    assert config.gateway_timeout_seconds == 4.5
    assert config.default_currency == "eur"
    assert config.late_fee_policy.grace_days == 3
    assert config.late_fee_policy.rate == Decimal("0.1")
    assert isinstance(build_gateway(config), StripePaymentGateway)


@pytest.mark.parametrize(
    "env",
    [
        {"PAYMENTS_GATEWAY": "paypal"},
        {"STRIPE_TIMEOUT_SECONDS": "0"},
        {"STRIPE_TIMEOUT_SECONDS": "soon"},
        {"LATE_FEE_RATE": "-0.05"},
        {"DEFAULT_CURRENCY": "dollars"},
    ],
)
def test_invalid_values_raise(env):
    with pytest.raises(ValueError):
        load_payments_config(env)


def test_auth_and_database_config():
    auth = load_auth_config({"JWT_SECRET_KEY": "s3cret"})
    database = load_database_config({"DB_PORT": "6543", "DB_CONNECT_TIMEOUT": "2.5"})

    assert auth.secret_key == "s3cret"
    assert auth.algorithm == "HS256"
    assert database.as_connect_kwargs()["port"] == 6543
    assert database.connect_timeout == 3


def test_negative_connect_timeout_is_rejected():
    with pytest.raises(ValueError):
        load_database_config({"DB_CONNECT_TIMEOUT": "-1"})
