import importlib

import pytest

from shopbook.app.core import constants


def _reload_constants(monkeypatch, **env) -> object:
    """Reload constants with a temporary env state."""
    for key, value in env.items():
        if value is None:
            monkeypatch.delenv(key, raising=False)
        else:
            monkeypatch.setenv(key, value)
    return importlib.reload(constants)


@pytest.fixture(autouse=True)
def _restore_constants():
    yield
    importlib.reload(constants)


def test_env_helpers_parse_numbers_and_bools(monkeypatch):
    module = _reload_constants(
        monkeypatch,
        SLOT_GRANULARITY_MINUTES="15",
        WEBHOOK_TIMEOUT_SECONDS="2.5",
        RUN_RECONCILER="no",
        DB_AUTO_CREATE="yes",
        DEFAULT_CURRENCY="usd",
    )
    assert module.DEFAULT_SLOT_GRANULARITY_MINUTES == 15
    assert module.WEBHOOK_TIMEOUT_SECONDS == 2.5
    assert module.RUN_RECONCILER_ENABLED is False
    assert module.DB_AUTO_CREATE_ENABLED is True
    assert module.DEFAULT_CURRENCY == "USD"


def test_env_helpers_fallbacks(monkeypatch):
    module = _reload_constants(
        monkeypatch,
        SLOT_GRANULARITY_MINUTES="oops",
        SLOT_REPAIR_MAX_ATTEMPTS="0",
        SLOT_REPAIR_BACKOFF_SECONDS="-1",
        BUSINESS_TIMEZONE=None,
    )
    assert module.DEFAULT_SLOT_GRANULARITY_MINUTES == 30
    assert module.SLOT_REPAIR_MAX_ATTEMPTS == 1
    assert module.SLOT_REPAIR_BACKOFF_SECONDS == 0.0
    assert module.DEFAULT_BUSINESS_TIMEZONE == "Europe/Berlin"

    module = _reload_constants(monkeypatch, RECONCILE_CHECK_SECONDS="oops")
    assert module.RECONCILE_CHECK_SECONDS == 300
    assert module.RECONCILE_CHECK_SECONDS_INVALID is True

    module = _reload_constants(monkeypatch, RECONCILE_CHECK_SECONDS="15")
    assert module.RECONCILE_CHECK_SECONDS == 15
    assert module.RECONCILE_CHECK_SECONDS_INVALID is False


def test_webhook_url_is_stripped(monkeypatch):
    module = _reload_constants(monkeypatch, NOTIFICATION_WEBHOOK_URL="  https://hooks.test/x  ")
    assert module.NOTIFICATION_WEBHOOK_URL == "https://hooks.test/x"


def test_currency_normalization(monkeypatch):
    module = _reload_constants(monkeypatch)
    assert module._normalize_currency("eur") == "EUR"
    assert module._normalize_currency(" usd ") == "USD"
    assert module._normalize_currency("too-long") is None
    assert module._normalize_currency("") is None

