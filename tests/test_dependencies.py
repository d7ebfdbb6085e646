# tests/test_dependencies.py
"""
Tests for the composition root.
"""

import pytest

from portfolio_tracker import dependencies
from portfolio_tracker.config import settings


@pytest.fixture(autouse=True)
def fresh_singletons():
    dependencies.clear_service_caches()
    yield
    dependencies.clear_service_caches()


def test_singletons_are_shared():
    assert dependencies.get_price_resolver() is dependencies.get_price_resolver()
    assert dependencies.get_price_resolver().breaker is dependencies.get_exchange_breaker()


def test_clear_builds_new_instances():
    first = dependencies.get_quote_fetcher()

    dependencies.clear_service_caches()

    assert dependencies.get_quote_fetcher() is not first


def test_brokerage_disabled_without_credentials(monkeypatch):
    monkeypatch.setattr(settings, "brokerage_username", None)

    assert dependencies.get_token_authority() is None
    assert dependencies.get_brokerage_gateway() is None


def test_exchange_account_disabled_without_keys(monkeypatch):
    monkeypatch.setattr(settings, "exchange_api_key", None)

    assert dependencies.get_exchange_account() is None


def test_brokerage_wired_when_configured(monkeypatch):
    monkeypatch.setattr(settings, "brokerage_username", "user")
    monkeypatch.setattr(settings, "brokerage_password", "secret")
    monkeypatch.setattr(settings, "brokerage_preload_token", False)

    gateway = dependencies.get_brokerage_gateway()

    assert gateway is not None
    assert gateway._tokens is dependencies.get_token_authority()


def test_snapshot_store_uses_shared_engine():
    store = dependencies.get_snapshot_store()

    assert store._engine is dependencies.get_valuation_engine()
