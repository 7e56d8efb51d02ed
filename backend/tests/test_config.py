"""Unit tests for settings normalization."""
from decimal import Decimal

from app.config import Settings


def test_plain_postgres_url_gets_async_driver():
    s = Settings(DATABASE_URL="postgresql://user:pw@db:5432/payments")
    assert s.DATABASE_URL == "postgresql+asyncpg://user:pw@db:5432/payments"


def test_sslmode_is_rewritten_for_asyncpg():
    s = Settings(DATABASE_URL="postgresql://user:pw@db:5432/payments?sslmode=require")
    assert s.DATABASE_URL.endswith("?ssl=require")


def test_async_urls_are_left_alone():
    url = "sqlite+aiosqlite:///:memory:"
    assert Settings(DATABASE_URL=url).DATABASE_URL == url


def test_money_settings_are_decimals():
    s = Settings(CREATOR_SHARE="0.70", MINIMUM_PAYOUT_AMOUNT="25")
    assert s.CREATOR_SHARE == Decimal("0.70")
    assert s.MINIMUM_PAYOUT_AMOUNT == Decimal("25")


def test_vodapay_simulation_is_off_unless_enabled(monkeypatch):
    monkeypatch.delenv("VODAPAY_TEST_MODE", raising=False)
    assert Settings(_env_file=None).VODAPAY_TEST_MODE is False

    monkeypatch.setenv("VODAPAY_TEST_MODE", "true")
    assert Settings(_env_file=None).VODAPAY_TEST_MODE is True
