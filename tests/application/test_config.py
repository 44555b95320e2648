"""Tests for environment configuration and the management CLI."""

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine

from app import manage
from app.aggregate import OrderStatus
from app.config import Settings
from app.schema import products


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite://")
        for name in ("REDIS_URL", "PAID_STATUS", "RESTORE_ON_CANCEL_FROM", "RESTORE_STOCK_ON_DELETE"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.redis_url is None
        assert settings.paid_status == "succeeded"
        assert settings.restore_on_cancel_from == {OrderStatus.PROCESSING, OrderStatus.SHIPPED}
        assert settings.restore_stock_on_delete is False

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite://")
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
        monkeypatch.setenv("PAID_STATUS", "paid")
        monkeypatch.setenv("RESTORE_ON_CANCEL_FROM", "Processing")
        monkeypatch.setenv("RESTORE_STOCK_ON_DELETE", "yes")

        settings = Settings.from_env()

        assert settings.redis_url == "redis://localhost:6379/0"
        assert settings.paid_status == "paid"
        assert settings.restore_on_cancel_from == {OrderStatus.PROCESSING}
        assert settings.restore_stock_on_delete is True

    def test_unknown_status_in_policy(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite://")
        monkeypatch.setenv("RESTORE_ON_CANCEL_FROM", "Processing,Lost")
        with pytest.raises(ValueError):
            Settings.from_env()

    def test_database_url_required(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(KeyError):
            Settings.from_env()


class TestManage:
    def test_setup_and_add_product(self, monkeypatch, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
        monkeypatch.setenv("DATABASE_URL", url)

        manage.main(["setup-db"])
        manage.main(["add-product", "--id", "p1", "--name", "Widget", "--stock", "5"])

        async def _stock():
            engine = create_async_engine(url)
            async with engine.connect() as conn:
                value = await conn.scalar(select(products.c.stock).where(products.c.id == "p1"))
            await engine.dispose()
            return value

        assert asyncio.run(_stock()) == 5

    def test_negative_stock_rejected(self):
        with pytest.raises(SystemExit):
            manage.main(["add-product", "--id", "p1", "--name", "W", "--stock", "-1"])
