"""Shared fixtures for CLI tests.

Commands read ``BILLING_*`` settings from the environment, so every test
points ``BILLING_DATABASE_URL`` at a SQLite file under ``tmp_path`` and
runs from that directory so no stray ``.env`` file is picked up.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import pytest
from billing_core.catalog import default_catalog
from billing_core.lifecycle import SubscriptionLifecycle
from billing_core.policy import BillingPolicy
from billing_core.state.database import create_session_factory, run_with_tenant_context
from billing_core.state.repository import SubscriptionRepository
from billing_core.state.sqlite_adapter import create_tables, get_local_engine
from typer.testing import CliRunner


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """SQLite database path wired into ``BILLING_DATABASE_URL``."""
    path = tmp_path / "billing.db"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BILLING_DATABASE_URL", f"sqlite+aiosqlite:///{path}")
    monkeypatch.delenv("BILLING_CATALOG_PATH", raising=False)
    monkeypatch.delenv("BILLING_PAYMENTS_DRIVER", raising=False)
    return path


@pytest.fixture()
def seed_db(db_path: Path) -> Callable[..., None]:
    """Return a helper inserting an active subscription into the test database."""

    def _seed(
        tenant_id: str,
        plan: str,
        users: int,
        *,
        start: datetime,
        payment_method: str | None = "pm_card_visa",
    ) -> None:
        async def _run() -> None:
            engine = get_local_engine(db_path)
            try:
                await create_tables(engine)
                lifecycle = SubscriptionLifecycle(default_catalog(), BillingPolicy())

                async def _do(session) -> None:  # type: ignore[no-untyped-def]
                    sub = lifecycle.start_subscription(tenant_id, plan, users, start)
                    if payment_method:
                        sub.gateway_customer_reference = f"fake_cus_{tenant_id}"
                        sub.gateway_default_payment_method_reference = payment_method
                    await SubscriptionRepository(session, tenant_id).add(sub)

                await run_with_tenant_context(create_session_factory(engine), tenant_id, _do)
            finally:
                await engine.dispose()

        asyncio.run(_run())

    return _seed
