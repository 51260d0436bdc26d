from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from conftest import make_tenant
from models.credit_account import TenantCreditAccount
from models.credit_transaction import CreditTransaction
from models.tenant import Tenant
from services.credit_reports import reconcile_ledger
from services.credits import as_utc, consume_credits, get_credit_balance, utcnow
from services.free_grants import grant_free_credits, reset_usage_counters, run_free_grant_sweep, usage_period_start
from services.ledger_jobs import run_ledger_sweep


@pytest.mark.asyncio
async def test_grant_free_credits_to_tenant(db):
    tenant_id = await make_tenant(db, "starter")
    account = await db.get(TenantCreditAccount, tenant_id)
    account.warning_25_sent = True
    account.warning_10_sent = True
    account.warning_5_sent = True
    account.warning_0_sent = True
    account.credits_used_today = 12
    await db.commit()

    before = utcnow()
    result = await grant_free_credits(db, tenant_id, 500)

    assert result["success"] is True
    assert result["new_balance"] == 500
    account = await db.get(TenantCreditAccount, tenant_id)
    assert account.balance == 500
    assert account.free_credits_balance == 500
    assert not any(
        [account.warning_25_sent, account.warning_10_sent, account.warning_5_sent, account.warning_0_sent]
    )
    assert account.credits_used_today == 0
    next_grant = as_utc(account.next_free_grant_at)
    assert before + timedelta(days=29) < next_grant < utcnow() + timedelta(days=31)


@pytest.mark.asyncio
async def test_grant_free_credits_rejects_negative_amount(db):
    tenant_id = await make_tenant(db, "negative-grant")
    result = await grant_free_credits(db, tenant_id, -1)
    assert result["error"] == "invalid_amount"


@pytest.mark.asyncio
async def test_free_tier_tenant_gets_first_grant_on_creation(db):
    tenant_id = await make_tenant(db, "free-shop", is_free_tier=True)

    assert await get_credit_balance(db, tenant_id) == 500
    rows = await db.execute(
        select(CreditTransaction.transaction_type).where(CreditTransaction.tenant_id == tenant_id)
    )
    assert rows.scalars().all() == ["free_grant"]


@pytest.mark.asyncio
async def test_sweep_does_not_double_grant(db):
    tenant_id = await make_tenant(db, "swept", is_free_tier=True)

    again = await run_free_grant_sweep(db)
    assert again["granted_count"] == 0
    assert await get_credit_balance(db, tenant_id) == 500

    account = await db.get(TenantCreditAccount, tenant_id)
    account.next_free_grant_at = utcnow() - timedelta(minutes=1)
    await db.commit()

    due = await grant_free_credits(db)
    assert due["granted_count"] == 1
    assert due["tenant_ids"] == [tenant_id]
    assert await get_credit_balance(db, tenant_id) == 1000

    repeat = await run_free_grant_sweep(db)
    assert repeat["granted_count"] == 0
    assert (await reconcile_ledger(db, tenant_id))["consistent"] is True


@pytest.mark.asyncio
async def test_sweep_skips_paid_tenants_and_creates_missing_accounts(db):
    paid_id = await make_tenant(db, "paid-plan")
    orphan = Tenant(name="Orphan", slug="orphan", is_free_tier=True)
    db.add(orphan)
    await db.commit()

    result = await run_free_grant_sweep(db, amount=200)

    assert result["tenant_ids"] == [orphan.id]
    assert await get_credit_balance(db, orphan.id) == 200
    assert await get_credit_balance(db, paid_id) == 0


@pytest.mark.asyncio
async def test_daily_usage_reset_runs_once_per_period(db):
    tenant_id = await make_tenant(db, "daily", balance=10)
    await consume_credits(db, tenant_id, "report.render")
    account = await db.get(TenantCreditAccount, tenant_id)
    account.last_daily_reset = utcnow() - timedelta(days=1)
    await db.commit()

    first = await reset_usage_counters(db, "daily")
    second = await reset_usage_counters(db, "daily")

    assert first["reset_count"] >= 1
    assert second["reset_count"] == 0
    refreshed = (
        await db.execute(
            select(TenantCreditAccount.credits_used_today, TenantCreditAccount.credits_used_this_week).where(
                TenantCreditAccount.tenant_id == tenant_id
            )
        )
    ).one()
    assert refreshed[0] == 0
    assert refreshed[1] == 1

    assert (await reset_usage_counters(db, "hourly"))["error"] == "invalid_period"


@pytest.mark.asyncio
async def test_named_sweeps_run_through_registry(db):
    await make_tenant(db, "registry", is_free_tier=True)

    result = await run_ledger_sweep("monthly_usage", db)
    assert result["success"] is True
    assert result["period"] == "monthly"

    with pytest.raises(ValueError):
        await run_ledger_sweep("yearly_usage", db)


def test_usage_period_start_boundaries():
    now = datetime(2026, 10, 21, 15, 30, tzinfo=timezone.utc)

    assert usage_period_start("daily", now) == datetime(2026, 10, 21, tzinfo=timezone.utc)
    assert usage_period_start("weekly", now) == datetime(2026, 10, 18, tzinfo=timezone.utc)
    assert usage_period_start("monthly", now) == datetime(2026, 10, 1, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        usage_period_start("hourly", now)
