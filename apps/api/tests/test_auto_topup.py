from datetime import timedelta

import pytest
from fastapi import HTTPException

from conftest import make_tenant
from models.auto_topup_config import AutoTopupConfig
from services.auto_topup import (
    check_auto_topup,
    month_start,
    record_auto_topup,
    reset_monthly_topup_counters,
    upsert_auto_topup_config,
)
from services.credits import get_credit_balance, utcnow


@pytest.mark.asyncio
async def test_check_auto_topup_reasons(db):
    tenant_id = await make_tenant(db, "topup-reasons", balance=40)

    assert (await check_auto_topup(db, tenant_id))["reason"] == "not_enabled"

    await upsert_auto_topup_config(db, tenant_id, enabled=True, trigger_threshold=30, topup_amount=500)
    above = await check_auto_topup(db, tenant_id)
    assert above["should_topup"] is False
    assert above["reason"] == "above_threshold"
    assert above["current_balance"] == 40

    no_method = await check_auto_topup(db, tenant_id, current_balance=30)
    assert no_method["reason"] == "no_payment_method"

    await upsert_auto_topup_config(db, tenant_id, payment_method_id="pm_card_visa")
    decision = await check_auto_topup(db, tenant_id, current_balance=12)
    assert decision["should_topup"] is True
    assert decision["reason"] == "threshold_reached"
    assert decision["topup_amount"] == 500
    assert decision["payment_method_id"] == "pm_card_visa"

    await upsert_auto_topup_config(db, tenant_id, max_per_month=0)
    capped = await check_auto_topup(db, tenant_id, current_balance=12)
    assert capped["reason"] == "max_reached"

    # The decision never mutates the balance.
    assert await get_credit_balance(db, tenant_id) == 40


@pytest.mark.asyncio
async def test_record_auto_topup_counts_once_per_payment(db):
    tenant_id = await make_tenant(db, "topup-record", balance=5)
    await upsert_auto_topup_config(
        db,
        tenant_id,
        enabled=True,
        trigger_threshold=10,
        topup_amount=200,
        max_per_month=2,
        payment_method_id="pm_1",
    )

    first = await record_auto_topup(db, tenant_id, 200, "pi_topup_1")
    assert first["success"] is True
    assert first["new_balance"] == 205
    assert first["topups_this_month"] == 1

    replay = await record_auto_topup(db, tenant_id, 200, "pi_topup_1")
    assert replay["duplicate"] is True
    assert replay["topups_this_month"] == 1
    assert await get_credit_balance(db, tenant_id) == 205

    await record_auto_topup(db, tenant_id, 200, "pi_topup_2")
    capped = await check_auto_topup(db, tenant_id, current_balance=0)
    assert capped["reason"] == "max_reached"

    assert (await record_auto_topup(db, tenant_id, 200, ""))["error"] == "invalid_reference"


@pytest.mark.asyncio
async def test_monthly_counter_reset_is_idempotent(db):
    tenant_id = await make_tenant(db, "topup-reset")
    await upsert_auto_topup_config(db, tenant_id, enabled=True, max_per_month=1, payment_method_id="pm_2")
    config = await db.get(AutoTopupConfig, tenant_id)
    config.topups_this_month = 1
    config.topups_period_start = month_start() - timedelta(days=3)
    await db.commit()

    first = await reset_monthly_topup_counters(db)
    second = await reset_monthly_topup_counters(db)

    assert first["reset_count"] == 1
    assert second["reset_count"] == 0
    decision = await check_auto_topup(db, tenant_id, current_balance=0)
    assert decision["should_topup"] is True


@pytest.mark.asyncio
async def test_stale_month_counts_as_reset_before_sweep(db):
    tenant_id = await make_tenant(db, "topup-stale")
    await upsert_auto_topup_config(db, tenant_id, enabled=True, max_per_month=1, payment_method_id="pm_3")
    config = await db.get(AutoTopupConfig, tenant_id)
    config.topups_this_month = 1
    config.topups_period_start = utcnow() - timedelta(days=40)
    await db.commit()

    assert (await check_auto_topup(db, tenant_id, current_balance=0))["should_topup"] is True
    recorded = await record_auto_topup(db, tenant_id, 500, "pi_stale")
    assert recorded["topups_this_month"] == 1


@pytest.mark.asyncio
async def test_auto_topup_config_validation(db):
    tenant_id = await make_tenant(db, "topup-invalid")

    with pytest.raises(HTTPException) as exc:
        await upsert_auto_topup_config(db, tenant_id, topup_amount=0)
    assert exc.value.status_code == 422
