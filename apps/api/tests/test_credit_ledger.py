import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from config import settings
from conftest import make_tenant
from models.credit_account import TenantCreditAccount
from models.credit_analytics_event import CreditAnalyticsEvent
from models.credit_grant import CreditGrant
from models.credit_transaction import CreditTransaction
from services.credit_costs import upsert_credit_cost
from services.credit_reports import reconcile_ledger
from services.credits import (
    admin_adjust_credits,
    consume_credits,
    get_credit_balance,
    grant_bulk_credits,
    record_credit_purchase,
    refund_credits,
    transfer_credits,
    update_credit_balance,
)


@pytest_asyncio.fixture
async def priced(db):
    await upsert_credit_cost(db, "order.create", credits=5, action_name="Create order", category="orders")
    return db


async def _transaction_count(db, tenant_id: str) -> int:
    result = await db.execute(
        select(func.count(CreditTransaction.id)).where(CreditTransaction.tenant_id == tenant_id)
    )
    return int(result.scalar_one())


@pytest.mark.asyncio
async def test_consume_until_insufficient(priced):
    db = priced
    tenant_id = await make_tenant(db, "acme", balance=100)

    first = await consume_credits(db, tenant_id, "order.create")
    assert first["success"] is True
    assert first["credits_consumed"] == 5
    assert first["new_balance"] == 95

    for _ in range(19):
        result = await consume_credits(db, tenant_id, "order.create")
        assert result["success"] is True
    assert result["new_balance"] == 0

    rejected = await consume_credits(db, tenant_id, "order.create")
    assert rejected["success"] is False
    assert rejected["error"] == "insufficient_credits"
    assert rejected["required"] == 5
    assert rejected["available"] == 0
    assert rejected["shortfall"] == 5
    assert await get_credit_balance(db, tenant_id) == 0

    events = await db.execute(
        select(func.count(CreditAnalyticsEvent.id)).where(
            CreditAnalyticsEvent.tenant_id == tenant_id,
            CreditAnalyticsEvent.event_type == "insufficient_credits",
        )
    )
    assert events.scalar_one() == 1

    account = await db.get(TenantCreditAccount, tenant_id)
    assert account.credits_used_today == 100
    assert account.lifetime_spent == 100


@pytest.mark.asyncio
async def test_free_action_never_touches_ledger(priced):
    db = priced
    tenant_id = await make_tenant(db, "zero-balance")

    for action in ("login", "logout", "view", "profile.update"):
        result = await consume_credits(db, tenant_id, action)
        assert result["success"] is True
        assert result["free_action"] is True
        assert result["credits_consumed"] == 0
        assert result["new_balance"] == 0

    assert await _transaction_count(db, tenant_id) == 0


@pytest.mark.asyncio
async def test_unknown_action_costs_default(priced):
    db = priced
    tenant_id = await make_tenant(db, "defaults", balance=10)

    result = await consume_credits(db, tenant_id, "something.unpriced")
    assert result["success"] is True
    assert result["credits_consumed"] == settings.DEFAULT_ACTION_COST
    assert result["new_balance"] == 10 - settings.DEFAULT_ACTION_COST


@pytest.mark.asyncio
async def test_inactive_cost_falls_back_and_zero_cost_is_free(priced):
    db = priced
    tenant_id = await make_tenant(db, "pricing", balance=10)
    await upsert_credit_cost(db, "order.create", credits=5, is_active=False)
    await upsert_credit_cost(db, "catalog.browse", credits=0)

    fallback = await consume_credits(db, tenant_id, "order.create")
    assert fallback["credits_consumed"] == 1

    free = await consume_credits(db, tenant_id, "catalog.browse")
    assert free["free_action"] is True
    assert free["new_balance"] == 9


@pytest.mark.asyncio
async def test_update_credit_balance_is_idempotent(db):
    tenant_id = await make_tenant(db, "retry-co", balance=50)

    first = await update_credit_balance(db, tenant_id, 20, "usage", reference_id="order-77")
    second = await update_credit_balance(db, tenant_id, 20, "usage", reference_id="order-77")

    assert first["success"] is True
    assert first["duplicate"] is False
    assert first["balance_before"] == 50
    assert first["new_balance"] == 30
    assert second["success"] is True
    assert second["duplicate"] is True
    assert second["transaction_id"] == first["transaction_id"]
    assert second["new_balance"] == 30
    assert await get_credit_balance(db, tenant_id) == 30

    rows = await db.execute(
        select(func.count(CreditTransaction.id)).where(
            CreditTransaction.tenant_id == tenant_id,
            CreditTransaction.reference_id == "order-77",
        )
    )
    assert rows.scalar_one() == 1


@pytest.mark.asyncio
async def test_same_reference_different_type_is_not_a_duplicate(db):
    tenant_id = await make_tenant(db, "two-types", balance=50)

    debit = await update_credit_balance(db, tenant_id, 10, "usage", reference_id="job-1")
    refund = await refund_credits(db, tenant_id, 10, reference_id="job-1")

    assert debit["duplicate"] is False
    assert refund["duplicate"] is False
    assert refund["new_balance"] == 50


@pytest.mark.asyncio
async def test_update_credit_balance_rejects_bad_input(db):
    tenant_id = await make_tenant(db, "validation", balance=5)

    zero = await update_credit_balance(db, tenant_id, 0, "bonus")
    negative = await update_credit_balance(db, tenant_id, -5, "bonus")
    unknown = await update_credit_balance(db, tenant_id, 5, "gift")
    short = await update_credit_balance(db, tenant_id, 6, "transfer_out")

    assert zero["error"] == "invalid_amount"
    assert negative["error"] == "invalid_amount"
    assert unknown["error"] == "invalid_transaction_type"
    assert short["error"] == "insufficient_credits"
    assert short["current_balance"] == 5
    assert short["shortfall"] == 1
    assert await get_credit_balance(db, tenant_id) == 5


@pytest.mark.asyncio
async def test_concurrent_consumption_never_oversells(session_maker):
    async with session_maker() as db:
        await upsert_credit_cost(db, "order.create", credits=5)
        tenant_id = await make_tenant(db, "busy-shop", balance=23)

    async def _consume():
        async with session_maker() as session:
            return await consume_credits(session, tenant_id, "order.create")

    results = await asyncio.gather(*[_consume() for _ in range(10)])

    succeeded = [item for item in results if item["success"]]
    failed = [item for item in results if not item["success"]]
    assert len(succeeded) == 4
    assert len(failed) == 6
    assert all(item["error"] == "insufficient_credits" for item in failed)

    async with session_maker() as db:
        assert await get_credit_balance(db, tenant_id) == 3
        report = await reconcile_ledger(db, tenant_id)
        assert report["consistent"] is True


@pytest.mark.asyncio
async def test_ledger_replays_to_balance(priced):
    db = priced
    tenant_id = await make_tenant(db, "replay", balance=40)
    other_id = await make_tenant(db, "replay-peer", balance=10)

    await consume_credits(db, tenant_id, "order.create")
    await record_credit_purchase(db, tenant_id, 25, external_payment_id="pi_123")
    await refund_credits(db, tenant_id, 5, reference_id="order-1")
    await transfer_credits(db, tenant_id, other_id, 12)
    await admin_adjust_credits(db, tenant_id, -7, reason="correction")
    await update_credit_balance(db, tenant_id, 3, "expiration")

    for tid in (tenant_id, other_id):
        report = await reconcile_ledger(db, tid)
        assert report["consistent"] is True
        assert report["difference"] == 0

    assert await get_credit_balance(db, tenant_id) == 40 - 5 + 25 + 5 - 12 - 7 - 3
    assert await get_credit_balance(db, other_id) == 22


@pytest.mark.asyncio
async def test_debits_draw_free_credits_before_purchased(db):
    tenant_id = await make_tenant(db, "mixed-wallet")
    await update_credit_balance(db, tenant_id, 30, "free_grant")
    account = await db.get(TenantCreditAccount, tenant_id)
    account.free_credits_balance = 30
    await db.commit()
    await record_credit_purchase(db, tenant_id, 50, external_payment_id="pi_mixed")

    await update_credit_balance(db, tenant_id, 40, "usage")

    account = await db.get(TenantCreditAccount, tenant_id)
    assert account.balance == 40
    assert account.free_credits_balance == 0
    assert account.purchased_credits_balance == 40


@pytest.mark.asyncio
async def test_warning_flags_fire_once(db):
    await upsert_credit_cost(db, "bulk.export", credits=30)
    tenant_id = await make_tenant(db, "warnings", balance=120)

    first = await consume_credits(db, tenant_id, "bulk.export")
    second = await consume_credits(db, tenant_id, "bulk.export")
    third = await consume_credits(db, tenant_id, "bulk.export")
    fourth = await consume_credits(db, tenant_id, "bulk.export")

    assert first["new_balance"] == 90
    assert first["warnings"] == ["warning_25_sent"]
    assert second["warnings"] == []
    assert third["warnings"] == ["warning_10_sent"]
    assert fourth["new_balance"] == 0
    assert fourth["warnings"] == ["warning_5_sent", "warning_0_sent"]

    account = await db.get(TenantCreditAccount, tenant_id)
    assert account.warning_25_sent and account.warning_10_sent
    assert account.warning_5_sent and account.warning_0_sent


@pytest.mark.asyncio
async def test_tenant_rate_limit(db, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_ACTIONS_PER_MINUTE", 3)
    tenant_id = await make_tenant(db, "hammer", balance=100)

    for _ in range(3):
        assert (await consume_credits(db, tenant_id, "order.any"))["success"] is True

    limited = await consume_credits(db, tenant_id, "order.any")
    assert limited["success"] is False
    assert limited["error"] == "rate_limited"
    assert 1 <= limited["retry_after_seconds"] <= 60
    assert await get_credit_balance(db, tenant_id) == 97

    # Credits are not rate limited.
    bonus = await update_credit_balance(db, tenant_id, 5, "bonus")
    assert bonus["success"] is True


@pytest.mark.asyncio
async def test_transfer_writes_paired_entries(db):
    sender = await make_tenant(db, "sender", balance=30)
    receiver = await make_tenant(db, "receiver", balance=0)

    result = await transfer_credits(db, sender, receiver, 20, reference_id="xfer-1")
    assert result["success"] is True
    assert result["from_new_balance"] == 10
    assert result["to_new_balance"] == 20

    replay = await transfer_credits(db, sender, receiver, 20, reference_id="xfer-1")
    assert replay["duplicate"] is True
    assert await get_credit_balance(db, sender) == 10

    short = await transfer_credits(db, sender, receiver, 11)
    assert short["error"] == "insufficient_credits"
    assert await get_credit_balance(db, receiver) == 20

    rows = await db.execute(
        select(CreditTransaction.tenant_id, CreditTransaction.amount, CreditTransaction.transaction_type).where(
            CreditTransaction.reference_id == "xfer-1"
        )
    )
    assert sorted(rows.all(), key=lambda row: row[1]) == [
        (sender, -20, "transfer_out"),
        (receiver, 20, "transfer_in"),
    ]

    same = await transfer_credits(db, sender, sender, 1)
    assert same["error"] == "invalid_transfer"


@pytest.mark.asyncio
async def test_transfer_reference_reuse_never_creates_credits(db):
    payer = await make_tenant(db, "payer", balance=10)
    first_payee = await make_tenant(db, "first-payee")
    second_payee = await make_tenant(db, "second-payee")
    outsider = await make_tenant(db, "outsider", balance=10)

    first = await transfer_credits(db, payer, first_payee, 10, reference_id="shared-ref")
    assert first["success"] is True

    other_payee = await transfer_credits(db, payer, second_payee, 10, reference_id="shared-ref")
    assert other_payee["success"] is False
    assert other_payee["error"] == "reference_conflict"

    other_payer = await transfer_credits(db, outsider, first_payee, 10, reference_id="shared-ref")
    assert other_payer["error"] == "reference_conflict"

    other_amount = await transfer_credits(db, payer, first_payee, 5, reference_id="shared-ref")
    assert other_amount["error"] == "reference_conflict"

    replay = await transfer_credits(db, payer, first_payee, 10, reference_id="shared-ref")
    assert replay["success"] is True
    assert replay["duplicate"] is True
    assert replay["from_new_balance"] == 0
    assert replay["to_new_balance"] == 10

    balances = [await get_credit_balance(db, tenant_id) for tenant_id in (payer, first_payee, second_payee, outsider)]
    assert balances == [0, 10, 0, 10]
    assert sum(balances) == 20
    for tenant_id in (payer, first_payee, second_payee, outsider):
        assert (await reconcile_ledger(db, tenant_id))["consistent"] is True


@pytest.mark.asyncio
async def test_balance_check_constraint_rejects_negative_balance(db):
    tenant_id = await make_tenant(db, "constrained", balance=5)

    with pytest.raises(IntegrityError):
        await db.execute(
            update(TenantCreditAccount).where(TenantCreditAccount.tenant_id == tenant_id).values(balance=-1)
        )
    await db.rollback()

    assert await get_credit_balance(db, tenant_id) == 5
    assert (await reconcile_ledger(db, tenant_id))["consistent"] is True


@pytest.mark.asyncio
async def test_admin_adjust_floors_at_zero(db):
    tenant_id = await make_tenant(db, "adjusted", balance=30)

    result = await admin_adjust_credits(db, tenant_id, -50, reason="chargeback", admin_user_id="admin-1")
    assert result["requested_amount"] == -50
    assert result["applied_amount"] == -30
    assert result["balance_before"] == 30
    assert result["new_balance"] == 0

    entry = await db.get(CreditTransaction, result["transaction_id"])
    assert entry.amount == -30
    assert entry.transaction_type == "adjustment"
    assert entry.metadata_json["previous_balance"] == 30
    assert entry.metadata_json["admin_user_id"] == "admin-1"

    credit = await admin_adjust_credits(db, tenant_id, 15, reason="goodwill", admin_user_id="admin-1")
    assert credit["new_balance"] == 15
    grants = await db.execute(select(CreditGrant).where(CreditGrant.tenant_id == tenant_id))
    assert [grant.grant_type for grant in grants.scalars().all()] == ["admin_grant"]

    assert (await admin_adjust_credits(db, tenant_id, 0, reason="noop"))["error"] == "invalid_amount"


@pytest.mark.asyncio
async def test_bulk_grant(db):
    tenant_ids = [await make_tenant(db, f"bulk-{index}") for index in range(3)]

    result = await grant_bulk_credits(db, tenant_ids + [tenant_ids[0]], 40, "compensation", notes="outage")
    assert result["success"] is True
    assert result["granted_count"] == 3
    for tenant_id in tenant_ids:
        assert await get_credit_balance(db, tenant_id) == 40

    rejected = await grant_bulk_credits(db, tenant_ids, 40, "lottery")
    assert rejected["error"] == "invalid_grant_type"


@pytest.mark.asyncio
async def test_purchase_is_idempotent_per_payment(db):
    tenant_id = await make_tenant(db, "buyer")

    first = await record_credit_purchase(db, tenant_id, 250, external_payment_id="pi_abc")
    second = await record_credit_purchase(db, tenant_id, 250, external_payment_id="pi_abc")
    missing = await record_credit_purchase(db, tenant_id, 250, external_payment_id=" ")

    assert first["new_balance"] == 250
    assert second["duplicate"] is True
    assert missing["error"] == "invalid_reference"
    account = await db.get(TenantCreditAccount, tenant_id)
    assert account.purchased_credits_balance == 250
    assert account.lifetime_earned == 250
