from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import make_tenant
from models.credit_grant import CreditGrant
from models.promo import PromoCode, PromoRedemption
from models.referral import ReferralCode, ReferralRedemption
from services.credit_reports import reconcile_ledger
from services.credits import get_credit_balance, utcnow
from services.promotions import (
    create_promo_code,
    get_or_create_referral_code,
    redeem_promo_code,
    redeem_referral_code,
)


@pytest.mark.asyncio
async def test_referral_redemption_credits_both_parties_once(db):
    referrer_id = await make_tenant(db, "referrer")
    referee_id = await make_tenant(db, "referee")

    issued = await get_or_create_referral_code(db, referrer_id, referrer_bonus=2500, referee_bonus=2500)
    assert issued["uses_count"] == 0
    assert (await get_or_create_referral_code(db, referrer_id))["code"] == issued["code"]

    result = await redeem_referral_code(db, referee_id, issued["code"].lower())
    assert result["success"] is True
    assert result["referrer_credits"] == 2500
    assert result["referee_credits"] == 2500
    assert result["uses_count"] == 1
    assert await get_credit_balance(db, referrer_id) == 2500
    assert await get_credit_balance(db, referee_id) == 2500

    again = await redeem_referral_code(db, referee_id, issued["code"])
    assert again["success"] is False
    assert again["error"] == "already_redeemed"
    assert await get_credit_balance(db, referrer_id) == 2500
    assert await get_credit_balance(db, referee_id) == 2500

    referral = (await db.execute(select(ReferralCode).where(ReferralCode.code == issued["code"]))).scalar_one()
    assert referral.uses_count == 1
    redemptions = await db.execute(select(func.count(ReferralRedemption.id)))
    assert redemptions.scalar_one() == 1
    grants = await db.execute(select(func.count(CreditGrant.id)).where(CreditGrant.grant_type == "referral"))
    assert grants.scalar_one() == 2

    for tenant_id in (referrer_id, referee_id):
        assert (await reconcile_ledger(db, tenant_id))["consistent"] is True


@pytest.mark.asyncio
async def test_referral_rejects_self_and_unknown_codes(db):
    owner_id = await make_tenant(db, "owner")
    issued = await get_or_create_referral_code(db, owner_id)

    assert (await redeem_referral_code(db, owner_id, issued["code"]))["error"] == "self_referral"
    assert (await redeem_referral_code(db, owner_id, "NOPE1234"))["error"] == "invalid_code"
    assert await get_credit_balance(db, owner_id) == 0


@pytest.mark.asyncio
async def test_referral_usage_cap(db):
    owner_id = await make_tenant(db, "capped-owner")
    first_id = await make_tenant(db, "first-friend")
    second_id = await make_tenant(db, "second-friend")
    issued = await get_or_create_referral_code(db, owner_id, referrer_bonus=100, referee_bonus=50)
    referral = (await db.execute(select(ReferralCode).where(ReferralCode.id == issued["id"]))).scalar_one()
    referral.max_uses = 1
    await db.commit()

    assert (await redeem_referral_code(db, first_id, issued["code"]))["success"] is True
    capped = await redeem_referral_code(db, second_id, issued["code"])
    assert capped["error"] == "max_uses_reached"
    assert await get_credit_balance(db, owner_id) == 100
    assert await get_credit_balance(db, second_id) == 0


@pytest.mark.asyncio
async def test_promo_redemption(db):
    tenant_id = await make_tenant(db, "promo-user")
    created = await create_promo_code(db, "launch50", 50, description="Launch week", max_uses=10)
    assert created["success"] is True
    assert created["code"] == "LAUNCH50"

    result = await redeem_promo_code(db, tenant_id, " launch50 ")
    assert result["success"] is True
    assert result["credits_granted"] == 50
    assert result["new_balance"] == 50
    assert result["uses_count"] == 1

    again = await redeem_promo_code(db, tenant_id, "LAUNCH50")
    assert again["error"] == "already_redeemed"
    assert await get_credit_balance(db, tenant_id) == 50

    redemptions = await db.execute(select(func.count(PromoRedemption.id)))
    assert redemptions.scalar_one() == 1
    grant = (await db.execute(select(CreditGrant).where(CreditGrant.tenant_id == tenant_id))).scalar_one()
    assert grant.grant_type == "promo_code"
    assert grant.promo_code == "LAUNCH50"


@pytest.mark.asyncio
async def test_promo_availability_checks(db):
    tenant_id = await make_tenant(db, "promo-checks")
    other_id = await make_tenant(db, "promo-other")
    now = utcnow()
    await create_promo_code(db, "OLD", 10, expires_at=now - timedelta(days=1))
    await create_promo_code(db, "SOON", 10, valid_from=now + timedelta(days=1))
    await create_promo_code(db, "ONCE", 10, max_uses=1)
    await create_promo_code(db, "PAUSED", 10)
    paused = (await db.execute(select(PromoCode).where(PromoCode.code == "PAUSED"))).scalar_one()
    paused.is_active = False
    await db.commit()

    assert (await redeem_promo_code(db, tenant_id, "OLD"))["error"] == "expired"
    assert (await redeem_promo_code(db, tenant_id, "SOON"))["error"] == "not_yet_valid"
    assert (await redeem_promo_code(db, tenant_id, "PAUSED"))["error"] == "invalid_code"
    assert (await redeem_promo_code(db, tenant_id, "MISSING"))["error"] == "invalid_code"
    assert (await redeem_promo_code(db, tenant_id, "ONCE"))["success"] is True
    assert (await redeem_promo_code(db, other_id, "ONCE"))["error"] == "max_uses_reached"
    assert await get_credit_balance(db, tenant_id) == 10
    assert await get_credit_balance(db, other_id) == 0


@pytest.mark.asyncio
async def test_create_promo_code_validation(db):
    assert (await create_promo_code(db, "DUP", 5))["success"] is True
    assert (await create_promo_code(db, "dup", 5))["error"] == "code_exists"
    assert (await create_promo_code(db, "FREE", 0))["error"] == "invalid_amount"
    assert (await create_promo_code(db, "  ", 5))["error"] == "invalid_code"
