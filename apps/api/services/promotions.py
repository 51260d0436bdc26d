"""Promo and referral code issuance and redemption."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_grant import CreditGrant
from models.promo import PromoCode, PromoRedemption
from models.referral import ReferralCode, ReferralRedemption
from services.credits import apply_balance_change, as_utc, get_tenant_or_404, lock_credit_account, utcnow


logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def normalize_code(code: Optional[str]) -> str:
    return str(code or "").strip().upper()


def _failure(error: str, message: str) -> Dict[str, Any]:
    return {"success": False, "error": error, "message": message}


def _generate_code(length: int) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(max(length, 4)))


def _code_unavailable(
    *,
    is_active: bool,
    expires_at: Optional[datetime],
    max_uses: Optional[int],
    uses_count: int,
    now: datetime,
    valid_from: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    if not is_active:
        return _failure("invalid_code", "Code is not active.")
    starts = as_utc(valid_from)
    if starts is not None and starts > now:
        return _failure("not_yet_valid", "Code is not valid yet.")
    expires = as_utc(expires_at)
    if expires is not None and expires <= now:
        return _failure("expired", "Code has expired.")
    if max_uses is not None and int(uses_count or 0) >= int(max_uses):
        return _failure("max_uses_reached", "Code has reached its usage limit.")
    return None


def serialize_promo_code(promo: PromoCode) -> Dict[str, Any]:
    return {
        "id": promo.id,
        "code": promo.code,
        "credits_amount": promo.credits_amount,
        "description": promo.description,
        "max_uses": promo.max_uses,
        "uses_count": promo.uses_count,
        "is_active": bool(promo.is_active),
        "valid_from": promo.valid_from.isoformat() if promo.valid_from else None,
        "expires_at": promo.expires_at.isoformat() if promo.expires_at else None,
    }


def serialize_referral_code(referral: ReferralCode) -> Dict[str, Any]:
    return {
        "id": referral.id,
        "code": referral.code,
        "tenant_id": referral.tenant_id,
        "referrer_bonus": referral.referrer_bonus,
        "referee_bonus": referral.referee_bonus,
        "max_uses": referral.max_uses,
        "uses_count": referral.uses_count,
        "is_active": bool(referral.is_active),
        "expires_at": referral.expires_at.isoformat() if referral.expires_at else None,
    }


async def create_promo_code(
    db: AsyncSession,
    code: str,
    credits_amount: int,
    *,
    description: Optional[str] = None,
    max_uses: Optional[int] = None,
    valid_from: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    normalized = normalize_code(code)
    if not normalized:
        return _failure("invalid_code", "code is required")
    if int(credits_amount) <= 0:
        return _failure("invalid_amount", "credits_amount must be greater than 0")
    if max_uses is not None and int(max_uses) <= 0:
        return _failure("invalid_max_uses", "max_uses must be greater than 0")

    promo = PromoCode(
        code=normalized,
        credits_amount=int(credits_amount),
        description=description,
        max_uses=max_uses,
        uses_count=0,
        is_active=True,
        valid_from=valid_from,
        expires_at=expires_at,
    )
    db.add(promo)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return _failure("code_exists", f"Promo code {normalized} already exists.")
    logger.info("promo_code_created code=%s credits=%s", normalized, promo.credits_amount)
    return {"success": True, **serialize_promo_code(promo)}


async def get_or_create_referral_code(
    db: AsyncSession,
    tenant_id: str,
    *,
    referrer_bonus: Optional[int] = None,
    referee_bonus: Optional[int] = None,
) -> Dict[str, Any]:
    """Return the tenant's active referral code, issuing one on first request."""
    await get_tenant_or_404(db, tenant_id)
    result = await db.execute(
        select(ReferralCode)
        .where(ReferralCode.tenant_id == tenant_id, ReferralCode.is_active.is_(True))
        .order_by(ReferralCode.created_at.desc())
    )
    existing = result.scalars().first()
    if existing is not None:
        return serialize_referral_code(existing)

    for _ in range(5):
        referral = ReferralCode(
            code=_generate_code(int(settings.REFERRAL_CODE_LENGTH)),
            tenant_id=tenant_id,
            referrer_bonus=int(
                settings.REFERRAL_REFERRER_BONUS if referrer_bonus is None else referrer_bonus
            ),
            referee_bonus=int(settings.REFERRAL_REFEREE_BONUS if referee_bonus is None else referee_bonus),
            uses_count=0,
            is_active=True,
        )
        db.add(referral)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            continue
        logger.info("referral_code_created tenant=%s code=%s", tenant_id, referral.code)
        return serialize_referral_code(referral)

    raise RuntimeError("Could not allocate a unique referral code.")


async def _apply_promo_redemption(db: AsyncSession, tenant_id: str, code: str, now: datetime) -> Dict[str, Any]:
    promo = (
        await db.execute(select(PromoCode).where(PromoCode.code == code).with_for_update())
    ).scalar_one_or_none()
    if promo is None:
        return _failure("invalid_code", "Promo code not found.")
    unavailable = _code_unavailable(
        is_active=bool(promo.is_active),
        expires_at=promo.expires_at,
        max_uses=promo.max_uses,
        uses_count=promo.uses_count,
        now=now,
        valid_from=promo.valid_from,
    )
    if unavailable is not None:
        return unavailable

    already = await db.execute(
        select(PromoRedemption.id).where(
            PromoRedemption.promo_code_id == promo.id,
            PromoRedemption.tenant_id == tenant_id,
        )
    )
    if already.scalar_one_or_none() is not None:
        return _failure("already_redeemed", "Promo code already redeemed.")

    db.add(PromoRedemption(promo_code_id=promo.id, tenant_id=tenant_id, credits_granted=promo.credits_amount))
    await db.flush()

    grant = await apply_balance_change(
        db,
        tenant_id,
        promo.credits_amount,
        "promo",
        description=f"Promo code {promo.code}",
        reference_id=promo.id,
        reference_type="promo_code",
        metadata={"code": promo.code},
    )
    if not grant.get("success") or grant.get("duplicate"):
        return _failure("already_redeemed", "Promo code already redeemed.")

    db.add(
        CreditGrant(
            tenant_id=tenant_id,
            amount=promo.credits_amount,
            grant_type="promo_code",
            promo_code=promo.code,
        )
    )
    promo.uses_count = int(promo.uses_count or 0) + 1
    return {
        "success": True,
        "code": promo.code,
        "credits_granted": int(promo.credits_amount),
        "new_balance": grant.get("new_balance"),
        "transaction_id": grant.get("transaction_id"),
        "uses_count": promo.uses_count,
    }


async def redeem_promo_code(db: AsyncSession, tenant_id: str, code: str) -> Dict[str, Any]:
    """Grant a promo code's credits once per tenant.

    The redemption row is flushed before any credit is applied, so the
    unique (code, tenant) constraint rejects a concurrent duplicate before
    the balance moves; everything commits together or not at all.
    """
    normalized = normalize_code(code)
    await get_tenant_or_404(db, tenant_id)

    try:
        result = await _apply_promo_redemption(db, tenant_id, normalized, utcnow())
        if result["success"]:
            await db.commit()
        else:
            await db.rollback()
    except IntegrityError:
        await db.rollback()
        logger.warning("promo_redeem_conflict tenant=%s code=%s", tenant_id, normalized)
        return _failure("already_redeemed", "Promo code already redeemed.")
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("promo_redeem_failed tenant=%s code=%s: %s", tenant_id, normalized, exc)
        raise

    if result["success"]:
        logger.info("promo_redeemed tenant=%s code=%s credits=%s", tenant_id, normalized, result["credits_granted"])
    return result


async def _apply_referral_redemption(
    db: AsyncSession,
    referee_tenant_id: str,
    code: str,
    now: datetime,
) -> Dict[str, Any]:
    referral = (
        await db.execute(select(ReferralCode).where(ReferralCode.code == code).with_for_update())
    ).scalar_one_or_none()
    if referral is None:
        return _failure("invalid_code", "Referral code not found.")
    if referral.tenant_id == referee_tenant_id:
        return _failure("self_referral", "Cannot redeem your own referral code.")
    unavailable = _code_unavailable(
        is_active=bool(referral.is_active),
        expires_at=referral.expires_at,
        max_uses=referral.max_uses,
        uses_count=referral.uses_count,
        now=now,
    )
    if unavailable is not None:
        return unavailable

    already = await db.execute(
        select(ReferralRedemption.id).where(
            ReferralRedemption.referral_code_id == referral.id,
            ReferralRedemption.referee_tenant_id == referee_tenant_id,
        )
    )
    if already.scalar_one_or_none() is not None:
        return _failure("already_redeemed", "Referral code already redeemed.")

    referrer_tenant_id = referral.tenant_id
    redemption = ReferralRedemption(
        referral_code_id=referral.id,
        referrer_tenant_id=referrer_tenant_id,
        referee_tenant_id=referee_tenant_id,
        referrer_credits=int(referral.referrer_bonus or 0),
        referee_credits=int(referral.referee_bonus or 0),
    )
    db.add(redemption)
    await db.flush()

    for tenant_id in sorted({referrer_tenant_id, referee_tenant_id}):
        await lock_credit_account(db, tenant_id)

    balances: Dict[str, Optional[int]] = {referrer_tenant_id: None, referee_tenant_id: None}
    for tenant_id, bonus, role in (
        (referee_tenant_id, redemption.referee_credits, "referee"),
        (referrer_tenant_id, redemption.referrer_credits, "referrer"),
    ):
        if bonus <= 0:
            continue
        grant = await apply_balance_change(
            db,
            tenant_id,
            bonus,
            "bonus",
            description=f"Referral bonus ({role}) for code {code}",
            reference_id=redemption.id,
            reference_type="referral",
            metadata={"code": code, "role": role},
        )
        balances[tenant_id] = grant.get("new_balance")
        db.add(
            CreditGrant(
                tenant_id=tenant_id,
                amount=bonus,
                grant_type="referral",
                promo_code=code,
                metadata_json={"role": role, "redemption_id": redemption.id},
            )
        )

    referral.uses_count = int(referral.uses_count or 0) + 1
    return {
        "success": True,
        "code": code,
        "referrer_tenant_id": referrer_tenant_id,
        "referee_tenant_id": referee_tenant_id,
        "referrer_credits": redemption.referrer_credits,
        "referee_credits": redemption.referee_credits,
        "referrer_new_balance": balances[referrer_tenant_id],
        "referee_new_balance": balances[referee_tenant_id],
        "uses_count": referral.uses_count,
    }


async def redeem_referral_code(db: AsyncSession, referee_tenant_id: str, code: str) -> Dict[str, Any]:
    """Credit both referrer and referee once per (code, referee)."""
    normalized = normalize_code(code)
    await get_tenant_or_404(db, referee_tenant_id)

    try:
        result = await _apply_referral_redemption(db, referee_tenant_id, normalized, utcnow())
        if result["success"]:
            await db.commit()
        else:
            await db.rollback()
    except IntegrityError:
        await db.rollback()
        logger.warning("referral_redeem_conflict tenant=%s code=%s", referee_tenant_id, normalized)
        return _failure("already_redeemed", "Referral code already redeemed.")
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("referral_redeem_failed tenant=%s code=%s: %s", referee_tenant_id, normalized, exc)
        raise

    if result["success"]:
        logger.info(
            "referral_redeemed code=%s referrer=%s referee=%s",
            normalized,
            result["referrer_tenant_id"],
            referee_tenant_id,
        )
    return result
