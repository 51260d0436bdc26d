"""Automatic top-up decisions and bookkeeping.

The ledger never charges a card. ``check_auto_topup`` tells the caller
whether the payment collaborator should charge; ``record_auto_topup`` is
called only after that charge succeeded.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.auto_topup_config import AutoTopupConfig
from services.credits import (
    apply_balance_change,
    as_utc,
    find_transaction,
    get_credit_balance,
    get_tenant_or_404,
    utcnow,
)


logger = logging.getLogger(__name__)


def month_start(now: Optional[datetime] = None) -> datetime:
    current = (now or utcnow()).astimezone(timezone.utc)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def effective_topups_this_month(config: AutoTopupConfig, now: Optional[datetime] = None) -> int:
    """Counter value for the current month, treating a stale period as already reset."""
    period_start = as_utc(config.topups_period_start)
    if period_start is None or period_start < month_start(now):
        return 0
    return int(config.topups_this_month or 0)


def serialize_auto_topup_config(config: Optional[AutoTopupConfig], tenant_id: str) -> Dict[str, Any]:
    if config is None:
        return {
            "tenant_id": tenant_id,
            "enabled": False,
            "trigger_threshold": None,
            "topup_amount": None,
            "max_per_month": None,
            "topups_this_month": 0,
            "has_payment_method": False,
            "last_topup_at": None,
        }
    return {
        "tenant_id": tenant_id,
        "enabled": bool(config.enabled),
        "trigger_threshold": config.trigger_threshold,
        "topup_amount": config.topup_amount,
        "max_per_month": config.max_per_month,
        "topups_this_month": effective_topups_this_month(config),
        "has_payment_method": bool(config.payment_method_id),
        "last_topup_at": config.last_topup_at.isoformat() if config.last_topup_at else None,
    }


async def get_auto_topup_config(db: AsyncSession, tenant_id: str) -> Optional[AutoTopupConfig]:
    result = await db.execute(select(AutoTopupConfig).where(AutoTopupConfig.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def upsert_auto_topup_config(
    db: AsyncSession,
    tenant_id: str,
    *,
    enabled: Optional[bool] = None,
    trigger_threshold: Optional[int] = None,
    topup_amount: Optional[int] = None,
    max_per_month: Optional[int] = None,
    payment_method_id: Optional[str] = None,
) -> Dict[str, Any]:
    await get_tenant_or_404(db, tenant_id)
    if trigger_threshold is not None and int(trigger_threshold) < 0:
        raise HTTPException(status_code=422, detail="trigger_threshold must be >= 0")
    if topup_amount is not None and int(topup_amount) <= 0:
        raise HTTPException(status_code=422, detail="topup_amount must be greater than 0")
    if max_per_month is not None and int(max_per_month) < 0:
        raise HTTPException(status_code=422, detail="max_per_month must be >= 0")

    config = await get_auto_topup_config(db, tenant_id)
    if config is None:
        config = AutoTopupConfig(
            tenant_id=tenant_id,
            enabled=False,
            trigger_threshold=100,
            topup_amount=500,
            max_per_month=3,
            topups_this_month=0,
            topups_period_start=month_start(),
        )
        db.add(config)

    if enabled is not None:
        config.enabled = bool(enabled)
    if trigger_threshold is not None:
        config.trigger_threshold = int(trigger_threshold)
    if topup_amount is not None:
        config.topup_amount = int(topup_amount)
    if max_per_month is not None:
        config.max_per_month = int(max_per_month)
    if payment_method_id is not None:
        config.payment_method_id = payment_method_id.strip() or None

    await db.commit()
    logger.info("auto_topup_config tenant=%s enabled=%s", tenant_id, config.enabled)
    return serialize_auto_topup_config(config, tenant_id)


async def check_auto_topup(
    db: AsyncSession,
    tenant_id: str,
    current_balance: Optional[int] = None,
) -> Dict[str, Any]:
    """Decide whether a top-up should be charged. Never mutates state."""
    balance = await get_credit_balance(db, tenant_id) if current_balance is None else int(current_balance)
    config = await get_auto_topup_config(db, tenant_id)

    decision: Dict[str, Any] = {"should_topup": False, "current_balance": balance}
    if config is None or not config.enabled:
        decision["reason"] = "not_enabled"
        return decision
    if balance > int(config.trigger_threshold):
        decision["reason"] = "above_threshold"
        return decision
    used = effective_topups_this_month(config)
    if used >= int(config.max_per_month):
        decision["reason"] = "max_reached"
        decision["topups_this_month"] = used
        return decision
    if not config.payment_method_id:
        decision["reason"] = "no_payment_method"
        return decision

    decision.update(
        {
            "should_topup": True,
            "reason": "threshold_reached",
            "topup_amount": int(config.topup_amount),
            "payment_method_id": config.payment_method_id,
            "topups_this_month": used,
        }
    )
    return decision


async def record_auto_topup(
    db: AsyncSession,
    tenant_id: str,
    credits_amount: int,
    external_payment_id: str,
) -> Dict[str, Any]:
    """Grant credits for a completed top-up charge and bump the monthly counter atomically."""
    payment_id = str(external_payment_id or "").strip()
    if not payment_id:
        return {"success": False, "error": "invalid_reference", "message": "external_payment_id is required"}

    now = utcnow()
    try:
        result = await apply_balance_change(
            db,
            tenant_id,
            credits_amount,
            "purchase",
            description="Automatic credit top-up",
            reference_id=payment_id,
            reference_type="auto_topup",
        )
        if not result.get("success"):
            await db.commit()
            return result

        config = (
            await db.execute(
                select(AutoTopupConfig).where(AutoTopupConfig.tenant_id == tenant_id).with_for_update()
            )
        ).scalar_one_or_none()
        if config is not None and not result.get("duplicate"):
            if effective_topups_this_month(config, now) == 0:
                config.topups_this_month = 0
                config.topups_period_start = month_start(now)
            config.topups_this_month = int(config.topups_this_month or 0) + 1
            config.last_topup_at = now
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await find_transaction(db, tenant_id, payment_id, "purchase")
        if existing is None:
            raise
        result = {
            "success": True,
            "duplicate": True,
            "transaction_id": existing.id,
            "amount": int(existing.amount),
            "new_balance": int(existing.balance_after),
        }
        config = await get_auto_topup_config(db, tenant_id)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("auto_topup_record_failed tenant=%s payment=%s: %s", tenant_id, payment_id, exc)
        raise

    if not result.get("duplicate"):
        logger.info(
            "auto_topup_recorded tenant=%s credits=%s payment=%s balance=%s",
            tenant_id,
            credits_amount,
            payment_id,
            result.get("new_balance"),
        )
    result["topups_this_month"] = effective_topups_this_month(config, now) if config is not None else 0
    return result


async def reset_monthly_topup_counters(db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Zero counters whose period started before this month; safe to run repeatedly."""
    period_start = month_start(now)
    result = await db.execute(
        update(AutoTopupConfig)
        .where(
            or_(
                AutoTopupConfig.topups_period_start.is_(None),
                AutoTopupConfig.topups_period_start < period_start,
            )
        )
        .values(topups_this_month=0, topups_period_start=period_start)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    reset_count = int(result.rowcount or 0)
    logger.info("auto_topup_monthly_reset configs=%s", reset_count)
    return {"success": True, "reset_count": reset_count, "period_start": period_start.isoformat()}
