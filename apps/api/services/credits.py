"""Credit ledger: atomic balance mutations over the per-tenant account row.

Every mutation follows the same shape inside one database transaction:
ensure the account row exists, take the row write lock, re-read the balance,
check idempotency and sufficiency, then update the balance and append exactly
one ``CreditTransaction``. Business failures (insufficient credits, rate
limiting, bad amounts) come back as result dicts; database faults roll back
and propagate.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import TenantCreditAccount
from models.credit_analytics_event import CreditAnalyticsEvent
from models.credit_grant import GRANT_TYPES, CreditGrant
from models.credit_transaction import DEBIT_TRANSACTION_TYPES, TRANSACTION_TYPES, CreditTransaction
from models.tenant import Tenant
from services.credit_costs import get_action_cost, is_free_action, normalize_action_key


logger = logging.getLogger(__name__)

RATE_LIMITED_TYPES = ("usage", "transfer_out")
WARNING_FLAGS = ("warning_25_sent", "warning_10_sent", "warning_5_sent", "warning_0_sent")
RATE_WINDOW = timedelta(minutes=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _failure(error: str, message: str, **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"success": False, "error": error, "message": message}
    payload.update(extra)
    return payload


def _insufficient_result(required: int, available: int) -> Dict[str, Any]:
    return _failure(
        "insufficient_credits",
        f"Insufficient credits. Required: {required}, available: {available}. Top up credits to continue.",
        required=required,
        available=available,
        current_balance=available,
        shortfall=max(required - available, 0),
    )


def _transaction_result(entry: CreditTransaction, *, duplicate: bool) -> Dict[str, Any]:
    return {
        "success": True,
        "duplicate": duplicate,
        "transaction_id": entry.id,
        "transaction_type": entry.transaction_type,
        "amount": abs(int(entry.amount)),
        "balance_before": int(entry.balance_after) - int(entry.amount),
        "new_balance": int(entry.balance_after),
        "warnings": [],
    }


def _parse_amount(amount: Any) -> Optional[int]:
    try:
        value = int(amount)
    except (TypeError, ValueError):
        return None
    if value <= 0:
        return None
    return value


async def get_tenant_or_404(db: AsyncSession, tenant_id: str) -> Tenant:
    tenant = await db.get(Tenant, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail="Tenant not found.")
    return tenant


def _dialect_insert(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    return None


async def ensure_credit_account(db: AsyncSession, tenant_id: str) -> None:
    """Create the tenant's account row if it does not exist yet (no commit)."""
    tenant = await get_tenant_or_404(db, tenant_id)
    values = {"tenant_id": tenant_id, "is_free_tier": bool(tenant.is_free_tier)}
    insert = _dialect_insert(db)
    if insert is None:
        existing = await db.get(TenantCreditAccount, tenant_id)
        if existing is None:
            db.add(TenantCreditAccount(**values))
            await db.flush()
        return
    await db.execute(
        insert(TenantCreditAccount).values(**values).on_conflict_do_nothing(index_elements=["tenant_id"])
    )


async def lock_credit_account(db: AsyncSession, tenant_id: str) -> TenantCreditAccount:
    """Take the row write lock on the tenant's account and return a fresh copy.

    The touch UPDATE acquires the lock on every backend (SQLite ignores
    FOR UPDATE but serializes writers); FOR UPDATE covers PostgreSQL readers.
    The caller owns the transaction and must commit or roll back.
    """
    await ensure_credit_account(db, tenant_id)
    await db.execute(
        update(TenantCreditAccount)
        .where(TenantCreditAccount.tenant_id == tenant_id)
        .values(updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        select(TenantCreditAccount)
        .where(TenantCreditAccount.tenant_id == tenant_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def find_transaction(
    db: AsyncSession,
    tenant_id: str,
    reference_id: str,
    transaction_type: str,
) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.tenant_id == tenant_id,
            CreditTransaction.reference_id == reference_id,
            CreditTransaction.transaction_type == transaction_type,
        )
    )
    return result.scalar_one_or_none()


async def record_credit_event(
    db: AsyncSession,
    tenant_id: str,
    event_type: str,
    *,
    credits_at_event: Optional[int] = None,
    action_attempted: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    db.add(
        CreditAnalyticsEvent(
            tenant_id=tenant_id,
            event_type=event_type,
            credits_at_event=credits_at_event,
            action_attempted=action_attempted,
            metadata_json=metadata or {},
        )
    )


def _take_rate_quota(account: TenantCreditAccount, now: datetime) -> Optional[Dict[str, Any]]:
    limit = max(int(settings.RATE_LIMIT_ACTIONS_PER_MINUTE), 1)
    window_start = as_utc(account.rate_window_started_at)
    if window_start is None or now - window_start >= RATE_WINDOW:
        window_start = now
        account.rate_window_started_at = now
        account.actions_this_minute = 0

    if int(account.actions_this_minute or 0) >= limit:
        retry_after = max(int((window_start + RATE_WINDOW - now).total_seconds()), 1)
        return _failure(
            "rate_limited",
            f"Too many credit operations. Limit is {limit} per minute.",
            retry_after_seconds=retry_after,
            current_balance=int(account.balance),
        )

    account.actions_this_minute = int(account.actions_this_minute or 0) + 1
    account.last_action_at = now
    return None


def _apply_warning_flags(account: TenantCreditAccount, new_balance: int) -> List[str]:
    triggered: List[str] = []
    for threshold, flag in zip(settings.WARNING_THRESHOLDS, WARNING_FLAGS):
        if new_balance <= int(threshold) and not getattr(account, flag):
            setattr(account, flag, True)
            triggered.append(flag)
    return triggered


async def write_ledger_entry(
    db: AsyncSession,
    account: TenantCreditAccount,
    delta: int,
    transaction_type: str,
    *,
    action_key: Optional[str] = None,
    description: Optional[str] = None,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> CreditTransaction:
    """Apply a signed delta to a locked account and append its ledger row."""
    current = now or utcnow()
    new_balance = int(account.balance) + int(delta)

    if delta < 0:
        debit = -int(delta)
        from_free = min(int(account.free_credits_balance), debit)
        account.free_credits_balance = int(account.free_credits_balance) - from_free
        account.purchased_credits_balance = max(int(account.purchased_credits_balance) - (debit - from_free), 0)
        account.lifetime_spent = int(account.lifetime_spent) + debit
        if transaction_type == "usage":
            account.credits_used_today = int(account.credits_used_today) + debit
            account.credits_used_this_week = int(account.credits_used_this_week) + debit
            account.credits_used_this_month = int(account.credits_used_this_month) + debit
    elif delta > 0:
        if transaction_type == "purchase":
            account.purchased_credits_balance = int(account.purchased_credits_balance) + int(delta)
        account.lifetime_earned = int(account.lifetime_earned) + int(delta)

    account.balance = new_balance
    account.updated_at = current

    entry = CreditTransaction(
        id=str(uuid.uuid4()),
        tenant_id=account.tenant_id,
        amount=int(delta),
        balance_after=new_balance,
        transaction_type=transaction_type,
        action_type=action_key,
        reference_id=reference_id,
        reference_type=reference_type,
        description=description,
        metadata_json=metadata or {},
        created_at=current,
    )
    db.add(entry)
    await db.flush()
    return entry


async def apply_balance_change(
    db: AsyncSession,
    tenant_id: str,
    amount: int,
    transaction_type: str,
    *,
    description: Optional[str] = None,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    action_key: Optional[str] = None,
    enforce_rate_limit: bool = True,
) -> Dict[str, Any]:
    """Lock, dedupe, validate and apply one balance change without committing."""
    if transaction_type not in TRANSACTION_TYPES:
        return _failure(
            "invalid_transaction_type",
            f"transaction_type must be one of: {', '.join(TRANSACTION_TYPES)}",
        )
    amount_value = _parse_amount(amount)
    if amount_value is None:
        return _failure("invalid_amount", "amount must be a positive integer")

    now = utcnow()
    account = await lock_credit_account(db, tenant_id)

    if reference_id:
        existing = await find_transaction(db, tenant_id, reference_id, transaction_type)
        if existing is not None:
            logger.warning(
                "credit_duplicate tenant=%s reference=%s type=%s", tenant_id, reference_id, transaction_type
            )
            return _transaction_result(existing, duplicate=True)

    is_debit = transaction_type in DEBIT_TRANSACTION_TYPES
    if is_debit and enforce_rate_limit and transaction_type in RATE_LIMITED_TYPES:
        limited = _take_rate_quota(account, now)
        if limited is not None:
            logger.warning("credit_rate_limited tenant=%s type=%s", tenant_id, transaction_type)
            return limited

    balance_before = int(account.balance)
    if is_debit and balance_before < amount_value:
        await record_credit_event(
            db,
            tenant_id,
            "insufficient_credits",
            credits_at_event=balance_before,
            action_attempted=action_key or transaction_type,
            metadata={"required": amount_value, "reference_id": reference_id},
        )
        return _insufficient_result(amount_value, balance_before)

    entry = await write_ledger_entry(
        db,
        account,
        -amount_value if is_debit else amount_value,
        transaction_type,
        action_key=action_key,
        description=description,
        reference_id=reference_id,
        reference_type=reference_type,
        metadata=metadata,
        now=now,
    )
    result = _transaction_result(entry, duplicate=False)

    if is_debit:
        warnings = _apply_warning_flags(account, int(account.balance))
        for flag in warnings:
            await record_credit_event(
                db,
                tenant_id,
                "credit_warning",
                credits_at_event=int(account.balance),
                action_attempted=action_key,
                metadata={"flag": flag},
            )
        result["warnings"] = warnings
    if transaction_type == "usage":
        await record_credit_event(
            db,
            tenant_id,
            "credits_consumed",
            credits_at_event=int(account.balance),
            action_attempted=action_key,
            metadata={"cost": amount_value, "transaction_id": entry.id},
        )
    return result


async def _commit_result(
    db: AsyncSession,
    result: Dict[str, Any],
    *,
    tenant_id: str,
    reference_id: Optional[str],
    transaction_type: str,
) -> Dict[str, Any]:
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if reference_id:
            existing = await find_transaction(db, tenant_id, reference_id, transaction_type)
            if existing is not None:
                logger.warning("credit_duplicate_race tenant=%s reference=%s", tenant_id, reference_id)
                return _transaction_result(existing, duplicate=True)
        raise
    return result


async def update_credit_balance(
    db: AsyncSession,
    tenant_id: str,
    amount: int,
    transaction_type: str,
    *,
    description: Optional[str] = None,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    action_key: Optional[str] = None,
    enforce_rate_limit: bool = True,
) -> Dict[str, Any]:
    """Apply one positive ``amount`` in the direction implied by ``transaction_type``.

    Safe to retry: a second call with the same (tenant, reference_id, type)
    returns the first call's result with ``duplicate: True``.
    """
    try:
        result = await apply_balance_change(
            db,
            tenant_id,
            amount,
            transaction_type,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
            metadata=metadata,
            action_key=action_key,
            enforce_rate_limit=enforce_rate_limit,
        )
    except IntegrityError:
        await db.rollback()
        if reference_id:
            existing = await find_transaction(db, tenant_id, reference_id, transaction_type)
            if existing is not None:
                return _transaction_result(existing, duplicate=True)
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("credit_update_failed tenant=%s type=%s: %s", tenant_id, transaction_type, exc)
        raise

    result = await _commit_result(
        db,
        result,
        tenant_id=tenant_id,
        reference_id=reference_id,
        transaction_type=transaction_type,
    )
    if result.get("success") and not result.get("duplicate"):
        logger.info(
            "credit_update tenant=%s type=%s amount=%s balance=%s",
            tenant_id,
            transaction_type,
            result.get("amount"),
            result.get("new_balance"),
        )
    return result


async def get_credit_balance(db: AsyncSession, tenant_id: str) -> int:
    """Unlocked read of the current balance (0 when no account exists yet)."""
    result = await db.execute(
        select(TenantCreditAccount.balance).where(TenantCreditAccount.tenant_id == tenant_id)
    )
    return int(result.scalar_one_or_none() or 0)


async def consume_credits(
    db: AsyncSession,
    tenant_id: str,
    action_key: str,
    *,
    description: Optional[str] = None,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
) -> Dict[str, Any]:
    """Charge the configured cost of ``action_key`` to the tenant.

    Free actions and zero-cost entries succeed without taking the row lock
    or writing a ledger row.
    """
    key = normalize_action_key(action_key)
    await get_tenant_or_404(db, tenant_id)

    cost = 0 if is_free_action(key) else await get_action_cost(db, key)
    if cost <= 0:
        return {
            "success": True,
            "duplicate": False,
            "action_key": key,
            "credits_consumed": 0,
            "new_balance": await get_credit_balance(db, tenant_id),
            "free_action": True,
            "warnings": [],
        }

    result = await update_credit_balance(
        db,
        tenant_id,
        cost,
        "usage",
        description=description or f"Credit usage: {key}",
        reference_id=reference_id,
        reference_type=reference_type,
        action_key=key,
    )
    result["action_key"] = key
    result["free_action"] = False
    result["credits_consumed"] = int(result.get("amount", 0)) if result.get("success") else 0
    if result.get("success") and not result.get("duplicate"):
        logger.info(
            "credits_consumed tenant=%s action=%s cost=%s balance=%s",
            tenant_id,
            key,
            cost,
            result.get("new_balance"),
        )
    return result


async def refund_credits(
    db: AsyncSession,
    tenant_id: str,
    amount: int,
    *,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    return await update_credit_balance(
        db,
        tenant_id,
        amount,
        "refund",
        description=description or "Credit refund",
        reference_id=reference_id,
        reference_type=reference_type,
    )


async def record_credit_purchase(
    db: AsyncSession,
    tenant_id: str,
    credits: int,
    *,
    external_payment_id: str,
    provider: str = "stripe",
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Grant purchased credits once per external payment id."""
    payment_id = str(external_payment_id or "").strip()
    if not payment_id:
        return _failure("invalid_reference", "external_payment_id is required")
    return await update_credit_balance(
        db,
        tenant_id,
        credits,
        "purchase",
        description=description or "Credit purchase",
        reference_id=payment_id,
        reference_type="payment",
        metadata={"provider": provider},
    )


def _transfer_result(
    outgoing: Dict[str, Any],
    incoming: Dict[str, Any],
    *,
    duplicate: bool,
    transfer_ref: str,
    from_tenant_id: str,
    to_tenant_id: str,
) -> Dict[str, Any]:
    return {
        "success": True,
        "duplicate": duplicate,
        "reference_id": transfer_ref,
        "amount": outgoing.get("amount"),
        "from_tenant_id": from_tenant_id,
        "to_tenant_id": to_tenant_id,
        "from_new_balance": outgoing.get("new_balance"),
        "to_new_balance": incoming.get("new_balance"),
        "transaction_ids": [outgoing.get("transaction_id"), incoming.get("transaction_id")],
    }


def _is_same_transfer(
    prior_out: Optional[CreditTransaction],
    prior_in: Optional[CreditTransaction],
    from_tenant_id: str,
    to_tenant_id: str,
    amount: int,
) -> bool:
    if prior_out is None or prior_in is None:
        return False
    out_meta = prior_out.metadata_json or {}
    in_meta = prior_in.metadata_json or {}
    return (
        int(prior_out.amount) == -amount
        and int(prior_in.amount) == amount
        and out_meta.get("to_tenant_id") == to_tenant_id
        and in_meta.get("from_tenant_id") == from_tenant_id
    )


async def transfer_credits(
    db: AsyncSession,
    from_tenant_id: str,
    to_tenant_id: str,
    amount: int,
    *,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Move credits between tenants as a transfer_out/transfer_in pair.

    A reused ``reference_id`` replays the stored pair only when both halves
    match this request; anything else is a ``reference_conflict`` and no
    balance moves.
    """
    if from_tenant_id == to_tenant_id:
        return _failure("invalid_transfer", "Cannot transfer credits to the same tenant.")
    amount_value = _parse_amount(amount)
    if amount_value is None:
        return _failure("invalid_amount", "amount must be a positive integer")

    transfer_ref = reference_id or str(uuid.uuid4())
    metadata = {"from_tenant_id": from_tenant_id, "to_tenant_id": to_tenant_id}
    try:
        # Deterministic lock order keeps opposing transfers from deadlocking.
        for tenant_id in sorted({from_tenant_id, to_tenant_id}):
            await lock_credit_account(db, tenant_id)

        prior_out = await find_transaction(db, from_tenant_id, transfer_ref, "transfer_out")
        prior_in = await find_transaction(db, to_tenant_id, transfer_ref, "transfer_in")
        if prior_out is not None or prior_in is not None:
            if _is_same_transfer(prior_out, prior_in, from_tenant_id, to_tenant_id, amount_value):
                result = _transfer_result(
                    _transaction_result(prior_out, duplicate=True),
                    _transaction_result(prior_in, duplicate=True),
                    duplicate=True,
                    transfer_ref=transfer_ref,
                    from_tenant_id=from_tenant_id,
                    to_tenant_id=to_tenant_id,
                )
                logger.warning("credit_transfer_duplicate reference=%s", transfer_ref)
            else:
                result = _failure(
                    "reference_conflict",
                    "reference_id was already used for a different transfer.",
                    reference_id=transfer_ref,
                )
                logger.warning(
                    "credit_transfer_conflict from=%s to=%s reference=%s", from_tenant_id, to_tenant_id, transfer_ref
                )
            await db.commit()
            return result

        outgoing = await apply_balance_change(
            db,
            from_tenant_id,
            amount_value,
            "transfer_out",
            description=description or f"Transfer to {to_tenant_id}",
            reference_id=transfer_ref,
            reference_type="transfer",
            metadata=metadata,
        )
        if not outgoing.get("success"):
            await db.commit()
            return outgoing
        incoming = await apply_balance_change(
            db,
            to_tenant_id,
            amount_value,
            "transfer_in",
            description=description or f"Transfer from {from_tenant_id}",
            reference_id=transfer_ref,
            reference_type="transfer",
            metadata=metadata,
        )
        await db.commit()
    except HTTPException:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("credit_transfer_failed from=%s to=%s: %s", from_tenant_id, to_tenant_id, exc)
        raise

    logger.info(
        "credit_transfer from=%s to=%s amount=%s reference=%s",
        from_tenant_id,
        to_tenant_id,
        outgoing.get("amount"),
        transfer_ref,
    )
    return _transfer_result(
        outgoing,
        incoming,
        duplicate=False,
        transfer_ref=transfer_ref,
        from_tenant_id=from_tenant_id,
        to_tenant_id=to_tenant_id,
    )


async def admin_adjust_credits(
    db: AsyncSession,
    tenant_id: str,
    amount: int,
    *,
    reason: str,
    notes: Optional[str] = None,
    admin_user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Apply a signed manual correction; the resulting balance never drops below 0."""
    try:
        requested = int(amount)
    except (TypeError, ValueError):
        requested = 0
    if requested == 0:
        return _failure("invalid_amount", "amount must be a non-zero integer")

    description = reason if not notes else f"{reason}: {notes}"
    try:
        account = await lock_credit_account(db, tenant_id)
        balance_before = int(account.balance)
        applied = max(requested, -balance_before)
        entry = await write_ledger_entry(
            db,
            account,
            applied,
            "adjustment",
            description=description,
            metadata={
                "admin_user_id": admin_user_id,
                "reason": reason,
                "notes": notes,
                "requested_amount": requested,
                "previous_balance": balance_before,
            },
        )
        if applied > 0:
            db.add(
                CreditGrant(
                    tenant_id=tenant_id,
                    amount=applied,
                    grant_type="admin_grant",
                    granted_by=admin_user_id,
                    notes=description,
                )
            )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("credit_adjust_failed tenant=%s: %s", tenant_id, exc)
        raise

    logger.info(
        "credit_adjust tenant=%s requested=%s applied=%s balance=%s admin=%s",
        tenant_id,
        requested,
        applied,
        entry.balance_after,
        admin_user_id,
    )
    return {
        "success": True,
        "transaction_id": entry.id,
        "requested_amount": requested,
        "applied_amount": applied,
        "balance_before": balance_before,
        "new_balance": int(entry.balance_after),
    }


async def grant_bulk_credits(
    db: AsyncSession,
    tenant_ids: Iterable[str],
    amount: int,
    grant_type: str,
    *,
    notes: Optional[str] = None,
    admin_user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Grant the same bonus to many tenants in one transaction."""
    if grant_type not in GRANT_TYPES:
        return _failure("invalid_grant_type", f"grant_type must be one of: {', '.join(GRANT_TYPES)}")
    amount_value = _parse_amount(amount)
    if amount_value is None:
        return _failure("invalid_amount", "amount must be a positive integer")

    targets = sorted({str(tenant_id) for tenant_id in tenant_ids if tenant_id})
    description = f"Bulk grant: {grant_type}" + (f" - {notes}" if notes else "")
    try:
        for tenant_id in targets:
            account = await lock_credit_account(db, tenant_id)
            await write_ledger_entry(
                db,
                account,
                amount_value,
                "bonus",
                description=description,
                metadata={"admin_user_id": admin_user_id, "grant_type": grant_type},
            )
            db.add(
                CreditGrant(
                    tenant_id=tenant_id,
                    amount=amount_value,
                    grant_type=grant_type,
                    granted_by=admin_user_id,
                    notes=notes,
                )
            )
        await db.commit()
    except (SQLAlchemyError, HTTPException):
        await db.rollback()
        raise

    logger.info("credit_bulk_grant tenants=%s amount=%s type=%s", len(targets), amount_value, grant_type)
    return {"success": True, "granted_count": len(targets), "tenant_ids": targets, "amount": amount_value}
