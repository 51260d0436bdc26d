"""Action pricing lookups and administration."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_cost import CreditCost


logger = logging.getLogger(__name__)


def normalize_action_key(action_key: Optional[str]) -> str:
    return str(action_key or "").strip()


def is_free_action(action_key: str) -> bool:
    return normalize_action_key(action_key) in set(settings.FREE_ACTIONS)


async def get_action_cost(db: AsyncSession, action_key: str) -> int:
    """Return the active cost for an action, falling back to the default cost."""
    result = await db.execute(
        select(CreditCost.credits).where(
            CreditCost.action_key == normalize_action_key(action_key),
            CreditCost.is_active.is_(True),
        )
    )
    cost = result.scalar_one_or_none()
    if cost is None:
        return max(int(settings.DEFAULT_ACTION_COST), 0)
    return max(int(cost), 0)


def _serialize_cost(row: CreditCost) -> Dict[str, Any]:
    return {
        "action_key": row.action_key,
        "action_name": row.action_name,
        "credits": row.credits,
        "category": row.category,
        "description": row.description,
        "is_active": bool(row.is_active),
    }


async def list_credit_costs(
    db: AsyncSession,
    *,
    category: Optional[str] = None,
    include_inactive: bool = False,
) -> List[Dict[str, Any]]:
    query = select(CreditCost).order_by(CreditCost.category, CreditCost.action_key)
    if category:
        query = query.where(CreditCost.category == category)
    if not include_inactive:
        query = query.where(CreditCost.is_active.is_(True))
    result = await db.execute(query)
    return [_serialize_cost(row) for row in result.scalars().all()]


async def upsert_credit_cost(
    db: AsyncSession,
    action_key: str,
    *,
    credits: int,
    action_name: Optional[str] = None,
    category: Optional[str] = None,
    description: Optional[str] = None,
    is_active: bool = True,
) -> Dict[str, Any]:
    key = normalize_action_key(action_key)
    if not key:
        raise HTTPException(status_code=422, detail="action_key is required")
    if int(credits) < 0:
        raise HTTPException(status_code=422, detail="credits must be >= 0")

    row = await db.get(CreditCost, key)
    if row is None:
        row = CreditCost(action_key=key)
        db.add(row)
    row.credits = int(credits)
    row.is_active = bool(is_active)
    if action_name is not None:
        row.action_name = action_name
    if category is not None:
        row.category = category
    if description is not None:
        row.description = description
    await db.commit()
    logger.info("credit_cost_upsert action=%s credits=%s active=%s", key, row.credits, row.is_active)
    return _serialize_cost(row)
