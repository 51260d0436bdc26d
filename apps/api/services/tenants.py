"""Tenant registration."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.credit_account import TenantCreditAccount
from models.tenant import Tenant
from services.free_grants import apply_free_grant


logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{1,62}$")


def normalize_slug(slug: str) -> str:
    return str(slug or "").strip().lower()


async def create_tenant(
    db: AsyncSession,
    name: str,
    slug: str,
    is_free_tier: bool = True,
) -> Dict[str, Any]:
    """Create a tenant together with its credit account.

    Free-tier tenants receive their first free grant in the same transaction.
    """
    clean_name = str(name or "").strip()
    clean_slug = normalize_slug(slug)
    if not clean_name:
        raise HTTPException(status_code=422, detail="name is required")
    if not SLUG_PATTERN.match(clean_slug):
        raise HTTPException(
            status_code=422,
            detail="slug must be 2-63 characters of lowercase letters, digits or hyphens",
        )

    tenant = Tenant(name=clean_name, slug=clean_slug, is_free_tier=bool(is_free_tier))
    db.add(tenant)
    grant = None
    try:
        await db.flush()
        account = TenantCreditAccount(tenant_id=tenant.id, is_free_tier=bool(is_free_tier))
        db.add(account)
        await db.flush()
        if tenant.is_free_tier:
            grant = await apply_free_grant(db, account, int(settings.FREE_TIER_MONTHLY_CREDITS))
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail=f"Tenant slug '{clean_slug}' is already taken.")
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("tenant_create_failed slug=%s: %s", clean_slug, exc)
        raise

    logger.info("tenant_created id=%s slug=%s free_tier=%s", tenant.id, clean_slug, tenant.is_free_tier)
    return {
        "id": tenant.id,
        "name": tenant.name,
        "slug": tenant.slug,
        "is_free_tier": bool(tenant.is_free_tier),
        "balance": int(account.balance),
        "free_grant": grant,
    }
