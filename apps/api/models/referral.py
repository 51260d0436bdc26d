"""Referral code and redemption models."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class ReferralCode(Base):
    """Code owned by a referring tenant."""

    __tablename__ = "referral_codes"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String, unique=True, nullable=False, index=True)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    referrer_bonus = Column(Integer, nullable=False, default=0)
    referee_bonus = Column(Integer, nullable=False, default=0)
    max_uses = Column(Integer, nullable=True)
    uses_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ReferralRedemption(Base):
    """One row per (code, referee tenant); the unique constraint is authoritative."""

    __tablename__ = "referral_redemptions"
    __table_args__ = (
        UniqueConstraint("referral_code_id", "referee_tenant_id", name="uq_referral_redemptions_code_referee"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    referral_code_id = Column(String, ForeignKey("referral_codes.id", ondelete="CASCADE"), nullable=False, index=True)
    referrer_tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    referee_tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    referrer_credits = Column(Integer, nullable=False, default=0)
    referee_credits = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
