"""Tenant model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Tenant(Base):
    """Billing and isolation unit that owns exactly one credit account."""

    __tablename__ = "tenants"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    is_free_tier = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_account = relationship(
        "TenantCreditAccount",
        back_populates="tenant",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    credit_transactions = relationship(
        "CreditTransaction",
        back_populates="tenant",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    auto_topup_config = relationship(
        "AutoTopupConfig",
        back_populates="tenant",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
