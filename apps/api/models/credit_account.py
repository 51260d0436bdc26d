"""TenantCreditAccount model holding the mutable per-tenant balance."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class TenantCreditAccount(Base):
    """One balance row per tenant; mutated only through the ledger services."""

    __tablename__ = "tenant_credit_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_tenant_credit_accounts_balance_non_negative"),
        CheckConstraint("free_credits_balance >= 0", name="ck_tenant_credit_accounts_free_non_negative"),
        CheckConstraint("purchased_credits_balance >= 0", name="ck_tenant_credit_accounts_purchased_non_negative"),
    )

    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    free_credits_balance = Column(Integer, nullable=False, default=0)
    purchased_credits_balance = Column(Integer, nullable=False, default=0)
    lifetime_earned = Column(Integer, nullable=False, default=0)
    lifetime_spent = Column(Integer, nullable=False, default=0)

    # Free-tier grant scheduling
    is_free_tier = Column(Boolean, nullable=False, default=True)
    last_free_grant_at = Column(DateTime(timezone=True), nullable=True)
    next_free_grant_at = Column(DateTime(timezone=True), nullable=True, index=True)

    # Usage counters, reset by the periodic sweeps
    credits_used_today = Column(Integer, nullable=False, default=0)
    credits_used_this_week = Column(Integer, nullable=False, default=0)
    credits_used_this_month = Column(Integer, nullable=False, default=0)
    last_daily_reset = Column(DateTime(timezone=True), nullable=True)
    last_weekly_reset = Column(DateTime(timezone=True), nullable=True)
    last_monthly_reset = Column(DateTime(timezone=True), nullable=True)

    # One-shot low balance notifications, cleared on every grant cycle
    warning_25_sent = Column(Boolean, nullable=False, default=False)
    warning_10_sent = Column(Boolean, nullable=False, default=False)
    warning_5_sent = Column(Boolean, nullable=False, default=False)
    warning_0_sent = Column(Boolean, nullable=False, default=False)

    # Per-minute abuse guard
    actions_this_minute = Column(Integer, nullable=False, default=0)
    rate_window_started_at = Column(DateTime(timezone=True), nullable=True)
    last_action_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    tenant = relationship("Tenant", back_populates="credit_account")
