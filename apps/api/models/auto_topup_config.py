"""AutoTopupConfig model."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class AutoTopupConfig(Base):
    """Per-tenant automatic top-up settings; the charge itself happens externally."""

    __tablename__ = "auto_topup_configs"

    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    trigger_threshold = Column(Integer, nullable=False, default=100)
    topup_amount = Column(Integer, nullable=False, default=500)
    max_per_month = Column(Integer, nullable=False, default=3)
    topups_this_month = Column(Integer, nullable=False, default=0)
    topups_period_start = Column(DateTime(timezone=True), nullable=True)
    payment_method_id = Column(String, nullable=True)
    last_topup_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    tenant = relationship("Tenant", back_populates="auto_topup_config")
