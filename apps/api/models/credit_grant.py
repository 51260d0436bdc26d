"""CreditGrant model for promotional and bonus grants."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


GRANT_TYPES = (
    "signup_bonus",
    "referral",
    "promo_code",
    "support",
    "admin_grant",
    "loyalty",
    "compensation",
)


class CreditGrant(Base):
    """Record of a bonus grant; the balance effect lives in credit_transactions."""

    __tablename__ = "credit_grants"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    grant_type = Column(String, nullable=False, index=True)
    promo_code = Column(String, nullable=True)
    granted_by = Column(String, nullable=True)
    notes = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
