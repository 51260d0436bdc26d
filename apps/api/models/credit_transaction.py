"""CreditTransaction model: append-only ledger entry."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


TRANSACTION_TYPES = (
    "purchase",
    "usage",
    "refund",
    "expiration",
    "bonus",
    "adjustment",
    "transfer_in",
    "transfer_out",
    "free_grant",
    "promo",
)
DEBIT_TRANSACTION_TYPES = ("usage", "transfer_out", "expiration")


class CreditTransaction(Base):
    """Immutable credit ledger entry; amount is signed (negative for debits)."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "reference_id",
            "transaction_type",
            name="uq_credit_transactions_tenant_reference_type",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    transaction_type = Column(String, nullable=False, index=True)
    action_type = Column(String, nullable=True, index=True)
    reference_id = Column(String, nullable=True)
    reference_type = Column(String, nullable=True)
    description = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)

    tenant = relationship("Tenant", back_populates="credit_transactions")
