"""CreditCost pricing table."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditCost(Base):
    """Maps an action key to its credit price; read-only at transaction time."""

    __tablename__ = "credit_costs"

    action_key = Column(String, primary_key=True)
    action_name = Column(String, nullable=True)
    credits = Column(Integer, nullable=False)
    category = Column(String, nullable=True, index=True)
    description = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
