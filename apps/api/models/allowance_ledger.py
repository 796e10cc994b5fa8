"""AllowanceLedger model for letter allowance accounting."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


class AllowanceLedgerEntry(Base):
    """Immutable allowance ledger entry."""

    __tablename__ = "allowance_ledger"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    subscriber_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    entry_type = Column(String, nullable=False)  # reserve, consume, release, monthly_reset, activation, plan_change
    delta_credits = Column(Integer, nullable=False, default=0)
    balance_after = Column(Integer, nullable=True)
    reason = Column(String, nullable=True)
    reservation_id = Column(String, ForeignKey("allowance_reservations.id"), nullable=True, index=True)
    letter_id = Column(String, ForeignKey("letters.id"), nullable=True, index=True)
    period_key = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
