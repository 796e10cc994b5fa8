"""AllowanceReservation model: the token held for one letter's lifecycle."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.sql import func

from database import Base


class AllowanceReservation(Base):
    """One reservation per letter; status moves held -> consumed | released exactly once."""

    __tablename__ = "allowance_reservations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    subscriber_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    letter_id = Column(String, ForeignKey("letters.id"), nullable=False, unique=True, index=True)
    kind = Column(String, nullable=False)  # credit, free_trial, unlimited
    status = Column(String, nullable=False, default="held", index=True)  # held, consumed, released
    # Reset period of the balance a credit was drawn from; refunds only land in that period.
    balance_period = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)
