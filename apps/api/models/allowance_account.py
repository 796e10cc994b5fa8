"""AllowanceAccount model: per-subscriber letter credits and trial state."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class AllowanceAccount(Base):
    """Mutated only through the allowance service; never deleted."""

    __tablename__ = "allowance_accounts"
    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_allowance_accounts_credits_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    subscriber_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    plan_tier = Column(String, nullable=False, default="free_trial")
    subscription_status = Column(String, nullable=False, default="active", index=True)
    credits_remaining = Column(Integer, nullable=False, default=0)
    free_trial_used = Column(Boolean, nullable=False, default=False)
    last_reset_period = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="allowance_account")
