"""User model."""

from sqlalchemy import Boolean, Column, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Authenticated account: a subscriber, an employee or the reviewing admin."""
    
    __tablename__ = "users"
    
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="subscriber")  # subscriber, employee, admin
    is_super_user = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    
    # Relationships
    letters = relationship("Letter", back_populates="user", foreign_keys="Letter.user_id")
    allowance_account = relationship("AllowanceAccount", back_populates="user", uselist=False)
