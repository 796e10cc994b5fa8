"""Letter model: a subscriber document moving through drafting and review."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Letter(Base):
    """
    Letter lifecycle record.

    `status` is only ever written by the workflow transition helper; every
    change is paired with one letter_audit_trail row.
    """

    __tablename__ = "letters"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    letter_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="draft", index=True)
    intake_data = Column(JSON, nullable=False, default=dict)
    ai_draft_content = Column(Text, nullable=True)
    final_content = Column(Text, nullable=True)
    review_notes = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    is_first_document = Column(Boolean, nullable=False, default=False)
    reviewer_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    submitted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    generation_started_at = Column(DateTime(timezone=True), nullable=True)
    review_started_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="letters", foreign_keys=[user_id])
    audit_entries = relationship("LetterAuditEntry", back_populates="letter", order_by="LetterAuditEntry.id")
