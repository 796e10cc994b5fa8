"""Letter audit trail model."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base


class LetterAuditEntry(Base):
    """Append-only letter audit entry; rows are never updated or deleted."""

    __tablename__ = "letter_audit_trail"

    # Integer key keeps insertion order for replay.
    id = Column(Integer, primary_key=True, autoincrement=True)
    letter_id = Column(String, ForeignKey("letters.id"), nullable=False, index=True)
    actor = Column(String, nullable=False)
    action = Column(String, nullable=False)
    old_status = Column(String, nullable=True)
    new_status = Column(String, nullable=True)
    is_transition = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    letter = relationship("Letter", back_populates="audit_entries")
