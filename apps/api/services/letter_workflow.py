"""
Letter Workflow State Machine

Defines the letter statuses, the legal transitions between them, and the
single helper allowed to write Letter.status. Every transition is applied as
a guarded UPDATE (the caller's expected status is part of the WHERE clause)
and its audit row is written in the same transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.letter import Letter
from models.letter_audit import LetterAuditEntry
from services.errors import (
    InvalidTransitionError,
    LetterNotFoundError,
    ResubmissionPayloadError,
    StaleStateError,
)
from services.letter_audit import record_letter_event

logger = logging.getLogger(__name__)


class LetterStatus(str, Enum):
    DRAFT = "draft"
    GENERATING = "generating"
    PENDING_REVIEW = "pending_review"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


# Whitelist of transitions; anything absent is rejected.
ALLOWED_TRANSITIONS: Dict[LetterStatus, List[LetterStatus]] = {
    LetterStatus.DRAFT: [LetterStatus.GENERATING],
    LetterStatus.GENERATING: [LetterStatus.PENDING_REVIEW, LetterStatus.FAILED],
    LetterStatus.PENDING_REVIEW: [LetterStatus.UNDER_REVIEW],
    LetterStatus.UNDER_REVIEW: [LetterStatus.APPROVED, LetterStatus.REJECTED],
    LetterStatus.APPROVED: [LetterStatus.COMPLETED],
    LetterStatus.REJECTED: [LetterStatus.GENERATING],  # resubmission only
    LetterStatus.FAILED: [],
    LetterStatus.COMPLETED: [],
}

TERMINAL_STATES: Set[LetterStatus] = {
    LetterStatus.COMPLETED,
    LetterStatus.FAILED,
}

# Letters that count against the free-letter rule and toward "not first".
IN_FLIGHT_STATES: Set[LetterStatus] = {
    LetterStatus.GENERATING,
    LetterStatus.PENDING_REVIEW,
    LetterStatus.UNDER_REVIEW,
    LetterStatus.APPROVED,
    LetterStatus.REJECTED,
}

# Statuses the subscriber is notified about.
NOTIFY_STATES: Set[LetterStatus] = {
    LetterStatus.APPROVED,
    LetterStatus.REJECTED,
    LetterStatus.COMPLETED,
}

DEFAULT_ACTIONS: Dict[tuple, str] = {
    (LetterStatus.DRAFT, LetterStatus.GENERATING): "submitted",
    (LetterStatus.REJECTED, LetterStatus.GENERATING): "resubmitted",
    (LetterStatus.GENERATING, LetterStatus.PENDING_REVIEW): "draft_generated",
    (LetterStatus.GENERATING, LetterStatus.FAILED): "generation_failed",
    (LetterStatus.PENDING_REVIEW, LetterStatus.UNDER_REVIEW): "review_started",
    (LetterStatus.UNDER_REVIEW, LetterStatus.APPROVED): "approved",
    (LetterStatus.UNDER_REVIEW, LetterStatus.REJECTED): "rejected",
    (LetterStatus.APPROVED, LetterStatus.COMPLETED): "completed",
}


def is_valid_transition(from_status: LetterStatus, to_status: LetterStatus) -> bool:
    """Check if a state transition is valid"""
    return to_status in ALLOWED_TRANSITIONS.get(from_status, [])


def get_allowed_transitions(status: LetterStatus) -> List[LetterStatus]:
    return ALLOWED_TRANSITIONS.get(status, [])


def is_terminal_state(status: LetterStatus) -> bool:
    return status in TERMINAL_STATES


def _coerce_status(value: Any) -> LetterStatus:
    try:
        return LetterStatus(value)
    except ValueError as exc:
        raise InvalidTransitionError(str(value), "?", f"Unknown letter status: {value!r}") from exc


async def get_letter(db: AsyncSession, letter_id: str) -> Letter:
    """Load a letter fresh from the database (overwriting any cached copy)."""
    result = await db.execute(
        select(Letter).where(Letter.id == letter_id).execution_options(populate_existing=True)
    )
    letter = result.scalar_one_or_none()
    if letter is None:
        raise LetterNotFoundError(letter_id)
    return letter


def _transition_fields(
    from_status: LetterStatus,
    to_status: LetterStatus,
    now: datetime,
    *,
    notes: Optional[str],
    draft_content: Optional[str],
    intake_data: Optional[Dict[str, Any]],
    rejection_reason: Optional[str],
    final_content: Optional[str],
    reviewer_id: Optional[str],
) -> Dict[str, Any]:
    fields: Dict[str, Any] = {"status": to_status.value, "updated_at": now}

    if to_status == LetterStatus.GENERATING:
        if from_status == LetterStatus.REJECTED:
            if not intake_data:
                raise ResubmissionPayloadError()
            fields["intake_data"] = intake_data
            fields["rejection_reason"] = None
            fields["ai_draft_content"] = None
            fields["reviewer_id"] = None
            fields["review_started_at"] = None
            fields["reviewed_at"] = None
        elif intake_data:
            fields["intake_data"] = intake_data
        fields["submitted_at"] = now
        fields["generation_started_at"] = now

    elif to_status == LetterStatus.PENDING_REVIEW:
        if not (draft_content or "").strip():
            raise InvalidTransitionError(
                from_status.value, to_status.value, "A generated draft is required to enter review."
            )
        fields["ai_draft_content"] = draft_content

    elif to_status == LetterStatus.FAILED:
        fields["failure_reason"] = notes
        fields["failed_at"] = now

    elif to_status == LetterStatus.UNDER_REVIEW:
        if not reviewer_id:
            raise InvalidTransitionError(
                from_status.value, to_status.value, "A reviewer is required to start review."
            )
        fields["reviewer_id"] = reviewer_id
        fields["review_started_at"] = now

    elif to_status == LetterStatus.APPROVED:
        fields["reviewed_at"] = now
        fields["approved_at"] = now
        fields["review_notes"] = notes
        if final_content:
            fields["final_content"] = final_content

    elif to_status == LetterStatus.REJECTED:
        if not (rejection_reason or "").strip():
            raise InvalidTransitionError(
                from_status.value, to_status.value, "A rejection reason is required."
            )
        fields["reviewed_at"] = now
        fields["rejection_reason"] = rejection_reason.strip()
        fields["review_notes"] = notes

    elif to_status == LetterStatus.COMPLETED:
        fields["completed_at"] = now

    return fields


async def transition_letter(
    db: AsyncSession,
    letter_id: str,
    expected_status: Any,
    target_status: Any,
    *,
    actor: str,
    notes: Optional[str] = None,
    action: Optional[str] = None,
    draft_content: Optional[str] = None,
    intake_data: Optional[Dict[str, Any]] = None,
    rejection_reason: Optional[str] = None,
    final_content: Optional[str] = None,
    reviewer_id: Optional[str] = None,
    commit: bool = True,
) -> LetterAuditEntry:
    """
    Move a letter from `expected_status` to `target_status`.

    This is the ONLY function that writes Letter.status. The status change and
    its audit row are one unit: with commit=True both are committed here and
    any failure rolls both back; with commit=False the caller owns the
    transaction (used when a reservation must share it).

    Raises InvalidTransitionError, StaleStateError or LetterNotFoundError.
    """
    try:
        from_status = _coerce_status(expected_status)
        to_status = _coerce_status(target_status)
        if not is_valid_transition(from_status, to_status):
            allowed = [s.value for s in get_allowed_transitions(from_status)]
            raise InvalidTransitionError(
                from_status.value,
                to_status.value,
                f"Invalid transition: {from_status.value} -> {to_status.value}. Allowed: {allowed}",
            )

        now = datetime.now(timezone.utc)
        fields = _transition_fields(
            from_status,
            to_status,
            now,
            notes=notes,
            draft_content=draft_content,
            intake_data=intake_data,
            rejection_reason=rejection_reason,
            final_content=final_content,
            reviewer_id=reviewer_id,
        )

        result = await db.execute(
            update(Letter)
            .where(Letter.id == letter_id, Letter.status == from_status.value)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = await db.execute(select(Letter.status).where(Letter.id == letter_id))
            actual = current.scalar_one_or_none()
            if actual is None:
                raise LetterNotFoundError(letter_id)
            raise StaleStateError(letter_id, from_status.value, actual)

        entry = await record_letter_event(
            db,
            letter_id=letter_id,
            actor=actor,
            action=action or DEFAULT_ACTIONS.get((from_status, to_status), "transition"),
            old_status=from_status.value,
            new_status=to_status.value,
            notes=notes,
            is_transition=True,
        )
        if commit:
            await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "letter_transition letter=%s old=%s new=%s actor=%s",
        letter_id,
        from_status.value,
        to_status.value,
        actor,
    )
    return entry
