import asyncio

import pytest
from sqlalchemy.future import select

from models.letter_audit import LetterAuditEntry
from services.errors import (
    InvalidTransitionError,
    LetterNotFoundError,
    ResubmissionPayloadError,
    StaleStateError,
)
from services.letter_workflow import (
    ALLOWED_TRANSITIONS,
    LetterStatus,
    get_letter,
    is_terminal_state,
    is_valid_transition,
    transition_letter,
)


def test_transition_table_matches_lifecycle():
    assert is_valid_transition(LetterStatus.DRAFT, LetterStatus.GENERATING)
    assert is_valid_transition(LetterStatus.GENERATING, LetterStatus.PENDING_REVIEW)
    assert is_valid_transition(LetterStatus.GENERATING, LetterStatus.FAILED)
    assert is_valid_transition(LetterStatus.REJECTED, LetterStatus.GENERATING)
    assert not is_valid_transition(LetterStatus.DRAFT, LetterStatus.PENDING_REVIEW)
    assert not is_valid_transition(LetterStatus.PENDING_REVIEW, LetterStatus.APPROVED)
    assert not is_valid_transition(LetterStatus.APPROVED, LetterStatus.REJECTED)
    assert ALLOWED_TRANSITIONS[LetterStatus.COMPLETED] == []
    assert ALLOWED_TRANSITIONS[LetterStatus.FAILED] == []
    assert is_terminal_state(LetterStatus.COMPLETED)
    assert is_terminal_state(LetterStatus.FAILED)
    assert not is_terminal_state(LetterStatus.REJECTED)


@pytest.mark.asyncio
async def test_transition_writes_status_and_one_audit_entry(db, make_user, make_draft):
    subscriber_id = await make_user()
    letter_id = await make_draft(subscriber_id)

    entry = await transition_letter(
        db,
        letter_id,
        LetterStatus.DRAFT,
        LetterStatus.GENERATING,
        actor=f"subscriber:{subscriber_id}",
    )

    letter = await get_letter(db, letter_id)
    assert letter.status == "generating"
    assert letter.submitted_at is not None
    assert entry.action == "submitted"
    assert entry.old_status == "draft"
    assert entry.new_status == "generating"

    result = await db.execute(
        select(LetterAuditEntry).where(
            LetterAuditEntry.letter_id == letter_id,
            LetterAuditEntry.new_status == "generating",
        )
    )
    assert len(result.scalars().all()) == 1


@pytest.mark.asyncio
async def test_illegal_transition_is_rejected_without_side_effects(db, make_user, make_draft):
    subscriber_id = await make_user()
    letter_id = await make_draft(subscriber_id)

    with pytest.raises(InvalidTransitionError):
        await transition_letter(db, letter_id, LetterStatus.DRAFT, LetterStatus.APPROVED, actor="system")

    letter = await get_letter(db, letter_id)
    assert letter.status == "draft"
    result = await db.execute(select(LetterAuditEntry).where(LetterAuditEntry.letter_id == letter_id))
    assert [entry.action for entry in result.scalars().all()] == ["created"]


@pytest.mark.asyncio
async def test_stale_expected_status_raises(db, make_user, make_draft):
    subscriber_id = await make_user()
    letter_id = await make_draft(subscriber_id)
    await transition_letter(db, letter_id, LetterStatus.DRAFT, LetterStatus.GENERATING, actor="system")

    with pytest.raises(StaleStateError) as exc_info:
        await transition_letter(db, letter_id, LetterStatus.DRAFT, LetterStatus.GENERATING, actor="system")

    assert exc_info.value.actual_status == "generating"
    assert exc_info.value.code == "stale_state"


@pytest.mark.asyncio
async def test_unknown_letter_raises_not_found(db):
    with pytest.raises(LetterNotFoundError):
        await transition_letter(db, "missing", LetterStatus.DRAFT, LetterStatus.GENERATING, actor="system")


@pytest.mark.asyncio
async def test_concurrent_transitions_only_one_wins(session_maker, make_user, make_draft):
    subscriber_id = await make_user()
    letter_id = await make_draft(subscriber_id)

    async def attempt():
        async with session_maker() as session:
            try:
                await transition_letter(
                    session, letter_id, LetterStatus.DRAFT, LetterStatus.GENERATING, actor="system"
                )
                return "ok"
            except StaleStateError:
                return "stale"

    outcomes = await asyncio.gather(*(attempt() for _ in range(4)))
    assert outcomes.count("ok") == 1
    assert outcomes.count("stale") == 3


@pytest.mark.asyncio
async def test_required_fields_per_target(db, make_user, make_draft):
    subscriber_id = await make_user()
    letter_id = await make_draft(subscriber_id)
    await transition_letter(db, letter_id, "draft", "generating", actor="system")

    with pytest.raises(InvalidTransitionError):
        await transition_letter(db, letter_id, "generating", "pending_review", actor="system", draft_content="  ")

    await transition_letter(db, letter_id, "generating", "pending_review", actor="system", draft_content="Dear Sir")
    with pytest.raises(InvalidTransitionError):
        await transition_letter(db, letter_id, "pending_review", "under_review", actor="system")

    reviewer_id = await make_user("admin")
    await transition_letter(
        db, letter_id, "pending_review", "under_review", actor=f"reviewer:{reviewer_id}", reviewer_id=reviewer_id
    )
    with pytest.raises(InvalidTransitionError):
        await transition_letter(db, letter_id, "under_review", "rejected", actor="reviewer:r1")

    await transition_letter(
        db, letter_id, "under_review", "rejected", actor="reviewer:r1", rejection_reason="Missing invoice date"
    )
    letter = await get_letter(db, letter_id)
    assert letter.rejection_reason == "Missing invoice date"

    with pytest.raises(ResubmissionPayloadError):
        await transition_letter(db, letter_id, "rejected", "generating", actor="system")

    await transition_letter(
        db,
        letter_id,
        "rejected",
        "generating",
        actor="system",
        intake_data={"issue_description": "updated"},
    )
    letter = await get_letter(db, letter_id)
    assert letter.status == "generating"
    assert letter.rejection_reason is None
    assert letter.reviewer_id is None
    assert letter.intake_data == {"issue_description": "updated"}
