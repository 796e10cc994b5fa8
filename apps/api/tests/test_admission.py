import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from config import settings
from models.allowance_reservation import AllowanceReservation
from services import admission
from services.actors import SYSTEM, Reviewer, Subscriber
from services.admission import (
    approve_letter,
    claim_next_for_review,
    complete_letter,
    create_letter,
    fail_generation,
    get_letter_for_actor,
    reject_letter,
    resubmit_letter,
    run_letter_generation,
    submit_letter,
    sweep_stale_generating_letters,
)
from services.allowance import check_allowance, get_allowance_account, get_reservation_for_letter
from services.errors import (
    GenerationError,
    InsufficientAllowanceError,
    InvalidTransitionError,
    LetterNotFoundError,
    PermissionDeniedError,
)
from services.intake import LetterIntake
from services.letter_audit import replay_letter_status
from services.letter_workflow import get_letter


@pytest.fixture
def use_test_sessions(monkeypatch, session_maker):
    monkeypatch.setattr(admission, "async_session_maker", session_maker)


@pytest.mark.asyncio
async def test_create_letter_marks_only_the_first_as_first(db, make_user, make_draft, make_pending):
    subscriber_id = await make_user()

    first = await make_draft(subscriber_id)
    second = await make_draft(subscriber_id, "Another draft")
    assert (await get_letter(db, first)).is_first_document is True
    assert (await get_letter(db, second)).is_first_document is False

    await make_pending(subscriber_id)
    later = await make_draft(subscriber_id, "Later letter")
    assert (await get_letter(db, later)).is_first_document is False


@pytest.mark.asyncio
async def test_failed_letter_does_not_use_up_first_letter(db, make_user, make_draft):
    subscriber_id = await make_user()
    failed_id = await make_draft(subscriber_id)
    await submit_letter(db, Subscriber(subscriber_id), failed_id)
    assert await fail_generation(db, failed_id, "GenerationError: provider down") is True

    retry_id = await make_draft(subscriber_id, "Second attempt")

    assert (await get_letter(db, retry_id)).is_first_document is True


@pytest.mark.asyncio
async def test_create_letter_rejects_unknown_letter_type(db, make_user, sample_intake):
    subscriber_id = await make_user()
    with pytest.raises(ValueError):
        await create_letter(
            db,
            Subscriber(subscriber_id),
            title="Bad type",
            letter_type="Love Letter",
            intake=LetterIntake(**sample_intake),
        )


@pytest.mark.asyncio
async def test_submit_reserves_and_moves_to_generating(db, make_user, make_draft):
    subscriber_id = await make_user()
    letter_id = await make_draft(subscriber_id)

    letter = await submit_letter(db, Subscriber(subscriber_id), letter_id)

    assert letter.status == "generating"
    assert letter.generation_started_at is not None
    reservation = await get_reservation_for_letter(db, letter_id)
    assert reservation.status == "held"
    assert reservation.kind == "free_trial"

    with pytest.raises(InvalidTransitionError):
        await submit_letter(db, Subscriber(subscriber_id), letter_id)


@pytest.mark.asyncio
async def test_submit_without_allowance_leaves_draft_untouched(db, make_user, make_account, make_draft):
    subscriber_id = await make_user()
    await make_account(subscriber_id, credits=0, free_trial_used=True)
    letter_id = await make_draft(subscriber_id)

    with pytest.raises(InsufficientAllowanceError):
        await submit_letter(db, Subscriber(subscriber_id), letter_id)

    letter = await get_letter(db, letter_id)
    assert letter.status == "draft"
    assert await get_reservation_for_letter(db, letter_id) is None


@pytest.mark.asyncio
async def test_one_credit_two_concurrent_submits(session_maker, make_user, make_account, make_draft):
    subscriber_id = await make_user()
    await make_account(subscriber_id, credits=1, free_trial_used=True)
    letter_ids = [await make_draft(subscriber_id, f"Letter {i}") for i in range(2)]

    async def attempt(letter_id):
        async with session_maker() as session:
            try:
                letter = await submit_letter(session, Subscriber(subscriber_id), letter_id)
                return letter.status
            except InsufficientAllowanceError:
                return "insufficient"

    outcomes = await asyncio.gather(*(attempt(letter_id) for letter_id in letter_ids))

    assert sorted(outcomes) == ["generating", "insufficient"]
    async with session_maker() as session:
        account = await get_allowance_account(session, subscriber_id)
        assert account.credits_remaining == 0
        statuses = sorted([(await get_letter(session, letter_id)).status for letter_id in letter_ids])
        assert statuses == ["draft", "generating"]


@pytest.mark.asyncio
async def test_subscribers_cannot_see_or_submit_others_letters(db, make_user, make_draft):
    owner_id = await make_user()
    other_id = await make_user()
    letter_id = await make_draft(owner_id)

    with pytest.raises(LetterNotFoundError):
        await get_letter_for_actor(db, Subscriber(other_id), letter_id)
    with pytest.raises(LetterNotFoundError):
        await submit_letter(db, Subscriber(other_id), letter_id)
    with pytest.raises(PermissionDeniedError):
        await submit_letter(db, Reviewer(other_id), letter_id)
    with pytest.raises(PermissionDeniedError):
        await claim_next_for_review(db, Subscriber(owner_id))


@pytest.mark.asyncio
async def test_review_round_trip_and_resubmission(db, make_user, make_pending, sample_intake):
    subscriber_id = await make_user()
    reviewer = Reviewer(await make_user("employee"))
    letter_id = await make_pending(subscriber_id)

    claimed = await claim_next_for_review(db, reviewer)
    assert claimed["letter_id"] == letter_id
    assert claimed["is_first_letter"] is True

    rejected = await reject_letter(db, reviewer, letter_id, reason="Missing invoice date")
    assert rejected.status == "rejected"

    intake = LetterIntake(**{**sample_intake, "additional_details": "Invoice dated June 20."})
    resubmitted = await resubmit_letter(db, Subscriber(subscriber_id), letter_id, intake)
    assert resubmitted.status == "generating"
    assert resubmitted.is_first_document is True
    assert resubmitted.intake_data["additional_details"] == "Invoice dated June 20."

    count = await db.execute(
        select(func.count(AllowanceReservation.id)).where(AllowanceReservation.letter_id == letter_id)
    )
    assert count.scalar() == 1

    assert await admission.complete_generation(db, letter_id, "Revised draft")
    await claim_next_for_review(db, reviewer)
    approved = await approve_letter(db, reviewer, letter_id, notes="Looks good")
    assert approved.status == "approved"
    assert approved.final_content == "Revised draft"

    completed = await complete_letter(db, reviewer, letter_id)
    assert completed.status == "completed"
    assert await replay_letter_status(db, letter_id) == "completed"


@pytest.mark.asyncio
async def test_only_the_claiming_reviewer_can_decide(db, make_user, make_pending):
    subscriber_id = await make_user()
    first = Reviewer(await make_user("employee"))
    second = Reviewer(await make_user("employee"))
    letter_id = await make_pending(subscriber_id)
    await claim_next_for_review(db, first)

    with pytest.raises(PermissionDeniedError):
        await approve_letter(db, second, letter_id)
    with pytest.raises(PermissionDeniedError):
        await approve_letter(db, Subscriber(subscriber_id), letter_id)

    assert (await get_letter(db, letter_id)).status == "under_review"


@pytest.mark.asyncio
async def test_fail_generation_releases_reservation_once(db, make_user, make_draft):
    subscriber_id = await make_user()
    letter_id = await make_draft(subscriber_id)
    await submit_letter(db, Subscriber(subscriber_id), letter_id)

    assert await fail_generation(db, letter_id, "GenerationError: provider down") is True
    assert await fail_generation(db, letter_id, "GenerationError: provider down") is False

    letter = await get_letter(db, letter_id)
    assert letter.status == "failed"
    assert letter.failure_reason == "GenerationError: provider down"
    assert (await get_reservation_for_letter(db, letter_id)).status == "released"
    assert (await check_allowance(db, subscriber_id))["free_trial_available"] is True


@pytest.mark.asyncio
async def test_stale_generation_sweep_fails_and_releases(db, make_user, make_account, make_draft):
    subscriber_id = await make_user()
    await make_account(subscriber_id, credits=1, free_trial_used=True)
    letter_id = await make_draft(subscriber_id)
    await submit_letter(db, Subscriber(subscriber_id), letter_id)

    assert await sweep_stale_generating_letters(db) == 0

    later = datetime.now(timezone.utc) + timedelta(hours=1)
    assert await sweep_stale_generating_letters(db, now=later, max_minutes=15) == 1
    assert await sweep_stale_generating_letters(db, now=later, max_minutes=15) == 0

    letter = await get_letter(db, letter_id)
    assert letter.status == "failed"
    assert letter.failure_reason.startswith("TimeoutError")
    assert (await get_allowance_account(db, subscriber_id)).credits_remaining == 1


@pytest.mark.asyncio
async def test_run_generation_success_moves_to_pending_review(
    db, make_user, make_draft, use_test_sessions, monkeypatch
):
    async def fake_generate(intake, letter_type):
        assert letter_type == "Demand Letter"
        return f"Dear {intake['recipient_name']}, pay up."

    monkeypatch.setattr(admission, "generate_draft", fake_generate)
    subscriber_id = await make_user()
    letter_id = await make_draft(subscriber_id)
    await submit_letter(db, Subscriber(subscriber_id), letter_id)

    assert await run_letter_generation(letter_id) == "pending_review"

    letter = await get_letter(db, letter_id)
    assert letter.ai_draft_content == "Dear XYZ Development, pay up."
    assert (await get_reservation_for_letter(db, letter_id)).status == "consumed"
    # A second run finds nothing to do.
    assert await run_letter_generation(letter_id) == "pending_review"


@pytest.mark.asyncio
async def test_run_generation_failure_releases_allowance(
    db, make_user, make_account, make_draft, use_test_sessions, monkeypatch
):
    async def broken_generate(intake, letter_type):
        raise GenerationError("provider returned 500")

    monkeypatch.setattr(admission, "generate_draft", broken_generate)
    subscriber_id = await make_user()
    await make_account(subscriber_id, credits=2, free_trial_used=True)
    letter_id = await make_draft(subscriber_id)
    await submit_letter(db, Subscriber(subscriber_id), letter_id)
    assert (await get_allowance_account(db, subscriber_id)).credits_remaining == 1

    assert await run_letter_generation(letter_id) == "failed"

    letter = await get_letter(db, letter_id)
    assert letter.failure_reason == "GenerationError: provider returned 500"
    assert (await get_allowance_account(db, subscriber_id)).credits_remaining == 2


@pytest.mark.asyncio
async def test_run_generation_timeout_fails_letter(
    db, make_user, make_draft, use_test_sessions, monkeypatch
):
    async def slow_generate(intake, letter_type):
        await asyncio.sleep(5)
        return "too late"

    monkeypatch.setattr(admission, "generate_draft", slow_generate)
    monkeypatch.setattr(settings, "GENERATION_TIMEOUT_SECONDS", 1)
    subscriber_id = await make_user()
    letter_id = await make_draft(subscriber_id)
    await submit_letter(db, Subscriber(subscriber_id), letter_id)

    assert await run_letter_generation(letter_id) == "failed"

    letter = await get_letter(db, letter_id)
    assert letter.failure_reason.startswith("TimeoutError")
    assert (await get_reservation_for_letter(db, letter_id)).status == "released"


@pytest.mark.asyncio
async def test_run_generation_for_unknown_letter_is_a_no_op(use_test_sessions):
    assert await run_letter_generation("missing") is None


@pytest.mark.asyncio
async def test_system_actor_cannot_create_letters(db, sample_intake):
    with pytest.raises(PermissionDeniedError):
        await create_letter(
            db,
            SYSTEM,
            title="Nope",
            letter_type="Demand Letter",
            intake=LetterIntake(**sample_intake),
        )
