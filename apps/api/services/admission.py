"""
Letter admission and lifecycle orchestration.

Entry points take an explicit capability (Subscriber, Reviewer or the system
actor) and drive the allowance ledger, the workflow state machine and the
review queue. No state is held here; every step is a database transaction.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from fastapi import BackgroundTasks
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.letter import Letter
from models.letter_audit import LetterAuditEntry
from services import allowance
from services.actors import SYSTEM, Reviewer, Subscriber, SystemActor
from services.draft_generation import generate_draft
from services.errors import (
    ConcurrencyClaimLostError,
    ConflictRetryExhaustedError,
    GenerationError,
    GenerationTimeoutError,
    InvalidTransitionError,
    LetterNotFoundError,
    PermissionDeniedError,
    StaleStateError,
)
from services.generation_queue import enqueue_letter_generation_job
from services.intake import LetterIntake, validate_letter_type
from services.letter_audit import list_letter_audit, record_letter_event
from services.letter_workflow import LetterStatus, get_letter, transition_letter
from services.notifications import dispatch_letter_notification
from services.review_queue import get_next_letter_for_review, queue_position

logger = logging.getLogger(__name__)

Actor = Union[Subscriber, Reviewer, SystemActor]
T = TypeVar("T")

# A failed letter never reached the subscriber, so it does not make a later letter "not first".
_NOT_COUNTED_FOR_FIRST = (LetterStatus.FAILED.value,)


def _require_subscriber(actor: Actor) -> Subscriber:
    if not isinstance(actor, Subscriber):
        raise PermissionDeniedError("Only the subscriber who owns a letter can do this.")
    return actor


def _require_reviewer(actor: Actor) -> Reviewer:
    if not isinstance(actor, Reviewer):
        raise PermissionDeniedError("Only a reviewer can do this.")
    return actor


async def _with_conflict_retry(operation: str, attempt: Callable[[], Awaitable[T]]) -> T:
    """Re-run `attempt` after optimistic-concurrency conflicts, up to the configured limit."""
    attempts = max(int(settings.CONFLICT_RETRY_LIMIT), 1)
    for index in range(1, attempts + 1):
        try:
            return await attempt()
        except (StaleStateError, ConcurrencyClaimLostError) as exc:
            logger.warning("conflict_retry operation=%s attempt=%s/%s error=%s", operation, index, attempts, exc)
    raise ConflictRetryExhaustedError(operation, attempts)


async def get_letter_for_actor(db: AsyncSession, actor: Actor, letter_id: str) -> Letter:
    """Subscribers only ever see their own letters; others look missing."""
    if not isinstance(actor, (Subscriber, Reviewer, SystemActor)):
        raise PermissionDeniedError("Unknown actor.")
    letter = await get_letter(db, letter_id)
    if isinstance(actor, Subscriber) and letter.user_id != actor.user_id:
        raise LetterNotFoundError(letter_id)
    return letter


async def create_letter(
    db: AsyncSession,
    actor: Actor,
    *,
    title: str,
    letter_type: str,
    intake: LetterIntake,
) -> Letter:
    """Create a draft. `is_first_document` is decided here and never changes."""
    subscriber = _require_subscriber(actor)
    letter_type = validate_letter_type(letter_type)

    result = await db.execute(
        select(func.count(Letter.id)).where(
            Letter.user_id == subscriber.user_id,
            Letter.status.not_in(_NOT_COUNTED_FOR_FIRST),
        )
    )
    is_first = int(result.scalar() or 0) == 0

    letter = Letter(
        user_id=subscriber.user_id,
        title=title.strip(),
        letter_type=letter_type,
        status=LetterStatus.DRAFT.value,
        intake_data=intake.to_storage(),
        is_first_document=is_first,
    )
    try:
        db.add(letter)
        await db.flush()
        await record_letter_event(
            db,
            letter_id=letter.id,
            actor=subscriber.audit_actor,
            action="created",
            old_status=None,
            new_status=LetterStatus.DRAFT.value,
            is_transition=True,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("letter_created letter=%s subscriber=%s first=%s", letter.id, subscriber.user_id, is_first)
    return await get_letter(db, letter.id)


async def submit_letter(db: AsyncSession, actor: Actor, letter_id: str) -> Letter:
    """
    draft -> generating, paid for by one reservation.

    The reservation and the transition commit together. When no allowance is
    available the transition is never attempted.
    """
    subscriber = _require_subscriber(actor)

    async def attempt() -> Letter:
        letter = await get_letter_for_actor(db, subscriber, letter_id)
        if letter.status != LetterStatus.DRAFT.value:
            raise InvalidTransitionError(
                letter.status,
                LetterStatus.GENERATING.value,
                f"Only draft letters can be submitted (letter is {letter.status}).",
            )
        await allowance.reserve(db, subscriber.user_id, letter_id, commit=False)
        await transition_letter(
            db,
            letter_id,
            LetterStatus.DRAFT,
            LetterStatus.GENERATING,
            actor=subscriber.audit_actor,
        )
        return await get_letter(db, letter_id)

    return await _with_conflict_retry("submit", attempt)


async def resubmit_letter(
    db: AsyncSession,
    actor: Actor,
    letter_id: str,
    intake: LetterIntake,
) -> Letter:
    """rejected -> generating with fresh intake; the original reservation still covers it."""
    subscriber = _require_subscriber(actor)

    async def attempt() -> Letter:
        letter = await get_letter_for_actor(db, subscriber, letter_id)
        if letter.status != LetterStatus.REJECTED.value:
            raise InvalidTransitionError(
                letter.status,
                LetterStatus.GENERATING.value,
                f"Only rejected letters can be resubmitted (letter is {letter.status}).",
            )
        await transition_letter(
            db,
            letter_id,
            LetterStatus.REJECTED,
            LetterStatus.GENERATING,
            actor=subscriber.audit_actor,
            intake_data=intake.to_storage(),
        )
        return await get_letter(db, letter_id)

    return await _with_conflict_retry("resubmit", attempt)


def schedule_letter_generation(
    letter_id: str,
    attempt_key: str,
    background_tasks: Optional[BackgroundTasks] = None,
) -> str:
    """Hand a generating letter to the worker queue or an in-process background task."""
    if settings.GENERATION_QUEUE_ENABLED:
        job = enqueue_letter_generation_job(letter_id, attempt_key)
        logger.info("generation_enqueued letter=%s job=%s", letter_id, job.id)
        return "queued"
    if background_tasks is None:
        raise RuntimeError("background_tasks is required when the generation queue is disabled")
    background_tasks.add_task(run_letter_generation, letter_id)
    return "background"


async def complete_generation(db: AsyncSession, letter_id: str, draft: str) -> bool:
    """generating -> pending_review and consume the reservation, in one commit."""
    try:
        await transition_letter(
            db,
            letter_id,
            LetterStatus.GENERATING,
            LetterStatus.PENDING_REVIEW,
            actor=SYSTEM.audit_actor,
            draft_content=draft,
            commit=False,
        )
        await allowance.consume(db, letter_id, commit=False)
        await db.commit()
    except StaleStateError as exc:
        # Swept or otherwise moved while the draft was being written.
        logger.warning("generation_result_discarded letter=%s reason=%s", letter_id, exc)
        return False
    except Exception:
        await db.rollback()
        raise
    return True


async def fail_generation(
    db: AsyncSession,
    letter_id: str,
    reason: str,
    *,
    release_reason: str = "Generation failed",
) -> bool:
    """
    generating -> failed and release the reservation, in one commit.

    Returns False when the letter had already left `generating`, in which
    case nothing is released.
    """
    try:
        await transition_letter(
            db,
            letter_id,
            LetterStatus.GENERATING,
            LetterStatus.FAILED,
            actor=SYSTEM.audit_actor,
            notes=reason,
            commit=False,
        )
        await allowance.release_for_letter(db, letter_id, reason=release_reason, commit=False)
        await db.commit()
    except StaleStateError as exc:
        logger.warning("generation_failure_skipped letter=%s reason=%s", letter_id, exc)
        return False
    except Exception:
        await db.rollback()
        raise
    return True


async def _fail_in_new_session(letter_id: str, reason: str, release_reason: str) -> bool:
    async with async_session_maker() as db:
        return await fail_generation(db, letter_id, reason, release_reason=release_reason)


async def run_letter_generation(letter_id: str) -> Optional[str]:
    """
    Background task: write the draft for a generating letter.

    Reads happen in one session, the provider call runs with no session open,
    and the outcome is applied in a fresh session. Returns the resulting status.
    """
    async with async_session_maker() as db:
        try:
            letter = await get_letter(db, letter_id)
        except LetterNotFoundError:
            logger.error("Letter %s not found; aborting generation", letter_id)
            return None
        if letter.status != LetterStatus.GENERATING.value:
            logger.warning("Letter %s is %s; skipping generation", letter_id, letter.status)
            return letter.status
        intake = dict(letter.intake_data or {})
        letter_type = letter.letter_type

    timeout = max(float(settings.GENERATION_TIMEOUT_SECONDS), 1.0)
    try:
        draft = await asyncio.wait_for(generate_draft(intake, letter_type), timeout=timeout)
    except asyncio.TimeoutError:
        error = GenerationTimeoutError(f"Draft generation exceeded {timeout:.0f}s")
        logger.warning("generation_timeout letter=%s timeout=%s", letter_id, timeout)
        await _fail_in_new_session(letter_id, f"TimeoutError: {error.message}", "Generation timed out")
        return LetterStatus.FAILED.value
    except asyncio.CancelledError:
        logger.warning("generation_cancelled letter=%s", letter_id)
        await _fail_in_new_session(letter_id, "Generation cancelled", "Generation cancelled")
        raise
    except GenerationError as exc:
        logger.exception("generation_failed letter=%s", letter_id)
        await _fail_in_new_session(letter_id, f"GenerationError: {exc.message}", "Generation failed")
        return LetterStatus.FAILED.value
    except Exception as exc:
        logger.exception("generation_failed letter=%s", letter_id)
        await _fail_in_new_session(letter_id, f"GenerationError: {exc}", "Generation failed")
        return LetterStatus.FAILED.value

    async with async_session_maker() as db:
        if await complete_generation(db, letter_id, draft):
            logger.info("generation_completed letter=%s chars=%s", letter_id, len(draft))
            return LetterStatus.PENDING_REVIEW.value
        letter = await get_letter(db, letter_id)
        return letter.status


def process_letter_generation_job(letter_id: str) -> None:
    """RQ worker entrypoint for letter generation jobs."""
    asyncio.run(run_letter_generation(letter_id))


async def sweep_stale_generating_letters(
    db: AsyncSession,
    now: Optional[datetime] = None,
    max_minutes: Optional[int] = None,
) -> int:
    """Fail letters stuck in `generating` past the maximum duration, releasing each reservation once."""
    minutes = max(int(max_minutes or settings.MAX_GENERATING_MINUTES), 1)
    current = now or datetime.now(timezone.utc)
    cutoff = current - timedelta(minutes=minutes)
    result = await db.execute(
        select(Letter.id).where(
            Letter.status == LetterStatus.GENERATING.value,
            Letter.generation_started_at < cutoff,
        )
    )
    letter_ids = list(result.scalars().all())

    swept = 0
    for letter_id in letter_ids:
        reason = f"TimeoutError: generation exceeded {minutes} minutes"
        if await fail_generation(db, letter_id, reason, release_reason="Generation timed out"):
            swept += 1
    if swept:
        logger.info("stale_generation_sweep swept=%s cutoff=%s", swept, cutoff.isoformat())
    return swept


async def claim_next_for_review(db: AsyncSession, actor: Actor, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    reviewer = _require_reviewer(actor)
    try:
        return await get_next_letter_for_review(
            db,
            reviewer_id=reviewer.user_id,
            actor=reviewer.audit_actor,
            now=now,
        )
    except ConcurrencyClaimLostError as exc:
        raise ConflictRetryExhaustedError("claim", settings.CONFLICT_RETRY_LIMIT) from exc


async def _load_claimed(db: AsyncSession, reviewer: Reviewer, letter_id: str) -> Letter:
    letter = await get_letter(db, letter_id)
    if letter.status == LetterStatus.UNDER_REVIEW.value and letter.reviewer_id != reviewer.user_id:
        raise PermissionDeniedError("This letter is being reviewed by someone else.")
    return letter


async def _notify(letter: Letter, notes: Optional[str] = None) -> None:
    await dispatch_letter_notification(
        letter_id=letter.id,
        subscriber_id=letter.user_id,
        status=letter.status,
        notes=notes,
    )


async def approve_letter(
    db: AsyncSession,
    actor: Actor,
    letter_id: str,
    *,
    notes: Optional[str] = None,
    final_content: Optional[str] = None,
) -> Letter:
    reviewer = _require_reviewer(actor)

    async def attempt() -> Letter:
        letter = await _load_claimed(db, reviewer, letter_id)
        await transition_letter(
            db,
            letter_id,
            letter.status,
            LetterStatus.APPROVED,
            actor=reviewer.audit_actor,
            notes=notes,
            final_content=final_content or letter.ai_draft_content,
        )
        return await get_letter(db, letter_id)

    letter = await _with_conflict_retry("approve", attempt)
    await _notify(letter, notes)
    return letter


async def reject_letter(
    db: AsyncSession,
    actor: Actor,
    letter_id: str,
    *,
    reason: str,
    notes: Optional[str] = None,
) -> Letter:
    reviewer = _require_reviewer(actor)

    async def attempt() -> Letter:
        letter = await _load_claimed(db, reviewer, letter_id)
        await transition_letter(
            db,
            letter_id,
            letter.status,
            LetterStatus.REJECTED,
            actor=reviewer.audit_actor,
            notes=notes,
            rejection_reason=reason,
        )
        return await get_letter(db, letter_id)

    letter = await _with_conflict_retry("reject", attempt)
    await _notify(letter, reason)
    return letter


async def complete_letter(db: AsyncSession, actor: Actor, letter_id: str) -> Letter:
    """approved -> completed once the final letter has been delivered."""
    reviewer = _require_reviewer(actor)

    async def attempt() -> Letter:
        letter = await get_letter(db, letter_id)
        await transition_letter(
            db,
            letter_id,
            letter.status,
            LetterStatus.COMPLETED,
            actor=reviewer.audit_actor,
        )
        return await get_letter(db, letter_id)

    letter = await _with_conflict_retry("complete", attempt)
    await _notify(letter)
    return letter


async def letter_queue_position(db: AsyncSession, actor: Actor, letter_id: str) -> Optional[int]:
    """1-based review queue rank; best effort, it moves as others are submitted and claimed."""
    await get_letter_for_actor(db, actor, letter_id)
    return await queue_position(db, letter_id)


async def letter_audit_for_actor(db: AsyncSession, actor: Actor, letter_id: str) -> List[LetterAuditEntry]:
    await get_letter_for_actor(db, actor, letter_id)
    return await list_letter_audit(db, letter_id)
