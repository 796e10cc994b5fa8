"""
Review queue priority scheduling.

Scores are recomputed from live data on every call:

    score = wait_hours * plan_weight(plan_tier) + FIRST_LETTER_BONUS * is_first_document

Higher scores are served first; ties go to the earliest submission. Claiming
the next letter is the pending_review -> under_review transition itself, so
two review sessions can never pull the same letter.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import plan_weight, settings
from models.allowance_account import AllowanceAccount
from models.letter import Letter
from services.allowance import FREE_TRIAL_TIER, plan_name
from services.errors import ConcurrencyClaimLostError, LetterNotFoundError, StaleStateError
from services.letter_workflow import LetterStatus, transition_letter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueItem:
    letter_id: str
    subscriber_id: str
    status: str
    plan_tier: str
    priority_score: float
    wait_hours: float
    is_first_letter: bool
    submitted_at: Optional[datetime]

    @property
    def user_plan(self) -> str:
        return plan_name(self.plan_tier)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "letter_id": self.letter_id,
            "priority_score": round(self.priority_score, 2),
            "wait_hours": round(self.wait_hours, 1),
            "user_plan": self.user_plan,
            "is_first_letter": self.is_first_letter,
        }


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def wait_hours_since(submitted_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    start = _as_utc(submitted_at)
    if start is None:
        return 0.0
    current = _as_utc(now) or datetime.now(timezone.utc)
    return max((current - start).total_seconds() / 3600.0, 0.0)


def compute_priority_score(wait_hours: float, plan_tier: Optional[str], is_first_letter: bool) -> float:
    score = max(float(wait_hours), 0.0) * plan_weight(plan_tier or FREE_TRIAL_TIER)
    if is_first_letter:
        score += float(settings.FIRST_LETTER_BONUS)
    return score


def _queue_item(letter: Letter, plan_tier: Optional[str], now: datetime) -> QueueItem:
    tier = plan_tier or FREE_TRIAL_TIER
    waited = wait_hours_since(letter.submitted_at, now)
    first = bool(letter.is_first_document)
    return QueueItem(
        letter_id=letter.id,
        subscriber_id=letter.user_id,
        status=letter.status,
        plan_tier=tier,
        priority_score=compute_priority_score(waited, tier, first),
        wait_hours=waited,
        is_first_letter=first,
        submitted_at=_as_utc(letter.submitted_at),
    )


def _ordering_key(item: QueueItem):
    submitted = item.submitted_at or datetime.max.replace(tzinfo=timezone.utc)
    return (-item.priority_score, submitted, item.letter_id)


async def _ranked(db: AsyncSession, statuses: Iterable[str], now: Optional[datetime]) -> List[QueueItem]:
    current = _as_utc(now) or datetime.now(timezone.utc)
    result = await db.execute(
        select(Letter, AllowanceAccount.plan_tier)
        .outerjoin(AllowanceAccount, AllowanceAccount.subscriber_id == Letter.user_id)
        .where(Letter.status.in_(list(statuses)))
        .execution_options(populate_existing=True)
    )
    items = [_queue_item(letter, tier, current) for letter, tier in result.all()]
    return sorted(items, key=_ordering_key)


async def rank_pending_letters(db: AsyncSession, now: Optional[datetime] = None) -> List[QueueItem]:
    """All letters awaiting review, highest priority first."""
    return await _ranked(db, [LetterStatus.PENDING_REVIEW.value], now)


async def list_review_queue(db: AsyncSession, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Admin dashboard view: letters pending or under review, in priority order."""
    items = await _ranked(
        db,
        [LetterStatus.PENDING_REVIEW.value, LetterStatus.UNDER_REVIEW.value],
        now,
    )
    return [
        {
            **item.to_dict(),
            "status": item.status,
            "subscriber_id": item.subscriber_id,
            "submitted_at": item.submitted_at.isoformat() if item.submitted_at else None,
        }
        for item in items
    ]


async def calculate_letter_priority(db: AsyncSession, letter_id: str, now: Optional[datetime] = None) -> float:
    result = await db.execute(
        select(Letter, AllowanceAccount.plan_tier)
        .outerjoin(AllowanceAccount, AllowanceAccount.subscriber_id == Letter.user_id)
        .where(Letter.id == letter_id)
        .execution_options(populate_existing=True)
    )
    row = result.first()
    if row is None:
        raise LetterNotFoundError(letter_id)
    letter, tier = row
    current = _as_utc(now) or datetime.now(timezone.utc)
    return _queue_item(letter, tier, current).priority_score


async def queue_position(db: AsyncSession, letter_id: str, now: Optional[datetime] = None) -> Optional[int]:
    """1-based rank among pending letters, or None when the letter is not waiting."""
    for index, item in enumerate(await rank_pending_letters(db, now), start=1):
        if item.letter_id == letter_id:
            return index
    return None


async def claim_next_letter(
    db: AsyncSession,
    *,
    reviewer_id: str,
    actor: str,
    now: Optional[datetime] = None,
) -> Optional[QueueItem]:
    """
    Claim the highest-priority pending letter for `reviewer_id`.

    Returns None for an empty queue. Raises ConcurrencyClaimLostError if the
    chosen letter was claimed (or otherwise moved) concurrently.
    """
    ranked = await rank_pending_letters(db, now)
    if not ranked:
        return None
    top = ranked[0]
    try:
        await transition_letter(
            db,
            top.letter_id,
            LetterStatus.PENDING_REVIEW,
            LetterStatus.UNDER_REVIEW,
            actor=actor,
            reviewer_id=reviewer_id,
            notes=f"priority_score={top.priority_score:.2f} wait_hours={top.wait_hours:.1f}",
        )
    except StaleStateError as exc:
        raise ConcurrencyClaimLostError(top.letter_id) from exc
    return top


async def get_next_letter_for_review(
    db: AsyncSession,
    *,
    reviewer_id: str,
    actor: str,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """
    Claim the next letter, retrying lost races a bounded number of times.

    Returns {letter_id, priority_score, wait_hours, user_plan, is_first_letter}
    or None when nothing is waiting.
    """
    attempts = max(int(max_attempts or settings.CONFLICT_RETRY_LIMIT), 1)
    last_error: Optional[ConcurrencyClaimLostError] = None
    for attempt in range(1, attempts + 1):
        try:
            item = await claim_next_letter(db, reviewer_id=reviewer_id, actor=actor, now=now)
        except ConcurrencyClaimLostError as exc:
            last_error = exc
            logger.warning("review_claim_lost letter=%s attempt=%s/%s", exc.letter_id, attempt, attempts)
            continue
        return item.to_dict() if item else None
    raise last_error
