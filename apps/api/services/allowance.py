"""Letter allowance ledger: credits, the free first letter, and reservations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional
import uuid

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import PLAN_TIER_ORDER, plan_entitlement
from models.allowance_account import AllowanceAccount
from models.allowance_reservation import AllowanceReservation
from models.letter import Letter
from models.user import User
from services.errors import InsufficientAllowanceError, PermissionDeniedError
from services.letter_audit import list_allowance_events, record_allowance_event
from services.letter_workflow import IN_FLIGHT_STATES, LetterStatus

logger = logging.getLogger(__name__)

FREE_TRIAL_TIER = PLAN_TIER_ORDER[0]
PLAN_NAMES = {
    "free_trial": "Free Trial",
    "basic": "Basic Plan",
    "pro": "Pro Plan",
}
# Letters that disqualify a subscriber from the free first letter.
_PRIOR_LETTER_STATUSES = tuple(sorted(s.value for s in IN_FLIGHT_STATES | {LetterStatus.COMPLETED}))


@dataclass(frozen=True)
class ReservationToken:
    reservation_id: str
    subscriber_id: str
    letter_id: str
    kind: str  # credit, free_trial, unlimited
    balance_period: Optional[str] = None


def _current_period_key(now: Optional[datetime] = None) -> str:
    current = now or datetime.now(timezone.utc)
    return current.strftime("%Y-%m")


def plan_name(plan_tier: Optional[str]) -> str:
    return PLAN_NAMES.get(plan_tier or FREE_TRIAL_TIER, PLAN_NAMES[FREE_TRIAL_TIER])


def _token(reservation: AllowanceReservation) -> ReservationToken:
    return ReservationToken(
        reservation_id=reservation.id,
        subscriber_id=reservation.subscriber_id,
        letter_id=reservation.letter_id,
        kind=reservation.kind,
        balance_period=reservation.balance_period,
    )


async def get_allowance_account(db: AsyncSession, subscriber_id: str) -> Optional[AllowanceAccount]:
    result = await db.execute(
        select(AllowanceAccount)
        .where(AllowanceAccount.subscriber_id == subscriber_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def ensure_allowance_account(db: AsyncSession, subscriber_id: str) -> AllowanceAccount:
    """Return the subscriber's account, opening a free-trial account on first use."""
    account = await get_allowance_account(db, subscriber_id)
    if account:
        return account

    db.add(
        AllowanceAccount(
            id=str(uuid.uuid4()),
            subscriber_id=subscriber_id,
            plan_tier=FREE_TRIAL_TIER,
            subscription_status="active",
            credits_remaining=0,
            free_trial_used=False,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # Opened concurrently by another request.
        await db.rollback()
    account = await get_allowance_account(db, subscriber_id)
    if account is None:
        raise RuntimeError(f"Allowance account for {subscriber_id} could not be opened")
    return account


async def get_reservation_for_letter(db: AsyncSession, letter_id: str) -> Optional[AllowanceReservation]:
    result = await db.execute(
        select(AllowanceReservation)
        .where(AllowanceReservation.letter_id == letter_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _get_subscriber(db: AsyncSession, subscriber_id: str) -> User:
    result = await db.execute(select(User).where(User.id == subscriber_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise PermissionDeniedError(f"Unknown subscriber {subscriber_id}.")
    return user


async def _prior_letter_count(db: AsyncSession, subscriber_id: str, exclude_letter_id: Optional[str]) -> int:
    query = select(func.count(Letter.id)).where(
        Letter.user_id == subscriber_id,
        Letter.status.in_(_PRIOR_LETTER_STATUSES),
    )
    if exclude_letter_id:
        query = query.where(Letter.id != exclude_letter_id)
    result = await db.execute(query)
    return int(result.scalar() or 0)


async def _credits_remaining(db: AsyncSession, subscriber_id: str) -> int:
    result = await db.execute(
        select(AllowanceAccount.credits_remaining).where(AllowanceAccount.subscriber_id == subscriber_id)
    )
    return int(result.scalar() or 0)


async def _balance_period(db: AsyncSession, subscriber_id: str) -> Optional[str]:
    result = await db.execute(
        select(AllowanceAccount.last_reset_period).where(AllowanceAccount.subscriber_id == subscriber_id)
    )
    return result.scalar_one_or_none()


async def check_allowance(db: AsyncSession, subscriber_id: str) -> Dict[str, Any]:
    """Read-only allowance snapshot; never opens an account."""
    user_result = await db.execute(select(User.is_super_user).where(User.id == subscriber_id))
    is_unlimited = bool(user_result.scalar_one_or_none())
    account = await get_allowance_account(db, subscriber_id)

    remaining = int(account.credits_remaining) if account else 0
    tier = account.plan_tier if account else FREE_TRIAL_TIER
    free_trial_available = False
    if not (account and account.free_trial_used):
        free_trial_available = await _prior_letter_count(db, subscriber_id, None) == 0

    return {
        "has_allowance": is_unlimited or free_trial_available or remaining > 0,
        "remaining": remaining,
        "plan_tier": tier,
        "plan_name": plan_name(tier),
        "is_unlimited": is_unlimited,
        "free_trial_available": free_trial_available,
    }


async def check_letter_allowance(db: AsyncSession, subscriber_id: str) -> Dict[str, Any]:
    """Stable caller contract: {has_allowance, remaining, plan_name, is_super}."""
    snapshot = await check_allowance(db, subscriber_id)
    return {
        "has_allowance": snapshot["has_allowance"],
        "remaining": snapshot["remaining"],
        "plan_name": snapshot["plan_name"],
        "is_super": snapshot["is_unlimited"],
    }


async def _take_free_trial(db: AsyncSession, subscriber_id: str) -> bool:
    result = await db.execute(
        update(AllowanceAccount)
        .where(
            AllowanceAccount.subscriber_id == subscriber_id,
            AllowanceAccount.free_trial_used.is_(False),
        )
        .values(free_trial_used=True, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _take_credit(db: AsyncSession, subscriber_id: str) -> bool:
    # Compare-and-decrement: the guard keeps credits_remaining >= 0.
    result = await db.execute(
        update(AllowanceAccount)
        .where(
            AllowanceAccount.subscriber_id == subscriber_id,
            AllowanceAccount.credits_remaining >= 1,
        )
        .values(
            credits_remaining=AllowanceAccount.credits_remaining - 1,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def reserve(
    db: AsyncSession,
    subscriber_id: str,
    letter_id: str,
    *,
    commit: bool = True,
) -> ReservationToken:
    """
    Reserve one letter's worth of allowance for `letter_id`.

    Order of preference: unlimited (super user), the free first letter, then
    one credit. Reserving again for the same letter returns the existing
    token without charging twice. Raises InsufficientAllowanceError when
    nothing can be reserved; no partial write survives a failure.
    """
    user = await _get_subscriber(db, subscriber_id)
    existing = await get_reservation_for_letter(db, letter_id)
    if existing:
        return _token(existing)

    account = await ensure_allowance_account(db, subscriber_id)
    try:
        kind: Optional[str] = None
        if user.is_super_user:
            kind = "unlimited"
        elif not account.free_trial_used and await _prior_letter_count(db, subscriber_id, letter_id) == 0:
            if await _take_free_trial(db, subscriber_id):
                kind = "free_trial"
        if kind is None and await _take_credit(db, subscriber_id):
            kind = "credit"
        if kind is None:
            raise InsufficientAllowanceError(subscriber_id, remaining=0)

        reservation = AllowanceReservation(
            id=str(uuid.uuid4()),
            subscriber_id=subscriber_id,
            letter_id=letter_id,
            kind=kind,
            status="held",
            balance_period=await _balance_period(db, subscriber_id) if kind == "credit" else None,
        )
        db.add(reservation)
        await db.flush()

        await record_allowance_event(
            db,
            subscriber_id=subscriber_id,
            entry_type="reserve",
            delta_credits=-1 if kind == "credit" else 0,
            balance_after=await _credits_remaining(db, subscriber_id),
            reason=f"Letter reservation ({kind})",
            reservation_id=reservation.id,
            letter_id=letter_id,
        )
        if commit:
            await db.commit()
    except IntegrityError:
        # Same letter reserved concurrently; the winner's token stands.
        await db.rollback()
        existing = await get_reservation_for_letter(db, letter_id)
        if existing is None:
            raise
        return _token(existing)
    except Exception:
        await db.rollback()
        raise

    logger.info("allowance_reserved subscriber=%s letter=%s kind=%s", subscriber_id, letter_id, kind)
    return _token(reservation)


async def consume(db: AsyncSession, letter_id: str, *, commit: bool = True) -> bool:
    """Mark a held reservation consumed; returns False if it was not held."""
    reservation = await get_reservation_for_letter(db, letter_id)
    if reservation is None:
        return False
    result = await db.execute(
        update(AllowanceReservation)
        .where(AllowanceReservation.id == reservation.id, AllowanceReservation.status == "held")
        .values(status="consumed", consumed_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    await record_allowance_event(
        db,
        subscriber_id=reservation.subscriber_id,
        entry_type="consume",
        balance_after=await _credits_remaining(db, reservation.subscriber_id),
        reason=f"Letter reservation ({reservation.kind}) consumed",
        reservation_id=reservation.id,
        letter_id=letter_id,
    )
    if commit:
        await db.commit()
    return True


async def release(
    db: AsyncSession,
    token: ReservationToken,
    *,
    reason: str = "Generation failed",
    commit: bool = True,
) -> bool:
    """
    Return a held reservation to the subscriber exactly once.

    Credits are added back unless the balance has been reset (monthly reset or
    a new-period activation) since the credit was taken; the reset already
    restored the full entitlement. A released free-trial reservation makes the
    free letter available again. Returns False when the reservation was
    already consumed or released.
    """
    result = await db.execute(
        update(AllowanceReservation)
        .where(AllowanceReservation.id == token.reservation_id, AllowanceReservation.status == "held")
        .values(status="released", released_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    now = datetime.now(timezone.utc)
    delta = 0
    if token.kind == "credit":
        if token.balance_period is None:
            same_period = AllowanceAccount.last_reset_period.is_(None)
        else:
            same_period = AllowanceAccount.last_reset_period == token.balance_period
        refunded = await db.execute(
            update(AllowanceAccount)
            .where(AllowanceAccount.subscriber_id == token.subscriber_id, same_period)
            .values(credits_remaining=AllowanceAccount.credits_remaining + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        delta = refunded.rowcount
        if not delta:
            reason = f"{reason} (balance reset since reservation, no refund)"
    elif token.kind == "free_trial":
        await db.execute(
            update(AllowanceAccount)
            .where(AllowanceAccount.subscriber_id == token.subscriber_id)
            .values(free_trial_used=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    await record_allowance_event(
        db,
        subscriber_id=token.subscriber_id,
        entry_type="release",
        delta_credits=delta,
        balance_after=await _credits_remaining(db, token.subscriber_id),
        reason=reason,
        reservation_id=token.reservation_id,
        letter_id=token.letter_id,
    )
    if commit:
        await db.commit()
    logger.info(
        "allowance_released subscriber=%s letter=%s kind=%s",
        token.subscriber_id,
        token.letter_id,
        token.kind,
    )
    return True


async def release_for_letter(
    db: AsyncSession,
    letter_id: str,
    *,
    reason: str = "Generation failed",
    commit: bool = True,
) -> bool:
    reservation = await get_reservation_for_letter(db, letter_id)
    if reservation is None:
        return False
    return await release(db, _token(reservation), reason=reason, commit=commit)


async def deduct_letter_allowance(db: AsyncSession, subscriber_id: str, reservation_key: str) -> bool:
    """
    Stable caller contract: charge one letter, returning False when out of allowance.

    The charge is a `reserve` keyed by `reservation_key` (the letter id), so a
    retried call returns the existing reservation instead of charging again.
    """
    if not reservation_key:
        raise ValueError("reservation_key is required")
    try:
        await reserve(db, subscriber_id, reservation_key)
    except InsufficientAllowanceError:
        return False
    return True


async def reset_monthly(db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Restore every active account to its plan entitlement for the current period.

    Each account is guarded by its period stamp, so re-running within the same
    billing period (or racing another run) grants nothing twice.
    """
    period_key = _current_period_key(now)
    result = await db.execute(
        select(AllowanceAccount).where(
            AllowanceAccount.subscription_status == "active",
            or_(
                AllowanceAccount.last_reset_period.is_(None),
                AllowanceAccount.last_reset_period != period_key,
            ),
        )
    )
    accounts = result.scalars().all()

    granted = 0
    try:
        for account in accounts:
            entitlement = plan_entitlement(account.plan_tier)
            previous = int(account.credits_remaining or 0)
            updated = await db.execute(
                update(AllowanceAccount)
                .where(
                    AllowanceAccount.id == account.id,
                    AllowanceAccount.subscription_status == "active",
                    or_(
                        AllowanceAccount.last_reset_period.is_(None),
                        AllowanceAccount.last_reset_period != period_key,
                    ),
                )
                .values(
                    credits_remaining=entitlement,
                    last_reset_period=period_key,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                continue
            granted += 1
            await record_allowance_event(
                db,
                subscriber_id=account.subscriber_id,
                entry_type="monthly_reset",
                delta_credits=entitlement - previous,
                balance_after=entitlement,
                reason=f"Monthly allowance reset ({account.plan_tier})",
                period_key=period_key,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if granted:
        logger.info("monthly_allowance_reset period=%s granted=%s", period_key, granted)
    return {"period_key": period_key, "granted": granted, "skipped": len(accounts) - granted}


async def activate_subscription(
    db: AsyncSession,
    subscriber_id: str,
    plan_tier: str,
    *,
    now: Optional[datetime] = None,
) -> AllowanceAccount:
    """
    Activate (or change) a subscription plan.

    The current period's entitlement is granted once per period; moving to a
    richer plan mid-period adds the entitlement difference.
    """
    if plan_tier not in PLAN_TIER_ORDER:
        raise ValueError(f"Unknown plan tier: {plan_tier}")
    await _get_subscriber(db, subscriber_id)
    account = await ensure_allowance_account(db, subscriber_id)
    period_key = _current_period_key(now)
    timestamp = datetime.now(timezone.utc)

    try:
        if account.last_reset_period != period_key:
            entitlement = plan_entitlement(plan_tier)
            updated = await db.execute(
                update(AllowanceAccount)
                .where(
                    AllowanceAccount.id == account.id,
                    or_(
                        AllowanceAccount.last_reset_period.is_(None),
                        AllowanceAccount.last_reset_period != period_key,
                    ),
                )
                .values(
                    plan_tier=plan_tier,
                    subscription_status="active",
                    credits_remaining=entitlement,
                    last_reset_period=period_key,
                    updated_at=timestamp,
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 1:
                await record_allowance_event(
                    db,
                    subscriber_id=subscriber_id,
                    entry_type="activation",
                    delta_credits=entitlement - int(account.credits_remaining or 0),
                    balance_after=entitlement,
                    reason=f"Subscription activated ({plan_tier})",
                    period_key=period_key,
                )
        elif account.plan_tier != plan_tier or account.subscription_status != "active":
            bonus = max(plan_entitlement(plan_tier) - plan_entitlement(account.plan_tier), 0)
            updated = await db.execute(
                update(AllowanceAccount)
                .where(
                    AllowanceAccount.id == account.id,
                    AllowanceAccount.plan_tier == account.plan_tier,
                )
                .values(
                    plan_tier=plan_tier,
                    subscription_status="active",
                    credits_remaining=AllowanceAccount.credits_remaining + bonus,
                    updated_at=timestamp,
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 1:
                await record_allowance_event(
                    db,
                    subscriber_id=subscriber_id,
                    entry_type="plan_change",
                    delta_credits=bonus,
                    balance_after=await _credits_remaining(db, subscriber_id),
                    reason=f"Plan changed {account.plan_tier} -> {plan_tier}",
                    period_key=period_key,
                )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    return await get_allowance_account(db, subscriber_id)


async def deactivate_subscription(db: AsyncSession, subscriber_id: str, status: str = "canceled") -> AllowanceAccount:
    """Stop monthly grants; remaining credits stay spendable until used."""
    account = await ensure_allowance_account(db, subscriber_id)
    await db.execute(
        update(AllowanceAccount)
        .where(AllowanceAccount.id == account.id)
        .values(subscription_status=status, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return await get_allowance_account(db, subscriber_id)


async def get_allowance_summary(db: AsyncSession, subscriber_id: str) -> Dict[str, Any]:
    snapshot = await check_allowance(db, subscriber_id)
    entries = await list_allowance_events(db, subscriber_id)
    return {
        **snapshot,
        "period_key": _current_period_key(),
        "monthly_entitlement": plan_entitlement(snapshot["plan_tier"]),
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta_credits": entry.delta_credits,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "letter_id": entry.letter_id,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
