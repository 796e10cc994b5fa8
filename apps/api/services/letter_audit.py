"""Append-only audit recording for letter transitions and allowance events."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.allowance_ledger import AllowanceLedgerEntry
from models.letter import Letter
from models.letter_audit import LetterAuditEntry
from services.errors import LetterNotFoundError

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


async def record_letter_event(
    db: AsyncSession,
    *,
    letter_id: str,
    actor: str,
    action: str,
    old_status: Optional[str] = None,
    new_status: Optional[str] = None,
    notes: Optional[str] = None,
    is_transition: bool = False,
) -> LetterAuditEntry:
    """Stage one audit row in the caller's transaction; the caller commits."""
    entry = LetterAuditEntry(
        letter_id=letter_id,
        actor=actor or SYSTEM_ACTOR,
        action=action,
        old_status=old_status,
        new_status=new_status,
        is_transition=is_transition,
        notes=notes,
        created_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    await db.flush()
    return entry


async def log_letter_audit(
    db: AsyncSession,
    letter_id: str,
    action: str,
    old_status: Optional[str] = None,
    new_status: Optional[str] = None,
    notes: Optional[str] = None,
    *,
    actor: str = SYSTEM_ACTOR,
) -> None:
    """
    Record an informational audit note for a letter.

    Notes never count as transitions, so status replay is unaffected by them.
    """
    result = await db.execute(select(Letter.id).where(Letter.id == letter_id))
    if result.scalar_one_or_none() is None:
        raise LetterNotFoundError(letter_id)
    await record_letter_event(
        db,
        letter_id=letter_id,
        actor=actor,
        action=action,
        old_status=old_status,
        new_status=new_status,
        notes=notes,
    )
    await db.commit()


async def record_allowance_event(
    db: AsyncSession,
    *,
    subscriber_id: str,
    entry_type: str,
    delta_credits: int = 0,
    balance_after: Optional[int] = None,
    reason: Optional[str] = None,
    reservation_id: Optional[str] = None,
    letter_id: Optional[str] = None,
    period_key: Optional[str] = None,
) -> AllowanceLedgerEntry:
    entry = AllowanceLedgerEntry(
        subscriber_id=subscriber_id,
        entry_type=entry_type,
        delta_credits=int(delta_credits),
        balance_after=balance_after,
        reason=reason,
        reservation_id=reservation_id,
        letter_id=letter_id,
        period_key=period_key,
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_letter_audit(db: AsyncSession, letter_id: str) -> List[LetterAuditEntry]:
    result = await db.execute(
        select(LetterAuditEntry)
        .where(LetterAuditEntry.letter_id == letter_id)
        .order_by(LetterAuditEntry.id.asc())
    )
    return list(result.scalars().all())


async def list_audit_between(
    db: AsyncSession,
    start: datetime,
    end: datetime,
    *,
    limit: int = 500,
) -> List[LetterAuditEntry]:
    """Audit rows with start <= created_at < end, oldest first."""
    result = await db.execute(
        select(LetterAuditEntry)
        .where(LetterAuditEntry.created_at >= start, LetterAuditEntry.created_at < end)
        .order_by(LetterAuditEntry.id.asc())
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())


async def list_allowance_events(
    db: AsyncSession,
    subscriber_id: str,
    *,
    limit: int = 30,
) -> List[AllowanceLedgerEntry]:
    result = await db.execute(
        select(AllowanceLedgerEntry)
        .where(AllowanceLedgerEntry.subscriber_id == subscriber_id)
        .order_by(AllowanceLedgerEntry.created_at.desc())
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())


async def replay_letter_status(db: AsyncSession, letter_id: str) -> Optional[str]:
    """
    Rebuild a letter's status from its transition history.

    Raises ValueError if the recorded chain is broken (an entry whose
    old_status is not the previous entry's new_status).
    """
    status: Optional[str] = None
    for entry in await list_letter_audit(db, letter_id):
        if not entry.is_transition:
            continue
        if entry.old_status != status:
            raise ValueError(
                f"Audit chain broken for letter {letter_id} at entry {entry.id}: "
                f"expected old_status={status}, found {entry.old_status}"
            )
        status = entry.new_status
    return status
