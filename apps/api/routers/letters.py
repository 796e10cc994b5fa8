"""Subscriber-facing letter endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.letter import Letter
from models.letter_audit import LetterAuditEntry
from routers.auth_scope import get_letter_viewer, get_subscriber
from routers.rate_limit import rate_limit
from services.actors import Reviewer, Subscriber
from services.admission import (
    create_letter,
    fail_generation,
    get_letter_for_actor,
    letter_audit_for_actor,
    letter_queue_position,
    resubmit_letter,
    schedule_letter_generation,
    submit_letter,
)
from services.intake import LetterIntake
from services.letter_workflow import LetterStatus

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateLetterRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    letter_type: str = Field(min_length=1, max_length=80)
    intake: LetterIntake


class ResubmitLetterRequest(BaseModel):
    intake: LetterIntake


class LetterResponse(BaseModel):
    id: str
    title: str
    letter_type: str
    status: str
    is_first_document: bool
    intake_data: Dict[str, Any]
    ai_draft_content: Optional[str] = None
    final_content: Optional[str] = None
    rejection_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[str] = None
    submitted_at: Optional[str] = None
    review_started_at: Optional[str] = None
    reviewed_at: Optional[str] = None
    completed_at: Optional[str] = None
    generation: Optional[str] = None


class AuditEntryResponse(BaseModel):
    id: int
    actor: str
    action: str
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_letter(letter: Letter, *, generation: Optional[str] = None, include_draft: bool = True) -> LetterResponse:
    return LetterResponse(
        id=letter.id,
        title=letter.title,
        letter_type=letter.letter_type,
        status=letter.status,
        is_first_document=bool(letter.is_first_document),
        intake_data=dict(letter.intake_data or {}),
        ai_draft_content=letter.ai_draft_content if include_draft else None,
        final_content=letter.final_content,
        rejection_reason=letter.rejection_reason,
        failure_reason=letter.failure_reason,
        created_at=_iso(letter.created_at),
        submitted_at=_iso(letter.submitted_at),
        review_started_at=_iso(letter.review_started_at),
        reviewed_at=_iso(letter.reviewed_at),
        completed_at=_iso(letter.completed_at),
        generation=generation,
    )


def serialize_audit_entry(entry: LetterAuditEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        actor=entry.actor,
        action=entry.action,
        old_status=entry.old_status,
        new_status=entry.new_status,
        notes=entry.notes,
        created_at=_iso(entry.created_at),
    )


def _subscriber_view(letter: Letter, generation: Optional[str] = None) -> LetterResponse:
    # The AI draft stays internal until a reviewer has signed off.
    visible = letter.status in (LetterStatus.APPROVED.value, LetterStatus.COMPLETED.value)
    return serialize_letter(letter, generation=generation, include_draft=visible)


@router.post("", response_model=LetterResponse, status_code=201)
async def create_letter_draft(
    request: CreateLetterRequest,
    subscriber: Subscriber = Depends(get_subscriber),
    db: AsyncSession = Depends(get_db),
):
    try:
        letter = await create_letter(
            db,
            subscriber,
            title=request.title,
            letter_type=request.letter_type,
            intake=request.intake,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _subscriber_view(letter)


@router.get("/{letter_id}", response_model=LetterResponse)
async def get_letter_detail(
    letter_id: str,
    viewer: Union[Subscriber, Reviewer] = Depends(get_letter_viewer),
    db: AsyncSession = Depends(get_db),
):
    letter = await get_letter_for_actor(db, viewer, letter_id)
    if isinstance(viewer, Reviewer):
        return serialize_letter(letter)
    return _subscriber_view(letter)


@router.post("/{letter_id}/submit", response_model=LetterResponse)
async def submit_letter_for_review(
    letter_id: str,
    background_tasks: BackgroundTasks,
    _rate_limit: None = Depends(rate_limit("letter_submit", limit=10, window_seconds=3600)),
    subscriber: Subscriber = Depends(get_subscriber),
    db: AsyncSession = Depends(get_db),
):
    """Reserve allowance and start drafting. 402 when no allowance is left."""
    letter = await submit_letter(db, subscriber, letter_id)
    mode = await _start_generation(db, letter, background_tasks)
    return _subscriber_view(letter, generation=mode)


@router.post("/{letter_id}/resubmit", response_model=LetterResponse)
async def resubmit_rejected_letter(
    letter_id: str,
    request: ResubmitLetterRequest,
    background_tasks: BackgroundTasks,
    _rate_limit: None = Depends(rate_limit("letter_submit", limit=10, window_seconds=3600)),
    subscriber: Subscriber = Depends(get_subscriber),
    db: AsyncSession = Depends(get_db),
):
    letter = await resubmit_letter(db, subscriber, letter_id, request.intake)
    mode = await _start_generation(db, letter, background_tasks)
    return _subscriber_view(letter, generation=mode)


@router.get("/{letter_id}/queue-position")
async def get_queue_position(
    letter_id: str,
    viewer: Union[Subscriber, Reviewer] = Depends(get_letter_viewer),
    db: AsyncSession = Depends(get_db),
):
    position = await letter_queue_position(db, viewer, letter_id)
    return {"letter_id": letter_id, "queue_position": position, "in_queue": position is not None}


@router.get("/{letter_id}/audit", response_model=List[AuditEntryResponse])
async def get_letter_audit(
    letter_id: str,
    viewer: Union[Subscriber, Reviewer] = Depends(get_letter_viewer),
    db: AsyncSession = Depends(get_db),
):
    entries = await letter_audit_for_actor(db, viewer, letter_id)
    return [serialize_audit_entry(entry) for entry in entries]


async def _start_generation(db: AsyncSession, letter: Letter, background_tasks: BackgroundTasks) -> str:
    stamp = letter.submitted_at or letter.updated_at
    attempt_key = str(int(stamp.timestamp())) if stamp else "0"
    try:
        return schedule_letter_generation(letter.id, attempt_key, background_tasks)
    except Exception as exc:
        logger.exception("generation_dispatch_failed letter=%s", letter.id)
        await fail_generation(
            db,
            letter.id,
            f"QueueUnavailable: {exc}",
            release_reason="Generation queue unavailable",
        )
        raise HTTPException(
            status_code=503,
            detail="Generation queue unavailable. Check Redis/worker availability and retry.",
        ) from exc
