"""Reviewer endpoints: the priority queue and review decisions."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import get_reviewer
from routers.letters import LetterResponse, serialize_letter
from services.actors import Reviewer
from services.admission import (
    approve_letter,
    claim_next_for_review,
    complete_letter,
    reject_letter,
)
from services.review_queue import calculate_letter_priority, list_review_queue

router = APIRouter()
logger = logging.getLogger(__name__)


class ApproveLetterRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=5000)
    final_content: Optional[str] = Field(default=None, max_length=50000)


class RejectLetterRequest(BaseModel):
    reason: str = Field(min_length=3, max_length=5000)
    notes: Optional[str] = Field(default=None, max_length=5000)


@router.get("/queue")
async def get_review_queue(
    limit: int = Query(default=50, ge=1, le=200),
    reviewer: Reviewer = Depends(get_reviewer),
    db: AsyncSession = Depends(get_db),
):
    items = await list_review_queue(db)
    return {"count": len(items), "items": items[:limit]}


@router.post("/next")
async def claim_next_letter(
    reviewer: Reviewer = Depends(get_reviewer),
    db: AsyncSession = Depends(get_db),
):
    """Claim the highest-priority pending letter (pending_review -> under_review)."""
    claimed = await claim_next_for_review(db, reviewer)
    if claimed is None:
        return {"claimed": False, "letter": None}
    logger.info("review_claimed letter=%s reviewer=%s", claimed["letter_id"], reviewer.user_id)
    return {"claimed": True, "letter": claimed}


@router.get("/letters/{letter_id}/priority")
async def get_letter_priority(
    letter_id: str,
    reviewer: Reviewer = Depends(get_reviewer),
    db: AsyncSession = Depends(get_db),
):
    score = await calculate_letter_priority(db, letter_id)
    return {"letter_id": letter_id, "priority_score": round(score, 2)}


@router.post("/letters/{letter_id}/approve", response_model=LetterResponse)
async def approve_claimed_letter(
    letter_id: str,
    request: ApproveLetterRequest,
    reviewer: Reviewer = Depends(get_reviewer),
    db: AsyncSession = Depends(get_db),
):
    letter = await approve_letter(
        db,
        reviewer,
        letter_id,
        notes=request.notes,
        final_content=request.final_content,
    )
    return serialize_letter(letter)


@router.post("/letters/{letter_id}/reject", response_model=LetterResponse)
async def reject_claimed_letter(
    letter_id: str,
    request: RejectLetterRequest,
    reviewer: Reviewer = Depends(get_reviewer),
    db: AsyncSession = Depends(get_db),
):
    letter = await reject_letter(db, reviewer, letter_id, reason=request.reason, notes=request.notes)
    return serialize_letter(letter)


@router.post("/letters/{letter_id}/complete", response_model=LetterResponse)
async def complete_approved_letter(
    letter_id: str,
    reviewer: Reviewer = Depends(get_reviewer),
    db: AsyncSession = Depends(get_db),
):
    letter = await complete_letter(db, reviewer, letter_id)
    return serialize_letter(letter)
