"""Billing and letter allowance router."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import PLAN_TIER_ORDER
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, require_admin
from routers.rate_limit import rate_limit
from services.allowance import activate_subscription, get_allowance_summary, plan_name, reset_monthly

router = APIRouter()
logger = logging.getLogger(__name__)


class ActivateSubscriptionRequest(BaseModel):
    subscriber_id: str = Field(min_length=1)
    plan_tier: str = Field(min_length=1)


@router.get("/allowance")
async def allowance_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_allowance_summary(db, auth.user_id)


@router.post("/subscriptions/activate")
async def activate_subscription_plan(
    request: ActivateSubscriptionRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Called by the payment integration (or an admin) once a plan is paid for."""
    if request.plan_tier not in PLAN_TIER_ORDER:
        raise HTTPException(status_code=422, detail=f"plan_tier must be one of {list(PLAN_TIER_ORDER)}")

    account = await activate_subscription(db, request.subscriber_id, request.plan_tier)
    logger.info(
        "subscription_activated subscriber=%s plan=%s by=%s",
        request.subscriber_id,
        request.plan_tier,
        admin.user_id,
    )
    return {
        "ok": True,
        "subscriber_id": account.subscriber_id,
        "plan_tier": account.plan_tier,
        "plan_name": plan_name(account.plan_tier),
        "credits_remaining": account.credits_remaining,
        "period_key": account.last_reset_period,
    }


@router.post("/allowance/reset-monthly")
async def reset_monthly_allowances(
    _rate_limit: None = Depends(rate_limit("allowance_reset", limit=10, window_seconds=3600)),
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Administrative override of the scheduled monthly reset; safe to repeat."""
    result = await reset_monthly(db)
    logger.info("monthly_reset_override by=%s granted=%s", admin.user_id, result["granted"])
    return {"ok": True, **result}
