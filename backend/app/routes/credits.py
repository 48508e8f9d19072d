"""Credit account routes for jobflow contractors."""

import logging
from datetime import datetime

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, ConfigDict

from ..auth import CurrentActor
from ..deps import AppServices
from ..rate_limit import limiter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/credits", tags=["credits"])


class CreditAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    contractor_id: str
    credits_balance: int
    trial_credits: int
    has_used_free_trial: bool
    has_trial_credit: bool
    available_credits: int
    is_subscribed: bool
    weekly_credits_limit: int
    last_replenished_week: str | None = None


class CreditTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    contractor_id: str
    amount: int
    type: str
    description: str
    job_id: str | None = None
    trial: bool = False
    created_at: datetime | None = None


class ClaimDecisionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    allowed: bool
    method: str
    reason: str | None = None
    uses_trial_credit: bool = False
    lead_price: int | None = None


@router.get("/me", response_model=CreditAccountResponse)
@limiter.limit("60/minute")
async def get_my_account(request: Request, actor: CurrentActor, services: AppServices):
    return CreditAccountResponse.model_validate(services.credits.get_account(actor.id))


@router.get("/me/transactions", response_model=list[CreditTransactionResponse])
@limiter.limit("60/minute")
async def list_my_transactions(
    request: Request,
    actor: CurrentActor,
    services: AppServices,
    limit: int = Query(50, ge=1, le=500),
):
    transactions = services.credits.list_transactions(actor.id, limit=limit)
    return [CreditTransactionResponse.model_validate(t) for t in transactions]


@router.get("/me/eligibility", response_model=ClaimDecisionResponse)
@limiter.limit("60/minute")
async def check_eligibility(
    request: Request,
    actor: CurrentActor,
    services: AppServices,
    job_id: str = Query(..., min_length=1),
):
    """How (or whether) I could access a job right now. Spends nothing."""
    job = services.jobs.get_job(job_id)
    decision = services.credits.can_claim(actor.id, job.job_size, lead_price=job.lead_price)
    return ClaimDecisionResponse.model_validate(decision)
