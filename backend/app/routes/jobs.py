"""Jobs routes for jobflow.

Endpoints for posting jobs, buying access, applying, and driving a job
through claim, final price confirmation, dispute and cancellation.
"""

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field

from jobflow.commerce.actors import Actor, ActorRole
from jobflow.commerce.jobs.models import JobStatus

from ..auth import CurrentActor
from ..deps import AppServices
from ..rate_limit import limiter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


# =============================================================================
# Request/Response Models
# =============================================================================

JobSizeName = Literal["SMALL", "MEDIUM", "LARGE"]
AccessMethodName = Literal["CREDIT", "LEAD_PAYMENT"]


class JobCreate(BaseModel):
    """Request to post a job."""

    title: str = Field(..., min_length=1, max_length=200)
    location: str = Field(..., min_length=1)
    service_category: str = Field(..., min_length=1)
    job_size: JobSizeName = "MEDIUM"
    description: str | None = None
    budget: int | None = Field(None, gt=0, description="Budget in pence")


class JobResponse(BaseModel):
    """Job details response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    title: str
    description: str | None = None
    location: str
    service_category: str
    job_size: str
    budget: int | None = None
    lead_price: int | None = None
    status: str
    won_by_contractor_id: str | None = None
    winner_claimed_at: datetime | None = None
    winner_confirmed_at: datetime | None = None
    contractor_proposed_amount: int | None = None
    final_amount: int | None = None
    final_price_proposed_at: datetime | None = None
    final_price_timeout_at: datetime | None = None
    final_price_rejected_at: datetime | None = None
    final_price_rejection_reason: str | None = None
    customer_confirmed: bool = False
    completed_at: datetime | None = None
    completed_by_override: bool = False
    override_reason: str | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    disputed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    limit: int
    offset: int


class TransitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    from_status: str | None = None
    to_status: str
    action: str
    actor_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class AccessRequest(BaseModel):
    """Request to buy access; omit method to use the best available."""

    method: AccessMethodName | None = None


class AccessResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    contractor_id: str
    method: str
    purchased_at: datetime
    amount_paid: int = 0
    payment_reference: str | None = None
    used_trial_credit: bool = False


class ApplicationCreate(BaseModel):
    proposed_rate: int = Field(..., gt=0, description="Proposed rate in pence")
    message: str | None = Field(None, max_length=5000)


class ApplicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    contractor_id: str
    proposed_rate: int
    status: str
    message: str | None = None
    applied_at: datetime | None = None


class ProposeFinalPriceRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Final price in pence")


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class OptionalReasonRequest(BaseModel):
    reason: str | None = Field(None, max_length=2000)


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    opened_by: str
    reason: str
    kind: str
    status: str
    opened_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution: str | None = None


# =============================================================================
# Helper Functions
# =============================================================================


def to_job_response(job) -> JobResponse:
    return JobResponse.model_validate(job)


def _require_role(actor: Actor, role: ActorRole, action: str) -> None:
    if actor.role != role:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Only a {role.value} can {action}",
        )


# =============================================================================
# Routes
# =============================================================================


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_job(request: Request, body: JobCreate, actor: CurrentActor, services: AppServices):
    """Post a new job. The authenticated customer owns it."""
    _require_role(actor, ActorRole.CUSTOMER, "post a job")
    job = services.jobs.create_job(
        customer_id=actor.id,
        title=body.title,
        location=body.location,
        service_category=body.service_category,
        job_size=body.job_size,
        description=body.description,
        budget=body.budget,
    )
    logger.info("POST /jobs | customer=%s | job=%s", actor.id, job.id)
    return to_job_response(job)


@router.get("", response_model=JobListResponse)
@limiter.limit("60/minute")
async def list_jobs(
    request: Request,
    actor: CurrentActor,
    services: AppServices,
    status_filter: JobStatus | None = Query(None, alias="status"),
    mine: bool = Query(False, description="Only jobs I posted, claimed or won"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """List jobs, optionally filtered by status or restricted to my own."""
    customer_id = contractor_id = None
    if mine:
        if actor.role == ActorRole.CUSTOMER:
            customer_id = actor.id
        else:
            contractor_id = actor.id
    jobs = services.jobs.list_jobs(
        status=status_filter,
        customer_id=customer_id,
        contractor_id=contractor_id,
        limit=limit,
        offset=offset,
    )
    return JobListResponse(jobs=[to_job_response(j) for j in jobs], limit=limit, offset=offset)


@router.get("/{job_id}", response_model=JobResponse)
@limiter.limit("60/minute")
async def get_job(request: Request, job_id: str, actor: CurrentActor, services: AppServices):
    return to_job_response(services.jobs.get_job(job_id))


@router.get("/{job_id}/history", response_model=list[TransitionResponse])
@limiter.limit("60/minute")
async def get_job_history(request: Request, job_id: str, actor: CurrentActor, services: AppServices):
    """Transition history, oldest first. Visible to the customer, the winner and admins."""
    job = services.jobs.get_job(job_id)
    if actor.role != ActorRole.ADMIN and actor.id not in (job.customer_id, job.won_by_contractor_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a party to this job")
    return [TransitionResponse.model_validate(t) for t in services.jobs.history(job_id)]


@router.post("/{job_id}/access", response_model=AccessResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def purchase_access(
    request: Request, job_id: str, body: AccessRequest, actor: CurrentActor, services: AppServices
):
    """Buy access to a job with a credit or a lead payment."""
    _require_role(actor, ActorRole.CONTRACTOR, "buy access")
    access = services.jobs.purchase_access(job_id, actor.id, method=body.method)
    return AccessResponse.model_validate(access)


@router.post(
    "/{job_id}/applications",
    response_model=ApplicationResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("20/minute")
async def apply_to_job(
    request: Request, job_id: str, body: ApplicationCreate, actor: CurrentActor, services: AppServices
):
    _require_role(actor, ActorRole.CONTRACTOR, "apply to a job")
    application = services.jobs.apply_to_job(
        job_id, actor.id, proposed_rate=body.proposed_rate, message=body.message
    )
    return ApplicationResponse.model_validate(application)


@router.get("/{job_id}/applications", response_model=list[ApplicationResponse])
@limiter.limit("60/minute")
async def list_applications(request: Request, job_id: str, actor: CurrentActor, services: AppServices):
    """Applications on a job. Only the job's customer and admins can see them."""
    job = services.jobs.get_job(job_id)
    if actor.role != ActorRole.ADMIN and actor.id != job.customer_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not the job's customer")
    return [ApplicationResponse.model_validate(a) for a in services.jobs.list_applications(job_id)]


@router.post("/{job_id}/claim", response_model=JobResponse)
@limiter.limit("20/minute")
async def claim_win(
    request: Request, job_id: str, body: AccessRequest, actor: CurrentActor, services: AppServices
):
    """Claim the win. Buys access first when the contractor has none."""
    return to_job_response(services.jobs.claim_win(job_id, actor, method=body.method))


@router.post("/{job_id}/claim/confirm", response_model=JobResponse)
@limiter.limit("20/minute")
async def confirm_winner(request: Request, job_id: str, actor: CurrentActor, services: AppServices):
    return to_job_response(services.jobs.confirm_winner(job_id, actor))


@router.post("/{job_id}/claim/reject", response_model=JobResponse)
@limiter.limit("20/minute")
async def reject_claim(
    request: Request,
    job_id: str,
    body: OptionalReasonRequest,
    actor: CurrentActor,
    services: AppServices,
):
    return to_job_response(services.jobs.reject_claim(job_id, actor, reason=body.reason))


@router.post("/{job_id}/final-price", response_model=JobResponse)
@limiter.limit("20/minute")
async def propose_final_price(
    request: Request,
    job_id: str,
    body: ProposeFinalPriceRequest,
    actor: CurrentActor,
    services: AppServices,
):
    """Winning contractor proposes the final price; starts the confirmation window."""
    return to_job_response(services.jobs.propose_final_price(job_id, actor, body.amount))


@router.post("/{job_id}/final-price/confirm", response_model=JobResponse)
@limiter.limit("20/minute")
async def confirm_final_price(request: Request, job_id: str, actor: CurrentActor, services: AppServices):
    """Customer accepts the proposed price; the job completes and commission is due."""
    return to_job_response(services.jobs.confirm_final_price(job_id, actor))


@router.post("/{job_id}/final-price/reject", response_model=JobResponse)
@limiter.limit("20/minute")
async def reject_final_price(
    request: Request, job_id: str, body: ReasonRequest, actor: CurrentActor, services: AppServices
):
    return to_job_response(services.jobs.reject_final_price(job_id, actor, body.reason))


@router.post("/{job_id}/disputes", response_model=DisputeResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def open_dispute(
    request: Request, job_id: str, body: ReasonRequest, actor: CurrentActor, services: AppServices
):
    dispute = services.disputes.open_dispute(job_id, actor, body.reason)
    logger.info("POST /jobs/%s/disputes | actor=%s | dispute=%s", job_id, actor.id, dispute.id)
    return DisputeResponse.model_validate(dispute)


@router.post("/{job_id}/cancel", response_model=JobResponse)
@limiter.limit("20/minute")
async def cancel_job(
    request: Request,
    job_id: str,
    body: OptionalReasonRequest,
    actor: CurrentActor,
    services: AppServices,
):
    return to_job_response(services.jobs.cancel_job(job_id, actor, reason=body.reason))
