"""Admin routes for jobflow.

Dispute resolution, lead price overrides, commission administration,
credit adjustments and a manual trigger for the timer sweep. All
endpoints require an admin token; overrides, lead prices and waivers
additionally require the override capability.
"""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field

from jobflow.commerce.disputes.models import DisputeStatus

from ..auth import AdminActor
from ..deps import AppServices
from ..rate_limit import limiter
from .commissions import CommissionResponse
from .credits import CreditAccountResponse, CreditTransactionResponse
from .jobs import DisputeResponse, JobResponse, ReasonRequest, to_job_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


# =============================================================================
# Request/Response Models
# =============================================================================


class OverrideRequest(BaseModel):
    final_amount: int = Field(..., gt=0, description="Final price in pence")
    reason: str = Field(..., min_length=1, max_length=2000)


class LeadPriceRequest(BaseModel):
    lead_price: int = Field(..., gt=0, description="Lead price in pence")
    reason: str = Field(..., min_length=1, max_length=2000)


class ConfirmPaymentRequest(BaseModel):
    payment_reference: str = Field(..., min_length=1, max_length=200)


class AccountCreate(BaseModel):
    contractor_id: str = Field(..., min_length=1)
    is_subscribed: bool = False
    weekly_credits_limit: int | None = Field(None, ge=0)
    grant_trial: bool = True


class SubscriptionUpdate(BaseModel):
    is_subscribed: bool
    weekly_credits_limit: int | None = Field(None, ge=0)


class CreditAdjustment(BaseModel):
    amount: int = Field(..., description="Credits to add (positive) or remove (negative)")
    reason: str = Field(..., min_length=1, max_length=2000)


class AuditRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    action: str
    actor_id: str
    subject_type: str
    subject_id: str
    reason: str | None = None
    old_state: str | None = None
    new_state: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


# =============================================================================
# Disputes
# =============================================================================


@router.get("/disputes", response_model=list[DisputeResponse])
@limiter.limit("60/minute")
async def list_disputes(
    request: Request,
    admin: AdminActor,
    services: AppServices,
    status_filter: DisputeStatus | None = Query(None, alias="status"),
    job_id: str | None = None,
):
    disputes = services.disputes.list_disputes(status=status_filter, job_id=job_id)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.post("/jobs/{job_id}/override", response_model=JobResponse)
@limiter.limit("10/minute")
async def override_job(
    request: Request, job_id: str, body: OverrideRequest, admin: AdminActor, services: AppServices
):
    """Force a disputed or stuck job to COMPLETED with an explicit final amount."""
    job = services.disputes.admin_override(job_id, admin, body.final_amount, body.reason)
    logger.info("POST /admin/jobs/%s/override | admin=%s", job_id, admin.id)
    return to_job_response(job)


@router.post("/jobs/{job_id}/lead-price", response_model=JobResponse)
@limiter.limit("10/minute")
async def set_lead_price(
    request: Request, job_id: str, body: LeadPriceRequest, admin: AdminActor, services: AppServices
):
    """Override the lead price of a job that is still POSTED."""
    job = services.jobs.set_lead_price(job_id, body.lead_price, body.reason, admin)
    logger.info("POST /admin/jobs/%s/lead-price | admin=%s | price=%d", job_id, admin.id, job.lead_price)
    return to_job_response(job)


# =============================================================================
# Commissions
# =============================================================================


@router.post("/commissions/{commission_id}/confirm-payment", response_model=CommissionResponse)
@limiter.limit("30/minute")
async def confirm_commission_payment(
    request: Request,
    commission_id: str,
    body: ConfirmPaymentRequest,
    admin: AdminActor,
    services: AppServices,
):
    """Record a commission paid outside the gateway."""
    commission = services.credits.confirm_commission_payment(commission_id, body.payment_reference)
    return CommissionResponse.model_validate(commission)


@router.post("/commissions/{commission_id}/waive", response_model=CommissionResponse)
@limiter.limit("10/minute")
async def waive_commission(
    request: Request,
    commission_id: str,
    body: ReasonRequest,
    admin: AdminActor,
    services: AppServices,
):
    commission = services.credits.waive_commission(commission_id, admin, body.reason)
    return CommissionResponse.model_validate(commission)


# =============================================================================
# Credit accounts
# =============================================================================


@router.post(
    "/credits/accounts",
    response_model=CreditAccountResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("30/minute")
async def open_account(request: Request, body: AccountCreate, admin: AdminActor, services: AppServices):
    account = services.credits.open_account(
        body.contractor_id,
        is_subscribed=body.is_subscribed,
        weekly_credits_limit=body.weekly_credits_limit,
        grant_trial=body.grant_trial,
    )
    return CreditAccountResponse.model_validate(account)


@router.post("/credits/{contractor_id}/subscription", response_model=CreditAccountResponse)
@limiter.limit("30/minute")
async def update_subscription(
    request: Request,
    contractor_id: str,
    body: SubscriptionUpdate,
    admin: AdminActor,
    services: AppServices,
):
    account = services.credits.set_subscription(
        contractor_id, body.is_subscribed, weekly_credits_limit=body.weekly_credits_limit
    )
    return CreditAccountResponse.model_validate(account)


@router.post("/credits/{contractor_id}/adjust", response_model=CreditTransactionResponse)
@limiter.limit("30/minute")
async def adjust_credits(
    request: Request,
    contractor_id: str,
    body: CreditAdjustment,
    admin: AdminActor,
    services: AppServices,
):
    tx = services.credits.adjust_credits(contractor_id, body.amount, body.reason, admin)
    return CreditTransactionResponse.model_validate(tx)


# =============================================================================
# Maintenance
# =============================================================================


@router.post("/sweep")
@limiter.limit("6/minute")
async def run_sweep(request: Request, admin: AdminActor, services: AppServices):
    """Run one timer sweep now. Safe to call while a background sweeper runs."""
    report = services.sweeper.run_once()
    logger.info("POST /admin/sweep | admin=%s | ok=%s", admin.id, report.ok)
    return report.to_dict()


@router.get("/audit", response_model=list[AuditRecordResponse])
@limiter.limit("60/minute")
async def list_audit_records(
    request: Request,
    admin: AdminActor,
    services: AppServices,
    subject_id: str | None = None,
    action: str | None = None,
):
    records = services.audit.records(subject_id=subject_id, action=action)
    return [AuditRecordResponse.model_validate(r) for r in records]
