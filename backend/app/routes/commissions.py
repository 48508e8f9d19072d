"""Commission routes for jobflow contractors."""

import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict

from jobflow.commerce.actors import ActorRole
from jobflow.commerce.credits.models import CommissionStatus

from ..auth import CurrentActor
from ..deps import AppServices
from ..rate_limit import limiter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/commissions", tags=["commissions"])


class CommissionResponse(BaseModel):
    """Commission owed on a completed job. Amounts are in pence."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    contractor_id: str
    final_job_amount: int
    commission_rate: Decimal
    commission_amount: int
    vat_amount: int
    total_amount: int
    due_date: datetime
    status: str
    created_at: datetime | None = None
    paid_at: datetime | None = None
    payment_reference: str | None = None
    overdue_at: datetime | None = None
    waived_at: datetime | None = None
    waived_by: str | None = None
    waiver_reason: str | None = None


@router.get("/me", response_model=list[CommissionResponse])
@limiter.limit("60/minute")
async def list_my_commissions(
    request: Request,
    actor: CurrentActor,
    services: AppServices,
    status_filter: CommissionStatus | None = Query(None, alias="status"),
):
    commissions = services.credits.list_commissions(contractor_id=actor.id, status=status_filter)
    return [CommissionResponse.model_validate(c) for c in commissions]


@router.get("/{commission_id}", response_model=CommissionResponse)
@limiter.limit("60/minute")
async def get_commission(request: Request, commission_id: str, actor: CurrentActor, services: AppServices):
    commission = services.credits.get_commission(commission_id)
    if actor.role != ActorRole.ADMIN and actor.id != commission.contractor_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your commission")
    return CommissionResponse.model_validate(commission)


@router.post("/{commission_id}/pay", response_model=CommissionResponse)
@limiter.limit("10/minute")
async def pay_commission(request: Request, commission_id: str, actor: CurrentActor, services: AppServices):
    """Charge the owing contractor and mark the commission PAID."""
    commission = services.credits.pay_commission(commission_id, actor)
    logger.info("POST /commissions/%s/pay | contractor=%s", commission_id, actor.id)
    return CommissionResponse.model_validate(commission)
