"""Map workflow errors onto HTTP responses."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from jobflow.commerce import errors

logger = logging.getLogger(__name__)

# Checked in order; subclasses must come before their bases
STATUS_BY_ERROR = [
    (errors.CommissionNotFoundError, status.HTTP_404_NOT_FOUND),
    (errors.JobNotFoundError, status.HTTP_404_NOT_FOUND),
    (errors.DisputeNotFoundError, status.HTTP_404_NOT_FOUND),
    (errors.AccountNotFoundError, status.HTTP_404_NOT_FOUND),
    (errors.DuplicateCommissionError, status.HTTP_409_CONFLICT),
    (errors.ConflictError, status.HTTP_409_CONFLICT),
    (errors.AlreadyClaimedError, status.HTTP_409_CONFLICT),
    (errors.InvalidTransitionError, status.HTTP_409_CONFLICT),
    (errors.TimeoutAlreadyResolvedError, status.HTTP_409_CONFLICT),
    (errors.DuplicateAccessError, status.HTTP_409_CONFLICT),
    (errors.DuplicateApplicationError, status.HTTP_409_CONFLICT),
    (errors.UnauthorizedError, status.HTTP_403_FORBIDDEN),
    (errors.InsufficientCreditsError, status.HTTP_402_PAYMENT_REQUIRED),
    (errors.TrialRestrictedToSmallJobsError, status.HTTP_402_PAYMENT_REQUIRED),
    (errors.PaymentFailedError, status.HTTP_402_PAYMENT_REQUIRED),
    (errors.ValidationError, status.HTTP_400_BAD_REQUEST),
    (errors.CommissionSettlementError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (errors.AuditError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(exc: errors.WorkflowError) -> int:
    for error_cls, code in STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return code
    return status.HTTP_400_BAD_REQUEST


async def workflow_error_handler(request: Request, exc: errors.WorkflowError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s -> %d %s", request.method, request.url.path, code, exc.code)
    return JSONResponse(status_code=code, content={"detail": str(exc), "code": exc.code})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(errors.WorkflowError, workflow_error_handler)
