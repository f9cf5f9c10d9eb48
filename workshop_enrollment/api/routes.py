"""
API routes for workshop enrollment.
"""
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from workshop_enrollment.core import EnrollmentCore
from workshop_enrollment.domain import (
    ClaimLinkResult,
    ClaimOutcome,
    Customer,
    EnrollmentDecision,
    EnrollmentResult,
    RefundOutcome,
    RefundResult,
)
from workshop_enrollment.integrations import WebhookError, WebhookHandler
from workshop_enrollment.monitoring.health import HealthCheck, HealthCheckError

from .dependencies import get_enrollment_core, get_health_check, get_webhook_handler
from .schemas import (
    AvailabilityResponse,
    ClaimResponse,
    EnrollmentResponse,
    EnrollRequest,
    EnrollResponse,
    HealthCheckResponse,
    RefundRequest,
    RefundResponse,
    WaitlistEntryResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

enrollment_router = APIRouter(tags=["enrollment"])
waitlist_router = APIRouter(prefix="/waitlist", tags=["waitlist"])
webhook_router = APIRouter(tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

ENROLL_STATUS = {
    EnrollmentDecision.RESERVED: status.HTTP_201_CREATED,
    EnrollmentDecision.WAITLISTED: status.HTTP_202_ACCEPTED,
    EnrollmentDecision.REJECTED: status.HTTP_409_CONFLICT,
}

REFUND_STATUS = {
    RefundOutcome.SUCCESS: status.HTTP_200_OK,
    RefundOutcome.ALREADY_REFUNDED: status.HTTP_409_CONFLICT,
    RefundOutcome.NO_PAYMENT_RECORD: status.HTTP_404_NOT_FOUND,
    RefundOutcome.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    RefundOutcome.PROVIDER_ERROR: status.HTTP_502_BAD_GATEWAY,
}

CLAIM_STATUS = {
    ClaimOutcome.ACCEPTED: status.HTTP_200_OK,
    ClaimOutcome.EXPIRED: status.HTTP_410_GONE,
    ClaimOutcome.INVALID: status.HTTP_404_NOT_FOUND,
    ClaimOutcome.ALREADY_CLAIMED: status.HTTP_409_CONFLICT,
    ClaimOutcome.REQUEUED: status.HTTP_409_CONFLICT,
}


def _enroll_body(result: EnrollmentResult) -> Dict[str, Any]:
    return EnrollResponse(
        status=result.decision.value,
        workshop_id=result.workshop_id,
        enrollment_id=str(result.enrollment.id) if result.enrollment else None,
        checkout_url=result.checkout.url if result.checkout else None,
        payment_reference=result.checkout.reference if result.checkout else None,
        waitlist_entry_id=str(result.waitlist_entry.id) if result.waitlist_entry else None,
        position=result.position,
        code=result.reason.value if result.reason else None,
    ).model_dump()


def _refund_body(result: RefundResult) -> Dict[str, Any]:
    return RefundResponse(
        status=result.outcome.value,
        enrollment_id=str(result.enrollment_id) if result.enrollment_id else None,
        refund_reference=result.refund_reference,
        code=result.outcome.code.value if result.outcome.code else None,
        message=result.message,
    ).model_dump()


def _claim_body(result: ClaimLinkResult) -> Dict[str, Any]:
    return ClaimResponse(
        status=result.outcome.value,
        workshop_id=result.workshop_id,
        entry_id=str(result.entry.id) if result.entry else None,
        position=result.entry.position if result.entry else None,
        enrollment_id=str(result.enrollment.id) if result.enrollment else None,
        checkout_url=result.checkout.url if result.checkout else None,
        can_rejoin=result.can_rejoin,
        code=result.outcome.code.value if result.outcome.code else None,
    ).model_dump()


@enrollment_router.post(
    "/enroll",
    response_model=EnrollResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enroll in a workshop",
    description="Reserve a seat and open a checkout, join the waitlist, or be rejected",
)
async def enroll(
    request: EnrollRequest,
    core: EnrollmentCore = Depends(get_enrollment_core),
) -> JSONResponse:
    """Request a seat in a workshop."""
    logger.info(
        "api_enroll_request",
        workshop_id=request.workshop_id,
        pricing_option=request.pricing_option,
    )
    customer = Customer(
        name=request.customer.name,
        email=request.customer.email,
        phone=request.customer.phone,
    )
    result = await core.request_enrollment(request.workshop_id, customer, request.pricing_option)
    return JSONResponse(status_code=ENROLL_STATUS[result.decision], content=_enroll_body(result))


@enrollment_router.post(
    "/refund",
    response_model=RefundResponse,
    summary="Refund an enrollment",
    description="Issue a full or partial refund for a completed enrollment",
)
async def refund(
    request: RefundRequest,
    core: EnrollmentCore = Depends(get_enrollment_core),
) -> JSONResponse:
    """Refund an enrollment and free its seat."""
    logger.info(
        "api_refund_request",
        enrollment_id=str(request.enrollment_id),
        amount_cents=request.amount_cents,
        reason=request.reason,
    )
    result = await core.on_refund_requested(
        request.enrollment_id, amount_cents=request.amount_cents, reason=request.reason
    )
    return JSONResponse(status_code=REFUND_STATUS[result.outcome], content=_refund_body(result))


@enrollment_router.get(
    "/enrollments/{enrollment_id}",
    response_model=EnrollmentResponse,
    summary="Get enrollment status",
)
async def get_enrollment(
    enrollment_id: UUID,
    core: EnrollmentCore = Depends(get_enrollment_core),
) -> Dict[str, Any]:
    """Get an enrollment by ID."""
    enrollment = await core.get_enrollment(enrollment_id)
    return {
        "id": str(enrollment.id),
        "workshop_id": enrollment.workshop_id,
        "status": enrollment.status.value,
        "amount_cents": enrollment.amount_cents,
        "currency": enrollment.currency,
        "pricing_option": enrollment.pricing_option,
        "customer_name": enrollment.customer.name,
        "customer_email": enrollment.customer.email,
        "payment_reference": enrollment.external_payment_reference,
        "refund_reference": enrollment.refund_reference,
        "refund_amount_cents": enrollment.refund_amount_cents,
        "created_at": enrollment.created_at.isoformat(),
        "updated_at": enrollment.updated_at.isoformat(),
    }


@enrollment_router.get(
    "/workshops/{workshop_id}/availability",
    response_model=AvailabilityResponse,
    summary="Workshop availability",
)
async def availability(
    workshop_id: int,
    core: EnrollmentCore = Depends(get_enrollment_core),
) -> Dict[str, Any]:
    """Remaining seats and waitlist length (may be momentarily stale)."""
    snapshot = await core.availability(workshop_id)
    remaining = snapshot.remaining
    return {
        "workshop_id": snapshot.workshop_id,
        "capacity": snapshot.capacity,
        "remaining": remaining if isinstance(remaining, int) else str(remaining),
        "waitlist_enabled": snapshot.waitlist_enabled,
        "waiting": snapshot.waiting,
    }


@waitlist_router.get(
    "/claim",
    response_model=ClaimResponse,
    summary="Claim a waitlist seat",
    description="Redeem a claim link and proceed to checkout",
)
async def claim(
    workshop_id: int = Query(..., gt=0),
    token: str = Query(..., min_length=1),
    pricing_option: Optional[str] = Query(default=None),
    core: EnrollmentCore = Depends(get_enrollment_core),
) -> JSONResponse:
    """Follow a waitlist claim link."""
    result = await core.on_claim_link(workshop_id, token, pricing_option)
    return JSONResponse(status_code=CLAIM_STATUS[result.outcome], content=_claim_body(result))


@waitlist_router.post(
    "/{entry_id}/cancel",
    response_model=WaitlistEntryResponse,
    summary="Leave the waitlist",
)
async def cancel_waitlist_entry(
    entry_id: UUID,
    workshop_id: int = Query(..., gt=0),
    core: EnrollmentCore = Depends(get_enrollment_core),
) -> Dict[str, Any]:
    """Cancel a waitlist entry; an open offer passes to the next entry."""
    entry = await core.cancel_waitlist_entry(workshop_id, entry_id)
    return {
        "id": str(entry.id),
        "workshop_id": entry.workshop_id,
        "position": entry.position,
        "status": entry.status.value,
    }


@webhook_router.post(
    "/payment-events",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Apply Stripe payment events with deduplication",
)
async def payment_events(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> JSONResponse:
    """
    Handle Stripe webhook events.

    Applied and duplicate events are acknowledged with 200; events that match
    no enrollment or cannot be applied get 422 so the provider stops retrying.
    """
    body = await request.body()
    try:
        result = await handler.handle(body, stripe_signature)
    except WebhookError as e:
        logger.error("api_webhook_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if result is None:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=WebhookResponse(status="ignored").model_dump(),
        )

    content = WebhookResponse(
        status=result.outcome.value,
        event_id=result.event_id,
        code=result.outcome.code.value if result.outcome.code else None,
        message=result.message,
    ).model_dump()
    status_code = (
        status.HTTP_200_OK
        if result.outcome.acknowledged
        else status.HTTP_422_UNPROCESSABLE_ENTITY
    )
    return JSONResponse(status_code=status_code, content=content)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        return await health_check.readiness()
    except HealthCheckError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "message": str(e), "checks": e.checks},
        ) from e


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
