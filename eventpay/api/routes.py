"""
API routes for charges, webhooks, settlement and creator reports.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from eventpay.api.dependencies import get_container, require_admin_key, require_cron_secret
from eventpay.api.schemas import (
    BalanceResponse,
    ChargeResponse,
    CreateChargeRequest,
    HealthCheckResponse,
    PaymentProfileRequest,
    PaymentProfileResponse,
    PayoutResponse,
    QuoteRequest,
    QuoteResponse,
    RefundRequest,
    SettlementRunResponse,
    SplitResponse,
    TransactionResponse,
    WebhookResponse,
)
from eventpay.core.checkout import ChargeRequest
from eventpay.core.errors import (
    ConsistencyError,
    DisbursementError,
    GatewayError,
    GatewayErrorCategory,
    IdempotencyConflict,
    InvalidStateError,
    NoPaymentProfile,
    NotFoundError,
    SecurityError,
    SettlementError,
    ValidationError,
)
from eventpay.core.models import CreatorPaymentProfile, RawWebhook, TransactionStatus, utcnow
from eventpay.services import ServiceContainer

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
creator_router = APIRouter(prefix="/creators", tags=["creators"])
monitoring_router = APIRouter(tags=["monitoring"])

GATEWAY_ERROR_STATUS = {
    GatewayErrorCategory.DECLINED: status.HTTP_402_PAYMENT_REQUIRED,
    GatewayErrorCategory.CONFIG: status.HTTP_502_BAD_GATEWAY,
    GatewayErrorCategory.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_status(error: SettlementError) -> int:
    """HTTP status for a settlement error."""
    if isinstance(error, GatewayError):
        return GATEWAY_ERROR_STATUS[error.category]
    if isinstance(error, IdempotencyConflict):
        return status.HTTP_409_CONFLICT
    if isinstance(error, (ValidationError, SecurityError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (InvalidStateError, NoPaymentProfile, ConsistencyError)):
        return status.HTTP_409_CONFLICT
    if isinstance(error, DisbursementError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_error(error: SettlementError, event: str, **context: Any) -> HTTPException:
    code = error_status(error)
    log = logger.warning if code < 500 else logger.error
    log(event, error=str(error), error_type=type(error).__name__, status_code=code, **context)
    detail: Dict[str, Any] = {"error": type(error).__name__, "message": str(error)}
    if isinstance(error, GatewayError):
        detail["code"] = error.code
        detail["category"] = error.category.value
    return HTTPException(status_code=code, detail=detail)


@payment_router.post(
    "/quote",
    response_model=QuoteResponse,
    summary="Quote fees",
    description="Compute the payment split for a ticket price without charging",
)
async def quote(
    request: QuoteRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Fee quote for a prospective sale."""
    try:
        fees = container.fee_calculator
        currency = fees.validate_currency(request.gateway_id, request.currency)
        split = fees.split(
            request.gross_amount,
            request.gateway_id,
            request.creator_tier,
            request.pass_fee_to_customer,
        )
    except SettlementError as e:
        raise to_http_error(e, "api_quote_error")
    return {
        "gateway_id": request.gateway_id,
        "currency": currency,
        "split": SplitResponse.from_domain(split),
    }


@payment_router.post(
    "/charges",
    response_model=ChargeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Initiate a charge",
    description="Start a ticket payment; repeated requests with the same Idempotency-Key return the original",
)
async def create_charge(
    request: CreateChargeRequest,
    response: Response,
    idempotency_key: str = Header(..., alias="Idempotency-Key", min_length=1, max_length=255),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Initiate a charge and return the data the client needs to continue."""
    logger.info(
        "api_create_charge_request",
        gateway=request.gateway_id.value,
        gross_amount=request.gross_amount,
        currency=request.currency,
        creator_id=request.metadata.creator_id,
    )
    try:
        result = await container.charges.initiate_charge(
            ChargeRequest(
                gross_amount=request.gross_amount,
                currency=request.currency,
                gateway_id=request.gateway_id,
                event_id=request.metadata.event_id,
                ticket_id=request.metadata.ticket_id,
                creator_id=request.metadata.creator_id,
                idempotency_key=idempotency_key,
                creator_tier=request.creator_tier,
                pass_fee_to_customer=request.pass_fee_to_customer,
                payer_msisdn=request.payer_msisdn,
                connected_account_id=request.connected_account_id,
                description=request.description,
            )
        )
    except SettlementError as e:
        raise to_http_error(e, "api_create_charge_error", idempotency_key=idempotency_key)

    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return {
        "transaction": TransactionResponse.from_domain(result.transaction),
        "split": SplitResponse.from_domain(result.split),
        "continuation": result.continuation,
        "replayed": result.replayed,
    }


@payment_router.get(
    "/transactions/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get transaction",
)
async def get_transaction(
    transaction_id: str,
    container: ServiceContainer = Depends(get_container),
) -> TransactionResponse:
    try:
        transaction = await container.charges.get_transaction(transaction_id)
    except SettlementError as e:
        raise to_http_error(e, "api_get_transaction_error", transaction_id=transaction_id)
    return TransactionResponse.from_domain(transaction)


@payment_router.post(
    "/transactions/{transaction_id}/capture",
    response_model=TransactionResponse,
    summary="Capture an approved payment",
)
async def capture_transaction(
    transaction_id: str,
    container: ServiceContainer = Depends(get_container),
) -> TransactionResponse:
    try:
        transaction = await container.charges.capture(transaction_id)
    except SettlementError as e:
        raise to_http_error(e, "api_capture_error", transaction_id=transaction_id)
    return TransactionResponse.from_domain(transaction)


@payment_router.post(
    "/transactions/{transaction_id}/poll",
    response_model=TransactionResponse,
    summary="Query the gateway for the payment outcome",
)
async def poll_transaction(
    transaction_id: str,
    container: ServiceContainer = Depends(get_container),
) -> TransactionResponse:
    try:
        transaction = await container.charges.poll(transaction_id)
    except SettlementError as e:
        raise to_http_error(e, "api_poll_error", transaction_id=transaction_id)
    return TransactionResponse.from_domain(transaction)


@payment_router.post(
    "/transactions/{transaction_id}/refund",
    response_model=TransactionResponse,
    summary="Refund a completed payment",
)
async def refund_transaction(
    transaction_id: str,
    request: RefundRequest,
    container: ServiceContainer = Depends(get_container),
) -> TransactionResponse:
    logger.info("api_refund_request", transaction_id=transaction_id, reason=request.reason)
    try:
        transaction = await container.charges.refund(transaction_id, request.reason)
    except SettlementError as e:
        raise to_http_error(e, "api_refund_error", transaction_id=transaction_id)
    return TransactionResponse.from_domain(transaction)


@webhook_router.post(
    "/{gateway_id}",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
    description="Verify and apply a payment notification from Stripe, PayPal or mobile money",
)
async def gateway_webhook(
    gateway_id: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """
    Handle a provider notification.

    Answers 200 for every authentic delivery, including duplicates and
    deliveries that change nothing; 500 asks the provider to retry.
    """
    raw = RawWebhook.build(
        body=await request.body(),
        headers=dict(request.headers),
        query=dict(request.query_params),
    )
    try:
        return await container.webhooks.handle(gateway_id, raw)
    except (SecurityError, NotFoundError) as e:
        raise to_http_error(e, "api_webhook_rejected", gateway=gateway_id)
    except Exception as e:
        logger.error("api_webhook_unexpected_error", gateway=gateway_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )


@admin_router.api_route(
    "/settlement/run",
    methods=["GET", "POST"],
    response_model=SettlementRunResponse,
    summary="Run settlement",
    description="Recover, poll, aggregate and disburse; called by the scheduler",
    dependencies=[Depends(require_cron_secret)],
)
async def run_settlement(
    window_end: Optional[datetime] = None,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    summary = await container.scheduler.run(window_end)
    return summary.to_dict()


@admin_router.post(
    "/payouts/{payout_id}/retry",
    response_model=PayoutResponse,
    summary="Retry a failed payout",
    dependencies=[Depends(require_cron_secret)],
)
async def retry_payout(
    payout_id: str,
    container: ServiceContainer = Depends(get_container),
) -> PayoutResponse:
    try:
        payout = await container.processor.retry(payout_id)
    except SettlementError as e:
        raise to_http_error(e, "api_payout_retry_error", payout_id=payout_id)
    return PayoutResponse.from_domain(payout)


@admin_router.get(
    "/creators/{creator_id}/payment-profile",
    response_model=PaymentProfileResponse,
    summary="Get a creator's payment profile",
    dependencies=[Depends(require_admin_key)],
)
async def get_payment_profile(
    creator_id: str,
    container: ServiceContainer = Depends(get_container),
) -> PaymentProfileResponse:
    profile = await container.repository.get_profile(creator_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment profile not found")
    return PaymentProfileResponse.from_domain(profile)


@admin_router.put(
    "/creators/{creator_id}/payment-profile",
    response_model=PaymentProfileResponse,
    summary="Create or replace a creator's payment profile",
    dependencies=[Depends(require_admin_key)],
)
async def put_payment_profile(
    creator_id: str,
    request: PaymentProfileRequest,
    container: ServiceContainer = Depends(get_container),
) -> PaymentProfileResponse:
    profile = CreatorPaymentProfile(
        creator_id=creator_id,
        preferred_method=request.preferred_method,
        momo_number=request.momo_number,
        momo_network=request.momo_network,
        stripe_connect_account_id=request.stripe_connect_account_id,
        paypal_email=request.paypal_email,
        minimum_payout_amount=request.minimum_payout_amount,
        payout_schedule=request.payout_schedule,
        is_verified=request.is_verified,
        updated_at=utcnow(),
    )
    await container.repository.save_profile(profile)
    logger.info(
        "payment_profile_saved",
        creator_id=creator_id,
        method=profile.preferred_method.value,
        verified=profile.is_verified,
    )
    return PaymentProfileResponse.from_domain(profile)


@creator_router.get(
    "/{creator_id}/transactions",
    response_model=List[TransactionResponse],
    summary="List a creator's transactions",
)
async def list_creator_transactions(
    creator_id: str,
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    limit: int = 100,
    container: ServiceContainer = Depends(get_container),
) -> List[TransactionResponse]:
    transactions = await container.repository.list_transactions(
        creator_id=creator_id, status=status_filter, limit=min(max(limit, 1), 500)
    )
    return [TransactionResponse.from_domain(t) for t in transactions]


@creator_router.get(
    "/{creator_id}/payouts",
    response_model=List[PayoutResponse],
    summary="List a creator's payouts",
)
async def list_creator_payouts(
    creator_id: str,
    container: ServiceContainer = Depends(get_container),
) -> List[PayoutResponse]:
    payouts = await container.repository.list_payouts(creator_id=creator_id)
    return [PayoutResponse.from_domain(p) for p in payouts]


@creator_router.get(
    "/{creator_id}/balance",
    response_model=List[BalanceResponse],
    summary="Creator balance per currency",
)
async def creator_balance(
    creator_id: str,
    container: ServiceContainer = Depends(get_container),
) -> List[Dict[str, Any]]:
    balances = await container.reporting.creator_balance(creator_id)
    return [b.to_dict() for b in balances]


@creator_router.get(
    "/{creator_id}/analytics",
    summary="Creator sales analytics",
)
async def creator_analytics(
    creator_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    if start and end and start > end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start must not be after end")
    return await container.reporting.creator_analytics(creator_id, start, end)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await container.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await container.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await container.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
