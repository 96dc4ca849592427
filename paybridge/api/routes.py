"""
API routes for payment orchestration.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from paybridge.core.exceptions import (
    ConfigurationError,
    PaymentError,
    PersistenceError,
)
from paybridge.core.orchestrator import PaymentOrchestrator
from paybridge.monitoring.health import HealthCheck
from paybridge.providers.base import InitiateRequest

from .dependencies import enforce_rate_limit, get_client_ip, get_orchestrator
from .schemas import (
    HealthCheckResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    TransactionStatusResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

pay_router = APIRouter(prefix="/pay", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()


def _http_error(e: PaymentError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


@pay_router.post(
    "/initiate",
    response_model=InitiatePaymentResponse,
    summary="Initiate a payment",
    description="Submit a payment to the provider serving the method and record it as pending",
    dependencies=[Depends(enforce_rate_limit)],
)
async def initiate_payment(
    payload: InitiatePaymentRequest,
    client_ip: str = Depends(get_client_ip),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Initiate a payment.

    Provider failures do not fail this call: the transaction is recorded as
    pending and resolved later by webhook or status poll.
    """
    logger.info(
        "api_initiate_payment_request",
        method=payload.method,
        amount=str(payload.amount),
        currency=payload.currency,
        order_id=payload.order_id,
    )

    try:
        result = await orchestrator.initiate(
            InitiateRequest(
                user_id=payload.user_id,
                amount=payload.amount,
                currency=payload.currency,
                method=payload.method,
                order_id=payload.order_id,
                description=payload.description,
                phone_number=payload.phone_number,
            ),
            client_ip=client_ip,
        )
    except PersistenceError as e:
        logger.error("api_initiate_payment_persistence_error", error=e.message, **e.context)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment could not be recorded",
        )
    except PaymentError as e:
        logger.warning("api_initiate_payment_rejected", error=e.message, status_code=e.status_code)
        raise _http_error(e)

    return {
        "transaction_id": result.transaction_id,
        "status": result.status.value,
        "provider": result.provider,
        "redirect_url": result.redirect_url,
        "reference_id": result.reference_id,
    }


@pay_router.get(
    "/status/{transaction_id}",
    response_model=TransactionStatusResponse,
    summary="Get transaction status",
    description="Return the stored transaction; refresh=true polls the provider while pending",
)
async def get_transaction_status(
    transaction_id: str,
    refresh: bool = False,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Get transaction status by ID."""
    try:
        transaction = await orchestrator.get_status(transaction_id, refresh=refresh)
    except PersistenceError as e:
        logger.error("api_get_status_error", transaction_id=transaction_id, error=e.message)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve transaction status",
        )
    except PaymentError as e:
        raise _http_error(e)

    return transaction.to_dict()


async def _handle_webhook(
    provider: Optional[str], request: Request, orchestrator: PaymentOrchestrator
) -> Dict[str, Any]:
    raw_body = await request.body()

    try:
        outcome = await orchestrator.handle_webhook(provider, raw_body, request.headers)
    except (PersistenceError, ConfigurationError) as e:
        logger.error(
            "api_webhook_processing_failed",
            provider=provider,
            error=e.message,
            error_type=type(e).__name__,
            **e.context,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed, please retry",
        )
    except PaymentError as e:
        logger.warning(
            "api_webhook_rejected",
            provider=provider,
            error=e.message,
            status_code=e.status_code,
        )
        raise _http_error(e)

    return {
        "ok": True,
        "status": outcome.status,
        "transaction_id": outcome.transaction_id,
        "duplicate": outcome.outcome == "duplicate",
    }


@pay_router.post(
    "/webhook",
    response_model=WebhookResponse,
    summary="Provider webhook",
    description="Webhook for callbacks that do not name a provider in the URL",
)
async def webhook(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Handle a provider callback, resolving the provider from the body."""
    return await _handle_webhook(None, request, orchestrator)


@pay_router.post(
    "/webhook/{provider}",
    response_model=WebhookResponse,
    summary="Provider webhook",
    description="Webhook endpoint registered with a specific provider",
)
async def provider_webhook(
    provider: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Handle a callback from the named provider."""
    return await _handle_webhook(provider.lower(), request, orchestrator)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness() -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
