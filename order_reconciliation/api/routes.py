"""
API routes for orders, payment confirmation and monitoring.

Domain errors (OrderError) propagate to the application's exception
handler, which renders the error envelope.
"""
import time
import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from order_reconciliation.core.errors import PaymentFailed
from order_reconciliation.core.reconciliation import MAX_PAGE_SIZE, ReconciliationEngine
from order_reconciliation.core.state_machine import OrderStatus
from order_reconciliation.core.types import PaymentState
from order_reconciliation.integrations.webhook_handler import WebhookError, WebhookHandler
from order_reconciliation.monitoring.health import HealthCheck

from .dependencies import (
    CurrentUser,
    get_current_user,
    get_health_check,
    get_reconciliation_engine,
    get_webhook_handler,
    require_admin,
)
from .schemas import (
    ApiResponse,
    CancelOrderRequest,
    CreateOrderRequest,
    HealthCheckResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatsResponse,
    PaginationResponse,
    PaymentStatusResponse,
    PendingOrderCreatedResponse,
    PendingOrderResponse,
    UpdateOrderStatusRequest,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
admin_router = APIRouter(prefix="/orders", tags=["admin"])
webhook_router = APIRouter(prefix="/orders/webhook", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


# ============================================================================
# WEBHOOKS
# ============================================================================

@webhook_router.post(
    "/paystack",
    response_model=WebhookResponse,
    summary="Paystack webhook endpoint",
    description="Receive signed charge events from Paystack",
)
async def paystack_webhook(
    request: Request,
    x_signature: Optional[str] = Header(default=None, alias="X-Signature"),
    x_paystack_signature: Optional[str] = Header(default=None, alias="X-Paystack-Signature"),
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> Any:
    """
    Handle Paystack webhook events.

    200 for processed, ignored, duplicate and terminal outcomes; 400 for a bad
    signature or body; 500 for transient failures so the gateway redelivers.
    """
    raw_body = await request.body()

    try:
        return await handler.handle(raw_body, x_signature or x_paystack_signature)

    except WebhookError as e:
        logger.warning("api_webhook_rejected", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except Exception as e:
        logger.error("api_webhook_unexpected_error", error=str(e), error_type=type(e).__name__)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "message": "Webhook processing failed"},
        )


# ============================================================================
# ADMIN
# ============================================================================

@admin_router.get(
    "/admin/stats",
    response_model=ApiResponse[OrderStatsResponse],
    summary="Order statistics",
)
async def order_stats(
    admin: CurrentUser = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ApiResponse[OrderStatsResponse]:
    stats = await engine.get_order_stats()
    return ApiResponse(data=OrderStatsResponse(**stats))


@admin_router.put(
    "/{order_id}/status",
    response_model=ApiResponse[OrderResponse],
    summary="Update order status",
    description="Move an order through the status state machine (admin only)",
)
async def update_order_status(
    order_id: uuid.UUID,
    request: UpdateOrderStatusRequest,
    admin: CurrentUser = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ApiResponse[OrderResponse]:
    logger.info(
        "api_update_order_status",
        order_id=str(order_id),
        to_status=request.status.value,
        admin_id=str(admin.user_id),
    )
    order = await engine.update_order_status(
        order_id, request.status, actor_id=admin.user_id, reason=request.reason
    )
    return ApiResponse(
        message="Order status updated",
        data=OrderResponse.model_validate(order),
    )


# ============================================================================
# ORDERS
# ============================================================================

@order_router.post(
    "",
    response_model=ApiResponse[PendingOrderCreatedResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create a pending order",
    description="Freeze the cart and start a Paystack transaction",
)
async def create_order(
    request: CreateOrderRequest,
    user: CurrentUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ApiResponse[PendingOrderCreatedResponse]:
    start_time = time.time()

    logger.info(
        "api_create_order_request",
        user_id=str(user.user_id),
        item_count=len(request.items),
    )

    result = await engine.create_pending_order(
        user_id=user.user_id,
        cart_items=[item.to_line_item() for item in request.items],
        delivery_address=request.delivery_address.to_address(),
        discount=request.discount,
        credits=request.credits,
        notes=request.notes,
        email=user.email,
    )

    logger.info(
        "api_create_order_success",
        reference=result.payment_reference,
        duration_seconds=time.time() - start_time,
    )

    return ApiResponse(
        message="Order created. Complete payment to confirm.",
        data=PendingOrderCreatedResponse.model_validate(result),
    )


@order_router.post(
    "/verify-payment",
    response_model=ApiResponse[VerifyPaymentResponse],
    summary="Verify a payment",
    description="Poll Paystack for a reference and confirm the order if paid",
)
async def verify_payment(
    request: VerifyPaymentRequest,
    response: Response,
    user: CurrentUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ApiResponse[VerifyPaymentResponse]:
    result = await engine.check_payment_status(request.reference, user_id=user.user_id)

    if result.status == PaymentState.FAILED:
        raise PaymentFailed(
            f"Payment {request.reference} failed: {result.detail}",
            user_message=result.detail or "Payment was not successful.",
        )

    if result.status == PaymentState.PENDING:
        response.status_code = status.HTTP_202_ACCEPTED
        return ApiResponse(
            message="Payment is still pending",
            data=VerifyPaymentResponse(status=result.status),
        )

    order = await engine.get_order(result.order_id, user.user_id)
    return ApiResponse(
        message="Payment verified",
        data=VerifyPaymentResponse(
            status=result.status, order=OrderResponse.model_validate(order)
        ),
    )


@order_router.get(
    "/payment-status",
    response_model=ApiResponse[PaymentStatusResponse],
    summary="Payment status",
)
async def payment_status(
    reference: str = Query(..., min_length=1, max_length=100),
    user: CurrentUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ApiResponse[PaymentStatusResponse]:
    result = await engine.check_payment_status(reference, user_id=user.user_id)
    return ApiResponse(data=PaymentStatusResponse.model_validate(result))


@order_router.get(
    "",
    response_model=ApiResponse[OrderListResponse],
    summary="List my orders",
)
async def list_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=MAX_PAGE_SIZE),
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    user: CurrentUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ApiResponse[OrderListResponse]:
    result = await engine.list_orders(user.user_id, page=page, limit=limit, status=order_status)
    return ApiResponse(
        data=OrderListResponse(
            orders=[OrderResponse.model_validate(order) for order in result["orders"]],
            pagination=PaginationResponse(**result["pagination"]),
        )
    )


@order_router.get(
    "/number/{order_number}",
    response_model=ApiResponse[OrderResponse],
    summary="Get order by number",
)
async def get_order_by_number(
    order_number: str,
    user: CurrentUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ApiResponse[OrderResponse]:
    order = await engine.get_order_by_number(order_number, user.user_id, is_admin=user.is_admin)
    return ApiResponse(data=OrderResponse.model_validate(order))


@order_router.get(
    "/pending/{pending_order_id}",
    response_model=ApiResponse[PendingOrderResponse],
    summary="Get pending order",
)
async def get_pending_order(
    pending_order_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ApiResponse[PendingOrderResponse]:
    pending = await engine.get_pending_order(pending_order_id, user.user_id)
    return ApiResponse(data=PendingOrderResponse.model_validate(pending))


@order_router.post(
    "/pending/{pending_order_id}/cancel",
    response_model=ApiResponse[PendingOrderResponse],
    summary="Cancel pending order",
)
async def cancel_pending_order(
    pending_order_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ApiResponse[PendingOrderResponse]:
    pending = await engine.cancel_pending_order(pending_order_id, user.user_id)
    return ApiResponse(
        message="Pending order cancelled",
        data=PendingOrderResponse.model_validate(pending),
    )


@order_router.post(
    "/pending/{pending_order_id}/retry-payment",
    response_model=ApiResponse[PendingOrderCreatedResponse],
    summary="Retry payment initialization",
)
async def retry_payment(
    pending_order_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ApiResponse[PendingOrderCreatedResponse]:
    result = await engine.retry_payment_initialization(
        pending_order_id, user.user_id, email=user.email
    )
    return ApiResponse(data=PendingOrderCreatedResponse.model_validate(result))


@order_router.get(
    "/{order_id}",
    response_model=ApiResponse[OrderResponse],
    summary="Get order",
)
async def get_order(
    order_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ApiResponse[OrderResponse]:
    order = await engine.get_order(order_id, user.user_id, is_admin=user.is_admin)
    return ApiResponse(data=OrderResponse.model_validate(order))


@order_router.post(
    "/{order_id}/cancel",
    response_model=ApiResponse[OrderResponse],
    summary="Cancel order",
    description="Customer cancellation; only before the order ships",
)
async def cancel_order(
    order_id: uuid.UUID,
    request: Optional[CancelOrderRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ApiResponse[OrderResponse]:
    reason = request.reason if request is not None else None
    order = await engine.cancel_order(order_id, user.user_id, reason=reason)
    return ApiResponse(
        message="Order cancelled",
        data=OrderResponse.model_validate(order),
    )


# ============================================================================
# MONITORING
# ============================================================================

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
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
