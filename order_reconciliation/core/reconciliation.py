"""
Order and payment reconciliation engine.

Turns a cart into a paid order while the gateway confirms the payment
asynchronously over two racing channels (signed webhook and client poll).

Exactly-once materialization rests on the datastore alone:
1. Conditional UPDATE of the pending order from a live status to consumed
2. INSERT of the order (unique on payment_reference) and its first history row
3. Both in one transaction; the loser of the race sees zero rows swapped
   and returns the winner's order

No in-process locks are held, so any number of API processes and workers
can confirm the same reference concurrently.
"""
import math
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple, Union

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_reconciliation.config import Settings, get_settings
from order_reconciliation.core.errors import (
    AlreadyConfirmed,
    GatewayError,
    IdentifierExhausted,
    IllegalTransition,
    NotFound,
    OrderError,
    PaymentFailed,
    PaymentMismatch,
    ReferenceNotFound,
    UnknownReference,
    ValidationError,
)
from order_reconciliation.core.identifiers import (
    generate_invoice_number,
    generate_order_number,
    generate_payment_reference,
)
from order_reconciliation.core.invoices import InvoiceDispatcher
from order_reconciliation.core.pricing import (
    Amount,
    calculate_total,
    from_minor_units,
    to_minor_units,
)
from order_reconciliation.core.state_machine import (
    INITIAL_STATUS,
    OrderStatus,
    can_customer_cancel,
    coerce_status,
)
from order_reconciliation.core.stores import OrderStore, PendingOrderStore, utcnow
from order_reconciliation.core.types import (
    AWAITING_PAYMENT_STATUSES,
    LIVE_PENDING_STATUSES,
    DeliveryAddress,
    GatewayStatus,
    LineItem,
    PaymentConfirmation,
    PaymentInitialization,
    PaymentState,
    PaymentStatusResult,
    PendingOrderResult,
    PendingOrderStatus,
)
from order_reconciliation.database.models import Order, PendingOrder
from order_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CLOSED_PENDING_STATUSES = (
    PendingOrderStatus.FAILED.value,
    PendingOrderStatus.CANCELLED.value,
)

MAX_PAGE_SIZE = 100

AUTHORIZATION_FIELDS = ("channel", "card_type", "bank", "last4", "brand", "country_code")


def payment_details(confirmation: PaymentConfirmation) -> Dict[str, Any]:
    """Audit record of the gateway charge stored on the order."""
    payload = confirmation.raw_payload or {}
    # webhook payloads wrap the transaction in an event envelope
    transaction = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    authorization = transaction.get("authorization")
    if not isinstance(authorization, dict):
        authorization = {}

    return {
        "source": confirmation.source.value,
        "gateway_status": confirmation.gateway_status.value,
        "amount_paid_cents": confirmation.amount_paid_cents,
        "transaction_id": transaction.get("id"),
        "channel": transaction.get("channel"),
        "fees_cents": transaction.get("fees"),
        "gateway_response": transaction.get("gateway_response"),
        "authorization": {
            key: authorization[key] for key in AUTHORIZATION_FIELDS if key in authorization
        },
        "raw": payload,
    }


class PaymentGateway(Protocol):
    """Gateway operations the engine depends on."""

    async def initialize(
        self,
        amount_cents: int,
        currency: str,
        reference: str,
        email: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentInitialization:
        ...

    async def verify(self, reference: str) -> PaymentConfirmation:
        ...


class CustomerDirectory(Protocol):
    """Resolves the email the gateway needs to start a transaction."""

    async def get_email(self, user_id: uuid.UUID) -> Optional[str]:
        ...


class ReconciliationEngine:
    """
    Orchestrates checkout, payment confirmation and order lifecycle.

    Every collaborator is injected; the engine holds no mutable state of
    its own besides them.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        invoice_dispatcher: Optional[InvoiceDispatcher] = None,
        customer_directory: Optional[CustomerDirectory] = None,
        settings: Optional[Settings] = None,
        pending_store: Optional[PendingOrderStore] = None,
        order_store: Optional[OrderStore] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            session_factory: Async session factory for the order database
            gateway: Payment gateway adapter
            invoice_dispatcher: Optional background invoice dispatcher
            customer_directory: Optional lookup for customer emails
            settings: Optional settings (defaults to environment settings)
            pending_store: Optional pending order store
            order_store: Optional order store
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.invoice_dispatcher = invoice_dispatcher
        self.customer_directory = customer_directory
        self.settings = settings or get_settings()
        self.pending_store = pending_store or PendingOrderStore()
        self.order_store = order_store or OrderStore()

        logger.info(
            "reconciliation_engine_initialized",
            invoices_enabled=invoice_dispatcher is not None,
        )

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_pending_order(
        self,
        user_id: uuid.UUID,
        cart_items: Sequence[LineItem],
        delivery_address: DeliveryAddress,
        discount: Amount = 0,
        credits: Amount = 0,
        notes: Optional[str] = None,
        email: Optional[str] = None,
    ) -> PendingOrderResult:
        """
        Freeze a cart into a pending order and start the gateway transaction.

        Args:
            user_id: Customer placing the order
            cart_items: Cart lines with captured unit prices
            delivery_address: Complete delivery address
            discount: Discount in major units
            credits: Store credits in major units
            notes: Optional delivery notes
            email: Customer email; looked up in the directory when omitted

        Returns:
            PendingOrderResult: Reference and redirect details

        Raises:
            ValidationError: Empty cart, incomplete address, zero total or no email
            InvalidPricingInput: If the totals cannot be computed
            GatewayUnavailable: Gateway down after retries (row kept as init_failed)
            GatewayRejected: Gateway refused the transaction (row kept as init_failed)
        """
        if not cart_items:
            raise ValidationError("Cart is empty")
        if not delivery_address.is_complete():
            raise ValidationError(
                "Complete delivery address (street, city, region, phone) is required"
            )

        breakdown = calculate_total(cart_items, discount, credits)
        amount_cents = to_minor_units(breakdown.amount)
        if amount_cents <= 0:
            raise ValidationError("Order total must be greater than zero")

        email = await self._resolve_email(user_id, email)

        now = utcnow()
        pending = PendingOrder(
            id=uuid.uuid4(),
            user_id=user_id,
            payment_reference=generate_payment_reference(self.settings.payment_reference_prefix),
            cart_snapshot=[item.to_snapshot() for item in cart_items],
            delivery_address=delivery_address.to_dict(),
            delivery_notes=notes,
            subtotal_cents=to_minor_units(breakdown.subtotal),
            discount_cents=to_minor_units(breakdown.discount),
            credits_cents=to_minor_units(breakdown.credits),
            amount_cents=amount_cents,
            currency=self.settings.currency,
            status=PendingOrderStatus.INITIALIZED.value,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(minutes=self.settings.pending_order_ttl_minutes),
        )

        async with self.session_factory() as session:
            await self.pending_store.add(session, pending)
            await session.commit()

        logger.info(
            "pending_order_created",
            pending_order_id=str(pending.id),
            reference=pending.payment_reference,
            user_id=str(user_id),
            amount_cents=amount_cents,
            item_count=len(cart_items),
        )

        return await self._initialize_payment(pending, email)

    async def retry_payment_initialization(
        self,
        pending_order_id: uuid.UUID,
        user_id: uuid.UUID,
        email: Optional[str] = None,
    ) -> PendingOrderResult:
        """
        Re-run gateway initialization for a pending order, reusing its reference.

        Raises:
            NotFound: Unknown pending order or owned by someone else
            AlreadyConfirmed: The payment was already turned into an order
            IllegalTransition: The pending order is closed
        """
        async with self.session_factory() as session:
            pending = await self._owned_pending(session, pending_order_id, user_id)

        if pending.status == PendingOrderStatus.PENDING.value and pending.authorization_url:
            return self._pending_result(pending)
        if pending.status == PendingOrderStatus.CONSUMED.value:
            raise AlreadyConfirmed(f"Pending order {pending_order_id} already consumed")
        if pending.status not in (
            PendingOrderStatus.INITIALIZED.value,
            PendingOrderStatus.INIT_FAILED.value,
        ):
            raise IllegalTransition(pending.status, PendingOrderStatus.PENDING.value)

        email = await self._resolve_email(user_id, email)
        logger.info(
            "retrying_payment_initialization",
            pending_order_id=str(pending_order_id),
            reference=pending.payment_reference,
        )
        return await self._initialize_payment(pending, email)

    async def _initialize_payment(self, pending: PendingOrder, email: str) -> PendingOrderResult:
        reference = pending.payment_reference
        retryable_from = (
            PendingOrderStatus.INITIALIZED.value,
            PendingOrderStatus.INIT_FAILED.value,
        )

        try:
            initialization = await self.gateway.initialize(
                amount_cents=pending.amount_cents,
                currency=pending.currency,
                reference=reference,
                email=email,
                metadata={
                    "pending_order_id": str(pending.id),
                    "user_id": str(pending.user_id),
                },
            )
        except GatewayError as e:
            async with self.session_factory() as session:
                await self.pending_store.compare_and_set_status(
                    session,
                    reference,
                    retryable_from,
                    PendingOrderStatus.INIT_FAILED.value,
                    failure_reason=e.message,
                )
                await session.commit()

            metrics.record_pending_order("init_failed", pending.currency, pending.amount_cents)
            logger.warning(
                "payment_initialization_failed",
                reference=reference,
                error_code=e.error_code,
                error=e.message,
            )
            raise

        async with self.session_factory() as session:
            swapped = await self.pending_store.compare_and_set_status(
                session,
                reference,
                retryable_from,
                PendingOrderStatus.PENDING.value,
                authorization_url=initialization.authorization_url,
                access_code=initialization.access_code,
                failure_reason=None,
            )
            await session.commit()

            if not swapped:
                # cancelled, expired or paid while the gateway call was in flight
                current = await self.pending_store.get_by_reference(session, reference)
                current_status = current.status if current is not None else "missing"
                logger.warning(
                    "pending_order_changed_during_initialization",
                    reference=reference,
                    pending_status=current_status,
                )
                if current_status == PendingOrderStatus.PENDING.value and current.authorization_url:
                    # a concurrent retry already stored its redirect
                    return self._pending_result(current)
                if current_status == PendingOrderStatus.CONSUMED.value:
                    raise AlreadyConfirmed(f"Pending order {reference} already consumed")
                raise IllegalTransition(current_status, PendingOrderStatus.PENDING.value)

        pending.status = PendingOrderStatus.PENDING.value
        pending.authorization_url = initialization.authorization_url
        pending.access_code = initialization.access_code

        metrics.record_pending_order("pending", pending.currency, pending.amount_cents)
        logger.info("payment_initialized", reference=reference)

        return self._pending_result(pending)

    # ------------------------------------------------------------------
    # Payment confirmation
    # ------------------------------------------------------------------

    async def confirm_payment(self, confirmation: PaymentConfirmation) -> Order:
        """
        Apply a gateway payment report. Idempotent.

        Any number of concurrent calls for the same reference yield the same
        single order.

        Args:
            confirmation: Webhook or poll report for one reference

        Returns:
            Order: The order for the reference (new or pre-existing)

        Raises:
            UnknownReference: No pending order and no order for the reference
            PaymentFailed: Gateway did not report success, or the pending
                order was already closed
            PaymentMismatch: Paid amount differs from the frozen amount
            IdentifierExhausted: No free order/invoice number found
        """
        start = time.perf_counter()
        source = confirmation.source.value

        try:
            order, outcome = await self._apply_confirmation(confirmation)
        except OrderError as e:
            metrics.record_confirmation(source, e.error_code, time.perf_counter() - start)
            raise
        metrics.record_confirmation(source, outcome, time.perf_counter() - start)

        if outcome == "materialized" and self.invoice_dispatcher is not None:
            self.invoice_dispatcher.dispatch(order.id)

        return order

    async def _apply_confirmation(
        self, confirmation: PaymentConfirmation
    ) -> Tuple[Order, str]:
        reference = confirmation.reference
        log = logger.bind(reference=reference, source=confirmation.source.value)

        async with self.session_factory() as session:
            pending = await self.pending_store.get_by_reference(session, reference)

            if pending is None:
                existing = await self.order_store.get_by_reference(session, reference)
                if existing is None:
                    log.warning("unknown_payment_reference")
                    raise UnknownReference(f"No pending order for reference {reference}")
                return existing, "duplicate"

            if pending.status == PendingOrderStatus.CONSUMED.value:
                existing = await self.order_store.get_by_reference(session, reference)
                if existing is not None:
                    log.info("duplicate_payment_confirmation", order_id=str(existing.id))
                    return existing, "duplicate"

            if pending.status in CLOSED_PENDING_STATUSES:
                if confirmation.gateway_status == GatewayStatus.SUCCESS:
                    log.error(
                        "payment_received_for_closed_pending_order",
                        pending_status=pending.status,
                        amount_paid_cents=confirmation.amount_paid_cents,
                        action="manual_refund_required",
                    )
                raise PaymentFailed(
                    f"Pending order {reference} is {pending.status}",
                    user_message="This payment attempt is no longer active.",
                )

            if confirmation.gateway_status != GatewayStatus.SUCCESS:
                existing = await self._close_pending(
                    session,
                    reference,
                    f"Gateway reported {confirmation.gateway_status.value}",
                    PaymentFailed(f"Payment {reference} was not successful"),
                )
                return existing, "duplicate"

            if confirmation.amount_paid_cents != pending.amount_cents:
                log.error(
                    "payment_amount_mismatch",
                    expected_cents=pending.amount_cents,
                    paid_cents=confirmation.amount_paid_cents,
                )
                existing = await self._close_pending(
                    session,
                    reference,
                    f"Amount mismatch: paid {confirmation.amount_paid_cents}, "
                    f"expected {pending.amount_cents}",
                    PaymentMismatch(f"Payment {reference} amount does not match"),
                )
                return existing, "duplicate"

        return await self._materialize(pending, confirmation)

    async def _close_pending(
        self,
        session: AsyncSession,
        reference: str,
        reason: str,
        error: OrderError,
    ) -> Order:
        """Mark a live pending order failed and raise ``error``."""
        swapped = await self.pending_store.compare_and_set_status(
            session,
            reference,
            LIVE_PENDING_STATUSES,
            PendingOrderStatus.FAILED.value,
            failure_reason=reason,
        )
        await session.commit()

        if not swapped:
            # another channel consumed the reference first
            existing = await self.order_store.get_by_reference(session, reference)
            if existing is not None:
                logger.warning(
                    "conflicting_report_after_confirmation",
                    reference=reference,
                    order_id=str(existing.id),
                    reason=reason,
                )
                return existing

        logger.info("pending_order_failed", reference=reference, reason=reason)
        raise error

    async def _materialize(
        self, pending: PendingOrder, confirmation: PaymentConfirmation
    ) -> Tuple[Order, str]:
        reference = pending.payment_reference
        max_attempts = self.settings.identifier_max_attempts

        for attempt in range(1, max_attempts + 1):
            async with self.session_factory() as session:
                now = utcnow()
                order_id = uuid.uuid4()
                try:
                    swapped = await self.pending_store.compare_and_set_status(
                        session,
                        reference,
                        LIVE_PENDING_STATUSES,
                        PendingOrderStatus.CONSUMED.value,
                        consumed_at=now,
                        order_id=order_id,
                    )
                    if not swapped:
                        await session.rollback()
                        return await self._resolve_lost_race(reference), "duplicate"

                    order = Order(
                        id=order_id,
                        order_number=generate_order_number(),
                        invoice_number=generate_invoice_number(),
                        user_id=pending.user_id,
                        line_items=list(pending.cart_snapshot),
                        delivery_address=dict(pending.delivery_address),
                        delivery_notes=pending.delivery_notes,
                        subtotal_cents=pending.subtotal_cents,
                        discount_cents=pending.discount_cents,
                        credits_cents=pending.credits_cents,
                        amount_cents=pending.amount_cents,
                        currency=pending.currency,
                        status=INITIAL_STATUS.value,
                        payment_reference=reference,
                        paid_at=confirmation.paid_at or now,
                        payment_details=payment_details(confirmation),
                        created_at=now,
                        updated_at=now,
                    )
                    await self.order_store.add(
                        session,
                        order,
                        reason=f"Payment confirmed via {confirmation.source.value}",
                    )
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    metrics.record_identifier_collision()
                    logger.warning(
                        "order_insert_conflict",
                        reference=reference,
                        attempt=attempt,
                        error=str(e.orig),
                    )
                    continue

            metrics.record_order_materialized(order.currency)
            metrics.record_status_transition("none", order.status)
            logger.info(
                "order_materialized",
                reference=reference,
                order_id=str(order.id),
                order_number=order.order_number,
                amount_cents=order.amount_cents,
                source=confirmation.source.value,
            )
            return order, "materialized"

        logger.error("identifier_exhausted", reference=reference, attempts=max_attempts)
        raise IdentifierExhausted(
            f"Could not allocate order identifiers for {reference} after {max_attempts} attempts"
        )

    async def _resolve_lost_race(self, reference: str) -> Order:
        async with self.session_factory() as session:
            existing = await self.order_store.get_by_reference(session, reference)
            if existing is not None:
                logger.info("confirmation_race_lost", reference=reference, order_id=str(existing.id))
                return existing

            pending = await self.pending_store.get_by_reference(session, reference)

        status = pending.status if pending is not None else None
        logger.error(
            "payment_received_for_closed_pending_order",
            reference=reference,
            pending_status=status,
            action="manual_refund_required",
        )
        raise PaymentFailed(
            f"Pending order {reference} closed before the payment was applied",
            user_message="This payment attempt is no longer active.",
        )

    async def check_payment_status(
        self, reference: str, user_id: Optional[uuid.UUID] = None
    ) -> PaymentStatusResult:
        """
        Report the payment status for a reference, polling the gateway if needed.

        A successful or failed poll result is applied through confirm_payment,
        so a lost webhook is recovered here.

        Args:
            reference: Payment reference
            user_id: When given, the reference must belong to this user

        Raises:
            UnknownReference: Reference not known (or not owned by user_id)
            GatewayUnavailable: Gateway could not be reached
        """
        async with self.session_factory() as session:
            order = await self.order_store.get_by_reference(session, reference)
            pending = None
            if order is None:
                pending = await self.pending_store.get_by_reference(session, reference)

        owner = order.user_id if order is not None else getattr(pending, "user_id", None)
        if owner is None or (user_id is not None and owner != user_id):
            raise UnknownReference(f"No payment found for reference {reference}")

        if order is not None:
            return PaymentStatusResult(reference, PaymentState.COMPLETED, order_id=order.id)

        if pending.status in CLOSED_PENDING_STATUSES:
            return PaymentStatusResult(
                reference, PaymentState.FAILED, detail=pending.failure_reason
            )

        try:
            confirmation = await self.gateway.verify(reference)
        except ReferenceNotFound:
            return PaymentStatusResult(reference, PaymentState.PENDING)

        if confirmation.gateway_status == GatewayStatus.ABANDONED:
            return PaymentStatusResult(reference, PaymentState.PENDING)

        try:
            order = await self.confirm_payment(confirmation)
        except (PaymentFailed, PaymentMismatch) as e:
            return PaymentStatusResult(reference, PaymentState.FAILED, detail=e.user_message)

        return PaymentStatusResult(reference, PaymentState.COMPLETED, order_id=order.id)

    # ------------------------------------------------------------------
    # Cancellation and status changes
    # ------------------------------------------------------------------

    async def cancel_pending_order(
        self, pending_order_id: uuid.UUID, user_id: uuid.UUID
    ) -> PendingOrder:
        """
        Cancel a checkout attempt before payment.

        Raises:
            NotFound: Unknown pending order or owned by someone else
            AlreadyConfirmed: A payment confirmation consumed it first
            IllegalTransition: Already failed, cancelled or otherwise closed
        """
        async with self.session_factory() as session:
            pending = await self._owned_pending(session, pending_order_id, user_id)
            swapped = await self.pending_store.compare_and_set_status(
                session,
                pending.payment_reference,
                LIVE_PENDING_STATUSES,
                PendingOrderStatus.CANCELLED.value,
                failure_reason="Cancelled by customer",
            )
            await session.commit()
            await session.refresh(pending)

        if not swapped:
            if pending.status == PendingOrderStatus.CONSUMED.value:
                raise AlreadyConfirmed(
                    f"Pending order {pending_order_id} was confirmed before cancellation"
                )
            raise IllegalTransition(pending.status, PendingOrderStatus.CANCELLED.value)

        logger.info(
            "pending_order_cancelled",
            pending_order_id=str(pending_order_id),
            reference=pending.payment_reference,
        )
        return pending

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        user_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Customer cancellation; allowed only before the order ships.

        Raises:
            NotFound: Unknown order or owned by someone else
            IllegalTransition: Order already shipped or closed
        """
        async with self.session_factory() as session:
            order = await self._owned_order(session, order_id, user_id)
            if not can_customer_cancel(order.status):
                raise IllegalTransition(order.status, OrderStatus.CANCELLED.value)

            previous = order.status
            await self.order_store.transition(
                session,
                order,
                OrderStatus.CANCELLED,
                changed_by=user_id,
                reason=reason or "Cancelled by customer",
            )
            await session.commit()

        metrics.record_status_transition(previous, order.status)
        logger.info("order_cancelled", order_id=str(order_id), from_status=previous)
        return order

    async def update_order_status(
        self,
        order_id: uuid.UUID,
        new_status: Union[OrderStatus, str],
        actor_id: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Administrative status change, validated against the state machine.

        Raises:
            NotFound: Unknown order
            IllegalTransition: Transition not allowed; nothing is written
        """
        async with self.session_factory() as session:
            order = await self.order_store.get(session, order_id)
            if order is None:
                raise NotFound(f"Order {order_id} not found", user_message="Order not found.")

            previous = order.status
            await self.order_store.transition(
                session, order, new_status, changed_by=actor_id, reason=reason
            )
            await session.commit()

        metrics.record_status_transition(previous, order.status)
        logger.info(
            "order_status_updated",
            order_id=str(order_id),
            from_status=previous,
            to_status=order.status,
            actor_id=str(actor_id) if actor_id else None,
        )
        return order

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(
        self, order_id: uuid.UUID, user_id: uuid.UUID, is_admin: bool = False
    ) -> Order:
        async with self.session_factory() as session:
            return await self._owned_order(session, order_id, user_id, is_admin)

    async def get_order_by_number(
        self, order_number: str, user_id: uuid.UUID, is_admin: bool = False
    ) -> Order:
        async with self.session_factory() as session:
            order = await self.order_store.get_by_number(session, order_number)
        if order is None or (not is_admin and order.user_id != user_id):
            raise NotFound(f"Order {order_number} not found")
        return order

    async def get_pending_order(
        self, pending_order_id: uuid.UUID, user_id: uuid.UUID
    ) -> PendingOrder:
        async with self.session_factory() as session:
            return await self._owned_pending(session, pending_order_id, user_id)

    async def list_orders(
        self,
        user_id: uuid.UUID,
        page: int = 1,
        limit: int = 10,
        status: Optional[Union[OrderStatus, str]] = None,
    ) -> Dict[str, Any]:
        """
        Page through a customer's orders, newest first.

        Returns:
            Dict with ``orders`` and ``pagination`` (page, limit, total, total_pages)
        """
        if page < 1:
            raise ValidationError("Page must be at least 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")

        status_value = None
        if status is not None:
            status_value = coerce_status(status).value

        async with self.session_factory() as session:
            orders, total = await self.order_store.list_for_user(
                session, user_id, page=page, limit=limit, status=status_value
            )

        return {
            "orders": list(orders),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
        }

    async def get_order_stats(self) -> Dict[str, Any]:
        """Order counts per status, revenue and average order value."""
        async with self.session_factory() as session:
            stats = await self.order_store.stats(session)

        stats["total_revenue"] = from_minor_units(stats["total_revenue_cents"])
        stats["average_order_value"] = from_minor_units(stats["average_order_value_cents"])
        stats["currency"] = self.settings.currency
        return stats

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def expire_pending_orders(self, now: Optional[datetime] = None) -> int:
        """
        Move unpaid pending orders past their TTL to expired.

        Expired pending orders still accept a late successful payment.

        Returns:
            int: Number of pending orders expired
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            expired = await self.pending_store.expire_overdue(
                session, AWAITING_PAYMENT_STATUSES, now
            )
            await session.commit()

        metrics.record_pending_orders_expired(expired)
        if expired:
            logger.info("pending_orders_expired", count=expired)
        return expired

    async def reconcile_pending_orders(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Poll the gateway for live pending orders and apply final results.

        Recovers payments whose webhook never arrived.

        Returns:
            Dict[str, int]: Counts of checked, confirmed, failed, still pending
                and errored references
        """
        start = time.perf_counter()
        now = utcnow()
        summary = {"checked": 0, "confirmed": 0, "failed": 0, "pending": 0, "errors": 0}

        async with self.session_factory() as session:
            candidates = await self.pending_store.list_for_reconciliation(
                session,
                LIVE_PENDING_STATUSES,
                created_after=now - timedelta(hours=self.settings.reconcile_max_age_hours),
                created_before=now - timedelta(minutes=self.settings.reconcile_min_age_minutes),
                limit=limit or self.settings.reconcile_batch_size,
            )
            references = [pending.payment_reference for pending in candidates]

        logger.info("reconciliation_sweep_started", candidates=len(references))

        for reference in references:
            summary["checked"] += 1
            try:
                confirmation = await self.gateway.verify(reference)
            except ReferenceNotFound:
                summary["pending"] += 1
                continue
            except GatewayError as e:
                summary["errors"] += 1
                logger.warning(
                    "reconciliation_verify_failed",
                    reference=reference,
                    error_code=e.error_code,
                    error=e.message,
                )
                continue

            if confirmation.gateway_status == GatewayStatus.ABANDONED:
                summary["pending"] += 1
                continue

            try:
                await self.confirm_payment(confirmation)
                summary["confirmed"] += 1
            except (PaymentFailed, PaymentMismatch):
                summary["failed"] += 1
            except OrderError as e:
                summary["errors"] += 1
                logger.error(
                    "reconciliation_confirm_failed",
                    reference=reference,
                    error_code=e.error_code,
                    error=e.message,
                )

        metrics.record_reconciliation_sweep(time.perf_counter() - start)
        logger.info("reconciliation_sweep_completed", **summary)
        return summary

    async def render_missing_invoices(self, limit: int = 50) -> int:
        """
        Re-render invoices for orders that still have no document.

        Returns:
            int: Number of invoices rendered
        """
        if self.invoice_dispatcher is None:
            return 0

        cutoff = utcnow() - timedelta(minutes=self.settings.invoice_grace_minutes)
        async with self.session_factory() as session:
            orders = await self.order_store.list_missing_invoice(session, cutoff, limit)
            order_ids = [order.id for order in orders]

        rendered = 0
        for order_id in order_ids:
            if await self.invoice_dispatcher.render_and_store(order_id):
                rendered += 1

        if order_ids:
            logger.info("missing_invoices_processed", candidates=len(order_ids), rendered=rendered)
        return rendered

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve_email(self, user_id: uuid.UUID, email: Optional[str]) -> str:
        if not email and self.customer_directory is not None:
            email = await self.customer_directory.get_email(user_id)
        if not email:
            raise ValidationError("Customer email is required to start a payment")
        return email

    async def _owned_pending(
        self, session: AsyncSession, pending_order_id: uuid.UUID, user_id: uuid.UUID
    ) -> PendingOrder:
        pending = await self.pending_store.get(session, pending_order_id)
        if pending is None or pending.user_id != user_id:
            raise NotFound(
                f"Pending order {pending_order_id} not found",
                user_message="Pending order does not exist or access denied.",
            )
        return pending

    async def _owned_order(
        self,
        session: AsyncSession,
        order_id: uuid.UUID,
        user_id: uuid.UUID,
        is_admin: bool = False,
    ) -> Order:
        order = await self.order_store.get(session, order_id)
        if order is None or (not is_admin and order.user_id != user_id):
            raise NotFound(f"Order {order_id} not found")
        return order

    @staticmethod
    def _pending_result(pending: PendingOrder) -> PendingOrderResult:
        return PendingOrderResult(
            pending_order_id=pending.id,
            payment_reference=pending.payment_reference,
            authorization_url=pending.authorization_url or "",
            access_code=pending.access_code or "",
            amount=from_minor_units(pending.amount_cents),
            amount_cents=pending.amount_cents,
        )
