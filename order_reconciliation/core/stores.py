"""
Pending order and order stores.

Thin data-access layer over the ORM models. Stores never commit: the
caller owns the transaction so that a compare-and-swap on the pending
order and the insert of its Order land (or roll back) together.

Status changes go through conditional UPDATEs
(``... WHERE status IN (expected)``) so concurrent writers in other
processes are serialized by the database alone.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from order_reconciliation.core.errors import IllegalTransition
from order_reconciliation.core.state_machine import (
    OrderStatus,
    StatusLike,
    validate_transition,
)
from order_reconciliation.database.models import Order, OrderStatusHistory, PendingOrder

logger = structlog.get_logger(__name__)

# Orders in these states no longer count towards revenue
NON_REVENUE_STATUSES = (OrderStatus.CANCELLED.value, OrderStatus.FAILED.value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingOrderStore:
    """Persistence for checkout attempts, keyed by payment reference."""

    async def add(self, session: AsyncSession, pending_order: PendingOrder) -> PendingOrder:
        session.add(pending_order)
        await session.flush()
        return pending_order

    async def get(
        self, session: AsyncSession, pending_order_id: uuid.UUID
    ) -> Optional[PendingOrder]:
        return await session.get(PendingOrder, pending_order_id)

    async def get_by_reference(
        self, session: AsyncSession, reference: str
    ) -> Optional[PendingOrder]:
        result = await session.execute(
            select(PendingOrder).where(PendingOrder.payment_reference == reference)
        )
        return result.scalar_one_or_none()

    async def compare_and_set_status(
        self,
        session: AsyncSession,
        reference: str,
        expected: Iterable[str],
        new_status: str,
        **values: Any,
    ) -> bool:
        """
        Move a pending order to ``new_status`` only if it is in ``expected``.

        Args:
            session: Open session; the caller commits
            reference: Payment reference of the pending order
            expected: Statuses the row must currently be in
            new_status: Target status
            **values: Extra columns to set in the same statement

        Returns:
            bool: True if this call performed the swap, False if another
                writer got there first (or the row is in another state)
        """
        stmt = (
            update(PendingOrder)
            .where(
                PendingOrder.payment_reference == reference,
                PendingOrder.status.in_(tuple(expected)),
            )
            .values(status=new_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        swapped = result.rowcount == 1

        logger.debug(
            "pending_order_cas",
            reference=reference,
            new_status=new_status,
            swapped=swapped,
        )
        return swapped

    async def list_for_reconciliation(
        self,
        session: AsyncSession,
        statuses: Iterable[str],
        created_after: datetime,
        created_before: datetime,
        limit: int = 100,
    ) -> Sequence[PendingOrder]:
        """Live pending orders inside the age window, oldest first."""
        result = await session.execute(
            select(PendingOrder)
            .where(
                PendingOrder.status.in_(tuple(statuses)),
                PendingOrder.created_at > created_after,
                PendingOrder.created_at < created_before,
            )
            .order_by(PendingOrder.created_at)
            .limit(limit)
        )
        return result.scalars().all()

    async def expire_overdue(
        self, session: AsyncSession, statuses: Iterable[str], now: datetime
    ) -> int:
        """
        Mark every pending order in ``statuses`` whose TTL has passed as expired.

        Single conditional UPDATE, so a confirmation racing the sweep either
        consumes the row first or finds it expired (which is still live).
        """
        result = await session.execute(
            update(PendingOrder)
            .where(
                PendingOrder.status.in_(tuple(statuses)),
                PendingOrder.expires_at < now,
            )
            .values(status="expired", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class OrderStore:
    """Persistence for materialized orders and their status history."""

    async def add(
        self,
        session: AsyncSession,
        order: Order,
        changed_by: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Insert an order together with its creation history entry.

        Raises:
            sqlalchemy.exc.IntegrityError: On a duplicate payment reference,
                order number or invoice number
        """
        validate_transition(None, order.status)
        order.status_history.append(
            OrderStatusHistory(
                from_status=None,
                to_status=order.status,
                changed_by=changed_by,
                reason=reason,
                created_at=order.created_at,
            )
        )
        session.add(order)
        await session.flush()
        return order

    async def get(self, session: AsyncSession, order_id: uuid.UUID) -> Optional[Order]:
        return await session.get(Order, order_id)

    async def get_by_reference(self, session: AsyncSession, reference: str) -> Optional[Order]:
        result = await session.execute(select(Order).where(Order.payment_reference == reference))
        return result.scalar_one_or_none()

    async def get_by_number(self, session: AsyncSession, order_number: str) -> Optional[Order]:
        result = await session.execute(select(Order).where(Order.order_number == order_number))
        return result.scalar_one_or_none()

    async def transition(
        self,
        session: AsyncSession,
        order: Order,
        new_status: StatusLike,
        changed_by: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Change an order's status and append the history entry.

        The update is conditional on the status the caller observed, so two
        concurrent transitions cannot both succeed.

        Raises:
            IllegalTransition: If the move is not allowed, or the order
                changed underneath the caller
        """
        current = order.status
        target = validate_transition(current, new_status)
        now = utcnow()

        result = await session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == current)
            .values(status=target.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.refresh(order, ["status"])
            raise IllegalTransition(order.status, target.value)

        session.add(
            OrderStatusHistory(
                order_id=order.id,
                from_status=current,
                to_status=target.value,
                changed_by=changed_by,
                reason=reason,
                created_at=now,
            )
        )
        await session.flush()
        await session.refresh(order)
        return order

    async def list_for_user(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
    ) -> Tuple[Sequence[Order], int]:
        """
        Page through a user's orders, newest first.

        Returns:
            Tuple of (orders on this page, total matching orders)
        """
        conditions = [Order.user_id == user_id]
        if status is not None:
            conditions.append(Order.status == status)

        total = await session.scalar(select(func.count()).select_from(Order).where(*conditions))
        result = await session.execute(
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc(), Order.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return result.scalars().all(), int(total or 0)

    async def list_missing_invoice(
        self,
        session: AsyncSession,
        created_before: datetime,
        limit: int = 50,
    ) -> Sequence[Order]:
        result = await session.execute(
            select(Order)
            .where(Order.invoice_document_ref.is_(None), Order.created_at < created_before)
            .order_by(Order.created_at)
            .limit(limit)
        )
        return result.scalars().all()

    async def set_invoice_document(
        self, session: AsyncSession, order_id: uuid.UUID, document_ref: str
    ) -> bool:
        """Record the rendered invoice; first writer wins."""
        result = await session.execute(
            update(Order)
            .where(Order.id == order_id, Order.invoice_document_ref.is_(None))
            .values(invoice_document_ref=document_ref, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def stats(self, session: AsyncSession) -> Dict[str, Any]:
        """Order counts per status plus revenue over orders that stand."""
        rows = await session.execute(
            select(Order.status, func.count(), func.coalesce(func.sum(Order.amount_cents), 0))
            .group_by(Order.status)
        )

        by_status = {status.value: 0 for status in OrderStatus}
        revenue_cents = 0
        revenue_orders = 0
        for status, count, amount in rows.all():
            by_status[status] = int(count)
            if status not in NON_REVENUE_STATUSES:
                revenue_cents += int(amount)
                revenue_orders += int(count)

        return {
            "total_orders": sum(by_status.values()),
            "by_status": by_status,
            "total_revenue_cents": revenue_cents,
            "average_order_value_cents": (
                revenue_cents // revenue_orders if revenue_orders else 0
            ),
        }
