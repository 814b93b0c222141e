"""
Invoice rendering contract and out-of-band dispatch.

Rendering happens after the order is committed and never affects it: a
failed render is retried with backoff, then left for the invoice worker,
which picks up every order still missing an invoice document.
"""
import asyncio
import uuid
from typing import Optional, Protocol, Set

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from order_reconciliation.config import Settings, get_settings
from order_reconciliation.core.stores import OrderStore
from order_reconciliation.core.types import InvoiceDocument
from order_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class InvoiceRenderer(Protocol):
    """Black-box invoice collaborator."""

    async def render_invoice(self, order_id: uuid.UUID) -> InvoiceDocument:
        ...


class HttpInvoiceRenderer:
    """Renders invoices by calling an external invoice service over HTTP."""

    def __init__(
        self,
        service_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.service_url = service_url
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def render_invoice(self, order_id: uuid.UUID) -> InvoiceDocument:
        response = await self._client.post(self.service_url, json={"order_id": str(order_id)})
        response.raise_for_status()
        body = response.json()
        return InvoiceDocument(
            invoice_number=body["invoice_number"],
            document_url=body["document_url"],
        )

    async def aclose(self) -> None:
        await self._client.aclose()


class InvoiceDispatcher:
    """
    Runs invoice rendering as background tasks.

    Keeps a reference to every in-flight task so it is not garbage
    collected mid-render, and so shutdown can drain them.
    """

    def __init__(
        self,
        renderer: InvoiceRenderer,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        order_store: Optional[OrderStore] = None,
    ) -> None:
        self.renderer = renderer
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.order_store = order_store or OrderStore()
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, order_id: uuid.UUID) -> asyncio.Task:
        """Schedule rendering for an order and return immediately."""
        task = asyncio.create_task(self.render_and_store(order_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def render_and_store(self, order_id: uuid.UUID) -> Optional[str]:
        """
        Render an invoice with retries and record its document reference.

        Returns:
            Optional[str]: Document URL, or None if every attempt failed
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.invoice_retry_max_attempts),
            wait=wait_exponential(multiplier=self.settings.invoice_retry_base_delay, max=30),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    document = await self.renderer.render_invoice(order_id)
        except Exception as e:
            metrics.record_invoice_render("failed")
            logger.error(
                "invoice_render_failed",
                order_id=str(order_id),
                error=str(e),
                error_class=type(e).__name__,
                attempts=self.settings.invoice_retry_max_attempts,
            )
            return None

        try:
            async with self.session_factory() as session:
                stored = await self.order_store.set_invoice_document(
                    session, order_id, document.document_url
                )
                await session.commit()
                order = await self.order_store.get(session, order_id)
        except Exception as e:
            metrics.record_invoice_render("failed")
            logger.error(
                "invoice_store_failed",
                order_id=str(order_id),
                document_url=document.document_url,
                error=str(e),
                error_class=type(e).__name__,
            )
            return None

        if order is not None and document.invoice_number != order.invoice_number:
            logger.warning(
                "invoice_number_mismatch",
                order_id=str(order_id),
                expected=order.invoice_number,
                rendered=document.invoice_number,
            )

        metrics.record_invoice_render("success")
        logger.info(
            "invoice_rendered",
            order_id=str(order_id),
            invoice_number=document.invoice_number,
            stored=stored,
        )
        return document.document_url

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight render to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
