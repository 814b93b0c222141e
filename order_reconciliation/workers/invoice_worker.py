"""
Invoice background worker.

Re-renders invoices for orders that have been paid but still have no
invoice document, e.g. because every in-process render attempt failed or
the process died before the render finished.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from order_reconciliation.api.dependencies import get_gateway, get_reconciliation_engine
from order_reconciliation.config import get_settings
from order_reconciliation.core.reconciliation import ReconciliationEngine
from order_reconciliation.database.connection import close_db
from order_reconciliation.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_invoice_worker(
    interval_seconds: Optional[float] = None,
    batch_size: int = 50,
    once: bool = False,
    engine: Optional[ReconciliationEngine] = None,
) -> None:
    """
    Start the invoice worker.

    Args:
        interval_seconds: Sleep between runs (defaults to settings)
        batch_size: Orders per run
        once: Run a single batch and exit
        engine: Optional engine (defaults to the process-wide engine)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.worker_poll_interval_seconds
    engine = engine or get_reconciliation_engine()

    if engine.invoice_dispatcher is None:
        logger.warning("invoice_worker_disabled", reason="invoice_service_url not configured")
        return

    logger.info("invoice_worker_starting", interval_seconds=interval, batch_size=batch_size)

    stop = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("invoice_worker_shutdown_signal_received", signal=sig)
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while not stop.is_set():
            try:
                rendered = await engine.render_missing_invoices(limit=batch_size)
                if rendered:
                    logger.info("invoice_batch_completed", rendered=rendered)
            except Exception as e:
                logger.error("invoice_batch_error", error=str(e), error_type=type(e).__name__)

            if once:
                break

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        await get_gateway().aclose()
        await close_db()
        logger.info("invoice_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Invoice worker")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between runs")
    parser.add_argument("--batch-size", type=int, default=50, help="Orders per run")
    parser.add_argument("--once", action="store_true", help="Run one batch and exit")
    args = parser.parse_args()

    asyncio.run(
        start_invoice_worker(
            interval_seconds=args.interval, batch_size=args.batch_size, once=args.once
        )
    )


if __name__ == "__main__":
    main()
