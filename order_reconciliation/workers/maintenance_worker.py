"""
Pending order maintenance worker.

Every cycle:
1. Expire unpaid pending orders past their TTL
2. Poll the gateway for live pending orders and confirm payments whose
   webhook never arrived
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from order_reconciliation.api.dependencies import get_gateway, get_reconciliation_engine
from order_reconciliation.config import get_settings
from order_reconciliation.core.reconciliation import ReconciliationEngine
from order_reconciliation.database.connection import close_db
from order_reconciliation.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_maintenance_cycle(engine: ReconciliationEngine) -> Dict[str, Any]:
    """
    Run one expiry pass and one reconciliation sweep.

    Returns:
        Dict[str, Any]: Expired count and the sweep summary
    """
    expired = await engine.expire_pending_orders()
    summary = await engine.reconcile_pending_orders()

    if summary["errors"]:
        logger.warning("maintenance_cycle_gateway_errors", errors=summary["errors"])

    return {"expired": expired, **summary}


async def start_maintenance_worker(
    interval_seconds: Optional[float] = None,
    once: bool = False,
    engine: Optional[ReconciliationEngine] = None,
) -> None:
    """
    Start the maintenance worker.

    Args:
        interval_seconds: Sleep between cycles (defaults to settings)
        once: Run a single cycle and exit
        engine: Optional engine (defaults to the process-wide engine)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.worker_poll_interval_seconds
    engine = engine or get_reconciliation_engine()

    logger.info("maintenance_worker_starting", interval_seconds=interval, once=once)

    stop = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("maintenance_worker_shutdown_signal_received", signal=sig)
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while not stop.is_set():
            try:
                result = await run_maintenance_cycle(engine)
                logger.info("maintenance_cycle_completed", **result)
            except Exception as e:
                # keep running; the next cycle retries
                logger.error("maintenance_cycle_error", error=str(e), error_type=type(e).__name__)

            if once:
                break

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        await get_gateway().aclose()
        await close_db()
        logger.info("maintenance_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Pending order maintenance worker")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between cycles"
    )
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    args = parser.parse_args()

    asyncio.run(start_maintenance_worker(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
