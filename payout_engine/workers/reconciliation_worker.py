"""
Reconciliation background worker.

Polls the rails for processing payouts every few minutes. Webhooks settle
most payouts first; this catches the deliveries that never arrive.
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from payout_engine.config import get_settings
from payout_engine.core.orchestrator import build_orchestrator
from payout_engine.core.reconciliation import ReconciliationEngine
from payout_engine.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation(engine: ReconciliationEngine) -> Dict[str, int]:
    """Run one pass and flag anything the rails could not answer for."""
    logger.info("scheduled_reconciliation_started")
    summary = await engine.run_once()

    if summary["errors"]:
        logger.warning(
            "reconciliation_errors_detected",
            errors=summary["errors"],
            checked=summary["checked"],
        )
    return summary


async def start_reconciliation_worker(
    interval_seconds: Optional[int] = None,
    engine: Optional[ReconciliationEngine] = None,
) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Pause between passes (default from settings)
        engine: Reconciliation engine (default: real rails)
    """
    setup_logging(process="reconciliation")
    interval = interval_seconds or get_settings().reconciliation_interval_seconds
    engine = engine or ReconciliationEngine(build_orchestrator())

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_reconciliation(engine)
            except Exception as e:
                # Continue running even if one pass fails
                logger.error("reconciliation_execution_error", error=str(e))

            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 5)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between reconciliation passes"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
