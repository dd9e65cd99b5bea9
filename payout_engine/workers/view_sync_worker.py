"""
View sync background worker.

Each run picks the stalest content links, fetches their current view counts
one at a time through the metrics gateway and records them in the ledger.
"""
import asyncio
import signal
import uuid
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from payout_engine.config import get_settings
from payout_engine.core.exceptions import PayoutEngineError
from payout_engine.core.ledger import ViewTrackingLedger
from payout_engine.core.metrics_gateway import MetricsGateway, ViewFetchResult, build_default_gateway
from payout_engine.database.connection import get_session_factory
from payout_engine.monitoring.logging import setup_logging
from payout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def _link_metadata(result: ViewFetchResult) -> Dict[str, Any]:
    fields = {
        "likes": result.likes,
        "comments": result.comments,
        "shares": result.shares,
        "title": result.title,
        "author": result.author,
        "source": result.source,
    }
    return {key: value for key, value in fields.items() if value is not None}


async def sync_views(
    ledger: ViewTrackingLedger,
    gateway: MetricsGateway,
    db: AsyncSession,
    campaign_id: Optional[uuid.UUID] = None,
    force: bool = False,
) -> Dict[str, int]:
    """
    Run one sync batch.

    Args:
        ledger: View tracking ledger
        gateway: Metrics gateway
        db: Database session
        campaign_id: Only sync this campaign's links
        force: Ignore the staleness window

    Returns:
        Dict[str, int]: Counts of links checked, updated, metadata-only,
            failed and rate limited
    """
    summary = {"checked": 0, "updated": 0, "metadata_only": 0, "failed": 0, "rate_limited": 0}

    links = await ledger.links_due_for_sync(db, campaign_id=campaign_id, force=force)
    targets = [(link.id, link.campaign_id, link.platform, link.content_url) for link in links]
    results = await gateway.fetch_many(url for _, _, _, url in targets)

    for (link_id, link_campaign_id, platform, url), result in zip(targets, results):
        summary["checked"] += 1
        try:
            if result.rate_limited:
                # Left stale so the next run retries it
                summary["rate_limited"] += 1
                logger.warning("view_sync_rate_limited", link_id=str(link_id), url=url)
            elif not result.ok:
                summary["failed"] += 1
                logger.warning(
                    "view_sync_fetch_failed", link_id=str(link_id), url=url, error=result.error
                )
                await ledger.touch_link(link_id, db, {"last_error": result.error})
            elif result.views is None:
                summary["metadata_only"] += 1
                await ledger.touch_link(link_id, db, _link_metadata(result))
            else:
                await ledger.record_views(
                    link_campaign_id,
                    link_id,
                    platform,
                    result.views,
                    db,
                    link_metadata=_link_metadata(result),
                )
                summary["updated"] += 1
        except PayoutEngineError as e:
            await db.rollback()
            summary["failed"] += 1
            logger.error("view_sync_record_failed", link_id=str(link_id), error=e.message)

    metrics.record_view_sync(summary["updated"])
    logger.info("view_sync_completed", **summary)
    return summary


async def start_view_sync_worker(
    interval_seconds: Optional[int] = None,
    gateway: Optional[MetricsGateway] = None,
    session_factory: Optional[Callable[[], Any]] = None,
) -> None:
    """
    Run view sync every `interval_seconds` until SIGINT/SIGTERM.

    Args:
        interval_seconds: Pause between runs (default from settings)
        gateway: Metrics gateway (default: real TikTok/Instagram clients)
        session_factory: Session factory (default: application database)
    """
    setup_logging(process="view-sync")
    interval = interval_seconds or get_settings().view_sync_interval_seconds
    gateway = gateway or build_default_gateway()
    session_factory = session_factory or get_session_factory()
    ledger = ViewTrackingLedger()

    logger.info("view_sync_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("view_sync_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                async with session_factory() as db:
                    await sync_views(ledger, gateway, db)
            except Exception as e:
                # Keep the worker alive; the next run retries
                logger.error("view_sync_execution_error", error=str(e))

            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 5)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        logger.info("view_sync_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="View sync worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sync runs"
    )
    args = parser.parse_args()

    asyncio.run(start_view_sync_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
