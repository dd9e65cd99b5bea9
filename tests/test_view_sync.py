"""
Tests for the view sync worker.
"""
import uuid
from decimal import Decimal
from typing import Dict, Iterable, List

import pytest

from payout_engine.core.metrics_gateway import ViewFetchResult
from payout_engine.database.models import Platform
from payout_engine.workers.view_sync_worker import sync_views

INSTAGRAM_URL = "https://www.instagram.com/p/CxYz123/"
TIKTOK_URL = "https://www.tiktok.com/@jane/video/7234567890"


class FakeGateway:
    """Gateway double returning scripted results per URL."""

    def __init__(self, results: Dict[str, ViewFetchResult]):
        self.results = results
        self.requested: List[str] = []

    async def fetch_many(self, content_urls: Iterable[str]) -> List[ViewFetchResult]:
        urls = list(content_urls)
        self.requested.extend(urls)
        return [self.results[url] for url in urls]


@pytest.mark.integration
class TestSyncViews:
    """Test one sync batch."""

    @pytest.mark.asyncio
    async def test_views_recorded_and_metadata_merged(self, ledger, campaign, test_db):
        creator_id = uuid.uuid4()
        link = await ledger.register_link(campaign.id, creator_id, TIKTOK_URL, test_db)
        gateway = FakeGateway(
            {
                TIKTOK_URL: ViewFetchResult(
                    url=TIKTOK_URL,
                    ok=True,
                    platform=Platform.TIKTOK,
                    views=25_000,
                    likes=900,
                    source="research_api",
                )
            }
        )

        summary = await sync_views(ledger, gateway, test_db)

        assert summary["checked"] == 1
        assert summary["updated"] == 1
        record = (await ledger.list_records(campaign.id, test_db, creator_id=creator_id))[0]
        assert record.views_tracked == 25_000
        assert record.payout_calculated == Decimal("250.00")
        stored = await ledger.get_link(link.id, test_db)
        assert stored.link_metadata == {"likes": 900, "source": "research_api"}

    @pytest.mark.asyncio
    async def test_metadata_only_source_keeps_views(self, ledger, campaign, test_db):
        link = await ledger.register_link(campaign.id, uuid.uuid4(), INSTAGRAM_URL, test_db)
        await ledger.record_views(campaign.id, link.id, "instagram", 4_000, test_db)
        gateway = FakeGateway(
            {
                INSTAGRAM_URL: ViewFetchResult(
                    url=INSTAGRAM_URL, ok=True, platform=Platform.INSTAGRAM, title="Launch", source="oembed"
                )
            }
        )

        summary = await sync_views(ledger, gateway, test_db, force=True)

        assert summary["metadata_only"] == 1
        stored = await ledger.get_link(link.id, test_db)
        assert stored.views_tracked == 4_000
        assert stored.link_metadata["title"] == "Launch"

    @pytest.mark.asyncio
    async def test_failures_do_not_block_batch(self, ledger, campaign, test_db):
        creator_id = uuid.uuid4()
        broken = await ledger.register_link(campaign.id, creator_id, INSTAGRAM_URL, test_db)
        await ledger.register_link(campaign.id, creator_id, TIKTOK_URL, test_db)
        gateway = FakeGateway(
            {
                INSTAGRAM_URL: ViewFetchResult.failure(INSTAGRAM_URL, "Post not found"),
                TIKTOK_URL: ViewFetchResult(url=TIKTOK_URL, ok=True, views=100),
            }
        )

        summary = await sync_views(ledger, gateway, test_db)

        assert summary["failed"] == 1
        assert summary["updated"] == 1
        stored = await ledger.get_link(broken.id, test_db)
        assert stored.last_view_check is not None
        assert stored.link_metadata == {"last_error": "Post not found"}

        # Both links were checked, so nothing is due until they go stale
        assert await ledger.links_due_for_sync(test_db) == []

    @pytest.mark.asyncio
    async def test_rate_limited_links_stay_due(self, ledger, campaign, test_db):
        link = await ledger.register_link(campaign.id, uuid.uuid4(), TIKTOK_URL, test_db)
        gateway = FakeGateway(
            {TIKTOK_URL: ViewFetchResult.failure(TIKTOK_URL, "TikTok rate limit exceeded", rate_limited=True)}
        )

        summary = await sync_views(ledger, gateway, test_db)

        assert summary["rate_limited"] == 1
        due = await ledger.links_due_for_sync(test_db)
        assert [l.id for l in due] == [link.id]

    @pytest.mark.asyncio
    async def test_campaign_filter(self, ledger, campaign, test_db):
        await ledger.register_link(campaign.id, uuid.uuid4(), TIKTOK_URL, test_db)
        gateway = FakeGateway({})

        summary = await sync_views(ledger, gateway, test_db, campaign_id=uuid.uuid4())

        assert summary["checked"] == 0
        assert gateway.requested == []
