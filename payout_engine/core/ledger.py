"""
View tracking ledger.

Keeps per-link view totals and the per (campaign, creator) aggregate that
payouts are computed from:
- Each sync reports a link's current total; totals never go down
- The aggregate is the sum over all of the creator's links in the campaign
- The aggregate is clamped to the campaign's max_views before pricing
- Payout is recomputed while pending and frozen once decided
"""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from payout_engine.config import get_settings
from payout_engine.core.calculator import calculate_payout
from payout_engine.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from payout_engine.core.links import parse_content_url
from payout_engine.database.models import (
    Campaign,
    ContentLink,
    PayoutStatus,
    Platform,
    ViewTrackingRecord,
)

logger = structlog.get_logger(__name__)


class ViewTrackingLedger:
    """Source of truth for what each creator has earned so far."""

    def __init__(
        self,
        stale_after_seconds: Optional[int] = None,
        sync_batch_size: Optional[int] = None,
    ):
        settings = get_settings()
        self.stale_after_seconds = (
            settings.view_sync_stale_after_seconds
            if stale_after_seconds is None
            else stale_after_seconds
        )
        self.sync_batch_size = sync_batch_size or settings.view_sync_batch_size

    async def _get_campaign(self, campaign_id: uuid.UUID, db: AsyncSession) -> Campaign:
        campaign = await db.get(Campaign, campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        if campaign.payment_model != "cpm":
            raise ValidationError(
                "View tracking only available for CPM campaigns", field="campaign_id"
            )
        return campaign

    async def _get_brand_campaign(
        self, campaign_id: uuid.UUID, brand_id: uuid.UUID, db: AsyncSession
    ) -> Campaign:
        campaign = await self._get_campaign(campaign_id, db)
        # Another brand's campaign is reported as missing
        if campaign.brand_id != brand_id:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def register_link(
        self,
        campaign_id: uuid.UUID,
        creator_id: uuid.UUID,
        content_url: str,
        db: AsyncSession,
        is_selected: bool = False,
    ) -> ContentLink:
        """
        Start tracking a content URL for a creator in a campaign.

        Raises:
            ValidationError: If the URL is not a supported post/video URL
            NotFoundError: If the campaign does not exist
        """
        parsed = parse_content_url(content_url)
        await self._get_campaign(campaign_id, db)

        link = ContentLink(
            id=uuid.uuid4(),
            campaign_id=campaign_id,
            creator_id=creator_id,
            platform=parsed.platform.value,
            content_url=parsed.url,
            post_id=parsed.post_id,
            is_selected=is_selected,
            views_tracked=0,
        )
        db.add(link)
        await db.flush()
        await self._recompute(campaign_id, creator_id, db)
        await db.commit()

        logger.info(
            "content_link_registered",
            link_id=str(link.id),
            campaign_id=str(campaign_id),
            platform=link.platform,
        )
        return link

    async def record_views(
        self,
        campaign_id: uuid.UUID,
        content_link_id: uuid.UUID,
        platform: Union[Platform, str],
        views: int,
        db: AsyncSession,
        creator_id: Optional[uuid.UUID] = None,
        content_url: Optional[str] = None,
        link_metadata: Optional[Dict[str, Any]] = None,
        brand_id: Optional[uuid.UUID] = None,
    ) -> ViewTrackingRecord:
        """
        Record the current view total for a content link.

        Args:
            campaign_id: Campaign the link belongs to
            content_link_id: Link id; inserted if new
            platform: instagram or tiktok
            views: Current total reported by the platform (not a delta)
            db: Database session
            creator_id: Required when the link is new
            content_url: Required when the link is new
            link_metadata: Likes, comments, shares etc. merged into the link
            brand_id: When set, the campaign must belong to this brand

        Returns:
            ViewTrackingRecord: Updated (campaign, creator) aggregate

        Raises:
            ValidationError: Negative views, unknown platform, or a new link
                without creator/URL
            NotFoundError: If the campaign does not exist, or belongs to another brand
        """
        if views is None or views < 0:
            raise ValidationError("views must be a non-negative integer", field="views")
        try:
            platform = Platform(platform)
        except ValueError as e:
            raise ValidationError(f"Unsupported platform: {platform}", field="platform") from e

        if brand_id is None:
            await self._get_campaign(campaign_id, db)
        else:
            await self._get_brand_campaign(campaign_id, brand_id, db)
        now = datetime.now(timezone.utc)

        link = await db.get(ContentLink, content_link_id)
        if link is None:
            if creator_id is None or not content_url:
                raise ValidationError(
                    "creator_id and content_url are required for a new content link",
                    field="content_link_id",
                )
            link = ContentLink(
                id=content_link_id,
                campaign_id=campaign_id,
                creator_id=creator_id,
                platform=platform.value,
                content_url=content_url,
                views_tracked=views,
            )
            db.add(link)
        else:
            if link.campaign_id != campaign_id:
                raise ValidationError(
                    "Content link belongs to a different campaign", field="content_link_id"
                )
            if link.platform != platform.value:
                raise ValidationError(
                    f"Content link is a {link.platform} link, not {platform.value}",
                    field="platform",
                )
            if views < link.views_tracked:
                logger.warning(
                    "view_count_decreased_ignored",
                    link_id=str(link.id),
                    stored_views=link.views_tracked,
                    observed_views=views,
                )
            else:
                link.views_tracked = views

        link.last_view_check = now
        if link_metadata:
            link.link_metadata = {**(link.link_metadata or {}), **link_metadata}

        await db.flush()
        record = await self._recompute(campaign_id, link.creator_id, db, checked_at=now)
        await db.commit()

        logger.info(
            "views_recorded",
            campaign_id=str(campaign_id),
            link_id=str(link.id),
            platform=platform.value,
            link_views=link.views_tracked,
            views_tracked=record.views_tracked,
            payout_calculated=str(record.payout_calculated),
        )
        return record

    async def touch_link(
        self,
        link_id: uuid.UUID,
        db: AsyncSession,
        link_metadata: Optional[Dict[str, Any]] = None,
    ) -> ContentLink:
        """Mark a link as checked without a view count (metadata-only sources)."""
        link = await self.get_link(link_id, db)
        link.last_view_check = datetime.now(timezone.utc)
        if link_metadata:
            link.link_metadata = {**(link.link_metadata or {}), **link_metadata}
        await db.commit()
        return link

    async def _recompute(
        self,
        campaign_id: uuid.UUID,
        creator_id: uuid.UUID,
        db: AsyncSession,
        checked_at: Optional[datetime] = None,
    ) -> ViewTrackingRecord:
        campaign = await self._get_campaign(campaign_id, db)

        rows = await db.execute(
            select(ContentLink.platform, func.coalesce(func.sum(ContentLink.views_tracked), 0))
            .where(
                ContentLink.campaign_id == campaign_id,
                ContentLink.creator_id == creator_id,
            )
            .group_by(ContentLink.platform)
        )
        per_platform = {platform: int(total) for platform, total in rows.all()}
        instagram_views = per_platform.get(Platform.INSTAGRAM.value, 0)
        tiktok_views = per_platform.get(Platform.TIKTOK.value, 0)
        observed = instagram_views + tiktok_views

        result = await db.execute(
            select(ViewTrackingRecord).where(
                ViewTrackingRecord.campaign_id == campaign_id,
                ViewTrackingRecord.creator_id == creator_id,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = ViewTrackingRecord(
                id=uuid.uuid4(),
                campaign_id=campaign_id,
                creator_id=creator_id,
                payout_status=PayoutStatus.PENDING.value,
                payout_calculated=Decimal("0.00"),
            )
            db.add(record)

        record.views_observed = observed
        record.views_tracked = min(observed, campaign.max_views)
        record.instagram_views = instagram_views
        record.tiktok_views = tiktok_views
        if checked_at is not None:
            record.last_checked_at = checked_at

        if record.payout_status == PayoutStatus.PENDING.value:
            record.payout_calculated = calculate_payout(
                observed, campaign.cpm_rate, campaign.max_views
            )
        elif observed > 0:
            logger.debug(
                "payout_frozen",
                record_id=str(record.id),
                payout_status=record.payout_status,
            )

        if observed > campaign.max_views:
            logger.info(
                "campaign_view_cap_reached",
                campaign_id=str(campaign_id),
                creator_id=str(creator_id),
                views_observed=observed,
                max_views=campaign.max_views,
            )
        return record

    async def get_link(self, link_id: uuid.UUID, db: AsyncSession) -> ContentLink:
        link = await db.get(ContentLink, link_id)
        if link is None:
            raise NotFoundError(f"Content link {link_id} not found")
        return link

    async def select_link(
        self,
        link_id: uuid.UUID,
        selected: bool,
        db: AsyncSession,
        brand_id: Optional[uuid.UUID] = None,
    ) -> ContentLink:
        """
        Flag or unflag a link for showcase surfaces.

        Raises:
            NotFoundError: Unknown link, or `brand_id` does not own its campaign
        """
        link = await self.get_link(link_id, db)
        if brand_id is not None:
            campaign = await db.get(Campaign, link.campaign_id)
            if campaign is None or campaign.brand_id != brand_id:
                raise NotFoundError(f"Content link {link_id} not found")
        link.is_selected = selected
        await db.commit()
        logger.info("content_link_selection_changed", link_id=str(link_id), selected=selected)
        return link

    async def list_showcase_links(
        self, campaign_id: uuid.UUID, db: AsyncSession
    ) -> List[ContentLink]:
        """Links exposed externally. Unselected links are tracked but hidden."""
        result = await db.execute(
            select(ContentLink)
            .where(ContentLink.campaign_id == campaign_id, ContentLink.is_selected.is_(True))
            .order_by(ContentLink.views_tracked.desc(), ContentLink.created_at)
        )
        return list(result.scalars().all())

    async def list_links(
        self,
        campaign_id: uuid.UUID,
        db: AsyncSession,
        creator_id: Optional[uuid.UUID] = None,
    ) -> List[ContentLink]:
        query = select(ContentLink).where(ContentLink.campaign_id == campaign_id)
        if creator_id is not None:
            query = query.where(ContentLink.creator_id == creator_id)
        result = await db.execute(query.order_by(ContentLink.created_at))
        return list(result.scalars().all())

    async def get_record(self, record_id: uuid.UUID, db: AsyncSession) -> ViewTrackingRecord:
        record = await db.get(ViewTrackingRecord, record_id)
        if record is None:
            raise NotFoundError(f"View tracking record {record_id} not found")
        return record

    async def list_records(
        self,
        campaign_id: uuid.UUID,
        db: AsyncSession,
        creator_id: Optional[uuid.UUID] = None,
    ) -> List[ViewTrackingRecord]:
        query = select(ViewTrackingRecord).where(ViewTrackingRecord.campaign_id == campaign_id)
        if creator_id is not None:
            query = query.where(ViewTrackingRecord.creator_id == creator_id)
        result = await db.execute(query.order_by(ViewTrackingRecord.created_at))
        return list(result.scalars().all())

    async def _decide(
        self,
        record_id: uuid.UUID,
        brand_id: uuid.UUID,
        status: PayoutStatus,
        db: AsyncSession,
    ) -> ViewTrackingRecord:
        record = await self.get_record(record_id, db)
        campaign = await db.get(Campaign, record.campaign_id)
        # Another brand's record is reported as missing
        if campaign is None or campaign.brand_id != brand_id:
            raise NotFoundError(f"View tracking record {record_id} not found")
        if record.payout_status != PayoutStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Payout is already {record.payout_status}",
                record_id=str(record_id),
            )

        record.payout_status = status.value
        record.decided_at = datetime.now(timezone.utc)
        await db.commit()

        logger.info(
            "payout_decided",
            record_id=str(record_id),
            status=status.value,
            payout_calculated=str(record.payout_calculated),
            views_tracked=record.views_tracked,
        )
        return record

    async def approve_payout(
        self, record_id: uuid.UUID, brand_id: uuid.UUID, db: AsyncSession
    ) -> ViewTrackingRecord:
        """
        Approve a pending payout. Only the campaign's brand may approve.

        Raises:
            NotFoundError: Missing record, or the brand does not own the campaign
            InvalidTransitionError: Record is not pending
        """
        return await self._decide(record_id, brand_id, PayoutStatus.APPROVED, db)

    async def reject_payout(
        self, record_id: uuid.UUID, brand_id: uuid.UUID, db: AsyncSession
    ) -> ViewTrackingRecord:
        """Reject a pending payout. Same rules as approve_payout."""
        return await self._decide(record_id, brand_id, PayoutStatus.REJECTED, db)

    async def mark_paid(self, record_id: uuid.UUID, db: AsyncSession) -> ViewTrackingRecord:
        """
        Mark an approved payout as paid. Flushes only; the caller commits.

        Raises:
            InvalidTransitionError: Record is not approved
        """
        record = await self.get_record(record_id, db)
        if record.payout_status == PayoutStatus.PAID.value:
            return record
        if record.payout_status != PayoutStatus.APPROVED.value:
            raise InvalidTransitionError(
                f"Cannot mark a {record.payout_status} payout as paid",
                record_id=str(record_id),
            )
        record.payout_status = PayoutStatus.PAID.value
        await db.flush()
        logger.info("payout_marked_paid", record_id=str(record_id))
        return record

    async def links_due_for_sync(
        self,
        db: AsyncSession,
        campaign_id: Optional[uuid.UUID] = None,
        force: bool = False,
        limit: Optional[int] = None,
    ) -> List[ContentLink]:
        """
        Links whose last check is older than the staleness window, or never.

        Oldest checks come first so a capped batch makes progress.
        """
        query = select(ContentLink)
        if campaign_id is not None:
            query = query.where(ContentLink.campaign_id == campaign_id)
        if not force:
            cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.stale_after_seconds)
            query = query.where(
                or_(ContentLink.last_view_check.is_(None), ContentLink.last_view_check < cutoff)
            )
        query = query.order_by(
            ContentLink.last_view_check.is_(None).desc(),
            ContentLink.last_view_check,
        ).limit(limit or self.sync_batch_size)

        result = await db.execute(query)
        return list(result.scalars().all())
