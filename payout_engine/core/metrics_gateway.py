"""
Metrics gateway: current view count for a content URL.

- Parses and validates the URL, resolving TikTok short links first
- Prefers a platform's rich (authenticated) path when it is enabled
- Falls back to the public path on rich-path failure
- Never raises: every outcome is a ViewFetchResult
- Batches run sequentially with a fixed delay between provider calls
"""
import asyncio
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol

import structlog

from payout_engine.config import get_settings
from payout_engine.core.exceptions import RateLimitedError, ValidationError
from payout_engine.core.links import ParsedLink, parse_content_url
from payout_engine.database.models import Platform
from payout_engine.integrations.base import ContentStats, ProviderError
from payout_engine.integrations.instagram_client import InstagramClient
from payout_engine.integrations.tiktok_client import TikTokClient
from payout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PlatformAdapter(Protocol):
    """What the gateway needs from a platform client."""

    platform: Platform

    @property
    def rich_enabled(self) -> bool: ...

    async def fetch_rich(self, link: ParsedLink) -> ContentStats: ...

    async def fetch_public(self, link: ParsedLink) -> ContentStats: ...


class ShortLinkResolver(Protocol):
    async def resolve_short_link(self, url: str) -> str: ...


@dataclass
class ViewFetchResult:
    """Outcome of fetching one URL. `views` is None when the source has no counts."""

    url: str
    ok: bool
    platform: Optional[Platform] = None
    post_id: Optional[str] = None
    views: Optional[int] = None
    likes: Optional[int] = None
    comments: Optional[int] = None
    shares: Optional[int] = None
    title: Optional[str] = None
    author: Optional[str] = None
    source: Optional[str] = None
    error: Optional[str] = None
    rate_limited: bool = False

    @classmethod
    def failure(
        cls,
        url: str,
        error: str,
        link: Optional[ParsedLink] = None,
        rate_limited: bool = False,
    ) -> "ViewFetchResult":
        return cls(
            url=url,
            ok=False,
            platform=link.platform if link else None,
            post_id=link.post_id if link else None,
            error=error,
            rate_limited=rate_limited,
        )

    @classmethod
    def from_stats(cls, url: str, link: ParsedLink, stats: ContentStats) -> "ViewFetchResult":
        return cls(
            url=url,
            ok=True,
            platform=link.platform,
            post_id=stats.post_id or link.post_id,
            views=stats.views,
            likes=stats.likes,
            comments=stats.comments,
            shares=stats.shares,
            title=stats.title,
            author=stats.author,
            source=stats.source,
        )


class MetricsGateway:
    """
    Fetches view counts through per-platform adapters.

    Adapters and the short-link resolver are injected so tests can run
    against fakes or httpx mock transports.
    """

    def __init__(
        self,
        adapters: Iterable[PlatformAdapter],
        short_link_resolver: Optional[ShortLinkResolver] = None,
        batch_delay_seconds: Optional[float] = None,
    ):
        self.adapters: Dict[Platform, PlatformAdapter] = {a.platform: a for a in adapters}
        self.short_link_resolver = short_link_resolver
        self.batch_delay_seconds = (
            get_settings().metrics_batch_delay_seconds
            if batch_delay_seconds is None
            else batch_delay_seconds
        )

    async def _parse(self, url: str) -> ParsedLink:
        link = parse_content_url(url)
        if not link.is_short_link:
            return link
        if self.short_link_resolver is None:
            raise ValidationError("Short links cannot be resolved", field="content_url")

        resolved = await self.short_link_resolver.resolve_short_link(url)
        logger.debug("short_link_resolved", url=url, resolved_url=resolved)
        link = parse_content_url(resolved)
        if link.is_short_link:
            raise ValidationError(
                "Short link did not resolve to a video URL", field="content_url"
            )
        return link

    async def fetch_views(self, content_url: str) -> ViewFetchResult:
        """
        Fetch the current view count for a content URL.

        Args:
            content_url: Post or video URL

        Returns:
            ViewFetchResult: ok=False with a descriptive error on invalid
                URLs, unsupported platforms and provider failures
        """
        try:
            link = await self._parse(content_url)
        except ValidationError as e:
            logger.info("content_url_rejected", url=content_url, reason=e.message)
            return ViewFetchResult.failure(content_url, e.message)
        except RateLimitedError as e:
            return ViewFetchResult.failure(content_url, e.message, rate_limited=True)
        except ProviderError as e:
            logger.warning("short_link_resolution_failed", url=content_url, error=e.message)
            return ViewFetchResult.failure(content_url, f"Could not resolve short link: {e.message}")

        adapter = self.adapters.get(link.platform)
        if adapter is None:
            return ViewFetchResult.failure(
                content_url, f"No metrics adapter configured for {link.platform.value}", link
            )

        if adapter.rich_enabled:
            try:
                stats = await adapter.fetch_rich(link)
                metrics.record_view_fetch(link.platform.value, stats.source, "success")
                return ViewFetchResult.from_stats(content_url, link, stats)
            except RateLimitedError as e:
                metrics.record_view_fetch(link.platform.value, "rich", "rate_limited")
                logger.warning("metrics_rate_limited", url=content_url, retry_after=e.retry_after)
                return ViewFetchResult.failure(content_url, e.message, link, rate_limited=True)
            except Exception as e:
                metrics.record_view_fetch(link.platform.value, "rich", "error")
                logger.warning(
                    "rich_metrics_failed_falling_back",
                    url=content_url,
                    platform=link.platform.value,
                    error=str(e),
                    error_code=getattr(e, "code", None),
                )

        try:
            stats = await adapter.fetch_public(link)
        except RateLimitedError as e:
            metrics.record_view_fetch(link.platform.value, "public", "rate_limited")
            logger.warning("metrics_rate_limited", url=content_url, retry_after=e.retry_after)
            return ViewFetchResult.failure(content_url, e.message, link, rate_limited=True)
        except Exception as e:
            metrics.record_view_fetch(link.platform.value, "public", "error")
            logger.warning(
                "public_metrics_failed",
                url=content_url,
                platform=link.platform.value,
                error=str(e),
            )
            return ViewFetchResult.failure(
                content_url, f"Failed to fetch {link.platform.value} data: {e}", link
            )

        metrics.record_view_fetch(link.platform.value, stats.source, "success")
        return ViewFetchResult.from_stats(content_url, link, stats)

    async def fetch_many(self, content_urls: Iterable[str]) -> List[ViewFetchResult]:
        """
        Fetch several URLs one after another.

        A failing URL is reported on its own result and the batch continues.
        """
        urls = list(content_urls)
        results: List[ViewFetchResult] = []
        for index, url in enumerate(urls):
            results.append(await self.fetch_views(url))
            if index < len(urls) - 1 and self.batch_delay_seconds > 0:
                await asyncio.sleep(self.batch_delay_seconds)

        logger.info(
            "metrics_batch_fetched",
            total=len(results),
            succeeded=sum(1 for r in results if r.ok),
            rate_limited=sum(1 for r in results if r.rate_limited),
        )
        return results


def build_default_gateway() -> MetricsGateway:
    """Gateway wired to the real TikTok and Instagram clients."""
    tiktok = TikTokClient()
    return MetricsGateway([tiktok, InstagramClient()], short_link_resolver=tiktok)
