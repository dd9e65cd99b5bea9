"""Instagram metrics client. Public oEmbed only, so no view counts."""
from typing import Any, Optional

import httpx

from payout_engine.core.exceptions import RateLimitedError
from payout_engine.core.links import ParsedLink
from payout_engine.database.models import Platform
from payout_engine.integrations.base import (
    ApiClient,
    ContentStats,
    ProviderError,
    ProviderErrorType,
)

OEMBED_BASE_URL = "https://api.instagram.com"


class InstagramClient(ApiClient):
    """Instagram oEmbed lookup (title and author)."""

    provider = "instagram"
    retry_rate_limited = False
    platform = Platform.INSTAGRAM
    rich_enabled = False

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, **kwargs: Any):
        super().__init__(OEMBED_BASE_URL, http_client, **kwargs)

    async def fetch_rich(self, link: ParsedLink) -> ContentStats:
        raise ProviderError(
            "Instagram insights are not available",
            provider=self.provider,
            error_type=ProviderErrorType.PERMANENT,
            code="not_supported",
        )

    async def fetch_public(self, link: ParsedLink) -> ContentStats:
        """
        Raises:
            RateLimitedError: On HTTP 429
            ProviderError: On any other failure
        """
        try:
            response = await self._request(
                "GET", "/oembed", authenticated=False, params={"url": link.url}
            )
        except ProviderError as e:
            if e.error_type is ProviderErrorType.RATE_LIMIT:
                raise RateLimitedError(
                    "Instagram rate limit exceeded", retry_after=e.retry_after
                ) from e
            raise

        data = response.json()
        return ContentStats(
            post_id=link.post_id,
            source="oembed",
            title=data.get("title") or None,
            author=data.get("author_name") or None,
        )
