"""
TikTok metrics client.

Two ways to learn about a video:
- Research API (client-credentials bearer token): exact view, like,
  comment and share counts. Needs approved API access.
- Public oEmbed: title and author only, no counts.
"""
from typing import Any, Dict, Optional, Tuple

import httpx
import structlog

from payout_engine.config import Settings, get_settings
from payout_engine.core.exceptions import RateLimitedError
from payout_engine.core.links import ParsedLink
from payout_engine.database.models import Platform
from payout_engine.integrations.base import (
    ApiClient,
    ContentStats,
    ProviderError,
    ProviderErrorType,
)

logger = structlog.get_logger(__name__)

OEMBED_URL = "https://www.tiktok.com/oembed"
RESEARCH_FIELDS = "id,video_description,create_time,username,view_count,like_count,comment_count,share_count"
USER_AGENT = "Mozilla/5.0 (compatible; PayoutEngine/1.0)"


class TikTokClient(ApiClient):
    """TikTok research API + oEmbed client."""

    provider = "tiktok"
    retry_rate_limited = False
    platform = Platform.TIKTOK

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        **kwargs: Any,
    ):
        settings = settings or get_settings()
        super().__init__(settings.tiktok_api_base_url, http_client, **kwargs)
        self.client_key = settings.tiktok_client_key
        self.client_secret = settings.tiktok_client_secret
        self._research_api_enabled = settings.tiktok_research_api_enabled

    @property
    def rich_enabled(self) -> bool:
        """Research API is used only when switched on and credentials exist."""
        return self._research_api_enabled and bool(self.client_key and self.client_secret)

    async def _fetch_token(self) -> Tuple[str, int]:
        response = await self._request(
            "POST",
            "/v2/oauth/token/",
            authenticated=False,
            data={
                "client_key": self.client_key,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        body = response.json()
        token = body.get("access_token")
        if not token:
            raise ProviderError(
                body.get("error_description") or "TikTok did not return an access token",
                provider=self.provider,
                error_type=ProviderErrorType.PERMANENT,
                code=body.get("error"),
            )
        return token, int(body.get("expires_in", 7200))

    async def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {await self._bearer_token()}"}

    async def _call(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._request(method, path, **kwargs)
        except ProviderError as e:
            if e.error_type is ProviderErrorType.RATE_LIMIT:
                raise RateLimitedError(
                    "TikTok rate limit exceeded", retry_after=e.retry_after
                ) from e
            raise

    async def resolve_short_link(self, url: str) -> str:
        """Follow a vm./vt.tiktok.com redirect chain and return the final URL."""
        response = await self._call(
            "HEAD",
            url,
            authenticated=False,
            expected=range(200, 400),
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )
        return str(response.url)

    async def fetch_rich(self, link: ParsedLink) -> ContentStats:
        """
        Exact counts from the research API.

        Raises:
            RateLimitedError: On HTTP 429
            ProviderError: On any other failure, or if the video is not found
        """
        response = await self._call(
            "POST",
            "/v2/research/video/query/",
            params={"fields": RESEARCH_FIELDS},
            json={
                "query": {
                    "and": [
                        {
                            "operation": "EQ",
                            "field_name": "video_id",
                            "field_values": [link.post_id],
                        }
                    ]
                },
                "max_count": 1,
            },
        )
        body = response.json()

        error = body.get("error") or {}
        if error.get("code") not in (None, "ok"):
            raise ProviderError(
                error.get("message") or "TikTok API error",
                provider=self.provider,
                error_type=ProviderErrorType.PERMANENT,
                code=error.get("code"),
            )

        videos = (body.get("data") or {}).get("videos") or []
        if not videos:
            raise ProviderError(
                "Video not found or not accessible",
                provider=self.provider,
                error_type=ProviderErrorType.PERMANENT,
                code="video_not_found",
            )

        video = videos[0]
        return ContentStats(
            post_id=str(video.get("id") or link.post_id),
            source="research_api",
            views=int(video.get("view_count") or 0),
            likes=int(video.get("like_count") or 0),
            comments=int(video.get("comment_count") or 0),
            shares=int(video.get("share_count") or 0),
            title=video.get("video_description") or None,
            author=video.get("username") or link.author,
        )

    async def fetch_public(self, link: ParsedLink) -> ContentStats:
        """
        Title and author from oEmbed. Counts are not available.

        Raises:
            RateLimitedError: On HTTP 429
            ProviderError: On any other failure
        """
        response = await self._call(
            "GET",
            OEMBED_URL,
            authenticated=False,
            params={"url": link.url},
            headers={"User-Agent": USER_AGENT},
        )
        data = response.json()
        return ContentStats(
            post_id=link.post_id,
            source="oembed",
            title=data.get("title") or None,
            author=data.get("author_name") or link.author,
        )
