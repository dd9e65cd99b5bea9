"""
Content URL parsing.

Recognises Instagram post/reel/tv/story URLs, TikTok video URLs and TikTok
short links. Short links carry no post id and must be resolved (redirect
following HEAD) and parsed again before views can be fetched.
"""
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from payout_engine.core.exceptions import ValidationError
from payout_engine.database.models import Platform

INSTAGRAM_HOSTS = frozenset({"instagram.com", "www.instagram.com"})
TIKTOK_HOSTS = frozenset({"tiktok.com", "www.tiktok.com", "m.tiktok.com"})
TIKTOK_SHORT_HOSTS = frozenset({"vm.tiktok.com", "vt.tiktok.com"})

INSTAGRAM_POST_RE = re.compile(r"^/(p|reel|tv|stories)/([\w-]+)")
TIKTOK_VIDEO_RE = re.compile(r"^/@([\w.-]+)/video/(\d+)")
TIKTOK_SHORT_RE = re.compile(r"^/(\w+)")
TIKTOK_SHORT_PATH_RE = re.compile(r"^/t/(\w+)")


@dataclass(frozen=True)
class ParsedLink:
    """Result of parsing a content URL."""

    url: str
    platform: Platform
    post_id: Optional[str] = None
    author: Optional[str] = None
    is_short_link: bool = False


def _invalid(message: str) -> ValidationError:
    return ValidationError(message, field="content_url")


def parse_content_url(url: str) -> ParsedLink:
    """
    Parse a content URL into platform and post id.

    Args:
        url: Content URL submitted by the creator

    Returns:
        ParsedLink: Platform, post id, and whether the URL is a short link

    Raises:
        ValidationError: If the URL is not a recognised post/video URL. The
            message says what kind of link is expected.
    """
    if not url:
        raise _invalid("URL is required")

    url = url.strip()
    if not url.startswith("https://"):
        raise _invalid("URL must use HTTPS protocol")

    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise _invalid("Invalid URL format") from e

    hostname = (parsed.hostname or "").lower()
    path = parsed.path or "/"

    if hostname in INSTAGRAM_HOSTS:
        match = INSTAGRAM_POST_RE.match(path)
        if match:
            return ParsedLink(url=url, platform=Platform.INSTAGRAM, post_id=match.group(2))
        raise _invalid(
            "Invalid Instagram URL. Please provide a direct link to a post, reel, or story."
        )

    if hostname in TIKTOK_HOSTS:
        match = TIKTOK_VIDEO_RE.match(path)
        if match:
            return ParsedLink(
                url=url,
                platform=Platform.TIKTOK,
                post_id=match.group(2),
                author=match.group(1),
            )
        if TIKTOK_SHORT_PATH_RE.match(path):
            return ParsedLink(url=url, platform=Platform.TIKTOK, is_short_link=True)
        if "/@" in path:
            raise _invalid("Please provide a direct link to a TikTok video, not a profile page.")
        raise _invalid("Invalid TikTok URL. Please provide a direct link to a video.")

    if hostname in TIKTOK_SHORT_HOSTS and TIKTOK_SHORT_RE.match(path):
        return ParsedLink(url=url, platform=Platform.TIKTOK, is_short_link=True)

    raise _invalid("URL must be from Instagram or TikTok. Other platforms are not supported.")
