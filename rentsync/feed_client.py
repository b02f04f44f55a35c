from __future__ import annotations

import logging
from urllib.parse import urlsplit

import requests

from rentsync.errors import FetchFailed, InvalidFeedURL
from rentsync.models import FetchConfig, Platform

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}


def validate_feed_url(
    url: str,
    platform: Platform | None = None,
    enforce_platform_pattern: bool = False,
) -> str:
    text = str(url or "").strip()
    if not text:
        raise InvalidFeedURL("Feed URL is empty.")
    if any(ch.isspace() for ch in text):
        raise InvalidFeedURL(f"Feed URL contains whitespace: {text!r}")
    try:
        parts = urlsplit(text)
    except ValueError as exc:
        raise InvalidFeedURL(f"Feed URL is malformed: {exc}") from exc
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise InvalidFeedURL(f"Feed URL must use http or https: {text!r}")
    if not parts.hostname:
        raise InvalidFeedURL(f"Feed URL has no host: {text!r}")
    if enforce_platform_pattern and platform is not None:
        pattern = platform.url_pattern
        if pattern and pattern.lower() not in text.lower():
            raise InvalidFeedURL(f"Feed URL does not look like a {platform.label} calendar link.")
    return text


def _decode_feed(raw_data: bytes | str) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


class FeedClient:
    def __init__(self, config: FetchConfig) -> None:
        self.config = config

    def fetch(self, url: str) -> str:
        try:
            response = requests.get(
                url,
                headers={
                    "Accept": "text/calendar, text/plain;q=0.9, */*;q=0.5",
                    "User-Agent": self.config.user_agent,
                },
                timeout=self.config.timeout_seconds,
            )
        except requests.Timeout as exc:
            logger.warning("Feed fetch timed out after %ss: %s", self.config.timeout_seconds, url)
            raise FetchFailed(f"Timed out after {self.config.timeout_seconds}s") from exc
        except requests.RequestException as exc:
            logger.warning("Feed fetch failed: %s: %s", url, exc)
            raise FetchFailed(f"{type(exc).__name__}: {exc}") from exc

        if not 200 <= response.status_code < 300:
            logger.warning("Feed fetch returned HTTP %s: %s", response.status_code, url)
            raise FetchFailed(f"HTTP {response.status_code}", status_code=response.status_code)
        return _decode_feed(response.content)
