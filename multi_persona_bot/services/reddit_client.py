from __future__ import annotations

import asyncio
import html
import logging
import random
import re
import time
from typing import Any, Dict, List

import aiohttp

from ..engagement.models import MediaItem

logger = logging.getLogger("multi_persona_bot")

REDDIT_BASE_URL = "https://www.reddit.com"
REDDIT_USER_AGENT = "Discord-Bot:Kindroid-Discord:v1.0.1"
REDDIT_REQUEST_SPACING_SECONDS = 1.0
REDDIT_FETCH_LIMIT = 50
REDDIT_MAX_RETRIES = 3
REDDIT_RETRY_DELAY_SECONDS = 2.0
MAX_FILE_SIZE_BYTES = 8 * 1024 * 1024
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
SORT_METHODS = ("hot", "new", "top")
TOP_TIME_WINDOWS = ("hour", "day", "week", "month", "year", "all")
_CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}
_IMGUR_ID_RE = re.compile(r"imgur\.com/([a-zA-Z0-9]+)")


class RedditNotFound(RuntimeError):
    pass


def _has_image_extension(url: str) -> bool:
    lowered = url.lower()
    return any(lowered.endswith(ext) for ext in IMAGE_EXTENSIONS)


def is_image_post(post: Dict[str, Any]) -> bool:
    data = post.get("data") or {}
    url = str(data.get("url") or "")
    if not url:
        return False
    if data.get("is_video"):
        return False
    if data.get("removed") or data.get("selftext") in {"[removed]", "[deleted]"}:
        return False
    preview = data.get("preview") or {}
    has_preview = bool(preview.get("images"))
    return _has_image_extension(url) or data.get("post_hint") == "image" or has_preview


def image_url_from_post(post: Dict[str, Any]) -> str | None:
    data = post.get("data") or {}
    raw_url = str(data.get("url") or "")
    if not raw_url:
        return None
    url = html.unescape(raw_url)

    if _has_image_extension(url):
        return url

    images = (data.get("preview") or {}).get("images") or []
    if images:
        main = images[0] or {}
        resolutions = [
            res for res in (main.get("resolutions") or []) if 600 <= int(res.get("width") or 0) <= 1280
        ]
        if resolutions:
            best = max(resolutions, key=lambda res: int(res.get("width") or 0))
            return html.unescape(str(best.get("url") or "")) or None
        source_url = (main.get("source") or {}).get("url")
        if source_url:
            return html.unescape(str(source_url))

    if "imgur.com" in url:
        if "/a/" in url or "/gallery/" in url:
            return None
        match = _IMGUR_ID_RE.search(url)
        if match:
            return f"https://i.imgur.com/{match.group(1)}.jpg"

    if "i.redd.it" in url:
        return url
    return None


def image_extension(url: str, content_type: str | None = None) -> str:
    lowered = url.lower()
    for ext in IMAGE_EXTENSIONS:
        if ext in lowered:
            return ext
    if content_type:
        clean = content_type.split(";")[0].strip().lower()
        return _CONTENT_TYPE_EXTENSIONS.get(clean, ".jpg")
    return ".jpg"


class RedditClient:
    """Random image posts from a list of subreddits."""

    def __init__(
        self,
        *,
        user_agent: str = REDDIT_USER_AGENT,
        timeout_seconds: int = 10,
        base_url: str = REDDIT_BASE_URL,
        rng: random.Random | None = None,
        request_spacing_seconds: float = REDDIT_REQUEST_SPACING_SECONDS,
        retry_delay_seconds: float = REDDIT_RETRY_DELAY_SECONDS,
    ) -> None:
        self.user_agent = user_agent
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.rng = rng or random.Random()
        self.request_spacing_seconds = request_spacing_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self._session: aiohttp.ClientSession | None = None
        self._rate_lock = asyncio.Lock()
        self._last_request_at = 0.0

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent},
            )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _session_or_start(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None
        return self._session

    async def _respect_rate_limit(self) -> None:
        async with self._rate_lock:
            wait = self.request_spacing_seconds - (time.monotonic() - self._last_request_at)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request_at = time.monotonic()

    async def _get_json(self, path: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        session = await self._session_or_start()
        url = f"{self.base_url}{path}"
        last_error: Exception | None = None

        for attempt in range(REDDIT_MAX_RETRIES):
            try:
                async with session.get(url, params=params) as response:
                    if response.status == 404:
                        raise RedditNotFound(f"Reddit resource not found: {path}")
                    if response.status != 200:
                        text = await response.text()
                        if response.status == 403:
                            logger.error("Access forbidden to %s (might be private)", path)
                        elif response.status == 429:
                            logger.error("Rate limited by Reddit API")
                        raise RuntimeError(f"Reddit error {response.status}: {text[:200]}")
                    return await response.json(content_type=None)
            except (asyncio.CancelledError, RedditNotFound):
                raise
            except Exception as exc:
                last_error = exc

            if attempt == REDDIT_MAX_RETRIES - 1:
                break
            wait = self.retry_delay_seconds * (2**attempt)
            logger.warning(
                "Reddit API request failed, retrying in %.1fs (attempt %s/%s)",
                wait,
                attempt + 1,
                REDDIT_MAX_RETRIES,
            )
            await asyncio.sleep(wait)

        raise RuntimeError(f"Reddit request failed after retries: {last_error}")

    async def fetch_subreddit_images(
        self,
        subreddit: str,
        limit: int = REDDIT_FETCH_LIMIT,
        sort_by: str = "hot",
    ) -> List[Dict[str, Any]]:
        await self._respect_rate_limit()
        params: Dict[str, Any] = {"limit": min(limit, 100), "raw_json": 1}
        if sort_by == "top":
            params["t"] = self.rng.choice(TOP_TIME_WINDOWS)

        data = await self._get_json(f"/r/{subreddit}/{sort_by}.json", params)
        children = (data.get("data") or {}).get("children")
        if not isinstance(children, list):
            raise RuntimeError("Invalid Reddit API response structure")
        return [post for post in children if isinstance(post, dict) and is_image_post(post)]

    async def download_image(self, url: str, post_id: str) -> tuple[bytes, str] | None:
        session = await self._session_or_start()
        try:
            async with session.get(url) as response:
                if response.status != 200:
                    logger.error("Image download failed for post %s: %s", post_id, response.status)
                    return None
                content_type = response.headers.get("Content-Type", "")
                if not content_type.startswith("image/"):
                    logger.warning("Non-image content type for post %s: %s", post_id, content_type)
                    return None
                if (response.content_length or 0) > MAX_FILE_SIZE_BYTES:
                    logger.warning("Image from post %s exceeds upload size limit", post_id)
                    return None
                payload = await response.content.read(MAX_FILE_SIZE_BYTES + 1)
                if len(payload) > MAX_FILE_SIZE_BYTES:
                    logger.warning("Image from post %s exceeds upload size limit: %s bytes", post_id, len(payload))
                    return None
                return payload, content_type
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.error("Image download timeout for post %s", post_id)
        except aiohttp.ClientError as exc:
            logger.error("Image download error for post %s: %s", post_id, exc)
        return None

    async def fetch_random_item(self, topics: tuple[str, ...], allow_adult: bool) -> MediaItem | None:
        if not topics:
            logger.warning("No subreddits configured for media")
            return None

        remaining = list(topics)
        for _ in range(min(3, len(topics))):
            subreddit = self.rng.choice(remaining)
            remaining.remove(subreddit)
            try:
                item = await self._pick_from_subreddit(subreddit, allow_adult)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Error getting image from r/%s: %s", subreddit, exc)
                continue
            if item is not None:
                return item

        logger.warning("Failed to get Reddit image after multiple attempts")
        return None

    async def _pick_from_subreddit(self, subreddit: str, allow_adult: bool) -> MediaItem | None:
        posts = await self.fetch_subreddit_images(subreddit, REDDIT_FETCH_LIMIT, self.rng.choice(SORT_METHODS))
        if not posts:
            logger.info("No images found in r/%s, trying another subreddit", subreddit)
            return None
        if not allow_adult:
            posts = [post for post in posts if not (post.get("data") or {}).get("over_18")]
        if not posts:
            logger.info("No suitable images in r/%s after filtering, trying another subreddit", subreddit)
            return None

        shuffled = list(posts)
        self.rng.shuffle(shuffled)
        for post in shuffled[:10]:
            data = post.get("data") or {}
            url = image_url_from_post(post)
            if not url:
                continue
            post_id = str(data.get("id") or "")
            downloaded = await self.download_image(url, post_id)
            if downloaded is None:
                logger.info("Failed to download image for post %s, trying next", post_id)
                continue
            payload, content_type = downloaded
            return MediaItem(
                id=post_id,
                payload=payload,
                title=str(data.get("title") or ""),
                topic=subreddit,
                filename=f"r-{subreddit}_{post_id}{image_extension(url, content_type)}",
            )

        logger.info("Could not extract valid image URLs from r/%s, trying another subreddit", subreddit)
        return None

    async def validate_topics(self, topics: tuple[str, ...]) -> tuple[str, ...]:
        valid: list[str] = []
        for subreddit in topics:
            await self._respect_rate_limit()
            try:
                data = await self._get_json(f"/r/{subreddit}/about.json")
            except RedditNotFound:
                logger.warning("Subreddit r/%s not found", subreddit)
                continue
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Subreddit r/%s validation failed: %s", subreddit, exc)
                continue
            if (data.get("data") or {}).get("display_name"):
                valid.append(subreddit)
        return tuple(valid)
