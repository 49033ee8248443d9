"""
YouTube Data API v3 client.

Typed wrapper over the channel and video endpoints used by channel sync and
change detection. The client performs no retries; failures are mapped onto
the error taxonomy in ``server.monitor.errors`` and left to the job
orchestrator.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from server.monitor.errors import (
    PlatformError, AuthExpired, AccessForbidden, RateLimited, Unavailable, NotFound
)
from server.monitor.schemas import ChannelInfo, VideoInfo, VideoPage

logger = logging.getLogger(__name__)

RATE_LIMIT_REASONS = {"quotaExceeded", "rateLimitExceeded", "userRateLimitExceeded", "dailyLimitExceeded"}
MAX_IDS_PER_REQUEST = 50
VIDEO_PARTS = "snippet,contentDetails,status,statistics"


def _to_int(value: Any) -> Optional[int]:
    # The Data API returns counters as strings
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _best_thumbnail(snippet: Dict[str, Any]) -> Optional[str]:
    thumbnails = snippet.get("thumbnails") or {}
    for size in ("high", "medium", "default"):
        if thumbnails.get(size, {}).get("url"):
            return thumbnails[size]["url"]
    return None


class PlatformApiClient:
    """Shared HTTP plumbing and error mapping for Google APIs."""

    def __init__(self, http_client: httpx.AsyncClient, base_url: str):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")

    async def _get(self, path: str, access_token: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}

        try:
            response = await self.http_client.get(url, params=clean_params, headers=headers)
        except httpx.RequestError as e:
            raise Unavailable(f"Request to {path} failed: {e}") from e

        if response.is_success:
            return response.json() if response.content else {}

        raise self._error_for(response, path)

    def _error_for(self, response: httpx.Response, path: str) -> PlatformError:
        """Map an unsuccessful response onto the error taxonomy."""
        status = response.status_code
        message, reason = self._error_details(response)
        detail = f"{path}: {message}" if message else f"{path}: HTTP {status}"

        if status == 401:
            return AuthExpired(detail, status)
        if status == 403:
            if reason in RATE_LIMIT_REASONS:
                return RateLimited(detail, status)
            return AccessForbidden(detail, status)
        if status == 429:
            return RateLimited(detail, status, retry_after=self._retry_after(response))
        if status == 404:
            return NotFound(detail, status)
        if status >= 500:
            return Unavailable(detail, status)
        return PlatformError(detail, status)

    @staticmethod
    def _error_details(response: httpx.Response):
        try:
            body = response.json()
        except ValueError:
            return response.text[:200], None

        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return str(error or ""), None

        reasons = [e.get("reason") for e in error.get("errors") or [] if isinstance(e, dict)]
        return error.get("message", ""), next((r for r in reasons if r), None)

    @staticmethod
    def _retry_after(response: httpx.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            return None


class YouTubeClient(PlatformApiClient):
    """Client for the YouTube Data API v3."""

    def __init__(self, http_client: httpx.AsyncClient,
                 base_url: str = "https://www.googleapis.com/youtube/v3",
                 page_size: int = MAX_IDS_PER_REQUEST):
        super().__init__(http_client, base_url)
        self.page_size = min(page_size, MAX_IDS_PER_REQUEST)

    async def get_channel_info(self, access_token: str) -> ChannelInfo:
        """Get the authenticated user's channel."""
        data = await self._get("channels", access_token, {
            "part": "snippet,statistics",
            "mine": "true",
        })

        items = data.get("items") or []
        if not items:
            raise NotFound("No channel found for this account")

        item = items[0]
        snippet = item.get("snippet") or {}
        statistics = item.get("statistics") or {}
        return ChannelInfo(
            id=item["id"],
            title=snippet.get("title") or "",
            description=snippet.get("description"),
            thumbnail_url=_best_thumbnail(snippet),
            subscriber_count=_to_int(statistics.get("subscriberCount")),
            video_count=_to_int(statistics.get("videoCount")),
        )

    async def list_videos(self, access_token: str, channel_id: str,
                          page_token: Optional[str] = None) -> VideoPage:
        """List one page of a channel's videos, newest first, with full details."""
        data = await self._get("search", access_token, {
            "part": "id",
            "channelId": channel_id,
            "type": "video",
            "order": "date",
            "maxResults": self.page_size,
            "pageToken": page_token,
        })

        video_ids = [
            item["id"]["videoId"]
            for item in data.get("items") or []
            if isinstance(item.get("id"), dict) and item["id"].get("videoId")
        ]
        videos = await self.get_multiple_video_details(access_token, video_ids) if video_ids else []

        return VideoPage(
            videos=videos,
            next_page_token=data.get("nextPageToken"),
            total_results=(data.get("pageInfo") or {}).get("totalResults"),
        )

    async def get_video_details(self, access_token: str, video_id: str) -> Optional[VideoInfo]:
        """Get a single video, or None if it no longer exists or is not visible."""
        try:
            data = await self._get("videos", access_token, {"part": VIDEO_PARTS, "id": video_id})
        except NotFound:
            return None

        for item in data.get("items") or []:
            video = self._parse_video(item)
            if video is not None:
                return video
        return None

    async def get_multiple_video_details(self, access_token: str, video_ids: List[str]) -> List[VideoInfo]:
        """Get details for many videos, batching ids per request."""
        videos: List[VideoInfo] = []
        for start in range(0, len(video_ids), MAX_IDS_PER_REQUEST):
            batch = video_ids[start:start + MAX_IDS_PER_REQUEST]
            data = await self._get("videos", access_token, {
                "part": VIDEO_PARTS,
                "id": ",".join(batch),
            })
            for item in data.get("items") or []:
                video = self._parse_video(item)
                if video is not None:
                    videos.append(video)
        return videos

    def _parse_video(self, item: Dict[str, Any]) -> Optional[VideoInfo]:
        try:
            snippet = item.get("snippet") or {}
            content_details = item.get("contentDetails") or {}
            status = item.get("status") or {}
            statistics = item.get("statistics") or {}
            restriction = content_details.get("regionRestriction") or {}

            return VideoInfo(
                id=item["id"],
                title=snippet.get("title") or "",
                description=snippet.get("description"),
                thumbnail_url=_best_thumbnail(snippet),
                published_at=snippet.get("publishedAt"),
                duration=content_details.get("duration"),
                view_count=_to_int(statistics.get("viewCount")),
                like_count=_to_int(statistics.get("likeCount")),
                privacy_status=status.get("privacyStatus"),
                upload_status=status.get("uploadStatus"),
                license=status.get("license"),
                made_for_kids=status.get("madeForKids"),
                blocked_regions=restriction.get("blocked") or [],
                allowed_regions=restriction.get("allowed") or [],
            )
        except (KeyError, TypeError, ValidationError) as e:
            logger.warning(f"Skipping malformed video item {item.get('id')!r}: {e}")
            return None
