"""
Hand-written doubles for the YouTube, Content ID and OAuth clients.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from server.monitor.errors import AccessForbidden, AuthExpired
from server.monitor.schemas import (
    ChannelInfo, ClaimSearchResult, ContentIdClaim, ContentOwner, OAuthTokens, VideoInfo, VideoPage
)


def make_video(video_id: str, **overrides) -> VideoInfo:
    fields = {
        "id": video_id,
        "title": f"Video {video_id}",
        "privacy_status": "public",
        "upload_status": "processed",
        "blocked_regions": [],
    }
    fields.update(overrides)
    return VideoInfo(**fields)


def make_claim(claim_id: str, video_id: str, status: str = "active", action: str = "monetize",
               **extra) -> ContentIdClaim:
    payload = {
        "id": claim_id,
        "videoId": video_id,
        "assetId": f"A{claim_id}",
        "status": status,
        "contentType": "AUDIO",
        "timeCreated": "2024-05-01T12:00:00Z",
        "policy": {"rules": [{"action": action}]},
        "matchInfo": {"matchSegments": [{"channel": "audio", "video_segment": {"start": "PT10S", "duration": "PT30S"}}]},
    }
    payload.update(extra)
    return ContentIdClaim.model_validate(payload)


class MockYouTubeClient:
    """Serves fixed pages of videos and per-video details."""

    def __init__(self, pages: Optional[List[List[VideoInfo]]] = None,
                 details: Optional[Dict[str, Optional[VideoInfo]]] = None):
        self.pages = pages or [[]]
        self.details = details or {}
        self.channel_info = ChannelInfo(id="UC_test_channel", title="Updated Title",
                                        subscriber_count=1200, video_count=2)
        self.tokens_seen: List[str] = []
        self.page_tokens_seen: List[Optional[str]] = []
        self.reject_tokens = set()

    def _check(self, access_token: str):
        self.tokens_seen.append(access_token)
        if access_token in self.reject_tokens:
            raise AuthExpired("token rejected", 401)

    async def get_channel_info(self, access_token: str) -> ChannelInfo:
        self._check(access_token)
        return self.channel_info

    async def list_videos(self, access_token: str, channel_id: str, page_token: Optional[str] = None) -> VideoPage:
        self._check(access_token)
        self.page_tokens_seen.append(page_token)
        index = int(page_token) if page_token else 0
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return VideoPage(videos=self.pages[index], next_page_token=next_token)

    async def get_video_details(self, access_token: str, video_id: str) -> Optional[VideoInfo]:
        self._check(access_token)
        return self.details.get(video_id)


class MockContentIdClient:
    """Serves claims for a content owner, one page per entry in ``pages``."""

    def __init__(self, owner: Optional[ContentOwner] = None, pages: Optional[List[List[ContentIdClaim]]] = None,
                 forbidden: bool = False):
        self.owner = owner
        self.pages = pages or [[]]
        self.forbidden = forbidden
        self.owner_lookups = 0
        self.searches: List[dict] = []

    async def get_content_owner(self, access_token: str) -> Optional[ContentOwner]:
        self.owner_lookups += 1
        return self.owner

    async def search_claims(self, access_token: str, content_owner_id: str, video_ids=None, status=None,
                            created_after=None, created_before=None, page_token=None,
                            include_third_party_claims=True) -> ClaimSearchResult:
        if self.forbidden:
            raise AccessForbidden("partner access required", 403)
        self.searches.append({
            "owner": content_owner_id,
            "video_ids": list(video_ids or []),
            "created_after": created_after,
            "page_token": page_token,
        })
        index = int(page_token) if page_token else 0
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return ClaimSearchResult(claims=self.pages[index], next_page_token=next_token)


class MockOAuthClient:
    def __init__(self, access_token: str = "fresh-access-token", error: Optional[Exception] = None):
        self.access_token = access_token
        self.error = error
        self.calls: List[str] = []

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        self.calls.append(refresh_token)
        if self.error:
            raise self.error
        return OAuthTokens(
            access_token=self.access_token,
            refresh_token=refresh_token,
            expires_at=datetime.utcnow() + timedelta(hours=1),
        )
