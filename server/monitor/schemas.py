"""
Pydantic models for platform responses, video snapshots and job payloads.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field

from server.monitor.models import NotificationType


class VideoSnapshot(BaseModel):
    """The subset of video state compared between detection passes."""
    privacy_status: Optional[str] = None
    upload_status: Optional[str] = None
    blocked_regions: List[str] = Field(default_factory=list)
    monetization_status: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    def to_state(self) -> Dict[str, Any]:
        return self.model_dump()

    @classmethod
    def from_state(cls, state: Optional[Dict[str, Any]]) -> Optional['VideoSnapshot']:
        if state is None:
            return None
        return cls.model_validate(state)


class ChannelInfo(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    subscriber_count: Optional[int] = None
    video_count: Optional[int] = None


class VideoInfo(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    published_at: Optional[datetime] = None
    duration: Optional[str] = None
    view_count: Optional[int] = None
    like_count: Optional[int] = None
    privacy_status: Optional[str] = None
    upload_status: Optional[str] = None
    license: Optional[str] = None
    made_for_kids: Optional[bool] = None
    blocked_regions: List[str] = Field(default_factory=list)
    allowed_regions: List[str] = Field(default_factory=list)
    monetization_status: Optional[str] = None

    def snapshot(self) -> VideoSnapshot:
        return VideoSnapshot(
            privacy_status=self.privacy_status,
            upload_status=self.upload_status,
            blocked_regions=list(self.blocked_regions),
            monetization_status=self.monetization_status,
        )


class VideoPage(BaseModel):
    videos: List[VideoInfo] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    total_results: Optional[int] = None


class ContentOwner(BaseModel):
    id: str
    display_name: Optional[str] = None


class ContentIdClaim(BaseModel):
    """A Content ID claim as returned by the Partner API."""
    id: str
    asset_id: Optional[str] = Field(None, alias="assetId")
    video_id: Optional[str] = Field(None, alias="videoId")
    status: Optional[str] = None
    content_type: Optional[str] = Field(None, alias="contentType")
    time_created: Optional[datetime] = Field(None, alias="timeCreated")
    origin: Optional[Dict[str, Any]] = None
    policy: Optional[Dict[str, Any]] = None
    applied_policy: Optional[Dict[str, Any]] = Field(None, alias="appliedPolicy")
    match_info: Optional[Dict[str, Any]] = Field(None, alias="matchInfo")
    third_party_claim: Optional[bool] = Field(None, alias="thirdPartyClaim")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @property
    def claim_type(self) -> Optional[str]:
        if self.origin:
            return self.origin.get("source")
        return None

    def raw(self) -> Dict[str, Any]:
        """The payload in the platform's own field names, JSON safe."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ClaimSearchResult(BaseModel):
    claims: List[ContentIdClaim] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    total_results: Optional[int] = None


class AssetInfo(BaseModel):
    id: str
    type: Optional[str] = None
    title: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OAuthTokens(BaseModel):
    access_token: str
    refresh_token: str
    expires_at: datetime


# Job payloads

class ChannelSyncJob(BaseModel):
    channel_id: str


class ClaimSyncJob(BaseModel):
    channel_id: str
    full_sync: bool = False


class ClaimDetectJob(BaseModel):
    video_id: str
    channel_id: str


class NotificationJob(BaseModel):
    user_id: str
    type: NotificationType
    title: str
    message: str
    channel_id: Optional[str] = None
    video_id: Optional[str] = None
    event_id: Optional[str] = None
    send_email: bool = False
