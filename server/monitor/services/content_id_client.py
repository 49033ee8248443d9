"""
YouTube Partner (Content ID) API client.

Only available to accounts with partner access; everything else receives
``AccessForbidden`` from the platform.
"""
import asyncio
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import ValidationError

from server.monitor.errors import AccessForbidden, NotFound
from server.monitor.schemas import AssetInfo, ClaimSearchResult, ContentIdClaim, ContentOwner
from server.monitor.services.youtube_client import PlatformApiClient, MAX_IDS_PER_REQUEST

logger = logging.getLogger(__name__)


def _format_date(value: Union[date, datetime, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


class ContentIdClient(PlatformApiClient):
    """Client for claim search, claim details, claim history and assets."""

    def __init__(self, http_client: httpx.AsyncClient,
                 base_url: str = "https://www.googleapis.com/youtube/partner/v1",
                 batch_delay: float = 0.2):
        super().__init__(http_client, base_url)
        self.batch_delay = batch_delay

    async def get_content_owner(self, access_token: str) -> Optional[ContentOwner]:
        """Get the content owner linked to the account, or None without partner access."""
        try:
            data = await self._get("contentOwners", access_token, {"fetchMine": "true"})
        except (AccessForbidden, NotFound) as e:
            logger.info(f"No content owner available for account: {e}")
            return None

        items = data.get("items") or []
        if not items:
            return None
        return ContentOwner(id=items[0]["id"], display_name=items[0].get("displayName"))

    async def search_claims(
        self,
        access_token: str,
        content_owner_id: str,
        video_ids: Optional[List[str]] = None,
        status: Optional[str] = None,
        created_after: Union[date, datetime, None] = None,
        created_before: Union[date, datetime, None] = None,
        page_token: Optional[str] = None,
        include_third_party_claims: bool = True,
    ) -> ClaimSearchResult:
        """Search claims for the content owner, one page at a time."""
        data = await self._get("claimSearch", access_token, {
            "onBehalfOfContentOwner": content_owner_id,
            "videoId": ",".join(video_ids) if video_ids else None,
            "status": status,
            "createdAfter": _format_date(created_after),
            "createdBefore": _format_date(created_before),
            "pageToken": page_token,
            "includeThirdPartyClaims": "true" if include_third_party_claims else "false",
        })

        return ClaimSearchResult(
            claims=self._parse_claims(data.get("items") or []),
            next_page_token=data.get("nextPageToken"),
            total_results=(data.get("pageInfo") or {}).get("totalResults"),
        )

    async def get_claims_for_videos(self, access_token: str, content_owner_id: str,
                                    video_ids: List[str]) -> List[ContentIdClaim]:
        """Collect the first page of claims for many videos, batching ids per request."""
        claims: List[ContentIdClaim] = []
        for start in range(0, len(video_ids), MAX_IDS_PER_REQUEST):
            if start and self.batch_delay:
                await asyncio.sleep(self.batch_delay)
            batch = video_ids[start:start + MAX_IDS_PER_REQUEST]
            result = await self.search_claims(access_token, content_owner_id, video_ids=batch)
            claims.extend(result.claims)
        return claims

    async def get_claim(self, access_token: str, content_owner_id: str, claim_id: str) -> Optional[ContentIdClaim]:
        try:
            data = await self._get(f"claims/{claim_id}", access_token, {
                "onBehalfOfContentOwner": content_owner_id,
            })
        except NotFound:
            return None
        claims = self._parse_claims([data])
        return claims[0] if claims else None

    async def get_claim_history(self, access_token: str, content_owner_id: str,
                                claim_id: str) -> List[Dict[str, Any]]:
        """Get the event history of a claim (created, disputed, released...)."""
        try:
            data = await self._get(f"claimHistory/{claim_id}", access_token, {
                "onBehalfOfContentOwner": content_owner_id,
            })
        except NotFound:
            return []
        return list(data.get("event") or [])

    async def get_asset(self, access_token: str, content_owner_id: str, asset_id: str) -> Optional[AssetInfo]:
        try:
            data = await self._get(f"assets/{asset_id}", access_token, {
                "onBehalfOfContentOwner": content_owner_id,
                "fetchMetadata": "effective",
            })
        except NotFound:
            return None

        metadata = data.get("metadataEffective") or data.get("metadataMine") or {}
        return AssetInfo(
            id=data.get("id", asset_id),
            type=data.get("type"),
            title=metadata.get("title"),
            metadata=metadata,
        )

    def _parse_claims(self, items: List[Dict[str, Any]]) -> List[ContentIdClaim]:
        claims = []
        for item in items:
            try:
                claims.append(ContentIdClaim.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed claim {item.get('id')!r}: {e}")
        return claims
