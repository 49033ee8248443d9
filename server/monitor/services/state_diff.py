"""
Video state diff engine.

Compares a freshly fetched video snapshot against the previously stored one
and reports the changes worth raising with the channel owner. Pure: no I/O.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from server.monitor.models import EventType
from server.monitor.schemas import VideoSnapshot

REGION_BLOCK_MARKERS = ("region block", "blocked in")


@dataclass(frozen=True)
class RegionBlockChange:
    """Regions newly blocking the video, or all blocks on first observation."""
    regions: Tuple[str, ...]
    first_observation: bool = False
    category = EventType.REGION_RESTRICTION

    def describe(self) -> str:
        if self.first_observation:
            return f"Video is blocked in {len(self.regions)} regions"
        return f"New region blocks: {', '.join(self.regions)}"


@dataclass(frozen=True)
class UploadStatusChange:
    previous: str
    current: Optional[str]
    category = EventType.MONETIZATION_CHANGE

    def describe(self) -> str:
        return f"Upload status changed from {self.previous} to {self.current or 'unknown'}"


@dataclass(frozen=True)
class PrivacyStatusChange:
    previous: str
    current: Optional[str]
    category = EventType.MONETIZATION_CHANGE

    def describe(self) -> str:
        return f"Privacy status changed from {self.previous} to {self.current or 'unknown'}"


VideoChange = Union[RegionBlockChange, UploadStatusChange, PrivacyStatusChange]


@dataclass
class DetectionResult:
    has_issues: bool
    changes: List[str] = field(default_factory=list)
    details: List[VideoChange] = field(default_factory=list)


def classify_change(description: str) -> EventType:
    """Infer the event category from a change description."""
    lowered = description.lower()
    if any(marker in lowered for marker in REGION_BLOCK_MARKERS):
        return EventType.REGION_RESTRICTION
    return EventType.MONETIZATION_CHANGE


def detect_changes(current: VideoSnapshot, previous: Optional[VideoSnapshot]) -> DetectionResult:
    """
    Diff two snapshots of the same video.

    With no previous snapshot (first observation) only existing region
    blocks are reported. Otherwise newly blocked regions, an upload status
    leaving ``processed`` and a privacy status leaving ``public`` are each
    reported. Region codes are sorted so descriptions stay stable across
    runs, which deduplication relies on.
    """
    details: List[VideoChange] = []
    current_blocked = sorted(set(current.blocked_regions or []))

    if previous is None:
        if current_blocked:
            details.append(RegionBlockChange(tuple(current_blocked), first_observation=True))
        return _result(details)

    previous_blocked = set(previous.blocked_regions or [])
    new_blocks = [region for region in current_blocked if region not in previous_blocked]
    if new_blocks:
        details.append(RegionBlockChange(tuple(new_blocks)))

    if previous.upload_status == "processed" and current.upload_status != "processed":
        details.append(UploadStatusChange(previous.upload_status, current.upload_status))

    if previous.privacy_status == "public" and current.privacy_status != "public":
        details.append(PrivacyStatusChange(previous.privacy_status, current.privacy_status))

    return _result(details)


def _result(details: List[VideoChange]) -> DetectionResult:
    return DetectionResult(
        has_issues=bool(details),
        changes=[change.describe() for change in details],
        details=details,
    )
