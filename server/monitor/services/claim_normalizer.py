"""
Normalization of raw Content ID claim data.

Pure helpers that turn platform payloads into the values stored on
``CopyrightEvent`` and ``Claimant`` rows.
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from server.monitor.models import EventStatus, EventType

ISO_DURATION_RE = re.compile(
    r"^PT(?:(\d+(?:\.\d+)?)H)?(?:(\d+(?:\.\d+)?)M)?(?:(\d+(?:\.\d+)?)S)?$"
)
LEGAL_SUFFIX_RE = re.compile(r"\s+(inc\.?|llc\.?|ltd\.?|corp\.?|corporation|limited)$", re.IGNORECASE)
PUNCTUATION_RE = re.compile(r"[^\w\s-]")
WHITESPACE_RE = re.compile(r"\s+")

CLAIM_STATUS_MAP = {
    "active": EventStatus.ACTIVE,
    "pending": EventStatus.ACTIVE,
    "potential": EventStatus.ACTIVE,
    "inactive": EventStatus.RESOLVED,
    "appealed": EventStatus.DISPUTED,
    "disputed": EventStatus.DISPUTED,
}


@dataclass(frozen=True)
class MatchDetails:
    start_ms: int
    end_ms: int
    duration_secs: float
    match_type: str


def parse_iso_duration(value: Any) -> Optional[float]:
    """Parse an ISO 8601 time duration such as ``PT1M30.5S`` into seconds."""
    if not isinstance(value, str):
        return None
    match = ISO_DURATION_RE.match(value.strip())
    if not match or value.strip() == "PT":
        return None
    hours, minutes, seconds = (float(part) if part else 0.0 for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def parse_match_info(match_info: Any) -> Optional[MatchDetails]:
    """
    Extract the matched time range from a claim's match info.

    Only the first match segment is used. Returns None for missing or
    malformed input; never raises.
    """
    if not isinstance(match_info, dict):
        return None
    segments = match_info.get("matchSegments")
    if not isinstance(segments, list) or not segments or not isinstance(segments[0], dict):
        return None

    segment = segments[0]
    video_segment = segment.get("video_segment", segment.get("videoSegment"))
    if not isinstance(video_segment, dict):
        return None

    start_secs = parse_iso_duration(video_segment.get("start") or "PT0S")
    duration_secs = parse_iso_duration(video_segment.get("duration") or "PT0S")
    if start_secs is None or duration_secs is None:
        return None

    return MatchDetails(
        start_ms=round(start_secs * 1000),
        end_ms=round((start_secs + duration_secs) * 1000),
        duration_secs=duration_secs,
        match_type=segment.get("channel") or "unknown",
    )


def parse_policy_action(policy: Optional[Dict[str, Any]],
                        applied_policy: Optional[Dict[str, Any]] = None) -> str:
    """Return the lowercased action of the first policy rule, or ``unknown``."""
    selected = applied_policy if applied_policy is not None else policy
    if not isinstance(selected, dict):
        return "unknown"
    rules = selected.get("rules")
    if not isinstance(rules, list) or not rules or not isinstance(rules[0], dict):
        return "unknown"
    action = rules[0].get("action")
    return action.lower() if isinstance(action, str) and action else "unknown"


def map_claim_status(status: Optional[str]) -> EventStatus:
    """Map a platform claim status onto an event status; unknown values stay ACTIVE."""
    if not status:
        return EventStatus.ACTIVE
    return CLAIM_STATUS_MAP.get(status.lower(), EventStatus.ACTIVE)


def categorize_claim(policy_action: str) -> EventType:
    """A blocking policy is treated as a strike; anything else is a claim."""
    return EventType.STRIKE if policy_action == "block" else EventType.CLAIM


def normalize_claimant_name(name: str) -> str:
    """
    Build the deduplication key for a claimant name.

    ``"Universal Music Group, Inc."`` and ``"universal music group"`` map to
    the same key. Letters in any script are kept, so non-Latin names do not
    collapse to an empty key.
    """
    key = name.lower().strip()
    key = LEGAL_SUFFIX_RE.sub("", key)
    key = PUNCTUATION_RE.sub("", key)
    key = WHITESPACE_RE.sub(" ", key)
    return key.strip()
