"""Listing index observation for a created asset."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ListingStatus(Enum):
    PENDING = "pending"
    LISTED = "listed"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    CANCELLED = "cancelled"


@dataclass
class ListingObservation:
    """Single poll result from the index."""
    listed: bool
    rating: Optional[int] = None
    url: Optional[str] = None
    pair_count: int = 0
    liquidity_usd: float = 0.0


@dataclass
class ListingRecord:
    asset_id: str
    listed: bool = False
    rating: Optional[int] = None
    poll_count: int = 0
    status: ListingStatus = ListingStatus.PENDING
    url: Optional[str] = None
    submission_id: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "listed": self.listed,
            "rating": self.rating,
            "status": self.status.value,
            "poll_count": self.poll_count,
            "url": self.url,
            "submission_id": self.submission_id,
            "last_error": self.last_error,
        }
