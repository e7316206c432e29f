"""
Storage upload records: per-attempt trail, gateway accessibility and the
final result handed to later stages.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ProviderReceipt:
    """What a single storage provider returns on success."""
    content_id: str
    url: str


@dataclass
class UploadAttempt:
    """One try against one provider."""

    provider: str
    attempt: int
    status: str  # "success" | "failed"
    content_id: Optional[str] = None
    gateway_urls: List[str] = field(default_factory=list)
    error: Optional[str] = None
    elapsed_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "attempt": self.attempt,
            "status": self.status,
            "content_id": self.content_id,
            "gateway_urls": list(self.gateway_urls),
            "error": self.error,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


@dataclass
class AccessibilityReport:
    """Quorum check of a content id across independent public gateways."""

    content_id: str
    reachable: List[str] = field(default_factory=list)
    unreachable: Dict[str, str] = field(default_factory=dict)
    total: int = 0
    threshold: float = 0.70
    rounds: int = 1

    @property
    def score(self) -> float:
        if self.total == 0:
            return 0.0
        return len(self.reachable) / self.total

    @property
    def ready(self) -> bool:
        return self.total > 0 and self.score >= self.threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_id": self.content_id,
            "reachable": list(self.reachable),
            "unreachable": dict(self.unreachable),
            "total": self.total,
            "score": round(self.score, 3),
            "ready": self.ready,
            "rounds": self.rounds,
        }


@dataclass
class UploadResult:
    """Successful upload through the provider chain."""

    content_id: str
    gateway_urls: List[str]
    provider: str
    attempts: List[UploadAttempt] = field(default_factory=list)
    accessibility: Optional[AccessibilityReport] = None

    @property
    def url(self) -> str:
        """Canonical URL (first gateway URL)."""
        return self.gateway_urls[0] if self.gateway_urls else ""

    @property
    def ready(self) -> bool:
        return self.accessibility is not None and self.accessibility.ready

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_id": self.content_id,
            "url": self.url,
            "gateway_urls": list(self.gateway_urls),
            "provider": self.provider,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "accessibility": self.accessibility.to_dict() if self.accessibility else None,
            "ready": self.ready,
        }
