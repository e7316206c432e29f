"""
MintForge Error Taxonomy
========================
Structured failures raised by the pipeline components.

Every error carries:
- stage: pipeline stage where it surfaced (filled in by the orchestrator)
- cause: human-readable explanation
- retry_safe: whether blindly re-running the whole pipeline is safe
- trail: per-attempt diagnostics (upload attempts, endpoint probes, ...)

Fatal in mandatory stages: EndpointUnavailable, UploadFailed,
OperationRejected, OperationTimeout. Advisory only: ListingUnavailable.
Cancelled preempts every other outcome.
"""

from typing import Any, Dict, List, Optional


class MintForgeError(Exception):
    """Base class for all pipeline failures."""

    code = "MINTFORGE_ERROR"

    def __init__(
        self,
        cause: str,
        stage: Optional[str] = None,
        retry_safe: bool = True,
        trail: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(cause)
        self.cause = cause
        self.stage = stage
        self.retry_safe = retry_safe
        self.trail = list(trail or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "stage": self.stage,
            "cause": self.cause,
            "retry_safe": self.retry_safe,
            "trail": self.trail,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(stage={self.stage!r}, cause={self.cause!r})"


class EndpointUnavailable(MintForgeError):
    """Every endpoint in the pool was exhausted."""

    code = "ENDPOINT_UNAVAILABLE"


class UploadFailed(MintForgeError):
    """Every storage provider was exhausted (or content never became reachable)."""

    code = "UPLOAD_FAILED"

    def __init__(self, cause: str, provider_errors: Optional[Dict[str, str]] = None, **kwargs):
        super().__init__(cause, **kwargs)
        self.provider_errors = dict(provider_errors or {})

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["provider_errors"] = self.provider_errors
        return data


class OperationRejected(MintForgeError):
    """Non-retryable on-chain rejection (insufficient balance, invalid manifest...)."""

    code = "OPERATION_REJECTED"


class OperationOrderError(OperationRejected):
    """An operation was requested before its prerequisite confirmed."""

    code = "OPERATION_ORDER"


class OperationTimeout(MintForgeError):
    """Retries exhausted within the allotted confirmation window."""

    code = "OPERATION_TIMEOUT"


class ListingUnavailable(MintForgeError):
    """Listing index could not be reached. Advisory only."""

    code = "LISTING_UNAVAILABLE"


class Cancelled(MintForgeError):
    """Run was cancelled by the caller."""

    code = "CANCELLED"

    def __init__(self, cause: str = "Run cancelled by caller", **kwargs):
        super().__init__(cause, **kwargs)


# ═══════════════════════════════════════════════════════════════════════════════
# CLASSIFICATION HELPERS (not surfaced to callers)
# ═══════════════════════════════════════════════════════════════════════════════

class TransientError(Exception):
    """Timeout, network blip, rate limit: worth retrying."""


class PermanentEndpointError(Exception):
    """Auth/forbidden style endpoint failure: never retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
