"""
On-chain operation records.

Operations form a strict linear chain per run:
create -> attach_metadata -> mint -> revoke (one per capability).
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from mintforge.shared.schemas.manifest import CapabilityKind


class OperationKind(Enum):
    CREATE = "create"
    ATTACH_METADATA = "attach_metadata"
    MINT = "mint"
    REVOKE = "revoke"


class OperationStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class Operation:
    """One signed and submitted on-chain operation."""

    kind: OperationKind
    capability: Optional[CapabilityKind] = None
    signature: Optional[str] = None
    # Every signature submitted for this operation, oldest first
    signatures: List[str] = field(default_factory=list)
    status: OperationStatus = OperationStatus.PENDING
    retry_count: int = 0
    error: Optional[str] = None
    submitted_at: Optional[float] = None
    confirmed_at: Optional[float] = None
    slot: Optional[int] = None
    instruction: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_confirmed(self) -> bool:
        return self.status == OperationStatus.CONFIRMED

    @property
    def label(self) -> str:
        if self.capability is not None:
            return f"{self.kind.value}:{self.capability.value}"
        return self.kind.value

    def mark_submitted(self, signature: str) -> None:
        self.signature = signature
        if signature not in self.signatures:
            self.signatures.append(signature)
        self.submitted_at = time.time()

    def mark_confirmed(self, slot: Optional[int] = None) -> None:
        self.status = OperationStatus.CONFIRMED
        self.confirmed_at = time.time()
        self.slot = slot
        self.error = None

    def mark_failed(self, error: str) -> None:
        self.status = OperationStatus.FAILED
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "capability": self.capability.value if self.capability else None,
            "signature": self.signature,
            "signatures": list(self.signatures),
            "status": self.status.value,
            "retry_count": self.retry_count,
            "error": self.error,
            "submitted_at": self.submitted_at,
            "confirmed_at": self.confirmed_at,
            "slot": self.slot,
        }
