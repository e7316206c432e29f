"""
Pipeline run state and the structured result returned to callers.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from mintforge.shared.models.listing import ListingRecord
from mintforge.shared.models.operations import Operation
from mintforge.shared.models.uploads import UploadResult


class Stage(Enum):
    INIT = "INIT"
    UPLOAD_IMAGE = "UPLOAD_IMAGE"
    UPLOAD_METADATA = "UPLOAD_METADATA"
    SELECT_ENDPOINT = "SELECT_ENDPOINT"
    CREATE_ASSET = "CREATE_ASSET"
    ATTACH_METADATA = "ATTACH_METADATA"
    MINT = "MINT"
    REVOKE_CAPABILITIES = "REVOKE_CAPABILITIES"
    SUBMIT_LISTING = "SUBMIT_LISTING"
    MONITOR_LISTING = "MONITOR_LISTING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.DONE, Stage.FAILED, Stage.CANCELLED)

    @property
    def is_optional(self) -> bool:
        return self in OPTIONAL_STAGES


OPTIONAL_STAGES = frozenset({Stage.REVOKE_CAPABILITIES, Stage.SUBMIT_LISTING, Stage.MONITOR_LISTING})


class RunStatus(Enum):
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ProgressEvent:
    """Emitted to the UI collaborator on every state transition."""
    run_id: str
    stage: Stage
    percent: int
    message: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.stage.value, "percent": self.percent, "message": self.message}


@dataclass
class StageResult:
    stage: Stage
    ok: bool
    detail: Any = None
    error: Optional[Dict[str, Any]] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None


@dataclass
class PipelineRun:
    """Mutable state of one end-to-end execution."""

    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    stage: Stage = Stage.INIT
    percent: int = 0
    status: RunStatus = RunStatus.RUNNING
    stage_results: Dict[str, StageResult] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    history: List[ProgressEvent] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": self.stage.value,
            "percent": self.percent,
            "status": self.status.value,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class PipelineResult:
    """
    Terminal outcome of `PipelineOrchestrator.create_asset`.

    `operations` always carries create / attach_metadata / mint (None when
    the stage never confirmed). `revoke` maps capability -> Operation and is
    only present once the revoke stage ran to an outcome.
    """

    run: PipelineRun
    asset_id: Optional[str] = None
    operations: Dict[str, Any] = field(
        default_factory=lambda: {"create": None, "attach_metadata": None, "mint": None}
    )
    uploads: Dict[str, Optional[UploadResult]] = field(
        default_factory=lambda: {"image": None, "metadata": None}
    )
    listing: Optional[ListingRecord] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def status(self) -> RunStatus:
        return self.run.status

    @property
    def succeeded(self) -> bool:
        return self.run.status == RunStatus.DONE

    @property
    def create_confirmed(self) -> bool:
        create = self.operations.get("create")
        return create is not None and create.is_confirmed

    def to_dict(self) -> Dict[str, Any]:
        operations: Dict[str, Any] = {}
        for key, value in self.operations.items():
            if key == "revoke":
                operations[key] = (
                    {cap: (op.to_dict() if op else None) for cap, op in value.items()}
                    if value is not None else None
                )
            else:
                operations[key] = value.to_dict() if isinstance(value, Operation) else None

        data = {
            "asset_id": self.asset_id,
            "status": self.run.status.value,
            "operations": operations,
            "uploads": {key: (up.to_dict() if up else None) for key, up in self.uploads.items()},
            "run": self.run.to_dict(),
        }
        if self.listing is not None:
            data["listing"] = self.listing.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data
