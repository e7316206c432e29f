"""
Pipeline Orchestrator
=====================
State machine driving one asset from raw image bytes to a listed token.

    INIT -> UPLOAD_IMAGE -> UPLOAD_METADATA -> SELECT_ENDPOINT
         -> CREATE_ASSET -> ATTACH_METADATA -> MINT
         -> REVOKE_CAPABILITIES? -> SUBMIT_LISTING? -> MONITOR_LISTING?
         -> DONE | FAILED | CANCELLED

Rules:
- Only moves listed in TRANSITIONS are legal; every move emits a
  ProgressEvent {stage, percent, message}
- A failure in a mandatory stage ends the run FAILED with the stage name,
  cause, retry_safe flag and diagnostic trail
- A failure in an optional stage (revoke, listing) becomes a warning and
  the run still reaches DONE
- Cancellation preempts everything: the run ends CANCELLED and operations
  confirmed before the cancel stay in the result
- retry_safe is True only while CREATE_ASSET has not confirmed
- SELECT_ENDPOINT also checks the signer is connected and holds at least
  MIN_BALANCE_SOL before anything is signed

Usage:
    orchestrator = PipelineOrchestrator(SessionContext.simulated())
    result = await orchestrator.create_asset(manifest, image_bytes)
    print(result.to_dict())
"""

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from mintforge.pipeline.listing_monitor import ListingStatusMonitor
from mintforge.shared.execution.transaction_submitter import TransactionSubmitter
from mintforge.shared.models.pipeline import (
    PipelineResult,
    PipelineRun,
    ProgressEvent,
    RunStatus,
    Stage,
    StageResult,
)
from mintforge.shared.schemas.manifest import AssetManifest, CapabilityKind
from mintforge.shared.system.cancellation import CancellationToken
from mintforge.shared.system.context import SessionContext
from mintforge.shared.infrastructure.endpoint_pool import EndpointPool
from mintforge.shared.infrastructure.rpc_client import RpcError
from mintforge.shared.system.errors import (
    Cancelled,
    EndpointUnavailable,
    MintForgeError,
    OperationRejected,
    PermanentEndpointError,
    TransientError,
)
from mintforge.shared.system.logging import Logger

# ═══════════════════════════════════════════════════════════════════════════════
# STATE TABLE
# ═══════════════════════════════════════════════════════════════════════════════

STAGE_PERCENT = {
    Stage.INIT: 0,
    Stage.UPLOAD_IMAGE: 10,
    Stage.UPLOAD_METADATA: 25,
    Stage.SELECT_ENDPOINT: 35,
    Stage.CREATE_ASSET: 45,
    Stage.ATTACH_METADATA: 60,
    Stage.MINT: 70,
    Stage.REVOKE_CAPABILITIES: 80,
    Stage.SUBMIT_LISTING: 88,
    Stage.MONITOR_LISTING: 92,
    Stage.DONE: 100,
}

LAMPORTS_PER_SOL = 1_000_000_000

_TERMINAL_EXITS = {Stage.FAILED, Stage.CANCELLED}

TRANSITIONS = {
    Stage.INIT: {Stage.UPLOAD_IMAGE} | _TERMINAL_EXITS,
    Stage.UPLOAD_IMAGE: {Stage.UPLOAD_METADATA} | _TERMINAL_EXITS,
    Stage.UPLOAD_METADATA: {Stage.SELECT_ENDPOINT} | _TERMINAL_EXITS,
    Stage.SELECT_ENDPOINT: {Stage.CREATE_ASSET} | _TERMINAL_EXITS,
    Stage.CREATE_ASSET: {Stage.ATTACH_METADATA} | _TERMINAL_EXITS,
    Stage.ATTACH_METADATA: {Stage.MINT} | _TERMINAL_EXITS,
    Stage.MINT: {Stage.REVOKE_CAPABILITIES, Stage.SUBMIT_LISTING, Stage.DONE} | _TERMINAL_EXITS,
    Stage.REVOKE_CAPABILITIES: {Stage.SUBMIT_LISTING, Stage.DONE} | _TERMINAL_EXITS,
    Stage.SUBMIT_LISTING: {Stage.MONITOR_LISTING, Stage.DONE} | _TERMINAL_EXITS,
    Stage.MONITOR_LISTING: {Stage.DONE} | _TERMINAL_EXITS,
    Stage.DONE: set(),
    Stage.FAILED: set(),
    Stage.CANCELLED: set(),
}


class IllegalTransition(RuntimeError):
    pass


@dataclass
class PipelineOptions:
    """
    Per-run switches.

    revoke: capabilities to revoke after mint; None means "whatever the
        manifest requests as revoked"
    """
    revoke: Optional[List[CapabilityKind]] = None
    listing_enabled: bool = True
    listing_timeout_s: Optional[float] = None
    image_filename: str = "logo.png"
    image_content_type: str = "image/png"
    token: Optional[CancellationToken] = None


@dataclass
class _RunState:
    run: PipelineRun
    result: PipelineResult
    token: CancellationToken
    submitter: Optional[TransactionSubmitter] = None
    monitor: Optional[ListingStatusMonitor] = None
    revocations: Dict[str, Any] = field(default_factory=dict)


class PipelineOrchestrator:
    """Runs the asset creation state machine against a SessionContext."""

    def __init__(self, context: SessionContext):
        self.context = context
        self.token: Optional[CancellationToken] = None
        self.current_run: Optional[PipelineRun] = None

    def cancel(self, reason: str = "Run cancelled by caller") -> None:
        """Cancel the run in flight (no-op when idle)."""
        if self.token is not None:
            self.token.cancel(reason)

    # =========================================================================
    # TRANSITIONS & PROGRESS
    # =========================================================================

    def _transition(self, state: _RunState, stage: Stage, message: str) -> None:
        run = state.run
        if stage not in TRANSITIONS[run.stage]:
            raise IllegalTransition(f"{run.stage.value} -> {stage.value} is not a legal transition")

        run.stage = stage
        run.percent = STAGE_PERCENT.get(stage, run.percent)
        event = ProgressEvent(run_id=run.run_id, stage=stage, percent=run.percent, message=message)
        run.history.append(event)
        Logger.info(f"[PIPELINE] [{run.percent:3d}%] {stage.value}: {message}")
        self.context.emit(event)

    async def _stage(
        self,
        state: _RunState,
        stage: Stage,
        message: str,
        work: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Enter `stage` and run `work`. Mandatory-stage errors propagate;
        optional-stage errors are recorded as warnings and yield None.
        """
        self._transition(state, stage, message)
        state.token.raise_if_cancelled()
        stage_result = StageResult(stage=stage, ok=False)
        state.run.stage_results[stage.value] = stage_result

        try:
            detail = await work()
        except Cancelled:
            stage_result.finished_at = time.time()
            raise
        except MintForgeError as e:
            return self._stage_failed(state, stage, stage_result, e)
        except Exception as e:
            # Anything unclassified (a malformed third-party reply) still ends the stage cleanly
            Logger.debug(f"[PIPELINE] Unexpected error in {stage.value}: {e!r}")
            error = MintForgeError(f"Unexpected {type(e).__name__}: {e}", stage=stage.value)
            return self._stage_failed(state, stage, stage_result, error, cause=e)

        stage_result.ok = True
        stage_result.detail = detail
        stage_result.finished_at = time.time()
        return detail

    def _stage_failed(
        self,
        state: _RunState,
        stage: Stage,
        stage_result: StageResult,
        error: MintForgeError,
        cause: Optional[BaseException] = None,
    ) -> None:
        error.stage = stage.value
        error.retry_safe = not state.result.create_confirmed
        stage_result.error = error.to_dict()
        stage_result.finished_at = time.time()
        if stage.is_optional:
            self._warn(state, error)
            return None
        if cause is not None:
            raise error from cause
        raise error

    def _warn(self, state: _RunState, error: MintForgeError) -> None:
        state.run.warnings.append(error.to_dict())
        Logger.warning(f"[PIPELINE] {error.stage} (optional) failed: {error.cause}")

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def create_asset(
        self,
        manifest: AssetManifest,
        image_bytes: bytes,
        options: Optional[PipelineOptions] = None,
    ) -> PipelineResult:
        """
        Run the whole pipeline. Never raises for pipeline failures: the
        outcome (DONE / FAILED / CANCELLED) is in the returned result.
        """
        options = options or PipelineOptions()
        token = options.token or CancellationToken()
        self.token = token

        run = PipelineRun()
        self.current_run = run
        state = _RunState(run=run, result=PipelineResult(run=run), token=token)

        Logger.section(f"Creating {manifest.name} ({manifest.symbol})")
        try:
            await self._execute(state, manifest, image_bytes, options)
        except Cancelled as e:
            self._finish_cancelled(state, e)
        except MintForgeError as e:
            self._finish_failed(state, e)
        else:
            self._finish_done(state, manifest)

        return state.result

    async def _execute(
        self,
        state: _RunState,
        manifest: AssetManifest,
        image_bytes: bytes,
        options: PipelineOptions,
    ) -> None:
        ctx = self.context
        token = state.token
        result = state.result
        chain = ctx.storage_chain(token)

        # --- Content -------------------------------------------------------
        image = await self._stage(
            state, Stage.UPLOAD_IMAGE, f"Uploading {options.image_filename}",
            lambda: chain.upload(image_bytes, options.image_filename, options.image_content_type),
        )
        result.uploads["image"] = image

        async def upload_metadata():
            uploaded, _document = await chain.upload_metadata(
                manifest, image, ctx.signer.public_identity, options.image_filename
            )
            return uploaded

        metadata = await self._stage(state, Stage.UPLOAD_METADATA, "Uploading metadata document", upload_metadata)
        result.uploads["metadata"] = metadata

        # --- Network -------------------------------------------------------
        pool = ctx.endpoint_pool(token)

        async def select_endpoint():
            selected = await pool.select_endpoint()
            await self._preflight(pool)
            return selected

        endpoint = await self._stage(state, Stage.SELECT_ENDPOINT, "Selecting RPC endpoint", select_endpoint)

        poller = ctx.confirmation_poller(pool, token)
        submitter = ctx.transaction_submitter(poller)
        state.submitter = submitter
        Logger.debug(f"[PIPELINE] Using {endpoint.name} for asset {submitter.asset_id}")

        # --- On-chain operations ---------------------------------------------
        create = await self._stage(
            state, Stage.CREATE_ASSET, f"Creating {manifest.variant.value} asset",
            lambda: submitter.create_asset(manifest),
        )
        result.operations["create"] = create
        result.asset_id = submitter.asset_id

        attach = await self._stage(
            state, Stage.ATTACH_METADATA, "Attaching metadata",
            lambda: submitter.attach_metadata(submitter.asset_id, metadata.url),
        )
        result.operations["attach_metadata"] = attach

        mint = await self._stage(
            state, Stage.MINT, f"Minting {manifest.initial_supply:,} {manifest.symbol}",
            lambda: submitter.mint_initial_allocation(submitter.asset_id, manifest.base_units),
        )
        result.operations["mint"] = mint

        # --- Optional stages -------------------------------------------------
        to_revoke = options.revoke if options.revoke is not None else manifest.capabilities.to_revoke()
        if to_revoke:
            await self._stage(
                state, Stage.REVOKE_CAPABILITIES,
                f"Revoking {', '.join(kind.value for kind in to_revoke)}",
                lambda: self._revoke_all(state, to_revoke),
            )
            result.operations["revoke"] = {
                kind.value: submitter.revocations.get(kind) for kind in to_revoke
            }

        monitor = ctx.listing_monitor(token) if options.listing_enabled else None
        if monitor is not None:
            state.monitor = monitor
            await self._stage(
                state, Stage.SUBMIT_LISTING, "Submitting listing",
                lambda: monitor.submit(submitter.asset_id, manifest, metadata.url),
            )
            record = await self._stage(
                state, Stage.MONITOR_LISTING, "Waiting for listing index",
                lambda: monitor.monitor(submitter.asset_id, options.listing_timeout_s),
            )
            result.listing = record or monitor.record

    async def _preflight(self, pool: EndpointPool) -> None:
        """Refuse to sign anything without a connected signer that can pay the fees."""
        signer = self.context.signer
        if not signer.is_connected:
            raise OperationRejected("Signer is not connected", retry_safe=True)

        minimum = int(self.context.settings.MIN_BALANCE_SOL * LAMPORTS_PER_SOL)
        try:
            lamports = await self.context.balance_source(pool).get_balance(signer.public_identity)
        except Cancelled:
            raise
        except (TransientError, RpcError, PermanentEndpointError, EndpointUnavailable) as e:
            Logger.warning(f"[PIPELINE] Balance check skipped: {e}")
            return

        if lamports < minimum:
            raise OperationRejected(
                f"Signer balance {lamports / LAMPORTS_PER_SOL:.4f} SOL is below the "
                f"{minimum / LAMPORTS_PER_SOL:.4f} SOL needed for fees and rent",
                retry_safe=True,
            )
        Logger.debug(f"[PIPELINE] Signer balance {lamports / LAMPORTS_PER_SOL:.4f} SOL")

    async def _revoke_all(self, state: _RunState, kinds: List[CapabilityKind]) -> Dict[str, Any]:
        """
        Revoke each capability in order. One failed revocation does not stop
        the others; all failures surface together as a single error, which
        the optional stage turns into a warning.
        """
        submitter = state.submitter
        failures: Dict[str, str] = {}
        for kind in kinds:
            try:
                op = await submitter.revoke_capability(submitter.asset_id, kind)
            except Cancelled:
                raise
            except MintForgeError as e:
                failures[kind.value] = e.cause
                continue
            state.revocations[kind.value] = op.signature

        if failures:
            first = next(iter(failures))
            raise MintForgeError(
                f"Revocation failed for {', '.join(failures)}: {failures[first]}",
                stage=Stage.REVOKE_CAPABILITIES.value,
                retry_safe=False,
                trail=[{"capability": kind, "error": cause} for kind, cause in failures.items()],
            )
        return dict(state.revocations)

    # =========================================================================
    # TERMINAL STATES
    # =========================================================================

    def _close(self, state: _RunState, stage: Stage, status: RunStatus, message: str) -> None:
        self._transition(state, stage, message)
        state.run.status = status
        state.run.finished_at = time.time()

    def _finish_failed(self, state: _RunState, error: MintForgeError) -> None:
        error.stage = error.stage or state.run.stage.value
        error.retry_safe = not state.result.create_confirmed
        state.run.errors.append(error.to_dict())
        state.result.error = error.to_dict()
        self._close(state, Stage.FAILED, RunStatus.FAILED, f"{error.stage}: {error.cause}")
        Logger.error(f"[PIPELINE] Run {state.run.run_id} failed at {error.stage}: {error.cause}")

    def _finish_cancelled(self, state: _RunState, error: Cancelled) -> None:
        stage = state.run.stage
        error.stage = error.stage or stage.value
        error.retry_safe = not state.result.create_confirmed
        if stage == Stage.REVOKE_CAPABILITIES and state.run.stage_results.get(stage.value):
            # Partial revocations stay visible here; operations.revoke is omitted
            state.run.stage_results[stage.value].detail = dict(state.revocations)
        if state.monitor is not None and state.monitor.record is not None:
            state.result.listing = state.monitor.record

        state.run.errors.append(error.to_dict())
        state.result.error = error.to_dict()
        self._close(state, Stage.CANCELLED, RunStatus.CANCELLED, f"Cancelled during {stage.value}")
        Logger.warning(f"[PIPELINE] Run {state.run.run_id} cancelled during {stage.value}")

    def _finish_done(self, state: _RunState, manifest: AssetManifest) -> None:
        self._close(state, Stage.DONE, RunStatus.DONE, f"{manifest.symbol} created: {state.result.asset_id}")
        Logger.success(f"[PIPELINE] Run {state.run.run_id} complete: {state.result.asset_id}")

        persistence = self.context.persistence
        if persistence is None:
            return

        rendered = state.result.to_dict()
        record = {
            "run_id": state.run.run_id,
            "asset_id": state.result.asset_id,
            "symbol": manifest.symbol,
            "status": state.run.status.value,
            "listing_status": state.result.listing.status.value if state.result.listing else None,
            "operations": rendered["operations"],
            "uploads": rendered["uploads"],
            "created_at": state.run.started_at,
        }
        try:
            persistence.save_run(record)
        except Exception as e:
            state.run.warnings.append({"code": "PERSISTENCE", "stage": "DONE", "cause": str(e)})
            Logger.warning(f"[STORE] Could not persist run {state.run.run_id}: {e}")
