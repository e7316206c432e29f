"""
Pipeline Orchestrator Unit Tests
================================
End-to-end runs of the state machine against a simulated session.
"""

import asyncio

import pytest

from mintforge.shared.schemas.manifest import CapabilityKind


def make_context(settings, **kwargs):
    from mintforge.shared.system.context import SessionContext

    ctx = SessionContext.simulated(settings=settings, **kwargs)
    ctx.randomize_endpoints = False
    return ctx


def run_pipeline(ctx, manifest, image, **options):
    from mintforge.pipeline.orchestrator import PipelineOptions, PipelineOrchestrator

    orchestrator = PipelineOrchestrator(ctx)
    return orchestrator, orchestrator.create_asset(manifest, image, PipelineOptions(**options))


class TestHappyPath:
    """A run with every stage enabled reaches DONE."""

    @pytest.mark.asyncio
    async def test_runs_to_done(self, fast_settings, manifest, png_bytes):
        from mintforge.shared.models.pipeline import RunStatus, Stage

        events = []
        ctx = make_context(fast_settings, progress_callback=events.append)
        _, pending = run_pipeline(ctx, manifest, png_bytes, revoke=[CapabilityKind.MINT, CapabilityKind.FREEZE])

        result = await pending
        data = result.to_dict()

        assert result.status == RunStatus.DONE
        assert result.asset_id == result.operations["create"].instruction["mint"]
        assert [e.stage for e in events] == [
            Stage.UPLOAD_IMAGE,
            Stage.UPLOAD_METADATA,
            Stage.SELECT_ENDPOINT,
            Stage.CREATE_ASSET,
            Stage.ATTACH_METADATA,
            Stage.MINT,
            Stage.REVOKE_CAPABILITIES,
            Stage.SUBMIT_LISTING,
            Stage.MONITOR_LISTING,
            Stage.DONE,
        ]
        percents = [e.percent for e in events]
        assert percents == sorted(percents)
        assert percents[-1] == 100

        for key in ("create", "attach_metadata", "mint"):
            assert data["operations"][key]["status"] == "confirmed"
        assert set(data["operations"]["revoke"]) == {"mint", "freeze"}
        assert data["listing"]["listed"] is True
        assert data["listing"]["submission_id"].startswith("sim-")
        assert data["uploads"]["metadata"]["ready"]
        assert "error" not in data

    @pytest.mark.asyncio
    async def test_metadata_points_at_uploaded_document(self, fast_settings, manifest, png_bytes):
        ctx = make_context(fast_settings)
        _, pending = run_pipeline(ctx, manifest, png_bytes, listing_enabled=False)

        result = await pending
        attach = result.operations["attach_metadata"]

        assert attach.instruction["uri"] == result.uploads["metadata"].url
        assert result.listing is None

    @pytest.mark.asyncio
    async def test_manifest_requested_revocations(self, fast_settings, png_bytes):
        """Without explicit options the manifest's capability flags decide."""
        from mintforge.shared.schemas.manifest import AssetManifest, CapabilityFlags

        manifest = AssetManifest(
            name="Locked", symbol="LOCK", initial_supply=10,
            capabilities=CapabilityFlags(mint="revoked", update="revoked"),
        )
        ctx = make_context(fast_settings)
        _, pending = run_pipeline(ctx, manifest, png_bytes, listing_enabled=False)

        result = await pending

        assert set(result.operations["revoke"]) == {"mint", "update"}


class TestFailures:
    """Mandatory-stage failures end the run FAILED."""

    @pytest.mark.asyncio
    async def test_attach_expiring_after_create(self, fast_settings, manifest, png_bytes):
        """Create confirmed, attach keeps expiring: not safe to rerun."""
        from mintforge.shared.infrastructure.signer import SimulatedSigner
        from mintforge.shared.models.pipeline import RunStatus

        signer = SimulatedSigner(outcomes={"attach_metadata": ["expire"] * 10})
        ctx = make_context(fast_settings, signer=signer)
        _, pending = run_pipeline(ctx, manifest, png_bytes)

        result = await pending
        data = result.to_dict()

        assert result.status == RunStatus.FAILED
        assert data["error"]["stage"] == "ATTACH_METADATA"
        assert data["error"]["code"] == "OPERATION_TIMEOUT"
        assert data["error"]["retry_safe"] is False
        assert data["operations"]["create"]["signature"]
        assert data["operations"]["attach_metadata"] is None
        assert data["operations"]["mint"] is None
        assert len(signer.submitted("attach_metadata")) == fast_settings.CONFIRM_MAX_RETRIES + 1

    @pytest.mark.asyncio
    async def test_upload_failure_is_retry_safe(self, fast_settings, manifest, png_bytes):
        from mintforge.shared.infrastructure.storage_providers import SimulatedStorageProvider
        from mintforge.shared.models.pipeline import RunStatus

        providers = [SimulatedStorageProvider(name="down", fail_first=99, max_attempts=2)]
        ctx = make_context(fast_settings, providers=providers)
        _, pending = run_pipeline(ctx, manifest, png_bytes)

        result = await pending

        assert result.status == RunStatus.FAILED
        assert result.error["stage"] == "UPLOAD_IMAGE"
        assert result.error["retry_safe"] is True
        assert len(result.error["trail"]) == 2
        assert result.asset_id is None
        assert ctx.signer.submissions == []

    @pytest.mark.asyncio
    async def test_no_endpoint_available(self, fast_settings, manifest, png_bytes):
        from mintforge.shared.models.pipeline import RunStatus
        from mintforge.shared.system.errors import PermanentEndpointError

        async def forbidden(endpoint):
            raise PermanentEndpointError("HTTP 403", status_code=403)

        ctx = make_context(fast_settings)
        ctx.endpoint_probe = forbidden
        _, pending = run_pipeline(ctx, manifest, png_bytes)

        result = await pending

        assert result.status == RunStatus.FAILED
        assert result.error["stage"] == "SELECT_ENDPOINT"
        assert result.error["retry_safe"] is True
        assert result.uploads["image"] is not None

    @pytest.mark.asyncio
    async def test_low_balance_stops_before_signing(self, fast_settings, manifest, png_bytes):
        """A wallet below the minimum balance is refused before anything is submitted."""
        from mintforge.shared.infrastructure.signer import SimulatedSigner
        from mintforge.shared.models.pipeline import RunStatus

        signer = SimulatedSigner(balance_lamports=5_000_000)
        ctx = make_context(fast_settings, signer=signer)
        _, pending = run_pipeline(ctx, manifest, png_bytes)

        result = await pending

        assert result.status == RunStatus.FAILED
        assert result.error["stage"] == "SELECT_ENDPOINT"
        assert result.error["code"] == "OPERATION_REJECTED"
        assert "0.0050 SOL" in result.error["cause"]
        assert result.error["retry_safe"] is True
        assert signer.submissions == []

    @pytest.mark.asyncio
    async def test_disconnected_signer_stops_before_signing(self, fast_settings, manifest, png_bytes):
        from mintforge.shared.infrastructure.signer import SimulatedSigner
        from mintforge.shared.models.pipeline import RunStatus

        signer = SimulatedSigner(connected=False)
        ctx = make_context(fast_settings, signer=signer)
        _, pending = run_pipeline(ctx, manifest, png_bytes)

        result = await pending

        assert result.status == RunStatus.FAILED
        assert result.error["stage"] == "SELECT_ENDPOINT"
        assert "not connected" in result.error["cause"]
        assert result.error["retry_safe"] is True
        assert result.asset_id is None

    @pytest.mark.asyncio
    async def test_balance_lookup_failure_is_not_fatal(self, fast_settings, manifest, png_bytes):
        from mintforge.shared.infrastructure.signer import SimulatedSigner
        from mintforge.shared.models.pipeline import RunStatus
        from mintforge.shared.system.errors import TransientError

        class FlakySigner(SimulatedSigner):
            async def get_balance(self, address):
                raise TransientError("HTTP 503")

        ctx = make_context(fast_settings, signer=FlakySigner())
        _, pending = run_pipeline(ctx, manifest, png_bytes, listing_enabled=False)

        result = await pending

        assert result.status == RunStatus.DONE

    @pytest.mark.asyncio
    async def test_unexpected_error_ends_run_failed(self, fast_settings, manifest, png_bytes):
        """An unclassified exception in a mandatory stage still yields a FAILED result."""
        from mintforge.shared.models.pipeline import RunStatus

        async def garbled(endpoint):
            raise KeyError("result")

        ctx = make_context(fast_settings)
        ctx.endpoint_probe = garbled
        _, pending = run_pipeline(ctx, manifest, png_bytes)

        result = await pending

        assert result.status == RunStatus.FAILED
        assert result.error["stage"] == "SELECT_ENDPOINT"
        assert result.error["code"] == "MINTFORGE_ERROR"
        assert "Unexpected KeyError" in result.error["cause"]
        assert result.error["retry_safe"] is True



class TestOptionalStages:
    """Optional-stage failures become warnings."""

    @pytest.mark.asyncio
    async def test_listing_never_appears(self, fast_settings, manifest, png_bytes):
        from mintforge.shared.infrastructure.listing_client import SimulatedListingIndex
        from mintforge.shared.models.pipeline import RunStatus

        ctx = make_context(fast_settings, listing_index=SimulatedListingIndex(listed_after=None))
        _, pending = run_pipeline(ctx, manifest, png_bytes)

        result = await pending
        data = result.to_dict()

        assert result.status == RunStatus.DONE
        assert data["listing"]["listed"] is False
        assert data["listing"]["status"] == "timeout"
        assert data["run"]["warnings"] == []

    @pytest.mark.asyncio
    async def test_listing_submission_failure_is_warning(self, fast_settings, manifest, png_bytes):
        from mintforge.shared.infrastructure.listing_client import SimulatedListingSubmitter
        from mintforge.shared.models.pipeline import RunStatus

        ctx = make_context(fast_settings)
        ctx.listing_submitter = SimulatedListingSubmitter(fail=True)
        _, pending = run_pipeline(ctx, manifest, png_bytes)

        result = await pending

        assert result.status == RunStatus.DONE
        assert result.run.warnings[0]["stage"] == "SUBMIT_LISTING"
        assert result.listing is not None

    @pytest.mark.asyncio
    async def test_rejected_revocation_is_warning(self, fast_settings, manifest, png_bytes):
        """One rejected revocation does not stop the next or fail the run."""
        from mintforge.shared.infrastructure.signer import SimulatedSigner
        from mintforge.shared.models.pipeline import RunStatus

        signer = SimulatedSigner(outcomes={"revoke": ["reject"]})
        ctx = make_context(fast_settings, signer=signer)
        _, pending = run_pipeline(
            ctx, manifest, png_bytes, revoke=[CapabilityKind.MINT, CapabilityKind.FREEZE], listing_enabled=False
        )

        result = await pending
        revoke = result.operations["revoke"]

        assert result.status == RunStatus.DONE
        assert not revoke["mint"].is_confirmed
        assert revoke["freeze"].is_confirmed
        assert result.run.warnings[0]["stage"] == "REVOKE_CAPABILITIES"
        assert result.run.warnings[0]["trail"] == [{"capability": "mint", "error": revoke["mint"].error}]

    @pytest.mark.asyncio
    async def test_malformed_listing_reply_still_done(self, fast_settings, manifest, png_bytes, mock_http):
        """A DexScreener pair with a non-numeric liquidity value leaves the run DONE."""
        import httpx

        from mintforge.shared.infrastructure.listing_client import DexScreenerClient
        from mintforge.shared.models.pipeline import RunStatus

        def handler(request):
            mint = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"pairs": [
                {"baseToken": {"address": mint}, "liquidity": {"usd": "n/a"}},
            ]})

        ctx = make_context(fast_settings, listing_index=DexScreenerClient(mock_http(handler)))
        _, pending = run_pipeline(ctx, manifest, png_bytes)

        result = await pending

        assert result.status == RunStatus.DONE
        assert result.listing.status.value == "timeout"
        assert "not understood" in result.listing.last_error

    @pytest.mark.asyncio
    async def test_unexpected_listing_error_is_warning(self, fast_settings, manifest, png_bytes):
        from unittest.mock import AsyncMock

        from mintforge.shared.models.pipeline import RunStatus

        ctx = make_context(fast_settings)
        ctx.listing_submitter = AsyncMock()
        ctx.listing_submitter.submit.side_effect = TypeError("unsupported operand")
        _, pending = run_pipeline(ctx, manifest, png_bytes)

        result = await pending

        assert result.status == RunStatus.DONE
        assert result.run.warnings[0]["stage"] == "SUBMIT_LISTING"
        assert "Unexpected TypeError" in result.run.warnings[0]["cause"]



class TestCancellation:
    """Cancellation preempts every other outcome."""

    @pytest.mark.asyncio
    async def test_cancel_during_revoke(self, fast_settings, manifest, png_bytes):
        """Confirmed operations survive; the unfinished revoke stage is omitted."""
        from mintforge.shared.infrastructure.signer import SimulatedSigner
        from mintforge.shared.models.pipeline import RunStatus, Stage

        signer = SimulatedSigner(outcomes={"revoke": ["confirm"] + ["drop"] * 20})
        holder = {}

        def on_progress(event):
            if event.stage == Stage.REVOKE_CAPABILITIES:
                asyncio.get_running_loop().call_later(0.03, holder["orchestrator"].cancel)

        ctx = make_context(fast_settings, signer=signer, progress_callback=on_progress)
        orchestrator, pending = run_pipeline(
            ctx, manifest, png_bytes, revoke=[CapabilityKind.MINT, CapabilityKind.FREEZE]
        )
        holder["orchestrator"] = orchestrator

        result = await pending
        data = result.to_dict()
        revoke_stage = result.run.stage_results["REVOKE_CAPABILITIES"]

        assert result.status == RunStatus.CANCELLED
        assert data["error"]["code"] == "CANCELLED"
        assert data["error"]["retry_safe"] is False
        assert "revoke" not in data["operations"]
        for key in ("create", "attach_metadata", "mint"):
            assert data["operations"][key]["status"] == "confirmed"
        assert set(revoke_stage.detail) == {"mint"}
        assert "listing" not in data

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, fast_settings, manifest, png_bytes):
        from mintforge.shared.models.pipeline import RunStatus
        from mintforge.shared.system.cancellation import CancellationToken

        token = CancellationToken()
        token.cancel()
        ctx = make_context(fast_settings)
        _, pending = run_pipeline(ctx, manifest, png_bytes, token=token)

        result = await pending

        assert result.status == RunStatus.CANCELLED
        assert result.error["retry_safe"] is True
        assert ctx.signer.submissions == []

    @pytest.mark.asyncio
    async def test_cancel_during_listing_monitor(self, fast_settings, manifest, png_bytes):
        """Cancelling while the listing index is polled ends CANCELLED within one interval."""
        import time

        from mintforge.shared.infrastructure.listing_client import SimulatedListingIndex
        from mintforge.shared.models.pipeline import RunStatus, Stage

        class SlowListing(fast_settings):
            LISTING_POLL_INTERVAL_S = 5.0
            LISTING_TIMEOUT_S = 30.0

        holder = {}

        def on_progress(event):
            if event.stage == Stage.MONITOR_LISTING:
                holder["entered"] = time.monotonic()
                asyncio.get_running_loop().call_later(0.02, holder["orchestrator"].cancel)

        index = SimulatedListingIndex(listed_after=None)
        ctx = make_context(SlowListing, listing_index=index, progress_callback=on_progress)
        orchestrator, pending = run_pipeline(ctx, manifest, png_bytes)
        holder["orchestrator"] = orchestrator

        result = await pending
        data = result.to_dict()

        assert result.status == RunStatus.CANCELLED
        assert data["error"]["code"] == "CANCELLED"
        assert data["error"]["stage"] == "MONITOR_LISTING"
        assert data["error"]["retry_safe"] is False
        assert data["listing"]["status"] == "cancelled"
        assert data["operations"]["mint"]["status"] == "confirmed"
        assert time.monotonic() - holder["entered"] < 2.0
        assert index.observations == 1



class TestPersistence:
    """Completed runs are handed to the persistence collaborator."""

    @pytest.mark.asyncio
    async def test_done_run_saved(self, fast_settings, manifest, png_bytes, tmp_path):
        from mintforge.shared.system.persistence import SqliteRunStore

        store = SqliteRunStore(tmp_path / "runs.db")
        ctx = make_context(fast_settings, persistence=store)
        _, pending = run_pipeline(ctx, manifest, png_bytes)

        result = await pending
        saved = store.get_run(result.run.run_id)

        assert saved is not None
        assert saved.asset_id == result.asset_id
        assert saved.symbol == "CHIMP"
        assert saved.listing_status == "listed"
        assert saved.to_dict()["operations"]["mint"]["status"] == "confirmed"
        store.close()

    @pytest.mark.asyncio
    async def test_failed_run_not_saved(self, fast_settings, manifest, png_bytes):
        from unittest.mock import MagicMock

        from mintforge.shared.infrastructure.signer import SimulatedSigner

        store = MagicMock()
        signer = SimulatedSigner(outcomes={"create": ["reject"]})
        ctx = make_context(fast_settings, signer=signer, persistence=store)
        _, pending = run_pipeline(ctx, manifest, png_bytes)

        result = await pending

        assert result.error["code"] == "OPERATION_REJECTED"
        store.save_run.assert_not_called()

    @pytest.mark.asyncio
    async def test_persistence_error_is_warning(self, fast_settings, manifest, png_bytes):
        from unittest.mock import MagicMock

        from mintforge.shared.models.pipeline import RunStatus

        store = MagicMock()
        store.save_run.side_effect = OSError("disk full")
        ctx = make_context(fast_settings, persistence=store)
        _, pending = run_pipeline(ctx, manifest, png_bytes, listing_enabled=False)

        result = await pending

        assert result.status == RunStatus.DONE
        assert result.run.warnings[-1]["code"] == "PERSISTENCE"


class TestTransitions:

    def test_illegal_transition_rejected(self, fast_settings):
        from mintforge.pipeline.orchestrator import IllegalTransition, PipelineOrchestrator, _RunState
        from mintforge.shared.models.pipeline import PipelineResult, PipelineRun, Stage
        from mintforge.shared.system.cancellation import CancellationToken

        run = PipelineRun()
        state = _RunState(run=run, result=PipelineResult(run=run), token=CancellationToken())

        with pytest.raises(IllegalTransition):
            PipelineOrchestrator(make_context(fast_settings))._transition(state, Stage.MINT, "skip ahead")

    def test_optional_stages(self):
        from mintforge.shared.models.pipeline import Stage

        assert Stage.MONITOR_LISTING.is_optional
        assert not Stage.ATTACH_METADATA.is_optional
