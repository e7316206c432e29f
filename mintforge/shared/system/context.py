"""
Session Context
===============
Everything a pipeline run needs, built once per session and handed to the
orchestrator by reference. There is no module-level state to reach for.

The context owns the long-lived collaborators (HTTP client, signer,
storage providers, listing capabilities, persistence, progress callback)
and builds the per-run components (endpoint pool, upload chain, poller,
listing monitor) bound to that run's cancellation token.

    ctx = SessionContext.from_settings(signer=my_signer, http=client)
    orchestrator = PipelineOrchestrator(ctx)

    ctx = SessionContext.simulated()   # fully offline session
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from config.settings import Settings
from mintforge.pipeline.listing_monitor import ListingStatusMonitor
from mintforge.pipeline.storage_chain import StorageUploadChain
from mintforge.shared.execution.confirmation_poller import ConfirmationPoller, StatusSource
from mintforge.shared.execution.transaction_submitter import TransactionSubmitter
from mintforge.shared.infrastructure.endpoint_pool import EndpointPool, ProbeFn
from mintforge.shared.infrastructure.gateway_verifier import GatewayVerifier
from mintforge.shared.infrastructure.listing_client import (
    DexScreenerClient,
    ListingIndex,
    ListingSubmitter,
    SimulatedListingIndex,
    SimulatedListingSubmitter,
)
from mintforge.shared.infrastructure.signer import BalanceSource, SigningCollaborator, SimulatedSigner
from mintforge.shared.infrastructure.storage_providers import (
    SimulatedStorageProvider,
    StorageProvider,
    build_default_providers,
)
from mintforge.shared.models.pipeline import ProgressEvent
from mintforge.shared.system.cancellation import CancellationToken
from mintforge.shared.system.persistence import PersistenceCollaborator

ProgressCallback = Callable[[ProgressEvent], None]


def simulated_network_transport(providers: List[StorageProvider]) -> httpx.MockTransport:
    """
    In-process stand-in for the public network used by simulated sessions.

    Answers gateway HEAD probes from what the simulated providers stored
    and JSON-RPC `getSlot` probes with a fixed slot. Signature lookups see
    nothing; simulated sessions poll the simulated signer instead.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            content_id = request.url.path.rstrip("/").rsplit("/", 1)[-1]
            known = any(
                content_id in getattr(provider, "stored", {})
                for provider in providers
            )
            return httpx.Response(200 if known else 404)

        if request.method == "POST":
            payload = json.loads(request.content or b"{}")
            if payload.get("method") == "getSlot":
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload.get("id"), "result": 250_000_000})
            if payload.get("method") == "getSignatureStatuses":
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload.get("id"), "result": {"value": [None]}})
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload.get("id"), "result": None})

        return httpx.Response(404)

    return httpx.MockTransport(handler)


@dataclass
class SessionContext:
    """Collaborators and configuration shared by every run of a session."""

    signer: SigningCollaborator
    http: httpx.AsyncClient
    settings: Any = Settings
    providers: List[StorageProvider] = field(default_factory=list)
    listing_index: Optional[ListingIndex] = None
    listing_submitter: Optional[ListingSubmitter] = None
    persistence: Optional[PersistenceCollaborator] = None
    progress_callback: Optional[ProgressCallback] = None
    status_source: Optional[StatusSource] = None  # None: poll through the endpoint pool
    endpoint_probe: Optional[ProbeFn] = None
    randomize_endpoints: bool = True
    simulated: bool = False

    # =========================================================================
    # CONSTRUCTION
    # =========================================================================

    @classmethod
    def from_settings(
        cls,
        signer: SigningCollaborator,
        http: httpx.AsyncClient,
        settings: Any = Settings,
        persistence: Optional[PersistenceCollaborator] = None,
        progress_callback: Optional[ProgressCallback] = None,
        listing_submitter: Optional[ListingSubmitter] = None,
    ) -> "SessionContext":
        """Live session: configured providers, DexScreener, RPC status polling."""
        return cls(
            signer=signer,
            http=http,
            settings=settings,
            providers=build_default_providers(settings, http),
            listing_index=DexScreenerClient(
                http,
                base_url=settings.LISTING_BASE_URL,
                request_timeout_s=settings.LISTING_REQUEST_TIMEOUT_S,
            ),
            listing_submitter=listing_submitter or SimulatedListingSubmitter(),
            persistence=persistence,
            progress_callback=progress_callback,
        )

    @classmethod
    def simulated(
        cls,
        settings: Any = Settings,
        signer: Optional[SimulatedSigner] = None,
        providers: Optional[List[StorageProvider]] = None,
        listing_index: Optional[ListingIndex] = None,
        persistence: Optional[PersistenceCollaborator] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> "SessionContext":
        """Offline session: nothing leaves the process."""
        signer = signer or SimulatedSigner()
        providers = providers or [SimulatedStorageProvider(name="simulated")]
        http = httpx.AsyncClient(transport=simulated_network_transport(providers))
        return cls(
            signer=signer,
            http=http,
            settings=settings,
            providers=providers,
            listing_index=listing_index or SimulatedListingIndex(listed_after=2),
            listing_submitter=SimulatedListingSubmitter(),
            persistence=persistence,
            progress_callback=progress_callback,
            status_source=signer,
            simulated=True,
        )

    # =========================================================================
    # PER-RUN FACTORIES
    # =========================================================================

    def endpoint_pool(self, token: Optional[CancellationToken] = None) -> EndpointPool:
        s = self.settings
        return EndpointPool(
            s.RPC_ENDPOINTS,
            http=self.http,
            probe_timeout_s=s.ENDPOINT_PROBE_TIMEOUT_S,
            max_cycles=s.ENDPOINT_MAX_CYCLES,
            backoff_base_s=s.ENDPOINT_BACKOFF_BASE_S,
            token=token,
            probe=self.endpoint_probe,
            randomize_start=self.randomize_endpoints,
            request_timeout_s=s.RPC_REQUEST_TIMEOUT_S,
            failover_after=s.RPC_FAILOVER_AFTER,
        )

    def gateway_verifier(self, token: Optional[CancellationToken] = None) -> GatewayVerifier:
        s = self.settings
        return GatewayVerifier(
            s.IPFS_PUBLIC_GATEWAYS,
            self.http,
            timeout_s=s.GATEWAY_PROBE_TIMEOUT_S,
            threshold=s.ACCESSIBILITY_THRESHOLD,
            token=token,
        )

    def storage_chain(self, token: Optional[CancellationToken] = None) -> StorageUploadChain:
        s = self.settings
        return StorageUploadChain(
            self.providers,
            verifier=self.gateway_verifier(token),
            token=token,
            backoff_base_s=s.UPLOAD_BACKOFF_BASE_S,
            require_verified=s.REQUIRE_VERIFIED_UPLOADS,
            verify_rounds=s.VERIFY_ROUNDS,
            verify_round_delay_s=s.VERIFY_ROUND_DELAY_S,
        )

    def confirmation_poller(self, pool: EndpointPool, token: Optional[CancellationToken] = None) -> ConfirmationPoller:
        s = self.settings
        return ConfirmationPoller(
            self.status_source or pool,
            token=token,
            poll_interval_s=s.CONFIRM_POLL_INTERVAL_S,
            timeout_s=s.CONFIRM_TIMEOUT_S,
            max_retries=s.CONFIRM_MAX_RETRIES,
            backoff_base_s=s.CONFIRM_BACKOFF_BASE_S,
            drop_after_s=s.CONFIRM_DROP_AFTER_S,
        )

    def balance_source(self, pool: EndpointPool) -> BalanceSource:
        """Where the pre-flight balance check looks: the status source if it can, else the pool."""
        if isinstance(self.status_source, BalanceSource):
            return self.status_source
        return pool

    def transaction_submitter(self, poller: ConfirmationPoller) -> TransactionSubmitter:
        return TransactionSubmitter(self.signer, poller, confirm_timeout_s=self.settings.CONFIRM_TIMEOUT_S)

    def listing_monitor(self, token: Optional[CancellationToken] = None) -> Optional[ListingStatusMonitor]:
        if self.listing_index is None:
            return None
        s = self.settings
        return ListingStatusMonitor(
            self.listing_index,
            submitter=self.listing_submitter,
            token=token,
            poll_interval_s=s.LISTING_POLL_INTERVAL_S,
            timeout_s=s.LISTING_TIMEOUT_S,
        )

    def emit(self, event: ProgressEvent) -> None:
        if self.progress_callback is not None:
            self.progress_callback(event)

    def describe(self) -> Dict[str, Any]:
        return {
            "simulated": self.simulated,
            "signer": self.signer.public_identity,
            "providers": [p.name for p in self.providers],
            "settings": self.settings.snapshot(),
        }

    async def aclose(self) -> None:
        await self.http.aclose()
