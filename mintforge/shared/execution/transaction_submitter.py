"""
Transaction Submitter
=====================
Submits the dependent chain of on-chain operations for one asset:

    create -> attach_metadata -> mint -> revoke (once per capability)

Each call builds one instruction, has the signing collaborator sign and
submit it, and confirms it through the ConfirmationPoller.

The submitter's ledger is the source of truth for ordering:
- attach_metadata requires a confirmed create
- mint requires confirmed create and attach_metadata
- revoke requires a confirmed mint and an authority still held
Violations raise OperationOrderError before anything is signed.

Confirmed operations are never recreated: asking for the same kind again
returns the recorded Operation unchanged.
"""

from typing import Dict, List, Optional

from solders.keypair import Keypair

from mintforge.shared.execution.confirmation_poller import ConfirmationPoller
from mintforge.shared.execution.instruction_builder import InstructionBuilder, builder_for
from mintforge.shared.infrastructure.signer import SigningCollaborator
from mintforge.shared.models.operations import Operation, OperationKind, OperationStatus
from mintforge.shared.schemas.manifest import AssetManifest, CapabilityKind
from mintforge.shared.system.errors import OperationOrderError
from mintforge.shared.system.logging import Logger


class TransactionSubmitter:
    """
    Ordered operation ledger for a single asset.

    Usage:
        submitter = TransactionSubmitter(signer, poller)
        create = await submitter.create_asset(manifest)
        await submitter.attach_metadata(submitter.asset_id, metadata_uri)
        await submitter.mint_initial_allocation(submitter.asset_id, manifest.base_units)
        await submitter.revoke_capability(submitter.asset_id, CapabilityKind.MINT)
    """

    def __init__(
        self,
        signer: SigningCollaborator,
        poller: ConfirmationPoller,
        confirm_timeout_s: Optional[float] = None,
        mint_keypair: Optional[Keypair] = None,
    ):
        self.signer = signer
        self.poller = poller
        self.confirm_timeout_s = confirm_timeout_s
        # Fresh asset identity per submitter (one submitter per run)
        self._mint = mint_keypair or Keypair()
        self.asset_id = str(self._mint.pubkey())

        self.manifest: Optional[AssetManifest] = None
        self.builder: Optional[InstructionBuilder] = None
        self.operations: Dict[OperationKind, Operation] = {}
        self.revocations: Dict[CapabilityKind, Operation] = {}

    # =========================================================================
    # LEDGER
    # =========================================================================

    def _confirmed(self, kind: OperationKind) -> bool:
        op = self.operations.get(kind)
        return op is not None and op.is_confirmed

    def _require(self, kind: OperationKind, before: str) -> None:
        if not self._confirmed(kind):
            raise OperationOrderError(
                f"{before} requires a confirmed {kind.value} operation",
                retry_safe=not self._confirmed(OperationKind.CREATE),
            )

    def _check_asset(self, asset_id: str) -> None:
        if asset_id != self.asset_id:
            raise OperationOrderError(f"Unknown asset {asset_id}; this run created {self.asset_id}")

    def _fresh(self, kind: OperationKind, capability: Optional[CapabilityKind] = None) -> Operation:
        """
        Reuse a failed/pending record for a new attempt, never a confirmed one.
        Earlier signatures stay on the record so a late landing still counts.
        """
        existing = self.revocations.get(capability) if capability else self.operations.get(kind)
        if existing is not None and not existing.is_confirmed:
            existing.status = OperationStatus.PENDING
            existing.signature = None
            existing.error = None
            return existing
        return Operation(kind=kind, capability=capability)

    async def _execute(self, operation: Operation, instruction: dict, extra_signers: Optional[list] = None) -> Operation:
        operation.instruction = instruction

        async def submit() -> str:
            return await self.signer.sign_and_submit(instruction, extra_signers=extra_signers)

        await self.poller.confirm(operation, submit, timeout_s=self.confirm_timeout_s)
        return operation

    @property
    def held_capabilities(self) -> List[CapabilityKind]:
        return [kind for kind in CapabilityKind if not (kind in self.revocations and self.revocations[kind].is_confirmed)]

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def create_asset(self, manifest: AssetManifest) -> Operation:
        """Create the mint account. The variant is fixed here for the rest of the run."""
        if self._confirmed(OperationKind.CREATE):
            return self.operations[OperationKind.CREATE]
        if self.manifest is not None and manifest != self.manifest:
            raise OperationOrderError("Manifest changed after the first create attempt", retry_safe=True)

        self.manifest = manifest
        if self.builder is None:
            self.builder = builder_for(manifest, self.signer.public_identity)

        Logger.info(f"[TX] Creating {manifest.variant.value} asset {manifest.symbol} ({self.asset_id[:8]}...)")
        operation = self._fresh(OperationKind.CREATE)
        self.operations[OperationKind.CREATE] = operation
        instruction = self.builder.build_create(self.asset_id)
        # The mint keypair co-signs the create; it never leaves this process as data
        return await self._execute(operation, instruction, extra_signers=[self._mint])

    async def attach_metadata(self, asset_id: str, uri: str) -> Operation:
        self._check_asset(asset_id)
        self._require(OperationKind.CREATE, "attach_metadata")
        if self._confirmed(OperationKind.ATTACH_METADATA):
            return self.operations[OperationKind.ATTACH_METADATA]
        if not uri:
            raise OperationOrderError("attach_metadata requires a metadata URI", retry_safe=False)

        Logger.info(f"[TX] Attaching metadata {uri}")
        operation = self._fresh(OperationKind.ATTACH_METADATA)
        self.operations[OperationKind.ATTACH_METADATA] = operation
        return await self._execute(operation, self.builder.build_attach_metadata(asset_id, uri))

    async def mint_initial_allocation(self, asset_id: str, amount: int) -> Operation:
        """Mint `amount` base units to the creator's associated token account."""
        self._check_asset(asset_id)
        self._require(OperationKind.CREATE, "mint")
        self._require(OperationKind.ATTACH_METADATA, "mint")
        if self._confirmed(OperationKind.MINT):
            return self.operations[OperationKind.MINT]
        if amount <= 0:
            raise OperationOrderError(f"mint amount must be positive, got {amount}", retry_safe=False)

        Logger.info(f"[TX] Minting {amount} base units to {self.signer.public_identity[:8]}...")
        operation = self._fresh(OperationKind.MINT)
        self.operations[OperationKind.MINT] = operation
        return await self._execute(operation, self.builder.build_mint(asset_id, amount))

    async def revoke_capability(self, asset_id: str, capability: CapabilityKind) -> Operation:
        """Permanently drop one authority. Runs at most once per capability."""
        self._check_asset(asset_id)
        self._require(OperationKind.MINT, f"revoke {capability.value}")
        existing = self.revocations.get(capability)
        if existing is not None and existing.is_confirmed:
            return existing

        Logger.warning(f"[TX] Revoking {capability.value} authority (irreversible)")
        operation = self._fresh(OperationKind.REVOKE, capability)
        self.revocations[capability] = operation
        return await self._execute(operation, self.builder.build_revoke(asset_id, capability))

    def get_status(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "variant": self.builder.variant.value if self.builder else None,
            "operations": {kind.value: op.to_dict() for kind, op in self.operations.items()},
            "revocations": {cap.value: op.to_dict() for cap, op in self.revocations.items()},
        }
