"""
TransactionSubmitter Unit Tests
===============================
Tests for operation ordering, idempotence, variant selection and
instruction contents.
"""

import pytest

from mintforge.shared.schemas.manifest import AssetManifest, CapabilityKind, FeeConfig


@pytest.fixture
def signer():
    from mintforge.shared.infrastructure.signer import SimulatedSigner
    return SimulatedSigner()


@pytest.fixture
def submitter(signer):
    from mintforge.shared.execution.confirmation_poller import ConfirmationPoller
    from mintforge.shared.execution.transaction_submitter import TransactionSubmitter

    poller = ConfirmationPoller(signer, poll_interval_s=0.005, backoff_base_s=0.001, drop_after_s=0.05)
    return TransactionSubmitter(signer, poller)


async def run_through_mint(submitter, manifest):
    await submitter.create_asset(manifest)
    await submitter.attach_metadata(submitter.asset_id, "https://ipfs.io/ipfs/bafymeta")
    return await submitter.mint_initial_allocation(submitter.asset_id, manifest.base_units)


class TestOrdering:
    """Dependency order is enforced by the ledger."""

    @pytest.mark.asyncio
    async def test_attach_before_create_rejected(self, submitter, signer):
        from mintforge.shared.system.errors import OperationOrderError

        with pytest.raises(OperationOrderError):
            await submitter.attach_metadata(submitter.asset_id, "https://ipfs.io/ipfs/bafymeta")

        assert signer.submissions == []

    @pytest.mark.asyncio
    async def test_mint_requires_attached_metadata(self, submitter, manifest):
        from mintforge.shared.system.errors import OperationOrderError

        await submitter.create_asset(manifest)

        with pytest.raises(OperationOrderError, match="attach_metadata"):
            await submitter.mint_initial_allocation(submitter.asset_id, manifest.base_units)

    @pytest.mark.asyncio
    async def test_revoke_before_mint_rejected(self, submitter, manifest):
        from mintforge.shared.system.errors import OperationOrderError

        await submitter.create_asset(manifest)
        await submitter.attach_metadata(submitter.asset_id, "https://ipfs.io/ipfs/bafymeta")

        with pytest.raises(OperationOrderError):
            await submitter.revoke_capability(submitter.asset_id, CapabilityKind.MINT)

    @pytest.mark.asyncio
    async def test_failed_create_blocks_attach(self, manifest):
        """A rejected create leaves nothing for attach to build on."""
        from mintforge.shared.execution.confirmation_poller import ConfirmationPoller
        from mintforge.shared.execution.transaction_submitter import TransactionSubmitter
        from mintforge.shared.infrastructure.signer import SimulatedSigner
        from mintforge.shared.system.errors import OperationOrderError, OperationRejected

        signer = SimulatedSigner(outcomes={"create": ["reject"]})
        submitter = TransactionSubmitter(signer, ConfirmationPoller(signer, poll_interval_s=0.005))

        with pytest.raises(OperationRejected):
            await submitter.create_asset(manifest)
        with pytest.raises(OperationOrderError) as exc_info:
            await submitter.attach_metadata(submitter.asset_id, "https://ipfs.io/ipfs/bafymeta")

        assert exc_info.value.retry_safe

    @pytest.mark.asyncio
    async def test_unknown_asset_rejected(self, submitter, manifest):
        from mintforge.shared.system.errors import OperationOrderError

        await submitter.create_asset(manifest)

        with pytest.raises(OperationOrderError, match="Unknown asset"):
            await submitter.attach_metadata("SomeOtherMint111111111111111111111111111111", "uri")

    @pytest.mark.asyncio
    async def test_full_sequence(self, submitter, signer, manifest):
        mint = await run_through_mint(submitter, manifest)
        revoke = await submitter.revoke_capability(submitter.asset_id, CapabilityKind.FREEZE)

        assert mint.is_confirmed
        assert revoke.is_confirmed
        assert [s.instruction for s in signer.submissions] == ["create", "attach_metadata", "mint", "revoke"]
        assert CapabilityKind.FREEZE not in submitter.held_capabilities
        assert mint.instruction["amount"] == 1_000_000 * 10 ** 6


class TestIdempotence:
    """Confirmed operations are never recreated."""

    @pytest.mark.asyncio
    async def test_repeat_create_returns_recorded_operation(self, submitter, signer, manifest):
        first = await submitter.create_asset(manifest)
        second = await submitter.create_asset(manifest)

        assert second is first
        assert len(signer.submitted("create")) == 1

    @pytest.mark.asyncio
    async def test_revoke_runs_once_per_capability(self, submitter, signer, manifest):
        await run_through_mint(submitter, manifest)

        first = await submitter.revoke_capability(submitter.asset_id, CapabilityKind.MINT)
        again = await submitter.revoke_capability(submitter.asset_id, CapabilityKind.MINT)

        assert again is first
        assert len(signer.submitted("revoke")) == 1

    @pytest.mark.asyncio
    async def test_attach_retry_keeps_confirmed_create(self, manifest):
        """Retrying a failed attach does not touch the confirmed create."""
        from mintforge.shared.execution.confirmation_poller import ConfirmationPoller
        from mintforge.shared.execution.transaction_submitter import TransactionSubmitter
        from mintforge.shared.infrastructure.signer import SimulatedSigner
        from mintforge.shared.system.errors import OperationRejected

        signer = SimulatedSigner(outcomes={"attach_metadata": ["reject"]})
        submitter = TransactionSubmitter(signer, ConfirmationPoller(signer, poll_interval_s=0.005))
        create = await submitter.create_asset(manifest)

        with pytest.raises(OperationRejected):
            await submitter.attach_metadata(submitter.asset_id, "https://ipfs.io/ipfs/bafymeta")
        attach = await submitter.attach_metadata(submitter.asset_id, "https://ipfs.io/ipfs/bafymeta")

        assert attach.is_confirmed
        assert submitter.operations[create.kind] is create
        assert len(signer.submitted("create")) == 1


class TestVariants:
    """The instruction set is fixed by the manifest."""

    @pytest.mark.asyncio
    async def test_standard_variant(self, submitter, manifest):
        from mintforge.shared.execution.instruction_builder import TOKEN_PROGRAM_ID

        create = await submitter.create_asset(manifest)

        assert create.instruction["program_id"] == TOKEN_PROGRAM_ID
        assert create.instruction["extensions"] == {}
        assert create.instruction["mint"] == submitter.asset_id

    @pytest.mark.asyncio
    async def test_extended_variant_carries_transfer_fee(self, submitter):
        from mintforge.shared.execution.instruction_builder import TOKEN_2022_PROGRAM_ID

        manifest = AssetManifest(
            name="Fee Coin", symbol="FEE", initial_supply=100,
            fee_config=FeeConfig(basis_points=250, maximum_fee=1_000),
        )
        create = await submitter.create_asset(manifest)
        fee = create.instruction["extensions"]["TransferFeeConfig"]

        assert create.instruction["program_id"] == TOKEN_2022_PROGRAM_ID
        assert fee["transfer_fee_basis_points"] == 250
        assert fee["maximum_fee"] == 1_000

    @pytest.mark.asyncio
    async def test_revoke_instructions_per_capability(self, submitter, manifest):
        from mintforge.shared.execution.instruction_builder import METADATA_PROGRAM_ID

        await run_through_mint(submitter, manifest)
        mint_rev = await submitter.revoke_capability(submitter.asset_id, CapabilityKind.MINT)
        update_rev = await submitter.revoke_capability(submitter.asset_id, CapabilityKind.UPDATE)

        assert mint_rev.instruction["authority_type"] == "MintTokens"
        assert update_rev.instruction["program_id"] == METADATA_PROGRAM_ID
        assert update_rev.instruction["new_update_authority"] is None

    def test_fresh_asset_identity_per_submitter(self, signer):
        from mintforge.shared.execution.confirmation_poller import ConfirmationPoller
        from mintforge.shared.execution.transaction_submitter import TransactionSubmitter

        poller = ConfirmationPoller(signer)

        assert TransactionSubmitter(signer, poller).asset_id != TransactionSubmitter(signer, poller).asset_id


class TestInstructions:
    """Instruction contents handed to the signer."""

    @pytest.mark.asyncio
    async def test_attach_metadata_carries_manifest_fields(self, submitter, manifest):
        await submitter.create_asset(manifest)
        attach = await submitter.attach_metadata(submitter.asset_id, "https://ipfs.io/ipfs/bafymeta")

        assert attach.instruction["instruction"] == "attach_metadata"
        assert attach.instruction["name"] == "Chimp Coin"
        assert attach.instruction["symbol"] == "CHIMP"
        assert attach.instruction["uri"] == "https://ipfs.io/ipfs/bafymeta"
        assert attach.instruction["status"] == "READY_FOR_SIGNING"

    def test_metadata_account_is_program_derived(self, signer, manifest):
        from solders.pubkey import Pubkey

        from mintforge.shared.execution.instruction_builder import METADATA_PROGRAM_ID, builder_for

        mint = str(Pubkey.new_unique())
        program = Pubkey.from_string("metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s")
        expected, _ = Pubkey.find_program_address([b"metadata", bytes(program), bytes(Pubkey.from_string(mint))], program)

        address = builder_for(manifest, signer.public_identity).metadata_address(mint)

        assert Pubkey.from_string(METADATA_PROGRAM_ID) == program
        assert address == str(expected)
        assert len(bytes(Pubkey.from_string(address))) == 32

    @pytest.mark.asyncio
    async def test_mint_keypair_passed_as_signer_not_data(self, signer, manifest):
        from solders.keypair import Keypair

        from mintforge.shared.execution.confirmation_poller import ConfirmationPoller
        from mintforge.shared.execution.transaction_submitter import TransactionSubmitter

        mint_keypair = Keypair()
        secret = bytes(mint_keypair).hex()
        submitter = TransactionSubmitter(signer, ConfirmationPoller(signer, poll_interval_s=0.005), mint_keypair=mint_keypair)

        create = await submitter.create_asset(manifest)

        assert create.is_confirmed
        assert "mint_secret" not in create.instruction
        assert all(secret not in str(value) for value in create.instruction.values())
        assert signer.submissions[0].extra_signers == [submitter.asset_id]

    @pytest.mark.asyncio
    async def test_create_without_mint_signature_refused(self, signer, manifest):
        from solders.pubkey import Pubkey

        from mintforge.shared.execution.instruction_builder import builder_for
        from mintforge.shared.system.errors import OperationRejected

        instruction = builder_for(manifest, signer.public_identity).build_create(str(Pubkey.new_unique()))

        with pytest.raises(OperationRejected, match="Missing signature"):
            await signer.sign_and_submit(instruction)

        assert signer.submissions == []

    @pytest.mark.asyncio
    async def test_disconnected_signer_refuses(self, manifest):
        from mintforge.shared.execution.confirmation_poller import ConfirmationPoller
        from mintforge.shared.execution.transaction_submitter import TransactionSubmitter
        from mintforge.shared.infrastructure.signer import SimulatedSigner
        from mintforge.shared.models.operations import OperationKind, OperationStatus
        from mintforge.shared.system.errors import OperationRejected

        signer = SimulatedSigner(connected=False)
        submitter = TransactionSubmitter(signer, ConfirmationPoller(signer, poll_interval_s=0.005))

        with pytest.raises(OperationRejected, match="disconnected"):
            await submitter.create_asset(manifest)

        assert submitter.operations[OperationKind.CREATE].status == OperationStatus.FAILED
        assert signer.submissions == []
