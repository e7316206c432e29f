"""
Token Instruction Builders
==========================
Build READY_FOR_SIGNING instruction dicts for each pipeline operation.

Two variants, picked once per run from the manifest:
- StandardInstructionBuilder: classic SPL Token program
- ExtendedInstructionBuilder: Token-2022 with the TransferFeeConfig extension

Account derivations (metadata PDA, associated token account) use solders;
signing and serialization belong to the signing collaborator.
"""

from typing import Any, Dict, Optional

from solders.pubkey import Pubkey

from mintforge.shared.schemas.manifest import AssetManifest, AssetVariant, CapabilityKind
from mintforge.shared.system.logging import Logger

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
METADATA_PROGRAM_ID = "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"

# SetAuthority authority types
AUTHORITY_TYPES = {
    CapabilityKind.MINT: "MintTokens",
    CapabilityKind.FREEZE: "FreezeAccount",
}


class InstructionBuilder:
    """Standard SPL Token instruction set."""

    variant = AssetVariant.STANDARD
    program_id = TOKEN_PROGRAM_ID

    def __init__(self, manifest: AssetManifest, authority: str):
        self.manifest = manifest
        self.authority = authority

    # =========================================================================
    # ACCOUNT DERIVATION
    # =========================================================================

    def metadata_address(self, mint: str) -> str:
        program = Pubkey.from_string(METADATA_PROGRAM_ID)
        seeds = [b"metadata", bytes(program), bytes(Pubkey.from_string(mint))]
        pda, _bump = Pubkey.find_program_address(seeds, program)
        return str(pda)

    def associated_token_address(self, mint: str, owner: Optional[str] = None) -> str:
        seeds = [
            bytes(Pubkey.from_string(owner or self.authority)),
            bytes(Pubkey.from_string(self.program_id)),
            bytes(Pubkey.from_string(mint)),
        ]
        pda, _bump = Pubkey.find_program_address(seeds, Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID))
        return str(pda)

    def _ix(self, instruction: str, program_id: str, **fields: Any) -> Dict[str, Any]:
        ix = {"program_id": program_id, "instruction": instruction, "variant": self.variant.value}
        ix.update(fields)
        ix["status"] = "READY_FOR_SIGNING"
        return ix

    # =========================================================================
    # BUILDERS
    # =========================================================================

    def extensions(self) -> Dict[str, Any]:
        return {}

    def build_create(self, mint: str) -> Dict[str, Any]:
        """Create and initialize the mint account. The mint keypair co-signs."""
        Logger.debug(f"[TX] Building create ({self.variant.value}) for {mint[:8]}...")
        return self._ix(
            "create",
            self.program_id,
            mint=mint,
            payer=self.authority,
            decimals=self.manifest.decimals,
            mint_authority=self.authority,
            freeze_authority=self.authority,
            extensions=self.extensions(),
            signers=[self.authority, mint],
        )

    def build_attach_metadata(self, mint: str, uri: str) -> Dict[str, Any]:
        return self._ix(
            "attach_metadata",
            METADATA_PROGRAM_ID,
            mint=mint,
            metadata_account=self.metadata_address(mint),
            update_authority=self.authority,
            name=self.manifest.name,
            symbol=self.manifest.symbol,
            uri=uri,
            seller_fee_basis_points=0,
            is_mutable=True,
            signers=[self.authority],
        )

    def build_mint(self, mint: str, amount: int, owner: Optional[str] = None) -> Dict[str, Any]:
        destination_owner = owner or self.authority
        return self._ix(
            "mint",
            self.program_id,
            mint=mint,
            destination=self.associated_token_address(mint, destination_owner),
            destination_owner=destination_owner,
            create_destination_if_missing=True,
            amount=amount,
            decimals=self.manifest.decimals,
            signers=[self.authority],
        )

    def build_revoke(self, mint: str, capability: CapabilityKind) -> Dict[str, Any]:
        """Irreversibly drop one authority."""
        if capability == CapabilityKind.UPDATE:
            return self._ix(
                "revoke",
                METADATA_PROGRAM_ID,
                mint=mint,
                capability=capability.value,
                metadata_account=self.metadata_address(mint),
                new_update_authority=None,
                is_mutable=False,
                signers=[self.authority],
            )
        return self._ix(
            "revoke",
            self.program_id,
            mint=mint,
            capability=capability.value,
            authority_type=AUTHORITY_TYPES[capability],
            current_authority=self.authority,
            new_authority=None,
            signers=[self.authority],
        )


StandardInstructionBuilder = InstructionBuilder


class ExtendedInstructionBuilder(InstructionBuilder):
    """Token-2022 mint carrying a transfer fee."""

    variant = AssetVariant.EXTENDED
    program_id = TOKEN_2022_PROGRAM_ID

    def extensions(self) -> Dict[str, Any]:
        fee = self.manifest.fee_config
        return {
            "TransferFeeConfig": {
                "transfer_fee_config_authority": self.authority,
                "withdraw_withheld_authority": self.authority,
                "transfer_fee_basis_points": fee.basis_points if fee else 0,
                "maximum_fee": fee.maximum_fee if fee else 0,
            }
        }


def builder_for(manifest: AssetManifest, authority: str) -> InstructionBuilder:
    """Pick the instruction set for this manifest's variant."""
    if manifest.variant == AssetVariant.EXTENDED:
        return ExtendedInstructionBuilder(manifest, authority)
    return StandardInstructionBuilder(manifest, authority)
