"""
Asset Manifest Schema
=====================
Pydantic model describing the token to create.

The manifest is the validated input boundary of the pipeline: once the
Transaction Submitter starts using it, it is frozen. The asset variant
(standard SPL mint vs. Token-2022 mint with a transfer-fee extension) is
decided here, once, from the presence of a fee configuration.

Example:
    manifest = AssetManifest(
        name="Chimp Coin",
        symbol="CHIMP",
        decimals=9,
        initial_supply=1_000_000_000,
        capabilities=CapabilityFlags(mint="revoked", freeze="revoked"),
    )
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# SPL token amounts are u64
MAX_BASE_UNITS = 2 ** 64 - 1


class CapabilityKind(str, Enum):
    """Revocable authorities attached to an asset."""
    MINT = "mint"
    FREEZE = "freeze"
    UPDATE = "update"


class CapabilityState(str, Enum):
    """Requested end state of a capability after the run."""
    ACTIVE = "active"
    REVOKED = "revoked"


class AssetVariant(str, Enum):
    STANDARD = "standard"
    EXTENDED = "extended"  # Token-2022 with transfer-fee extension


class FeeConfig(BaseModel):
    """Transfer-fee extension parameters."""
    model_config = ConfigDict(frozen=True)

    basis_points: int = Field(..., ge=0, le=10_000, description="Fee in basis points (100 = 1%)")
    maximum_fee: int = Field(default=0, ge=0, le=MAX_BASE_UNITS, description="Max fee per transfer in base units (0 = uncapped)")


class CapabilityFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    mint: CapabilityState = CapabilityState.ACTIVE
    freeze: CapabilityState = CapabilityState.ACTIVE
    update: CapabilityState = CapabilityState.ACTIVE

    def to_revoke(self) -> List[CapabilityKind]:
        """Capabilities requested as revoked, in revocation order."""
        order = [CapabilityKind.MINT, CapabilityKind.FREEZE, CapabilityKind.UPDATE]
        return [kind for kind in order if getattr(self, kind.value) == CapabilityState.REVOKED]


class AssetManifest(BaseModel):
    """Declarative description of the asset to create."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=32)
    symbol: str = Field(..., min_length=1, max_length=10)
    decimals: int = Field(default=9, ge=0, le=9)
    initial_supply: int = Field(..., gt=0, description="Whole tokens minted to the creator")
    description: str = Field(default="", max_length=1000)

    website: Optional[str] = None
    twitter: Optional[str] = None
    telegram: Optional[str] = None
    discord: Optional[str] = None

    capabilities: CapabilityFlags = Field(default_factory=CapabilityFlags)
    fee_config: Optional[FeeConfig] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, value: str) -> str:
        value = value.strip().upper()
        if not value.isalnum():
            raise ValueError("symbol must be alphanumeric")
        return value

    @model_validator(mode="after")
    def _supply_fits_u64(self) -> "AssetManifest":
        if self.base_units > MAX_BASE_UNITS:
            raise ValueError(
                f"initial_supply {self.initial_supply} with {self.decimals} decimals exceeds "
                f"the u64 token amount limit ({MAX_BASE_UNITS} base units)"
            )
        return self

    @property
    def variant(self) -> AssetVariant:
        return AssetVariant.EXTENDED if self.fee_config is not None else AssetVariant.STANDARD

    @property
    def base_units(self) -> int:
        """Initial allocation in the smallest on-chain unit."""
        return self.initial_supply * (10 ** self.decimals)

    def social_links(self) -> Dict[str, str]:
        links = {
            "website": self.website,
            "twitter": self.twitter,
            "telegram": self.telegram,
            "discord": self.discord,
        }
        return {key: value for key, value in links.items() if value}
