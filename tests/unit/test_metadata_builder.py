"""
Metadata Document Unit Tests
============================
"""

import pytest


@pytest.fixture
def image():
    from mintforge.shared.models.uploads import UploadResult

    return UploadResult(
        content_id="bafyimage",
        gateway_urls=["https://gateway.pinata.cloud/ipfs/bafyimage", "https://ipfs.io/ipfs/bafyimage"],
        provider="pinata",
    )


class TestMetadataDocument:

    def test_standard_document(self, manifest, image):
        from mintforge.pipeline.metadata_builder import build_metadata_document

        document = build_metadata_document(manifest, image, "Creator111", "logo.png")

        assert document["name"] == "Chimp Coin"
        assert document["image"] == image.url
        assert document["external_url"] == "https://chimp.example"
        assert document["properties"]["creators"] == [{"address": "Creator111", "verified": False, "share": 100}]
        assert document["extensions"]["token_details"]["mint_authority_revoked"] is False
        assert "seller_fee_basis_points" not in document

    def test_fee_and_revocations_reflected(self, image):
        from mintforge.pipeline.metadata_builder import build_metadata_document
        from mintforge.shared.schemas.manifest import AssetManifest, CapabilityFlags, FeeConfig

        manifest = AssetManifest(
            name="Fee Coin", symbol="FEE", initial_supply=5,
            capabilities=CapabilityFlags(freeze="revoked"),
            fee_config=FeeConfig(basis_points=100),
        )
        document = build_metadata_document(manifest, image, "Creator111")
        details = document["extensions"]["token_details"]

        assert document["seller_fee_basis_points"] == 100
        assert details["freeze_authority_revoked"] is True
        assert details["mint_authority_revoked"] is False
        assert {"trait_type": "Standard", "value": "extended"} in document["attributes"]

    def test_image_without_url_rejected(self, manifest):
        from mintforge.pipeline.metadata_builder import build_metadata_document
        from mintforge.shared.models.uploads import UploadResult

        with pytest.raises(ValueError):
            build_metadata_document(manifest, UploadResult(content_id="bafy", gateway_urls=[], provider="p1"), "Creator111")

    @pytest.mark.parametrize("filename,expected", [
        ("logo.PNG", "image/png"),
        ("logo.jpeg", "image/jpeg"),
        ("art.svg", "image/svg+xml"),
        ("noextension", "image/png"),
    ])
    def test_image_type(self, filename, expected):
        from mintforge.pipeline.metadata_builder import image_type_for

        assert image_type_for(filename) == expected


class TestManifest:
    """Validation at the manifest boundary."""

    def test_symbol_normalized(self, manifest):
        assert manifest.symbol == "CHIMP"
        assert manifest.base_units == 1_000_000 * 10 ** 6

    @pytest.mark.parametrize("fields", [
        {"name": "   ", "symbol": "OK", "initial_supply": 1},
        {"name": "Ok", "symbol": "B@D", "initial_supply": 1},
        {"name": "Ok", "symbol": "OK", "initial_supply": 0},
        {"name": "Ok", "symbol": "OK", "initial_supply": 1, "decimals": 12},
        {"name": "Ok", "symbol": "OK", "initial_supply": 10 ** 12, "decimals": 9},
        {"name": "Ok", "symbol": "OK", "initial_supply": 2 ** 64, "decimals": 0},
    ])
    def test_invalid_manifests(self, fields):
        from pydantic import ValidationError

        from mintforge.shared.schemas.manifest import AssetManifest

        with pytest.raises(ValidationError):
            AssetManifest(**fields)

    def test_largest_u64_supply_accepted(self):
        from mintforge.shared.schemas.manifest import MAX_BASE_UNITS, AssetManifest

        manifest = AssetManifest(name="Max", symbol="MAX", initial_supply=MAX_BASE_UNITS, decimals=0)

        assert manifest.base_units == 2 ** 64 - 1

    def test_revocation_order(self):
        from mintforge.shared.schemas.manifest import CapabilityFlags, CapabilityKind

        flags = CapabilityFlags(update="revoked", mint="revoked")

        assert flags.to_revoke() == [CapabilityKind.MINT, CapabilityKind.UPDATE]
