"""
Metaplex-style token metadata document.

Built only after the image upload resolves, so `image` and
`properties.files[0].uri` always point at content that is already
reachable.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from mintforge.shared.models.uploads import UploadResult
from mintforge.shared.schemas.manifest import AssetManifest, CapabilityKind, CapabilityState

IMAGE_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "webp": "image/webp",
}


def image_type_for(filename_or_url: str) -> str:
    extension = filename_or_url.rsplit(".", 1)[-1].lower() if "." in filename_or_url else ""
    return IMAGE_TYPES.get(extension, "image/png")


def build_metadata_document(
    manifest: AssetManifest,
    image: UploadResult,
    creator: str,
    image_filename: Optional[str] = None,
) -> Dict[str, Any]:
    if not image.url:
        raise ValueError("image upload has no resolvable URL")

    description = manifest.description or f"{manifest.name} ({manifest.symbol}) - a Solana token"
    created = datetime.now(timezone.utc).date().isoformat()

    document: Dict[str, Any] = {
        "name": manifest.name,
        "symbol": manifest.symbol,
        "description": description,
        "image": image.url,
        "external_url": manifest.website or "",
        "attributes": [
            {"trait_type": "Network", "value": "Solana"},
            {"trait_type": "Standard", "value": manifest.variant.value},
            {"trait_type": "Supply", "value": str(manifest.initial_supply)},
            {"trait_type": "Decimals", "value": str(manifest.decimals)},
            {"trait_type": "Created", "value": created},
        ],
        "properties": {
            "files": [{"uri": image.url, "type": image_type_for(image_filename or image.url)}],
            "category": "image",
            "creators": [{"address": creator, "verified": False, "share": 100}],
        },
        "extensions": {
            "token_details": {
                "total_supply": str(manifest.initial_supply),
                "decimals": manifest.decimals,
                # Requested end state; the chain is the source of truth
                **{
                    f"{kind.value}_authority_revoked": getattr(manifest.capabilities, kind.value) == CapabilityState.REVOKED
                    for kind in CapabilityKind
                },
            },
            "social_links": manifest.social_links(),
        },
    }

    if manifest.fee_config is not None and manifest.fee_config.basis_points > 0:
        document["seller_fee_basis_points"] = manifest.fee_config.basis_points

    return document
