"""
Listing Index Client
====================
Reads DexScreener's token endpoint to learn whether a new asset is listed.

    GET https://api.dexscreener.com/latest/dex/tokens/{mint}

The best pair is the one with the deepest USD liquidity. DexScreener has
no public API for submitting a token profile, so submission is a
capability interface with an explicit simulated implementation.

Ratings are whatever the index reports; this module reads the active
boost level of the best pair and nothing else. It makes no promises about
placement.
"""

import asyncio
import uuid
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from mintforge.shared.models.listing import ListingObservation
from mintforge.shared.schemas.manifest import AssetManifest
from mintforge.shared.system.cancellation import CancellationToken
from mintforge.shared.system.errors import Cancelled, ListingUnavailable
from mintforge.shared.system.logging import Logger
from mintforge.shared.system.retry import race_with_timeout


@runtime_checkable
class ListingIndex(Protocol):
    async def observe(self, asset_id: str) -> ListingObservation:
        """Single read of the index. Raises ListingUnavailable when unreachable."""
        ...


@runtime_checkable
class ListingSubmitter(Protocol):
    async def submit(self, asset_id: str, manifest: AssetManifest, metadata_uri: Optional[str] = None) -> str:
        """Submit the asset for listing; returns a submission id."""
        ...


class DexScreenerClient:
    """Async DexScreener token lookup."""

    BASE_URL = "https://api.dexscreener.com/latest/dex/tokens"

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: Optional[str] = None,
        request_timeout_s: float = 10.0,
        token: Optional[CancellationToken] = None,
    ):
        self._http = http
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.request_timeout_s = request_timeout_s
        self._token = token

    @staticmethod
    def _select_best_pair(pairs: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Sort by liquidity desc."""
        return sorted(pairs, key=lambda p: float((p.get("liquidity") or {}).get("usd", 0) or 0), reverse=True)[0]

    async def observe(self, asset_id: str) -> ListingObservation:
        url = f"{self.base_url}/{asset_id}"
        try:
            response = await race_with_timeout(self._http.get(url), self.request_timeout_s, self._token)
        except Cancelled:
            raise
        except asyncio.TimeoutError:
            raise ListingUnavailable(f"DexScreener request timed out after {self.request_timeout_s:.0f}s")
        except httpx.HTTPError as e:
            raise ListingUnavailable(f"DexScreener unreachable: {type(e).__name__}: {e}")

        if response.status_code == 429:
            raise ListingUnavailable("DexScreener rate limit (429)")
        if response.status_code != 200:
            raise ListingUnavailable(f"DexScreener HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise ListingUnavailable("DexScreener returned invalid JSON")

        try:
            return self._parse(asset_id, data)
        except (AttributeError, TypeError, ValueError) as e:
            raise ListingUnavailable(f"DexScreener reply not understood: {type(e).__name__}: {e}")

    def _parse(self, asset_id: str, data: Any) -> ListingObservation:
        wanted = asset_id.lower()
        pairs = [
            p for p in (data.get("pairs") or [])
            if (p.get("baseToken") or {}).get("address", "").lower() == wanted
        ]
        if not pairs:
            return ListingObservation(listed=False)

        best = self._select_best_pair(pairs)
        boosts = best.get("boosts") or {}
        rating = boosts.get("active")
        return ListingObservation(
            listed=True,
            rating=int(rating) if rating is not None else None,
            url=best.get("url"),
            pair_count=len(pairs),
            liquidity_usd=float((best.get("liquidity") or {}).get("usd", 0) or 0),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# SIMULATED CAPABILITIES
# ═══════════════════════════════════════════════════════════════════════════════

class SimulatedListingSubmitter:
    """
    Offline stand-in for a listing submission API.

    Records what would have been submitted and returns a local id. Nothing
    leaves the process and no listing outcome is implied.
    """

    def __init__(self, fail: bool = False):
        self._fail = fail
        self.submissions: List[Dict[str, Any]] = []

    async def submit(self, asset_id: str, manifest: AssetManifest, metadata_uri: Optional[str] = None) -> str:
        if self._fail:
            raise ListingUnavailable("simulated listing submission failure")

        submission_id = f"sim-{uuid.uuid4().hex[:12]}"
        self.submissions.append({
            "submission_id": submission_id,
            "asset_id": asset_id,
            "name": manifest.name,
            "symbol": manifest.symbol,
            "metadata_uri": metadata_uri,
            "links": manifest.social_links(),
        })
        Logger.info(f"[LISTING] Simulated submission {submission_id} for {manifest.symbol}")
        return submission_id


class SimulatedListingIndex:
    """
    Offline index that reports the asset as listed after `listed_after`
    observations (never, when None). `failures` makes the first N reads
    raise ListingUnavailable.
    """

    def __init__(self, listed_after: Optional[int] = None, rating: Optional[int] = None, failures: int = 0):
        self.listed_after = listed_after
        self.rating = rating
        self._failures = failures
        self.observations = 0

    async def observe(self, asset_id: str) -> ListingObservation:
        self.observations += 1
        if self._failures > 0:
            self._failures -= 1
            raise ListingUnavailable("simulated index outage")
        if self.listed_after is not None and self.observations >= self.listed_after:
            return ListingObservation(
                listed=True,
                rating=self.rating,
                url=f"https://dexscreener.com/solana/{asset_id}",
                pair_count=1,
            )
        return ListingObservation(listed=False)
