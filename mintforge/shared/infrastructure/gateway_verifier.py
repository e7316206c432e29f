"""
IPFS Gateway Verifier
=====================
Confirms uploaded content is fetchable from independent public gateways.

All HEAD probes fire in parallel, each under its own short timeout, and
are aggregated into an AccessibilityReport:

    score = reachable / total     ready = score >= threshold (0.70)

A score under the threshold is never reported as ready.
"""

import asyncio
from typing import List, Optional, Tuple

import httpx

from mintforge.shared.models.uploads import AccessibilityReport
from mintforge.shared.system.cancellation import CancellationToken
from mintforge.shared.system.errors import Cancelled
from mintforge.shared.system.logging import Logger
from mintforge.shared.system.retry import race_with_timeout

MIN_GATEWAYS = 5


class GatewayVerifier:
    """Parallel accessibility check across public IPFS gateways."""

    def __init__(
        self,
        gateways: List[str],
        http: httpx.AsyncClient,
        timeout_s: float = 4.0,
        threshold: float = 0.70,
        token: Optional[CancellationToken] = None,
    ):
        unique = list(dict.fromkeys(g if g.endswith("/") else g + "/" for g in gateways))
        if len(unique) < MIN_GATEWAYS:
            raise ValueError(f"Accessibility quorum needs at least {MIN_GATEWAYS} gateways, got {len(unique)}")
        self.gateways = unique
        self._http = http
        self.timeout_s = timeout_s
        self.threshold = threshold
        self._token = token

    def urls_for(self, content_id: str) -> List[str]:
        return [f"{gateway}{content_id}" for gateway in self.gateways]

    async def _probe(self, gateway: str, content_id: str) -> Tuple[str, bool, str]:
        url = f"{gateway}{content_id}"
        try:
            response = await race_with_timeout(
                self._http.head(url, follow_redirects=True),
                self.timeout_s,
                self._token,
            )
        except Cancelled:
            raise
        except asyncio.TimeoutError:
            return gateway, False, "timeout"
        except httpx.HTTPError as e:
            return gateway, False, type(e).__name__

        if response.status_code < 400:
            return gateway, True, ""
        return gateway, False, f"HTTP {response.status_code}"

    async def verify(self, content_id: str) -> AccessibilityReport:
        """One round of parallel HEAD probes."""
        results = await asyncio.gather(*(self._probe(g, content_id) for g in self.gateways))

        report = AccessibilityReport(content_id=content_id, total=len(self.gateways), threshold=self.threshold)
        for gateway, ok, reason in results:
            if ok:
                report.reachable.append(gateway)
            else:
                report.unreachable[gateway] = reason

        Logger.info(
            f"[VERIFY] {content_id[:16]}... reachable on {len(report.reachable)}/{report.total} "
            f"gateways (score {report.score:.2f})"
        )
        return report

    async def verify_until_ready(self, content_id: str, rounds: int = 3, delay_s: float = 5.0) -> AccessibilityReport:
        """
        Re-run verification up to `rounds` times while gateways catch up with
        the new pin. Returns the last report (ready or not).
        """
        report = await self.verify(content_id)
        round_no = 1
        while not report.ready and round_no < rounds:
            if self._token:
                await self._token.sleep(delay_s)
            else:
                await asyncio.sleep(delay_s)
            round_no += 1
            report = await self.verify(content_id)
        report.rounds = round_no
        return report
