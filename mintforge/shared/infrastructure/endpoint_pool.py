"""
Endpoint Pool Manager
=====================
Maintains the candidate Solana RPC endpoints for one pipeline run.

Features:
- Lightweight `getSlot` health probe under a short timeout
- Randomized starting offset for load spreading
- Permanent errors (401/403) drop the endpoint immediately, no retry
- Transient errors mark the endpoint unhealthy for the current cycle
- Whole-pool cycles retried with exponential backoff (shared policy)
- Failover to the next healthy endpoint on demand, and automatically after
  `failover_after` consecutive failed requests on the current endpoint

The pool is rebuilt for every run; nothing carries over between runs.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from mintforge.shared.infrastructure.rpc_client import RpcClient, RpcError, SignatureStatus
from mintforge.shared.system.cancellation import CancellationToken
from mintforge.shared.system.errors import (
    Cancelled,
    EndpointUnavailable,
    PermanentEndpointError,
    TransientError,
)
from mintforge.shared.system.logging import Logger
from mintforge.shared.system.retry import BackoffPolicy, RetryExhausted, race_with_timeout, retry_with_backoff


class HealthState(Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class Endpoint:
    """Single RPC endpoint with health metadata."""
    url: str
    name: str = ""
    health: HealthState = HealthState.UNKNOWN
    last_validated: Optional[float] = None
    latency_ms: float = 0.0
    last_error: Optional[str] = None
    failures: int = 0
    removed: bool = False

    def __post_init__(self):
        if not self.name:
            self.name = urlparse(self.url).netloc or self.url

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "name": self.name,
            "health": self.health.value,
            "last_validated": self.last_validated,
            "latency_ms": round(self.latency_ms, 2),
            "last_error": self.last_error,
            "removed": self.removed,
        }


ProbeFn = Callable[[Endpoint], Awaitable[Any]]


class EndpointPool:
    """
    Pool of interchangeable RPC endpoints.

    Usage:
        pool = EndpointPool(Settings.RPC_ENDPOINTS, http=client, token=token)
        endpoint = await pool.select_endpoint()
        ...
        endpoint = await pool.failover()

    The pool also answers status and balance lookups on the current
    endpoint, so the confirmation poller can use it as its status source.
    """

    def __init__(
        self,
        urls: List[str],
        http: Optional[httpx.AsyncClient] = None,
        probe_timeout_s: float = 2.5,
        max_cycles: int = 3,
        backoff_base_s: float = 1.0,
        token: Optional[CancellationToken] = None,
        probe: Optional[ProbeFn] = None,
        randomize_start: bool = True,
        request_timeout_s: float = 10.0,
        failover_after: int = 3,
    ):
        # Deduplicate while keeping configured order
        seen = set()
        self._endpoints: List[Endpoint] = []
        for url in urls:
            if url and url not in seen:
                seen.add(url)
                self._endpoints.append(Endpoint(url=url))

        self._http = http
        self.probe_timeout_s = probe_timeout_s
        self.policy = BackoffPolicy(max_attempts=max(1, max_cycles), base_delay_s=backoff_base_s, max_delay_s=30.0)
        self._token = token
        self._probe = probe or self._rpc_probe
        self._offset = random.randrange(len(self._endpoints)) if (randomize_start and self._endpoints) else 0
        self.current: Optional[Endpoint] = None
        self.trail: List[Dict[str, Any]] = []
        self.cycles_run = 0
        self.request_timeout_s = request_timeout_s
        self.failover_after = max(1, failover_after)
        self._request_failures = 0
        self.failovers = 0

        Logger.info(f"[POOL] {len(self._endpoints)} endpoints loaded")

    # =========================================================================
    # VALIDATION
    # =========================================================================

    async def _rpc_probe(self, endpoint: Endpoint) -> Any:
        if self._http is None:
            raise TransientError("no HTTP client configured for probing")
        client = RpcClient(endpoint.url, self._http, timeout_s=self.probe_timeout_s, token=self._token)
        return await client.get_slot()

    async def validate(self, endpoint: Endpoint) -> bool:
        """
        Probe one endpoint. Returns True when healthy.

        Permanent failures remove the endpoint from the pool for the rest of
        the run.
        """
        start = time.monotonic()
        try:
            await race_with_timeout(self._probe(endpoint), self.probe_timeout_s, self._token)
        except Cancelled:
            raise
        except PermanentEndpointError as e:
            self._record(endpoint, HealthState.UNHEALTHY, str(e), start)
            endpoint.removed = True
            Logger.warning(f"[POOL] {endpoint.name} rejected probe ({e}), removed from pool")
            return False
        except (asyncio.TimeoutError, TransientError, RpcError, httpx.HTTPError) as e:
            message = str(e) or type(e).__name__
            self._record(endpoint, HealthState.UNHEALTHY, message, start)
            Logger.warning(f"[POOL] {endpoint.name} unhealthy: {message}")
            return False

        self._record(endpoint, HealthState.HEALTHY, None, start)
        Logger.debug(f"[POOL] {endpoint.name} healthy ({endpoint.latency_ms:.0f}ms)")
        return True

    def _record(self, endpoint: Endpoint, health: HealthState, error: Optional[str], start: float) -> None:
        endpoint.health = health
        endpoint.last_validated = time.time()
        endpoint.latency_ms = (time.monotonic() - start) * 1000
        endpoint.last_error = error
        if error:
            endpoint.failures += 1
        self.trail.append({
            "url": endpoint.url,
            "cycle": self.cycles_run,
            "health": health.value,
            "error": error,
            "latency_ms": round(endpoint.latency_ms, 2),
        })

    # =========================================================================
    # SELECTION
    # =========================================================================

    @property
    def active(self) -> List[Endpoint]:
        return [ep for ep in self._endpoints if not ep.removed]

    def _rotation(self, start: int) -> List[Endpoint]:
        n = len(self._endpoints)
        ordered = [self._endpoints[(start + i) % n] for i in range(n)]
        return [ep for ep in ordered if not ep.removed]

    async def _run_cycle(self, start: int, skip: Optional[Endpoint] = None) -> Endpoint:
        self.cycles_run += 1
        for endpoint in self._rotation(start):
            if endpoint is skip:
                continue
            if self._token:
                self._token.raise_if_cancelled()
            if await self.validate(endpoint):
                return endpoint

        if not self.active or (skip is not None and self.active == [skip]):
            # Nothing left that a later cycle could recover
            raise EndpointUnavailable("No usable endpoints remain in pool", retry_safe=True, trail=list(self.trail))
        raise TransientError(f"no healthy endpoint in cycle {self.cycles_run}")

    async def _select_from(self, start: int, skip: Optional[Endpoint] = None) -> Endpoint:
        if not self._endpoints:
            raise EndpointUnavailable("Endpoint pool is empty", retry_safe=True)

        def on_retry(cycle: int, error: BaseException, delay: float) -> None:
            Logger.warning(f"[POOL] Cycle {cycle} found no healthy endpoint, backing off {delay:.1f}s")

        try:
            endpoint = await retry_with_backoff(
                lambda attempt: self._run_cycle(start, skip),
                self.policy,
                retry_on=(TransientError,),
                token=self._token,
                label="endpoint selection",
                on_retry=on_retry,
            )
        except RetryExhausted as e:
            raise EndpointUnavailable(
                f"All endpoints exhausted after {e.attempts} cycle(s)",
                retry_safe=True,
                trail=list(self.trail),
            )

        self.current = endpoint
        Logger.success(f"[POOL] Selected {endpoint.name}")
        return endpoint

    async def select_endpoint(self) -> Endpoint:
        """Return a validated healthy endpoint, starting at the randomized offset."""
        return await self._select_from(self._offset)

    async def failover(self) -> Endpoint:
        """Mark the current endpoint unhealthy and move to the next healthy one."""
        previous = self.current
        if previous is None:
            return await self.select_endpoint()

        previous.health = HealthState.UNHEALTHY
        Logger.warning(f"[POOL] Failing over from {previous.name}")
        self.failovers += 1
        start = (self._endpoints.index(previous) + 1) % len(self._endpoints)
        return await self._select_from(start, skip=previous)

    async def probe_all(self) -> List[Endpoint]:
        """Validate every endpoint concurrently (pool rebuild / health report)."""
        await asyncio.gather(*(self.validate(ep) for ep in self.active))
        return list(self._endpoints)

    def client_for(self, endpoint: Optional[Endpoint] = None, timeout_s: float = 10.0) -> RpcClient:
        """RpcClient bound to the given (or current) endpoint."""
        endpoint = endpoint or self.current
        if endpoint is None:
            raise EndpointUnavailable("No endpoint selected")
        if self._http is None:
            raise EndpointUnavailable("No HTTP client configured")
        return RpcClient(endpoint.url, self._http, timeout_s=timeout_s, token=self._token)

    # =========================================================================
    # REQUESTS
    # =========================================================================

    async def _request(self, fn: Callable[[RpcClient], Awaitable[Any]], label: str) -> Any:
        """
        Run one request against the current endpoint.

        Errors are re-raised to the caller. A permanent error drops the
        endpoint and fails over at once; `failover_after` consecutive
        transient errors fail over too.
        """
        if self.current is None:
            await self.select_endpoint()
        endpoint = self.current
        client = self.client_for(endpoint, timeout_s=self.request_timeout_s)
        try:
            result = await fn(client)
        except Cancelled:
            raise
        except PermanentEndpointError as e:
            endpoint.removed = True
            endpoint.last_error = str(e)
            Logger.warning(f"[POOL] {endpoint.name} rejected {label} ({e}), removed from pool")
            self._request_failures = 0
            await self.failover()
            raise
        except (TransientError, RpcError, httpx.HTTPError) as e:
            endpoint.last_error = str(e) or type(e).__name__
            self._request_failures += 1
            if self._request_failures >= self.failover_after:
                Logger.warning(f"[POOL] {self._request_failures} failed {label} requests on {endpoint.name}")
                self._request_failures = 0
                await self.failover()
            raise

        self._request_failures = 0
        return result

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        return await self._request(lambda client: client.get_signature_status(signature), "status")

    async def get_balance(self, address: str) -> int:
        return await self._request(lambda client: client.get_balance(address), "balance")

    def get_status(self) -> Dict[str, Any]:
        """Pool status for monitoring."""
        return {
            "total_endpoints": len(self._endpoints),
            "active_endpoints": len(self.active),
            "healthy_endpoints": sum(1 for ep in self._endpoints if ep.health == HealthState.HEALTHY),
            "current": self.current.url if self.current else None,
            "cycles_run": self.cycles_run,
            "failovers": self.failovers,
            "endpoints": [ep.to_dict() for ep in self._endpoints],
        }

    def __len__(self) -> int:
        return len(self._endpoints)

    def __repr__(self) -> str:
        status = self.get_status()
        return f"EndpointPool({status['healthy_endpoints']}/{status['total_endpoints']} healthy)"
