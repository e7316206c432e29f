"""
Async Solana JSON-RPC Client
============================
Thin httpx wrapper used for endpoint health probes and signature status
polling. Every request is raced against a timer; HTTP failures are
classified so callers know whether retrying can help:

- 401 / 403 (and auth-flavoured JSON-RPC errors) -> PermanentEndpointError
- timeouts, transport errors, 408 / 429 / 5xx     -> TransientError
- other JSON-RPC errors                            -> RpcError
- replies that are not the documented shape        -> TransientError
"""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from mintforge.shared.system.cancellation import CancellationToken
from mintforge.shared.system.errors import PermanentEndpointError, TransientError
from mintforge.shared.system.retry import race_with_timeout

AUTH_MARKERS = ("unauthorized", "forbidden", "api key", "api-key", "access denied")


class RpcError(Exception):
    """JSON-RPC level error returned by a node."""

    def __init__(self, code: int, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


@dataclass
class SignatureStatus:
    """Normalized `getSignatureStatuses` entry."""
    found: bool
    confirmation_status: Optional[str] = None  # processed | confirmed | finalized
    err: Optional[Any] = None
    slot: Optional[int] = None

    @property
    def is_confirmed(self) -> bool:
        return self.found and self.err is None and self.confirmation_status in ("confirmed", "finalized")

    @property
    def is_failed(self) -> bool:
        return self.found and self.err is not None


class RpcClient:
    """JSON-RPC client bound to one endpoint URL."""

    _ids = itertools.count(1)

    def __init__(
        self,
        url: str,
        http: httpx.AsyncClient,
        timeout_s: float = 10.0,
        token: Optional[CancellationToken] = None,
    ):
        self.url = url
        self._http = http
        self.timeout_s = timeout_s
        self._token = token

    async def call(self, method: str, params: Optional[List[Any]] = None, timeout_s: Optional[float] = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        timeout = timeout_s if timeout_s is not None else self.timeout_s

        try:
            response = await race_with_timeout(self._http.post(self.url, json=payload), timeout, self._token)
        except asyncio.TimeoutError:
            raise TransientError(f"{method} timed out after {timeout:.1f}s")
        except httpx.TransportError as e:
            raise TransientError(f"{method} transport error: {e}")

        status = response.status_code
        if status in (401, 403):
            raise PermanentEndpointError(f"HTTP {status} from {self.url}", status_code=status)
        if status in (408, 429) or status >= 500:
            raise TransientError(f"HTTP {status} from {self.url}")
        if status != 200:
            raise PermanentEndpointError(f"HTTP {status} from {self.url}", status_code=status)

        try:
            data = response.json()
        except ValueError:
            raise TransientError(f"{method}: invalid JSON from {self.url}")

        if not isinstance(data, dict):
            raise TransientError(f"{method}: malformed reply from {self.url}")

        if "error" in data and data["error"]:
            error = data["error"]
            code = error.get("code", 0) if isinstance(error, dict) else 0
            code = code if isinstance(code, int) else 0
            message = str(error.get("message", error)) if isinstance(error, dict) else str(error)
            if any(marker in message.lower() for marker in AUTH_MARKERS):
                raise PermanentEndpointError(message)
            raise RpcError(code, message)

        return data.get("result")

    # =========================================================================
    # TYPED HELPERS
    # =========================================================================

    async def get_slot(self, timeout_s: Optional[float] = None) -> int:
        """Current slot height. Used as the lightweight health probe."""
        result = await self.call("getSlot", [{"commitment": "processed"}], timeout_s=timeout_s)
        if isinstance(result, bool) or not isinstance(result, int):
            raise TransientError(f"getSlot: malformed result {result!r} from {self.url}")
        return result

    async def get_balance(self, address: str, timeout_s: Optional[float] = None) -> int:
        """Lamport balance of `address`."""
        result = await self.call("getBalance", [address, {"commitment": "confirmed"}], timeout_s=timeout_s)
        value = result.get("value") if isinstance(result, dict) else None
        if isinstance(value, bool) or not isinstance(value, int):
            raise TransientError(f"getBalance: malformed result {result!r} from {self.url}")
        return value

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        result = await self.call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = result.get("value") if isinstance(result, dict) else None
        if not isinstance(values, list):
            raise TransientError(f"getSignatureStatuses: malformed result {result!r} from {self.url}")
        entry: Optional[Dict[str, Any]] = values[0] if values else None
        if not entry:
            return SignatureStatus(found=False)
        if not isinstance(entry, dict):
            raise TransientError(f"getSignatureStatuses: malformed entry {entry!r} from {self.url}")
        return SignatureStatus(
            found=True,
            confirmation_status=entry.get("confirmationStatus"),
            err=entry.get("err"),
            slot=entry.get("slot"),
        )
