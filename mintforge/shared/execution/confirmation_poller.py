"""
Confirmation Poller
===================
Waits for a submitted operation to be confirmed by the network.

Loop per submission:
    poll getSignatureStatuses every `poll_interval_s`
    -> confirmed            : done
    -> transient failure    : resubmit (blockhash expired, congestion, 429, node behind)
    -> permanent failure    : OperationRejected
    -> never seen for `drop_after_s`: treated as dropped, resubmit

Every signature submitted for an operation stays watched: if an earlier
submission lands after a resubmission, the operation is confirmed with it.

Resubmissions go through the shared retry_with_backoff, bounded by
`max_retries` and by the overall timeout. Running out of either raises
OperationTimeout. An operation that is already confirmed is returned as-is
and never resubmitted.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx

from mintforge.shared.infrastructure.rpc_client import RpcError, SignatureStatus
from mintforge.shared.models.operations import Operation, OperationStatus
from mintforge.shared.system.cancellation import CancellationToken
from mintforge.shared.system.errors import (
    Cancelled,
    EndpointUnavailable,
    OperationRejected,
    OperationTimeout,
    PermanentEndpointError,
    TransientError,
)
from mintforge.shared.system.logging import Logger
from mintforge.shared.system.retry import DEFAULT_RETRYABLE, BackoffPolicy, RetryExhausted, retry_with_backoff

TRANSIENT_MARKERS = (
    "blockhash not found",
    "blockhashnotfound",
    "block height exceeded",
    "blockhash expired",
    "expired",
    "congestion",
    "429",
    "rate limit",
    "too many requests",
    "node is behind",
    "node behind",
    "timed out",
)


def is_transient_failure(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


class StatusSource(Protocol):
    async def get_signature_status(self, signature: str) -> SignatureStatus:
        ...


SubmitFn = Callable[[], Awaitable[str]]


class ConfirmationPoller:
    """Confirm operations with bounded resubmission."""

    def __init__(
        self,
        status_source: StatusSource,
        token: Optional[CancellationToken] = None,
        poll_interval_s: float = 2.0,
        timeout_s: float = 90.0,
        max_retries: int = 3,
        backoff_base_s: float = 1.0,
        drop_after_s: float = 30.0,
    ):
        self.status_source = status_source
        self._token = token
        self.poll_interval_s = poll_interval_s
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_base_s = backoff_base_s
        self.drop_after_s = drop_after_s

    async def _sleep(self, seconds: float) -> None:
        if self._token:
            await self._token.sleep(seconds)
        else:
            await asyncio.sleep(seconds)

    async def _submit(self, operation: Operation, submit: SubmitFn) -> str:
        try:
            signature = await submit()
        except (Cancelled, OperationRejected, TransientError):
            raise
        except Exception as e:
            if is_transient_failure(str(e)):
                raise TransientError(f"{operation.label} submit failed: {e}")
            raise OperationRejected(f"{operation.label} rejected at submission: {e}")

        operation.mark_submitted(signature)
        Logger.info(f"[TX] {operation.label} submitted: {signature[:16]}...")
        return signature

    async def _lookup(self, operation: Operation, signature: str) -> Optional[SignatureStatus]:
        try:
            return await self.status_source.get_signature_status(signature)
        except Cancelled:
            raise
        except (TransientError, RpcError, PermanentEndpointError, EndpointUnavailable, httpx.HTTPError) as e:
            Logger.warning(f"[CONFIRM] Status lookup for {operation.label} ({signature[:8]}...) failed: {e}")
            return None

    def _failure(self, operation: Operation, status: SignatureStatus) -> Exception:
        message = str(status.err)
        if is_transient_failure(message):
            return TransientError(f"{operation.label} failed transiently: {message}")
        return OperationRejected(f"{operation.label} failed on-chain: {message}")

    async def _poll(self, operation: Operation, deadline: float) -> OperationStatus:
        """
        Poll every signature submitted for `operation` until one confirms.

        An earlier submission can still land after a resubmission, so all of
        them are watched. A failure of the newest submission is held back
        while an earlier one is still unresolved, since the earlier one
        landing is the usual cause ("account already in use").
        """
        latest = operation.signature
        signatures = list(operation.signatures)
        if latest and latest not in signatures:
            signatures.append(latest)
        drop_at = time.monotonic() + self.drop_after_s
        failed: Dict[str, SignatureStatus] = {}

        while True:
            if self._token:
                self._token.raise_if_cancelled()

            failure: Optional[Exception] = None
            for signature in reversed(signatures):
                if signature in failed:
                    continue
                status = await self._lookup(operation, signature)
                if status is None:
                    continue

                if status.is_confirmed:
                    if signature != latest:
                        Logger.info(f"[CONFIRM] Earlier {operation.label} submission {signature[:16]}... landed")
                    operation.signature = signature
                    operation.mark_confirmed(status.slot)
                    Logger.success(f"[CONFIRM] {operation.label} confirmed (slot {status.slot})")
                    return OperationStatus.CONFIRMED

                if status.is_failed:
                    failed[signature] = status
                    if signature == latest:
                        failure = self._failure(operation, status)
                elif status.found:
                    # Seen by the cluster, not yet at the target commitment
                    drop_at = float("inf")

            if latest in failed and failure is None:
                failure = self._failure(operation, failed[latest])
            unresolved = [s for s in signatures if s != latest and s not in failed]

            now = time.monotonic()
            if failure is not None and (not unresolved or now >= drop_at):
                raise failure
            if failure is None and now >= drop_at:
                raise TransientError(f"{operation.label} dropped: not seen within {self.drop_after_s:.0f}s")

            remaining = deadline - now
            if remaining <= 0:
                raise asyncio.TimeoutError(f"{operation.label} confirmation window elapsed")
            await self._sleep(min(self.poll_interval_s, remaining))

    async def confirm(
        self,
        operation: Operation,
        submit: SubmitFn,
        timeout_s: Optional[float] = None,
    ) -> OperationStatus:
        """
        Submit (if not yet submitted) and confirm `operation`.

        Args:
            operation: the operation record; updated in place
            submit: async callable that signs and submits the instruction
                again and returns the new signature
            timeout_s: overall confirmation window (default 90s)

        Raises:
            OperationRejected: permanent failure
            OperationTimeout: retries or time window exhausted
            Cancelled: the run was cancelled
        """
        if operation.is_confirmed:
            return OperationStatus.CONFIRMED

        timeout = timeout_s if timeout_s is not None else self.timeout_s
        deadline = time.monotonic() + timeout
        trail: List[Dict[str, Any]] = []

        async def attempt(n: int) -> OperationStatus:
            if n > 1:
                operation.retry_count += 1
            try:
                if n > 1 or operation.signature is None:
                    await self._submit(operation, submit)
                return await self._poll(operation, deadline)
            except DEFAULT_RETRYABLE as e:
                trail.append({"attempt": n, "signature": operation.signature, "error": str(e) or type(e).__name__})
                raise

        def on_retry(n: int, error: BaseException, delay: float) -> None:
            Logger.warning(f"[CONFIRM] {operation.label}: {error}; resubmitting in {delay:.1f}s ({n}/{self.max_retries})")

        policy = BackoffPolicy(max_attempts=self.max_retries + 1, base_delay_s=self.backoff_base_s, max_delay_s=15.0)
        try:
            return await retry_with_backoff(
                attempt,
                policy,
                retry_on=DEFAULT_RETRYABLE,
                token=self._token,
                deadline=deadline,
                label=operation.label,
                on_retry=on_retry,
            )
        except RetryExhausted as e:
            cause = (
                f"{operation.label} not confirmed after {operation.retry_count} "
                f"retr{'y' if operation.retry_count == 1 else 'ies'} within {timeout:.0f}s: {e.last_error}"
            )
            operation.mark_failed(cause)
            Logger.error(f"[CONFIRM] {cause}")
            raise OperationTimeout(cause, trail=trail)
        except OperationRejected as e:
            operation.mark_failed(e.cause)
            Logger.error(f"[CONFIRM] {e.cause}")
            e.trail = trail + e.trail
            raise
