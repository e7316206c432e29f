"""
Storage Upload Chain
====================
Ordered provider fallback for token assets.

    chain = StorageUploadChain([pinata, nft_storage, web3_storage], verifier, token=token)
    image = await chain.upload(png_bytes, "chimp_logo.png", "image/png")
    metadata, document = await chain.upload_metadata(manifest, image, creator)

Each provider gets its own attempt budget with exponential backoff and a
hard per-attempt timeout. Exhausting a provider advances to the next; the
first success ends the chain, so later providers are never touched. Every
attempt is recorded in the diagnostic trail.
"""

import json
import time
from typing import Any, Dict, List, Optional, Tuple

from mintforge.pipeline.metadata_builder import build_metadata_document
from mintforge.shared.infrastructure.gateway_verifier import GatewayVerifier
from mintforge.shared.infrastructure.storage_providers import PermanentUploadError, StorageProvider
from mintforge.shared.models.uploads import UploadAttempt, UploadResult
from mintforge.shared.schemas.manifest import AssetManifest
from mintforge.shared.system.cancellation import CancellationToken
from mintforge.shared.system.errors import Cancelled, UploadFailed
from mintforge.shared.system.logging import Logger
from mintforge.shared.system.retry import (
    DEFAULT_RETRYABLE,
    BackoffPolicy,
    RetryExhausted,
    race_with_timeout,
    retry_with_backoff,
)


class StorageUploadChain:
    """Upload through an ordered list of interchangeable providers."""

    def __init__(
        self,
        providers: List[StorageProvider],
        verifier: Optional[GatewayVerifier] = None,
        token: Optional[CancellationToken] = None,
        backoff_base_s: float = 2.0,
        require_verified: bool = True,
        verify_rounds: int = 3,
        verify_round_delay_s: float = 5.0,
    ):
        if not providers:
            raise ValueError("StorageUploadChain needs at least one provider")
        self.providers = list(providers)
        self.verifier = verifier
        self._token = token
        self.backoff_base_s = backoff_base_s
        self.require_verified = require_verified
        self.verify_rounds = verify_rounds
        self.verify_round_delay_s = verify_round_delay_s
        self.attempts: List[UploadAttempt] = []

    # =========================================================================
    # PROVIDER LOOP
    # =========================================================================

    async def _try_provider(
        self,
        provider: StorageProvider,
        content: bytes,
        filename: str,
        content_type: str,
        trail: List[UploadAttempt],
    ):
        async def attempt_once(attempt: int):
            start = time.monotonic()
            try:
                receipt = await race_with_timeout(
                    provider.upload(content, filename, content_type),
                    provider.timeout_s,
                    self._token,
                )
            except Cancelled:
                raise
            except Exception as e:
                reason = str(e) or f"timeout after {provider.timeout_s:.0f}s"
                trail.append(UploadAttempt(
                    provider=provider.name,
                    attempt=attempt,
                    status="failed",
                    error=reason,
                    elapsed_ms=(time.monotonic() - start) * 1000,
                ))
                Logger.warning(f"[STORAGE] {provider.name} attempt {attempt}/{provider.max_attempts} failed: {reason}")
                raise

            trail.append(UploadAttempt(
                provider=provider.name,
                attempt=attempt,
                status="success",
                content_id=receipt.content_id,
                gateway_urls=[receipt.url],
                elapsed_ms=(time.monotonic() - start) * 1000,
            ))
            return receipt

        policy = BackoffPolicy(max_attempts=provider.max_attempts, base_delay_s=self.backoff_base_s)
        return await retry_with_backoff(
            attempt_once,
            policy,
            retry_on=DEFAULT_RETRYABLE,
            token=self._token,
            label=f"{provider.name} upload",
            on_retry=lambda n, err, delay: Logger.info(f"[STORAGE] Retrying {provider.name} in {delay:.1f}s"),
        )

    def _gateway_urls(self, provider: StorageProvider, content_id: str) -> List[str]:
        urls = [provider.gateway_url(content_id)]
        if self.verifier is not None:
            urls.extend(self.verifier.urls_for(content_id))
        return list(dict.fromkeys(urls))

    async def upload(self, content: bytes, filename: str, content_type: str) -> UploadResult:
        """
        Upload `content` through the chain, then verify gateway accessibility.

        Raises:
            UploadFailed: every provider exhausted, or the content never
                reached the accessibility quorum while verification is required
            Cancelled: the run was cancelled
        """
        trail: List[UploadAttempt] = []
        provider_errors: Dict[str, str] = {}

        for provider in self.providers:
            if not provider.configured:
                reason = "not configured"
                trail.append(UploadAttempt(provider=provider.name, attempt=0, status="failed", error=reason))
                provider_errors[provider.name] = reason
                Logger.debug(f"[STORAGE] Skipping {provider.name}: {reason}")
                continue

            Logger.info(f"[STORAGE] Uploading {filename} via {provider.name}...")
            try:
                receipt = await self._try_provider(provider, content, filename, content_type, trail)
            except RetryExhausted as e:
                provider_errors[provider.name] = str(e.last_error)
                continue
            except PermanentUploadError as e:
                provider_errors[provider.name] = str(e)
                continue

            result = UploadResult(
                content_id=receipt.content_id,
                gateway_urls=self._gateway_urls(provider, receipt.content_id),
                provider=provider.name,
                attempts=trail,
            )
            self.attempts.extend(trail)
            Logger.success(f"[STORAGE] {filename} stored via {provider.name}: {receipt.content_id}")
            await self._verify(result)
            return result

        self.attempts.extend(trail)
        summary = "; ".join(f"{name}: {reason}" for name, reason in provider_errors.items())
        raise UploadFailed(
            f"All storage providers failed ({summary})",
            provider_errors=provider_errors,
            trail=[attempt.to_dict() for attempt in trail],
        )

    async def _verify(self, result: UploadResult) -> None:
        if self.verifier is None:
            return

        report = await self.verifier.verify_until_ready(
            result.content_id,
            rounds=self.verify_rounds,
            delay_s=self.verify_round_delay_s,
        )
        result.accessibility = report
        if report.ready:
            return

        message = (
            f"{result.content_id} reachable on {len(report.reachable)}/{report.total} gateways "
            f"(score {report.score:.2f} < {report.threshold:.2f})"
        )
        if self.require_verified:
            raise UploadFailed(
                f"Content not accessible: {message}",
                provider_errors={result.provider: "accessibility below quorum"},
                trail=[a.to_dict() for a in result.attempts] + [{"verification": report.to_dict()}],
            )
        Logger.warning(f"[VERIFY] Continuing with unverified content: {message}")

    # =========================================================================
    # METADATA VARIANT
    # =========================================================================

    async def upload_json(self, document: Dict[str, Any], filename: str) -> UploadResult:
        payload = json.dumps(document, indent=2, sort_keys=False).encode("utf-8")
        return await self.upload(payload, filename, "application/json")

    async def upload_metadata(
        self,
        manifest: AssetManifest,
        image: UploadResult,
        creator: str,
        image_filename: Optional[str] = None,
    ) -> Tuple[UploadResult, Dict[str, Any]]:
        """
        Build and upload the metadata document referencing `image`.

        The image URL must already resolve; if it was not verified during
        its own upload, it is checked here before the document is built.
        """
        if not image.ready and self.verifier is not None:
            report = await self.verifier.verify(image.content_id)
            image.accessibility = report

        if self.verifier is not None and not image.ready:
            raise UploadFailed(
                f"Image {image.content_id} is not resolvable; refusing to build metadata",
                provider_errors={image.provider: "image not accessible"},
                trail=[{"verification": image.accessibility.to_dict() if image.accessibility else None}],
            )

        document = build_metadata_document(manifest, image, creator, image_filename)
        filename = f"{manifest.symbol.lower()}_metadata.json"
        result = await self.upload_json(document, filename)
        return result, document
