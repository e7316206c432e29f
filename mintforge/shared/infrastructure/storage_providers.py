"""
Decentralized Storage Providers
===============================
Every provider implements the same capability:

    await provider.upload(content, filename, content_type) -> ProviderReceipt

so the upload chain iterates an ordered list of providers without knowing
which one it is talking to. Adding a provider means adding a class here.

Providers:
- PinataProvider        (primary, pinFileToIPFS)
- NftStorageProvider    (fallback)
- Web3StorageProvider   (fallback)
- StorachaProvider      (fallback, Web3.Storage compatible API)
- SimulatedStorageProvider (offline / test double, content-addressed ids)

Error classification:
- missing credentials, 400/401/403/404/413 -> PermanentUploadError
- timeouts, transport errors, 408/429/5xx  -> TransientError
- a 2xx reply that is not the documented JSON shape -> PermanentUploadError
  (the chain moves on to the next provider)
"""

import asyncio
import base64
import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from mintforge.shared.models.uploads import ProviderReceipt
from mintforge.shared.system.errors import TransientError
from mintforge.shared.system.logging import Logger


class PermanentUploadError(Exception):
    """Provider refused the upload in a way retrying cannot fix."""


class StorageProvider(ABC):
    """Common interface of every storage backend."""

    name: str = "provider"
    gateway: str = "https://ipfs.io/ipfs/"

    def __init__(self, max_attempts: int = 2, timeout_s: float = 25.0):
        self.max_attempts = max_attempts
        self.timeout_s = timeout_s

    @property
    def configured(self) -> bool:
        """Whether credentials are present. Unconfigured providers are skipped."""
        return True

    def gateway_url(self, content_id: str) -> str:
        return f"{self.gateway}{content_id}"

    @abstractmethod
    async def upload(self, content: bytes, filename: str, content_type: str) -> ProviderReceipt:
        """Store `content` and return its content id and primary URL."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(attempts={self.max_attempts}, timeout={self.timeout_s}s)"


class HttpStorageProvider(StorageProvider):
    """Shared HTTP plumbing for the real IPFS pinning services."""

    endpoint: str = ""

    def __init__(self, http: httpx.AsyncClient, max_attempts: int = 2, timeout_s: float = 25.0):
        super().__init__(max_attempts=max_attempts, timeout_s=timeout_s)
        self._http = http

    async def _post(self, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._http.post(self.endpoint, timeout=self.timeout_s, **kwargs)
        except httpx.TransportError as e:
            raise TransientError(f"{self.name}: {type(e).__name__}: {e}")

        status = response.status_code
        if status in (408, 429) or status >= 500:
            raise TransientError(f"{self.name}: HTTP {status}")
        if status >= 400:
            raise PermanentUploadError(f"{self.name}: HTTP {status}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError:
            raise PermanentUploadError(f"{self.name}: response was not JSON")
        if not isinstance(data, dict):
            raise PermanentUploadError(f"{self.name}: unexpected response {str(data)[:200]}")
        return data

    def _receipt(self, content_id: Any) -> ProviderReceipt:
        if not content_id or not isinstance(content_id, str):
            raise PermanentUploadError(f"{self.name}: response carried no content id")
        return ProviderReceipt(content_id=content_id, url=self.gateway_url(content_id))


class PinataProvider(HttpStorageProvider):
    name = "pinata"
    endpoint = "https://api.pinata.cloud/pinning/pinFileToIPFS"
    gateway = "https://gateway.pinata.cloud/ipfs/"

    def __init__(self, http: httpx.AsyncClient, api_key: str, secret_key: str, **kwargs):
        super().__init__(http, **kwargs)
        self._api_key = api_key
        self._secret_key = secret_key

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._secret_key)

    async def upload(self, content: bytes, filename: str, content_type: str) -> ProviderReceipt:
        if not self.configured:
            raise PermanentUploadError("pinata: API credentials not configured")

        metadata = {"name": filename, "keyvalues": {"type": "solana-token-asset", "network": "mainnet"}}
        data = await self._post(
            headers={"pinata_api_key": self._api_key, "pinata_secret_api_key": self._secret_key},
            files={"file": (filename, content, content_type)},
            data={"pinataMetadata": json.dumps(metadata), "pinataOptions": json.dumps({"cidVersion": 1})},
        )
        return self._receipt(data.get("IpfsHash"))


class NftStorageProvider(HttpStorageProvider):
    name = "nft_storage"
    endpoint = "https://api.nft.storage/upload"
    gateway = "https://nftstorage.link/ipfs/"

    def __init__(self, http: httpx.AsyncClient, token: str, **kwargs):
        super().__init__(http, **kwargs)
        self._token = token

    @property
    def configured(self) -> bool:
        return bool(self._token)

    async def upload(self, content: bytes, filename: str, content_type: str) -> ProviderReceipt:
        if not self.configured:
            raise PermanentUploadError("nft_storage: token not configured")

        data = await self._post(
            headers={"Authorization": f"Bearer {self._token}", "Content-Type": content_type},
            content=content,
        )
        value = data.get("value")
        return self._receipt(value.get("cid") if isinstance(value, dict) else None)


class Web3StorageProvider(HttpStorageProvider):
    name = "web3_storage"
    endpoint = "https://api.web3.storage/upload"
    gateway = "https://w3s.link/ipfs/"

    def __init__(self, http: httpx.AsyncClient, token: str, **kwargs):
        super().__init__(http, **kwargs)
        self._token = token

    @property
    def configured(self) -> bool:
        return bool(self._token)

    async def upload(self, content: bytes, filename: str, content_type: str) -> ProviderReceipt:
        if not self.configured:
            raise PermanentUploadError(f"{self.name}: token not configured")

        data = await self._post(
            headers={"Authorization": f"Bearer {self._token}", "X-NAME": filename, "Content-Type": content_type},
            content=content,
        )
        return self._receipt(data.get("cid"))


class StorachaProvider(Web3StorageProvider):
    name = "storacha"
    endpoint = "https://up.web3.storage/upload"


class SimulatedStorageProvider(StorageProvider):
    """
    Offline provider producing deterministic content-addressed ids.

    Not a real upload: nothing leaves the process. `fail_first` makes the
    first N attempts raise (transient by default) so fallback paths can be
    exercised without network access.
    """

    name = "simulated"
    gateway = "https://ipfs.io/ipfs/"

    def __init__(
        self,
        name: str = "simulated",
        fail_first: int = 0,
        permanent: bool = False,
        latency_s: float = 0.0,
        max_attempts: int = 2,
        timeout_s: float = 25.0,
    ):
        super().__init__(max_attempts=max_attempts, timeout_s=timeout_s)
        self.name = name
        self._fail_remaining = fail_first
        self._permanent = permanent
        self._latency_s = latency_s
        self.calls = 0
        self.stored: Dict[str, bytes] = {}

    @staticmethod
    def content_id_for(content: bytes) -> str:
        digest = hashlib.sha256(content).digest()
        return "bafk" + base64.b32encode(digest).decode().lower().rstrip("=")

    async def upload(self, content: bytes, filename: str, content_type: str) -> ProviderReceipt:
        self.calls += 1
        if self._latency_s:
            await asyncio.sleep(self._latency_s)

        if self._fail_remaining > 0:
            self._fail_remaining -= 1
            if self._permanent:
                raise PermanentUploadError(f"{self.name}: simulated rejection")
            raise TransientError(f"{self.name}: simulated outage")

        content_id = self.content_id_for(content)
        self.stored[content_id] = content
        Logger.debug(f"[STORAGE] {self.name} stored {filename} as {content_id[:16]}...")
        return ProviderReceipt(content_id=content_id, url=self.gateway_url(content_id))


def build_default_providers(settings, http: httpx.AsyncClient) -> List[StorageProvider]:
    """Ordered chain from configuration: Pinata, NFT.Storage, Web3.Storage, Storacha."""
    timeout = settings.UPLOAD_TIMEOUT_S
    fallback_attempts = settings.UPLOAD_FALLBACK_ATTEMPTS
    return [
        PinataProvider(
            http,
            settings.PINATA_API_KEY,
            settings.PINATA_SECRET_KEY,
            max_attempts=settings.UPLOAD_PRIMARY_ATTEMPTS,
            timeout_s=timeout,
        ),
        NftStorageProvider(http, settings.NFT_STORAGE_TOKEN, max_attempts=fallback_attempts, timeout_s=max(5.0, timeout - 5)),
        Web3StorageProvider(http, settings.WEB3_STORAGE_TOKEN, max_attempts=fallback_attempts, timeout_s=max(5.0, timeout - 10)),
        StorachaProvider(http, settings.STORACHA_TOKEN, max_attempts=fallback_attempts, timeout_s=max(5.0, timeout - 10)),
    ]
