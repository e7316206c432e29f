"""
Listing Status Monitor
======================
Best-effort tracking of an asset's appearance on the listing index.

- submit(): hand the asset to the listing submission capability
- monitor(): poll the index every `poll_interval_s` (30s) for up to
  `timeout_s` (5 min), stopping at the first "listed" observation

Poll failures are logged and the next poll goes ahead. Nothing here can
fail asset creation: the worst outcome is a ListingRecord with status
"timeout". Cancellation stops polling within one interval.
"""

import asyncio
import time
from typing import Optional

from mintforge.shared.infrastructure.listing_client import ListingIndex, ListingSubmitter
from mintforge.shared.models.listing import ListingRecord, ListingStatus
from mintforge.shared.schemas.manifest import AssetManifest
from mintforge.shared.system.cancellation import CancellationToken
from mintforge.shared.system.errors import Cancelled, ListingUnavailable
from mintforge.shared.system.logging import Logger


class ListingStatusMonitor:
    """Advisory listing submission + polling."""

    def __init__(
        self,
        index: ListingIndex,
        submitter: Optional[ListingSubmitter] = None,
        token: Optional[CancellationToken] = None,
        poll_interval_s: float = 30.0,
        timeout_s: float = 300.0,
    ):
        self.index = index
        self.submitter = submitter
        self._token = token
        self.poll_interval_s = poll_interval_s
        self.timeout_s = timeout_s
        self.record: Optional[ListingRecord] = None

    def _record_for(self, asset_id: str) -> ListingRecord:
        if self.record is None or self.record.asset_id != asset_id:
            self.record = ListingRecord(asset_id=asset_id)
        return self.record

    async def submit(self, asset_id: str, manifest: AssetManifest, metadata_uri: Optional[str] = None) -> str:
        """
        Submit the asset for listing.

        Raises:
            ListingUnavailable: no submitter configured or the submission failed
        """
        if self.submitter is None:
            raise ListingUnavailable("No listing submitter configured")

        record = self._record_for(asset_id)
        submission_id = await self.submitter.submit(asset_id, manifest, metadata_uri)
        record.submission_id = submission_id
        Logger.info(f"[LISTING] Submitted {manifest.symbol} ({submission_id})")
        return submission_id

    async def _sleep(self, seconds: float) -> None:
        if self._token:
            await self._token.sleep(seconds)
        else:
            await asyncio.sleep(seconds)

    async def monitor(self, asset_id: str, timeout_s: Optional[float] = None) -> ListingRecord:
        """
        Poll until listed or `timeout_s` elapses.

        Returns a record with status "listed" or "timeout". On cancellation
        the record is marked "cancelled" and Cancelled is raised.
        """
        timeout = timeout_s if timeout_s is not None else self.timeout_s
        record = self._record_for(asset_id)
        record.status = ListingStatus.PENDING
        deadline = time.monotonic() + timeout

        Logger.info(f"[LISTING] Monitoring {asset_id[:8]}... every {self.poll_interval_s:.0f}s for {timeout:.0f}s")
        try:
            while True:
                if self._token:
                    self._token.raise_if_cancelled()

                record.poll_count += 1
                try:
                    observation = await self.index.observe(asset_id)
                except ListingUnavailable as e:
                    record.last_error = e.cause
                    Logger.warning(f"[LISTING] Poll {record.poll_count} failed: {e.cause}")
                else:
                    if observation.listed:
                        record.listed = True
                        record.rating = observation.rating
                        record.url = observation.url
                        record.status = ListingStatus.LISTED
                        Logger.success(f"[LISTING] Listed after {record.poll_count} poll(s): {observation.url}")
                        return record

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                await self._sleep(min(self.poll_interval_s, remaining))
        except Cancelled:
            record.status = ListingStatus.CANCELLED
            raise

        record.status = ListingStatus.TIMEOUT
        Logger.info(f"[LISTING] Not listed within {timeout:.0f}s ({record.poll_count} polls)")
        return record
