"""Asset upload orchestration (token request, then multipart upload).

Saving a record whose fields hold local `Asset` files runs in three phases:

1. Token phase: every uploadable asset slot across all records (one slot per
   single-asset field, one per entry of an asset list) is sent in ONE signed
   `assets/upload` request. The response holds one single-use upload URL per
   slot.
2. Transfer phase: each token is matched to the next unused local source for
   its (record, field) pair, so list entries never reuse a source, and the
   file bytes are POSTed as multipart form data to the token URL without
   signature headers. Transfers run concurrently. Each success yields an
   `AssetReceipt`.
3. Finalize phase (in `database`): receipts are handed to the field codec and
   the record operation builder, and the signed modify request is sent.

A transfer failure is charged to the record it belongs to: that record is not
finalized and reports the transfer error, other records carry on.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .codec import encode_zone
from .errors import AssetUploadError, CloudKitError, TransportError
from .models.records import Asset, AssetReceipt, Record, ZoneID
from .models.wire import (
    AssetToken,
    AssetTokenRequest,
    AssetTokenResponse,
    AssetTokenSlot,
    AssetUploadResponse,
)
from .transport import CloudKitTransport

logger = logging.getLogger(__name__)

SourceKey = Tuple[str, str]  # (record name, field name)


@dataclass
class UploadSlot:
    record_name: str
    record_type: str
    field_name: str
    index: int
    asset: Asset


@dataclass
class UploadOutcome:
    """Receipts for one record (field -> receipts in list order), or its failure."""

    receipts: Dict[str, List[AssetReceipt]] = field(default_factory=dict)
    error: Optional[CloudKitError] = None


def collect_upload_slots(records: Sequence[Record]) -> List[UploadSlot]:
    slots: List[UploadSlot] = []
    for record in records:
        for name, value in record.fields.items():
            if isinstance(value, Asset):
                if value.uploadable:
                    slots.append(UploadSlot(record.record_name, record.record_type, name, 0, value))
            elif isinstance(value, (list, tuple)) and value and all(isinstance(v, Asset) for v in value):
                for index, asset in enumerate(value):
                    if asset.uploadable:
                        slots.append(UploadSlot(record.record_name, record.record_type, name, index, asset))
    return slots


def receipt_from_response(payload: dict) -> AssetReceipt:
    try:
        single = AssetUploadResponse.model_validate(payload).singleFile
    except ValidationError as e:
        raise TransportError(f"malformed asset upload response: {e}") from e
    return AssetReceipt(
        file_checksum=single.fileChecksum,
        receipt=single.receipt,
        size=single.size,
        wrapping_key=single.wrappingKey,
        reference_checksum=single.referenceChecksum,
    )


class _SourceTracker:
    """Hands out each slot's local source at most once, per (record, field)."""

    def __init__(self, slots: Sequence[UploadSlot]) -> None:
        self._pending: Dict[SourceKey, List[UploadSlot]] = {}
        for slot in slots:
            self._pending.setdefault((slot.record_name, slot.field_name), []).append(slot)

    def next_for(self, token: AssetToken) -> Optional[UploadSlot]:
        if token.recordName:
            keys = [(token.recordName, token.fieldName)]
        else:
            keys = [k for k in self._pending if k[1] == token.fieldName]
        for key in keys:
            queue = self._pending.get(key)
            if queue:
                return queue.pop(0)
        return None


class AssetUploader:
    def __init__(self, transport: CloudKitTransport, path_for: Callable[[str], str]) -> None:
        self.transport = transport
        self._path_for = path_for

    async def request_tokens(
        self, slots: Sequence[UploadSlot], zone_id: Optional[ZoneID] = None
    ) -> List[AssetToken]:
        request = AssetTokenRequest(
            tokens=[
                AssetTokenSlot(recordName=s.record_name, recordType=s.record_type, fieldName=s.field_name)
                for s in slots
            ],
            zoneID=encode_zone(zone_id),
        )
        payload = await self.transport.post_signed(self._path_for("assets/upload"), request)
        try:
            tokens = AssetTokenResponse.model_validate(payload).tokens
        except ValidationError as e:
            raise TransportError(f"malformed asset token response: {e}") from e
        if len(tokens) != len(slots):
            logger.warning("requested %d upload tokens, received %d", len(slots), len(tokens))
        return tokens

    async def transfer(self, token: AssetToken, slot: UploadSlot) -> AssetReceipt:
        path = slot.asset.file_path
        if path is None:
            raise AssetUploadError(slot.record_name, slot.field_name, "asset has no local file")
        try:
            data = path.read_bytes()
        except OSError as e:
            raise AssetUploadError(slot.record_name, slot.field_name, f"cannot read {path}: {e}") from e
        payload = await self.transport.post_multipart(token.url, path.name, data)
        receipt = receipt_from_response(payload)
        logger.debug(
            "asset uploaded record=%s field=%s index=%d checksum=%s",
            slot.record_name,
            slot.field_name,
            slot.index,
            receipt.file_checksum,
        )
        return receipt

    async def upload(
        self, records: Sequence[Record], zone_id: Optional[ZoneID] = None
    ) -> Dict[str, UploadOutcome]:
        """Run the token and transfer phases for every record.

        Returns an outcome for each record that had something to upload.
        Token-phase failures raise: without tokens no record can proceed.
        """
        slots = collect_upload_slots(records)
        if not slots:
            return {}
        tokens = await self.request_tokens(slots, zone_id)

        outcomes: Dict[str, UploadOutcome] = {s.record_name: UploadOutcome() for s in slots}

        def fail(record_name: str, error: CloudKitError) -> None:
            outcome = outcomes[record_name]
            if outcome.error is None:
                logger.warning("asset upload failed for record %s: %s", record_name, error)
                outcome.error = error

        tracker = _SourceTracker(slots)
        jobs: List[Tuple[UploadSlot, AssetToken]] = []
        for token in tokens:
            slot = tracker.next_for(token)
            if slot is None:
                if token.recordName in outcomes:
                    fail(
                        token.recordName,
                        AssetUploadError(token.recordName, token.fieldName, "no unused local source for upload token"),
                    )
                else:
                    logger.warning("upload token for unknown field %s.%s skipped", token.recordName, token.fieldName)
                continue
            jobs.append((slot, token))
        matched = {id(slot) for slot, _ in jobs}
        for slot in slots:
            if id(slot) not in matched:
                fail(slot.record_name, AssetUploadError(slot.record_name, slot.field_name, "no upload token issued"))
        jobs = [(slot, token) for slot, token in jobs if outcomes[slot.record_name].error is None]

        results = await asyncio.gather(
            *(self.transfer(token, slot) for slot, token in jobs), return_exceptions=True
        )

        placed: Dict[SourceKey, List[Tuple[int, AssetReceipt]]] = {}
        for (slot, _token), result in zip(jobs, results):
            if isinstance(result, CloudKitError):
                fail(slot.record_name, result)
                continue
            if isinstance(result, BaseException):
                raise result
            placed.setdefault((slot.record_name, slot.field_name), []).append((slot.index, result))
        for (record_name, field_name), entries in placed.items():
            entries.sort(key=lambda pair: pair[0])
            outcomes[record_name].receipts[field_name] = [receipt for _, receipt in entries]
        return outcomes


__all__ = [
    "AssetUploader",
    "UploadOutcome",
    "UploadSlot",
    "collect_upload_slots",
    "receipt_from_response",
]
