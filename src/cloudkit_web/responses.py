"""Response envelope parsing and failure classification.

Order of checks for every service response:

1. A top-level structured error (`serverErrorCode` at the root of the JSON
   body) is authoritative regardless of HTTP status -> `ServerError`.
2. Otherwise the status must be 200; anything else -> `TransportError`.
3. The body is parsed into record entries. Each entry either carries an
   item-local `serverErrorCode` (-> `UnknownItemError` for `NOT_FOUND`,
   `InternalItemError` for anything else) or decodes into a `Record`.

Per-entry results keep the server's order and never fail the whole call.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .codec import decode_record
from .errors import (
    CloudKitError,
    InternalItemError,
    ItemError,
    MalformedFieldError,
    ServerError,
    TransportError,
    UnknownItemError,
)
from .models.records import Record
from .models.wire import ErrorEnvelope, RecordsResponse, WireRecord

logger = logging.getLogger(__name__)

NOT_FOUND = "NOT_FOUND"
_BODY_EXCERPT = 500


@dataclass
class ItemResult:
    """Outcome for one record of a batched call."""

    record_name: str
    record: Optional[Record] = None
    error: Optional[CloudKitError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Optional[Record]:
        """Return the record (None for deletions) or raise the item's error."""
        if self.error is not None:
            raise self.error
        return self.record


def _excerpt(body: bytes) -> str:
    return body[:_BODY_EXCERPT].decode("utf-8", errors="replace")


def parse_error_envelope(body: bytes) -> Optional[ErrorEnvelope]:
    try:
        parsed = json.loads(body) if body else None
    except ValueError:
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("serverErrorCode"), str):
        return None
    try:
        return ErrorEnvelope.model_validate(parsed)
    except ValidationError:
        return None


def check_response(status_code: int, body: bytes) -> Dict[str, Any]:
    """Validate a raw response and return its decoded JSON object."""
    envelope = parse_error_envelope(body)
    if envelope is not None:
        raise ServerError(
            envelope.serverErrorCode,
            envelope.reason,
            status_code=status_code,
            uuid=envelope.uuid,
            retry_after=envelope.retryAfter,
        )
    if status_code != 200:
        raise TransportError(
            f"unexpected HTTP status {status_code}",
            status_code=status_code,
            body=_excerpt(body),
        )
    try:
        parsed = json.loads(body) if body else {}
    except ValueError as e:
        raise TransportError(
            f"response is not valid JSON: {e}", status_code=status_code, body=_excerpt(body)
        ) from e
    if not isinstance(parsed, dict):
        raise TransportError(
            "response JSON is not an object", status_code=status_code, body=_excerpt(body)
        )
    return parsed


def item_error(entry: WireRecord) -> ItemError:
    code = entry.serverErrorCode or ""
    if code == NOT_FOUND:
        return UnknownItemError(entry.recordName, code, entry.reason)
    return InternalItemError(entry.recordName, code, entry.reason)


def parse_records_response(payload: Dict[str, Any]) -> RecordsResponse:
    try:
        return RecordsResponse.model_validate(payload)
    except ValidationError as e:
        raise TransportError(f"malformed records response: {e}") from e


def map_record_entries(entries: List[WireRecord]) -> List[ItemResult]:
    results: List[ItemResult] = []
    for entry in entries:
        if entry.serverErrorCode:
            results.append(ItemResult(entry.recordName, error=item_error(entry)))
            continue
        try:
            record = decode_record(entry)
        except MalformedFieldError as e:
            logger.warning("record %s could not be decoded: %s", entry.recordName, e)
            results.append(ItemResult(entry.recordName, error=e))
            continue
        results.append(ItemResult(entry.recordName, record=record))
    return results


def map_record_results(payload: Dict[str, Any]) -> List[ItemResult]:
    return map_record_entries(parse_records_response(payload).records)


def map_delete_results(payload: Dict[str, Any]) -> List[ItemResult]:
    """Deletion entries carry only the record name (and `deleted`), nothing to decode."""
    results: List[ItemResult] = []
    for entry in parse_records_response(payload).records:
        if entry.serverErrorCode:
            results.append(ItemResult(entry.recordName, error=item_error(entry)))
        else:
            results.append(ItemResult(entry.recordName))
    return results


__all__ = [
    "ItemResult",
    "NOT_FOUND",
    "check_response",
    "item_error",
    "map_delete_results",
    "map_record_entries",
    "map_record_results",
    "parse_error_envelope",
    "parse_records_response",
]
