"""Field codec: native Python field values <-> wire field objects.

Every supported value belongs to exactly one `FieldKind`, either as a scalar or
as a homogeneous list. Encoding and decoding are table driven; both tables must
cover every kind, which is checked at import time so a new kind cannot be added
without teaching both directions about it.

Wire form (outgoing):

    {"value": <scalar|object|array>, "type": "<KIND>" | "<KIND>_LIST"}

Incoming fields use `type` when the server sends it and fall back to inferring
the kind from the value's JSON shape.

Assets cannot be encoded from the native value alone: the outgoing value is the
upload receipt obtained by the asset upload phase, looked up by field name. A
field with no matching receipt is left out of the outgoing record and a warning
is logged; the rest of the record is still encoded.
"""
from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import MalformedFieldError, UnsupportedFieldError
from .models.records import Asset, AssetReceipt, Record, Reference, ReferenceAction, ZoneID
from .models.wire import WireField, WireRecord, WireTimestamp, WireZoneID

logger = logging.getLogger(__name__)

ASSET_URL_PLACEHOLDER = "${f}"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)
# Server tag for an empty list whose element type it does not track.
_UNKNOWN_LIST = "UNKNOWN_LIST"


class FieldKind(str, Enum):
    INT64 = "INT64"
    DOUBLE = "DOUBLE"
    STRING = "STRING"
    BYTES = "BYTES"
    TIMESTAMP = "TIMESTAMP"
    ASSET = "ASSETID"
    REFERENCE = "REFERENCE"

    def tag(self, is_list: bool) -> str:
        return f"{self.value}_LIST" if is_list else self.value


def datetime_to_ms(value: datetime) -> int:
    """Millisecond epoch; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // _ONE_MS


def ms_to_datetime(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


def resolve_download_url(template: str, checksum: str) -> str:
    return template.replace(ASSET_URL_PLACEHOLDER, checksum)


def encode_zone(zone_id: Optional[ZoneID]) -> Optional[WireZoneID]:
    """Wire form of a zone, or None to let the server use its default zone.

    Every request body that names records (token, modify, lookup, query) is
    built through this so one client always addresses one zone.
    """
    if zone_id is None:
        return None
    return WireZoneID(zoneName=zone_id.zone_name, ownerName=zone_id.owner_name)


# ---------------------------------------------------------------- classification


def _scalar_kind(value: Any) -> Optional[FieldKind]:
    # bool is an int subclass but has no wire type of its own; it would decode
    # back as an int.
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return FieldKind.INT64
    if isinstance(value, float):
        return FieldKind.DOUBLE
    if isinstance(value, str):
        return FieldKind.STRING
    if isinstance(value, (bytes, bytearray)):
        return FieldKind.BYTES
    if isinstance(value, datetime):
        return FieldKind.TIMESTAMP
    if isinstance(value, Asset):
        return FieldKind.ASSET
    if isinstance(value, Reference):
        return FieldKind.REFERENCE
    return None


def classify(value: Any) -> Optional[Tuple[FieldKind, bool]]:
    """Return `(kind, is_list)` for a native value, or None when unsupported."""
    if isinstance(value, (list, tuple)):
        if not value:
            return FieldKind.STRING, True
        kinds = {_scalar_kind(v) for v in value}
        if None in kinds:
            return None
        if kinds == {FieldKind.INT64, FieldKind.DOUBLE}:
            return FieldKind.DOUBLE, True
        if len(kinds) != 1:
            return None
        return kinds.pop(), True  # type: ignore[return-value]
    kind = _scalar_kind(value)
    if kind is None:
        return None
    return kind, False


def _type_name(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        inner = sorted({type(v).__name__ for v in value})
        return f"{type(value).__name__}[{', '.join(inner)}]"
    return type(value).__name__


# ---------------------------------------------------------------- element codecs


def _encode_bytes(value: bytes) -> str:
    return base64.b64encode(bytes(value)).decode("ascii")


def _encode_reference(value: Reference) -> Dict[str, Any]:
    return {"recordName": value.record_name, "action": value.action.value}


def _encode_receipt(value: AssetReceipt) -> Dict[str, Any]:
    out: Dict[str, Any] = dict(value.extra)
    out["fileChecksum"] = value.file_checksum
    out["receipt"] = value.receipt
    if value.size is not None:
        out["size"] = value.size
    if value.wrapping_key is not None:
        out["wrappingKey"] = value.wrapping_key
    if value.reference_checksum is not None:
        out["referenceChecksum"] = value.reference_checksum
    return out


def _decode_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected integer, got {type(value).__name__}")
    return value


def _decode_double(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"expected number, got {type(value).__name__}")
    return float(value)


def _decode_string(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(f"expected string, got {type(value).__name__}")
    return value


def _decode_bytes(value: Any) -> bytes:
    if not isinstance(value, str):
        raise TypeError(f"expected base64 string, got {type(value).__name__}")
    return base64.b64decode(value, validate=True)


def _decode_timestamp(value: Any) -> datetime:
    return ms_to_datetime(_decode_int(value))


def _decode_reference(value: Any) -> Reference:
    if not isinstance(value, dict) or not isinstance(value.get("recordName"), str):
        raise TypeError("reference without recordName")
    raw_action = value.get("action") or ReferenceAction.NONE.value
    try:
        action = ReferenceAction(raw_action)
    except ValueError:
        # VALIDATE (and any future action) has no client-side behavior.
        logger.debug("reference action %s decoded as NONE", raw_action)
        action = ReferenceAction.NONE
    return Reference(record_name=value["recordName"], action=action)


def _decode_asset(value: Any) -> Asset:
    if not isinstance(value, dict):
        raise TypeError(f"expected asset object, got {type(value).__name__}")
    checksum = value.get("fileChecksum")
    template = value.get("downloadURL")
    # The template is only usable once the checksum fills its placeholder.
    url = None
    if template and checksum:
        url = resolve_download_url(template, checksum)
    return Asset(download_url=url, file_checksum=checksum, size=value.get("size"))


_ENCODERS: Dict[FieldKind, Callable[[Any], Any]] = {
    FieldKind.INT64: int,
    FieldKind.DOUBLE: float,
    FieldKind.STRING: str,
    FieldKind.BYTES: _encode_bytes,
    FieldKind.TIMESTAMP: datetime_to_ms,
    FieldKind.ASSET: _encode_receipt,
    FieldKind.REFERENCE: _encode_reference,
}

_DECODERS: Dict[FieldKind, Callable[[Any], Any]] = {
    FieldKind.INT64: _decode_int,
    FieldKind.DOUBLE: _decode_double,
    FieldKind.STRING: _decode_string,
    FieldKind.BYTES: _decode_bytes,
    FieldKind.TIMESTAMP: _decode_timestamp,
    FieldKind.ASSET: _decode_asset,
    FieldKind.REFERENCE: _decode_reference,
}

_uncovered = (set(FieldKind) - set(_ENCODERS)) | (set(FieldKind) - set(_DECODERS))
if _uncovered:  # pragma: no cover - import-time guard
    raise RuntimeError(f"codec tables missing kinds: {sorted(k.value for k in _uncovered)}")


# ---------------------------------------------------------------- encode


def encode_value(field_name: str, value: Any) -> WireField:
    """Encode a non-asset value (record fields and query literals)."""
    classified = classify(value)
    if classified is None:
        raise UnsupportedFieldError(field_name, _type_name(value))
    kind, is_list = classified
    if kind is FieldKind.ASSET:
        raise UnsupportedFieldError(field_name, "Asset (requires an upload receipt)")
    encoder = _ENCODERS[kind]
    wire_value = [encoder(v) for v in value] if is_list else encoder(value)
    return WireField(value=wire_value, type=kind.tag(is_list))


def _encode_asset_field(
    field_name: str, value: Any, is_list: bool, receipts: Sequence[AssetReceipt]
) -> Optional[WireField]:
    encoder = _ENCODERS[FieldKind.ASSET]
    if not is_list:
        if not receipts:
            logger.warning("no upload receipt for asset field %r; field omitted", field_name)
            return None
        return WireField(value=encoder(receipts[0]), type=FieldKind.ASSET.tag(False))
    if len(receipts) != len(value):
        logger.warning(
            "asset list field %r has %d entries but %d upload receipts; field omitted",
            field_name,
            len(value),
            len(receipts),
        )
        return None
    return WireField(value=[encoder(r) for r in receipts], type=FieldKind.ASSET.tag(True))


def check_encodable(fields: Mapping[str, Any]) -> None:
    """Raise `UnsupportedFieldError` for the first value no kind accepts."""
    for name, value in fields.items():
        if classify(value) is None:
            raise UnsupportedFieldError(name, _type_name(value))


def encode_fields(
    fields: Mapping[str, Any],
    receipts: Optional[Mapping[str, Sequence[AssetReceipt]]] = None,
) -> Dict[str, WireField]:
    """Encode a record's field mapping.

    Asset fields take their wire value from `receipts`; an asset field with no
    (or a mismatched number of) receipts is omitted with a warning.

    Args:
        fields: Field name to native value.
        receipts: Field name to upload receipts, in list order for asset
            lists.

    Returns:
        Field name to wire field, for every field that could be encoded.

    Raises:
        UnsupportedFieldError: For the first value of an unknown type; no
            partial result is returned in that case.
    """
    receipts = receipts or {}
    out: Dict[str, WireField] = {}
    for name, value in fields.items():
        classified = classify(value)
        if classified is None:
            raise UnsupportedFieldError(name, _type_name(value))
        kind, is_list = classified
        if kind is FieldKind.ASSET:
            wire = _encode_asset_field(name, value, is_list, receipts.get(name, ()))
            if wire is not None:
                out[name] = wire
            continue
        out[name] = encode_value(name, value)
    return out


def encode_record(
    record: Record, receipts: Optional[Mapping[str, Sequence[AssetReceipt]]] = None
) -> WireRecord:
    return WireRecord(
        recordName=record.record_name,
        recordType=record.record_type,
        recordChangeTag=record.change_tag,
        fields=encode_fields(record.fields, receipts),
    )


# ---------------------------------------------------------------- decode


def _kind_from_tag(field_name: str, tag: str) -> Tuple[FieldKind, bool]:
    is_list = tag.endswith("_LIST")
    base = tag[: -len("_LIST")] if is_list else tag
    try:
        return FieldKind(base), is_list
    except ValueError:
        raise MalformedFieldError(field_name, f"unknown field type tag {tag!r}") from None


def _infer_scalar(field_name: str, value: Any) -> FieldKind:
    if isinstance(value, bool) or value is None:
        raise MalformedFieldError(field_name, f"unrecognized value {value!r}")
    if isinstance(value, str):
        return FieldKind.STRING
    if isinstance(value, int):
        return FieldKind.INT64
    if isinstance(value, float):
        return FieldKind.DOUBLE
    if isinstance(value, dict):
        if "recordName" in value:
            return FieldKind.REFERENCE
        if "fileChecksum" in value or "downloadURL" in value:
            return FieldKind.ASSET
    raise MalformedFieldError(field_name, f"unrecognized value shape {type(value).__name__}")


def _infer_kind(field_name: str, value: Any) -> Tuple[FieldKind, bool]:
    if isinstance(value, list):
        if not value:
            return FieldKind.STRING, True
        return _infer_scalar(field_name, value[0]), True
    return _infer_scalar(field_name, value), False


def decode_field(field_name: str, wire: WireField) -> Any:
    """Decode one incoming field into its native value.

    Args:
        field_name: Used only for error messages.
        wire: The field as received; `type` may be absent.

    Returns:
        The native value, or a list of them for `_LIST` kinds.

    Raises:
        MalformedFieldError: Unknown type tag, or a value that does not
            match its kind.
    """
    value = wire.value
    if wire.type == _UNKNOWN_LIST:
        if value in (None, []):
            return []
        raise MalformedFieldError(field_name, "non-empty UNKNOWN_LIST")
    if wire.type:
        kind, is_list = _kind_from_tag(field_name, wire.type)
    else:
        kind, is_list = _infer_kind(field_name, value)
    decoder = _DECODERS[kind]
    try:
        if is_list:
            if not isinstance(value, list):
                raise TypeError(f"expected list for {kind.tag(True)}")
            return [decoder(v) for v in value]
        return decoder(value)
    except (TypeError, ValueError, binascii.Error) as e:
        raise MalformedFieldError(field_name, str(e)) from e


def decode_fields(fields: Mapping[str, WireField]) -> Dict[str, Any]:
    return {name: decode_field(name, wire) for name, wire in fields.items()}


def _timestamp(ts: Optional[WireTimestamp]) -> Optional[datetime]:
    if ts is None or ts.timestamp is None:
        return None
    return ms_to_datetime(ts.timestamp)


def decode_record(wire: WireRecord) -> Record:
    """Rebuild a `Record` from a response entry.

    `recordType` and `created.timestamp` are required; without them the entry
    cannot be reconstructed and `MalformedFieldError` is raised for it.
    """
    if not wire.recordType:
        raise MalformedFieldError("recordType", f"missing in record {wire.recordName!r}")
    created = _timestamp(wire.created)
    if created is None:
        raise MalformedFieldError("created", f"missing timestamp in record {wire.recordName!r}")
    return Record(
        wire.recordType,
        wire.recordName,
        fields=decode_fields(wire.fields or {}),
        change_tag=wire.recordChangeTag,
        created=created,
        modified=_timestamp(wire.modified),
        deleted=bool(wire.deleted),
    )


def receipts_by_field(pairs: Sequence[Tuple[str, AssetReceipt]]) -> Dict[str, List[AssetReceipt]]:
    """Group `(field_name, receipt)` pairs preserving upload order per field."""
    grouped: Dict[str, List[AssetReceipt]] = {}
    for name, receipt in pairs:
        grouped.setdefault(name, []).append(receipt)
    return grouped


__all__ = [
    "ASSET_URL_PLACEHOLDER",
    "FieldKind",
    "check_encodable",
    "classify",
    "datetime_to_ms",
    "decode_field",
    "decode_fields",
    "decode_record",
    "encode_fields",
    "encode_record",
    "encode_value",
    "encode_zone",
    "ms_to_datetime",
    "receipts_by_field",
    "resolve_download_url",
]
