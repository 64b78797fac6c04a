"""Builds the batched request bodies for record mutations and lookups.

One invocation produces exactly one request body, whatever the batch size.
Save operations default per record: `create` when the record has never been
saved (no creation timestamp), `update` otherwise. Deletions send only the
record identity and default to `forceDelete`.
"""
from __future__ import annotations

from enum import Enum
from typing import Mapping, Optional, Sequence, Union

from .codec import encode_record, encode_zone
from .models.records import AssetReceipt, Record, ZoneID
from .models.wire import (
    LookupRecord,
    LookupRecordsRequest,
    ModifyRecordsRequest,
    RecordOperation,
    WireRecord,
)

# record name -> field name -> receipts in upload order
ReceiptMap = Mapping[str, Mapping[str, Sequence[AssetReceipt]]]


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    FORCE_UPDATE = "forceUpdate"
    REPLACE = "replace"
    FORCE_REPLACE = "forceReplace"
    DELETE = "delete"
    FORCE_DELETE = "forceDelete"

    @classmethod
    def lookup(cls, value: Union["OperationType", str]) -> "OperationType":
        if isinstance(value, OperationType):
            return value
        for member in cls:
            if value in (member.value, member.name, member.name.lower()):
                return member
        raise ValueError(f"unknown operation type {value!r}")

    @property
    def is_delete(self) -> bool:
        return self in (OperationType.DELETE, OperationType.FORCE_DELETE)


def default_operation(record: Record) -> OperationType:
    return OperationType.CREATE if record.created is None else OperationType.UPDATE


def build_save_operation(
    record: Record,
    operation_type: Optional[OperationType] = None,
    receipts: Optional[Mapping[str, Sequence[AssetReceipt]]] = None,
) -> RecordOperation:
    op = operation_type or default_operation(record)
    if op.is_delete:
        raise ValueError(f"{op.value} is not a save operation")
    return RecordOperation(operationType=op.value, record=encode_record(record, receipts))


def build_modify_request(
    records: Sequence[Record],
    operation_type: Optional[Union[OperationType, str]] = None,
    receipts: Optional[ReceiptMap] = None,
    *,
    atomic: Optional[bool] = None,
    desired_keys: Optional[Sequence[str]] = None,
    zone_id: Optional[ZoneID] = None,
) -> ModifyRecordsRequest:
    """Encode every record into one modify request.

    Encoding errors (`UnsupportedFieldError`) propagate before any request is
    made.

    Args:
        records: Records to save, in request order.
        operation_type: Applied to every record; None picks `create` or
            `update` per record.
        receipts: Upload receipts by record name, then field name.
        atomic: Ask the server to apply all operations or none.
        desired_keys: Restrict fields echoed back in the response.
        zone_id: Zone the records live in; None means the default zone.

    Returns:
        The request body.
    """
    op = OperationType.lookup(operation_type) if operation_type is not None else None
    receipts = receipts or {}
    operations = [
        build_save_operation(record, op, receipts.get(record.record_name)) for record in records
    ]
    return ModifyRecordsRequest(
        operations=operations,
        atomic=atomic,
        desiredKeys=list(desired_keys) if desired_keys is not None else None,
        zoneID=encode_zone(zone_id),
    )


def build_delete_request(
    targets: Sequence[Union[str, Record]],
    operation_type: Optional[Union[OperationType, str]] = None,
    *,
    zone_id: Optional[ZoneID] = None,
) -> ModifyRecordsRequest:
    """Build one modify request deleting every target.

    Args:
        targets: Record names, or records (their change tag is sent along
            so a plain `delete` can detect conflicts).
        operation_type: `delete` or `forceDelete` (the default).
        zone_id: Zone the records live in; None means the default zone.

    Returns:
        The request body, carrying only record identities.

    Raises:
        ValueError: If `operation_type` is not a delete operation.
    """
    op = OperationType.lookup(operation_type) if operation_type is not None else OperationType.FORCE_DELETE
    if not op.is_delete:
        raise ValueError(f"{op.value} is not a delete operation")
    operations = []
    for target in targets:
        if isinstance(target, Record):
            wire = WireRecord(recordName=target.record_name, recordChangeTag=target.change_tag)
        else:
            wire = WireRecord(recordName=target)
        operations.append(RecordOperation(operationType=op.value, record=wire))
    return ModifyRecordsRequest(operations=operations, zoneID=encode_zone(zone_id))


def build_lookup_request(
    record_names: Sequence[str],
    desired_keys: Optional[Sequence[str]] = None,
    *,
    zone_id: Optional[ZoneID] = None,
) -> LookupRecordsRequest:
    """One lookup request for all names, in the given order."""
    return LookupRecordsRequest(
        records=[LookupRecord(recordName=name) for name in record_names],
        desiredKeys=list(desired_keys) if desired_keys is not None else None,
        zoneID=encode_zone(zone_id),
    )


__all__ = [
    "OperationType",
    "ReceiptMap",
    "build_delete_request",
    "build_lookup_request",
    "build_modify_request",
    "build_save_operation",
    "default_operation",
]
