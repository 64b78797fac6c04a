"""Pydantic models for the JSON bodies sent to and received from the record service.

Field names keep the service's camelCase spelling so that `model_dump` output
can be sent as-is and responses validate without aliases. Every outgoing body
is serialized with `exclude_none=True`; the service treats absent and null
keys differently for several request types.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WireField(BaseModel):
    """A single record field: `{"value": ..., "type": ...}`."""

    value: Any = None
    type: Optional[str] = None


class WireTimestamp(BaseModel):
    timestamp: Optional[int] = None
    userRecordName: Optional[str] = None
    deviceID: Optional[str] = None


class WireZoneID(BaseModel):
    zoneName: str
    ownerName: Optional[str] = None


class WireRecord(BaseModel):
    """Record dictionary as it appears in request operations and responses.

    Deletion requests send only `recordName` (plus `recordChangeTag` for
    non-forced deletes). Responses add `created`, and per-item failures add
    `serverErrorCode` / `reason` in place of the record contents.
    """

    recordName: str
    recordType: Optional[str] = None
    recordChangeTag: Optional[str] = None
    fields: Optional[Dict[str, WireField]] = None
    created: Optional[WireTimestamp] = None
    modified: Optional[WireTimestamp] = None
    deleted: Optional[bool] = None
    serverErrorCode: Optional[str] = None
    reason: Optional[str] = None


class RecordOperation(BaseModel):
    operationType: str
    record: WireRecord
    desiredKeys: Optional[List[str]] = None


class ModifyRecordsRequest(BaseModel):
    operations: List[RecordOperation]
    atomic: Optional[bool] = None
    desiredKeys: Optional[List[str]] = None
    zoneID: Optional[WireZoneID] = None


class LookupRecord(BaseModel):
    recordName: str


class LookupRecordsRequest(BaseModel):
    records: List[LookupRecord]
    desiredKeys: Optional[List[str]] = None
    zoneID: Optional[WireZoneID] = None


class WireFilter(BaseModel):
    comparator: str
    fieldName: str
    fieldValue: WireField
    distance: Optional[float] = None


class WireSort(BaseModel):
    fieldName: str
    ascending: bool = True


class WireQuery(BaseModel):
    recordType: str
    filterBy: Optional[List[WireFilter]] = None
    sortBy: Optional[List[WireSort]] = None


class QueryRecordsRequest(BaseModel):
    """Body of both the first-page and resume query requests.

    A resume request is the same body with `continuationMarker` set to the
    marker returned by the previous page.
    """

    query: WireQuery
    zoneID: Optional[WireZoneID] = None
    resultsLimit: Optional[int] = None
    desiredKeys: Optional[List[str]] = None
    continuationMarker: Optional[str] = None


class RecordsResponse(BaseModel):
    records: List[WireRecord] = Field(default_factory=list)
    continuationMarker: Optional[str] = None


class AssetTokenSlot(BaseModel):
    recordName: str
    recordType: str
    fieldName: str


class AssetTokenRequest(BaseModel):
    tokens: List[AssetTokenSlot]
    zoneID: Optional[WireZoneID] = None


class AssetToken(BaseModel):
    recordName: Optional[str] = None
    fieldName: str
    url: str


class AssetTokenResponse(BaseModel):
    tokens: List[AssetToken] = Field(default_factory=list)


class UploadedFile(BaseModel):
    """`singleFile` dictionary returned by an upload URL."""

    fileChecksum: str
    receipt: str
    size: Optional[int] = None
    wrappingKey: Optional[str] = None
    referenceChecksum: Optional[str] = None


class AssetUploadResponse(BaseModel):
    singleFile: UploadedFile


class ErrorEnvelope(BaseModel):
    """Top-level structured failure. Its presence fails the whole operation."""

    serverErrorCode: str
    reason: Optional[str] = None
    uuid: Optional[str] = None
    retryAfter: Optional[int] = None
    redirectURL: Optional[str] = None
