"""Async client for a cloud record database web service.

Records are saved, fetched, deleted and queried in batches over signed HTTPS
requests; file-backed fields are uploaded in a separate token/transfer phase
before the record itself is written. `DatabaseClient` is the entry point; the
CLI lives in `__main__` (`python -m cloudkit_web`).
"""

from .database import DatabaseClient, DatabaseScope, Environment
from .errors import (
    AssetUploadError,
    CloudKitError,
    FieldCodecError,
    InternalItemError,
    ItemError,
    MalformedFieldError,
    QueryError,
    ServerError,
    SigningError,
    TransportError,
    UnknownItemError,
    UnsupportedFieldError,
)
from .models.records import Asset, AssetReceipt, Record, Reference, ReferenceAction, ZoneID
from .operations import OperationType
from .query import And, Comparator, Comparison, Cursor, Not, Query, QueryPage, SortDescriptor, parse_predicate
from .responses import ItemResult

__all__ = [
    "And",
    "Asset",
    "AssetReceipt",
    "AssetUploadError",
    "CloudKitError",
    "Comparator",
    "Comparison",
    "Cursor",
    "DatabaseClient",
    "DatabaseScope",
    "Environment",
    "FieldCodecError",
    "InternalItemError",
    "ItemError",
    "ItemResult",
    "MalformedFieldError",
    "Not",
    "OperationType",
    "Query",
    "QueryError",
    "QueryPage",
    "Record",
    "Reference",
    "ReferenceAction",
    "ServerError",
    "SigningError",
    "SortDescriptor",
    "TransportError",
    "UnknownItemError",
    "UnsupportedFieldError",
    "ZoneID",
    "parse_predicate",
]
