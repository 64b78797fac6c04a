"""Exception types raised (or returned per item) by the record client.

Whole-operation failures are raised: the request could not be built, signed,
sent, or its response could not be parsed. Failures that belong to a single
record inside a batch are *returned* as the `error` of that record's
`ItemResult` so the rest of the batch is still usable.
"""
from __future__ import annotations

from typing import Optional


class CloudKitError(Exception):
    """Base class for every error raised by this package."""


class TransportError(CloudKitError):
    """Request failed below the service protocol.

    Raised for network failures and for non-200 responses that carry no
    structured error body.
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ServerError(CloudKitError):
    """Structured top-level failure (authentication, quota, malformed request...)."""

    def __init__(
        self,
        code: str,
        reason: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        uuid: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(f"{code}: {reason}" if reason else code)
        self.code = code
        self.reason = reason
        self.status_code = status_code
        self.uuid = uuid
        self.retry_after = retry_after


class ItemError(CloudKitError):
    """Failure attached to a single record entry of a batch response."""

    def __init__(self, record_name: str, code: str, reason: Optional[str] = None) -> None:
        detail = f" ({reason})" if reason else ""
        super().__init__(f"{record_name}: {code}{detail}")
        self.record_name = record_name
        self.code = code
        self.reason = reason


class UnknownItemError(ItemError):
    """The server has no record with this name (`NOT_FOUND`)."""


class InternalItemError(ItemError):
    """Any other item-local server error code."""


class FieldCodecError(CloudKitError):
    def __init__(self, field_name: str, message: str) -> None:
        super().__init__(f"field {field_name!r}: {message}")
        self.field_name = field_name


class UnsupportedFieldError(FieldCodecError):
    """A native field value has a type the codec cannot encode."""

    def __init__(self, field_name: str, type_name: str) -> None:
        super().__init__(field_name, f"unsupported value type {type_name}")
        self.type_name = type_name


class MalformedFieldError(FieldCodecError):
    """A wire field (or record) could not be decoded."""


class SigningError(CloudKitError):
    """A configured private key could not produce a request signature."""


class QueryError(CloudKitError):
    """Predicate cannot be expressed in the filter grammar, or cursor misuse."""


class AssetUploadError(CloudKitError):
    """A local asset source is missing or unreadable for an upload token."""

    def __init__(self, record_name: str, field_name: str, message: str) -> None:
        super().__init__(f"{record_name}.{field_name}: {message}")
        self.record_name = record_name
        self.field_name = field_name


__all__ = [
    "AssetUploadError",
    "CloudKitError",
    "FieldCodecError",
    "InternalItemError",
    "ItemError",
    "MalformedFieldError",
    "QueryError",
    "ServerError",
    "SigningError",
    "TransportError",
    "UnknownItemError",
    "UnsupportedFieldError",
]
