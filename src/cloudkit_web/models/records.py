"""Native record types exchanged with callers.

These are the Python-side values a caller builds and reads: a `Record` with a
mapping of field values, plus the non-primitive field types (`Asset`,
`Reference`). Primitive field values are plain Python objects (`int`, `float`,
`str`, `bytes`, `datetime`) or lists of them. Wire shapes live in
`models.wire`; translation between the two is done by `cloudkit_web.codec`.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Optional


class ReferenceAction(str, Enum):
    """What happens to the referencing record when the target is deleted."""

    NONE = "NONE"
    DELETE_SELF = "DELETE_SELF"


@dataclass(frozen=True)
class Reference:
    """Pointer from one record to another by record name."""

    record_name: str
    action: ReferenceAction = ReferenceAction.NONE


@dataclass(frozen=True)
class Asset:
    """File-backed field value.

    Outgoing assets carry `file_path` (the local source uploaded during save).
    Assets decoded from a server response carry the resolved `download_url`
    together with the checksum and size reported by the server.
    """

    file_path: Optional[Path] = None
    download_url: Optional[str] = None
    file_checksum: Optional[str] = None
    size: Optional[int] = None

    @property
    def uploadable(self) -> bool:
        return self.file_path is not None


@dataclass(frozen=True)
class ZoneID:
    zone_name: str = "_defaultZone"
    owner_name: Optional[str] = None


def _new_record_name() -> str:
    return str(uuid.uuid4()).upper()


class Record:
    """A record in a scoped database.

    The record name is fixed at construction. A record without a creation
    timestamp has not been saved yet; saving it defaults to a create operation,
    otherwise to an update that carries `change_tag`.
    """

    def __init__(
        self,
        record_type: str,
        record_name: Optional[str] = None,
        *,
        fields: Optional[Dict[str, Any]] = None,
        change_tag: Optional[str] = None,
        created: Optional[datetime] = None,
        modified: Optional[datetime] = None,
        deleted: bool = False,
    ) -> None:
        self._record_type = record_type
        self._record_name = record_name or _new_record_name()
        self.fields: Dict[str, Any] = dict(fields or {})
        self.change_tag = change_tag
        self.created = created
        self.modified = modified
        self.deleted = deleted

    @property
    def record_type(self) -> str:
        return self._record_type

    @property
    def record_name(self) -> str:
        return self._record_name

    def __getitem__(self, key: str) -> Any:
        return self.fields[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.fields[key] = value

    def __delitem__(self, key: str) -> None:
        del self.fields[key]

    def __contains__(self, key: object) -> bool:
        return key in self.fields

    def __iter__(self) -> Iterator[str]:
        return iter(self.fields)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Record):
            return NotImplemented
        return (
            self._record_type == other._record_type
            and self._record_name == other._record_name
            and self.change_tag == other.change_tag
            and self.created == other.created
            and self.fields == other.fields
        )

    def __repr__(self) -> str:
        return (
            f"Record(record_type={self._record_type!r}, record_name={self._record_name!r}, "
            f"change_tag={self.change_tag!r}, created={self.created!r}, fields={self.fields!r})"
        )


@dataclass
class AssetReceipt:
    """Result of a successful asset upload, usable as an outgoing field value."""

    file_checksum: str
    receipt: str
    size: Optional[int] = None
    wrapping_key: Optional[str] = None
    reference_checksum: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
