"""File-based persistence of query cursors for resumable paging.

A long `query --all` run stores the cursor of the last page it finished, so an
interrupted run can pick up from that page instead of starting over. The file
holds the server's continuation marker unchanged together with the query
fingerprint, which lets a resumed run reject a cursor saved for a different
query.

`store_cursor` writes to a temporary file and renames it into place, so an
interruption never leaves a half-written cursor behind.
"""
from __future__ import annotations

import json
import os
from typing import Optional

from .query import Cursor


def load_cursor(path: str) -> Optional[Cursor]:
    """Load a saved query cursor.

    Args:
        path: The path to the cursor file.

    Returns:
        The stored cursor, or None if the file is missing, empty, or does not
        hold a non-empty continuation marker.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read().strip()
        if not raw:
            return None
        data = json.loads(raw)
        marker = data.get("continuationMarker")
        if not isinstance(marker, str) or not marker:
            return None
        return Cursor(marker, data.get("queryFingerprint"))
    except FileNotFoundError:
        return None
    except (ValueError, AttributeError):
        return None


def store_cursor(path: str, cursor: Cursor) -> None:
    """Atomically store a cursor, marker bytes unchanged.

    Args:
        path: The path to the cursor file; parent directories are created.
        cursor: The cursor of the last fully processed page.
    """
    tmp_path = f"{path}.tmp"
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(
            {
                "continuationMarker": cursor.continuation_marker,
                "queryFingerprint": cursor.query_fingerprint,
            },
            f,
        )
    os.replace(tmp_path, path)


def clear_cursor(path: str) -> None:
    """Remove the cursor file once a query has been read to the end."""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


__all__ = ["clear_cursor", "load_cursor", "store_cursor"]
