"""Opaque keyset cursors for newest-first audit paging.

A cursor names the last row a client has seen as ``(created_at, id)``; the
next page holds rows strictly older than that pair. Clients treat the value
as opaque, so it is base64 encoded.
"""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Tuple

_SEPARATOR = "|"


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def encode_time_id_cursor(created_at: datetime, identifier: str) -> str:
    raw = f"{_as_utc(created_at).isoformat()}{_SEPARATOR}{identifier}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_time_id_cursor(cursor: str) -> Tuple[datetime, str]:
    """Return ``(created_at, id)``; raise ``ValueError`` for anything malformed."""
    padded = cursor + "=" * (-len(cursor) % 4)
    raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    stamp, sep, identifier = raw.partition(_SEPARATOR)
    if not sep or not identifier:
        raise ValueError("invalid security log cursor")
    return _as_utc(datetime.fromisoformat(stamp)), identifier
