"""Shared helpers for the memory and Postgres store implementations."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Dict, Optional


def normalize_email(email: str) -> str:
    """Canonical form used for uniqueness checks and lookups."""
    return email.strip().lower()


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Parse an IP address from a string, inet value or None.

    Unparseable strings are dropped rather than stored; audit rows must not
    fail because a proxy forwarded garbage.
    """
    if raw_ip is None:
        return None
    if isinstance(raw_ip, str):
        stripped = raw_ip.strip()
        if not stripped:
            return None
        try:
            return str(ip_address(stripped))
        except ValueError:
            return None
    return str(raw_ip)


def parse_json_meta(raw_meta: Any) -> Dict[str, Any]:
    """Parse a metadata column from a JSON string or dict."""
    if isinstance(raw_meta, str):
        try:
            parsed = json.loads(raw_meta)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    if isinstance(raw_meta, dict):
        return raw_meta
    return {}


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_uuid() -> str:
    return str(uuid.uuid4())
