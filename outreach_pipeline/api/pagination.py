from __future__ import annotations

import base64
import json
from dataclasses import dataclass


class CursorError(ValueError):
    pass


@dataclass(frozen=True)
class Cursor:
    """Keyset position `(created_at, item_id)` within one listing.

    `scope` names the listing ("batches", "events:<unit_id>") so a cursor handed
    out by one endpoint is rejected by another.
    """

    created_at: float
    item_id: str
    scope: str = ""


def encode_cursor(cursor: Cursor) -> str:
    payload = {"t": cursor.created_at, "id": cursor.item_id, "s": cursor.scope}
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(value: str, *, scope: str = "") -> Cursor:
    s = (value or "").strip()
    if not s:
        raise CursorError("Empty cursor")

    pad = "=" * ((4 - (len(s) % 4)) % 4)
    try:
        raw = base64.urlsafe_b64decode((s + pad).encode("ascii")).decode("utf-8")
        obj = json.loads(raw)
        cursor = Cursor(created_at=float(obj["t"]), item_id=str(obj["id"]), scope=str(obj.get("s") or ""))
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise CursorError("Invalid cursor") from e
    if cursor.scope != scope:
        raise CursorError("Cursor does not belong to this listing")
    return cursor
