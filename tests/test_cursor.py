from __future__ import annotations

import pytest

from outreach_pipeline.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor


def test_cursor_roundtrip() -> None:
    c = Cursor(created_at=123.456, item_id="unit_abc", scope="batches")
    encoded = encode_cursor(c)
    assert "=" not in encoded
    decoded = decode_cursor(encoded, scope="batches")
    assert decoded.created_at == pytest.approx(c.created_at)
    assert decoded.item_id == c.item_id


def test_cursor_rejected_by_other_listing() -> None:
    encoded = encode_cursor(Cursor(created_at=1.0, item_id="evt_1", scope="events:unit_a"))
    with pytest.raises(CursorError):
        decode_cursor(encoded, scope="events:unit_b")
    with pytest.raises(CursorError):
        decode_cursor(encoded, scope="batches")


@pytest.mark.parametrize("value", ["", "   ", "not-a-valid-cursor", "eyJmb28iOjF9"])
def test_cursor_invalid(value: str) -> None:
    with pytest.raises(CursorError):
        decode_cursor(value)
