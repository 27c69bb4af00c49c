"""Tests for JsonLineBuffer chunk handling."""
from __future__ import annotations

from chatbridge.engine.line_buffer import JsonLineBuffer


def _split_all(data: bytes, size: int) -> list[str]:
    buffer = JsonLineBuffer()
    lines: list[str] = []
    for start in range(0, len(data), size):
        lines.extend(buffer.feed(data[start:start + size]))
    lines.extend(buffer.flush())
    return lines


def test_lines_independent_of_chunk_boundaries():
    data = (
        '{"type":"system","session_id":"abc"}\n'
        '{"type":"assistant","message":{"content":[{"type":"text","text":"héllo ✓"}]}}\n'
        '{"type":"result","result":"done"}'
    ).encode("utf-8")
    expected = _split_all(data, len(data))
    assert len(expected) == 3
    for size in (1, 2, 3, 7, 16, 64):
        assert _split_all(data, size) == expected


def test_multibyte_character_split_across_reads():
    encoded = '{"text":"日本"}\n'.encode("utf-8")
    # Cut inside the first three-byte character
    cut = encoded.index("日".encode("utf-8")) + 1
    buffer = JsonLineBuffer()
    assert buffer.feed(encoded[:cut]) == []
    assert buffer.feed(encoded[cut:]) == ['{"text":"日本"}']


def test_partial_line_kept_until_newline():
    buffer = JsonLineBuffer()
    assert buffer.feed(b'{"a":') == []
    assert buffer.pending_bytes == 5
    assert buffer.feed(b'1}\n{"b"') == ['{"a":1}']
    assert buffer.flush() == ['{"b"']
    assert buffer.pending_bytes == 0


def test_blank_lines_dropped():
    buffer = JsonLineBuffer()
    assert buffer.feed(b"\n\n  \n{}\n\r\n") == ["{}"]
    assert buffer.flush() == []
