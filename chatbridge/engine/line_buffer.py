"""Incremental newline splitter for subprocess output."""
from __future__ import annotations


class JsonLineBuffer:
    """Accumulates raw byte chunks and yields complete text lines.

    Splitting happens on bytes before decoding, so a multi-byte UTF-8
    character cut across two reads is reassembled intact. The emitted
    lines depend only on the concatenated input, never on how it was
    chunked.
    """

    def __init__(self) -> None:
        self._pending = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        """Add *chunk* and return every line it completed."""
        if not chunk:
            return []
        self._pending.extend(chunk)
        if b"\n" not in chunk:
            return []
        *complete, rest = bytes(self._pending).split(b"\n")
        self._pending = bytearray(rest)
        return [line for line in map(self._decode, complete) if line]

    def flush(self) -> list[str]:
        """Return the trailing partial line at end of stream."""
        if not self._pending:
            return []
        line = self._decode(bytes(self._pending))
        self._pending.clear()
        return [line] if line else []

    @property
    def pending_bytes(self) -> int:
        return len(self._pending)

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode("utf-8", errors="replace").strip()
