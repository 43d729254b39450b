"""Format-agnostic reassembly of arbitrarily fragmented stream chunks.

The upstream chat endpoint writes server-sent events separated by blank lines,
but the transport hands them over in whatever pieces the network produced. A
`ChunkReassembler` regroups those pieces into complete records ("frames")
without looking inside them.
"""

from __future__ import annotations

import codecs

RECORD_SEPARATOR = "\n\n"


class ChunkReassembler:
    """Turn raw byte/text fragments into complete, separator-delimited frames.

    The reassembler owns one text buffer. `_scan_from` marks how far the buffer
    is already known to contain no separator, so a slow trickle of tiny chunks
    never re-scans the whole pending tail.
    """

    def __init__(self, separator: str = RECORD_SEPARATOR, encoding: str = "utf-8") -> None:
        if not separator:
            raise ValueError("separator must not be empty")
        self._separator = separator
        self._encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._scan_from = 0

    @property
    def pending(self) -> str:
        """Return buffered text that has not been emitted as a frame yet."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        """Append one raw chunk and return all frames it completed, in order."""
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = chunk
        if not text:
            return []

        self._buffer += text
        frames: list[str] = []
        start = 0
        search_at = self._scan_from
        sep_len = len(self._separator)
        while True:
            idx = self._buffer.find(self._separator, search_at)
            if idx < 0:
                break
            segment = self._buffer[start:idx]
            if segment.strip():
                frames.append(segment)
            start = idx + sep_len
            search_at = start

        if start:
            self._buffer = self._buffer[start:]
        # A separator may straddle the next chunk boundary; rescan its possible prefix.
        self._scan_from = max(0, len(self._buffer) - sep_len + 1)
        return frames

    def flush(self) -> list[str]:
        """Emit the unterminated tail as a final frame and reset state."""
        tail = self._decoder.decode(b"", final=True)
        remaining = self._buffer + tail
        self._buffer = ""
        self._scan_from = 0
        self._decoder.reset()
        if not remaining.strip():
            return []
        return [remaining]
