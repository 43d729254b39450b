from copilotbridge.framing import ChunkReassembler

STREAM = (
    'data: {"choices":[{"index":0,"delta":{"content":"Grüße"}}]}\n\n'
    'data: {"choices":[{"index":0,"delta":{"content":" 🌍"}}]}\n\n'
    "data: [DONE]\n\n"
)


def _frames_for_chunks(chunks: list[bytes]) -> list[str]:
    reassembler = ChunkReassembler()
    frames: list[str] = []
    for chunk in chunks:
        frames.extend(reassembler.feed(chunk))
    frames.extend(reassembler.flush())
    return frames


def test_frames_are_independent_of_chunk_boundaries() -> None:
    raw = STREAM.encode("utf-8")
    whole = _frames_for_chunks([raw])

    assert len(whole) == 3
    for size in (1, 2, 3, 5, 13):
        chunks = [raw[i : i + size] for i in range(0, len(raw), size)]
        assert _frames_for_chunks(chunks) == whole


def test_multibyte_character_split_across_chunks_is_not_corrupted() -> None:
    raw = 'data: {"c":"ü"}\n\n'.encode("utf-8")
    split_at = raw.index("ü".encode("utf-8")) + 1
    reassembler = ChunkReassembler()

    assert reassembler.feed(raw[:split_at]) == []
    frames = reassembler.feed(raw[split_at:])

    assert frames == ['data: {"c":"ü"}']
    assert "�" not in frames[0]


def test_separator_split_across_chunks_is_detected() -> None:
    reassembler = ChunkReassembler()

    assert reassembler.feed(b"data: a\n") == []
    assert reassembler.feed(b"\ndata: b") == ["data: a"]
    assert reassembler.pending == "data: b"


def test_whitespace_only_segments_are_dropped() -> None:
    reassembler = ChunkReassembler()

    frames = reassembler.feed("\n\n\n\ndata: x\n\n  \n\n")

    assert frames == ["data: x"]


def test_flush_emits_unterminated_tail_once() -> None:
    reassembler = ChunkReassembler()
    reassembler.feed(b"data: first\n\ndata: tail")

    assert reassembler.flush() == ["data: tail"]
    assert reassembler.flush() == []
    assert reassembler.pending == ""


def test_flush_of_blank_tail_emits_nothing() -> None:
    reassembler = ChunkReassembler()
    reassembler.feed("data: x\n\n\n")

    assert reassembler.flush() == []


def test_custom_separator() -> None:
    reassembler = ChunkReassembler(separator="\n")

    assert reassembler.feed('{"a":1}\n{"b"') == ['{"a":1}']
    assert reassembler.feed(":2}\n") == ['{"b":2}']
