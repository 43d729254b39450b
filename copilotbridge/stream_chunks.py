"""Normalization of upstream chat completion stream frames.

A `DeltaNormalizer` consumes the frames produced by
`copilotbridge.framing.ChunkReassembler` for one response and turns them into
`NormalizedMessage` objects: one per content delta, plus exactly one terminal
message that carries finalized tool calls and usage counters.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .errors import FrameDecodeError, ToolArgumentDecodeError
from .json_helpers import to_bounded_json

LOG = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass
class PendingToolCall:
    """Tool call whose name and arguments are still arriving in pieces."""

    index: int
    id: str | None = None
    type: str = "function"
    name: str = ""
    arguments: str = ""


@dataclass(frozen=True)
class ToolCall:
    """Tool call with arguments parsed into structured data."""

    name: str
    arguments: Any
    id: str | None = None
    index: int = 0


@dataclass
class NormalizedMessage:
    """One message in the bridge's neutral streaming shape."""

    done: bool
    role: str = "assistant"
    content: str = ""
    model: str | None = None
    created: int | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    done_reason: str | None = None
    prompt_eval_count: int | None = None
    eval_count: int | None = None
    error: str | None = None


@dataclass
class _Accumulator:
    """Per-stream state collected for the terminal message."""

    pending: dict[int, PendingToolCall] = field(default_factory=dict)
    tool_calls: list[ToolCall] = field(default_factory=list)
    finalized: bool = False
    model: str | None = None
    created: int | None = None
    done_reason: str | None = None
    prompt_eval_count: int | None = None
    eval_count: int | None = None
    error: str | None = None


def frame_payload(frame: str) -> str | None:
    """Extract the joined `data:` payload of one SSE frame, or None if absent."""
    data_lines: list[str] = []
    for line in frame.splitlines():
        if line.startswith(DATA_PREFIX):
            data_lines.append(line[len(DATA_PREFIX) :].strip())
    if not data_lines:
        return None
    return "\n".join(data_lines)


def decode_payload(payload: str) -> dict[str, Any]:
    """Decode one JSON payload, raising `FrameDecodeError` on malformed input."""
    try:
        obj = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise FrameDecodeError(f"invalid JSON in stream frame: {exc}") from exc
    if not isinstance(obj, dict):
        raise FrameDecodeError(f"stream frame payload is not an object: {type(obj).__name__}")
    return obj


def pick_primary_choice(chunk: dict[str, Any]) -> dict[str, Any] | None:
    """Return the primary choice (index 0 if present) from an upstream chunk."""
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None

    for choice in choices:
        if isinstance(choice, dict) and choice.get("index") == 0:
            return choice

    first = choices[0]
    return first if isinstance(first, dict) else None


def append_tool_call_delta(
    pending: dict[int, PendingToolCall],
    delta_tool_calls: list[Any],
) -> None:
    """Merge tool-call streaming fragments into per-index accumulators."""
    for position, tc_delta in enumerate(delta_tool_calls):
        if not isinstance(tc_delta, dict):
            continue

        index = tc_delta.get("index")
        if not isinstance(index, int):
            index = position

        entry = pending.get(index)
        if entry is None:
            entry = PendingToolCall(index=index)
            pending[index] = entry
        if tc_delta.get("id") and entry.id is None:
            entry.id = str(tc_delta["id"])
        if tc_delta.get("type"):
            entry.type = str(tc_delta["type"])

        fn_delta = tc_delta.get("function")
        if isinstance(fn_delta, dict):
            if fn_delta.get("name") and not entry.name:
                entry.name = str(fn_delta["name"])
            if isinstance(fn_delta.get("arguments"), str):
                entry.arguments += fn_delta["arguments"]


def finalize_tool_calls(pending: dict[int, PendingToolCall]) -> list[ToolCall]:
    """Parse accumulated argument strings, in index order."""
    finalized: list[ToolCall] = []
    for index in sorted(pending):
        entry = pending[index]
        raw = entry.arguments.strip()
        try:
            arguments = json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            raise ToolArgumentDecodeError(
                f"tool call {entry.name or index!r} arguments are not valid JSON: {exc}",
                tool_name=entry.name,
                raw_arguments=entry.arguments,
            ) from exc
        finalized.append(ToolCall(name=entry.name, arguments=arguments, id=entry.id, index=index))
    return finalized


class DeltaNormalizer:
    """Stateful converter from stream frames to normalized messages."""

    def __init__(self) -> None:
        self._acc = _Accumulator()
        self._terminal_sent = False
        self.dropped_frames = 0

    @property
    def terminal_sent(self) -> bool:
        """Return whether the terminal message has been produced."""
        return self._terminal_sent

    @property
    def pending_tool_calls(self) -> dict[int, PendingToolCall]:
        """Expose tool calls still being accumulated."""
        return self._acc.pending

    def normalize(self, frame: str) -> NormalizedMessage | None:
        """Convert one frame into zero or one normalized message."""
        payload = frame_payload(frame)
        if payload is None:
            return None

        if self._terminal_sent:
            LOG.debug("ignoring stream frame after terminal message payload=%s", to_bounded_json(payload, 500))
            return None

        if payload == DONE_SENTINEL:
            return self._terminal_message()

        try:
            chunk = decode_payload(payload)
        except FrameDecodeError as exc:
            self.dropped_frames += 1
            LOG.warning("dropping malformed stream frame error=%s payload=%s", exc, to_bounded_json(payload, 500))
            return None

        return self._apply_chunk(chunk)

    def finish(self) -> NormalizedMessage | None:
        """Return the terminal message when the stream ended without `[DONE]`."""
        if self._terminal_sent:
            return None
        LOG.debug("stream ended without done marker, emitting terminal message")
        return self._terminal_message()

    def _apply_chunk(self, chunk: dict[str, Any]) -> NormalizedMessage | None:
        """Fold one decoded upstream chunk into the accumulator."""
        acc = self._acc
        model = chunk.get("model") if isinstance(chunk.get("model"), str) else None
        created = chunk.get("created") if isinstance(chunk.get("created"), int) else None
        if model:
            acc.model = model
        if created is not None:
            acc.created = created

        usage = chunk.get("usage")
        if isinstance(usage, dict):
            acc.prompt_eval_count = int(usage.get("prompt_tokens") or 0)
            acc.eval_count = int(usage.get("completion_tokens") or 0)

        choice = pick_primary_choice(chunk)
        if choice is None:
            return None

        message: NormalizedMessage | None = None
        delta = choice.get("delta")
        if isinstance(delta, dict):
            tool_call_deltas = delta.get("tool_calls")
            if isinstance(tool_call_deltas, list) and tool_call_deltas:
                if acc.finalized:
                    LOG.warning(
                        "dropping %s tool call fragments received after finish_reason=tool_calls payload=%s",
                        len(tool_call_deltas),
                        to_bounded_json(tool_call_deltas, 500),
                    )
                else:
                    append_tool_call_delta(acc.pending, tool_call_deltas)

            content = delta.get("content")
            if isinstance(content, str) and content:
                role = delta.get("role") if isinstance(delta.get("role"), str) else "assistant"
                message = NormalizedMessage(
                    done=False,
                    role=role,
                    content=content,
                    model=model,
                    created=created,
                )

        finish_reason = choice.get("finish_reason")
        if isinstance(finish_reason, str) and finish_reason:
            acc.done_reason = finish_reason
            if finish_reason == "tool_calls":
                self._finalize_tool_calls()

        return message

    def _finalize_tool_calls(self) -> None:
        """Parse pending tool-call arguments exactly once per stream."""
        acc = self._acc
        if acc.finalized:
            return
        acc.finalized = True
        try:
            acc.tool_calls = finalize_tool_calls(acc.pending)
        except ToolArgumentDecodeError as exc:
            LOG.error("tool call argument decode failed tool=%s error=%s", exc.tool_name, exc)
            acc.error = str(exc)
        acc.pending = {}

    def _terminal_message(self) -> NormalizedMessage:
        """Build the one terminal message and reset the accumulator."""
        if self._acc.pending:
            self._finalize_tool_calls()
        acc = self._acc
        message = NormalizedMessage(
            done=True,
            content="",
            model=acc.model,
            created=acc.created,
            tool_calls=list(acc.tool_calls),
            done_reason=acc.done_reason or "stop",
            prompt_eval_count=acc.prompt_eval_count,
            eval_count=acc.eval_count,
            error=acc.error,
        )
        self._acc = _Accumulator()
        self._terminal_sent = True
        return message
