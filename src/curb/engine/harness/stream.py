"""Incremental parser for newline-delimited JSON harness event streams.

Recognized event types:

- `assistant` / `message`: a complete message; its text blocks become
  visible output and supersede the partial deltas received for it.
- `content_block_start`: a `tool_use` block announces a tool invocation.
- `content_block_delta`: a `text_delta` appends partial text.
- `result`: terminal event with authoritative usage and cost.
- `system`: informational, logged only.
- `stream_event`: envelope around one of the above.

Unknown types are ignored. Lines that are not JSON objects are counted and
skipped, so a noisy stream degrades instead of failing.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from curb.engine.usage import ReportedUsage, cost_from_payload, usage_from_payload

logger = logging.getLogger(__name__)


class StreamAccumulator:
    """Folds a sequence of stream events into text, tool calls and usage."""

    def __init__(self, *, on_text: Callable[[str], None] | None = None) -> None:
        self.on_text = on_text
        self.tool_calls: list[str] = []
        self.result_text: str | None = None
        self.result_is_error = False
        self.saw_result = False
        self.cost_usd: float | None = None
        self.events = 0
        self.malformed_lines = 0
        self.non_empty_lines = 0
        self._committed: list[str] = []
        self._pending: list[str] = []
        self._seen_tool_ids: set[str] = set()
        self._result_usage: ReportedUsage | None = None
        self._message_usage: ReportedUsage | None = None

    def feed_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        self.non_empty_lines += 1
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            self.malformed_lines += 1
            logger.debug("Skipping non-JSON stream line: %.200s", stripped)
            return
        if not isinstance(payload, dict):
            self.malformed_lines += 1
            return
        self.feed_event(payload)

    def feed_event(self, event: dict[str, Any]) -> None:
        self.events += 1
        event_type = event.get("type")
        if event_type in ("assistant", "message"):
            self._on_message(event)
        elif event_type == "content_block_start":
            self._on_block_start(event)
        elif event_type == "content_block_delta":
            self._on_delta(event)
        elif event_type == "result":
            self._on_result(event)
        elif event_type == "system":
            logger.debug("[system] %s", event.get("message") or event.get("subtype") or "")
        elif event_type == "stream_event":
            inner = event.get("event")
            if isinstance(inner, dict):
                self.feed_event(inner)

    @property
    def text(self) -> str:
        parts = list(self._committed)
        if self._pending:
            parts.append("".join(self._pending))
        if parts:
            return "\n".join(parts)
        return self.result_text or ""

    @property
    def reported_usage(self) -> ReportedUsage | None:
        if self._result_usage is not None:
            return self._result_usage
        return self._message_usage

    @property
    def framing_failed(self) -> bool:
        """True when output arrived but not a single line was a valid event."""

        return self.non_empty_lines > 0 and self.events == 0

    def _on_message(self, event: dict[str, Any]) -> None:
        message = event.get("message")
        if not isinstance(message, dict):
            message = event
        if message.get("role", "assistant") != "assistant":
            return

        texts: list[str] = []
        content = message.get("content")
        if isinstance(content, str):
            if content:
                texts.append(content)
        elif isinstance(content, list):
            for block in content:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text" and isinstance(block.get("text"), str):
                    texts.append(block["text"])
                elif block.get("type") == "tool_use":
                    self._record_tool(block)
        if texts:
            self._pending.clear()
            self._committed.extend(texts)
            if self.on_text is not None:
                for text in texts:
                    self.on_text(text)

        usage = usage_from_payload(event.get("usage") or message.get("usage"))
        if usage is not None:
            if self._message_usage is None:
                self._message_usage = ReportedUsage()
            self._message_usage.add(usage)

    def _on_block_start(self, event: dict[str, Any]) -> None:
        block = event.get("content_block")
        if isinstance(block, dict) and block.get("type") == "tool_use":
            self._record_tool(block)

    def _on_delta(self, event: dict[str, Any]) -> None:
        delta = event.get("delta")
        if not isinstance(delta, dict) or delta.get("type") != "text_delta":
            return
        text = delta.get("text")
        if isinstance(text, str) and text:
            self._pending.append(text)

    def _on_result(self, event: dict[str, Any]) -> None:
        self.saw_result = True
        self.result_is_error = bool(event.get("is_error", False))
        result = event.get("result")
        if isinstance(result, str):
            self.result_text = result
        usage = usage_from_payload(event.get("usage"))
        if usage is not None:
            self._result_usage = usage
        cost = cost_from_payload(event)
        if cost is not None:
            self.cost_usd = cost

    def _record_tool(self, block: dict[str, Any]) -> None:
        tool_id = block.get("id")
        if isinstance(tool_id, str):
            if tool_id in self._seen_tool_ids:
                return
            self._seen_tool_ids.add(tool_id)
        name = block.get("name")
        name = name if isinstance(name, str) and name else "unknown"
        self.tool_calls.append(name)
        logger.info("Tool: %s", name)


def parse_blocking_output(stdout: str) -> StreamAccumulator:
    """Parse the single terminal document printed by a blocking invocation.

    Accepts one JSON object (a result), a JSON array of events, or
    newline-delimited events. Anything else is treated as plain text.
    """

    accumulator = StreamAccumulator()
    stripped = stdout.strip()
    if not stripped:
        return accumulator
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        payload = None

    if isinstance(payload, dict):
        if payload.get("type") in (None, "result"):
            payload = {**payload, "type": "result"}
            if not isinstance(payload.get("result"), str) and isinstance(
                payload.get("content"),
                str,
            ):
                payload["result"] = payload["content"]
        accumulator.feed_event(payload)
        return accumulator
    if isinstance(payload, list):
        for item in payload:
            if isinstance(item, dict):
                accumulator.feed_event(item)
        return accumulator

    for line in stripped.splitlines():
        accumulator.feed_line(line)
    if accumulator.events == 0:
        accumulator = StreamAccumulator()
        accumulator.result_text = stdout
    return accumulator
