"""Classifier for the assistant CLI's ``stream-json`` output.

Each stdout line is one JSON event. ``parse_event`` narrows the loosely typed
object into a closed set of event dataclasses, and :class:`StreamClassifier`
turns those into progress lines while keeping the per-submission state
(tool-call names, accumulated text, final result, session id).
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from codethreads.adapters.formatting import (
    ResultShaper,
    extract_todo_update,
    format_tool_result,
    format_tool_use,
)
from codethreads.config.schema import FormattingConfig

RATE_LIMIT_MARKER = "Claude AI usage limit reached"
_RATE_LIMIT_RE = re.compile(re.escape(RATE_LIMIT_MARKER) + r"\|(\d+)")


def detect_rate_limit(text: str | None) -> int | None:
    """Epoch seconds from ``"<marker>|<timestamp>"`` in ``text``, else ``None``."""
    if not text:
        return None
    match = _RATE_LIMIT_RE.search(text)
    return int(match.group(1)) if match else None


class EventKind(StrEnum):
    ASSISTANT_TEXT = "assistant_text"
    TOOL_INVOCATION = "tool_invocation"
    TOOL_RESULT = "tool_result"
    FINAL_RESULT = "final_result"
    ERROR_RESULT = "error_result"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Event union
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TextBlock:
    text: str


@dataclass(slots=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False


@dataclass(slots=True)
class AssistantEvent:
    blocks: list[TextBlock | ToolUseBlock]
    session_id: str | None = None


@dataclass(slots=True)
class ToolResultEvent:
    results: list[ToolResultBlock]
    session_id: str | None = None


@dataclass(slots=True)
class ResultEvent:
    text: str
    is_error: bool = False
    subtype: str = ""
    session_id: str | None = None


@dataclass(slots=True)
class ErrorEvent:
    text: str | None
    session_id: str | None = None


@dataclass(slots=True)
class SystemEvent:
    subtype: str
    data: dict[str, Any]
    session_id: str | None = None


@dataclass(slots=True)
class OtherEvent:
    raw: dict[str, Any]
    session_id: str | None = None


StreamEvent = AssistantEvent | ToolResultEvent | ResultEvent | ErrorEvent | SystemEvent | OtherEvent


def _result_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            item.get("text", "")
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        return "\n".join(p for p in parts if isinstance(p, str))
    return ""


def _error_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    if isinstance(value, dict):
        message = value.get("message")
        if isinstance(message, str) and message.strip():
            return message
    return None


def parse_event(obj: dict[str, Any]) -> StreamEvent:
    """Narrow one decoded stream object into a :data:`StreamEvent`."""
    session_id = obj.get("session_id") if isinstance(obj.get("session_id"), str) else None
    event_type = obj.get("type")

    if event_type == "assistant":
        message = obj.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        blocks: list[TextBlock | ToolUseBlock] = []
        for item in content if isinstance(content, list) else []:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "text" and isinstance(item.get("text"), str):
                blocks.append(TextBlock(text=item["text"]))
            elif item.get("type") == "tool_use" and isinstance(item.get("name"), str):
                tool_input = item.get("input")
                blocks.append(
                    ToolUseBlock(
                        id=str(item.get("id", "")),
                        name=item["name"],
                        input=tool_input if isinstance(tool_input, dict) else {},
                    )
                )
        return AssistantEvent(blocks=blocks, session_id=session_id)

    if event_type == "user":
        message = obj.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        results = [
            ToolResultBlock(
                tool_use_id=str(item.get("tool_use_id", "")),
                content=_result_content(item.get("content")),
                is_error=bool(item.get("is_error", False)),
            )
            for item in (content if isinstance(content, list) else [])
            if isinstance(item, dict) and item.get("type") == "tool_result"
        ]
        if results:
            return ToolResultEvent(results=results, session_id=session_id)
        return OtherEvent(raw=obj, session_id=session_id)

    if event_type == "result":
        subtype = str(obj.get("subtype", ""))
        result = obj.get("result")
        return ResultEvent(
            text=result if isinstance(result, str) else "",
            is_error=bool(obj.get("is_error", False)) or subtype.startswith("error"),
            subtype=subtype,
            session_id=session_id,
        )

    if event_type == "error":
        text = _error_text(obj.get("error")) or _error_text(obj.get("message"))
        return ErrorEvent(text=text, session_id=session_id)

    if event_type == "system":
        return SystemEvent(subtype=str(obj.get("subtype", "")), data=obj, session_id=session_id)

    return OtherEvent(raw=obj, session_id=session_id)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Classification:
    kind: EventKind
    display: str | None = None


class StreamClassifier:
    """Stateful classifier for one submission's output stream."""

    def __init__(
        self,
        *,
        worktree: str | None = None,
        formatting: FormattingConfig | None = None,
    ) -> None:
        self.worktree = worktree
        self.formatting = formatting or FormattingConfig()
        self._shaper = ResultShaper(self.formatting)
        self.tool_names: dict[str, str] = {}
        self.assistant_text: list[str] = []
        self.error_texts: list[str] = []
        self.result: ResultEvent | None = None
        self.session_id: str | None = None
        self.raw_lines: list[str] = []

    # -- line level ---------------------------------------------------------

    def feed_line(self, line: str) -> str | None:
        """Classify one raw stdout line, returning its display text if any.

        Lines that are not a JSON object fall back to the TODO extractor and
        are otherwise passed through unchanged.
        """
        if not line.strip():
            return None
        self.raw_lines.append(line)
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            obj = None
        if not isinstance(obj, dict):
            if detect_rate_limit(line) is not None:
                self.error_texts.append(line)
            return extract_todo_update(line) or line.strip()
        return self.classify(parse_event(obj)).display

    # -- event level --------------------------------------------------------

    def classify(self, event: StreamEvent) -> Classification:
        if event.session_id:
            self.session_id = event.session_id

        if isinstance(event, AssistantEvent):
            return self._classify_assistant(event)

        if isinstance(event, ToolResultEvent):
            rendered = []
            for result in event.results:
                name = self.tool_names.get(result.tool_use_id)
                label = f"{name} result" if name else "Tool result"
                line = format_tool_result(
                    label, result.content, is_error=result.is_error, shaper=self._shaper
                )
                if line is not None:
                    rendered.append(line)
            return Classification(EventKind.TOOL_RESULT, "\n".join(rendered) or None)

        if isinstance(event, ResultEvent):
            self.result = event
            if event.is_error:
                if event.text:
                    self.error_texts.append(event.text)
                return Classification(EventKind.ERROR_RESULT)
            return Classification(EventKind.FINAL_RESULT)

        if isinstance(event, ErrorEvent):
            if event.text:
                self.error_texts.append(event.text)
            return Classification(EventKind.ERROR_RESULT, event.text)

        return Classification(EventKind.OTHER)

    def _classify_assistant(self, event: AssistantEvent) -> Classification:
        rendered: list[str] = []
        saw_tool = False
        for block in event.blocks:
            if isinstance(block, ToolUseBlock):
                saw_tool = True
                if block.id:
                    self.tool_names[block.id] = block.name
                rendered.append(
                    format_tool_use(
                        block.name,
                        block.input,
                        worktree=self.worktree,
                        max_length=self.formatting.max_argument_length,
                    )
                )
            else:
                text = block.text.strip()
                if text:
                    self.assistant_text.append(text)
                    rendered.append(text)
        kind = EventKind.TOOL_INVOCATION if saw_tool else EventKind.ASSISTANT_TEXT
        if not rendered:
            return Classification(EventKind.OTHER)
        return Classification(kind, "\n".join(rendered))

    # -- accumulated state --------------------------------------------------

    @property
    def final_text(self) -> str:
        if self.result is not None and self.result.text.strip():
            return self.result.text.strip()
        return "\n\n".join(self.assistant_text).strip()

    @property
    def rate_limit_timestamp(self) -> int | None:
        found = detect_rate_limit(self.final_text)
        if found is not None:
            return found
        for text in self.error_texts:
            found = detect_rate_limit(text)
            if found is not None:
                return found
        return None
