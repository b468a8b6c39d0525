"""Human-readable rendering of assistant tool calls and tool results."""

from __future__ import annotations

import json
import os
import re
from typing import Any

from codethreads.config.schema import FormattingConfig

TODO_HEADER = "📋 **TODO list updated:**"
TODO_MARKERS = {"completed": "✅", "in_progress": "🔄"}
TODO_DEFAULT_MARKER = "⬜"

TOOL_ICON = "⚡"
TRUNCATION_MARKER = "\n... (truncated)"

_TODO_ACK_PATTERNS = (
    "todos have been modified successfully",
    "todo list has been updated",
    "todos updated successfully",
    "task list updated successfully",
)

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_TODOS_IN_TEXT_RE = re.compile(r'"todos"\s*:\s*(\[[\s\S]*?\])')
_MANAGED_PATH_RE = re.compile(r"/(?:worktrees/[^/]+|repositories/[^/]+/[^/]+)/(.+)$")

_COMMIT_HEADER_RE = re.compile(r"^\[(?:[^\s\]]+\s+)?(?:\([^)]*\)\s+)?([0-9a-f]{7,40})\]\s+(.+)$")
_COMMIT_STATS_RE = re.compile(
    r"(\d+) files? changed(?:, (\d+) insertions?\(\+\))?(?:, (\d+) deletions?\(-\))?"
)
_SEVERITY_RE = re.compile(
    r"\b(error|errors|fatal|failed|failure|exception|traceback|panic)\b|^E\s", re.IGNORECASE
)
_NOISE_RE = re.compile(r"\b(debug|verbose)\b|^\s*\[?(DEBUG|TRACE|VERBOSE)\]?[\s:]", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Generic text helpers
# ---------------------------------------------------------------------------


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return text[: max_length - 3] + "..."


def format_progress(text: str, max_length: int) -> str:
    """Strip ANSI escapes and cut to ``max_length`` characters.

    The cut prefers the last newline past 80% of the limit so code fences and
    list items are not split mid-line.
    """
    cleaned = strip_ansi(text).strip()
    if len(cleaned) <= max_length:
        return cleaned
    budget = max(max_length - len(TRUNCATION_MARKER), 0)
    head = cleaned[:budget]
    newline = head.rfind("\n")
    if newline > budget * 0.8:
        head = head[:newline]
    if head.count("```") % 2 == 1:
        head += "\n```"
    return head + TRUNCATION_MARKER


def relative_path(path: str, worktree: str | None = None) -> str:
    """Show ``path`` relative to the worker's checkout when possible."""
    if worktree:
        root = worktree.rstrip("/") + "/"
        if path.startswith(root):
            return path[len(root):] or "."
        if path == worktree.rstrip("/"):
            return "."
    match = _MANAGED_PATH_RE.search(path)
    if match:
        return match.group(1)
    if os.path.isabs(path):
        return os.path.basename(path) or path
    return path


# ---------------------------------------------------------------------------
# TODO checklists
# ---------------------------------------------------------------------------


def render_todo_list(todos: Any) -> str | None:
    """Render a TodoWrite payload as a checklist, or ``None`` if malformed."""
    if not isinstance(todos, list):
        return None
    lines = [TODO_HEADER]
    for todo in todos:
        if not isinstance(todo, dict):
            return None
        content = todo.get("content")
        if not isinstance(content, str):
            return None
        marker = TODO_MARKERS.get(str(todo.get("status", "")), TODO_DEFAULT_MARKER)
        lines.append(f"{marker} {content}")
    return "\n".join(lines)


def extract_todo_update(raw_text: str) -> str | None:
    """Render a checklist straight from text that mentions a TodoWrite call.

    Used for output lines that are not valid JSON on their own.
    """
    if "TodoWrite" not in raw_text:
        return None
    match = _TODOS_IN_TEXT_RE.search(raw_text)
    if not match:
        return None
    try:
        todos = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    return render_todo_list(todos)


def is_todo_acknowledgment(body: str) -> bool:
    lowered = body.lower()
    return any(pattern in lowered for pattern in _TODO_ACK_PATTERNS)


# ---------------------------------------------------------------------------
# Tool invocations
# ---------------------------------------------------------------------------


def describe_tool_input(tool_input: Any, *, worktree: str | None, max_length: int) -> str:
    """``description`` if the call carries one, else its first argument."""
    if not isinstance(tool_input, dict) or not tool_input:
        return ""
    description = tool_input.get("description")
    if isinstance(description, str) and description.strip():
        return truncate(description.strip(), max_length)
    first = next(iter(tool_input.values()))
    if isinstance(first, str):
        text = first.strip()
        if text.startswith("/") and "\n" not in text:
            text = relative_path(text, worktree)
    else:
        text = json.dumps(first, ensure_ascii=False)
    text = text.splitlines()[0] if text else ""
    return truncate(text, max_length)


def format_tool_use(name: str, tool_input: Any, *, worktree: str | None, max_length: int) -> str:
    if name == "TodoWrite" and isinstance(tool_input, dict):
        rendered = render_todo_list(tool_input.get("todos"))
        if rendered is not None:
            return rendered
    detail = describe_tool_input(tool_input, worktree=worktree, max_length=max_length)
    if detail:
        return f"{TOOL_ICON} **{name}**: {detail}"
    return f"{TOOL_ICON} **{name}**"


# ---------------------------------------------------------------------------
# Tool results
# ---------------------------------------------------------------------------


class ResultShaper:
    """Decides how much of a tool result body is worth showing."""

    def __init__(self, config: FormattingConfig | None = None) -> None:
        self.config = config or FormattingConfig()

    def shape(self, body: str, *, is_error: bool) -> str | None:
        text = strip_ansi(body).strip("\n")
        if not is_error and is_todo_acknowledgment(text):
            return None
        if not text.strip():
            return None
        lines = text.splitlines()
        if len(lines) < self.config.short_result_lines:
            return _fence(text)
        if is_error:
            return _fence(self.filter_errors(lines))
        digest = self.summarize_commit(lines)
        if digest is not None:
            return digest
        return _fence(self.head_tail(lines))

    def summarize_commit(self, lines: list[str]) -> str | None:
        header = None
        for line in lines[:10]:
            header = _COMMIT_HEADER_RE.match(line.strip())
            if header:
                break
        if header is None:
            return None
        short_hash = header.group(1)[:7]
        message = header.group(2).strip()
        digest = f"📝 Commit {short_hash}: {message}"
        for line in lines:
            stats = _COMMIT_STATS_RE.search(line)
            if stats:
                files = stats.group(1)
                added = stats.group(2) or "0"
                removed = stats.group(3) or "0"
                noun = "file" if files == "1" else "files"
                digest += f" ({files} {noun} changed, +{added}, -{removed})"
                break
        return digest

    def filter_errors(self, lines: list[str]) -> str:
        context = self.config.error_context_lines
        keep: set[int] = set()
        for index, line in enumerate(lines):
            if _SEVERITY_RE.search(line):
                start = max(index - context, 0)
                end = min(index + context, len(lines) - 1)
                keep.update(range(start, end + 1))
        selected = [i for i in sorted(keep) if i < len(lines) and not _is_noise(lines[i])]
        if not selected:
            return self.head_tail(lines)

        out: list[str] = []
        previous = None
        for index in selected[: self.config.max_error_lines]:
            if previous is not None and index != previous + 1:
                out.append("...")
            out.append(lines[index])
            previous = index
        hidden = len(selected) - self.config.max_error_lines
        if hidden > 0:
            out.append(f"... [{hidden} more error lines omitted] ...")
        return "\n".join(out)

    def head_tail(self, lines: list[str]) -> str:
        head = self.config.head_lines
        tail = self.config.tail_lines
        if len(lines) <= head + tail:
            return "\n".join(lines)
        omitted = len(lines) - head - tail
        parts = lines[:head] + [f"... [{omitted} lines omitted] ..."]
        if tail:
            parts += lines[-tail:]
        return "\n".join(parts)


def _is_noise(line: str) -> bool:
    return bool(_NOISE_RE.search(line)) and not _SEVERITY_RE.search(line)


def _fence(text: str) -> str:
    return f"```\n{text}\n```"


def format_tool_result(label: str, body: str, *, is_error: bool, shaper: ResultShaper) -> str | None:
    shaped = shaper.shape(body, is_error=is_error)
    if shaped is None:
        if is_error:
            return f"❌ **{label}:**"
        return None
    icon = "❌" if is_error else "✅"
    return f"{icon} **{label}:**\n{shaped}"
