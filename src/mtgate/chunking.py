"""Markdown-aware text chunking for outbound messages.

Text is split on line boundaries first, overlong lines on whitespace, and
words longer than the limit are hard-split. A fenced code block that spans a
chunk boundary is closed at the end of one chunk and reopened at the start of
the next, so every chunk renders on its own.
"""

from __future__ import annotations

import re

FENCE_RE = re.compile(r"^\s*(`{3,}|~{3,})")


def _fence_marker(fence_line: str) -> str:
    match = FENCE_RE.match(fence_line)
    return match.group(1) if match else "```"


def _toggle_fence(fence: str | None, line: str) -> str | None:
    if fence is None:
        return line.strip() if FENCE_RE.match(line) else None
    marker = _fence_marker(fence)
    stripped = line.strip()
    if stripped.startswith(marker) and set(stripped) == {marker[0]}:
        return None
    return fence


def _cost(lines: list[str], line: str, fence: str | None) -> int:
    size = sum(len(item) for item in lines) + len(lines) + len(line)
    if fence is not None:
        size += 1 + len(_fence_marker(fence))
    return size


def _split_at_boundary(line: str, room: int) -> tuple[str, str]:
    if len(line) <= room:
        return line, ""
    cut = line.rfind(" ", 0, room + 1)
    if cut <= 0:
        return line[:room], line[room:]
    return line[:cut].rstrip(), line[cut + 1 :]


def chunk_markdown_text(text: str, limit: int) -> list[str]:
    if limit <= 0:
        raise ValueError("chunk limit must be positive")
    if not text:
        return []
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    lines: list[str] = []
    fence: str | None = None
    reopened = False

    def flush() -> None:
        nonlocal lines, reopened
        body = "\n".join(lines)
        if fence is not None:
            body = f"{body}\n{_fence_marker(fence)}"
        chunks.append(body)
        lines = [fence] if fence is not None else []
        reopened = fence is not None

    def has_content() -> bool:
        return len(lines) > (1 if reopened else 0)

    for line in text.split("\n"):
        while True:
            next_fence = _toggle_fence(fence, line)
            if _cost(lines, line, next_fence) <= limit:
                lines.append(line)
                fence = next_fence
                break
            if has_content():
                flush()
                continue
            room = limit - _cost(lines, "", fence)
            if room <= 0:
                # the fence overhead alone exceeds the limit
                lines, fence, reopened = [], None, False
                room = limit
            head, line = _split_at_boundary(line, room)
            lines.append(head)
            flush()
            if not line:
                break

    if has_content():
        body = "\n".join(lines)
        chunks.append(body)
    return chunks
