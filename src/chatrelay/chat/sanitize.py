"""Clean-up applied to a completed assistant message before it is shown."""

from __future__ import annotations

import re

_BAR = "[|｜]"

_DSML_PATTERNS = (
    re.compile(
        rf"<{_BAR}DSML{_BAR}function_calls>.*?</{_BAR}DSML{_BAR}function_calls>",
        re.DOTALL,
    ),
    re.compile(rf"<{_BAR}DSML{_BAR}invoke.*?</{_BAR}DSML{_BAR}invoke>", re.DOTALL),
    re.compile(rf"^\s*<{_BAR}DSML{_BAR}.*>\s*$", re.MULTILINE),
)

_URL_RE = re.compile(r"https?://[^\s)]+")
_NUMBERED_LINK_RE = re.compile(
    r"(\d+\.\s+(?:\*\*[^*]+\*\*|[\w\s\-]+)?[\s:]+)(https?://[^\s)]+)"
)


def strip_tool_markup(text: str) -> str:
    """Remove inline tool-call markup some models leak into visible text."""

    for pattern in _DSML_PATTERNS:
        text = pattern.sub("", text)
    return text


def _split_numbered_links(line: str) -> list[str] | None:
    matches = list(_NUMBERED_LINK_RE.finditer(line))
    if not matches:
        return None

    pieces: list[str] = []
    position = 0
    for match in matches:
        if match.start() > position:
            before = line[position : match.start()].strip()
            if before:
                pieces.append(before)
        pieces.append(match.group(1) + match.group(2))
        position = match.end()
    remaining = line[position:].strip()
    if remaining:
        pieces.append(remaining)
    return pieces


def _split_bare_links(line: str, urls: list[str]) -> list[str]:
    pieces: list[str] = []
    position = 0
    for url in urls:
        index = line.find(url, position)
        if index < 0:
            continue
        piece = line[position : index + len(url)].strip()
        if piece:
            pieces.append(piece)
        position = index + len(url)
    remaining = line[position:].strip()
    if remaining and pieces:
        pieces[-1] = f"{pieces[-1]} {remaining}"
    elif remaining:
        pieces.append(remaining)
    return pieces


def split_link_lines(text: str) -> str:
    """Put each URL of a multi-link line on its own line."""

    fixed: list[str] = []
    for line in text.split("\n"):
        urls = _URL_RE.findall(line)
        if len(urls) < 2:
            fixed.append(line)
            continue

        pieces = _split_numbered_links(line)
        if pieces is None:
            pieces = _split_bare_links(line, urls)
        if len(pieces) > 1:
            fixed.extend(pieces)
        else:
            fixed.append(line)
    return "\n".join(fixed)


def sanitize_assistant_text(text: str | None) -> str:
    """Return visible assistant text with markup removed and links normalized."""

    if not text:
        return ""
    return split_link_lines(strip_tool_markup(text)).strip()


__all__ = ["sanitize_assistant_text", "split_link_lines", "strip_tool_markup"]
