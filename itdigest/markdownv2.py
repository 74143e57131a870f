"""Escaping and truncation helpers for Telegram's MarkdownV2 parse mode."""

from __future__ import annotations

import re

# Characters that must be backslash-escaped in ordinary MarkdownV2 text.
_SPECIALS = frozenset("_*[]()~`>#+-=|{}.!\\")

_INLINE_END = re.compile(r"[`\n]")
_INLINE_END_BYTES = re.compile(rb"[`\n]")
_CODE_SPECIALS = re.compile(r"([`\\])")
_URL_SPECIALS = re.compile(r"([)\\])")

_FENCE = "```"
_FENCE_BYTES = b"```"
_NEWLINE = 0x0A
_BACKTICK = 0x60


def escape_markdown_v2(text: str) -> str:
    """Escape ``text`` so MarkdownV2 shows it as plain text.

    Inline code spans, fenced code blocks and ``[text](url)`` links are kept
    as constructs; inside code only backtick and backslash are escaped, inside
    a link URL only ``)`` and backslash. An unmatched backtick or ``[`` is
    escaped as a literal.
    """
    out: list[str] = []
    i = 0
    size = len(text)
    while i < size:
        char = text[i]
        if text.startswith(_FENCE, i):
            end = text.find(_FENCE, i + 3)
            if end < 0:
                out.append("\\`")
                i += 1
                continue
            out.append(_FENCE + escape_markdown_v2_code(text[i + 3 : end]) + _FENCE)
            i = end + 3
        elif char == "`":
            end = _inline_code_end(text, i, _INLINE_END)
            if end < 0:
                out.append("\\`")
                i += 1
                continue
            out.append("`" + escape_markdown_v2_code(text[i + 1 : end]) + "`")
            i = end + 1
        elif char == "[":
            link = _match_link(text, i)
            if link is None:
                out.append("\\[")
                i += 1
                continue
            label, url, i = link
            out.append(f"[{escape_markdown_v2(label)}]({escape_markdown_v2_url(url)})")
        else:
            out.append("\\" + char if char in _SPECIALS else char)
            i += 1
    return "".join(out)


def escape_markdown_v2_code(text: str) -> str:
    """Escape ``text`` for use inside an open code span or fenced block."""
    return _CODE_SPECIALS.sub(r"\\\1", text)


def escape_markdown_v2_url(text: str) -> str:
    """Escape ``text`` for use inside an open link URL."""
    return _URL_SPECIALS.sub(r"\\\1", text)


def truncate_markdown_v2(text: str, suffix: str, limit: int) -> str:
    """Truncate ``text`` to at most ``limit`` UTF-8 bytes, appending ``suffix``.

    Cuts prefer paragraph boundaries, then line breaks, and never land inside
    a code span or fenced block. If the suffix alone does not fit, the suffix
    is returned.
    """
    data = text.encode("utf-8")
    if len(data) <= limit:
        return text
    budget = limit - len(suffix.encode("utf-8"))
    if budget <= 0:
        return suffix
    cut = _safe_cut(data, budget)
    return data[:cut].decode("utf-8", errors="ignore") + suffix


def _inline_code_end(text, start, pattern) -> int:
    match = pattern.search(text, start + 1)
    if match is None or match.group() in ("\n", b"\n"):
        return -1
    return match.start()


def _match_link(text: str, start: int) -> tuple[str, str, int] | None:
    """Match ``[text](url)`` at ``start``; return label, url and the end index."""
    size = len(text)
    i = start + 1
    depth = 1
    while i < size and depth > 0:
        char = text[i]
        if char == "\\":
            i += 2
            continue
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
        elif char == "\n":
            return None
        if depth == 0:
            break
        i += 1
    if depth != 0 or i >= size or text[i] != "]":
        return None
    close = i
    if close + 1 >= size or text[close + 1] != "(":
        return None
    j = close + 2
    while j < size:
        char = text[j]
        if char == "\\":
            j += 2
            continue
        if char == ")":
            label = text[start + 1 : close]
            url = text[close + 2 : j]
            if not label or not url:
                return None
            return label, url, j + 1
        if char == "\n":
            return None
        j += 1
    return None


def _is_rune_start(byte: int) -> bool:
    return byte & 0xC0 != 0x80


def _safe_rune_boundary(data: bytes, index: int) -> int:
    index = min(index, len(data))
    while 0 < index < len(data) and not _is_rune_start(data[index]):
        index -= 1
    return index


def _safe_cut(data: bytes, limit: int) -> int:
    """Pick the best cut position <= ``limit`` outside any code construct."""
    if limit >= len(data):
        return len(data)
    min_cut = limit // 2
    best_para = best_line = best_rune = -1

    i = 0
    while i < len(data):
        if 0 < i <= limit:
            after_newline = data[i - 1] == _NEWLINE
            if i >= 2 and after_newline and data[i - 2] == _NEWLINE and i >= min_cut:
                best_para = i
            if after_newline and i >= min_cut:
                best_line = i
            if _is_rune_start(data[i]):
                best_rune = i
        if data.startswith(_FENCE_BYTES, i):
            close = data.find(_FENCE_BYTES, i + 3)
            if close < 0:
                # An unclosed fence: cut before it.
                if best_para >= 0:
                    return best_para
                if best_line >= 0:
                    return best_line
                return _safe_rune_boundary(data, min(i, limit))
            i = close + 3
        elif data[i] == _BACKTICK:
            close = _inline_code_end(data, i, _INLINE_END_BYTES)
            i = i + 1 if close < 0 else close + 1
        else:
            i += 1

    for candidate in (best_para, best_line, best_rune):
        if candidate >= 0:
            return candidate
    return _safe_rune_boundary(data, limit)