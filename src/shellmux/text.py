"""Text helpers shared by noise matching and the display path."""

from __future__ import annotations

import re

_ANSI_CSI_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]")
_ANSI_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_NEWLINE_RE = re.compile(r"\r?\n")


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences (CSI and OSC) from text."""
    return _ANSI_CSI_RE.sub("", _ANSI_OSC_RE.sub("", text))


def sanitize_binary_output(text: str) -> str:
    """Remove binary garbage from output.

    Keeps printable chars, tabs, newlines, and carriage returns.
    Strips everything else (control chars, undefined code points, format chars).
    """
    cleaned = []
    for ch in text:
        cp = ord(ch)
        if ch in ("\t", "\n", "\r"):
            cleaned.append(ch)
        elif cp >= 32 and cp not in range(0x7F, 0xA0):
            if cp not in range(0xFFF9, 0xFFFC):
                cleaned.append(ch)
    return "".join(cleaned)


def strip_line_ending(line: str) -> str:
    """Drop a trailing ``\\n`` or ``\\r\\n`` (only one)."""
    if line.endswith("\r\n"):
        return line[:-2]
    if line.endswith("\n"):
        return line[:-1]
    return line


def to_display_lines(message: str) -> str:
    """Normalise newlines to CRLF and guarantee a trailing CRLF.

    Terminal widgets need explicit carriage returns; a bare ``\\n`` only
    moves the cursor down.
    """
    normalized = _NEWLINE_RE.sub("\r\n", message)
    return normalized if normalized.endswith("\r\n") else normalized + "\r\n"
