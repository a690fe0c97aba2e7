"""One-shot suppression of bare prompt lines redrawn by the shell."""

from __future__ import annotations

from typing import Callable

from shellmux.text import strip_ansi, strip_line_ending


class PromptSuppressor:
    """Drops a bare prompt line at the head of the next meaningful output.

    Armed after an exec completes (the shell redraws its prompt) and when a
    session has just started. The first output with visible text disarms
    it. With ``persistent`` set, output that is nothing but a prompt is
    dropped without disarming, so a shell that redraws its first prompt
    several times stays quiet until the user does something.
    """

    def __init__(self, is_prompt: Callable[[str], bool], persistent: bool = False) -> None:
        self._is_prompt = is_prompt
        self._persistent = persistent
        self.armed = False

    def arm(self) -> None:
        self.armed = True

    def disarm(self) -> None:
        self.armed = False

    def filter(self, output: str) -> str:
        if not self.armed or not output:
            return output

        body = output.lstrip("\r\n")
        nl = body.find("\n")
        first = body if nl == -1 else body[: nl + 1]
        text = strip_ansi(strip_line_ending(first))

        if text.strip() and self._is_prompt(text):
            rest = "" if nl == -1 else body[nl + 1 :]
            if self._persistent and not rest:
                return ""
            self.armed = False
            return rest

        if output.strip():
            self.armed = False
        return output
