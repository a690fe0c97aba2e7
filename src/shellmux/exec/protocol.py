"""Marker protocol — request/response framing over an interactive shell.

A PTY is a bare byte stream, so a command's output and exit status are
recovered by wrapping it in a small shell fragment that prints sentinels
around it::

    printf '%s\\n' '__SHELLMUX_EXEC_BEGIN__<id>__'
    <command>
    __shellmux_exec_code=$?
    printf '%s%s%s\\n' '__SHELLMUX_EXEC_DONE__<id>__' "$__shellmux_exec_code" '__'

The fragment is typed into the shell exactly as a human would type it.
``ExecDecoder`` then scans the output incrementally for the two sentinel
lines and strips the shell's echo of the fragment itself.

Markers are only recognised on complete lines (a ``\\r`` inside a line
also bounds one), which is what makes the decoded result independent of
how the stream happens to be chunked.

Output that does not end in a newline shares its line with the next prompt
and the echoed exit-code assignment. The prompt is learned from the line
that echoes the begin ``printf``, and the text in front of it is kept.

Known limitation: if a command prints the exact begin/done sentinel for its
own request id on a line of its own, it is taken for the real one.
"""

from __future__ import annotations

import enum
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable

from shellmux.exec.result import ExecResult
from shellmux.text import strip_ansi, strip_line_ending

logger = logging.getLogger(__name__)

BEGIN_MARKER_PREFIX = "__SHELLMUX_EXEC_BEGIN__"
DONE_MARKER_PREFIX = "__SHELLMUX_EXEC_DONE__"
MARKER_SUFFIX = "__"
DONE_TERMINATOR = "__"
EXIT_CODE_VAR = "__shellmux_exec_code"
EXIT_CODE_ASSIGNMENT = f"{EXIT_CODE_VAR}=$?"
BEGIN_PRINTF = "printf '%s\\n'"
DONE_PRINTF = "printf '%s%s%s\\n'"

# Leading escape sequences a shell may emit before a line (bracketed paste
# toggles, colour resets).
_LEADING_ANSI = r"(?:\x1b\[[0-9;?]*[a-zA-Z])*"
_INCOMPLETE_ESCAPE_RE = re.compile(r"\x1b(?:\[[0-9;?]*)?$")
# Readline leaves bracketed-paste mode with an escape and a bare \r before
# the first output line.
_ESCAPE_ONLY_SEGMENT_RE = re.compile(r"\A(?:\x1b\[[0-9;?]*[a-zA-Z])+\r(?!\n)")
_PROMPT_CHARS = " \t$%#>"

# Longest unterminated marker candidate, beyond the marker itself (room for
# escape sequences).
_BEGIN_SLACK = 256
# Longest line kept whole while waiting for the begin marker.
_PRE_BEGIN_LINE_LIMIT = 4096


@dataclass(frozen=True)
class Markers:
    """Begin/done sentinels for one request."""

    request_id: str
    begin: str
    done: str

    @classmethod
    def for_request(cls, request_id: str) -> Markers:
        return cls(
            request_id=request_id,
            begin=f"{BEGIN_MARKER_PREFIX}{request_id}{MARKER_SUFFIX}",
            done=f"{DONE_MARKER_PREFIX}{request_id}{MARKER_SUFFIX}",
        )


def build_exec_wrapper(command: str, markers: Markers) -> str:
    """Wrap ``command`` in the sentinel fragment written to the shell."""
    normalized = command if command.endswith("\n") else f"{command}\n"
    return (
        f"{BEGIN_PRINTF} '{markers.begin}'\n"
        f"{normalized}"
        f"{EXIT_CODE_ASSIGNMENT}\n"
        f"{DONE_PRINTF} '{markers.done}' \"${EXIT_CODE_VAR}\" '{DONE_TERMINATOR}'\n"
    )


class NoiseFilter:
    """Recognises lines the wrapper itself puts on the screen.

    A line is noise when it contains either marker, the exit-code
    assignment, or the done ``printf`` (all echoes of the wrapper), or when
    it is nothing but shell prompt filler. Blank lines are never noise.
    """

    def __init__(self, markers: Markers, prompt_patterns: Iterable[str] = ()) -> None:
        self._needles = (
            EXIT_CODE_ASSIGNMENT,
            DONE_PRINTF,
            markers.begin,
            markers.done,
        )
        self._prompt_res = [re.compile(p) for p in prompt_patterns]

    def is_noise(self, line: str) -> bool:
        normalized = strip_ansi(strip_line_ending(line))
        if not normalized.strip():
            return False
        if any(needle in normalized for needle in self._needles):
            return True
        return self.is_prompt(normalized)

    def is_prompt(self, text: str) -> bool:
        return any(r.search(text) for r in self._prompt_res)


class DecoderState(enum.Enum):
    AWAITING_BEGIN = "awaiting_begin"
    CAPTURING = "capturing"
    DONE = "done"


@dataclass
class DecodeStep:
    """What one ``feed()`` produced.

    ``visible`` is captured command output for the display. ``trailing`` is
    output that arrived after the done line in the same chunk; it no longer
    belongs to the request. ``result`` is set once the done line is seen.
    """

    visible: str = ""
    trailing: str = ""
    result: ExecResult | None = None


@dataclass
class ExecDecoder:
    """Streaming parser for one wrapped command's output.

    Holds the state of an in-flight request: which sentinel it is waiting
    for, the unterminated tail of the stream, and the output captured so
    far.
    """

    markers: Markers
    noise: NoiseFilter
    command: str = ""
    suppress_command_echo: bool = True
    max_partial_line: int = 64 * 1024

    state: DecoderState = field(default=DecoderState.AWAITING_BEGIN, init=False)
    _tail: str = field(default="", init=False)
    # The unterminated segment at the head of _tail can no longer be a marker.
    _tail_dirty: bool = field(default=False, init=False)
    _captured: list[str] = field(default_factory=list, init=False)
    _echo: deque[str] = field(default_factory=deque, init=False)
    # Prompt the shell drew in front of the echoed begin printf, if any.
    _prompt: str | None = field(default=None, init=False)
    _begin_echo: str = field(init=False, repr=False)
    _done_re: re.Pattern[str] = field(init=False, repr=False)
    _done_prefix_re: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        done = re.escape(self.markers.done)
        self._done_re = re.compile(_LEADING_ANSI + done + r"(-?\d+)" + re.escape(DONE_TERMINATOR))
        self._done_prefix_re = re.compile(done + r"-?\d*_{0,2}")
        self._begin_echo = f"{BEGIN_PRINTF} '{self.markers.begin}'"
        if self.suppress_command_echo:
            self._echo = deque(
                line.strip() for line in self.command.splitlines() if line.strip()
            )

    @property
    def captured(self) -> str:
        return _normalize_captured("".join(self._captured))

    def feed(self, chunk: str) -> DecodeStep:
        if self.state is DecoderState.AWAITING_BEGIN:
            return self._feed_awaiting(chunk)
        if self.state is DecoderState.CAPTURING:
            return self._feed_capturing(chunk)
        return DecodeStep(trailing=chunk)

    # ------------------------------------------------------------------
    # AWAITING_BEGIN: everything before the begin line is the shell echoing
    # the wrapper and is dropped.
    # ------------------------------------------------------------------

    def _feed_awaiting(self, chunk: str) -> DecodeStep:
        buf = self._tail + chunk
        head_dirty = self._tail_dirty
        self._tail = ""
        self._tail_dirty = False

        pos = 0
        while True:
            nl = buf.find("\n", pos)
            if nl == -1:
                break
            line = buf[pos : nl + 1]
            pos = nl + 1
            line_dirty, head_dirty = head_dirty, False
            if self._is_begin_line(line, skip_first=line_dirty):
                logger.debug("Begin marker seen for %s", self.markers.request_id)
                self.state = DecoderState.CAPTURING
                return self._feed_capturing(buf[pos:])
            if not line_dirty and len(line) <= _PRE_BEGIN_LINE_LIMIT:
                self._learn_prompt(line)

        self._retain_begin_candidate(buf[pos:], head_dirty)
        return DecodeStep()

    def _is_begin_line(self, line: str, skip_first: bool) -> bool:
        segments = strip_line_ending(line).split("\r")
        for i, segment in enumerate(segments):
            if i == 0 and skip_first:
                continue
            if strip_ansi(segment) == self.markers.begin:
                return True
        return False

    def _learn_prompt(self, line: str) -> None:
        text = strip_ansi(strip_line_ending(line)).rsplit("\r", 1)[-1]
        idx = text.find(self._begin_echo)
        if idx > 0 and text[:idx].strip():
            self._prompt = text[:idx]

    def _retain_begin_candidate(self, rest: str, head_dirty: bool) -> None:
        if len(rest) <= _PRE_BEGIN_LINE_LIMIT:
            self._tail = rest
            self._tail_dirty = head_dirty
            return
        # Only the last \r-segment of an overlong line can still turn into a
        # standalone marker; keep it (with the \r in front of it) if it is a
        # plausible prefix. A trailing \r may be the first half of a \r\n
        # line ending.
        body = rest[:-1] if rest.endswith("\r") else rest
        cr = body.rfind("\r")
        segment = rest[cr + 1 :]
        text = segment[:-1] if segment.endswith("\r") else segment
        visible = _INCOMPLETE_ESCAPE_RE.sub("", strip_ansi(text))
        if (
            cr >= 0
            and len(segment) <= len(self.markers.begin) + _BEGIN_SLACK
            and self.markers.begin.startswith(visible)
        ):
            self._tail = rest[cr:]
        else:
            self._tail = "\r" if rest.endswith("\r") else ""
        self._tail_dirty = True

    # ------------------------------------------------------------------
    # CAPTURING: complete lines are either the done line, wrapper noise, or
    # command output.
    # ------------------------------------------------------------------

    def _feed_capturing(self, chunk: str) -> DecodeStep:
        buf = self._tail + chunk
        head_dirty = self._tail_dirty
        self._tail = ""
        self._tail_dirty = False
        visible: list[str] = []

        pos = 0
        while True:
            nl = buf.find("\n", pos)
            if nl == -1:
                break
            line = buf[pos : nl + 1]
            pos = nl + 1
            line_dirty, head_dirty = head_dirty, False
            done = self._match_done(line, skip_first=line_dirty)
            if done is not None:
                exit_code, before, trailing = done
                if strip_ansi(before).strip() and not self.noise.is_noise(before):
                    visible.append(before)
                    self._captured.append(
                        before if line_dirty else _ESCAPE_ONLY_SEGMENT_RE.sub("", before)
                    )
                self.state = DecoderState.DONE
                logger.debug(
                    "Done marker seen for %s (exit %d)", self.markers.request_id, exit_code
                )
                return DecodeStep(
                    visible="".join(visible),
                    trailing=trailing + buf[pos:],
                    result=ExecResult.completed(exit_code, self.captured),
                )
            if self._keep_line(line):
                visible.append(line)
                self._captured.append(
                    line if line_dirty else _ESCAPE_ONLY_SEGMENT_RE.sub("", line)
                )
                continue
            unterminated = self._output_before_assignment(line)
            if unterminated:
                visible.append(unterminated + "\r\n")
                self._captured.append(unterminated)

        rest = buf[pos:]
        if len(rest) >= self.max_partial_line:
            # An endless unterminated line (progress bars) is flushed; the
            # remainder continues a line already started. A trailing segment
            # that may still become the done line stays behind.
            held = self._done_candidate_start(rest, head_dirty)
            if held == len(rest):
                held -= len(rest) % self.max_partial_line
            flushed, rest = rest[:held], rest[held:]
            if flushed:
                visible.append(flushed)
                self._captured.append(
                    flushed if head_dirty else _ESCAPE_ONLY_SEGMENT_RE.sub("", flushed)
                )
                head_dirty = True
        self._tail = rest
        self._tail_dirty = head_dirty
        return DecodeStep(visible="".join(visible))

    def _done_candidate_start(self, rest: str, head_dirty: bool) -> int:
        """Index of the \\r that starts a possible done line, else ``len(rest)``.

        Returns 0 when the whole of ``rest`` is the candidate.
        """
        body = rest[:-1] if rest.endswith("\r") else rest
        cr = body.rfind("\r")
        if cr < 0 and head_dirty:
            return len(rest)
        segment = rest[cr + 1 :]
        if len(segment) > len(self.markers.done) + _BEGIN_SLACK:
            return len(rest)
        text = segment[:-1] if segment.endswith("\r") else segment
        visible = _INCOMPLETE_ESCAPE_RE.sub("", strip_ansi(text))
        if self.markers.done.startswith(visible) or self._done_prefix_re.fullmatch(visible):
            return max(cr, 0)
        return len(rest)

    def _match_done(self, line: str, skip_first: bool) -> tuple[int, str, str] | None:
        """Exit code, text before the marker, and text after it."""
        body = strip_line_ending(line)
        ending = line[len(body) :]
        segments = body.split("\r")
        for i, segment in enumerate(segments):
            if i == 0 and skip_first:
                continue
            m = self._done_re.match(segment)
            if m is None:
                continue
            before = "\r".join(segments[:i])
            after = "\r".join([segment[m.end() :], *segments[i + 1 :]])
            trailing = after + ending if after.strip() else ""
            return int(m.group(1)), before, trailing
        return None

    def _keep_line(self, line: str) -> bool:
        if self.noise.is_noise(line):
            return False
        if self._echo and self._is_command_echo(line):
            self._echo.popleft()
            return False
        return True

    def _is_command_echo(self, line: str) -> bool:
        text = strip_ansi(strip_line_ending(line)).rstrip()
        expected = self._echo[0]
        if not text.endswith(expected):
            return False
        prefix = text[: len(text) - len(expected)]
        return not prefix or prefix[-1] in _PROMPT_CHARS or prefix[-1] == "\r"

    def _output_before_assignment(self, line: str) -> str:
        # Output without a final newline shares its line with the next
        # prompt and the echoed exit-code assignment.
        if self._prompt is None:
            return ""
        text = strip_ansi(strip_line_ending(line))
        idx = text.find(EXIT_CODE_ASSIGNMENT)
        if idx < 0:
            return ""
        head = text[:idx].rsplit("\r", 1)[-1]
        if not head.endswith(self._prompt):
            return ""
        return head[: len(head) - len(self._prompt)]


def _normalize_captured(text: str) -> str:
    # The PTY line discipline turns every \n the command wrote into \r\n.
    return text.replace("\r\n", "\n")
