"""Command execution over a shared interactive shell.

``protocol`` frames a command with begin/done sentinels and decodes the
shell's output back into an ``ExecResult``; ``queue`` serialises concurrent
callers onto the one session.
"""

from shellmux.exec.protocol import (
    DecoderState,
    DecodeStep,
    ExecDecoder,
    Markers,
    NoiseFilter,
    build_exec_wrapper,
)
from shellmux.exec.queue import ExecQueue, ExecRequest, ExecTransport, RequestIdSource
from shellmux.exec.result import ExecResult

__all__ = [
    "DecoderState",
    "DecodeStep",
    "ExecDecoder",
    "ExecQueue",
    "ExecRequest",
    "ExecResult",
    "ExecTransport",
    "Markers",
    "NoiseFilter",
    "RequestIdSource",
    "build_exec_wrapper",
]
