from shellmux.terminal.controller import LifecycleState, TerminalController
from shellmux.terminal.display import FileDescriptorSink, WireSink
from shellmux.terminal.flow import DisplaySink, FlowController
from shellmux.terminal.prompt import PromptSuppressor

__all__ = [
    "DisplaySink",
    "FileDescriptorSink",
    "FlowController",
    "LifecycleState",
    "PromptSuppressor",
    "TerminalController",
    "WireSink",
]
