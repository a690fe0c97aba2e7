"""PTY process management — shells bound to pseudo-terminals.

Each session owns one shell process and one PTY master fd, streams decoded
output to a listener, and can be paused, resized, and killed.
"""

from shellmux.pty.manager import PTYManager, SessionListener
from shellmux.pty.session import PTYSession, PTYStatus

__all__ = [
    "PTYSession",
    "PTYStatus",
    "PTYManager",
    "SessionListener",
]
