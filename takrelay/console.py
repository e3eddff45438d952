import asyncio
import os
import sys
import termios
import tty
from typing import Any, Optional, TextIO

from takrelay.node import RelayServer

"""
console.py: single-keypress operator controls for an interactive relay.

'Q' (either case) asks the relay to shut down; any other key prints how many
participants are connected. stdin is put into cbreak mode while attached so
keys arrive immediately and are not echoed.
"""

QUIT_KEYS = ("q", "Q")
PROMPT = "press 'Q' to exit program"


class OperatorConsole:
    def __init__(self, server: RelayServer, stream: TextIO = sys.stdin) -> None:
        self.server = server
        self.stream = stream
        self._fd: Optional[int] = None
        self._saved: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def handle_key(self, key: str) -> bool:
        """React to one keypress. Returns True if it requested shutdown."""
        if key in QUIT_KEYS:
            self.server.request_shutdown()
            return True
        print(f"{self.server.participant_count} participants currently; {PROMPT}")
        return False

    def attach(self, loop: asyncio.AbstractEventLoop) -> bool:
        """Start watching the terminal. No-op (returns False) when stdin is not a TTY."""
        if not self.stream.isatty():
            return False
        fd = self.stream.fileno()
        self._saved = termios.tcgetattr(fd)
        tty.setcbreak(fd)
        loop.add_reader(fd, self._on_readable)
        self._fd = fd
        self._loop = loop
        return True

    def detach(self) -> None:
        """Stop watching and restore the terminal settings."""
        if self._fd is None:
            return
        if self._loop is not None:
            self._loop.remove_reader(self._fd)
        if self._saved is not None:
            termios.tcsetattr(self._fd, termios.TCSANOW, self._saved)
        self._fd = None
        self._saved = None
        self._loop = None

    def _on_readable(self) -> None:
        if self._fd is None:
            return
        data = os.read(self._fd, 1)
        if not data:
            # stdin hit EOF; stop polling it.
            self.detach()
            return
        self.handle_key(data.decode("utf-8", errors="replace"))
