"""
WADM - Local Terminal Surface
=============================
Renders a remote session into the local controlling terminal.

While attached, stdin is put into raw mode and every chunk read from it
is handed to the controller verbatim; SIGWINCH triggers a (coalesced)
re-measurement. dispose() restores the original tty settings.
"""

import os
import sys
import signal
import shutil
import asyncio
import logging
import termios
import tty

from wadm.protocol import Dimension


logger = logging.getLogger(__name__)


class LocalTerminalSurface:
    """TerminalSurface backed by the process's own stdin/stdout."""

    def __init__(self, stdin=None, stdout=None, read_size: int = 4096):
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.read_size = read_size
        self._controller = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._saved_attrs = None

    def measure(self) -> Dimension:
        size = shutil.get_terminal_size()
        return Dimension(max(size.columns, 1), max(size.lines, 1))

    def write(self, data: bytes) -> None:
        out = self.stdout.buffer if hasattr(self.stdout, "buffer") else self.stdout
        out.write(data)
        out.flush()

    def attach(self, controller) -> None:
        """Start forwarding keystrokes and window-size changes to ``controller``."""
        if self._controller is not None:
            return
        self._controller = controller
        self._loop = asyncio.get_running_loop()

        fd = self.stdin.fileno()
        if os.isatty(fd):
            self._saved_attrs = termios.tcgetattr(fd)
            tty.setraw(fd)
        self._loop.add_reader(fd, self._on_stdin)
        self._loop.add_signal_handler(signal.SIGWINCH, controller.on_resize)

    def dispose(self) -> None:
        """Detach from the controller and restore the tty. Idempotent."""
        if self._controller is None:
            return
        fd = self.stdin.fileno()
        self._loop.remove_reader(fd)
        self._loop.remove_signal_handler(signal.SIGWINCH)
        if self._saved_attrs is not None:
            termios.tcsetattr(fd, termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None
        self._controller = None

    def _on_stdin(self) -> None:
        try:
            data = os.read(self.stdin.fileno(), self.read_size)
        except OSError as e:
            logger.debug("stdin read failed: %s", e)
            data = b""
        if not data:
            # Local EOF ends the session.
            self._loop.remove_reader(self.stdin.fileno())
            self._loop.create_task(self._controller.close())
            return
        self._controller.on_data(data)
