"""
WADM - Shell Process
====================
One shell process attached to a fresh pseudo-terminal.

Each terminal session owns exactly one PtyShell. The shell runs in its own
session with the PTY slave as its controlling terminal, so job control and
SIGWINCH work as in a normal login. Output is read from the PTY master
through the event loop (``loop.add_reader``), never by a blocking thread.
Input that the PTY cannot take yet is buffered per shell and flushed by
``loop.add_writer``; ``drain()`` waits for that buffer to empty.

Usage:
    shell = PtyShell(["/bin/bash", "--login"], cols=80, rows=24)
    await shell.start()
    shell.write(b"ls\\n")
    await shell.drain()            # wait until the PTY took all input
    chunk = await shell.read()     # b"" once the shell has exited
    shell.resize(120, 40)
    await shell.terminate()
"""

import os
import re
import pty
import fcntl
import signal
import struct
import asyncio
import logging
import termios


logger = logging.getLogger(__name__)

DEFAULT_COLS = 80
DEFAULT_ROWS = 24
TERMINATE_GRACE_SECONDS = 2.0

# WADM-internal variables never reach the user's shell.
_INTERNAL_ENV_RE = re.compile(r"^WADM_.*|^INVOCATION_ID$")


def make_shell_env(term: str = "xterm-256color", extra: dict | None = None) -> dict[str, str]:
    """
    Build the environment for a terminal shell.

    Starts from the server's environment, strips WADM-internal
    variables and sets TERM.
    """
    env = {
        k: v
        for k, v in os.environ.items()
        if not _INTERNAL_ENV_RE.match(k)
    }
    env["TERM"] = term
    if extra:
        env.update(extra)
    return env


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(): stdin is the PTY slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyShell:
    """
    A shell process on a pseudo-terminal.

    Attributes:
        argv:      Command line of the shell.
        env:       Environment for the shell process.
        cols/rows: Current window size of the PTY.
        read_size: Maximum bytes per output chunk.
    """

    def __init__(
        self,
        argv: list[str],
        env: dict[str, str] | None = None,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        read_size: int = 4096,
    ):
        self.argv = list(argv)
        self.env = env if env is not None else make_shell_env()
        self.cols = cols
        self.rows = rows
        self.read_size = read_size

        self._proc: asyncio.subprocess.Process | None = None
        self._master_fd: int | None = None
        self._output: asyncio.Queue[bytes] = asyncio.Queue()
        self._eof = False
        self._terminated = False
        self._pending = bytearray()
        self._writer_armed = False
        self._drained = asyncio.Event()
        self._drained.set()

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    async def start(self) -> None:
        """
        Open the PTY and spawn the shell.

        Raises:
            OSError: The PTY could not be allocated or the shell binary
                could not be executed.
        """
        home = self.env.get("HOME")
        cwd = home if home and os.path.isdir(home) else "/"

        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, self.cols, self.rows)
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=self.env,
                cwd=cwd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        self._master_fd = master_fd
        asyncio.get_running_loop().add_reader(master_fd, self._on_readable)
        logger.info("Spawned shell %s (pid %s)", self.argv[0], self.pid)

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, self.read_size)
        except BlockingIOError:
            return
        except OSError:
            # EIO: the slave side is gone, the shell has exited.
            data = b""

        if not data:
            self._mark_eof()
            return
        self._output.put_nowait(data)

    def _mark_eof(self) -> None:
        if self._eof:
            return
        self._eof = True
        if self._master_fd is not None:
            asyncio.get_running_loop().remove_reader(self._master_fd)
        self._output.put_nowait(b"")

    async def read(self) -> bytes:
        """Return the next chunk of output, or b"" once the shell has exited."""
        if self._eof and self._output.empty():
            return b""
        return await self._output.get()

    def write(self, data: bytes) -> None:
        """
        Queue input bytes for the shell, verbatim. Never blocks.

        Whatever the PTY cannot take right now stays in the pending buffer
        and is flushed when the master fd becomes writable.
        """
        if self._master_fd is None or self._terminated or not data:
            return
        self._pending += data
        if not self._writer_armed:
            self._flush()

    async def drain(self) -> None:
        """Wait until all queued input has reached the PTY."""
        await self._drained.wait()

    def _flush(self) -> None:
        if self._master_fd is None:
            return
        while self._pending:
            try:
                written = os.write(self._master_fd, self._pending)
            except BlockingIOError:
                break
            except OSError as e:
                # EIO: the slave side is gone, the input has nowhere to go.
                logger.debug("Dropped %d bytes of shell input: %s", len(self._pending), e)
                self._pending.clear()
                break
            del self._pending[:written]

        if self._pending:
            self._drained.clear()
            if not self._writer_armed:
                asyncio.get_running_loop().add_writer(self._master_fd, self._flush)
                self._writer_armed = True
        else:
            self._disarm_writer()
            self._drained.set()

    def _disarm_writer(self) -> None:
        if self._writer_armed and self._master_fd is not None:
            asyncio.get_running_loop().remove_writer(self._master_fd)
        self._writer_armed = False

    def resize(self, cols: int, rows: int) -> None:
        """Set the PTY window size; the kernel delivers SIGWINCH to the shell."""
        self.cols = cols
        self.rows = rows
        if self._master_fd is not None and not self._terminated:
            _set_winsize(self._master_fd, cols, rows)

    async def terminate(self) -> None:
        """
        Kill the shell's process group and release the PTY.

        Sends SIGHUP and SIGTERM, waits briefly, then SIGKILL. Safe to call
        more than once.
        """
        if self._terminated:
            return
        self._terminated = True

        if self._master_fd is not None:
            asyncio.get_running_loop().remove_reader(self._master_fd)
        self._disarm_writer()
        self._pending.clear()
        self._drained.set()

        proc = self._proc
        if proc is not None and proc.returncode is None:
            for sig in (signal.SIGHUP, signal.SIGTERM):
                _signal_group(proc.pid, sig)
            try:
                await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                _signal_group(proc.pid, signal.SIGKILL)
                await proc.wait()

        if self._master_fd is not None:
            os.close(self._master_fd)
            self._master_fd = None

        if not self._eof:
            self._eof = True
            self._output.put_nowait(b"")

        logger.info("Terminated shell (pid %s, exit %s)", self.pid, self.returncode)


def _signal_group(pid: int, sig: int) -> None:
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        pass
