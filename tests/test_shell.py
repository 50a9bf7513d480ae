import time
import fcntl
import struct
import asyncio
import termios

import pytest

from wadm.shell import PtyShell, make_shell_env


async def _read_until(shell: PtyShell, needle: bytes, timeout: float = 5.0) -> bytes:
    buf = b""

    async def _collect():
        nonlocal buf
        while needle not in buf:
            chunk = await shell.read()
            if not chunk:
                return
            buf += chunk

    await asyncio.wait_for(_collect(), timeout)
    return buf


async def _read_all(shell: PtyShell, timeout: float = 5.0) -> bytes:
    buf = b""

    async def _collect():
        nonlocal buf
        while True:
            chunk = await shell.read()
            if not chunk:
                return
            buf += chunk

    await asyncio.wait_for(_collect(), timeout)
    return buf


def test_make_shell_env_strips_internal_variables(monkeypatch):
    monkeypatch.setenv("WADM_HOME", "/opt/wadm")
    monkeypatch.setenv("INVOCATION_ID", "abc")
    monkeypatch.setenv("KEEP_ME", "1")
    env = make_shell_env("vt100", extra={"LANG": "C.UTF-8"})
    assert "WADM_HOME" not in env
    assert "INVOCATION_ID" not in env
    assert env["KEEP_ME"] == "1"
    assert env["TERM"] == "vt100"
    assert env["LANG"] == "C.UTF-8"


@pytest.mark.asyncio
async def test_output_then_eof():
    shell = PtyShell(["/bin/sh", "-c", "printf hello"])
    await shell.start()
    assert shell.pid
    output = await _read_all(shell)
    assert b"hello" in output
    assert await shell.read() == b""
    await shell.terminate()
    assert shell.returncode is not None


@pytest.mark.asyncio
async def test_input_reaches_the_shell():
    shell = PtyShell(["/bin/cat"])
    await shell.start()
    try:
        shell.write(b"ping\n")
        output = await _read_until(shell, b"ping\r\nping")
        assert b"ping" in output
    finally:
        await shell.terminate()


@pytest.mark.asyncio
async def test_resize_sets_the_pty_window_size():
    shell = PtyShell(["/bin/cat"], cols=80, rows=24)
    await shell.start()
    try:
        shell.resize(132, 43)
        packed = fcntl.ioctl(shell._master_fd, termios.TIOCGWINSZ, b"\0" * 8)
        rows, cols, _, _ = struct.unpack("HHHH", packed)
        assert (cols, rows) == (132, 43)
    finally:
        await shell.terminate()


@pytest.mark.asyncio
async def test_terminate_is_idempotent_and_kills_the_shell():
    shell = PtyShell(["/bin/sh", "-c", "sleep 30"])
    await shell.start()
    await shell.terminate()
    await shell.terminate()
    assert shell.returncode is not None
    assert await shell.read() == b""
    shell.write(b"ignored")
    shell.resize(100, 30)


@pytest.mark.asyncio
async def test_missing_binary_raises_oserror():
    shell = PtyShell(["/nonexistent/shell"])
    with pytest.raises(OSError):
        await shell.start()


def _paste(lines: int = 4096) -> bytes:
    # 64 bytes per line, far more than the PTY input buffer holds.
    return b"".join(b"%06d" % i + b"x" * 57 + b"\n" for i in range(lines))


@pytest.mark.asyncio
async def test_large_write_never_blocks_the_event_loop():
    shell = PtyShell(["/bin/sh", "-c", "sleep 3; cat >/dev/null"])
    await shell.start()
    try:
        started = time.monotonic()
        shell.write(_paste())
        assert time.monotonic() - started < 0.5

        drained = asyncio.ensure_future(shell.drain())
        started = time.monotonic()
        await asyncio.sleep(0.1)
        assert time.monotonic() - started < 0.5
        assert not drained.done()
    finally:
        await shell.terminate()
    await asyncio.wait_for(drained, 1)


@pytest.mark.asyncio
async def test_large_write_to_an_echoing_program_completes():
    shell = PtyShell(["/bin/cat"])
    await shell.start()
    try:
        shell.write(_paste())
        await asyncio.wait_for(shell.drain(), 10)
        output = await _read_until(shell, b"004095" + b"x" * 57, timeout=10)
        assert b"000000" in output
    finally:
        await shell.terminate()


@pytest.mark.asyncio
async def test_drain_returns_at_once_when_nothing_is_pending():
    shell = PtyShell(["/bin/cat"])
    await shell.start()
    try:
        shell.write(b"hi\n")
        await asyncio.wait_for(shell.drain(), 1)
    finally:
        await shell.terminate()
