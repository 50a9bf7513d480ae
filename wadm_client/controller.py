"""
WADM - Session Controller
=========================
Owns the client-side lifecycle of one terminal view: exactly one
TerminalChannel, one rendering surface, from open() to close().

Lifecycle:
    open()       handshake with the current credential; on success attach
                 the surface, send the initial RESIZE (always the first
                 client frame) and schedule one deferred re-measurement,
                 because the first layout pass may under-report the size
    on_resize()  coalesced: any number of calls within one loop iteration
                 produce at most one measurement, and a RESIZE frame only
                 when the size actually changed
    on_data()    local keystrokes, forwarded verbatim
    close()      tear everything down; idempotent

There is no automatic reconnection. A refused or dropped session is
rendered once and stays that way; the user opens a new session.
"""

import asyncio
import logging
from typing import Callable, Protocol

from wadm.protocol import Dimension, Rejection, SessionState
from wadm_client.channel import TerminalChannel


logger = logging.getLogger(__name__)

SETTLE_DELAY = 0.1

CONNECTED_BANNER = b"\x1b[32mConnected to WADM Terminal\x1b[0m\r\n"
FORBIDDEN_BANNER = (
    b"\r\n\x1b[31mAccess Denied: Developer Mode is disabled.\x1b[0m\r\n"
    b"Enable Developer Mode in Settings to use the terminal.\r\n"
)
CLOSED_BANNER = b"\r\n\x1b[33mConnection closed.\x1b[0m\r\n"


class TerminalSurface(Protocol):
    """Where a session is rendered and where its size comes from."""

    def measure(self) -> Dimension: ...

    def write(self, data: bytes) -> None: ...

    def attach(self, controller: "SessionController") -> None: ...

    def dispose(self) -> None: ...


class SessionController:
    """
    Client-side owner of one terminal session.

    Attributes:
        gateway:   OutboundGateway used for the handshake.
        surface:   TerminalSurface the session renders into.
        channel:   The TerminalChannel, once open() has been called.
        dimension: Last size sent to the server.
    """

    def __init__(
        self,
        gateway,
        surface: TerminalSurface,
        channel_factory: Callable[..., TerminalChannel] = TerminalChannel,
        settle_delay: float = SETTLE_DELAY,
    ):
        self.gateway = gateway
        self.surface = surface
        self.settle_delay = settle_delay
        self.channel: TerminalChannel | None = None
        self.dimension: Dimension | None = None

        self._channel_factory = channel_factory
        self._resize_handle: asyncio.Handle | None = None
        self._settle_handle: asyncio.TimerHandle | None = None
        self._closed = False
        self._released = False
        self._done = asyncio.Event()

    @property
    def state(self) -> SessionState:
        return self.channel.state if self.channel else SessionState.CONNECTING

    @property
    def status_text(self) -> str:
        """Human-readable session status for headers and exit messages."""
        state = self.state
        if state is SessionState.FORBIDDEN and self.channel.rejection is Rejection.FORBIDDEN:
            return "Access denied: Developer Mode is disabled"
        if state is SessionState.CONNECTED:
            return "Connected"
        if state is SessionState.CONNECTING:
            return "Connecting"
        return "Disconnected"

    async def open(self) -> SessionState:
        """Open the session; suspends until the handshake resolves."""
        if self.channel is not None:
            raise RuntimeError("SessionController.open() may only be called once")

        self.channel = self._channel_factory(
            self.gateway,
            on_data=self.on_remote_data,
            on_close=self._on_channel_closed,
        )
        state = await self.channel.open()
        if state is not SessionState.CONNECTED or self._closed:
            return self.state

        self.surface.attach(self)
        self.surface.write(CONNECTED_BANNER)
        self._send_dimension(force=True)
        self._settle_handle = asyncio.get_running_loop().call_later(
            self.settle_delay, self.on_resize
        )
        return state

    def on_resize(self, event=None) -> None:
        """Schedule a re-measurement of the surface (coalesced)."""
        if self._closed or self._resize_handle is not None:
            return
        self._resize_handle = asyncio.get_running_loop().call_soon(self._flush_resize)

    def on_data(self, data: bytes) -> None:
        """Forward locally typed input verbatim."""
        if not self._closed and self.channel is not None:
            self.channel.send_input(data)

    def on_remote_data(self, data: bytes) -> None:
        """Render bytes received from the shell, in arrival order."""
        if not self._closed:
            self.surface.write(data)

    async def close(self) -> None:
        """Close the connection and release the surface. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._cancel_timers()
        if self.channel is not None:
            await self.channel.close()
        self._release()

    async def wait_closed(self) -> None:
        """Wait until the session has ended, whichever side ended it."""
        await self._done.wait()

    # -- Internal helpers ------------------------------------------------------

    def _flush_resize(self) -> None:
        self._resize_handle = None
        self._send_dimension()

    def _send_dimension(self, force: bool = False) -> None:
        if self._closed or self.channel is None or not self.channel.is_connected:
            return
        dim = self.surface.measure()
        if not force and dim == self.dimension:
            return
        self.dimension = dim
        self.channel.send_resize(dim)
        logger.debug("Sent resize %s", dim)

    def _on_channel_closed(self, channel: TerminalChannel) -> None:
        if not self._closed:
            if channel.rejection is Rejection.FORBIDDEN:
                self.surface.write(FORBIDDEN_BANNER)
            else:
                self.surface.write(CLOSED_BANNER)
        self._cancel_timers()
        self._release()

    def _cancel_timers(self) -> None:
        for handle in (self._resize_handle, self._settle_handle):
            if handle is not None:
                handle.cancel()
        self._resize_handle = None
        self._settle_handle = None

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        self.surface.dispose()
        self._done.set()
