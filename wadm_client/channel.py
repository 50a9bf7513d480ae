"""
WADM - Terminal Channel
=======================
Client side of the terminal session protocol (see wadm.protocol).

One TerminalChannel is one connection, and one connection is one remote
shell. The channel is single-use: after it reaches DISCONNECTED or
FORBIDDEN, recovery means opening a new channel.

State machine:
    CONNECTING --handshake ok----------------> CONNECTED
    CONNECTING --401 / 403-------------------> FORBIDDEN   (rejection set)
    CONNECTING --network error---------------> DISCONNECTED
    CONNECTED  --close with forbidden marker-> FORBIDDEN
    CONNECTED  --any other close / close()---> DISCONNECTED

Outbound frames are queued FIFO onto a single writer task, so a RESIZE
sent before a keystroke always reaches the server first. Inbound messages
are delivered to ``on_data`` one complete message at a time, in order.
"""

import asyncio
import logging
from typing import Callable

from websockets.exceptions import ConnectionClosed

from wadm.protocol import (
    TERMINAL_PATH,
    Dimension,
    Rejection,
    SessionState,
    classify_close,
    encode_resize,
)
from wadm_client.errors import AccessForbidden, AuthorizationError, GatewayError


logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_SIZE = 2 * 1024 * 1024


class TerminalChannel:
    """
    One interactive shell connection.

    Attributes:
        state:        Current SessionState.
        rejection:    Why the session was refused (FORBIDDEN state only).
        close_code:   Close code received from the server, if any.
        close_reason: Close reason received from the server, if any.
    """

    def __init__(
        self,
        gateway,
        on_data: Callable[[bytes], None],
        on_close: Callable[["TerminalChannel"], None] | None = None,
        path: str = TERMINAL_PATH,
        max_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    ):
        self.gateway = gateway
        self.path = path
        self.max_size = max_size
        self.on_data = on_data
        self.on_close = on_close

        self.state = SessionState.CONNECTING
        self.rejection: Rejection | None = None
        self.close_code: int | None = None
        self.close_reason: str | None = None

        self._ws = None
        self._token: str | None = None
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._reader: asyncio.Task | None = None
        self._writer: asyncio.Task | None = None
        self._closed = asyncio.Event()
        self._closing = False
        self._handshaking = False

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    async def open(self) -> SessionState:
        """Perform the handshake; returns the resulting state."""
        if self._closed.is_set():
            return self.state
        if self.state is not SessionState.CONNECTING or self._handshaking:
            raise RuntimeError(f"Channel already used (state {self.state.value})")

        self._token = self.gateway.store.token
        self._handshaking = True
        try:
            self._ws = await self.gateway.connect(self.path, max_size=self.max_size)
        except AuthorizationError as e:
            logger.warning("Terminal handshake unauthorized: %s", e)
            self._finish(SessionState.FORBIDDEN, Rejection.UNAUTHORIZED)
            return self.state
        except AccessForbidden as e:
            logger.warning("Terminal handshake forbidden: %s", e)
            self._finish(SessionState.FORBIDDEN, Rejection.FORBIDDEN)
            return self.state
        except GatewayError as e:
            logger.warning("Terminal handshake failed: %s", e)
            self._finish(SessionState.DISCONNECTED)
            return self.state
        finally:
            self._handshaking = False

        if self._closing:
            # close() was called while the handshake was in flight.
            await self._ws.close()
            self._finish(SessionState.DISCONNECTED)
            return self.state

        self.state = SessionState.CONNECTED
        self._reader = asyncio.create_task(self._read_loop())
        self._writer = asyncio.create_task(self._write_loop())
        return self.state

    def send_input(self, data: bytes) -> None:
        """Queue raw input bytes as one binary frame. Dropped unless connected."""
        if self.is_connected and data:
            self._outbox.put_nowait(bytes(data))

    def send_resize(self, dim: Dimension) -> None:
        """Queue a RESIZE control frame. Dropped unless connected."""
        if self.is_connected:
            self._outbox.put_nowait(encode_resize(dim))

    async def close(self) -> None:
        """Close the connection now. Safe to call any number of times."""
        if self._closing:
            return
        self._closing = True

        if self._ws is None:
            # Nothing open. A handshake in flight is torn down by open().
            if not self._handshaking:
                self._finish(SessionState.DISCONNECTED)
            return

        tasks = [
            t for t in (self._writer, self._reader)
            if t is not None and t is not asyncio.current_task()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._ws.close()
        self._finish(SessionState.DISCONNECTED)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    # -- Internal helpers ------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, str):
                    message = message.encode("utf-8")
                try:
                    self.on_data(message)
                except Exception as e:
                    logger.error("Terminal output handler failed, closing session: %s", e)
                    await self.close()
                    return
        except ConnectionClosed as e:
            if e.rcvd is not None:
                self.close_code, self.close_reason = e.rcvd.code, e.rcvd.reason
        finally:
            if not self._closing:
                self._remote_closed()

    async def _write_loop(self) -> None:
        try:
            while True:
                frame = await self._outbox.get()
                await self._ws.send(frame)
        except ConnectionClosed:
            pass

    def _remote_closed(self) -> None:
        if self.close_code is None:
            self.close_code = getattr(self._ws, "close_code", None)
            self.close_reason = getattr(self._ws, "close_reason", None)
        rejection = classify_close(self.close_code, self.close_reason)

        if self._writer is not None:
            self._writer.cancel()

        if rejection is None:
            self._finish(SessionState.DISCONNECTED)
            return

        if rejection is Rejection.UNAUTHORIZED:
            self.gateway.authorization_failed(self._token)
        self._finish(SessionState.FORBIDDEN, rejection)

    def _finish(self, state: SessionState, rejection: Rejection | None = None) -> None:
        if self._closed.is_set():
            return
        self.state = state
        self.rejection = rejection
        self._closed.set()
        if self.on_close is not None:
            self.on_close(self)
