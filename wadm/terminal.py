"""
WADM - Terminal Session Manager
===============================
Server side of the terminal session protocol (see protocol.py).

For each WebSocket handshake on /api/terminal/ws:

    1. The authorization gate is evaluated (gate.py). A refused handshake
       never reaches CONNECTED and never spawns a shell.
    2. The connection is accepted and a fresh shell is spawned on its own
       PTY. The session is CONNECTED.
    3. Two pumps run concurrently until either side ends:
         shell output  -> binary frames, in order
         client frames -> RESIZE control, or verbatim shell input
    4. The shell is terminated immediately and the session is dropped.
       There is no detach/reattach: one shell per connection, always.

The manager keeps the live sessions so the console can list them and so
app shutdown can kill every attached shell.
"""

import uuid
import asyncio
import logging
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import WebSocket
from fastapi.responses import PlainTextResponse
from starlette.websockets import WebSocketDisconnect

from wadm.auth import AuthManager
from wadm.config import ConfigManager
from wadm.gate import evaluate
from wadm.protocol import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    SHELL_EXITED_REASON,
    Rejection,
    SessionState,
    parse_resize,
)
from wadm.shell import DEFAULT_COLS, DEFAULT_ROWS, PtyShell, make_shell_env


logger = logging.getLogger(__name__)

DENIAL_EXTENSION = "websocket.http.response"


@dataclass
class TerminalSession:
    """
    One live terminal session, as seen by the server.

    Attributes:
        id:        Random identifier, one per connection.
        state:     Current SessionState.
        cols/rows: Last size applied to the PTY.
        pid:       Process id of the attached shell.
        opened_at: ISO timestamp of the handshake.
    """

    id: str
    state: SessionState = SessionState.CONNECTING
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS
    pid: int | None = None
    opened_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "cols": self.cols,
            "rows": self.rows,
            "pid": self.pid,
            "opened_at": self.opened_at,
        }


class TerminalManager:
    """
    Owns every terminal session on this host.

    Attributes:
        auth:          AuthManager used by the gate for token validity.
        config:        ConfigManager used for developer mode and shell settings.
        shell_factory: Callable building a shell object (PtyShell by default).
        sessions:      Live sessions by id.
    """

    def __init__(
        self,
        auth_manager: AuthManager,
        config_manager: ConfigManager,
        shell_factory: Callable[..., Any] | None = None,
    ):
        self.auth = auth_manager
        self.config = config_manager
        self.shell_factory = shell_factory or PtyShell
        self.sessions: dict[str, TerminalSession] = {}
        self._shells: dict[str, Any] = {}

    @property
    def status(self) -> dict[str, Any]:
        """Snapshot of the live sessions."""
        return {
            "sessions": [s.to_dict() for s in self.sessions.values()],
            "count": len(self.sessions),
        }

    async def handle(self, websocket: WebSocket, token: str | None) -> None:
        """Run one terminal session from handshake to teardown."""
        rejection = evaluate(token, self.auth, self.config)
        if rejection is not None:
            await self._reject(websocket, rejection)
            return

        settings = self.config.load()["terminal"]
        session = TerminalSession(id=uuid.uuid4().hex[:12])

        await websocket.accept()

        shell = self.shell_factory(
            [settings["shell"], *settings.get("args", [])],
            env=make_shell_env(settings.get("term", "xterm-256color")),
            cols=session.cols,
            rows=session.rows,
            read_size=settings.get("read_size", 4096),
        )
        try:
            await shell.start()
        except (OSError, subprocess.SubprocessError) as e:
            logger.error("Session %s: failed to spawn shell: %s", session.id, e)
            session.state = SessionState.DISCONNECTED
            await websocket.close(code=CLOSE_INTERNAL_ERROR, reason="Failed to spawn shell")
            return

        session.pid = shell.pid
        session.state = SessionState.CONNECTED
        self.sessions[session.id] = session
        self._shells[session.id] = shell
        logger.info("Session %s connected (shell pid %s)", session.id, session.pid)

        try:
            await self._run(websocket, session, shell)
        finally:
            await shell.terminate()
            session.state = SessionState.DISCONNECTED
            self.sessions.pop(session.id, None)
            self._shells.pop(session.id, None)
            logger.info("Session %s disconnected", session.id)

    async def close_all(self) -> None:
        """Terminate every attached shell (app shutdown)."""
        for session_id, shell in list(self._shells.items()):
            logger.info("Session %s: terminating shell on shutdown", session_id)
            await shell.terminate()

    # -- Internal helpers ------------------------------------------------------

    async def _reject(self, websocket: WebSocket, rejection: Rejection) -> None:
        """
        Refuse the handshake. No shell is spawned either way.

        With the denial extension the client gets a plain 401/403 response.
        Without it, a close before accept would reach the client as a bare
        HTTP 403 for both rejections, so the connection is accepted and
        closed at once with the reserved code and reason instead.
        """
        client = websocket.client.host if websocket.client else "unknown"
        logger.warning("Terminal handshake from %s refused: %s", client, rejection.value)

        extensions = websocket.scope.get("extensions") or {}
        if DENIAL_EXTENSION in extensions:
            await websocket.send_denial_response(
                PlainTextResponse(rejection.reason, status_code=rejection.http_status)
            )
            return

        await websocket.accept()
        await websocket.close(code=rejection.close_code, reason=rejection.reason)

    async def _run(self, websocket: WebSocket, session: TerminalSession, shell) -> None:
        """Pump both directions until one of them ends."""
        output = asyncio.create_task(self._pump_output(websocket, shell))
        inbound = asyncio.create_task(self._pump_input(websocket, session, shell))

        try:
            done, pending = await asyncio.wait(
                {output, inbound}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (output, inbound):
                task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error("Session %s: pump failed: %s", session.id, exc)

        if output in done and inbound not in done:
            # The shell ended first: tell the client why.
            try:
                await websocket.close(code=CLOSE_NORMAL, reason=SHELL_EXITED_REASON)
            except (RuntimeError, OSError, WebSocketDisconnect):
                pass  # client already gone

    async def _pump_output(self, websocket: WebSocket, shell) -> None:
        while True:
            data = await shell.read()
            if not data:
                return
            await websocket.send_bytes(data)

    async def _pump_input(self, websocket: WebSocket, session: TerminalSession, shell) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

            if message.get("bytes") is not None:
                shell.write(message["bytes"])
            elif message.get("text") is not None:
                self._handle_text(session, shell, message["text"])

            # A shell that is not reading its input only stalls this pump.
            await shell.drain()

    def _handle_text(self, session: TerminalSession, shell, text: str) -> None:
        try:
            dim = parse_resize(text)
        except ValueError as e:
            logger.warning("Session %s: dropped %s", session.id, e)
            return

        if dim is None:
            shell.write(text.encode("utf-8"))
            return

        shell.resize(dim.cols, dim.rows)
        session.cols, session.rows = dim.cols, dim.rows
