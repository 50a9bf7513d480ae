"""
WADM - Terminal Session Protocol
================================
Wire format shared by the server (terminal.py) and the client
(wadm_client.channel) for one interactive shell over a WebSocket.

Handshake:
    ws[s]://<host>/api/terminal/ws?token=<bearer token>

    The token travels in the URI because browsers cannot set headers on
    a WebSocket upgrade. A rejected handshake is reported either as an
    HTTP denial (401/403 with the reason as body) or, on servers without
    the denial extension, as an accepted connection that is closed at once
    with a reserved code (4401/4403) and reason. No shell exists either way.

Frames after the handshake:
    server -> client   binary   raw shell output (stdout+stderr via the PTY)
    client -> server   binary   raw input bytes, written verbatim
    client -> server   text     "RESIZE:<cols>x<rows>"  control message
    client -> server   text     anything else: input bytes (UTF-8)

Session states:
    CONNECTING -> CONNECTED -> DISCONNECTED | FORBIDDEN
"""

import re
import enum
from dataclasses import dataclass


TERMINAL_PATH = "/api/terminal/ws"
TOKEN_PARAM = "token"

RESIZE_PREFIX = "RESIZE:"
_RESIZE_BODY = re.compile(r"(\d{1,5})x(\d{1,5})")
MAX_DIMENSION = 65535

# Close codes
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011
CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403

SHELL_EXITED_REASON = "Shell exited"


class SessionState(str, enum.Enum):
    """Lifecycle of one terminal session."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FORBIDDEN = "forbidden"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.DISCONNECTED, SessionState.FORBIDDEN)


class Rejection(str, enum.Enum):
    """Why a handshake was refused."""

    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"

    @property
    def http_status(self) -> int:
        return 401 if self is Rejection.UNAUTHORIZED else 403

    @property
    def close_code(self) -> int:
        return CLOSE_UNAUTHORIZED if self is Rejection.UNAUTHORIZED else CLOSE_FORBIDDEN

    @property
    def reason(self) -> str:
        if self is Rejection.UNAUTHORIZED:
            return "Unauthorized: invalid or missing token"
        return "Forbidden: Developer Mode is disabled"


@dataclass(frozen=True)
class Dimension:
    """Size of the rendering surface in character cells."""

    cols: int
    rows: int

    def __post_init__(self):
        for name in ("cols", "rows"):
            value = getattr(self, name)
            if not isinstance(value, int) or not 0 < value <= MAX_DIMENSION:
                raise ValueError(f"{name} must be in 1..{MAX_DIMENSION}, got {value!r}")

    def __str__(self) -> str:
        return f"{self.cols}x{self.rows}"


def encode_resize(dim: Dimension) -> str:
    """Build the RESIZE control frame for a dimension."""
    return f"{RESIZE_PREFIX}{dim.cols}x{dim.rows}"


def parse_resize(text: str) -> Dimension | None:
    """
    Interpret a text frame as a RESIZE control message.

    Returns:
        None if the frame does not carry the RESIZE prefix (it is data).

    Raises:
        ValueError: The prefix is present but the body is not a valid
            ``<cols>x<rows>`` pair. Such frames are neither applied nor
            forwarded to the shell.
    """
    if not text.startswith(RESIZE_PREFIX):
        return None

    match = _RESIZE_BODY.fullmatch(text[len(RESIZE_PREFIX):])
    if match is None:
        raise ValueError(f"Malformed resize frame: {text[:40]!r}")

    return Dimension(int(match.group(1)), int(match.group(2)))


def classify_close(code: int | None, reason: str | None) -> Rejection | None:
    """Map a close code/reason to an authorization rejection, if any."""
    reason = reason or ""
    if code in (CLOSE_FORBIDDEN, CLOSE_POLICY_VIOLATION) or "Forbidden" in reason:
        return Rejection.FORBIDDEN
    if code == CLOSE_UNAUTHORIZED or "Unauthorized" in reason:
        return Rejection.UNAUTHORIZED
    return None


def classify_status(status: int, body: bytes | str | None = None) -> Rejection | None:
    """Map a refused HTTP upgrade to an authorization rejection, if any."""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if status == 403:
        return Rejection.FORBIDDEN
    if status == 401:
        return Rejection.UNAUTHORIZED
    return classify_close(None, body)
