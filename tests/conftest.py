import sys
import asyncio
from pathlib import Path

import pytest
import yaml
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, InvalidStatus
from websockets.frames import Close
from websockets.http11 import Response

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi.testclient import TestClient

from wadm.main import create_app
from wadm.protocol import Dimension
from wadm_client.credentials import CredentialStore
from wadm_client.gateway import OutboundGateway


PASSWORD = "hunter22"


class FakeShell:
    """
    Stand-in for PtyShell: echoes every write back as output.

    Writing b"exit\\n" ends the shell. All calls are recorded in ``events``
    in the order they happened.
    """

    instances: list["FakeShell"] = []

    def __init__(self, argv, env=None, cols=80, rows=24, read_size=4096):
        self.argv = argv
        self.env = env
        self.cols = cols
        self.rows = rows
        self.read_size = read_size
        self.pid = 4242
        self.returncode = None
        self.events: list[tuple] = []
        self.terminated = False
        self.drains = 0
        self._output: asyncio.Queue = asyncio.Queue()
        FakeShell.instances.append(self)

    async def start(self):
        self.events.append(("start",))

    async def read(self) -> bytes:
        return await self._output.get()

    def write(self, data: bytes) -> None:
        self.events.append(("write", data))
        if data == b"exit\n":
            self.returncode = 0
            self._output.put_nowait(b"")
        else:
            self._output.put_nowait(data)

    async def drain(self):
        self.drains += 1

    def resize(self, cols: int, rows: int) -> None:
        self.events.append(("resize", cols, rows))
        self.cols, self.rows = cols, rows

    async def terminate(self):
        self.terminated = True
        self.events.append(("terminate",))
        self._output.put_nowait(b"")


class BrokenShell(FakeShell):
    async def start(self):
        raise FileNotFoundError(2, "No such file or directory", self.argv[0])


def write_config(project_dir: Path, **system) -> None:
    with open(project_dir / "config.yaml", "w", encoding="utf-8") as f:
        yaml.safe_dump({"system": system}, f)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("WADM_HOME", "WADM_HOST", "WADM_PORT", "WADM_SHELL"):
        monkeypatch.delenv(var, raising=False)
    FakeShell.instances.clear()


@pytest.fixture()
def project_dir(tmp_path) -> Path:
    return tmp_path


@pytest.fixture()
def app(project_dir):
    return create_app(str(project_dir), shell_factory=FakeShell)


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def token(app) -> str:
    return app.state.auth_manager.setup_password(PASSWORD)


@pytest.fixture()
def dev_mode(app):
    app.state.config_manager.set_developer_mode(True)


# -- Client-side fakes ---------------------------------------------------------

class FakeConnection:
    """
    In-memory stand-in for a websockets client connection.

    ``feed()`` queues a server message, ``finish()`` ends the stream the
    way a normal close does, ``fail()`` the way an abnormal close does.
    """

    def __init__(self):
        self.sent: list = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, frame) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(frame)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.close_code = self.close_code or 1000
            self._incoming.put_nowait(None)

    def feed(self, message) -> None:
        self._incoming.put_nowait(message)

    def finish(self, code: int = 1000, reason: str = "") -> None:
        self.close_code, self.close_reason = code, reason
        self._incoming.put_nowait(None)

    def fail(self, code: int, reason: str = "") -> None:
        self._incoming.put_nowait(ConnectionClosedError(Close(code, reason), None))


class FakeSurface:
    """Records what the controller renders and lets tests set the size."""

    def __init__(self, cols: int = 80, rows: int = 24):
        self.size = Dimension(cols, rows)
        self.written: list[bytes] = []
        self.attached = None
        self.disposed = 0
        self.measurements = 0

    def measure(self) -> Dimension:
        self.measurements += 1
        return self.size

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def attach(self, controller) -> None:
        self.attached = controller

    def dispose(self) -> None:
        self.disposed += 1


async def drain(times: int = 10) -> None:
    """Let queued callbacks and tasks run."""
    for _ in range(times):
        await asyncio.sleep(0)


def make_gateway(connect, token: str | None = "tok") -> OutboundGateway:
    """Gateway whose handshake is served by ``connect`` (or a FakeConnection)."""
    if isinstance(connect, FakeConnection):
        conn = connect

        async def connect(uri, **kwargs):
            return conn

    store = CredentialStore()
    if token:
        store.set_token(token)
    return OutboundGateway("http://console.local:8080", store, connect=connect)


def refusing(status: int, body: bytes):
    """Handshake that the server refuses with an HTTP status."""
    async def connect(uri, **kwargs):
        raise InvalidStatus(Response(status, "Refused", Headers(), body))
    return connect
