import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.testclient import WebSocketDenialResponse
from starlette.websockets import WebSocketDisconnect

from conftest import BrokenShell, FakeShell
from wadm.main import create_app


def _ws_path(token: str | None) -> str:
    return "/api/terminal/ws" if token is None else f"/api/terminal/ws?token={token}"


# -- Handshake ---------------------------------------------------------------

def test_developer_mode_off_is_forbidden_even_with_valid_token(client, token):
    with pytest.raises(WebSocketDenialResponse) as exc:
        with client.websocket_connect(_ws_path(token)):
            pass
    assert exc.value.status_code == 403
    assert "Forbidden" in exc.value.text
    assert FakeShell.instances == []


def test_developer_mode_off_is_forbidden_with_bad_token(client, token):
    with pytest.raises(WebSocketDenialResponse) as exc:
        with client.websocket_connect(_ws_path("garbage")):
            pass
    assert exc.value.status_code == 403


@pytest.mark.parametrize("bad_token", [None, "", "garbage"])
def test_invalid_token_is_unauthorized(client, token, dev_mode, bad_token):
    with pytest.raises(WebSocketDenialResponse) as exc:
        with client.websocket_connect(_ws_path(bad_token)):
            pass
    assert exc.value.status_code == 401
    assert "Unauthorized" in exc.value.text
    assert FakeShell.instances == []


def test_rejection_does_not_log_the_token(client, token, caplog):
    with caplog.at_level("INFO", logger="wadm"):
        with pytest.raises(WebSocketDenialResponse):
            with client.websocket_connect(_ws_path(token)):
                pass
    assert token not in caplog.text


def test_gate_is_evaluated_on_every_attempt(client, app, token, dev_mode):
    with client.websocket_connect(_ws_path(token)):
        pass

    app.state.config_manager.set_developer_mode(False)
    with pytest.raises(WebSocketDenialResponse) as exc:
        with client.websocket_connect(_ws_path(token)):
            pass
    assert exc.value.status_code == 403


# -- Session -----------------------------------------------------------------

def test_end_to_end_session(client, app, token, dev_mode):
    with client.websocket_connect(_ws_path(token)) as ws:
        ws.send_text("RESIZE:100x30")
        ws.send_bytes(b"ls\n")
        assert ws.receive_bytes() == b"ls\n"

        shell = FakeShell.instances[0]
        assert shell.events[:3] == [("start",), ("resize", 100, 30), ("write", b"ls\n")]

        session = next(iter(app.state.terminal_manager.sessions.values()))
        assert (session.cols, session.rows) == (100, 30)
        assert session.pid == shell.pid

    assert shell.terminated is True
    assert app.state.terminal_manager.sessions == {}


def test_shell_gets_configured_command_and_term(client, app, token, dev_mode):
    app.state.config_manager.update({"terminal": {"shell": "/bin/sh", "args": ["-i"], "term": "vt100"}})
    with client.websocket_connect(_ws_path(token)) as ws:
        ws.send_bytes(b"x")
        ws.receive_bytes()
        shell = FakeShell.instances[0]
    assert shell.argv == ["/bin/sh", "-i"]
    assert shell.env["TERM"] == "vt100"
    assert (shell.cols, shell.rows) == (80, 24)


def test_text_input_is_forwarded_verbatim(client, token, dev_mode):
    with client.websocket_connect(_ws_path(token)) as ws:
        ws.send_text("echo héllo\n")
        assert ws.receive_bytes() == "echo héllo\n".encode("utf-8")


def test_malformed_resize_is_dropped(client, token, dev_mode):
    with client.websocket_connect(_ws_path(token)) as ws:
        ws.send_text("RESIZE:abc")
        ws.send_text("RESIZE:0x10")
        ws.send_bytes(b"after")
        assert ws.receive_bytes() == b"after"
        shell = FakeShell.instances[0]
        assert shell.events == [("start",), ("write", b"after")]


def test_output_order_is_preserved(client, token, dev_mode):
    chunks = [f"chunk-{i};".encode() for i in range(20)]
    with client.websocket_connect(_ws_path(token)) as ws:
        for chunk in chunks:
            ws.send_bytes(chunk)
        received = [ws.receive_bytes() for _ in chunks]
    assert received == chunks


def test_shell_exit_closes_the_connection(client, app, token, dev_mode):
    with client.websocket_connect(_ws_path(token)) as ws:
        ws.send_bytes(b"exit\n")
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_bytes()
        assert exc.value.code == 1000
        assert exc.value.reason == "Shell exited"
    assert FakeShell.instances[0].terminated is True
    assert app.state.terminal_manager.sessions == {}


def test_one_shell_per_connection(client, token, dev_mode):
    with client.websocket_connect(_ws_path(token)) as first:
        with client.websocket_connect(_ws_path(token)) as second:
            first.send_bytes(b"one")
            second.send_bytes(b"two")
            assert first.receive_bytes() == b"one"
            assert second.receive_bytes() == b"two"
    a, b = FakeShell.instances
    assert a is not b
    assert ("write", b"two") not in a.events
    assert ("write", b"one") not in b.events


def test_sessions_route_lists_live_sessions(client, token, dev_mode):
    headers = {"Authorization": f"Bearer {token}"}
    with client.websocket_connect(_ws_path(token)) as ws:
        ws.send_text("RESIZE:120x40")
        ws.send_bytes(b"x")
        ws.receive_bytes()
        data = client.get("/api/terminal/sessions", headers=headers).json()
        assert data["count"] == 1
        session = data["sessions"][0]
        assert session["state"] == "connected"
        assert (session["cols"], session["rows"]) == (120, 40)
        assert session["pid"] == 4242


def test_spawn_failure_closes_with_internal_error(project_dir):
    app = create_app(str(project_dir), shell_factory=BrokenShell)
    token = app.state.auth_manager.setup_password("secret")
    app.state.config_manager.set_developer_mode(True)
    with TestClient(app) as client:
        with client.websocket_connect(_ws_path(token)) as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_bytes()
    assert exc.value.code == 1011
    assert app.state.terminal_manager.sessions == {}


# -- Servers without the denial extension --------------------------------------

def _without_denial_extension(app):
    async def asgi(scope, receive, send):
        if scope["type"] == "websocket":
            extensions = dict(scope.get("extensions") or {})
            extensions.pop("websocket.http.response", None)
            scope = {**scope, "extensions": extensions}
        await app(scope, receive, send)

    return asgi


def test_invalid_token_closes_with_4401_without_denial_extension(app, token, dev_mode):
    with TestClient(_without_denial_extension(app)) as client:
        with client.websocket_connect(_ws_path("garbage")) as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_bytes()
    assert exc.value.code == 4401
    assert exc.value.reason.startswith("Unauthorized")
    assert FakeShell.instances == []
    assert app.state.terminal_manager.sessions == {}


def test_developer_mode_off_closes_with_4403_without_denial_extension(app, token):
    with TestClient(_without_denial_extension(app)) as client:
        with client.websocket_connect(_ws_path(token)) as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_bytes()
    assert exc.value.code == 4403
    assert exc.value.reason.startswith("Forbidden")
    assert FakeShell.instances == []


# -- Backpressure --------------------------------------------------------------

class StalledShell(FakeShell):
    """A shell that never takes its input until it is terminated."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._released = asyncio.Event()

    async def drain(self):
        self.drains += 1
        await self._released.wait()

    async def terminate(self):
        self._released.set()
        await super().terminate()


def test_stalled_shell_only_stalls_its_own_session(project_dir):
    app = create_app(str(project_dir), shell_factory=StalledShell)
    token = app.state.auth_manager.setup_password("secret")
    app.state.config_manager.set_developer_mode(True)

    with TestClient(app) as client:
        with client.websocket_connect(_ws_path(token)) as stalled:
            stalled.send_bytes(b"pasted")
            assert stalled.receive_bytes() == b"pasted"
            stalled.send_bytes(b"queued")

            assert client.get("/api/health").status_code == 200
            with client.websocket_connect(_ws_path(token)) as other:
                other.send_bytes(b"hello")
                assert other.receive_bytes() == b"hello"

            shell = FakeShell.instances[0]
            assert shell.events == [("start",), ("write", b"pasted")]
            assert shell.drains == 1

    assert all(s.terminated for s in FakeShell.instances)
