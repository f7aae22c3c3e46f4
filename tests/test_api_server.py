"""HTTP and WebSocket surface tests against a stubbed engine client."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from almondcloud.api.server import WS_POLICY_VIOLATION, create_app
from almondcloud.backend.client import ConnectionState
from almondcloud.config.schema import AlmondConfig, ApiUserEntry
from almondcloud.utils.exceptions import BACKEND_UNAVAILABLE, BackendUnavailableError

ADMIN = {"Authorization": "Bearer tok-admin"}
NARROW = {"Authorization": "Bearer tok-narrow"}
PLAIN_USER = {"Authorization": "Bearer tok-user"}
ORIGIN = {"Origin": "https://almond.example.com"}


class _Assistant:
    def __init__(self):
        self.outputs = []

    async def create_app(self, body):
        if not body.get("code"):
            return {"error": "Missing program"}
        return {"uniqueId": "app-42", "description": body["code"]}

    async def add_output(self, delegate):
        self.outputs.append(delegate)

    async def remove_output(self, delegate):
        self.outputs.remove(delegate)


class _Backend:
    def __init__(self):
        self.state = ConnectionState.READY
        self.apps = {"app-1": {"uniqueId": "app-1", "name": "Weather"}}
        self.assistant = _Assistant()
        self.released = []
        self.down = False
        self.devices = {}
        self.oauth_callbacks = []

    def on_state_change(self, callback):
        pass

    def release(self, obj):
        self.released.append(obj)
        return True

    async def get_all_apps(self):
        if self.down:
            raise BackendUnavailableError(method="getAllApps")
        return list(self.apps.values())

    async def get_app(self, app_id):
        return self.apps.get(app_id)

    async def delete_app(self, app_id):
        return self.apps.pop(app_id, None) is not None

    async def get_all_devices(self):
        raise RuntimeError("engine returned garbage")

    async def add_device(self, state):
        self.devices[state["kind"]] = state
        return {"uniqueId": state["kind"]}

    async def delete_device(self, device_id):
        return self.devices.pop(device_id, None) is not None

    async def start_oauth2(self, kind):
        if kind != "com.example.oauth":
            return [False, None, None]
        return [True, "https://auth.example.com/authorize", {"oauth2-state": "s3cret"}]

    async def handle_oauth2_callback(self, kind, redirect_uri, session):
        self.oauth_callbacks.append((kind, redirect_uri, session))


class _Handle:
    def __init__(self, delegate):
        self.delegate = delegate
        self.commands = []

    async def start(self):
        await self.delegate.send("Welcome back!")

    async def handle_command(self, text):
        self.commands.append(text)
        await self.delegate.send(f"you said {text}")

    async def handle_parsed_command(self, data):
        pass

    async def handle_thingtalk(self, code):
        pass


class _Session:
    def __init__(self, handle):
        self.handle = handle


class _Sessions:
    def __init__(self):
        self.opened = []
        self.closed = []
        self.closed_all = False

    async def open(self, session_id, user, delegate, options=None):
        self.opened.append((session_id, user, options))
        return _Session(_Handle(delegate))

    async def close(self, session_id):
        self.closed.append(session_id)

    async def close_all(self):
        self.closed_all = True


@pytest.fixture
def stubs():
    config = AlmondConfig(server_origin="https://almond.example.com")
    config.api.tokens = {
        "tok-admin": ApiUserEntry(cloud_id="a1", username="root", role="System Administrator"),
        "tok-narrow": ApiUserEntry(cloud_id="n1", username="reader", scopes=["profile"]),
        "tok-user": ApiUserEntry(cloud_id="u1", username="bob"),
    }
    backend = _Backend()
    sessions = _Sessions()
    app = create_app(config, backend=backend, sessions=sessions)
    return app, backend, sessions


@pytest.fixture
def client(stubs):
    app, _, _ = stubs
    with TestClient(app) as test_client:
        yield test_client


def test_health_reports_engine_state(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["backend"] == "ready"


def test_missing_or_bad_token_is_401(client):
    same_origin = {"Origin": "https://almond.example.com"}
    assert client.get("/api/apps/list", headers=same_origin).status_code == 401
    resp = client.get("/api/apps/list", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "UNAUTHORIZED"


def test_missing_scope_is_403(client):
    resp = client.get("/api/apps/list", headers=NARROW)
    assert resp.status_code == 403
    assert resp.json() == {"error": "invalid scope"}


def test_cross_origin_without_bearer_is_rejected(client):
    resp = client.get("/api/apps/list", headers={"Origin": "https://evil.example.com"})
    assert resp.status_code == 403
    assert resp.json()["message"] == "Forbidden Cross Origin Request"


def test_app_routes(client):
    assert client.get("/api/apps/list", headers=ADMIN).json() == [{"uniqueId": "app-1", "name": "Weather"}]
    assert client.get("/api/apps/get/app-1", headers=ADMIN).json()["name"] == "Weather"

    missing = client.get("/api/apps/get/app-9", headers=ADMIN)
    assert missing.status_code == 404
    assert missing.json() == {"error": "No such app"}

    assert client.post("/api/apps/delete/app-1", headers=ADMIN).json() == {"result": "ok"}
    assert client.post("/api/apps/delete/app-1", headers=ADMIN).status_code == 404


def test_create_app(client):
    created = client.post("/api/apps/create", headers=ADMIN, json={"code": "now => notify;"})
    assert created.status_code == 200
    assert created.json()["uniqueId"] == "app-42"

    rejected = client.post("/api/apps/create", headers=ADMIN, json={})
    assert rejected.status_code == 400
    assert rejected.json() == {"error": "Missing program"}


def test_device_create_and_delete(stubs, client):
    _, backend, _ = stubs
    created = client.post(
        "/api/devices/create",
        headers=ADMIN,
        json={"kind": "com.example.light", "_csrf": "x", "name": "Hall"},
    )
    assert created.status_code == 200
    assert created.json() == {"result": "ok", "device": {"uniqueId": "com.example.light"}}
    assert backend.devices["com.example.light"] == {"kind": "com.example.light", "name": "Hall"}

    missing_kind = client.post("/api/devices/create", headers=ADMIN, json={"kind": ""})
    assert missing_kind.status_code == 400
    assert missing_kind.json() == {"error": "You must choose one kind of device"}

    assert client.post("/api/devices/delete/com.example.light", headers=ADMIN).json() == {"result": "ok"}
    gone = client.post("/api/devices/delete/com.example.light", headers=ADMIN)
    assert gone.status_code == 404
    assert gone.json() == {"error": "No such device"}


def test_device_routes_need_manage_devices(stubs, client):
    _, backend, _ = stubs
    resp = client.post("/api/devices/create", headers=PLAIN_USER, json={"kind": "com.example.light"})
    assert resp.status_code == 403
    assert resp.json()["message"] == "missing capability"
    assert backend.devices == {}

    assert client.get("/api/devices/oauth2/com.example.oauth", headers=NARROW).status_code == 403


def test_device_oauth2_flow(stubs, client):
    _, backend, _ = stubs
    started = client.get("/api/devices/oauth2/com.example.oauth", headers=ADMIN)
    assert started.json() == {
        "ok": True,
        "redirect": "https://auth.example.com/authorize",
        "session": {"oauth2-state": "s3cret"},
    }
    assert client.get("/api/devices/oauth2/com.example.other", headers=ADMIN).json() == {"ok": False}

    done = client.post(
        "/api/devices/oauth2/callback/com.example.oauth",
        headers=ADMIN,
        json={"url": "/devices/oauth2/callback/com.example.oauth?code=abc", "session": started.json()["session"]},
    )
    assert done.json() == {"result": "ok"}
    assert backend.oauth_callbacks == [
        ("com.example.oauth", "/devices/oauth2/callback/com.example.oauth?code=abc", {"oauth2-state": "s3cret"}),
    ]

    bad = client.post("/api/devices/oauth2/callback/com.example.oauth", headers=ADMIN, json={"session": {}})
    assert bad.status_code == 400


def test_engine_down_is_503(client, stubs):
    _, backend, _ = stubs
    backend.down = True
    resp = client.get("/api/apps/list", headers=ADMIN)
    assert resp.status_code == 503
    assert resp.json()["error"] == BACKEND_UNAVAILABLE


def test_unexpected_error_is_sanitized_500(stubs):
    app, _, _ = stubs
    with TestClient(app, raise_server_exceptions=False) as test_client:
        resp = test_client.get("/api/devices/list", headers=ADMIN)
    assert resp.status_code == 500
    assert resp.json()["error"] == "INTERNAL_ERROR"
    assert "garbage" not in resp.text


def test_conversation_websocket_round_trip(stubs):
    app, backend, sessions = stubs
    with TestClient(app) as test_client:
        with test_client.websocket_connect("/api/conversation?access_token=tok-admin", headers=ORIGIN) as ws:
            assert ws.receive_json() == {"type": "text", "text": "Welcome back!", "icon": None}
            ws.send_json({"type": "command", "text": "hello"})
            assert ws.receive_json() == {"type": "text", "text": "you said hello", "icon": None}
            ws.send_json({"type": "bogus"})
            assert ws.receive_json() == {"type": "error", "error": "Invalid command type bogus"}

    session_id, user, options = sessions.opened[0]
    assert session_id.startswith("enterprise:a1:")
    assert user.cloud_id == "a1"
    assert options == {"showWelcome": True}
    assert sessions.closed == [session_id]
    assert len(backend.released) == 1
    assert sessions.closed_all


def test_websocket_rejects_bad_credentials(client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/api/conversation?access_token=wrong", headers=ORIGIN):
            pass
    assert excinfo.value.code == WS_POLICY_VIOLATION

    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/api/conversation?access_token=tok-admin"):
            pass
    assert excinfo.value.code == WS_POLICY_VIOLATION

    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/api/results", headers=NARROW):
            pass
    assert excinfo.value.code == WS_POLICY_VIOLATION


def test_results_websocket_registers_output(stubs):
    app, backend, _ = stubs
    with TestClient(app) as test_client:
        with test_client.websocket_connect("/api/results", headers=ADMIN):
            pass
    assert backend.assistant.outputs == []
    assert len(backend.released) == 1
