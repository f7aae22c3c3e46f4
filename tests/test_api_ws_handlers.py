import json

import pytest

from almondcloud.api.ws.conversation import (
    dispatch_conversation_frame,
    make_session_id,
    process_conversation_frame,
    run_conversation_ws,
)
from almondcloud.api.ws.results import run_results_ws
from almondcloud.assistant.delegates import AssistantDelegate, ResultsDelegate
from almondcloud.auth.users import AlmondUser
from almondcloud.utils.exceptions import BackendUnavailableError, InvalidCommandError


class _Conversation:
    def __init__(self):
        self.calls = []

    async def start(self):
        self.calls.append(("start",))

    async def handle_command(self, text):
        self.calls.append(("command", text))
        return "ok"

    async def handle_parsed_command(self, data):
        self.calls.append(("parsed", data))

    async def handle_thingtalk(self, code):
        self.calls.append(("tt", code))


class _Session:
    def __init__(self):
        self.handle = _Conversation()


class _Sessions:
    def __init__(self, fail_open: bool = False):
        self.fail_open = fail_open
        self.opened = []
        self.closed = []
        self.session = _Session()

    async def open(self, session_id, user, delegate, options=None):
        if self.fail_open:
            raise BackendUnavailableError()
        self.opened.append((session_id, user, delegate, options))
        return self.session

    async def close(self, session_id):
        self.closed.append(session_id)


class _Assistant:
    def __init__(self):
        self.outputs = []
        self.removed = []

    async def add_output(self, delegate):
        self.outputs.append(delegate)

    async def remove_output(self, delegate):
        self.removed.append(delegate)


class _Backend:
    def __init__(self):
        self.assistant = _Assistant()
        self.released = []

    def release(self, obj):
        self.released.append(obj)
        return True


class _Ws:
    def __init__(self, frames):
        self.frames = list(frames)
        self.sent = []
        self.closed_with = None

    async def receive(self):
        if self.frames:
            return self.frames.pop(0)
        return {"type": "websocket.disconnect", "code": 1000}

    async def send_json(self, payload):
        self.sent.append(payload)

    async def close(self, code=1000):
        self.closed_with = code


def _text(data):
    return {"type": "websocket.receive", "text": json.dumps(data)}


def test_make_session_id_is_scoped_to_user():
    first = make_session_id("c0ffee")
    second = make_session_id("c0ffee")
    assert first.startswith("enterprise:c0ffee:")
    assert first != second


@pytest.mark.asyncio
async def test_dispatch_routes_each_frame_type():
    conv = _Conversation()
    assert await dispatch_conversation_frame(data={"type": "command", "text": "hi"}, conversation=conv) == "ok"
    await dispatch_conversation_frame(data={"type": "parsed", "json": {"code": ["now"]}}, conversation=conv)
    await dispatch_conversation_frame(data={"type": "tt", "code": "now => @com.xkcd.get_comic() => notify;"}, conversation=conv)
    assert [c[0] for c in conv.calls] == ["command", "parsed", "tt"]


@pytest.mark.asyncio
async def test_dispatch_rejects_unknown_type():
    with pytest.raises(InvalidCommandError) as excinfo:
        await dispatch_conversation_frame(data={"type": "bogus"}, conversation=_Conversation())
    assert excinfo.value.message == "Invalid command type bogus"


@pytest.mark.asyncio
async def test_process_frame_reports_errors_to_browser():
    errors = []
    ws = _Ws([])
    await process_conversation_frame(
        raw=json.dumps({"type": "bogus"}),
        conversation=_Conversation(),
        websocket=ws,
        logger_error=lambda *args: errors.append(args),
    )
    await process_conversation_frame(
        raw="{not json",
        conversation=_Conversation(),
        websocket=ws,
        logger_error=lambda *args: errors.append(args),
    )
    assert ws.sent[0] == {"type": "error", "error": "Invalid command type bogus"}
    assert ws.sent[1]["type"] == "error"
    assert len(errors) == 2


@pytest.mark.asyncio
async def test_run_conversation_ws_opens_pumps_and_closes():
    sessions = _Sessions()
    backend = _Backend()
    user = AlmondUser(cloud_id="c0ffee", username="alice")
    ws = _Ws([_text({"type": "command", "text": "hello"}), {"type": "websocket.receive", "bytes": None}])

    await run_conversation_ws(
        websocket=ws,
        user=user,
        backend=backend,
        sessions=sessions,
        logger_error=lambda *args: None,
        session_id="enterprise:c0ffee:tab",
    )

    session_id, opened_user, delegate, options = sessions.opened[0]
    assert session_id == "enterprise:c0ffee:tab"
    assert opened_user is user
    assert isinstance(delegate, AssistantDelegate)
    assert options == {"showWelcome": True}
    assert sessions.session.handle.calls == [("start",), ("command", "hello")]
    assert sessions.closed == ["enterprise:c0ffee:tab"]
    assert backend.released == [delegate]


@pytest.mark.asyncio
async def test_run_conversation_ws_closes_socket_when_engine_down():
    sessions = _Sessions(fail_open=True)
    backend = _Backend()
    errors = []
    ws = _Ws([])

    await run_conversation_ws(
        websocket=ws,
        user=AlmondUser(cloud_id="c0ffee", username="alice"),
        backend=backend,
        sessions=sessions,
        logger_error=lambda *args: errors.append(args),
    )

    assert ws.closed_with == 1011
    assert sessions.closed == []
    assert errors
    assert len(backend.released) == 1


@pytest.mark.asyncio
async def test_run_results_ws_registers_and_unregisters_output():
    backend = _Backend()
    ws = _Ws([{"type": "websocket.receive", "text": "ignored"}])

    await run_results_ws(websocket=ws, backend=backend, logger_error=lambda *args: None)

    delegate = backend.assistant.outputs[0]
    assert isinstance(delegate, ResultsDelegate)
    assert backend.assistant.removed == [delegate]
    assert backend.released == [delegate]
