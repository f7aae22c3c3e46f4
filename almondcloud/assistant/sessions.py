"""Registry of live conversations backed by the engine's assistant object."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Iterable

from loguru import logger

from almondcloud.assistant.proxies import ConversationHandle
from almondcloud.backend.client import BackendClient, ConnectionState
from almondcloud.rpc.channel import RpcObject
from almondcloud.utils.exceptions import BackendUnavailableError, ChannelClosedError


@dataclass(slots=True)
class NotifyResult:
    """Outcome of notifying one session during a fan-out."""

    session_id: str
    ok: bool
    error: BaseException | None = None

    @staticmethod
    def all_ok(results: Iterable["NotifyResult"]) -> bool:
        return all(r.ok for r in results)


class ConversationEvents(RpcObject):
    """Listener the engine calls when a conversation becomes active."""

    rpc_methods = {"onActive": "on_active"}

    def __init__(self, manager: "SessionManager", session_id: str):
        self._manager = manager
        self.session_id = session_id

    def on_active(self) -> None:
        self._manager._on_events_active(self)


@dataclass(slots=True)
class _OpenGate:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass
class ConversationSession:
    session_id: str
    user: dict[str, Any]
    delegate: RpcObject
    handle: ConversationHandle
    events: ConversationEvents
    created_at: float = field(default_factory=time.time)
    active: bool = False


def _user_wire(user: Any) -> dict[str, Any]:
    to_wire = getattr(user, "to_wire", None)
    if callable(to_wire):
        return to_wire()
    if isinstance(user, dict):
        return user
    raise TypeError(f"unsupported user type: {type(user).__name__}")


class SessionManager:
    """Maps session id to conversation and tracks the most recently active one.

    Opens under one id are serialized, so concurrent callers of
    ``get_or_open`` share a single started conversation.
    """

    def __init__(self, backend: BackendClient, *, nl_server_url: str | None = None):
        self._backend = backend
        self._nl_server_url = nl_server_url
        self._sessions: dict[str, ConversationSession] = {}
        self._most_recent: str | None = None
        self._gates: dict[str, _OpenGate] = {}
        backend.on_state_change(self._on_backend_state)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def sessions(self) -> list[ConversationSession]:
        return list(self._sessions.values())

    @property
    def most_recent_id(self) -> str | None:
        return self._most_recent

    def get(self, session_id: str | None = None) -> ConversationSession | None:
        """Look up a session; unknown or missing ids fall back to the most recent one."""
        if session_id is not None:
            session = self._sessions.get(session_id)
            if session is not None:
                return session
        if self._most_recent is None:
            return None
        return self._sessions.get(self._most_recent)

    def mark_active(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        previous = self._sessions.get(self._most_recent) if self._most_recent else None
        if previous is not None and previous is not session:
            previous.active = False
        session.active = True
        self._most_recent = session_id
        return True

    def _on_events_active(self, events: ConversationEvents) -> None:
        session = self._sessions.get(events.session_id)
        if session is None or session.events is not events:
            logger.debug("Ignoring activity from stale conversation {}", events.session_id)
            return
        self.mark_active(events.session_id)

    def _build_options(self, events: ConversationEvents, options: dict[str, Any] | None) -> dict[str, Any]:
        opts = dict(options or {})
        if self._nl_server_url and "sempreUrl" not in opts:
            opts["sempreUrl"] = self._nl_server_url
        opts["events"] = events
        return opts

    @asynccontextmanager
    async def _opening(self, session_id: str):
        """Serialize opens under one id so exactly one of them creates the conversation."""
        gate = self._gates.get(session_id)
        if gate is None:
            gate = self._gates[session_id] = _OpenGate()
        gate.users += 1
        try:
            async with gate.lock:
                yield
        finally:
            gate.users -= 1
            if gate.users == 0:
                del self._gates[session_id]

    async def open(
        self,
        session_id: str,
        user: Any,
        delegate: RpcObject,
        options: dict[str, Any] | None = None,
    ) -> ConversationSession:
        """Open a fresh conversation, tearing down any existing one under the same id."""
        async with self._opening(session_id):
            return await self._open(session_id, user, delegate, options)

    async def _open(
        self,
        session_id: str,
        user: Any,
        delegate: RpcObject,
        options: dict[str, Any] | None,
    ) -> ConversationSession:
        existing = self._sessions.pop(session_id, None)
        if existing is not None:
            logger.debug("Replacing conversation {}", session_id)
            await self._release(existing)

        assistant = self._backend.assistant
        user_wire = _user_wire(user)
        events = ConversationEvents(self, session_id)
        try:
            handle = await assistant.open_conversation(session_id, user_wire, delegate, self._build_options(events, options))
        except Exception:
            self._backend.release(events)
            raise

        raced = self._sessions.pop(session_id, None)
        if raced is not None:
            await self._release(raced)
        session = ConversationSession(
            session_id=session_id,
            user=user_wire,
            delegate=delegate,
            handle=handle,
            events=events,
        )
        self._sessions[session_id] = session
        self.mark_active(session_id)
        logger.info("Opened conversation {}", session_id)
        return session

    async def get_or_open(
        self,
        session_id: str,
        user: Any,
        delegate: RpcObject,
        options: dict[str, Any] | None = None,
    ) -> ConversationSession:
        """Resume an existing conversation with a new delegate, or open and start one."""
        async with self._opening(session_id):
            session = self._sessions.get(session_id)
            if session is not None:
                handle = await self._backend.assistant.get_or_open_conversation(
                    session_id, session.user, delegate, self._build_options(session.events, options)
                )
                if handle.proxy is not session.handle.proxy:
                    await session.handle.release()
                    session.handle = handle
                session.delegate = delegate
                return session

            session = await self._open(session_id, user, delegate, options)
            try:
                await session.handle.start()
            except Exception:
                # Only tear down the entry if it is still ours.
                if self._sessions.get(session_id) is session:
                    await self.close(session_id)
                else:
                    await self._release(session)
                raise
            return session

    async def close(self, session_id: str) -> None:
        """Close and forget a session. Unknown ids are ignored."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        if self._most_recent == session_id:
            self._most_recent = None
        try:
            await self._backend.assistant.close_conversation(session_id)
        except (BackendUnavailableError, ChannelClosedError) as exc:
            logger.debug("Engine gone while closing conversation {}: {}", session_id, exc)
        finally:
            await self._release(session)
        logger.info("Closed conversation {}", session_id)

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            try:
                await self.close(session_id)
            except Exception as exc:
                logger.warning("Failed to close conversation {}: {}", session_id, exc)

    async def _release(self, session: ConversationSession) -> None:
        await session.handle.release()
        self._backend.release(session.events)

    async def notify_all(self, *data: Any) -> list[NotifyResult]:
        return await self._fan_out("notify", data)

    async def notify_error_all(self, *data: Any) -> list[NotifyResult]:
        return await self._fan_out("notify_error", data)

    async def _fan_out(self, method: str, data: tuple[Any, ...]) -> list[NotifyResult]:
        targets = list(self._sessions.values())
        outcomes = await asyncio.gather(
            *(getattr(s.handle, method)(*data) for s in targets),
            return_exceptions=True,
        )
        results: list[NotifyResult] = []
        for session, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("{} to conversation {} failed: {}", method, session.session_id, outcome)
                results.append(NotifyResult(session.session_id, ok=False, error=outcome))
            else:
                results.append(NotifyResult(session.session_id, ok=True))
        return results

    def _on_backend_state(self, state: ConnectionState) -> None:
        if state != ConnectionState.DISCONNECTED or not self._sessions:
            return
        # The engine's conversations died with the channel.
        logger.info("Dropping {} conversation(s) after engine disconnect", len(self._sessions))
        self._sessions.clear()
        self._most_recent = None
