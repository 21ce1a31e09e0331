from __future__ import annotations

import asyncio
import itertools
import logging
import os
import shlex
from collections.abc import Iterator, Mapping, Sequence
from typing import Any, Callable

from .channel import Channel, StdioChannel, WebSocketChannel
from .errors import AcpError
from .models import Observer, RequestContext, Status
from .process import DEFAULT_CLIENT_NAME, DEFAULT_CLIENT_VERSION, AgentProcess
from .protocol import PROTOCOL_VERSION, SESSION_UPDATE_METHOD
from .session import DEFAULT_REQUEST_TIMEOUT, Session

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[], Channel]

# Provider name announcing that concurrent sessions are supported.
PROVIDER_NAME = "acp"

DEFAULT_MAX_SESSIONS = 10

# Updates held per unknown session id while some session is still creating.
MAX_EARLY_UPDATES = 256


class SessionRegistry:
    """Sessions keyed by a temporary key first and by their real id later.

    Lookup by id tries the key first. Only on a miss does it scan every
    session's own `session_id`, which covers an update arriving after the
    session learned its id but before the pool re-keyed it. The scan
    assumes no two live sessions ever report the same id.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def keys(self) -> list[str]:
        return list(self._sessions)

    def register(self, key: str, session: Session) -> None:
        self._sessions[key] = session

    def rekey(self, old_key: str, new_key: str) -> bool:
        """Move the entry at `old_key` to `new_key`; False if it is gone."""
        session = self._sessions.pop(old_key, None)
        if session is None:
            return False
        self._sessions[new_key] = session
        return True

    def lookup(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        for candidate in self._sessions.values():
            if candidate.session_id == session_id:
                return candidate
        return None

    def discard(self, session: Session) -> None:
        """Remove every key still pointing at `session`."""
        for key in [k for k, v in self._sessions.items() if v is session]:
            del self._sessions[key]

    def clear(self) -> None:
        self._sessions.clear()


class SessionPool:
    """Concurrent agent sessions sharing one agent process.

    The pool owns the process: it is started lazily by the first request,
    replaced when it stops being healthy, and terminated by `shutdown()`.
    """

    provider_name = PROVIDER_NAME

    def __init__(
        self,
        channel_factory: ChannelFactory,
        *,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        handshake_timeout: float = 30.0,
        client_name: str = DEFAULT_CLIENT_NAME,
        client_version: str = DEFAULT_CLIENT_VERSION,
        protocol_version: int = PROTOCOL_VERSION,
    ) -> None:
        """Create an idle pool.

        Args:
            channel_factory: Builds a fresh, unconnected channel per process.
            max_sessions: Cap on concurrently tracked sessions.
            request_timeout: Per-session timeout in seconds.
            handshake_timeout: Timeout for the `initialize` handshake.
            client_name: Name announced in `clientInfo`.
            client_version: Version announced in `clientInfo`.
            protocol_version: Protocol version announced in the handshake.
        """
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self._channel_factory = channel_factory
        self.max_sessions = max_sessions
        self._request_timeout = request_timeout
        self._handshake_timeout = handshake_timeout
        self._client_name = client_name
        self._client_version = client_version
        self._protocol_version = protocol_version

        self._registry = SessionRegistry()
        self._process: AgentProcess | None = None
        self._process_lock = asyncio.Lock()
        self._key_counter = itertools.count(1)
        self._early_updates: dict[str, list[Mapping[str, Any]]] = {}

    @classmethod
    def connect_stdio(
        cls,
        *,
        command: Sequence[str] | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        **kwargs: Any,
    ) -> SessionPool:
        """Create a pool whose agent is a local subprocess."""
        resolved_command = list(command) if command is not None else _default_stdio_command()

        def _factory() -> Channel:
            return StdioChannel(
                resolved_command,
                cwd=cwd,
                env=env,
                connect_timeout=connect_timeout,
            )

        return cls(_factory, **kwargs)

    @classmethod
    def connect_websocket(
        cls,
        *,
        url: str | None = None,
        token: str | None = None,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
        **kwargs: Any,
    ) -> SessionPool:
        """Create a pool whose agent listens on a websocket."""
        resolved_url = url or os.getenv("ACP_AGENT_WS_URL") or "ws://127.0.0.1:8765"
        resolved_token = token or os.getenv("ACP_AGENT_TOKEN")
        resolved_headers = dict(headers) if headers is not None else {}
        if resolved_token and "Authorization" not in resolved_headers:
            resolved_headers["Authorization"] = f"Bearer {resolved_token}"

        def _factory() -> Channel:
            return WebSocketChannel(
                resolved_url,
                headers=resolved_headers,
                connect_timeout=connect_timeout,
            )

        return cls(_factory, **kwargs)

    @property
    def active_count(self) -> int:
        return len(self._registry)

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def process(self) -> AgentProcess | None:
        return self._process

    async def __aenter__(self) -> SessionPool:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.shutdown()

    async def make_request(
        self,
        query: str,
        context: RequestContext | None = None,
        observer: Observer | None = None,
    ) -> Session | None:
        """Start one conversation; its outcome arrives via `observer.on_complete`.

        Returns the running session, or None when the request was rejected
        or the agent process could not be started.
        """
        context = context if context is not None else RequestContext()
        observer = observer if observer is not None else Observer()

        if len(self._registry) >= self.max_sessions:
            logger.warning(
                "rejecting request, %d sessions active (max %d)",
                len(self._registry),
                self.max_sessions,
            )
            observer.on_complete(
                "failed",
                f"Too many concurrent requests ({self.max_sessions}). "
                "Please wait for some to complete.",
            )
            return None

        temp_key = f"temp-{context.xid}-{next(self._key_counter)}"
        session: Session | None = None

        def _on_registered(session_id: str) -> None:
            self._registry.rekey(temp_key, session_id)
            early = self._early_updates.pop(session_id, [])
            if early and session is not None:
                logger.debug(
                    "handing over early updates session_id=%s count=%d",
                    session_id,
                    len(early),
                )
                for update in early:
                    session.handle_update(update)

        def _on_complete(status: Status, payload: Any) -> None:
            if session is not None:
                self._forget(session)
            logger.debug("request finished key=%s status=%s", temp_key, status)
            observer.on_complete(status, payload)

        session = Session(
            query,
            context,
            Observer(
                on_stream_output=observer.on_stream_output,
                on_stream_error=observer.on_stream_error,
                on_complete=_on_complete,
            ),
            key=temp_key,
            on_registered=_on_registered,
            timeout=self._request_timeout,
        )
        self._registry.register(temp_key, session)

        try:
            process = await self._ensure_process()
        except asyncio.CancelledError:
            logger.debug("request cancelled while starting agent key=%s", temp_key)
            self._forget(session)
            observer.on_complete("cancelled", "Request cancelled")
            raise
        except Exception as exc:
            if isinstance(exc, AcpError):
                logger.error("failed to start agent process: %s", exc)
            else:
                logger.exception("failed to start agent process")
            self._forget(session)
            observer.on_complete("failed", f"Failed to start ACP process: {exc}")
            return None

        session.start(process.transport)
        return session

    async def cancel(self, session_id: str) -> bool:
        """Cancel a live session by real id or temporary key."""
        session = self._registry.lookup(session_id)
        if session is None:
            return False
        await session.cancel()
        return True

    async def shutdown(self) -> None:
        """Terminate the agent process and forget every session."""
        process = self._process
        self._process = None
        self._registry.clear()
        self._early_updates.clear()
        if process is not None:
            await process.terminate()

    async def _ensure_process(self) -> AgentProcess:
        async with self._process_lock:
            process = self._process
            if process is not None and process.is_healthy():
                return process
            if process is not None:
                logger.warning("agent process unhealthy (%s), restarting", process.state)
                await process.terminate()
            process = AgentProcess(
                self._channel_factory(),
                on_notification=self._route_notification,
                handshake_timeout=self._handshake_timeout,
                client_name=self._client_name,
                client_version=self._client_version,
                protocol_version=self._protocol_version,
            )
            self._process = process
            try:
                await process.start()
            except BaseException:
                self._process = None
                raise
            return process

    def _route_notification(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        if method != SESSION_UPDATE_METHOD:
            logger.debug("ignoring notification method=%s", method)
            return

        params = message.get("params")
        if not isinstance(params, Mapping):
            logger.warning("session/update without params")
            return
        session_id = params.get("sessionId")
        update = params.get("update")
        if not isinstance(session_id, str) or not isinstance(update, Mapping):
            logger.warning("malformed session/update params=%r", params)
            return

        session = self._registry.lookup(session_id)
        if session is not None:
            session.handle_update(update)
            return

        if self._has_creating_session():
            held = self._early_updates.setdefault(session_id, [])
            if len(held) < MAX_EARLY_UPDATES:
                logger.debug("holding update for unknown session_id=%s", session_id)
                held.append(update)
                return
        logger.warning("no session found for update session_id=%s", session_id)

    def _forget(self, session: Session) -> None:
        self._registry.discard(session)
        if not self._has_creating_session():
            self._early_updates.clear()

    def _has_creating_session(self) -> bool:
        return any(session.state == "creating" for session in self._registry)


def _default_stdio_command() -> list[str]:
    """Return default agent command for stdio mode."""
    from_env = os.getenv("ACP_AGENT_CMD")
    if from_env:
        return shlex.split(from_env)
    return ["opencode", "acp"]
