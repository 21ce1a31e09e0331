from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine

from .channel import Channel
from .errors import AcpTransportError
from .models import Observer, Status
from .protocol import (
    AUTO_APPROVE_OUTCOME,
    FIRST_REQUEST_ID,
    INITIALIZE_REQUEST_ID,
    METHOD_NOT_FOUND,
    SESSION_REQUEST_PERMISSION_METHOD,
    classify_message,
    encode_message,
    extract_error,
    format_error,
    make_error_response,
    make_result_response,
    normalize_result,
)

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[dict[str, Any]], None]
RequestHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


@dataclass(slots=True)
class _PendingRequest:
    request_key: str
    observer: Observer


class Transport:
    """NDJSON framing and JSON-RPC routing over one agent channel.

    Inbound bytes are split into lines by `feed()`; every routed message is
    turned into a delivery on an internal queue that a dispatcher task runs,
    so observers and handlers are never invoked from inside `feed()`.
    """

    def __init__(
        self,
        channel: Channel,
        *,
        on_ready: Callable[[Any], None] | None = None,
        on_handshake_error: Callable[[dict[str, Any]], None] | None = None,
        on_closed: Callable[[str], None] | None = None,
    ) -> None:
        """Create a transport bound to a channel.

        Args:
            channel: Connected (or connectable) byte channel.
            on_ready: Called with the result of the handshake response.
            on_handshake_error: Called with the error of a failed handshake.
            on_closed: Called with a reason once the inbound stream ends.
        """
        self._channel = channel
        self._on_ready = on_ready
        self._on_handshake_error = on_handshake_error
        self._on_closed = on_closed

        self._next_rpc_id = FIRST_REQUEST_ID
        self._pending: dict[int, _PendingRequest] = {}
        self._request_ids: dict[str, int] = {}
        self._buffer = b""
        self._malformed_frames = 0

        self._notification_handler: NotificationHandler | None = None
        self._request_handler: RequestHandler | None = None

        self._deliveries: asyncio.Queue[Callable[[], None]] = asyncio.Queue()
        self._send_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        self._dispatch_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def pending_count(self) -> int:
        """Number of outbound requests still awaiting a reply."""
        return len(self._pending)

    @property
    def malformed_frames(self) -> int:
        """Number of inbound lines dropped because they were not valid JSON."""
        return self._malformed_frames

    def is_pending(self, request_key: str) -> bool:
        rpc_id = self._request_ids.get(request_key)
        return rpc_id is not None and rpc_id in self._pending

    def on_notification(self, handler: NotificationHandler | None) -> None:
        """Register the handler receiving agent notifications."""
        self._notification_handler = handler

    def on_request(self, handler: RequestHandler | None) -> None:
        """Register the handler for agent-initiated requests.

        The handler owns the reply: it must eventually call `respond()` or
        `respond_error()`. Without a handler, permission requests are
        auto-approved and anything else is answered with method-not-found.
        """
        self._request_handler = handler

    async def start(self) -> Transport:
        """Start the reader and dispatcher tasks once."""
        if self._closed:
            raise AcpTransportError("transport is closed")
        if self._dispatch_task is None:
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())
        return self

    async def close(self) -> None:
        """Stop background tasks and fail requests still in flight."""
        if self._closed:
            return
        self._closed = True

        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None

        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._dispatch_task
            self._dispatch_task = None

        pending = list(self._pending.values())
        self._pending.clear()
        self._request_ids.clear()
        for entry in pending:
            try:
                entry.observer.on_complete("failed", "ACP transport closed")
            except Exception:
                logger.exception("observer failed during close key=%s", entry.request_key)

        for task in list(self._background_tasks):
            task.cancel()

    async def flush(self) -> None:
        """Wait until every delivery queued so far has run."""
        await self._deliveries.join()

    async def send(
        self,
        request_key: str,
        message: Mapping[str, Any],
        observer: Observer,
    ) -> int:
        """Assign the next id, register `observer` for it and write the request.

        Returns the JSON-RPC id used. Write failures are reported through the
        observer rather than raised.
        """
        rpc_id = self._next_rpc_id
        self._next_rpc_id += 1

        envelope = dict(message)
        envelope["id"] = rpc_id
        self._pending[rpc_id] = _PendingRequest(request_key=request_key, observer=observer)
        self._request_ids[request_key] = rpc_id

        logger.debug(
            "sending request rpc_id=%s key=%s method=%s",
            rpc_id,
            request_key,
            envelope.get("method"),
        )
        try:
            await self._write(envelope)
        except AcpTransportError as exc:
            if self._take_pending(rpc_id) is not None:
                self._schedule(observer.on_complete, "failed", f"Failed to send request: {exc}")
        return rpc_id

    async def request(
        self,
        request_key: str,
        message: Mapping[str, Any],
    ) -> tuple[Status, Any]:
        """Send a request and wait for its `(status, payload)` outcome.

        Cancelling the awaiting task stops waiting locally; nothing is sent to
        the agent.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[tuple[Status, Any]] = loop.create_future()

        def _on_complete(status: Status, payload: Any) -> None:
            if not future.done():
                future.set_result((status, payload))

        try:
            await self.send(request_key, message, Observer(on_complete=_on_complete))
            return await future
        except asyncio.CancelledError:
            self.cancel_request(request_key)
            raise

    def cancel_request(self, request_key: str) -> None:
        """Forget the observer registered under `request_key`, if any."""
        rpc_id = self._request_ids.pop(request_key, None)
        if rpc_id is None:
            return
        self._pending.pop(rpc_id, None)
        logger.debug("request cancelled rpc_id=%s key=%s", rpc_id, request_key)

    async def write_message(self, message: Mapping[str, Any]) -> None:
        """Write an envelope as-is (handshake request or notification)."""
        await self._write(message)

    async def respond(self, request_id: int | str, result: Any) -> None:
        """Reply to an agent-initiated request."""
        logger.debug("sending response rpc_id=%s", request_id)
        await self._write(make_result_response(request_id, result))

    async def respond_error(self, request_id: int | str, code: int, message: str) -> None:
        """Reply to an agent-initiated request with a JSON-RPC error."""
        logger.debug("sending error response rpc_id=%s code=%s", request_id, code)
        await self._write(make_error_response(request_id, code, message))

    def feed(self, data: bytes | str) -> None:
        """Consume inbound bytes and route every complete line.

        Partial lines stay buffered until a later chunk completes them.
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._buffer += data

        while True:
            line, sep, rest = self._buffer.partition(b"\n")
            if not sep:
                break
            self._buffer = rest
            line = line.rstrip(b"\r")
            if line.strip():
                self._handle_line(line)

    async def _write(self, message: Mapping[str, Any]) -> None:
        async with self._send_lock:
            await self._channel.write(encode_message(message))

    def _handle_line(self, line: bytes) -> None:
        try:
            message = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            self._malformed_frames += 1
            logger.error("dropping malformed frame: %s line=%r", exc, line[:200])
            return
        if not isinstance(message, dict):
            self._malformed_frames += 1
            logger.error("dropping non-object frame line=%r", line[:200])
            return

        logger.debug(
            "received message rpc_id=%s method=%s",
            message.get("id"),
            message.get("method"),
        )

        kind = classify_message(message)
        if kind == "response":
            self._handle_response(message)
        elif kind == "error":
            self._handle_error(message)
        elif kind == "request":
            self._handle_agent_request(message)
        elif kind == "notification":
            self._handle_notification(message)
        else:
            logger.debug("ignoring unroutable message %r", message)

    def _handle_response(self, message: dict[str, Any]) -> None:
        rpc_id = message.get("id")
        if rpc_id == INITIALIZE_REQUEST_ID:
            logger.debug("received initialize response")
            if self._on_ready is not None:
                self._on_ready(message.get("result"))
            return

        entry = self._take_pending(rpc_id)
        if entry is None:
            logger.warning("no observer for response rpc_id=%s", rpc_id)
            return

        result = normalize_result(message.get("result"))
        self._schedule(entry.observer.on_complete, "success", result)

    def _handle_error(self, message: dict[str, Any]) -> None:
        rpc_id = message.get("id")
        error = extract_error(message) or {"message": str(message.get("error"))}
        description = format_error(error)
        logger.error("received error response rpc_id=%s %s", rpc_id, description)

        if rpc_id == INITIALIZE_REQUEST_ID:
            if self._on_handshake_error is not None:
                self._on_handshake_error(error)
            return

        entry = self._take_pending(rpc_id)
        if entry is None:
            return
        self._schedule(entry.observer.on_complete, "failed", description)

    def _handle_notification(self, message: dict[str, Any]) -> None:
        handler = self._notification_handler
        if handler is None:
            logger.debug("no notification handler method=%s", message.get("method"))
            return
        self._schedule(handler, message)

    def _handle_agent_request(self, message: dict[str, Any]) -> None:
        handler = self._request_handler
        if handler is not None:
            self._schedule(self._run_request_handler, handler, message)
            return
        self._spawn_background_task(self._default_request_handler(message))

    def _run_request_handler(self, handler: RequestHandler, message: dict[str, Any]) -> None:
        result = handler(message)
        if inspect.isawaitable(result):
            self._spawn_background_task(result)

    async def _default_request_handler(self, message: dict[str, Any]) -> None:
        request_id = message["id"]
        method = message.get("method")
        try:
            if method == SESSION_REQUEST_PERMISSION_METHOD:
                params = message.get("params")
                tool_call = params.get("toolCall") if isinstance(params, Mapping) else None
                logger.debug("auto-approving permission request toolCall=%r", tool_call)
                await self.respond(request_id, AUTO_APPROVE_OUTCOME)
            else:
                logger.warning("unknown agent request method=%s", method)
                await self.respond_error(
                    request_id,
                    METHOD_NOT_FOUND,
                    f"Method not found: {method}",
                )
        except AcpTransportError as exc:
            logger.warning("failed to answer agent request rpc_id=%s: %s", request_id, exc)

    def _take_pending(self, rpc_id: Any) -> _PendingRequest | None:
        if not isinstance(rpc_id, int):
            return None
        entry = self._pending.pop(rpc_id, None)
        if entry is None:
            return None
        if self._request_ids.get(entry.request_key) == rpc_id:
            del self._request_ids[entry.request_key]
        return entry

    def _schedule(self, callback: Callable[..., Any], *args: Any) -> None:
        self._deliveries.put_nowait(lambda: callback(*args))

    def _spawn_background_task(self, coro: Coroutine[Any, Any, Any] | Awaitable[Any]) -> None:
        task: asyncio.Task[Any] = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _dispatch_loop(self) -> None:
        """Run queued deliveries in arrival order."""
        while True:
            delivery = await self._deliveries.get()
            try:
                delivery()
            except Exception:
                logger.exception("delivery callback failed")
            finally:
                self._deliveries.task_done()

    async def _read_loop(self) -> None:
        """Pump channel bytes into `feed()` until end of stream."""
        reason = "end of stream"
        try:
            while True:
                chunk = await self._channel.read()
                if not chunk:
                    break
                self.feed(chunk)
        except asyncio.CancelledError:
            raise
        except AcpTransportError as exc:
            reason = str(exc)
        except Exception as exc:
            logger.exception("reader loop failed")
            reason = f"reader loop failed: {exc}"

        logger.debug("inbound stream ended: %s", reason)
        for rpc_id in list(self._pending):
            entry = self._take_pending(rpc_id)
            if entry is not None:
                self._schedule(
                    entry.observer.on_complete,
                    "failed",
                    f"ACP transport closed: {reason}",
                )
        if self._on_closed is not None:
            self._on_closed(reason)
