from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from .models import NewSessionResult, Observer, RequestContext, SessionState, Status
from .protocol import (
    AGENT_MESSAGE_CHUNK,
    AGENT_THOUGHT_CHUNK,
    AVAILABLE_COMMANDS_UPDATE,
    CURRENT_MODE_UPDATE,
    ERROR_UPDATE,
    PLAN,
    TOOL_CALL,
    TOOL_CALL_UPDATE,
    TOOL_WRITE_STATUSES,
    USER_MESSAGE_CHUNK,
    session_cancel_notification,
    session_new_request,
    session_prompt_request,
    session_set_model_request,
)

if TYPE_CHECKING:
    from .transport import Transport

logger = logging.getLogger(__name__)

# Wall-clock budget for one conversation, creation through final answer.
DEFAULT_REQUEST_TIMEOUT = 120.0

_TERMINAL_STATES = frozenset({"completed", "cancelled"})


class Session:
    """One agent conversation driven over a shared transport.

    State moves `creating -> active -> completed | cancelled` and never
    back. Updates that arrive while `creating` are buffered and replayed in
    arrival order at activation, before any later update is handled. The
    caller's `on_complete` fires exactly once.
    """

    def __init__(
        self,
        query: str,
        context: RequestContext,
        observer: Observer,
        *,
        key: str,
        on_registered: Callable[[str], None] | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Create a session; nothing is sent until `start()`.

        Args:
            query: User query sent as the last prompt block.
            context: Scratch path, model, cwd and extra context blocks.
            observer: Caller callbacks.
            key: Temporary pool key, also used to derive request keys.
            on_registered: Called with the agent-assigned id at activation.
            timeout: Seconds before an unfinished session is cancelled.
        """
        self.session_id: str | None = None
        self.state: SessionState = "creating"
        self.key = key
        self.query = query
        self.context = context

        self._observer = observer
        self._on_registered = on_registered
        self._timeout = timeout
        self._transport: Transport | None = None
        self._task: asyncio.Task[None] | None = None
        self._reported = False

        self._response_chunks: list[str] = []
        self._tool_write_content: str | None = None
        self._pending_updates: list[dict[str, Any]] = []

        self._update_handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            AGENT_MESSAGE_CHUNK: self._on_message_chunk,
            AGENT_THOUGHT_CHUNK: self._on_thought_chunk,
            USER_MESSAGE_CHUNK: self._on_user_message_chunk,
            TOOL_CALL: self._on_tool_call,
            TOOL_CALL_UPDATE: self._on_tool_call,
            PLAN: self._on_plan,
            AVAILABLE_COMMANDS_UPDATE: self._on_available_commands,
            CURRENT_MODE_UPDATE: self._on_current_mode,
            ERROR_UPDATE: self._on_error,
        }

    @property
    def tool_write_content(self) -> str | None:
        """Last content the agent's own tools wrote to the scratch path."""
        return self._tool_write_content

    @property
    def response_text(self) -> str:
        """Concatenation of streamed assistant text so far."""
        return "".join(self._response_chunks)

    @property
    def pending_update_count(self) -> int:
        return len(self._pending_updates)

    def start(self, transport: Transport) -> Session:
        """Issue `session/new` and drive the conversation in a task."""
        if self._task is not None:
            return self
        self._transport = transport
        logger.debug("creating session key=%s model=%s", self.key, self.context.model)
        self._task = asyncio.create_task(self._run())
        return self

    async def wait(self) -> None:
        """Wait until the conversation task has finished."""
        if self._task is None:
            return
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    def handle_update(self, update: Mapping[str, Any]) -> None:
        """Handle the `update` object of one `session/update` notification."""
        if self.state == "creating":
            logger.debug(
                "buffering update while creating key=%s sessionUpdate=%s",
                self.key,
                update.get("sessionUpdate"),
            )
            self._pending_updates.append(dict(update))
            return

        if self.state != "active":
            return

        kind = update.get("sessionUpdate")
        if not isinstance(kind, str):
            logger.warning("update missing sessionUpdate type: %r", update)
            return

        handler = self._update_handlers.get(kind)
        if handler is None:
            logger.debug("unknown session update type sessionUpdate=%s", kind)
            return
        handler(dict(update))

    def finalize(self) -> None:
        """Complete an active session and report its answer.

        Answer priority: captured tool write, then the scratch file, then
        streamed text. If none is available the read error is reported.
        """
        if self.state != "active":
            return
        self.state = "completed"
        self._stop_task()
        logger.debug("finalizing session session_id=%s", self.session_id)

        if self._tool_write_content is not None:
            logger.debug("using captured tool write session_id=%s", self.session_id)
            self._report("success", self._tool_write_content)
            return

        scratch_file = self.context.scratch_file
        try:
            text = Path(scratch_file).read_text(encoding="utf-8")
        except OSError as exc:
            read_error: OSError = exc
        else:
            logger.debug("response read from scratch file session_id=%s", self.session_id)
            self._report("success", text)
            return

        if self._response_chunks:
            logger.debug("using streamed message chunks session_id=%s", self.session_id)
            self._report("success", "".join(self._response_chunks))
            return

        logger.error(
            "no response available session_id=%s scratch_file=%s error=%s",
            self.session_id,
            scratch_file,
            read_error,
        )
        self._report("failed", f"Failed to read response file: {read_error}")

    async def cancel(self) -> None:
        """Cancel the conversation and report `cancelled` to the caller.

        The agent is told only when it has already assigned an id.
        """
        if self.state in _TERMINAL_STATES:
            return
        logger.debug("cancelling session key=%s session_id=%s", self.key, self.session_id)
        self.state = "cancelled"
        self._stop_task()
        self._report("cancelled", "Request cancelled")
        await self._notify_cancel()

    async def _run(self) -> None:
        try:
            await asyncio.wait_for(self._converse(), timeout=self._timeout)
        except asyncio.TimeoutError:
            if self.state in _TERMINAL_STATES:
                return
            logger.error("request timeout key=%s session_id=%s", self.key, self.session_id)
            self.state = "cancelled"
            self._report("failed", f"Request timeout after {_describe_seconds(self._timeout)}")
            await self._notify_cancel()
        except Exception as exc:
            logger.exception("session failed key=%s", self.key)
            if self.state not in _TERMINAL_STATES:
                self.state = "completed"
            self._report("failed", f"ACP session failed: {exc}")

    async def _converse(self) -> None:
        transport = self._require_transport()
        context = self.context
        cwd = context.cwd or os.getcwd()

        created, reason = await self._create(transport, session_new_request(cwd, context.model))
        if created is None:
            if self.state == "creating":
                logger.error("session/new failed key=%s error=%s", self.key, reason)
                self.state = "completed"
                self._report("failed", f"Failed to create session: {reason}")
            return
        if self.state != "active":
            return
        session_id = created.session_id

        model = context.model
        current_model = created.current_model_id
        if model and current_model and model != current_model:
            logger.debug("switching model from=%s to=%s", current_model, model)
            status, payload = await transport.request(
                f"session/set_model:{self.key}",
                session_set_model_request(session_id, model),
            )
            if status != "success":
                logger.warning("failed to switch model, using %s: %s", current_model, payload)
            else:
                logger.debug("model switched model=%s", model)
            if self.state != "active":
                return

        status, payload = await transport.request(
            f"session/prompt:{self.key}",
            session_prompt_request(
                session_id,
                self.query,
                context_blocks=context.ai_context,
                scratch_file=context.scratch_file,
            ),
        )
        if self.state != "active":
            return
        if status != "success":
            logger.error("session/prompt failed session_id=%s error=%s", session_id, payload)
            self.state = "completed"
            self._report("failed", f"Failed to send prompt: {payload}")
            return

        logger.debug("prompt completed session_id=%s stopReason=%s", session_id, payload)
        self.finalize()

    async def _create(
        self,
        transport: Transport,
        message: dict[str, Any],
    ) -> tuple[NewSessionResult | None, Any]:
        """Send `session/new`; activation happens inside the response delivery.

        An update queued right behind the response therefore finds the
        session active and registered under its real id.
        """
        request_key = f"session/new:{self.key}"
        loop = asyncio.get_running_loop()
        done: asyncio.Future[tuple[NewSessionResult | None, Any]] = loop.create_future()

        def _on_created(status: Status, payload: Any) -> None:
            created = NewSessionResult.from_payload(payload) if status == "success" else None
            if created is not None and self.state == "creating":
                self._activate(created.session_id)
            if created is None and status == "success":
                payload = f"no sessionId in {payload!r}"
            if not done.done():
                done.set_result((created, payload))

        try:
            await transport.send(request_key, message, Observer(on_complete=_on_created))
            return await done
        except asyncio.CancelledError:
            transport.cancel_request(request_key)
            raise

    def _activate(self, session_id: str) -> None:
        # Registration may hand over updates that arrived before the id was
        # known; they land in the buffer and replay ahead of anything newer.
        self.session_id = session_id
        logger.debug("session created key=%s session_id=%s", self.key, session_id)
        if self._on_registered is not None:
            self._on_registered(session_id)
        self.state = "active"
        self._replay_pending_updates()

    def _replay_pending_updates(self) -> None:
        if not self._pending_updates:
            return
        pending = self._pending_updates
        self._pending_updates = []
        logger.debug("replaying pending updates count=%d", len(pending))
        for update in pending:
            self.handle_update(update)

    def _on_message_chunk(self, update: dict[str, Any]) -> None:
        text = _text_content(update.get("content"))
        if text is None:
            return
        self._response_chunks.append(text)
        self._observer.on_stream_output(text)

    def _on_thought_chunk(self, update: dict[str, Any]) -> None:
        text = _text_content(update.get("content"))
        if text is not None:
            logger.debug("agent thought: %s", text)

    def _on_user_message_chunk(self, update: dict[str, Any]) -> None:
        logger.debug("user message chunk content=%r", update.get("content"))

    def _on_plan(self, update: dict[str, Any]) -> None:
        logger.debug("plan update entries=%r", update.get("entries"))

    def _on_available_commands(self, update: dict[str, Any]) -> None:
        logger.debug("available commands %r", update.get("availableCommands"))

    def _on_current_mode(self, update: dict[str, Any]) -> None:
        logger.debug("mode changed currentModeId=%s", update.get("currentModeId"))

    def _on_tool_call(self, update: dict[str, Any]) -> None:
        logger.debug(
            "tool call %s toolCallId=%s status=%s title=%s",
            update.get("sessionUpdate"),
            update.get("toolCallId"),
            update.get("status"),
            update.get("title"),
        )
        if update.get("status") not in TOOL_WRITE_STATUSES:
            return
        self._capture_from_raw_input(update)
        self._capture_from_content(update)

    def _capture_from_raw_input(self, update: dict[str, Any]) -> None:
        raw_input = update.get("rawInput")
        if not isinstance(raw_input, Mapping):
            return
        target = raw_input.get("filePath") or raw_input.get("path")
        content = raw_input.get("content")
        if isinstance(content, str) and self._is_scratch_path(target):
            self._tool_write_content = content
            logger.debug("captured tool write from rawInput length=%d", len(content))

    def _capture_from_content(self, update: dict[str, Any]) -> None:
        content = update.get("content")
        if not isinstance(content, list):
            return
        for item in content:
            if not isinstance(item, Mapping) or item.get("type") != "diff":
                continue
            new_text = item.get("newText")
            if isinstance(new_text, str) and self._is_scratch_path(item.get("path")):
                self._tool_write_content = new_text
                logger.debug("captured tool write from diff length=%d", len(new_text))

    def _on_error(self, update: dict[str, Any]) -> None:
        message = update.get("message") or update.get("error") or "ACP error"
        logger.error("error update session_id=%s message=%s", self.session_id, message)
        self.state = "completed"
        self._stop_task()
        self._report("failed", str(message))

    def _is_scratch_path(self, path: Any) -> bool:
        if not isinstance(path, str) or not path:
            return False
        return os.path.normpath(path) == os.path.normpath(self.context.scratch_file)

    def _report(self, status: Status, payload: Any) -> None:
        if self._reported:
            return
        self._reported = True
        self._observer.on_complete(status, payload)

    def _stop_task(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()

    async def _notify_cancel(self) -> None:
        if self.session_id is None or self._transport is None:
            return
        await self._transport.write_message(session_cancel_notification(self.session_id))

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise RuntimeError("session has not been started")
        return self._transport


def _text_content(content: Any) -> str | None:
    if isinstance(content, Mapping) and content.get("type") == "text":
        text = content.get("text")
        if isinstance(text, str):
            return text
    return None


def _describe_seconds(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{seconds:g} seconds"
