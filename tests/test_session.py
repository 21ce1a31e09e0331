from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import acp_agent_client.session as session_module
from acp_agent_client.models import Observer, RequestContext, Status
from acp_agent_client.session import Session


class ScriptedTransport:
    """Answers session requests from a script; held methods wait for `release()`."""

    def __init__(
        self,
        replies: dict[str, tuple[Status, Any]] | None = None,
        hold: tuple[str, ...] = (),
    ) -> None:
        self.replies: dict[str, tuple[Status, Any]] = {
            "session/new": ("success", {"sessionId": "s-1"}),
            "session/set_model": ("success", ""),
            "session/prompt": ("success", "end_turn"),
        }
        self.replies.update(replies or {})
        self.hold = set(hold)
        self.held: dict[str, Observer] = {}
        self.requests: list[dict[str, Any]] = []
        self.notifications: list[dict[str, Any]] = []
        self.cancelled_keys: list[str] = []

    @property
    def methods(self) -> list[str]:
        return [message["method"] for message in self.requests]

    async def send(self, request_key: str, message: dict[str, Any], observer: Observer) -> int:
        self.requests.append(dict(message))
        method = message["method"]
        if method in self.hold:
            self.held[method] = observer
        else:
            status, payload = self.replies[method]
            asyncio.get_running_loop().call_soon(observer.on_complete, status, payload)
        return len(self.requests) + 1

    async def request(self, request_key: str, message: dict[str, Any]) -> tuple[Status, Any]:
        future: asyncio.Future[tuple[Status, Any]] = asyncio.get_running_loop().create_future()

        def _on_complete(status: Status, payload: Any) -> None:
            if not future.done():
                future.set_result((status, payload))

        await self.send(request_key, message, Observer(on_complete=_on_complete))
        try:
            return await future
        except asyncio.CancelledError:
            self.cancel_request(request_key)
            raise

    def release(self, method: str, status: Status | None = None, payload: Any = None) -> None:
        observer = self.held.pop(method)
        if status is None:
            status, payload = self.replies[method]
        observer.on_complete(status, payload)

    def cancel_request(self, request_key: str) -> None:
        self.cancelled_keys.append(request_key)

    async def write_message(self, message: dict[str, Any]) -> None:
        self.notifications.append(dict(message))


class Collector:
    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.completions: list[tuple[str, Any]] = []

    def observer(self) -> Observer:
        return Observer(
            on_stream_output=self.chunks.append,
            on_complete=lambda status, payload: self.completions.append((status, payload)),
        )


async def _wait_until(predicate: Any, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before deadline")
        await asyncio.sleep(0.001)


def _chunk(text: str) -> dict[str, Any]:
    return {"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": text}}


def _new_session(
    tmp_path: Path,
    collector: Collector,
    *,
    model: str | None = None,
    timeout: float = 5.0,
    registered: list[str] | None = None,
) -> Session:
    context = RequestContext(scratch_file=str(tmp_path / "answer.txt"), model=model, cwd="/repo")
    return Session(
        "rename foo to bar",
        context,
        collector.observer(),
        key="temp-0-1",
        on_registered=registered.append if registered is not None else None,
        timeout=timeout,
    )


async def _active(
    tmp_path: Path,
    collector: Collector,
    **kwargs: Any,
) -> tuple[Session, ScriptedTransport]:
    transport = ScriptedTransport(hold=("session/prompt",))
    session = _new_session(tmp_path, collector, **kwargs).start(transport)
    await _wait_until(lambda: "session/prompt" in transport.held)
    assert session.state == "active"
    return session, transport


def test_full_conversation_reads_scratch_file(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        registered: list[str] = []
        transport = ScriptedTransport(hold=("session/prompt",))
        session = _new_session(tmp_path, collector, registered=registered)
        assert session.state == "creating"
        session.start(transport)

        await _wait_until(lambda: "session/prompt" in transport.held)
        assert session.session_id == "s-1"
        assert registered == ["s-1"]
        assert transport.methods == ["session/new", "session/prompt"]
        assert transport.requests[0]["params"]["cwd"] == "/repo"
        prompt_blocks = transport.requests[1]["params"]["prompt"]
        assert prompt_blocks[-1]["text"].endswith(f"Write your response to: {tmp_path / 'answer.txt'}")

        (tmp_path / "answer.txt").write_text("bar()\n", encoding="utf-8")
        transport.release("session/prompt")
        await session.wait()

        assert session.state == "completed"
        assert collector.completions == [("success", "bar()\n")]

    asyncio.run(_run())


def test_updates_while_creating_are_replayed_in_order(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        transport = ScriptedTransport(hold=("session/new", "session/prompt"))
        session = _new_session(tmp_path, collector).start(transport)
        await _wait_until(lambda: "session/new" in transport.held)

        session.handle_update(_chunk("a"))
        session.handle_update(_chunk("b"))
        assert session.pending_update_count == 2
        assert collector.chunks == []

        transport.release("session/new")
        assert session.state == "active"
        assert session.pending_update_count == 0
        session.handle_update(_chunk("c"))

        assert collector.chunks == ["a", "b", "c"]
        assert session.response_text == "abc"
        await session.cancel()

    asyncio.run(_run())


def test_tool_write_from_raw_input_wins(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        session, transport = await _active(tmp_path, collector)
        scratch = session.context.scratch_file
        (tmp_path / "answer.txt").write_text("from file", encoding="utf-8")

        session.handle_update(_chunk("streamed"))
        session.handle_update(
            {
                "sessionUpdate": "tool_call_update",
                "toolCallId": "t1",
                "status": "completed",
                "rawInput": {"filePath": scratch, "content": "from tool"},
            }
        )
        assert session.tool_write_content == "from tool"

        transport.release("session/prompt")
        await session.wait()
        assert collector.completions == [("success", "from tool")]

    asyncio.run(_run())


def test_tool_write_from_diff_content(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        session, transport = await _active(tmp_path, collector)
        scratch = session.context.scratch_file

        session.handle_update(
            {
                "sessionUpdate": "tool_call",
                "toolCallId": "t1",
                "status": "in_progress",
                "rawInput": {"path": scratch, "content": "first"},
            }
        )
        session.handle_update(
            {
                "sessionUpdate": "tool_call_update",
                "toolCallId": "t1",
                "status": "completed",
                "content": [
                    {"type": "content", "content": {"type": "text", "text": "ignored"}},
                    {"type": "diff", "path": scratch, "oldText": "first", "newText": "second"},
                ],
            }
        )
        assert session.tool_write_content == "second"

        transport.release("session/prompt")
        await session.wait()
        assert collector.completions == [("success", "second")]

    asyncio.run(_run())


def test_tool_writes_elsewhere_or_pending_are_ignored(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        session, transport = await _active(tmp_path, collector)
        scratch = session.context.scratch_file

        session.handle_update(
            {
                "sessionUpdate": "tool_call",
                "status": "pending",
                "rawInput": {"filePath": scratch, "content": "too early"},
            }
        )
        session.handle_update(
            {
                "sessionUpdate": "tool_call_update",
                "status": "completed",
                "rawInput": {"filePath": str(tmp_path / "other.txt"), "content": "elsewhere"},
            }
        )
        assert session.tool_write_content is None
        await session.cancel()

    asyncio.run(_run())


def test_streamed_chunks_used_when_no_file(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        session, transport = await _active(tmp_path, collector)

        session.handle_update(_chunk("foo("))
        session.handle_update(_chunk(")"))
        transport.release("session/prompt")
        await session.wait()

        assert collector.chunks == ["foo(", ")"]
        assert collector.completions == [("success", "foo()")]

    asyncio.run(_run())


def test_missing_answer_reports_read_failure(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        session, transport = await _active(tmp_path, collector)

        transport.release("session/prompt")
        await session.wait()

        assert len(collector.completions) == 1
        status, payload = collector.completions[0]
        assert status == "failed"
        assert payload.startswith("Failed to read response file: ")

    asyncio.run(_run())


def test_finalize_twice_reports_once(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        session, _transport = await _active(tmp_path, collector)
        session.handle_update(_chunk("x"))

        session.finalize()
        session.finalize()
        await session.wait()

        assert session.state == "completed"
        assert collector.completions == [("success", "x")]

    asyncio.run(_run())


def test_thought_and_unknown_updates_are_not_forwarded(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        session, _transport = await _active(tmp_path, collector)

        session.handle_update(
            {"sessionUpdate": "agent_thought_chunk", "content": {"type": "text", "text": "hmm"}}
        )
        session.handle_update({"sessionUpdate": "plan", "entries": []})
        session.handle_update({"sessionUpdate": "something_new"})
        session.handle_update({"content": {"type": "text", "text": "no type"}})

        assert collector.chunks == []
        assert session.state == "active"
        await session.cancel()

    asyncio.run(_run())


def test_cancel_sends_at_most_one_notification(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        session, transport = await _active(tmp_path, collector)

        await session.cancel()
        await session.cancel()
        await session.cancel()
        await session.wait()

        assert session.state == "cancelled"
        assert transport.notifications == [
            {"jsonrpc": "2.0", "method": "session/cancel", "params": {"sessionId": "s-1"}}
        ]
        assert collector.completions == [("cancelled", "Request cancelled")]
        assert "session/prompt:temp-0-1" in transport.cancelled_keys

    asyncio.run(_run())


def test_cancel_before_id_sends_nothing(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        transport = ScriptedTransport(hold=("session/new",))
        session = _new_session(tmp_path, collector).start(transport)
        await _wait_until(lambda: "session/new" in transport.held)

        await session.cancel()
        await session.wait()

        assert session.session_id is None
        assert transport.notifications == []
        assert collector.completions == [("cancelled", "Request cancelled")]

        # A late creation response must not revive the session.
        transport.release("session/new")
        assert session.state == "cancelled"

    asyncio.run(_run())


def test_updates_after_terminal_state_are_dropped(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        session, _transport = await _active(tmp_path, collector)
        await session.cancel()

        session.handle_update(_chunk("late"))
        session.handle_update({"sessionUpdate": "error", "message": "late error"})

        assert collector.chunks == []
        assert session.pending_update_count == 0
        assert collector.completions == [("cancelled", "Request cancelled")]

    asyncio.run(_run())


def test_timeout_cancels_and_reports_failure(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        transport = ScriptedTransport(hold=("session/prompt",))
        session = _new_session(tmp_path, collector, timeout=0.05).start(transport)

        await _wait_until(lambda: bool(collector.completions))
        await session.wait()

        assert session.state == "cancelled"
        assert collector.completions == [("failed", "Request timeout after 0.05 seconds")]
        assert transport.notifications == [
            {"jsonrpc": "2.0", "method": "session/cancel", "params": {"sessionId": "s-1"}}
        ]

    asyncio.run(_run())


def test_timeout_message_uses_minutes() -> None:
    assert session_module._describe_seconds(120.0) == "2 minutes"
    assert session_module._describe_seconds(60.0) == "1 minute"
    assert session_module._describe_seconds(1.5) == "1.5 seconds"


def test_create_failure_reports_and_stops(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        transport = ScriptedTransport(replies={"session/new": ("failed", "ACP error: nope")})
        session = _new_session(tmp_path, collector).start(transport)
        await session.wait()

        assert session.state == "completed"
        assert collector.completions == [("failed", "Failed to create session: ACP error: nope")]
        assert transport.methods == ["session/new"]

    asyncio.run(_run())


def test_create_without_session_id_fails(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        transport = ScriptedTransport(replies={"session/new": ("success", "{'weird': 1}")})
        session = _new_session(tmp_path, collector).start(transport)
        await session.wait()

        status, payload = collector.completions[0]
        assert status == "failed"
        assert payload.startswith("Failed to create session: no sessionId")

    asyncio.run(_run())


def test_model_switch_when_agent_reports_another_model(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        transport = ScriptedTransport(
            replies={
                "session/new": (
                    "success",
                    {"sessionId": "s-1", "models": {"currentModelId": "default-model"}},
                ),
                "session/set_model": ("failed", "ACP error: unknown model"),
            },
            hold=("session/prompt",),
        )
        session = _new_session(tmp_path, collector, model="wanted-model")
        session.start(transport)
        await _wait_until(lambda: "session/prompt" in transport.held)
        session.handle_update(_chunk("ok"))
        transport.release("session/prompt")
        await session.wait()

        assert transport.methods == ["session/new", "session/set_model", "session/prompt"]
        assert transport.requests[1]["params"] == {"sessionId": "s-1", "modelId": "wanted-model"}
        assert transport.requests[0]["params"]["modelId"] == "wanted-model"
        assert collector.completions == [("success", "ok")]

    asyncio.run(_run())


def test_no_model_switch_when_model_matches(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        transport = ScriptedTransport(
            replies={
                "session/new": ("success", {"sessionId": "s-1", "models": {"currentModelId": "m"}}),
            }
        )
        session = _new_session(tmp_path, collector, model="m").start(transport)
        await session.wait()

        assert "session/set_model" not in transport.methods

    asyncio.run(_run())


def test_prompt_failure_is_reported(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        transport = ScriptedTransport(replies={"session/prompt": ("failed", "ACP error: overloaded")})
        session = _new_session(tmp_path, collector).start(transport)
        await session.wait()

        assert session.state == "completed"
        assert collector.completions == [("failed", "Failed to send prompt: ACP error: overloaded")]

    asyncio.run(_run())


def test_error_update_completes_with_failure(tmp_path: Path) -> None:
    async def _run() -> None:
        collector = Collector()
        session, transport = await _active(tmp_path, collector)

        session.handle_update({"sessionUpdate": "error", "message": "rate limited"})
        await session.wait()

        assert session.state == "completed"
        assert collector.completions == [("failed", "rate limited")]
        assert transport.notifications == []

    asyncio.run(_run())
