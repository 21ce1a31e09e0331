from __future__ import annotations

import os
import tempfile
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

#: Completion status reported through `Observer.on_complete`.
Status: TypeAlias = Literal["success", "failed", "cancelled"]

#: Session lifecycle: `creating -> active -> completed | cancelled`.
SessionState: TypeAlias = Literal["creating", "active", "completed", "cancelled"]

#: Agent process lifecycle as tracked by `AgentProcess`.
ProcessState: TypeAlias = Literal["stopped", "starting", "ready", "crashed", "terminated"]


def _ignore(*_args: Any) -> None:
    return None


@dataclass(slots=True)
class Observer:
    """Caller-supplied callbacks for one request.

    Attributes:
        on_stream_output: Receives streamed assistant text chunks.
        on_stream_error: Receives streamed diagnostic output.
        on_complete: Receives the final `(status, payload)` exactly once.
    """

    on_stream_output: Callable[[str], None] = _ignore
    on_stream_error: Callable[[str], None] = _ignore
    on_complete: Callable[[Status, Any], None] = _ignore


def new_scratch_file(directory: str | None = None) -> str:
    """Return a fresh, not-yet-created scratch path for one agent answer."""
    base = directory if directory is not None else tempfile.gettempdir()
    return os.path.join(base, f"acp-{uuid.uuid4().hex}.txt")


@dataclass(slots=True)
class RequestContext:
    """Per-request inputs for one agent conversation.

    Attributes:
        scratch_file: Path the agent is asked to write its answer to.
        model: Requested model id; switched to when the agent reports another.
        cwd: Working directory announced in `session/new`.
        xid: Caller-side request number, used in temporary pool keys.
        ai_context: Extra text blocks sent ahead of the query.
    """

    scratch_file: str = field(default_factory=new_scratch_file)
    model: str | None = None
    cwd: str | None = None
    xid: int = 0
    ai_context: list[str] = field(default_factory=list)

    def add_context(self, *blocks: str) -> None:
        """Append text blocks sent ahead of the query."""
        self.ai_context.extend(blocks)

    def fork(self) -> RequestContext:
        """Copy this context with a fresh scratch path and no context blocks."""
        return RequestContext(
            scratch_file=new_scratch_file(os.path.dirname(self.scratch_file) or None),
            model=self.model,
            cwd=self.cwd,
            xid=self.xid,
        )


class InitializeResult(BaseModel):
    """Parsed result for the `initialize` handshake response.

    Attributes:
        protocol_version: Protocol version echoed by the agent, if present.
        agent_capabilities: Optional capability map returned by the agent.
        auth_methods: Authentication methods advertised by the agent.
        raw: Full raw initialize result payload.
    """

    protocol_version: int | str | None = None
    agent_capabilities: dict[str, Any] | None = None
    auth_methods: list[Any] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> InitializeResult:
        raw = payload if isinstance(payload, dict) else {"value": payload}
        capabilities = raw.get("agentCapabilities")
        auth_methods = raw.get("authMethods")
        return cls(
            protocol_version=raw.get("protocolVersion"),
            agent_capabilities=capabilities if isinstance(capabilities, dict) else None,
            auth_methods=auth_methods if isinstance(auth_methods, list) else [],
            raw=raw,
        )


class NewSessionResult(BaseModel):
    """Parsed result for a `session/new` response.

    Attributes:
        session_id: Agent-assigned session identifier.
        current_model_id: Model the agent reports as active, if any.
        raw: Full raw result payload.
    """

    session_id: str
    current_model_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> NewSessionResult | None:
        if not isinstance(payload, dict):
            return None
        session_id = payload.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            return None
        models = payload.get("models")
        current = models.get("currentModelId") if isinstance(models, dict) else None
        return cls(
            session_id=session_id,
            current_model_id=current if isinstance(current, str) else None,
            raw=payload,
        )


class Position(BaseModel):
    """Zero-based line/character position in reference-query shape."""

    line: int
    character: int = 0


class Range(BaseModel):
    start: Position
    end: Position


class Reference(BaseModel):
    """One location returned by the external reference finder."""

    uri: str
    range: Range


class EditLocation(BaseModel):
    """Smallest safe replace unit for one agent answer: whole source lines.

    Attributes:
        path: Owning file.
        start_line: First line of the span, 1-based.
        end_line: Last line of the span, 1-based and inclusive.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    start_line: int
    end_line: int


@dataclass(slots=True)
class ChangeInfo:
    """Emitted to change listeners after one replacement is applied."""

    path: str
    start_line: int
    operation: Literal["refactor"] = "refactor"
    prompt: str | None = None


class RefactorResult(BaseModel):
    """Outcome of one multi-location batch.

    Attributes:
        locations: All locations dispatched, in discovery order.
        applied: Locations whose answer was written into the file.
        failed: Locations that failed or were cancelled.
        saved: Files persisted after the batch, each exactly once.
    """

    locations: list[EditLocation] = Field(default_factory=list)
    applied: list[EditLocation] = Field(default_factory=list)
    failed: list[EditLocation] = Field(default_factory=list)
    saved: list[str] = Field(default_factory=list)
