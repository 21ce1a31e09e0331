from __future__ import annotations

import json
import pprint
from collections.abc import Mapping, Sequence
from typing import Any, Literal, TypeAlias

# JSON-RPC protocol version used by ACP envelopes.
JSONRPC_VERSION = "2.0"

# ACP protocol version announced during the handshake.
PROTOCOL_VERSION = 1

# Id 1 is reserved for the one-time `initialize` handshake; requests start at 2.
INITIALIZE_REQUEST_ID = 1
FIRST_REQUEST_ID = 2

# Client -> agent methods.
INITIALIZE_METHOD = "initialize"
SESSION_NEW_METHOD = "session/new"
SESSION_SET_MODEL_METHOD = "session/set_model"
SESSION_PROMPT_METHOD = "session/prompt"
SESSION_CANCEL_METHOD = "session/cancel"

# Agent -> client methods.
SESSION_UPDATE_METHOD = "session/update"
SESSION_REQUEST_PERMISSION_METHOD = "session/request_permission"

# JSON-RPC error codes.
METHOD_NOT_FOUND = -32601

# `sessionUpdate` discriminants carried by `session/update` notifications.
AGENT_MESSAGE_CHUNK = "agent_message_chunk"
AGENT_THOUGHT_CHUNK = "agent_thought_chunk"
USER_MESSAGE_CHUNK = "user_message_chunk"
TOOL_CALL = "tool_call"
TOOL_CALL_UPDATE = "tool_call_update"
PLAN = "plan"
AVAILABLE_COMMANDS_UPDATE = "available_commands_update"
CURRENT_MODE_UPDATE = "current_mode_update"
ERROR_UPDATE = "error"

# Tool call statuses that may carry a write we want to capture.
TOOL_WRITE_STATUSES = frozenset({"in_progress", "completed"})

# Fixed outcome used when auto-approving permission requests.
AUTO_APPROVE_OUTCOME: dict[str, Any] = {
    "outcome": {
        "outcome": "selected",
        "optionId": "once",
    },
}

MessageKind: TypeAlias = Literal["response", "error", "request", "notification"]


def make_request(
    request_id: int | None,
    method: str,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a JSON-RPC request envelope.

    A `None` id leaves the id to be assigned by the transport.
    """
    payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION}
    if request_id is not None:
        payload["id"] = request_id
    payload["method"] = method
    if params is not None:
        payload["params"] = params
    return payload


def make_notification(
    method: str,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a JSON-RPC notification envelope (no id)."""
    return make_request(None, method, params)


def make_result_response(
    request_id: int | str,
    result: Any,
) -> dict[str, Any]:
    """Build a JSON-RPC success response envelope."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "result": result,
    }


def make_error_response(
    request_id: int | str,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    """Build a JSON-RPC error response envelope."""
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": error,
    }


def initialize_request(
    *,
    client_name: str,
    client_version: str,
    protocol_version: int = PROTOCOL_VERSION,
) -> dict[str, Any]:
    """Build the handshake request.

    Client capabilities are deliberately empty: responses travel through the
    scratch file, so no fs/terminal capability is advertised.
    """
    return make_request(
        INITIALIZE_REQUEST_ID,
        INITIALIZE_METHOD,
        {
            "protocolVersion": protocol_version,
            "clientCapabilities": {},
            "clientInfo": {
                "name": client_name,
                "version": client_version,
            },
        },
    )


def session_new_request(cwd: str, model: str | None = None) -> dict[str, Any]:
    """Build a `session/new` request; the id is assigned on send."""
    params: dict[str, Any] = {
        "cwd": cwd,
        "mcpServers": [],
    }
    if model:
        params["modelId"] = model
        params["_meta"] = {"modelId": model}
    return make_request(None, SESSION_NEW_METHOD, params)


def session_set_model_request(session_id: str, model_id: str) -> dict[str, Any]:
    """Build a `session/set_model` request."""
    return make_request(
        None,
        SESSION_SET_MODEL_METHOD,
        {"sessionId": session_id, "modelId": model_id},
    )


def session_prompt_request(
    session_id: str,
    query: str,
    *,
    context_blocks: Sequence[str],
    scratch_file: str,
) -> dict[str, Any]:
    """Build a `session/prompt` request.

    Each context entry becomes its own text block; the query comes last and
    tells the agent where to write its answer.
    """
    prompt: list[dict[str, Any]] = [
        {"type": "text", "text": block} for block in context_blocks
    ]
    prompt.append(
        {
            "type": "text",
            "text": f"{query}\n\nWrite your response to: {scratch_file}",
        }
    )
    return make_request(
        None,
        SESSION_PROMPT_METHOD,
        {"sessionId": session_id, "prompt": prompt},
    )


def session_cancel_notification(session_id: str) -> dict[str, Any]:
    """Build a `session/cancel` notification."""
    return make_notification(SESSION_CANCEL_METHOD, {"sessionId": session_id})


def encode_message(payload: Mapping[str, Any]) -> bytes:
    """Serialize one envelope as a single NDJSON line."""
    return (json.dumps(dict(payload), separators=(",", ":")) + "\n").encode("utf-8")


def classify_message(payload: Mapping[str, Any]) -> MessageKind | None:
    """Return the routing kind of an inbound envelope.

    Priority: response (result present, even when falsy), error response,
    agent-initiated request, notification. Unroutable payloads yield None.
    """
    has_id = payload.get("id") is not None
    method = payload.get("method")
    if has_id:
        if payload.get("result") is not None:
            return "response"
        if payload.get("error") is not None:
            return "error"
        if "result" in payload:
            return "response"
        if isinstance(method, str):
            return "request"
        return None
    if isinstance(method, str):
        return "notification"
    return None


def extract_error(payload: Mapping[str, Any]) -> dict[str, Any] | None:
    """Return JSON-RPC error object if present and valid."""
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    return None


def normalize_result(result: Any) -> Any:
    """Reduce a response result to the payload handed to observers.

    A result carrying `sessionId` is passed whole; one carrying `stopReason`
    is reduced to that value; strings pass unchanged. Null, `false` and
    empty objects or arrays become an empty string. Anything else, including
    `0` and `true`, becomes a readable dump.
    """
    if isinstance(result, Mapping):
        if result.get("sessionId") is not None:
            return dict(result)
        if result.get("stopReason") is not None:
            return result["stopReason"]
    if isinstance(result, str):
        return result
    if result is None or result is False:
        return ""
    if isinstance(result, (Mapping, list)) and not result:
        return ""
    return pprint.pformat(result)


def format_error(error: Any) -> str:
    """Format a JSON-RPC error object for failure reports."""
    if not isinstance(error, Mapping):
        return f"ACP error: {error!r}"
    text = f"ACP error: {error.get('message', 'JSON-RPC error')}"
    code = error.get("code")
    if code is not None:
        text += f" (code {code})"
    data = error.get("data")
    if data is not None:
        text += f" {pprint.pformat(data)}"
    return text
