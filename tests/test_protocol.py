from __future__ import annotations

import json

from acp_agent_client.protocol import (
    AUTO_APPROVE_OUTCOME,
    classify_message,
    encode_message,
    format_error,
    initialize_request,
    make_error_response,
    normalize_result,
    session_cancel_notification,
    session_new_request,
    session_prompt_request,
    session_set_model_request,
)


def test_initialize_request_uses_reserved_id_and_empty_capabilities() -> None:
    message = initialize_request(client_name="tester", client_version="9.9", protocol_version=1)
    assert message == {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "initialize",
        "params": {
            "protocolVersion": 1,
            "clientCapabilities": {},
            "clientInfo": {"name": "tester", "version": "9.9"},
        },
    }


def test_session_new_request_without_model() -> None:
    message = session_new_request("/work")
    assert "id" not in message
    assert message["method"] == "session/new"
    assert message["params"] == {"cwd": "/work", "mcpServers": []}


def test_session_new_request_with_model_sets_both_fields() -> None:
    params = session_new_request("/work", "anthropic/sonnet")["params"]
    assert params["modelId"] == "anthropic/sonnet"
    assert params["_meta"] == {"modelId": "anthropic/sonnet"}


def test_session_set_model_request() -> None:
    message = session_set_model_request("s-1", "m-2")
    assert message["method"] == "session/set_model"
    assert message["params"] == {"sessionId": "s-1", "modelId": "m-2"}


def test_session_prompt_request_puts_context_before_query() -> None:
    message = session_prompt_request(
        "s-1",
        "rename foo",
        context_blocks=["rule one", "rule two"],
        scratch_file="/tmp/out.txt",
    )
    prompt = message["params"]["prompt"]
    assert [block["text"] for block in prompt] == [
        "rule one",
        "rule two",
        "rename foo\n\nWrite your response to: /tmp/out.txt",
    ]
    assert all(block["type"] == "text" for block in prompt)
    assert message["params"]["sessionId"] == "s-1"


def test_session_cancel_is_a_notification() -> None:
    message = session_cancel_notification("s-9")
    assert "id" not in message
    assert message["method"] == "session/cancel"
    assert message["params"] == {"sessionId": "s-9"}


def test_encode_message_is_one_compact_line() -> None:
    data = encode_message({"jsonrpc": "2.0", "id": 2, "method": "x"})
    assert data.endswith(b"\n")
    assert data.count(b"\n") == 1
    assert b" " not in data
    assert json.loads(data) == {"jsonrpc": "2.0", "id": 2, "method": "x"}


def test_classify_message_priority() -> None:
    assert classify_message({"id": 2, "result": {"a": 1}}) == "response"
    assert classify_message({"id": 2, "result": 0}) == "response"
    assert classify_message({"id": 2, "result": False}) == "response"
    assert classify_message({"id": 2, "result": None}) == "response"
    assert classify_message({"id": 2, "error": {"code": 1}}) == "error"
    assert classify_message({"id": 2, "method": "session/request_permission"}) == "request"
    assert classify_message({"method": "session/update"}) == "notification"
    assert classify_message({"id": 3}) is None
    assert classify_message({}) is None


def test_classify_prefers_result_over_method() -> None:
    assert classify_message({"id": 2, "result": "ok", "method": "odd"}) == "response"


def test_normalize_result_policy() -> None:
    created = {"sessionId": "abc", "models": {"currentModelId": "m"}}
    assert normalize_result(created) == created
    assert normalize_result({"stopReason": "end_turn"}) == "end_turn"
    assert normalize_result("plain") == "plain"
    assert normalize_result(None) == ""
    assert normalize_result({}) == ""
    assert normalize_result([]) == ""
    assert normalize_result(False) == ""
    assert normalize_result(0) == "0"
    assert normalize_result(True) == "True"
    assert normalize_result({"other": 1}) == "{'other': 1}"


def test_format_error_includes_code_and_data() -> None:
    text = format_error({"code": -32000, "message": "boom", "data": {"why": "x"}})
    assert text == "ACP error: boom (code -32000) {'why': 'x'}"
    assert format_error({"message": "plain"}) == "ACP error: plain"


def test_error_response_and_auto_approve_shapes() -> None:
    response = make_error_response(7, -32601, "Method not found: foo")
    assert response == {
        "jsonrpc": "2.0",
        "id": 7,
        "error": {"code": -32601, "message": "Method not found: foo"},
    }
    assert AUTO_APPROVE_OUTCOME == {"outcome": {"outcome": "selected", "optionId": "once"}}
