"""Tests for the error taxonomy."""

import pytest

from lspbridge.types import (
    BinaryNotFoundError,
    BridgeError,
    ErrorCode,
    ErrorContext,
    ProcessCrashedError,
    ProtocolError,
    RecoveryAction,
    RequestTimedOutError,
    ServerError,
    ServerUnavailableError,
    SessionUnavailableError,
)


class TestBridgeError:
    def test_defaults(self):
        error = BridgeError("low-level detail")
        assert str(error) == "low-level detail"
        assert error.user_message == BridgeError.default_user_message
        assert error.recovery_actions == []
        assert error.context.operation is None

    def test_to_dict(self):
        cause = OSError("broken pipe")
        error = ServerUnavailableError(
            "write failed",
            context=ErrorContext(operation="write", method="textDocument/hover", request_id=4),
            original_error=cause,
        )
        data = error.to_dict()
        assert data["name"] == "ServerUnavailableError"
        assert data["code"] == ErrorCode.SERVER_UNAVAILABLE
        assert data["context"]["method"] == "textDocument/hover"
        assert data["context"]["request_id"] == 4
        assert data["original_error"] == "broken pipe"
        assert "T" in data["context"]["timestamp"]

    def test_formatted_message_lists_actions(self):
        error = BridgeError(
            "x",
            user_message="Something broke.",
            context=ErrorContext(operation="start", file_path="/p/a.gleam", language="gleam"),
            recovery_actions=[RecoveryAction("Try again", command="retry")],
        )
        text = error.get_formatted_message()
        assert "[Error] Something broke." in text
        assert "File: /p/a.gleam" in text
        assert "1. Try again" in text
        assert "Run: retry" in text


class TestSubclasses:
    def test_binary_not_found_suggests_which(self):
        error = BinaryNotFoundError("gleam")
        assert error.command == "gleam"
        assert error.code is ErrorCode.BINARY_NOT_FOUND
        assert error.recovery_actions[0].command == "which gleam"
        assert "gleam" in str(error)

    def test_process_crashed_keeps_returncode(self):
        assert ProcessCrashedError("died", returncode=3).returncode == 3

    def test_protocol_error_resume_offset(self):
        assert ProtocolError("bad", resume_at=12).resume_at == 12

    def test_server_error_carries_rpc_fields(self):
        error = ServerError(-32803, "failed", data={"k": 1})
        assert (error.rpc_code, error.data, str(error)) == (-32803, {"k": 1}, "failed")

    def test_session_unavailable_suggests_reactivation(self):
        assert SessionUnavailableError("dead").recovery_actions

    @pytest.mark.parametrize(
        "cls",
        [BinaryNotFoundError, ProcessCrashedError, RequestTimedOutError, ServerUnavailableError],
    )
    def test_all_are_bridge_errors(self, cls):
        assert issubclass(cls, BridgeError)
