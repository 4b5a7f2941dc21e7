"""Tests for user-facing error messages."""

from __future__ import annotations

from assignsync.connectors.errors import (
    ApiError,
    AuthError,
    ErrorKind,
    ThrottledError,
    UnknownError,
    error_from_response,
)
from assignsync.sync.messages import friendly_error


class TestFriendlyError:
    def test_sink_auth(self) -> None:
        message = friendly_error(AuthError("x", status=401, service="sink"))
        assert message.title == "Invalid Sink Token"

    def test_source_auth(self) -> None:
        message = friendly_error(AuthError("x", status=401, service="source"))
        assert message.title == "Invalid Source Token"

    def test_explicit_service_overrides(self) -> None:
        message = friendly_error(AuthError("x", status=401, service="source"), "sink")
        assert message.title == "Invalid Sink Token"

    def test_source_throttling_403(self) -> None:
        error = error_from_response(403, "Rate Limit Exceeded", None, service="source")
        assert error.kind == ErrorKind.THROTTLED
        assert friendly_error(error).title == "Source Rate Limit"

    def test_source_permission_403(self) -> None:
        error = error_from_response(403, "user not authorized", None, service="source")
        assert friendly_error(error).title == "Source Access Denied"

    def test_sink_rate_limit(self) -> None:
        message = friendly_error(ThrottledError("x", status=429, service="sink"))
        assert message.title == "Sink Rate Limited"

    def test_network_failure(self) -> None:
        message = friendly_error(UnknownError("connection reset", service="sink"))
        assert message.title == "Network Error"

    def test_unmapped_status_falls_back(self) -> None:
        error = ApiError.from_kind(ErrorKind.VALIDATION, "teapot", status=418, service="sink")
        message = friendly_error(error)
        assert message.title == "Sink Sync Error"
        assert message.message == "teapot"

    def test_non_api_error(self) -> None:
        message = friendly_error(RuntimeError(""), "source")
        assert message.title == "Source Sync Error"
        assert "unexpected error" in message.message

    def test_one_line_has_no_credentials(self) -> None:
        error = error_from_response(401, "invalid token", None, service="sink")
        line = friendly_error(error).one_line()
        assert line.startswith("Invalid Sink Token: ")
        assert "Bearer" not in line
