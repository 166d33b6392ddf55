"""Unit tests for the Response envelope."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rmq_resilience.config import Settings
from rmq_resilience.result import ErrorPolicy, Response, ResponseError, ResultCode


def test_result_codes():
    assert ResultCode.SUCCESS == 0
    assert ResultCode.UNHANDLED == -1
    assert ResultCode.MISSING_PAYLOAD == -2
    assert ResultCode.MISSING_APPLICATION_ID == -3
    assert ResultCode.MISSING_CONTENT_TYPE == -4
    assert ResultCode.BROKER_UNREACHABLE == -100
    assert ResultCode.PUBLISH_FAILED == -200


def test_policy_from_settings():
    settings = Settings(_env_file=None, show_unhandled_errors=True, throw_unhandled_exceptions=True)
    policy = ErrorPolicy.from_settings(settings)
    assert policy == ErrorPolicy(
        show_custom_errors_additional=False,
        show_unhandled_errors=True,
        throw_unhandled_exceptions=True,
    )


class TestRun:
    """Tests for Response.run."""

    def test_success(self):
        def action(response):
            response.data = 42

        result = Response.run(action)

        assert result.ok
        assert result.data == 42
        assert result.code == 0
        assert result.message == ""

    def test_coded_error(self):
        def action(response):
            response.throw_if_empty("", ResultCode.MISSING_APPLICATION_ID, "ApplicationId is required")

        result = Response.run(action)

        assert result.code == ResultCode.MISSING_APPLICATION_ID
        assert result.message == "ApplicationId is required"
        assert result.data is None

    def test_unhandled_error_swallowed_by_default(self):
        error_handler = MagicMock()

        def action(response):
            raise KeyError("missing")

        result = Response.run(action, error_handler)

        assert result.code == ResultCode.UNHANDLED
        assert "missing" in result.message
        error_handler.assert_called_once_with(result)

    def test_unhandled_error_rethrown_after_handler(self):
        calls = []

        def action(response):
            raise KeyError("missing")

        with pytest.raises(KeyError):
            Response.run(action, calls.append, ErrorPolicy(throw_unhandled_exceptions=True))

        assert calls[0].code == ResultCode.UNHANDLED

    def test_coded_error_never_rethrown(self):
        def action(response):
            response.throw(ResultCode.MISSING_PAYLOAD, "No data")

        result = Response.run(action, policy=ErrorPolicy(throw_unhandled_exceptions=True))

        assert result.code == ResultCode.MISSING_PAYLOAD

    def test_details_logged_when_enabled(self):
        def action(response):
            try:
                raise ValueError("inner")
            except ValueError as e:
                raise ResponseError(ResultCode.PUBLISH_FAILED, "outer") from e

        with patch("rmq_resilience.result.logger") as mock_logger:
            Response.run(action, policy=ErrorPolicy(show_custom_errors_additional=True))

        mock_logger.error.assert_any_call("InnerException: inner")
        mock_logger.info.assert_called_once_with("**************** END OF LOG ****************")


class TestRunAsync:
    """Tests for Response.run_async."""

    @pytest.mark.asyncio
    async def test_success(self):
        async def action(response):
            response.data = "done"

        result = await Response.run_async(action)

        assert result.data == "done"

    @pytest.mark.asyncio
    async def test_async_error_handler_awaited(self):
        error_handler = AsyncMock()

        async def action(response):
            response.throw("plain failure")

        result = await Response.run_async(action, error_handler)

        assert result.code == ResultCode.UNHANDLED
        assert result.message == "plain failure"
        error_handler.assert_awaited_once_with(result)

    @pytest.mark.asyncio
    async def test_unhandled_rethrown(self):
        async def action(response):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await Response.run_async(action, policy=ErrorPolicy(throw_unhandled_exceptions=True))


class TestHelpers:
    """Short-circuit helpers."""

    def test_throw_if_false_does_nothing(self):
        Response().throw_if(False, -7, "never")

    def test_throw_if_none(self):
        with pytest.raises(ResponseError) as exc:
            Response().throw_if_none(None, -2, "No data")
        assert exc.value.code == -2
        assert exc.value.message == "No data"

    @pytest.mark.parametrize("items", [None, [], ()])
    def test_throw_if_empty_list(self, items):
        with pytest.raises(ResponseError):
            Response().throw_if_empty_list(items, -9, "empty")

    def test_throw_if_empty_list_passes_with_items(self):
        Response().throw_if_empty_list([1], -9, "empty")

    def test_result_or_raise_success(self):
        assert Response(data=5).result_or_raise() == 5

    def test_result_or_raise_prefixes_message(self):
        on_error = MagicMock()
        response = Response(code=-100, message="broker down")

        with pytest.raises(ResponseError) as exc:
            response.result_or_raise("Publishing invoice failed:", on_error)

        assert exc.value.code == -100
        assert exc.value.message == "Publishing invoice failed: broker down"
        on_error.assert_called_once_with(response)

    def test_result_or_raise_keeps_message(self):
        with pytest.raises(ResponseError) as exc:
            Response(code=-3, message="ApplicationId is required").result_or_raise()
        assert exc.value.message == "ApplicationId is required"
