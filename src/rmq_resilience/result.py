"""Result envelope returned by the public entry points.

A unit of work receives a fresh :class:`Response` and fills in ``data``.
Expected failures short-circuit it by raising :class:`ResponseError` (usually
through the ``throw_if*`` helpers), which sets ``code``/``message`` on the
envelope. Anything else is an unclassified error: it is logged, reported with
``ResultCode.UNHANDLED`` and, depending on the :class:`ErrorPolicy`, re-raised.
"""

import inspect
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar

from loguru import logger

from rmq_resilience.config import Settings


T = TypeVar("T")


class ResultCode(IntEnum):
    """Codes carried by :class:`Response`; zero means success."""

    SUCCESS = 0
    UNHANDLED = -1
    MISSING_PAYLOAD = -2
    MISSING_APPLICATION_ID = -3
    MISSING_CONTENT_TYPE = -4
    CONFIGURATION_ERROR = -5
    BROKER_UNREACHABLE = -100
    PUBLISH_FAILED = -200


class ResponseError(Exception):
    """Error carrying a result code, used to short-circuit a unit of work."""

    def __init__(self, code: int = ResultCode.UNHANDLED, message: str = ""):
        self.code = int(code)
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)


@dataclass(frozen=True)
class ErrorPolicy:
    """How unit-of-work failures are reported.

    Attributes:
        show_custom_errors_additional: log traceback and cause of ResponseError
        show_unhandled_errors: log traceback and cause of unclassified errors
        throw_unhandled_exceptions: re-raise unclassified errors after the
            result has been filled and the error handler invoked
    """

    show_custom_errors_additional: bool = False
    show_unhandled_errors: bool = False
    throw_unhandled_exceptions: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "ErrorPolicy":
        return cls(
            show_custom_errors_additional=settings.show_custom_errors_additional,
            show_unhandled_errors=settings.show_unhandled_errors,
            throw_unhandled_exceptions=settings.throw_unhandled_exceptions,
        )


def _log_details(exc: BaseException) -> None:
    """Log traceback and cause of ``exc`` followed by an end marker."""
    has_traceback = exc.__traceback__ is not None
    cause = exc.__cause__ or exc.__context__
    if has_traceback:
        logger.opt(exception=exc).error("StackTrace")
    if cause is not None:
        logger.error(f"InnerException: {cause}")
    if has_traceback or cause is not None:
        logger.info("**************** END OF LOG ****************")


@dataclass
class Response(Generic[T]):
    """Result envelope: ``data``, ``code`` (0 = success) and ``message``."""

    data: T | None = None
    code: int = ResultCode.SUCCESS
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.code == ResultCode.SUCCESS

    # -------------------------------------------------------------------------
    # Unit-of-work wrappers
    # -------------------------------------------------------------------------

    @classmethod
    def run(
        cls,
        action: Callable[["Response[T]"], Any],
        error_handler: Callable[["Response[T]"], Any] | None = None,
        policy: ErrorPolicy | None = None,
    ) -> "Response[T]":
        """Run ``action`` against a fresh envelope and capture its failures."""
        policy = policy or ErrorPolicy()
        result: Response[T] = cls()
        try:
            action(result)
        except ResponseError as e:
            result._fail_coded(e, policy)
            if error_handler is not None:
                error_handler(result)
        except Exception as e:
            result._fail_unhandled(e, policy)
            if error_handler is not None:
                error_handler(result)
            if policy.throw_unhandled_exceptions:
                raise
        return result

    @classmethod
    async def run_async(
        cls,
        action: Callable[["Response[T]"], Awaitable[Any]],
        error_handler: Callable[["Response[T]"], Any] | None = None,
        policy: ErrorPolicy | None = None,
    ) -> "Response[T]":
        """Async variant of :meth:`run`; ``error_handler`` may be sync or async."""
        policy = policy or ErrorPolicy()
        result: Response[T] = cls()
        try:
            await action(result)
        except ResponseError as e:
            result._fail_coded(e, policy)
            await maybe_await(error_handler, result)
        except Exception as e:
            result._fail_unhandled(e, policy)
            await maybe_await(error_handler, result)
            if policy.throw_unhandled_exceptions:
                raise
        return result

    def _fail_coded(self, exc: ResponseError, policy: ErrorPolicy) -> None:
        logger.bind(error_code=exc.code).error(exc.message)
        self.code = exc.code
        self.message = exc.message
        if policy.show_custom_errors_additional:
            _log_details(exc)

    def _fail_unhandled(self, exc: Exception, policy: ErrorPolicy) -> None:
        logger.bind(error_code=int(ResultCode.UNHANDLED)).error(str(exc))
        self.code = ResultCode.UNHANDLED
        self.message = str(exc)
        if policy.show_unhandled_errors:
            _log_details(exc)

    # -------------------------------------------------------------------------
    # Short-circuit helpers
    # -------------------------------------------------------------------------

    def throw(self, code: int | str = ResultCode.UNHANDLED, message: str = "") -> None:
        """Raise a ResponseError; ``throw("text")`` uses the generic code."""
        if isinstance(code, str):
            code, message = ResultCode.UNHANDLED, code
        raise ResponseError(code, message)

    def throw_if(self, condition: bool, code: int, message: str) -> None:
        if condition:
            self.throw(code, message)

    def throw_if_none(self, obj: Any, code: int, message: str) -> None:
        self.throw_if(obj is None, code, message)

    def throw_if_empty(self, value: str | None, code: int, message: str) -> None:
        self.throw_if(not value, code, message)

    def throw_if_empty_list(self, items: Iterable[Any] | None, code: int, message: str) -> None:
        self.throw_if(items is None or not list(items), code, message)

    def result_or_raise(
        self,
        error_message: str = "",
        on_error: Callable[["Response[T]"], Any] | None = None,
    ) -> T | None:
        """Return ``data`` on success, otherwise raise the carried error.

        ``error_message`` is prepended to the carried message; ``on_error`` is
        invoked with this envelope before raising.
        """
        if self.code != ResultCode.SUCCESS:
            if on_error is not None:
                on_error(self)
            if not error_message:
                self.throw(self.code, self.message)
            self.throw(self.code, f"{error_message.strip()} {self.message}")
        return self.data


async def maybe_await(func: Callable[..., Any] | None, *args: Any) -> Any:
    if func is None:
        return None
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
