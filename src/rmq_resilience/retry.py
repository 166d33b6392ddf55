"""Bounded, linearly backed-off retry of a single message-handling attempt.

Retry is opt-in per exchange configuration because a failed handler may have
partially run; only idempotent handlers should be retried.
"""

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

from rmq_resilience.metrics import HANDLER_RETRIES
from rmq_resilience.models import RetryConfig, RetryContext
from rmq_resilience.result import maybe_await


ErrorHandler = Callable[[str, str], Any]


class RetryPolicy:
    """Runs a unit of work up to ``max_attempts`` times.

    After failed attempt N (N < max_attempts) the policy waits
    ``base_delay * N`` seconds. When the last attempt fails the delivery is
    dead-lettered through ``dead_letter(delivery_tag)`` and the caller's error
    handler receives ``(error message, raw message)`` exactly once.
    """

    def __init__(
        self,
        config: RetryConfig,
        disable_logs: bool = True,
        log_prefix: str = "",
        queue_name: str = "",
    ):
        self._config = config
        self._disable_logs = disable_logs
        self._log_prefix = log_prefix
        self._queue_name = queue_name

    @property
    def max_attempts(self) -> int:
        return self._config.max_attempts

    def delay_for(self, attempt_number: int) -> float:
        """Seconds to wait after failed attempt ``attempt_number``."""
        return self._config.base_delay * attempt_number

    async def execute(
        self,
        work: Callable[[], Awaitable[Any]],
        context: RetryContext,
        dead_letter: Callable[[int], Awaitable[Any]],
        error_handler: ErrorHandler | None = None,
    ) -> bool:
        """Run ``work`` until it succeeds or attempts are exhausted.

        Returns:
            True if an attempt succeeded, False if the delivery was dead-lettered.
        """
        while True:
            context.attempt_number += 1
            try:
                await work()
                return True
            except Exception as e:
                context.last_error = e

            if context.attempt_number < self._config.max_attempts:
                if not self._disable_logs:
                    logger.warning(
                        f"{self._log_prefix} | retry exception: {context.last_error}, "
                        f"retry attempt: {context.attempt_number}"
                    )
                HANDLER_RETRIES.labels(queue=self._queue_name).inc()
                await asyncio.sleep(self.delay_for(context.attempt_number))
                continue

            await self._exhaust(context, dead_letter, error_handler)
            return False

    async def _exhaust(
        self,
        context: RetryContext,
        dead_letter: Callable[[int], Awaitable[Any]],
        error_handler: ErrorHandler | None,
    ) -> None:
        if not self._disable_logs:
            logger.warning(
                f"{self._log_prefix} | retries exhausted after {context.attempt_number} attempt(s): "
                f"{context.last_error}"
            )

        # Routed to the dead-letter exchange when the queue declares one
        await dead_letter(context.delivery_tag)

        if error_handler is None:
            return
        if not self._disable_logs:
            logger.warning(f"{self._log_prefix}, errors delegate invoking...")
        await maybe_await(error_handler, str(context.last_error), context.raw_message)
        if not self._disable_logs:
            logger.warning(f"{self._log_prefix}, errors delegate invoked...")
