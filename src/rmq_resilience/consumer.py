"""Per-channel consumer with filtering, opt-in retry and dead-lettering.

Every delivery goes through::

    RECEIVED -> FILTERING -> HANDLING | RETRYING -> ACKED | DEAD_LETTERED

aio-pika dispatches each delivery as its own task, so deliveries on one
channel are serialized with a lock: the channel is never used by two
deliveries at once, and a retry backoff stalls only this channel.
"""

import asyncio
import functools
from typing import Any, Callable

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue
from loguru import logger

from rmq_resilience.exceptions import AMQPConsumeError, ConfigurationError
from rmq_resilience.log import transaction_scope
from rmq_resilience.metrics import DELIVERIES_SETTLED
from rmq_resilience.models import DeliveryState, ExchangeConfiguration, RetryContext
from rmq_resilience.provisioner import validate_topology
from rmq_resilience.result import maybe_await
from rmq_resilience.retry import ErrorHandler, RetryPolicy


MessageHandler = Callable[[str], Any]


class ConsumerLoop:
    """Consumes one provisioned queue and settles every delivery exactly once.

    Attributes:
        channel: Channel returned by TopologyProvisioner.provision
        config: Exchange configuration the channel was provisioned with
        handler: Called with the decoded message text; sync or async
        error_handler: Called with (error message, raw message) when a
            delivery is dead-lettered; sync or async
    """

    def __init__(
        self,
        channel: AbstractChannel,
        config: ExchangeConfiguration,
        handler: MessageHandler | None,
        error_handler: ErrorHandler | None = None,
    ):
        validate_topology(config)
        if not config.application_id or not config.content_type:
            raise ConfigurationError(
                f"ApplicationId and ContentType are required to consume from {config.queue.name}"
            )
        self._channel = channel
        self._config = config
        self._handler = handler
        self._error_handler = error_handler
        self._queue_name = config.queue.name
        self._log_prefix = config.log_prefix

        self._lock = asyncio.Lock()
        self._in_flight: dict[int, AbstractIncomingMessage] = {}
        self._queue: AbstractQueue | None = None
        self._consumer_tag: str | None = None
        self._state: DeliveryState | None = None

        self._retry_policy: RetryPolicy | None = None
        if config.retry.enabled:
            self._retry_policy = RetryPolicy(
                config.retry,
                disable_logs=config.disable_dlx_logs,
                log_prefix=self._log_prefix,
                queue_name=self._queue_name,
            )

    @property
    def consumer_tag(self) -> str | None:
        return self._consumer_tag

    @property
    def is_consuming(self) -> bool:
        return self._consumer_tag is not None

    @property
    def state(self) -> DeliveryState | None:
        """State of the current or most recent delivery."""
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._state is not None and not self._state.is_terminal

    @property
    def channel(self) -> AbstractChannel:
        return self._channel

    async def start(self) -> str:
        """Register the subscription with manual acknowledgement."""
        if self._consumer_tag is not None:
            return self._consumer_tag
        try:
            self._queue = await self._channel.get_queue(self._queue_name, ensure=False)
            self._consumer_tag = await self._queue.consume(self.on_message, no_ack=False)
        except Exception as e:
            logger.bind(queue=self._queue_name).error(f"Failed to start consumer: {e}")
            raise AMQPConsumeError(f"Failed to start consumer on {self._queue_name}: {e}") from e

        logger.info("Consumer started", queue=self._queue_name, consumer_tag=self._consumer_tag)
        return self._consumer_tag

    async def stop(self) -> None:
        """Cancel the subscription; deliveries already in progress finish first."""
        if self._queue is None or self._consumer_tag is None:
            return
        async with self._lock:
            await self._queue.cancel(self._consumer_tag)
            logger.info("Consumer stopped", queue=self._queue_name, consumer_tag=self._consumer_tag)
            self._consumer_tag = None

    async def on_message(self, message: AbstractIncomingMessage) -> DeliveryState:
        """Process one delivery to a terminal state."""
        async with self._lock:
            self._in_flight[message.delivery_tag] = message
            self._transition(message.delivery_tag, DeliveryState.RECEIVED)
            with transaction_scope(message.correlation_id):
                try:
                    state = await self._process(message)
                except Exception:
                    # Error handler failed after the delivery was rejected
                    self._transition(message.delivery_tag, DeliveryState.DEAD_LETTERED)
                    raise
            self._transition(message.delivery_tag, state)
            return state

    async def _process(self, message: AbstractIncomingMessage) -> DeliveryState:
        tag = message.delivery_tag
        raw = message.body.decode("utf-8", errors="replace")
        try:
            self._transition(tag, DeliveryState.FILTERING)
            text = message.body.decode("utf-8")
            if not self._matches(message):
                self._warn(
                    f"{self._log_prefix} | unexpected metadata app_id={message.app_id} "
                    f"content_type={message.content_type}, acknowledged without processing"
                )
                await self._ack(tag)
                return DeliveryState.ACKED
            if not text:
                self._warn(f"{self._log_prefix} | received empty message")
                await self._ack(tag)
                return DeliveryState.ACKED

            if self._retry_policy is None:
                self._transition(tag, DeliveryState.HANDLING)
                await maybe_await(self._handler, text)
            else:
                self._transition(tag, DeliveryState.RETRYING)
                context = RetryContext(delivery_tag=tag, raw_message=text)
                work = functools.partial(maybe_await, self._handler, text)
                succeeded = await self._retry_policy.execute(
                    work, context, self._dead_letter, self._error_handler
                )
                if not succeeded:
                    return DeliveryState.DEAD_LETTERED

            await self._ack(tag)
            return DeliveryState.ACKED

        except Exception as e:
            if tag not in self._in_flight:
                # Already settled; the failure came from the error handler itself
                raise
            if not self._config.disable_dlx_logs:
                logger.error(f"{self._log_prefix} | received: {raw}, exception: {e}")
                logger.warning(f"{self._log_prefix} | errors delegate invoking...")

            await self._dead_letter(tag)
            await maybe_await(self._error_handler, str(e), raw)

            if not self._config.disable_dlx_logs:
                logger.warning(f"{self._log_prefix} | errors delegate invoked")
            return DeliveryState.DEAD_LETTERED

    def _transition(self, delivery_tag: int, state: DeliveryState) -> None:
        self._state = state
        logger.trace("Delivery state changed", delivery_tag=delivery_tag, state=state.value)

    def _matches(self, message: AbstractIncomingMessage) -> bool:
        return (
            message.app_id == self._config.application_id
            and message.content_type == self._config.content_type
        )

    def _warn(self, text: str) -> None:
        if not self._config.disable_dlx_logs:
            logger.warning(text)

    async def _ack(self, delivery_tag: int) -> bool:
        """Acknowledge a single delivery (never cumulative)."""
        message = self._in_flight.pop(delivery_tag, None)
        if message is None:
            logger.warning("Delivery already settled, ack skipped", delivery_tag=delivery_tag)
            return False
        await message.ack(multiple=False)
        DELIVERIES_SETTLED.labels(queue=self._queue_name, disposition="ack").inc()
        return True

    async def _dead_letter(self, delivery_tag: int) -> bool:
        """Reject a delivery without requeue so the broker dead-letters it."""
        message = self._in_flight.pop(delivery_tag, None)
        if message is None:
            logger.warning("Delivery already settled, nack skipped", delivery_tag=delivery_tag)
            return False
        await message.nack(multiple=False, requeue=False)
        DELIVERIES_SETTLED.labels(queue=self._queue_name, disposition="dead_letter").inc()
        return True
