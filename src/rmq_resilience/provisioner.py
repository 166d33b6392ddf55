"""Idempotent exchange/queue provisioning.

Attaches to existing topology with passive declares and only falls back to
active declares when the passive check fails, so provisioning never alters
resources another service already owns. A failed passive declare makes the
broker close the channel; the channel is reopened before the fallback.
"""

from typing import Awaitable, Callable

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractQueue
from aio_pika.exceptions import AMQPConnectionError, AMQPError, ChannelClosed, ChannelPreconditionFailed
from loguru import logger

from rmq_resilience.exceptions import ConfigurationError
from rmq_resilience.models import DeliverySpec, ExchangeConfiguration, ExchangeSpec, QueueSpec


def validate_topology(config: ExchangeConfiguration | None) -> None:
    """Raise ConfigurationError for configurations that cannot be provisioned."""
    if config is None:
        raise ConfigurationError("RabbitMQ exchange configuration is missing")
    if not config.exchange.name:
        raise ConfigurationError("Exchange name is missing")
    if config.queue is None or not config.queue.name:
        raise ConfigurationError("Queue name is missing")
    if not config.queue.routing_key and config.exchange.kind != ExchangeType.FANOUT:
        raise ConfigurationError(
            f"Routing key is required for {config.exchange.kind.value} exchange {config.exchange.name}"
        )


async def _reopen_if_closed(channel: AbstractChannel) -> None:
    if channel.is_closed:
        await channel.reopen()


async def _close_quietly(channel: AbstractChannel) -> None:
    if channel.is_closed:
        return
    try:
        await channel.close()
    except Exception as e:
        logger.warning(f"Error closing channel after failed provisioning: {e}")


class TopologyProvisioner:
    """Declares or attaches to an exchange/queue pair on a fresh channel.

    ``get_connection`` returns the live connection, connecting first if needed.
    """

    def __init__(self, get_connection: Callable[[], Awaitable[AbstractConnection]]):
        self._get_connection = get_connection

    async def provision(self, config: ExchangeConfiguration) -> AbstractChannel:
        """Return a new channel on which the configured topology exists.

        Raises:
            ConfigurationError: exchange or queue name missing, or routing key
                missing for a non-fanout exchange. No broker call is made.
        """
        validate_topology(config)

        connection = await self._get_connection()
        channel = await connection.channel()
        try:
            exchange = await self.ensure_exchange(channel, config.exchange)
            await self.ensure_queue(channel, exchange, config.exchange, config.queue)
            await self.apply_qos(channel, config.delivery)
        except BaseException:
            await _close_quietly(channel)
            raise
        return channel

    async def ensure_exchange(self, channel: AbstractChannel, spec: ExchangeSpec) -> AbstractExchange:
        """Attach to the exchange if it exists, otherwise declare it."""
        try:
            exchange = await channel.declare_exchange(spec.name, passive=True)
            logger.info("Exchange exists", exchange=spec.name)
            return exchange
        except ChannelClosed as e:
            logger.bind(exchange=spec.name).error(f"Passive exchange declare failed: {e}")

        await _reopen_if_closed(channel)
        logger.bind(exchange=spec.name).warning("Trying active exchange declare")
        try:
            exchange = await channel.declare_exchange(
                spec.name,
                spec.kind,
                durable=spec.durable,
                auto_delete=spec.auto_delete,
                arguments=spec.arguments,
            )
        except ChannelPreconditionFailed as e:
            # Declared concurrently by another client with different flags
            logger.bind(exchange=spec.name).warning(f"Exchange exists with other flags, attaching: {e}")
            await _reopen_if_closed(channel)
            return await channel.declare_exchange(spec.name, passive=True)

        logger.info("Exchange declared", exchange=spec.name, kind=spec.kind.value)
        return exchange

    async def ensure_queue(
        self,
        channel: AbstractChannel,
        exchange: AbstractExchange,
        exchange_spec: ExchangeSpec,
        spec: QueueSpec,
    ) -> AbstractQueue:
        """Attach to or declare the queue, then (re-)bind it with the routing key."""
        try:
            queue = await channel.declare_queue(spec.name, passive=True)
            await queue.bind(exchange, routing_key=spec.routing_key)
            logger.info("Queue exists, binding refreshed", queue=spec.name, routing_key=spec.routing_key)
            return queue
        except ChannelClosed as e:
            logger.bind(queue=spec.name).error(f"Passive queue declare failed: {e}")

        await _reopen_if_closed(channel)
        logger.bind(queue=spec.name).warning("Trying active queue declare")
        try:
            queue = await channel.declare_queue(
                spec.name,
                durable=exchange_spec.durable,
                exclusive=spec.exclusive,
                auto_delete=exchange_spec.auto_delete,
                arguments=spec.arguments,
            )
        except ChannelPreconditionFailed as e:
            logger.bind(queue=spec.name).warning(f"Queue exists with other flags, attaching: {e}")
            await _reopen_if_closed(channel)
            queue = await channel.declare_queue(spec.name, passive=True)

        await queue.bind(exchange, routing_key=spec.routing_key)
        logger.info("Queue declared and bound", queue=spec.name, routing_key=spec.routing_key)
        return queue

    async def apply_qos(self, channel: AbstractChannel, spec: DeliverySpec) -> None:
        """Apply prefetch limits. Channel-level failures are logged, not raised."""
        try:
            await channel.set_qos(
                prefetch_count=spec.prefetch_count,
                prefetch_size=spec.prefetch_size,
                global_=spec.apply_globally,
            )
        except AMQPConnectionError:
            raise
        except AMQPError as e:
            logger.error(f"basic.qos failed, continuing without flow control: {e}")
            await _reopen_if_closed(channel)
