"""RabbitHelper: owns the broker connection and exposes the public operations.

Provides a RabbitHelper class that handles:
- One robust (auto-recovering) connection per helper instance
- Connection with exponential backoff on startup
- Idempotent topology provisioning per exchange configuration
- Publishing with metadata stamping and a result envelope
- Subscriptions with filtering, retry and dead-lettering
"""

import asyncio
from typing import Any

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractRobustConnection
from loguru import logger

from rmq_resilience.config import Settings, get_settings
from rmq_resilience.consumer import ConsumerLoop, MessageHandler
from rmq_resilience.exceptions import AMQPConnectionError, ConfigurationError
from rmq_resilience.metrics import AMQP_STATUS
from rmq_resilience.models import ExchangeConfiguration
from rmq_resilience.provisioner import TopologyProvisioner
from rmq_resilience.publisher import Publisher
from rmq_resilience.result import ErrorPolicy, Response
from rmq_resilience.retry import ErrorHandler


class RabbitHelper:
    """Resilient RabbitMQ helper bound to a single connection.

    Channels derived from the connection are never shared between a publisher
    and a consumer: every consumer gets its own provisioned channel and
    publishing uses one cached channel per exchange/queue pair.
    """

    def __init__(self, settings: Settings | None = None):
        """Validate connection settings.

        Raises:
            ConfigurationError: host or port is missing.
        """
        self._settings = settings or get_settings()
        if not self._settings.rabbitmq_host or self._settings.rabbitmq_port is None:
            raise ConfigurationError("Required parameters rabbitmq_host or rabbitmq_port are missing")

        self._connection: AbstractRobustConnection | None = None
        self._connect_lock = asyncio.Lock()
        self._policy = ErrorPolicy.from_settings(self._settings)
        self._provisioner = TopologyProvisioner(self.connect)
        self._publisher = Publisher(self._provisioner, self._settings, self._policy)
        self._consumers: list[ConsumerLoop] = []

    @classmethod
    async def create(cls, settings: Settings | None = None) -> "RabbitHelper":
        """Build a helper and open its connection."""
        helper = cls(settings)
        await helper.connect()
        return helper

    async def __aenter__(self) -> "RabbitHelper":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    @property
    def consumers(self) -> list[ConsumerLoop]:
        return list(self._consumers)

    async def connect(self) -> AbstractRobustConnection:
        """Return the live connection, creating it with retries if needed."""
        async with self._connect_lock:
            if self._connection is not None and not self._connection.is_closed:
                return self._connection
            self._connection = await self._create_connection()
            AMQP_STATUS.set(1)
            return self._connection

    async def _create_connection(self) -> AbstractRobustConnection:
        settings = self._settings
        password = settings.rabbitmq_password.get_secret_value() if settings.rabbitmq_password else "guest"
        last_error: Exception | None = None

        for attempt in range(settings.connect_attempts):
            try:
                if attempt > 0:
                    delay = settings.connect_base_delay * (2 ** (attempt - 1))
                    logger.warning(f"Retrying connection in {delay:.1f}s")
                    await asyncio.sleep(delay)

                connection = await aio_pika.connect_robust(
                    host=settings.rabbitmq_host,
                    port=settings.rabbitmq_port,
                    login=settings.rabbitmq_user or "guest",
                    password=password,
                    virtualhost=settings.rabbitmq_vhost,
                    timeout=settings.connection_timeout,
                    reconnect_interval=settings.network_recovery_interval,
                )
                logger.info("Connected to RabbitMQ", rabbitmq_url=settings.rabbitmq_url_masked)
                return connection
            except Exception as e:
                last_error = e
                logger.warning(f"Connection attempt {attempt + 1} failed: {e}")

        AMQP_STATUS.set(0)
        raise AMQPConnectionError(
            f"Failed to connect after {settings.connect_attempts} attempts: {last_error}"
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def get_or_create_channel(self, config: ExchangeConfiguration) -> AbstractChannel:
        """Provision the configured topology on a new channel."""
        return await self._provisioner.provision(config)

    async def publish(self, payload: Any, config: ExchangeConfiguration) -> Response[bool]:
        """Publish a payload; failures are reported in the returned Response."""
        return await self._publisher.publish(payload, config)

    async def start_exchange(
        self,
        config: ExchangeConfiguration,
        handler: MessageHandler | None,
        error_handler: ErrorHandler | None = None,
    ) -> ConsumerLoop:
        """Provision a channel for ``config`` and start consuming from its queue."""
        channel = await self._provisioner.provision(config)
        consumer = ConsumerLoop(channel, config, handler, error_handler)
        await consumer.start()
        self._consumers.append(consumer)
        return consumer

    async def health_check(self) -> dict[str, Any]:
        """Report connection state and consumer count."""
        connected = self.is_connected
        AMQP_STATUS.set(1 if connected else 0)
        return {
            "connected": connected,
            "state": "connected" if connected else "disconnected",
            "consumers": sum(1 for consumer in self._consumers if consumer.is_consuming),
        }

    async def close(self) -> None:
        """Stop consumers, close channels and the connection."""
        logger.info("Closing RabbitMQ helper")
        for consumer in self._consumers:
            try:
                await consumer.stop()
                if not consumer.channel.is_closed:
                    await consumer.channel.close()
            except Exception as e:
                logger.warning(f"Error stopping consumer: {e}")
        self._consumers.clear()

        await self._publisher.close()

        if self._connection is not None:
            try:
                if not self._connection.is_closed:
                    await self._connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection: {e}")
            self._connection = None
        AMQP_STATUS.set(0)
        logger.info("RabbitMQ helper closed")
