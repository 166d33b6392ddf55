"""Message publishing with metadata stamping and a result envelope.

``publish`` never raises for expected failures: missing input, configuration
problems and broker failures come back as a failed :class:`Response`. Broker
failures additionally pause the call for ``publish_failure_backoff`` seconds
so a caller publishing in a loop does not spin against a dead broker. There is
no automatic retry and no publisher-confirm tracking.
"""

import asyncio
import json
from typing import Any

import aio_pika.exceptions
from aio_pika.abc import AbstractChannel
from loguru import logger
from pydantic import BaseModel

from rmq_resilience.config import Settings, get_settings
from rmq_resilience.exceptions import AMQPConnectionError, ConfigurationError
from rmq_resilience.log import get_transaction_id
from rmq_resilience.metrics import MESSAGES_PUBLISHED
from rmq_resilience.models import ExchangeConfiguration, MessageEnvelope
from rmq_resilience.provisioner import TopologyProvisioner
from rmq_resilience.result import ErrorPolicy, Response, ResponseError, ResultCode


BROKER_UNREACHABLE_ERRORS = (
    aio_pika.exceptions.AMQPConnectionError,
    AMQPConnectionError,
    OSError,
)


def serialize_payload(payload: Any) -> bytes:
    """Serialize a payload to UTF-8 JSON; bytes are sent as-is."""
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, BaseModel):
        return payload.model_dump_json().encode("utf-8")
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


class Publisher:
    """Publishes payloads to provisioned exchanges.

    One channel is cached per exchange/queue pair and re-provisioned when the
    broker closes it. Calls sharing a channel are serialized.
    """

    def __init__(
        self,
        provisioner: TopologyProvisioner,
        settings: Settings | None = None,
        policy: ErrorPolicy | None = None,
    ):
        settings = settings or get_settings()
        self._provisioner = provisioner
        self._backoff = settings.publish_failure_backoff
        self._policy = policy or ErrorPolicy.from_settings(settings)
        self._channels: dict[tuple[str, str], AbstractChannel] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    async def publish(self, payload: Any, config: ExchangeConfiguration) -> Response[bool]:
        """Publish ``payload`` to the configured exchange with the queue routing key."""

        async def action(response: Response[bool]) -> None:
            response.throw_if_none(payload, ResultCode.MISSING_PAYLOAD, "No data passed for RabbitMQ")
            response.throw_if_none(config, ResultCode.CONFIGURATION_ERROR, "No exchange configuration passed")
            response.throw_if_empty(
                config.application_id,
                ResultCode.MISSING_APPLICATION_ID,
                "ApplicationId is required to publish to RabbitMQ",
            )
            response.throw_if_empty(
                config.content_type,
                ResultCode.MISSING_CONTENT_TYPE,
                "ContentType is required to publish to RabbitMQ",
            )

            envelope = MessageEnvelope(
                body=serialize_payload(payload),
                content_type=config.content_type,
                application_id=config.application_id,
            )

            try:
                await self._send(envelope, config)
            except ConfigurationError as e:
                raise ResponseError(ResultCode.CONFIGURATION_ERROR, str(e)) from e
            except BROKER_UNREACHABLE_ERRORS as e:
                await self._fail(response, ResultCode.BROKER_UNREACHABLE, e, config, envelope)
                return
            except Exception as e:
                await self._fail(response, ResultCode.PUBLISH_FAILED, e, config, envelope)
                return

            response.data = True
            logger.info(
                "Message published",
                exchange=config.exchange.name,
                routing_key=config.queue.routing_key,
                correlation_id=envelope.correlation_id,
            )

        result = await Response.run_async(action, policy=self._policy)
        exchange_name = config.exchange.name if config is not None else ""
        MESSAGES_PUBLISHED.labels(exchange=exchange_name, code=str(int(result.code))).inc()
        return result

    async def _send(self, envelope: MessageEnvelope, config: ExchangeConfiguration) -> None:
        channel_key = (config.exchange.name, config.queue.name if config.queue else "")
        lock = self._locks.setdefault(channel_key, asyncio.Lock())
        async with lock:
            channel = self._channels.get(channel_key)
            if channel is None or channel.is_closed:
                channel = await self._provisioner.provision(config)
                self._channels[channel_key] = channel

            exchange = await channel.get_exchange(config.exchange.name, ensure=False)
            await exchange.publish(envelope.to_message(), routing_key=config.queue.routing_key)

    async def _fail(
        self,
        response: Response[bool],
        code: ResultCode,
        error: Exception,
        config: ExchangeConfiguration,
        envelope: MessageEnvelope,
    ) -> None:
        response.data = False
        response.code = code
        response.message = str(error)
        logger.bind(
            error_code=int(code),
            exchange=config.exchange.name,
            routing_key=config.queue.routing_key if config.queue else "",
            correlation_id=envelope.correlation_id,
            transaction_id=get_transaction_id(),
            error_type=type(error).__name__,
        ).error(f"Failed to publish message to RabbitMQ: {error}")
        await asyncio.sleep(self._backoff)

    async def close(self) -> None:
        """Close every cached publishing channel."""
        for key, channel in list(self._channels.items()):
            try:
                if not channel.is_closed:
                    await channel.close()
            except Exception as e:
                logger.warning(f"Error closing publisher channel {key}: {e}")
        self._channels.clear()
        self._locks.clear()
