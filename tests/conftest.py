"""Shared fixtures: an in-memory broker double and message factories."""

import pytest
from aio_pika import ExchangeType
from aio_pika.exceptions import ChannelNotFoundEntity, ChannelPreconditionFailed

from rmq_resilience.config import Settings
from rmq_resilience.models import (
    DeliverySpec,
    ExchangeConfiguration,
    ExchangeSpec,
    QueueSpec,
    RetryConfig,
)


class FakeExchange:
    def __init__(self, broker, name, kind, durable, auto_delete):
        self.broker = broker
        self.name = name
        self.flags = (kind, durable, auto_delete)

    async def publish(self, message, routing_key, **kwargs):
        self.broker.published.append((self.name, routing_key, message))


class FakeQueue:
    def __init__(self, broker, name, flags):
        self.broker = broker
        self.name = name
        self.flags = flags
        self.consumers = {}

    async def bind(self, exchange, routing_key=None, **kwargs):
        self.broker.calls.append(("bind", self.name, exchange.name, routing_key))
        self.broker.bindings.add((self.name, exchange.name, routing_key))

    async def consume(self, callback, no_ack=False, **kwargs):
        tag = f"ctag-{self.name}-{len(self.consumers) + 1}"
        self.consumers[tag] = (callback, no_ack)
        return tag

    async def cancel(self, consumer_tag, **kwargs):
        self.consumers.pop(consumer_tag, None)


class FakeChannel:
    """Mimics the broker closing a channel on a failed declare."""

    def __init__(self, broker):
        self.broker = broker
        self.is_closed = False
        self.reopened = 0
        self.qos = None
        self.fail_qos = None

    def _close_with(self, exc):
        self.is_closed = True
        raise exc

    async def reopen(self):
        self.is_closed = False
        self.reopened += 1

    async def close(self):
        self.is_closed = True

    async def declare_exchange(
        self, name, type=ExchangeType.DIRECT, *, passive=False, durable=False, auto_delete=False, arguments=None
    ):
        assert not self.is_closed, "declare on a closed channel"
        self.broker.calls.append(("declare_exchange", name, passive))
        existing = self.broker.exchanges.get(name)
        if passive:
            if existing is None:
                self._close_with(ChannelNotFoundEntity(f"NOT_FOUND - no exchange '{name}'"))
            return existing
        flags = (ExchangeType(type), durable, auto_delete)
        if existing is not None:
            if existing.flags != flags:
                self._close_with(ChannelPreconditionFailed(f"PRECONDITION_FAILED - inequivalent arg for '{name}'"))
            return existing
        exchange = FakeExchange(self.broker, name, *flags)
        self.broker.exchanges[name] = exchange
        return exchange

    async def declare_queue(
        self, name, *, passive=False, durable=False, exclusive=False, auto_delete=False, arguments=None
    ):
        assert not self.is_closed, "declare on a closed channel"
        self.broker.calls.append(("declare_queue", name, passive))
        existing = self.broker.queues.get(name)
        if passive:
            if existing is None:
                self._close_with(ChannelNotFoundEntity(f"NOT_FOUND - no queue '{name}'"))
            return existing
        flags = (durable, exclusive, auto_delete, arguments)
        if existing is not None:
            if existing.flags != flags:
                self._close_with(ChannelPreconditionFailed(f"PRECONDITION_FAILED - inequivalent arg for '{name}'"))
            return existing
        queue = FakeQueue(self.broker, name, flags)
        self.broker.queues[name] = queue
        return queue

    async def set_qos(self, prefetch_count=0, prefetch_size=0, global_=False, **kwargs):
        if self.fail_qos is not None:
            raise self.fail_qos
        self.qos = (prefetch_count, prefetch_size, global_)

    async def get_exchange(self, name, ensure=True):
        return self.broker.exchanges[name]

    async def get_queue(self, name, ensure=True):
        return self.broker.queues[name]


class FakeBroker:
    """In-memory stand-in for an aio-pika connection."""

    def __init__(self):
        self.exchanges = {}
        self.queues = {}
        self.bindings = set()
        self.published = []
        self.calls = []
        self.channels = []
        self.is_closed = False
        self.fail_qos = None

    async def channel(self):
        channel = FakeChannel(self)
        channel.fail_qos = self.fail_qos
        self.channels.append(channel)
        return channel

    async def close(self):
        self.is_closed = True

    async def get_connection(self):
        return self


class UntouchableBroker:
    """Fails the test if anything asks it for a connection."""

    async def get_connection(self):
        pytest.fail("broker must not be contacted")


class FakeMessage:
    def __init__(
        self,
        body,
        app_id="billing",
        content_type="application/json",
        delivery_tag=1,
        correlation_id="corr-1",
    ):
        self.body = body if isinstance(body, bytes) else body.encode("utf-8")
        self.app_id = app_id
        self.content_type = content_type
        self.delivery_tag = delivery_tag
        self.correlation_id = correlation_id
        self.acks = []
        self.nacks = []

    async def ack(self, multiple=False):
        self.acks.append(multiple)

    async def nack(self, multiple=False, requeue=True):
        self.nacks.append(requeue)

    @property
    def settled(self):
        return len(self.acks) + len(self.nacks)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        rabbitmq_host="localhost",
        rabbitmq_port=5672,
        publish_failure_backoff=5.0,
        connect_attempts=2,
        connect_base_delay=0.1,
    )


def make_config(
    exchange="billing.ex",
    queue="billing.q",
    routing_key="invoice.created",
    kind=ExchangeType.DIRECT,
    retry=None,
    **kwargs,
):
    """Build an ExchangeConfiguration with sensible test defaults."""
    return ExchangeConfiguration(
        exchange=ExchangeSpec(name=exchange, kind=kind),
        queue=QueueSpec(name=queue, routing_key=routing_key) if queue is not None else None,
        delivery=DeliverySpec(prefetch_count=5),
        retry=retry or RetryConfig(),
        application_id=kwargs.pop("application_id", "billing"),
        **kwargs,
    )


@pytest.fixture
def config():
    return make_config()
