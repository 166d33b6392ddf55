"""Resilient RabbitMQ helper: idempotent provisioning, stamped publishing and
retrying consumers with dead-letter hand-off."""

__version__ = "1.0.0"

from rmq_resilience.client import RabbitHelper
from rmq_resilience.config import Settings, get_settings
from rmq_resilience.consumer import ConsumerLoop
from rmq_resilience.exceptions import (
    AMQPClientError,
    AMQPConnectionError,
    AMQPConsumeError,
    ConfigurationError,
)
from rmq_resilience.log import LogLevel, setup_logging, write_log
from rmq_resilience.models import (
    DeliverySpec,
    DeliveryState,
    ExchangeConfiguration,
    ExchangeSpec,
    MessageEnvelope,
    QueueSpec,
    RetryConfig,
    RetryContext,
)
from rmq_resilience.provisioner import TopologyProvisioner
from rmq_resilience.publisher import Publisher
from rmq_resilience.result import ErrorPolicy, Response, ResponseError, ResultCode
from rmq_resilience.retry import RetryPolicy

__all__ = [
    "AMQPClientError",
    "AMQPConnectionError",
    "AMQPConsumeError",
    "ConfigurationError",
    "ConsumerLoop",
    "DeliverySpec",
    "DeliveryState",
    "ErrorPolicy",
    "ExchangeConfiguration",
    "ExchangeSpec",
    "LogLevel",
    "MessageEnvelope",
    "Publisher",
    "QueueSpec",
    "RabbitHelper",
    "Response",
    "ResponseError",
    "ResultCode",
    "RetryConfig",
    "RetryContext",
    "RetryPolicy",
    "Settings",
    "TopologyProvisioner",
    "get_settings",
    "setup_logging",
    "write_log",
]
