"""Pydantic V2 models and runtime records for the resilience layer."""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from aio_pika import ExchangeType, Message
from pydantic import BaseModel, ConfigDict, Field


DEFAULT_CONTENT_TYPE = "application/json"


class ExchangeSpec(BaseModel):
    """Exchange declaration parameters."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="", description="Exchange name")
    kind: ExchangeType = Field(default=ExchangeType.DIRECT, description="direct, topic, fanout or headers")
    durable: bool = Field(default=True, description="Survive broker restart")
    auto_delete: bool = Field(default=False, description="Delete when the last queue is unbound")
    arguments: Optional[Dict[str, Any]] = Field(None, description="Extra x-arguments")


class QueueSpec(BaseModel):
    """Queue declaration and binding parameters.

    Durability and auto-delete follow the owning exchange spec.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="", description="Queue name")
    exclusive: bool = Field(default=False, description="Restrict to the declaring connection")
    routing_key: str = Field(default="", description="Binding key; may be empty only for fanout")
    arguments: Optional[Dict[str, Any]] = Field(
        None, description="Extra x-arguments, e.g. x-dead-letter-exchange"
    )


class DeliverySpec(BaseModel):
    """Consumer flow control (basic.qos)."""

    model_config = ConfigDict(extra="forbid")

    prefetch_size: int = Field(default=0, ge=0, description="Max unacked bytes, 0 = unlimited")
    prefetch_count: int = Field(default=1, ge=0, le=65535, description="Max unacked deliveries")
    apply_globally: bool = Field(default=False, description="Apply to the whole connection")


class RetryConfig(BaseModel):
    """Bounded handler retry.

    Only enable for idempotent handlers (e.g. deduplicate on an
    x-idempotency-key header): a retried handler may have partially run.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = Field(default=False, description="Wrap the handler in the retry policy")
    max_attempts: int = Field(default=1, ge=1, description="Total handler invocations per delivery")
    base_delay: float = Field(
        default=0.1, ge=0.0, description="Seconds; the wait after attempt N is base_delay * N"
    )


class ExchangeConfiguration(BaseModel):
    """Everything needed to provision, publish to and consume from one exchange/queue pair."""

    model_config = ConfigDict(extra="forbid")

    exchange: ExchangeSpec = Field(default_factory=ExchangeSpec)
    queue: Optional[QueueSpec] = Field(None, description="Queue bound to the exchange")
    delivery: DeliverySpec = Field(default_factory=DeliverySpec)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    application_id: str = Field(default="", description="Stamped on publish, required on consume")
    content_type: str = Field(default=DEFAULT_CONTENT_TYPE, description="Stamped on publish, required on consume")
    disable_dlx_logs: bool = Field(default=True, description="Silence filter/retry/dead-letter logs")

    @property
    def log_prefix(self) -> str:
        queue_name = self.queue.name if self.queue else ""
        return f"ExchangeName: {self.exchange.name}, queueName: {queue_name}"


@dataclass
class MessageEnvelope:
    """Outgoing message with its stamped metadata."""

    body: bytes
    content_type: str
    application_id: str
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_message(self) -> Message:
        return Message(
            body=self.body,
            content_type=self.content_type,
            app_id=self.application_id,
            correlation_id=self.correlation_id,
        )


@dataclass
class RetryContext:
    """Per-delivery retry state, owned by the task processing that delivery."""

    delivery_tag: int
    raw_message: str
    attempt_number: int = 0
    last_error: BaseException | None = None


class DeliveryState(str, Enum):
    """States a delivery moves through inside the consumer loop."""

    RECEIVED = "received"
    FILTERING = "filtering"
    HANDLING = "handling"
    RETRYING = "retrying"
    ACKED = "acked"
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryState.ACKED, DeliveryState.DEAD_LETTERED)
