"""Exception hierarchy for the RabbitMQ resilience layer."""


class AMQPClientError(Exception):
    """Base exception for AMQP client errors."""

    pass


class ConfigurationError(AMQPClientError):
    """Raised when required configuration is missing or inconsistent.

    Always raised before any broker round-trip is attempted.
    """

    pass


class AMQPConnectionError(AMQPClientError):
    """Raised when connection to RabbitMQ fails."""

    pass


class AMQPConsumeError(AMQPClientError):
    """Raised when a consumer cannot be registered or cancelled."""

    pass
