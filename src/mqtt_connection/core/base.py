"""
Abstract Base Class for MQTT connections.

This module provides the foundational abstract base class (MqttConnectionBase)
that defines the public interface of a managed MQTT connection, along with the
logging helpers every connection uses.

Key Components:
    - MqttConnectionBase: Abstract base class defining the connection interface
    - MessageLogger: Logger adapter carrying connection context (client_id, uid)
    - ClientFormatter: Log formatter rendering that context as key=value pairs
    - generate_unique_id(): Client identifier generation

The base class handles:
    - Configuration snapshot ownership
    - Client identifier defaulting
    - Logging infrastructure with contextual information
    - Abstract method definitions for subclass implementation
"""
import uuid
import logging
from abc import ABC, abstractmethod
from concurrent.futures import Future
from typing import Any, Iterable

from .message_handler import ConnectionObserverProtocol, MessageHandler
from .models import ConnectionState, MqttConnectionConfig, MqttMessage, MqttQos


logger = logging.getLogger(__name__)

CONTEXT_FIELDS = ("client_id", "uid", "topic", "packet_id")


class ClientFormatter(logging.Formatter):
    """
    Log formatter that appends connection context to each message.

    ``MessageLogger`` attaches its extras as attributes of the log record; any
    of ``fields`` present on the record are appended as ``key=value`` pairs.

    Example:
        >>> handler = logging.StreamHandler()
        >>> handler.setFormatter(ClientFormatter("%(levelname)s %(message)s"))
        >>> connection.logger.info("Connected")
        # Output: "INFO Connected client_id=device-123 uid=meter"
    """

    def __init__(self, fmt: str | None = None, datefmt: str | None = None, fields: Iterable[str] = CONTEXT_FIELDS):
        super().__init__(fmt, datefmt)
        self.fields = tuple(fields)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extra_info = ' '.join(
            f"{k}={getattr(record, k)}" for k in self.fields
            if getattr(record, k, None) is not None
        )
        if extra_info:
            return f"{message} {extra_info}"
        return message


class MessageLogger(logging.LoggerAdapter):
    """
    Logger adapter that injects connection context into every record.

    Attributes:
        logger: The underlying Logger instance
        extra: Base context dictionary attached to all log records
        merge_extra: If True, merge call-time extras with base extras; if False, replace
        exclude_extras: Field names removed from the context before logging

    Example:
        >>> log = MessageLogger(
        ...     logging.getLogger(__name__),
        ...     extra={"client_id": "device-001"},
        ...     merge_extra=True
        ... )
        >>> log.info("Subscribed", extra={"topic": "sensors/#"})
        # Logs with both client_id and topic in the context
    """

    def __init__(
        self,
        logger: logging.Logger,
        extra: dict[str, Any] | None = None,
        merge_extra: bool = False,
        exclude_extras: list[str] | None = None
    ):
        super().__init__(logger, extra or {})
        self.logger = logger
        self.extra = dict(extra or {})
        self.merge_extra = merge_extra
        self.exclude_extras = exclude_extras or []

    def process(self, msg, kwargs):
        if self.merge_extra and "extra" in kwargs:
            kwargs["extra"] = {**self.extra, **kwargs["extra"]}
        else:
            kwargs["extra"] = dict(self.extra)

        for key in self.exclude_extras:
            kwargs["extra"].pop(key, None)

        return msg, kwargs


def generate_unique_id(prefix: str | None = "mqtt_client") -> str:
    """
    Generate a globally unique identifier with an optional prefix.

    Args:
        prefix: Optional prefix string. If None, returns raw UUID.

    Returns:
        Unique identifier string in format "{prefix}-{uuid}" or just "{uuid}"

    Example:
        >>> generate_unique_id("meter")
        "meter-a7f3c8d9-1234-5678-9abc-def012345678"
    """
    if prefix is None:
        return str(uuid.uuid4())
    return f"{prefix}-{uuid.uuid4()}"


class MqttConnectionBase(ABC):
    """
    Abstract base class for managed MQTT connections.

    Owns the configuration snapshot and the contextual logger. Subclasses
    implement the lifecycle and messaging operations; every operation that
    talks to the broker returns a ``concurrent.futures.Future``.
    """

    def __init__(
        self,
        config: MqttConnectionConfig,
        logger: logging.LoggerAdapter | None = None,
    ):
        """
        Args:
            config: Connection settings; a client id is generated when the
                config does not name one
            logger: Custom logger adapter (creates a MessageLogger if None)
        """
        self._config = self._complete_config(config)
        self.logger = logger or MessageLogger(
            logging.getLogger(self.__class__.__module__),
            extra={"client_id": self._config.client_id, "uid": self._config.uid},
            merge_extra=True
        )
        self.logger.debug(
            f"Initialized MQTT connection to {self._config.server_uri} "
            f"with client id '{self._config.client_id}'"
        )

    @staticmethod
    def _complete_config(config: MqttConnectionConfig) -> MqttConnectionConfig:
        if config.client_id:
            return config
        return config.with_changes(client_id=generate_unique_id())

    @property
    def config(self) -> MqttConnectionConfig:
        return self._config

    @property
    def uid(self) -> str:
        return self._config.display_name

    # Abstract methods that subclasses must implement

    @abstractmethod
    def open(self) -> Future:
        """Start connecting; the handle resolves once the connection is established."""
        pass

    @abstractmethod
    def close(self) -> Future:
        """Disconnect and stop reconnecting."""
        pass

    @abstractmethod
    def reconfigure(self, config: MqttConnectionConfig) -> Future:
        """Close, swap in ``config`` and open again."""
        pass

    @abstractmethod
    def publish(self, message: MqttMessage) -> Future:
        pass

    @abstractmethod
    def subscribe(
        self,
        topic_filter: str,
        qos: MqttQos = MqttQos.AT_LEAST_ONCE,
        handler: MessageHandler | None = None,
    ) -> Future:
        pass

    @abstractmethod
    def unsubscribe(self, topic_filter: str, handler: MessageHandler | None = None) -> Future:
        pass

    @abstractmethod
    def set_message_handler(self, handler: MessageHandler | None) -> None:
        pass

    @abstractmethod
    def set_connection_observer(self, observer: ConnectionObserverProtocol | None) -> None:
        pass

    @property
    @abstractmethod
    def state(self) -> ConnectionState:
        pass

    @property
    def is_established(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def is_closed(self) -> bool:
        return self.state is ConnectionState.CLOSED
