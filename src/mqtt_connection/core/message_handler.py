"""
Callback seams between the connection and application code.

Message handlers are plain callables receiving the inbound ``MqttMessage``.
Connection observers implement ``ConnectionObserverProtocol``; applications
typically use ``ConnectionObserverBase`` with the callbacks they care about,
for example to resubscribe after a reconnect:

    >>> def resubscribe(connection, reconnected):
    ...     connection.subscribe("sensors/#", MqttQos.AT_LEAST_ONCE, on_sensor)
    >>> connection.set_connection_observer(ConnectionObserverBase(on_established=resubscribe))
"""
from typing import Any, Callable, Optional, Protocol, runtime_checkable
import logging

from .models import MqttMessage

# Type placeholder for MqttConnection to avoid circular imports
MqttConnection = Any

logger = logging.getLogger(__name__)

MessageHandler = Callable[[MqttMessage], None]


@runtime_checkable
class ConnectionObserverProtocol(Protocol):
    """
    Protocol for connection lifecycle observers.

    Both callbacks run outside the connection's locks and may call back into
    the same connection (subscribe, publish, even close). Exceptions they
    raise are logged and otherwise ignored.
    """
    def on_connection_lost(
        self,
        connection: MqttConnection,
        will_reconnect: bool,
        cause: Optional[BaseException],
    ) -> None:
        ...

    def on_connection_established(self, connection: MqttConnection, reconnected: bool) -> None:
        ...


class ConnectionObserverBase:
    """
    Observer built from optional callables.

    Args:
        on_lost: Called as ``on_lost(connection, will_reconnect, cause)``
        on_established: Called as ``on_established(connection, reconnected)``
    """
    def __init__(
        self,
        on_lost: Optional[Callable[[MqttConnection, bool, Optional[BaseException]], None]] = None,
        on_established: Optional[Callable[[MqttConnection, bool], None]] = None,
    ):
        self._on_lost = on_lost
        self._on_established = on_established

    def on_connection_lost(
        self,
        connection: MqttConnection,
        will_reconnect: bool,
        cause: Optional[BaseException],
    ) -> None:
        if self._on_lost is not None:
            self._on_lost(connection, will_reconnect, cause)

    def on_connection_established(self, connection: MqttConnection, reconnected: bool) -> None:
        if self._on_established is not None:
            self._on_established(connection, reconnected)


class LoggingConnectionObserver(ConnectionObserverBase):
    """Observer that only logs lifecycle events."""
    def __init__(self):
        def log_lost(connection: MqttConnection, will_reconnect: bool, cause: Optional[BaseException]):
            logger.warning(
                f"Connection {connection} lost ({cause or 'unknown cause'}); "
                f"{'will' if will_reconnect else 'will not'} reconnect"
            )

        def log_established(connection: MqttConnection, reconnected: bool):
            logger.info(f"Connection {connection} {'re-established' if reconnected else 'established'}")

        super().__init__(on_lost=log_lost, on_established=log_established)


__all__ = [
    "MessageHandler",
    "ConnectionObserverProtocol",
    "ConnectionObserverBase",
    "LoggingConnectionObserver",
]
