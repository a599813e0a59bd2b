"""
Boundary between the connection and a wire-level MQTT client.

A ``Transport`` owns one network session: it is created for a single connect
attempt and discarded once that session ends. Everything the broker sends back
is reported through the ``TransportListener`` handed to ``connect()``, from the
transport's own I/O thread and in frame arrival order.
"""
from typing import Callable, Optional, Protocol, runtime_checkable

from .models import ConnectReturnCode, MqttConnectionConfig, MqttMessage, MqttQos


@runtime_checkable
class TransportListener(Protocol):
    """Receives acknowledgments, inbound messages and loss notifications."""

    def on_publish_complete(self, packet_id: int) -> None:
        """PUBACK (QoS 1) or PUBCOMP (QoS 2) arrived for ``packet_id``."""
        ...

    def on_subscribe_complete(self, packet_id: int, granted: list[Optional[MqttQos]]) -> None:
        """SUBACK arrived; ``granted`` holds None for each rejected filter."""
        ...

    def on_unsubscribe_complete(self, packet_id: int) -> None:
        ...

    def on_message(self, message: MqttMessage) -> None:
        ...

    def on_connection_lost(self, cause: Optional[BaseException]) -> None:
        """The session ended without a call to ``disconnect()``."""
        ...


@runtime_checkable
class Transport(Protocol):
    """
    One MQTT network session.

    ``publish``, ``subscribe`` and ``unsubscribe`` only hand a frame to the
    wire and raise on immediate failure; completion is reported through the
    listener using the packet identifier the caller supplied.
    """

    def connect(
        self,
        config: MqttConnectionConfig,
        listener: TransportListener,
        timeout: float,
    ) -> ConnectReturnCode:
        """
        Open the session, blocking for at most ``timeout`` seconds.

        Raises:
            ConnectError: On refusal, timeout or socket failure
        """
        ...

    def disconnect(self, timeout: float) -> None:
        ...

    def publish(self, message: MqttMessage, packet_id: Optional[int]) -> None:
        """Send a PUBLISH; ``packet_id`` is None for QoS 0."""
        ...

    def subscribe(self, topic_filter: str, qos: MqttQos, packet_id: int) -> None:
        ...

    def unsubscribe(self, topic_filter: str, packet_id: int) -> None:
        ...

    @property
    def is_connected(self) -> bool:
        ...


TransportFactory = Callable[[MqttConnectionConfig], Transport]
