"""
Managed MQTT connection.

``MqttConnection`` is the façade applications use: it keeps a session to the
broker open (reconnecting when configured to), correlates publish, subscribe
and unsubscribe requests with their acknowledgments, and routes each inbound
message to the handler registered for its topic or, failing that, to the
connection-wide handler.

Every broker operation returns a ``concurrent.futures.Future``. Callers may
block on it, attach callbacks, or ignore it.

Example:
    >>> config = MqttConnectionConfig(server_uri="mqtt://localhost:1883", client_id="meter-1")
    >>> with MqttConnection(config) as connection:
    ...     connection.subscribe("meters/+/reading", MqttQos.AT_LEAST_ONCE, print).result(5)
    ...     connection.publish(MqttMessage.from_json("meters/1/reading", {"watts": 120})).result(5)
"""
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Optional

from .core.base import MqttConnectionBase
from .core.exceptions import (
    ConnectionLostError,
    MessageTooLargeError,
    MqttConnectionException,
    NotConnectedError,
    SubscriptionRejectedError,
)
from .core.message_handler import ConnectionObserverProtocol, MessageHandler
from .core.models import (
    ConnectionState,
    MqttConnectionConfig,
    MqttMessage,
    MqttQos,
    PingTestResult,
)
from .core.pending import OperationKind, PendingOperation, PendingOperationTable
from .core.state_machine import ConnectionStateMachine
from .core.stats import BasicCount, MqttStats
from .core.subscriptions import SubscriptionEntry, SubscriptionRegistry
from .core.topic_filter import validate_topic_filter, validate_topic_name
from .core.transport import Transport, TransportFactory

logger = logging.getLogger(__name__)

DEFAULT_OPEN_TIMEOUT = 30


def _default_transport_factory(config: MqttConnectionConfig) -> Transport:
    from .paho_client.transport import PahoTransport
    return PahoTransport(config)


def _completed_future() -> Future:
    future = Future()
    future.set_result(None)
    return future


@dataclass
class _SubscribeRequest:
    """Entries riding on one SUBSCRIBE; they share its SUBACK outcome."""
    topic_filter: str
    qos: MqttQos
    entries: list[SubscriptionEntry] = field(default_factory=list)


class _ConnectionListener:
    """Routes transport events into the owning connection."""

    def __init__(self, connection: "MqttConnection"):
        self._connection = connection

    def on_publish_complete(self, packet_id: int) -> None:
        self._connection._pending.complete(packet_id, OperationKind.PUBLISH)

    def on_subscribe_complete(self, packet_id: int, granted: list[Optional[MqttQos]]) -> None:
        self._connection._subscribe_complete(packet_id, granted)

    def on_unsubscribe_complete(self, packet_id: int) -> None:
        self._connection._pending.complete(packet_id, OperationKind.UNSUBSCRIBE)

    def on_message(self, message: MqttMessage) -> None:
        self._connection._dispatch(message)

    def on_connection_lost(self, cause: Optional[BaseException]) -> None:
        # Losses are routed to the state machine by the transport binding
        pass


class MqttConnection(MqttConnectionBase):
    """
    Reconnecting, thread-safe MQTT connection.

    Args:
        config: Connection settings
        transport_factory: Creates the Transport for each connect attempt
            (paho-mqtt by default)
        stats_log_frequency: Log each counter every time it reaches a multiple
            of this value; 0 disables
        logger: Custom logger adapter
    """

    def __init__(
        self,
        config: MqttConnectionConfig,
        transport_factory: TransportFactory | None = None,
        stats_log_frequency: int = 0,
        logger: logging.LoggerAdapter | None = None,
    ):
        super().__init__(config, logger=logger)
        self._pending = PendingOperationTable(self.uid)
        self._registry = SubscriptionRegistry()
        # Serializes registry changes with the SUBSCRIBE/UNSUBSCRIBE decision for a filter
        self._subscribe_lock = threading.Lock()
        self._subscribing: dict[str, PendingOperation] = {}
        self._message_handler: MessageHandler | None = None
        self._stats = MqttStats(self.uid, stats_log_frequency)
        self._machine = ConnectionStateMachine(
            owner=self,
            config=self._config,
            transport_factory=transport_factory or _default_transport_factory,
            listener=_ConnectionListener(self),
            pending=self._pending,
            registry=self._registry,
            stats=self._stats,
            log=self.logger,
        )

    @property
    def config(self) -> MqttConnectionConfig:
        return self._machine.config

    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def stats(self) -> MqttStats:
        return self._stats

    @property
    def subscriptions(self) -> list[SubscriptionEntry]:
        return self._registry.entries()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # Lifecycle

    def open(self) -> Future:
        return self._machine.open()

    def close(self) -> Future:
        return self._machine.close()

    def reconfigure(self, config: MqttConnectionConfig) -> Future:
        """
        Close the current session and open a new one with ``config``.

        Operations still outstanding fail with ConnectionClosedError. The
        returned handle is that of the fresh ``open()``.
        """
        config = self._complete_config(config)
        self._config = config
        if isinstance(self.logger, logging.LoggerAdapter):
            self.logger.extra = {**(self.logger.extra or {}), "client_id": config.client_id, "uid": config.uid}
        return self._machine.reconfigure(config)

    def set_connection_observer(self, observer: ConnectionObserverProtocol | None) -> None:
        if observer is not None and not isinstance(observer, ConnectionObserverProtocol):
            raise ValueError("Observer must implement ConnectionObserverProtocol")
        self._machine.set_observer(observer)

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        """Set the handler for messages no per-topic handler claims."""
        self._message_handler = handler

    # Messaging

    def _not_connected(self, action: str) -> Future:
        future = Future()
        future.set_exception(NotConnectedError(
            f"Cannot {action}: connection is {self.state.value}",
            server_uri=self.config.server_uri,
            client_id=self.config.client_id,
        ))
        return future

    def _send_failed(self, op: PendingOperation, action: str, exc: Exception):
        error = MqttConnectionException(
            f"Error sending {action}: {exc}",
            server_uri=self.config.server_uri,
            client_id=self.config.client_id,
        )
        error.__cause__ = exc
        self._pending.fail(op.packet_id, error)

    def _check_still_current(self, transport: Transport, op: PendingOperation):
        # The session may have ended while the frame was handed over
        if not self._machine.is_current(transport):
            self._pending.fail(op.packet_id, ConnectionLostError(
                f"Connection lost while sending {op.kind.value} ({op.description})",
                server_uri=self.config.server_uri,
                client_id=self.config.client_id,
            ))

    def publish(self, message: MqttMessage) -> Future:
        """
        Publish ``message``.

        QoS 0 handles resolve once the transport accepted the frame; QoS 1
        and 2 handles resolve on PUBACK / PUBCOMP.

        Raises:
            InvalidTopicError: If the topic is not a valid topic name
            MessageTooLargeError: If the payload exceeds ``maximum_message_size``
        """
        validate_topic_name(message.topic)
        limit = self.config.maximum_message_size
        if limit is not None and len(message.payload) > limit:
            raise MessageTooLargeError(
                f"Payload of {len(message.payload)} bytes for {message.topic} exceeds the {limit} byte limit",
                server_uri=self.config.server_uri,
                client_id=self.config.client_id,
            )
        transport = self._machine.current_transport()
        if transport is None:
            self._stats.increment(BasicCount.MESSAGES_DELIVERED_FAIL)
            return self._not_connected(f"publish to {message.topic}")

        if message.qos is MqttQos.AT_MOST_ONCE:
            future = Future()
            self._track_delivery(future, message)
            try:
                transport.publish(message, None)
            except Exception as e:
                self.logger.error(f"Error publishing to {message.topic}: {e}", extra={"topic": message.topic})
                error = MqttConnectionException(
                    f"Error sending publish: {e}",
                    server_uri=self.config.server_uri,
                    client_id=self.config.client_id,
                )
                error.__cause__ = e
                future.set_exception(error)
                return future
            if self._machine.is_current(transport):
                future.set_result(None)
            else:
                future.set_exception(ConnectionLostError(
                    f"Connection lost while publishing to {message.topic}",
                    server_uri=self.config.server_uri,
                    client_id=self.config.client_id,
                ))
            return future

        op = self._pending.register(
            OperationKind.PUBLISH,
            message.topic,
            timeout=self.config.operation_timeout_seconds,
        )
        self._track_delivery(op.future, message)
        try:
            transport.publish(message, op.packet_id)
        except Exception as e:
            self.logger.error(
                f"Error publishing to {message.topic}: {e}",
                extra={"topic": message.topic, "packet_id": op.packet_id},
            )
            self._send_failed(op, "publish", e)
            return op.future
        self.logger.debug(
            f"Published {message}",
            extra={"topic": message.topic, "packet_id": op.packet_id},
        )
        self._check_still_current(transport, op)
        return op.future

    def _track_delivery(self, future: Future, message: MqttMessage):
        def done(f: Future):
            if f.exception() is None:
                self._stats.increment(BasicCount.MESSAGES_DELIVERED)
                self._stats.add(BasicCount.PAYLOAD_BYTES_DELIVERED, len(message.payload))
            else:
                self._stats.increment(BasicCount.MESSAGES_DELIVERED_FAIL)
        future.add_done_callback(done)

    def subscribe(
        self,
        topic_filter: str,
        qos: MqttQos = MqttQos.AT_LEAST_ONCE,
        handler: MessageHandler | None = None,
    ) -> Future:
        """
        Subscribe to ``topic_filter``, optionally routing its messages to ``handler``.

        Several handlers may share a filter; subscribing the same handler to
        a filter again replaces its entry. SUBSCRIBE goes to the broker only
        for a filter with no local entries yet, or when ``qos`` is higher than
        any QoS already requested for it. A handler joining a filter whose
        SUBSCRIBE is still in flight shares that request's outcome. The local
        entry is registered before SUBSCRIBE is sent, so messages arriving
        right after the SUBACK are never missed.

        Raises:
            InvalidTopicError: If the filter is not valid MQTT
        """
        validate_topic_filter(topic_filter)
        qos = MqttQos(qos)
        transport = self._machine.current_transport()
        if transport is None:
            return self._not_connected(f"subscribe to {topic_filter}")

        with self._subscribe_lock:
            requested = self._registry.filter_qos(topic_filter)
            entry = self._registry.add(topic_filter, qos, handler)
            in_flight = self._subscribing.get(topic_filter)
            if in_flight is not None and qos.value <= in_flight.context.qos.value:
                in_flight.context.entries.append(entry)
                self.logger.debug(f"Joining pending subscription to {topic_filter}", extra={"topic": topic_filter})
                return self._follow(in_flight.future)
            if requested is not None and qos.value <= requested.value and in_flight is None:
                self.logger.debug(f"Already subscribed to {topic_filter} at {requested.name}", extra={"topic": topic_filter})
                return _completed_future()

            request = _SubscribeRequest(topic_filter, qos, [entry])
            op = self._pending.register(
                OperationKind.SUBSCRIBE,
                topic_filter,
                timeout=self.config.operation_timeout_seconds,
                context=request,
            )
            self._subscribing[topic_filter] = op
        op.future.add_done_callback(lambda f: self._subscribe_settled(op))

        try:
            transport.subscribe(topic_filter, qos, op.packet_id)
        except Exception as e:
            self.logger.error(
                f"Error subscribing to {topic_filter}: {e}",
                extra={"topic": topic_filter, "packet_id": op.packet_id},
            )
            self._drop_request(request)
            self._send_failed(op, "subscribe", e)
            return op.future
        self.logger.debug(
            f"Subscribing to {topic_filter} at {qos.name}",
            extra={"topic": topic_filter, "packet_id": op.packet_id},
        )
        self._check_still_current(transport, op)
        return op.future

    @staticmethod
    def _follow(source: Future) -> Future:
        """A separate handle that settles the way ``source`` does."""
        future = Future()

        def relay(f: Future):
            error = f.exception()
            if error is None:
                future.set_result(None)
            else:
                future.set_exception(error)

        source.add_done_callback(relay)
        return future

    def _subscribe_settled(self, op: PendingOperation):
        with self._subscribe_lock:
            if self._subscribing.get(op.context.topic_filter) is op:
                del self._subscribing[op.context.topic_filter]

    def _drop_request(self, request: _SubscribeRequest):
        with self._subscribe_lock:
            for entry in request.entries:
                self._registry.remove_entry(entry)

    def _subscribe_complete(self, packet_id: int, granted: list[Optional[MqttQos]]):
        op = self._pending.get(packet_id)
        if op is None or op.kind is not OperationKind.SUBSCRIBE:
            self._pending.complete(packet_id, OperationKind.SUBSCRIBE)
            return
        if granted and all(qos is not None for qos in granted):
            self.logger.info(f"Subscribed to {op.description} at {granted[0].name}", extra={"topic": op.description})
            self._pending.complete(packet_id, OperationKind.SUBSCRIBE)
            return
        request: _SubscribeRequest | None = op.context
        if request is not None:
            self._drop_request(request)
        self.logger.warning(f"Subscription to {op.description} rejected by broker", extra={"topic": op.description})
        self._pending.fail(
            packet_id,
            SubscriptionRejectedError(
                f"Subscription to {op.description} rejected",
                server_uri=self.config.server_uri,
                client_id=self.config.client_id,
            ),
            OperationKind.SUBSCRIBE,
        )

    def unsubscribe(self, topic_filter: str, handler: MessageHandler | None = None) -> Future:
        """
        Remove the subscription to ``topic_filter`` registered with ``handler``.

        Other handlers on the same filter keep receiving messages, and
        UNSUBSCRIBE is sent only once the last of them is gone. If the filter
        is registered only with other handlers nothing is sent and the handle
        resolves immediately. If there is no local entry at all UNSUBSCRIBE is
        still sent, to clear state the broker kept from a persistent session.

        Raises:
            InvalidTopicError: If the filter is not valid MQTT
        """
        validate_topic_filter(topic_filter)
        transport = self._machine.current_transport()
        if transport is None:
            return self._not_connected(f"unsubscribe from {topic_filter}")

        with self._subscribe_lock:
            entries = self._registry.entries_for(topic_filter)
            removed = next((entry for entry in entries if entry.handles(handler)), None)
            if entries and removed is None:
                self.logger.info(
                    f"Not unsubscribing from {topic_filter}: registered with a different handler",
                    extra={"topic": topic_filter},
                )
                return _completed_future()
            if removed is not None:
                self._registry.remove_entry(removed)
                if self._registry.has_filter(topic_filter):
                    self.logger.debug(
                        f"Removed a handler from {topic_filter}; other handlers remain subscribed",
                        extra={"topic": topic_filter},
                    )
                    return _completed_future()

            op = self._pending.register(
                OperationKind.UNSUBSCRIBE,
                topic_filter,
                timeout=self.config.operation_timeout_seconds,
            )
        try:
            transport.unsubscribe(topic_filter, op.packet_id)
        except Exception as e:
            self.logger.error(
                f"Error unsubscribing from {topic_filter}: {e}",
                extra={"topic": topic_filter, "packet_id": op.packet_id},
            )
            if removed is not None:
                with self._subscribe_lock:
                    self._registry.restore(removed)
            self._send_failed(op, "unsubscribe", e)
            return op.future
        self.logger.debug(
            f"Unsubscribing from {topic_filter}",
            extra={"topic": topic_filter, "packet_id": op.packet_id},
        )
        self._check_still_current(transport, op)
        return op.future

    def _dispatch(self, message: MqttMessage):
        """
        Deliver an inbound message.

        Runs on the transport's I/O thread; handlers see messages in arrival order.
        """
        self._stats.increment(BasicCount.MESSAGES_RECEIVED)
        self._stats.add(BasicCount.PAYLOAD_BYTES_RECEIVED, len(message.payload))

        handlers = [entry.handler for entry in self._registry.match(message.topic)]
        if not handlers and self._message_handler is not None:
            handlers = [self._message_handler]
        if not handlers:
            self.logger.debug(f"No handler for message on {message.topic}; dropping", extra={"topic": message.topic})
            return
        for handler in handlers:
            try:
                handler(message)
            except Exception as e:
                self.logger.error(f"Message handler error on {message.topic}: {e}", exc_info=True, extra={"topic": message.topic})

    # Diagnostics

    def ping_test(self) -> PingTestResult:
        """Report whether the connection is currently established."""
        healthy = self.is_established
        server_uri = self.config.server_uri
        return PingTestResult(
            success=healthy,
            message=f"Connected to {server_uri}" if healthy else "Not connected",
            properties={"server_uri": server_uri, "state": self.state.value},
        )

    def __enter__(self):
        """Open and wait for the connection to be established."""
        try:
            self.open().result(timeout=max(DEFAULT_OPEN_TIMEOUT, self.config.connect_timeout_seconds))
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Close the connection, logging (not raising) close errors."""
        try:
            self.close().result(timeout=self.config.connect_timeout_seconds + DEFAULT_OPEN_TIMEOUT)
        except MqttConnectionException as e:
            self.logger.warning(f"Error closing connection: {e}")

    def __repr__(self):
        return (
            f"MqttConnection(uid={self.uid!r}, server_uri={self.config.server_uri!r}, "
            f"state={self.state.name})"
        )
