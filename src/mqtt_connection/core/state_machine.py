"""
Connection lifecycle and reconnect scheduling.

    CLOSED --open--> CONNECTING --success--> OPEN
    CONNECTING --failure, reconnect--> RECONNECT_WAITING --delay--> CONNECTING
    OPEN --loss, reconnect--> RECONNECT_WAITING
    OPEN/CONNECTING --loss or failure, no reconnect--> CLOSED
    any --close--> CLOSING --> CLOSED

Each connect cycle (the first open, or the reconnects after a loss) runs on
its own worker thread and owns a cancel event that ``close()`` sets. Only the
machine mutates the state, always under its lock; observers, transports and
futures are called after the lock is released.
"""
import logging
import threading
from concurrent.futures import Future
from typing import Any, Optional

from .exceptions import (
    ConnectError,
    ConnectionClosedError,
    ConnectionLostError,
    IllegalStateTransition,
    MqttConnectionException,
)
from .message_handler import ConnectionObserverProtocol
from .models import ConnectionState, ConnectReturnCode, MqttConnectionConfig, MqttMessage, MqttQos
from .pending import PendingOperationTable
from .stats import BasicCount, MqttStats
from .subscriptions import SubscriptionRegistry
from .transport import Transport, TransportFactory, TransportListener

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.CLOSED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({
        ConnectionState.OPEN,
        ConnectionState.RECONNECT_WAITING,
        ConnectionState.CLOSED,
        ConnectionState.CLOSING,
    }),
    ConnectionState.OPEN: frozenset({
        ConnectionState.RECONNECT_WAITING,
        ConnectionState.CLOSED,
        ConnectionState.CLOSING,
    }),
    ConnectionState.RECONNECT_WAITING: frozenset({
        ConnectionState.CONNECTING,
        ConnectionState.CLOSING,
    }),
    ConnectionState.CLOSING: frozenset({ConnectionState.CLOSED}),
}

# Extra time allowed for a worker to notice cancellation after a close
JOIN_GRACE_SECONDS = 1.0


def _completed_future() -> Future:
    future = Future()
    future.set_result(None)
    return future


class _ConnectCycle:
    """Worker thread plus cancel event for one run of connect attempts."""

    def __init__(self, reconnected: bool, delay_first: bool):
        self.reconnected = reconnected
        self.delay_first = delay_first
        self.cancelled = threading.Event()
        self.thread: threading.Thread | None = None

    def cancel(self):
        self.cancelled.set()

    def join(self, timeout: float) -> bool:
        thread = self.thread
        if thread is None or thread is threading.current_thread() or not thread.is_alive():
            return True
        thread.join(timeout)
        return not thread.is_alive()


class _TransportBinding:
    """Listener handed to one transport; drops events once that transport is stale."""

    def __init__(self, machine: "ConnectionStateMachine", transport: Transport, listener: TransportListener):
        self._machine = machine
        self._transport = transport
        self._listener = listener

    def _current(self) -> bool:
        return self._machine.is_current(self._transport)

    def on_publish_complete(self, packet_id: int) -> None:
        if self._current():
            self._listener.on_publish_complete(packet_id)

    def on_subscribe_complete(self, packet_id: int, granted: list[Optional[MqttQos]]) -> None:
        if self._current():
            self._listener.on_subscribe_complete(packet_id, granted)

    def on_unsubscribe_complete(self, packet_id: int) -> None:
        if self._current():
            self._listener.on_unsubscribe_complete(packet_id)

    def on_message(self, message: MqttMessage) -> None:
        if self._current():
            self._listener.on_message(message)
        else:
            logger.debug(f"Dropping message on {message.topic!r} from a stale transport")

    def on_connection_lost(self, cause: Optional[BaseException]) -> None:
        self._machine.connection_lost(self._transport, cause)


class ConnectionStateMachine:
    """
    Drives one connection through its lifecycle states.

    Args:
        owner: Object passed to observer callbacks (the MqttConnection)
        config: Initial configuration snapshot
        transport_factory: Creates a fresh Transport for every connect attempt
        listener: Receives acknowledgments and messages from the current transport
        pending: Outstanding operations, failed on loss and close
        registry: Local subscriptions, cleared on close (and on loss with a clean session)
        stats: Connection counters
        log: Logger or adapter to report through
    """

    def __init__(
        self,
        owner: Any,
        config: MqttConnectionConfig,
        transport_factory: TransportFactory,
        listener: TransportListener,
        pending: PendingOperationTable,
        registry: SubscriptionRegistry,
        stats: MqttStats | None = None,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self._owner = owner
        self._config = config
        self._transport_factory = transport_factory
        self._listener = listener
        self._pending = pending
        self._registry = registry
        self.stats = stats or MqttStats(config.display_name)
        self.logger = log or logger

        self._lock = threading.RLock()
        self._state = ConnectionState.CLOSED
        self._transport: Transport | None = None
        self._cycle: _ConnectCycle | None = None
        self._open_future: Future | None = None
        self._close_future: Future | None = None
        self._attempt_lost: BaseException | None = None
        self._observer: ConnectionObserverProtocol | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def config(self) -> MqttConnectionConfig:
        return self._config

    @property
    def observer(self) -> ConnectionObserverProtocol | None:
        return self._observer

    def set_observer(self, observer: ConnectionObserverProtocol | None):
        self._observer = observer

    def is_current(self, transport: Transport) -> bool:
        return transport is not None and self._transport is transport

    def current_transport(self) -> Transport | None:
        """The transport to send on, or None unless the connection is open."""
        with self._lock:
            if self._state is not ConnectionState.OPEN:
                return None
            return self._transport

    def _transition(self, new_state: ConnectionState):
        # Caller holds self._lock
        old_state = self._state
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise IllegalStateTransition(
                f"Illegal state transition {old_state.name} -> {new_state.name}",
                server_uri=self._config.server_uri,
                client_id=self._config.client_id,
            )
        self._state = new_state
        self.logger.debug(f"MQTT connection {self._config.display_name} state {old_state.name} -> {new_state.name}")

    def _start_cycle(self, reconnected: bool, delay_first: bool) -> _ConnectCycle:
        # Caller holds self._lock; the thread is started by the caller after releasing it
        cycle = _ConnectCycle(reconnected, delay_first)
        cycle.thread = threading.Thread(
            target=self._run_cycle,
            args=(cycle,),
            name=f"mqtt-connect-{self._config.display_name}",
            daemon=True,
        )
        self._cycle = cycle
        return cycle

    def open(self) -> Future:
        """
        Start connecting unless already open or connecting.

        Returns:
            A handle resolved on the next successful connect. While a connect
            cycle is running every call returns the same handle.
        """
        with self._lock:
            if self._state is ConnectionState.OPEN:
                return _completed_future()
            if self._state is ConnectionState.CLOSING:
                future = Future()
                future.set_exception(IllegalStateTransition(
                    "Cannot open while the connection is closing",
                    server_uri=self._config.server_uri,
                    client_id=self._config.client_id,
                ))
                return future
            if self._open_future is None:
                self._open_future = Future()
            future = self._open_future
            if self._cycle is not None:
                return future
            self._transition(ConnectionState.CONNECTING)
            cycle = self._start_cycle(reconnected=False, delay_first=False)
        self.logger.info(f"Opening MQTT connection to {self._config.server_uri}")
        cycle.thread.start()
        return future

    def _run_cycle(self, cycle: _ConnectCycle):
        delay_first = cycle.delay_first
        while not cycle.cancelled.is_set():
            if delay_first:
                if cycle.cancelled.wait(self._config.reconnect_delay_seconds):
                    return
            delay_first = True
            if self._attempt(cycle):
                return

    def _attempt(self, cycle: _ConnectCycle) -> bool:
        """Run one connect attempt; True when the cycle is finished."""
        with self._lock:
            if cycle is not self._cycle or cycle.cancelled.is_set():
                return True
            config = self._config
            if self._state is not ConnectionState.CONNECTING:
                self._transition(ConnectionState.CONNECTING)
            self._attempt_lost = None
            error: BaseException | None = None
            try:
                transport = self._transport_factory(config)
            except Exception as e:
                transport = None
                error = ConnectError(
                    f"Error creating transport: {e}",
                    server_uri=config.server_uri,
                    client_id=config.client_id,
                )
                error.__cause__ = e
            self._transport = transport

        self.stats.increment(BasicCount.CONNECTION_ATTEMPTS)
        if transport is not None:
            self.logger.info(f"Connecting to MQTT server {config.server_uri} as {config.client_id}")
            try:
                return_code = transport.connect(
                    config,
                    _TransportBinding(self, transport, self._listener),
                    config.connect_timeout_seconds,
                )
                if return_code is not ConnectReturnCode.ACCEPTED:
                    raise ConnectError(
                        return_code=return_code,
                        server_uri=config.server_uri,
                        client_id=config.client_id,
                    )
            except ConnectError as e:
                error = e
            except Exception as e:
                error = ConnectError(
                    f"Error connecting: {e}",
                    server_uri=config.server_uri,
                    client_id=config.client_id,
                )
                error.__cause__ = e

        open_future = None
        stale = False
        with self._lock:
            if cycle is not self._cycle:
                stale = True
            elif error is None and self._attempt_lost is None:
                self._transition(ConnectionState.OPEN)
                self._cycle = None
                open_future, self._open_future = self._open_future, None
            else:
                if error is None:
                    error = ConnectError(
                        f"Connection lost while connecting: {self._attempt_lost}",
                        server_uri=config.server_uri,
                        client_id=config.client_id,
                    )
                self._transport = None
                if config.reconnect:
                    self._transition(ConnectionState.RECONNECT_WAITING)
                else:
                    self._transition(ConnectionState.CLOSED)
                    self._cycle = None
                    open_future, self._open_future = self._open_future, None

        if stale:
            # Closed while connecting; close() already took care of this transport
            self.logger.debug(f"Abandoning connect attempt to {config.server_uri}: connection closed")
            if transport is not None and error is None:
                self._quiet_disconnect(transport, config)
            return True

        if error is None:
            self.stats.increment(BasicCount.CONNECTION_SUCCESS)
            self.logger.info(f"Connected to MQTT server {config.server_uri}")
            if open_future is not None:
                open_future.set_result(None)
            self._notify_established(cycle.reconnected)
            return True

        self.stats.increment(BasicCount.CONNECTION_FAIL)
        if transport is not None:
            self._quiet_disconnect(transport, config)
        if config.reconnect:
            self.logger.warning(
                f"Error connecting to MQTT server {config.server_uri} ({error}); "
                f"will retry in {config.reconnect_delay_seconds}s"
            )
            return False

        self.logger.error(f"Error connecting to MQTT server {config.server_uri}: {error}")
        if open_future is not None:
            open_future.set_exception(error)
        return True

    def _quiet_disconnect(self, transport: Transport, config: MqttConnectionConfig):
        try:
            transport.disconnect(config.connect_timeout_seconds)
        except Exception as e:
            self.logger.debug(f"Ignoring error disconnecting abandoned transport: {e}")

    def connection_lost(self, transport: Transport, cause: Optional[BaseException] = None):
        """
        Handle a transport reporting that its session ended unexpectedly.

        Reports from transports that are no longer current are ignored.
        """
        cycle = None
        with self._lock:
            if not self.is_current(transport):
                self.logger.debug(f"Ignoring connection loss from a stale transport: {cause}")
                return
            if self._state is ConnectionState.CONNECTING:
                self._attempt_lost = cause or ConnectionLostError("Connection lost")
                return
            if self._state is not ConnectionState.OPEN:
                return
            config = self._config
            self._transport = None
            will_reconnect = config.reconnect
            if will_reconnect:
                self._transition(ConnectionState.RECONNECT_WAITING)
                cycle = self._start_cycle(reconnected=True, delay_first=True)
            else:
                self._transition(ConnectionState.CLOSED)

        self.stats.increment(BasicCount.CONNECTION_LOST)
        self.logger.warning(
            f"Connection to MQTT server {config.server_uri} lost: {cause or 'unknown cause'}"
            + (f"; reconnecting in {config.reconnect_delay_seconds}s" if will_reconnect else "")
        )

        def lost_error(op):
            error = ConnectionLostError(
                f"Connection lost before {op.kind.value} {op.packet_id} ({op.description}) was acknowledged",
                server_uri=config.server_uri,
                client_id=config.client_id,
            )
            error.__cause__ = cause
            return error

        self._pending.fail_all(lost_error)
        if config.clean_session:
            cleared = self._registry.clear()
            if cleared:
                self.logger.debug(f"Cleared {cleared} subscription(s) with the clean session")

        self._notify_lost(will_reconnect, cause)
        if cycle is not None:
            cycle.thread.start()

    def close(self) -> Future:
        """
        Stop reconnecting, disconnect and fail everything outstanding.

        Returns:
            A handle resolved once the connection is CLOSED; it fails with
            MqttConnectionException if the transport errored while
            disconnecting (the connection still ends up CLOSED).
        """
        with self._lock:
            if self._state is ConnectionState.CLOSED:
                self._registry.clear()
                return _completed_future()
            if self._state is ConnectionState.CLOSING:
                return self._close_future
            self._transition(ConnectionState.CLOSING)
            future = self._close_future = Future()
            config = self._config
            cycle, self._cycle = self._cycle, None
            transport, self._transport = self._transport, None
            open_future, self._open_future = self._open_future, None

        self.logger.info(f"Closing MQTT connection to {config.server_uri}")
        if cycle is not None:
            cycle.cancel()

        close_error: BaseException | None = None
        if transport is not None:
            try:
                transport.disconnect(config.connect_timeout_seconds)
            except Exception as e:
                self.logger.warning(f"Error closing MQTT connection to {config.server_uri}: {e}")
                close_error = e

        if cycle is not None and not cycle.join(config.connect_timeout_seconds + JOIN_GRACE_SECONDS):
            self.logger.warning(f"Connect worker for {config.server_uri} did not stop within the close timeout")

        def closed_error(op):
            return ConnectionClosedError(
                f"Connection closed before {op.kind.value} {op.packet_id} ({op.description}) was acknowledged",
                server_uri=config.server_uri,
                client_id=config.client_id,
            )

        self._pending.fail_all(closed_error)
        self._registry.clear()

        with self._lock:
            self._transition(ConnectionState.CLOSED)
            self._close_future = None

        if open_future is not None:
            open_future.set_exception(ConnectionClosedError(
                "Connection closed before it was established",
                server_uri=config.server_uri,
                client_id=config.client_id,
            ))

        if close_error is not None:
            error = MqttConnectionException(
                f"Error closing connection: {close_error}",
                server_uri=config.server_uri,
                client_id=config.client_id,
            )
            error.__cause__ = close_error
            future.set_exception(error)
        else:
            self.logger.info(f"Closed MQTT connection to {config.server_uri}")
            future.set_result(None)
        return future

    def reconfigure(self, config: MqttConnectionConfig) -> Future:
        """
        Replace the configuration, then close and open again.

        Returns:
            The handle of the fresh ``open()``
        """
        with self._lock:
            previous, self._config = self._config, config
        self.logger.info(f"Reconfiguring MQTT connection {previous.server_uri} -> {config.server_uri}")
        close_future = self.close()
        if close_future.done() and close_future.exception() is not None:
            self.logger.warning(f"Ignoring error closing connection during reconfigure: {close_future.exception()}")
        return self.open()

    def _notify_lost(self, will_reconnect: bool, cause: Optional[BaseException]):
        observer = self._observer
        if observer is None:
            return
        try:
            observer.on_connection_lost(self._owner, will_reconnect, cause)
        except Exception as e:
            self.logger.error(f"Connection observer error handling connection loss: {e}", exc_info=True)

    def _notify_established(self, reconnected: bool):
        observer = self._observer
        if observer is None:
            return
        try:
            observer.on_connection_established(self._owner, reconnected)
        except Exception as e:
            self.logger.error(f"Connection observer error handling connection established: {e}", exc_info=True)
