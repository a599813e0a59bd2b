"""
Tests for the connection lifecycle state machine, driven through the in-memory broker.
"""
import threading
from unittest.mock import Mock

import pytest

from mqtt_connection import (
    BasicCount,
    ConnectError,
    ConnectionClosedError,
    ConnectionLostError,
    ConnectionObserverBase,
    ConnectionState,
    ConnectReturnCode,
    IllegalStateTransition,
    MqttConnectionConfig,
    MqttConnectionException,
)
from mqtt_connection.core import (
    ConnectionStateMachine,
    OperationKind,
    PendingOperationTable,
    SubscriptionRegistry,
    MqttQos,
)
from tests.conftest import wait_for


@pytest.fixture
def machine_factory(broker, config):
    machines = []

    def factory(observer=None, **changes) -> ConnectionStateMachine:
        machine = ConnectionStateMachine(
            owner=Mock(name="connection"),
            config=config.with_changes(**changes),
            transport_factory=broker.transport_factory,
            listener=Mock(name="listener"),
            pending=PendingOperationTable(),
            registry=SubscriptionRegistry(),
        )
        if observer is not None:
            machine.set_observer(observer)
        machines.append(machine)
        return machine

    yield factory
    for machine in machines:
        machine.close()


class TestTransitions:

    def test_starts_closed(self, machine_factory):
        assert machine_factory().state is ConnectionState.CLOSED

    def test_illegal_transition_raises(self, machine_factory):
        machine = machine_factory()
        with pytest.raises(IllegalStateTransition):
            machine._transition(ConnectionState.OPEN)
        assert machine.state is ConnectionState.CLOSED

    def test_open_reaches_open(self, machine_factory, broker):
        machine = machine_factory()
        machine.open().result(timeout=5)

        assert machine.state is ConnectionState.OPEN
        assert machine.current_transport() is broker.connected_transports[0]

    def test_open_when_open_returns_completed_future(self, machine_factory, broker):
        machine = machine_factory()
        machine.open().result(timeout=5)

        future = machine.open()
        assert future.done() and future.exception() is None
        assert len(broker.connects) == 1

    def test_close_when_closed_is_noop(self, machine_factory):
        future = machine_factory().close()
        assert future.done() and future.exception() is None


class TestConnectFailures:

    def test_no_reconnect_fails_open(self, machine_factory, broker):
        broker.reachable = False
        machine = machine_factory(reconnect=False)

        with pytest.raises(ConnectError):
            machine.open().result(timeout=5)
        assert machine.state is ConnectionState.CLOSED
        assert machine.stats.get(BasicCount.CONNECTION_FAIL) == 1

    def test_refusal_carries_return_code(self, machine_factory, broker):
        broker.refuse_with = ConnectReturnCode.NOT_AUTHORIZED
        machine = machine_factory(reconnect=False)

        error = machine.open().exception(timeout=5)
        assert isinstance(error, ConnectError)
        assert error.return_code is ConnectReturnCode.NOT_AUTHORIZED

    def test_factory_error_counts_as_failed_attempt(self, machine_factory, broker):
        machine = machine_factory(reconnect=False)
        machine._transport_factory = Mock(side_effect=RuntimeError("bad tls setup"))

        error = machine.open().exception(timeout=5)
        assert isinstance(error, ConnectError)
        assert isinstance(error.__cause__, RuntimeError)
        assert machine.state is ConnectionState.CLOSED

    def test_retry_until_reachable(self, machine_factory, broker):
        broker.reachable = False
        machine = machine_factory()

        first = machine.open()
        assert wait_for(lambda: broker.connect_attempts >= 2)
        assert machine.open() is first
        assert not first.done()

        broker.reachable = True
        first.result(timeout=5)
        assert machine.state is ConnectionState.OPEN
        assert machine.stats.get(BasicCount.CONNECTION_SUCCESS) == 1

    def test_close_cancels_retry_worker(self, machine_factory, broker):
        broker.reachable = False
        machine = machine_factory(reconnect_delay_seconds=0.2)
        future = machine.open()
        assert wait_for(lambda: broker.connect_attempts >= 1)

        machine.close().result(timeout=5)
        attempts = broker.connect_attempts

        assert isinstance(future.exception(timeout=1), ConnectionClosedError)
        assert machine.state is ConnectionState.CLOSED
        threading.Event().wait(0.4)
        assert broker.connect_attempts == attempts


class TestConnectionLoss:

    def test_loss_without_reconnect_closes(self, machine_factory, broker):
        observer = Mock()
        machine = machine_factory(observer=observer, reconnect=False)
        machine.open().result(timeout=5)
        op = machine._pending.register(OperationKind.PUBLISH, "a")

        broker.drop_connections()

        assert machine.state is ConnectionState.CLOSED
        assert isinstance(op.future.exception(timeout=1), ConnectionLostError)
        observer.on_connection_lost.assert_called_once()
        _, will_reconnect, _ = observer.on_connection_lost.call_args.args
        assert will_reconnect is False

    def test_loss_with_reconnect_reconnects(self, machine_factory, broker):
        established = []
        observer = ConnectionObserverBase(on_established=lambda conn, reconnected: established.append(reconnected))
        machine = machine_factory(observer=observer)
        machine.open().result(timeout=5)

        broker.drop_connections()

        assert wait_for(lambda: machine.state is ConnectionState.OPEN and len(established) == 2)
        assert established == [False, True]
        assert machine.stats.get(BasicCount.CONNECTION_LOST) == 1

    def test_clean_session_loss_clears_registry(self, machine_factory, broker):
        machine = machine_factory(reconnect=False)
        machine.open().result(timeout=5)
        machine._registry.add("a/#", MqttQos.AT_LEAST_ONCE)

        broker.drop_connections()
        assert len(machine._registry) == 0

    def test_persistent_session_loss_keeps_registry(self, machine_factory, broker):
        machine = machine_factory(reconnect=False, clean_session=False)
        machine.open().result(timeout=5)
        machine._registry.add("a/#", MqttQos.AT_LEAST_ONCE)

        broker.drop_connections()
        assert "a/#" in machine._registry

    def test_stale_transport_loss_is_ignored(self, machine_factory, broker):
        machine = machine_factory()
        machine.open().result(timeout=5)
        stale = Mock()

        machine.connection_lost(stale, ConnectionLostError("old"))
        assert machine.state is ConnectionState.OPEN


class TestClose:

    def test_close_fails_pending_and_clears_registry(self, machine_factory):
        machine = machine_factory()
        machine.open().result(timeout=5)
        op = machine._pending.register(OperationKind.SUBSCRIBE, "a/#")
        machine._registry.add("a/#", MqttQos.AT_LEAST_ONCE)

        machine.close().result(timeout=5)

        assert isinstance(op.future.exception(timeout=1), ConnectionClosedError)
        assert len(machine._registry) == 0
        assert machine.state is ConnectionState.CLOSED

    def test_close_error_still_closes(self, machine_factory, broker):
        machine = machine_factory()
        machine.open().result(timeout=5)
        broker.fail_disconnect = True

        error = machine.close().exception(timeout=5)

        assert isinstance(error, MqttConnectionException)
        assert isinstance(error.__cause__, OSError)
        assert machine.state is ConnectionState.CLOSED

    def test_close_from_observer_on_worker_thread(self, machine_factory, broker):
        closed = threading.Event()

        def close_on_connect(connection, reconnected):
            machine.close()
            closed.set()

        machine = machine_factory(observer=ConnectionObserverBase(on_established=close_on_connect))
        machine.open().result(timeout=5)

        assert closed.wait(5)
        assert machine.state is ConnectionState.CLOSED

    def test_observer_errors_do_not_stop_reconnect(self, machine_factory, broker):
        observer = Mock()
        observer.on_connection_lost.side_effect = RuntimeError("observer bug")
        observer.on_connection_established.side_effect = RuntimeError("observer bug")
        machine = machine_factory(observer=observer)
        machine.open().result(timeout=5)

        broker.drop_connections()

        assert wait_for(lambda: observer.on_connection_established.call_count == 2)
        assert machine.state is ConnectionState.OPEN


class TestReconfigure:

    def test_reconfigure_swaps_config_and_reconnects(self, machine_factory, broker, config):
        machine = machine_factory()
        machine.open().result(timeout=5)

        new_config = config.with_changes(client_id="second")
        machine.reconfigure(new_config).result(timeout=5)

        assert machine.config is new_config
        assert [c.client_id for c in broker.connects] == [config.client_id, "second"]
        assert len(broker.connected_transports) == 1
