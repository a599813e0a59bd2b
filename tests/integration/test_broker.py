"""
Round trip against a live broker through the paho transport.

Set MQTT_BROKER_HOSTNAME (and optionally MQTT_BROKER_PORT, MQTT_BROKER_SCHEME,
MQTT_BROKER_USERNAME, MQTT_BROKER_PASSWORD) in the environment or a .env file.
"""
import threading

import pytest

from mqtt_connection import ConnectionState, MqttConnection, MqttMessage, MqttQos
from tests.conftest import BROKER_CONFIG, BROKER_HOSTNAME, generate_uuid

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not BROKER_HOSTNAME, reason="MQTT_BROKER_HOSTNAME not set"),
]


@pytest.fixture
def live_connection():
    config = BROKER_CONFIG.with_changes(client_id=f"mqtt-connection-test-{generate_uuid()}")
    connection = MqttConnection(config)
    connection.open().result(timeout=15)
    yield connection
    connection.close().result(timeout=15)


def test_publish_subscribe_round_trip(live_connection):
    topic = f"test/mqtt_connection/{generate_uuid()}"
    received = []
    arrived = threading.Event()

    def on_message(message):
        received.append(message)
        arrived.set()

    live_connection.subscribe(topic, MqttQos.AT_LEAST_ONCE, on_message).result(timeout=10)
    live_connection.publish(MqttMessage(topic=topic, payload=b"hello", qos=MqttQos.AT_LEAST_ONCE)).result(timeout=10)

    assert arrived.wait(10)
    assert received[0].payload == b"hello"
    assert received[0].topic == topic

    live_connection.unsubscribe(topic, on_message).result(timeout=10)
    assert live_connection.subscriptions == []


def test_ping(live_connection):
    result = live_connection.ping_test()
    assert result.success
    assert result.properties["state"] == ConnectionState.OPEN.value


def test_close_then_reopen(live_connection):
    live_connection.close().result(timeout=15)
    assert live_connection.state is ConnectionState.CLOSED

    live_connection.open().result(timeout=15)
    assert live_connection.state is ConnectionState.OPEN
