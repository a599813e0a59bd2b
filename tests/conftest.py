import logging
import os
import time
import uuid

import pytest
from dotenv import load_dotenv
from pydantic_core import ValidationError

from mqtt_connection import MqttConnection, MqttConnectionConfig
from tests.mock_broker import MockBroker

# === Load Environment and Configure Logging ===
load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(levelname)-8s %(message)s")


# === Utility ===
def generate_uuid() -> str:
    return str(uuid.uuid4())


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it returns truthy or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


# === MQTT Broker Config (live broker, integration tests only) ===
BROKER_HOSTNAME = os.getenv("MQTT_BROKER_HOSTNAME")

try:
    BROKER_CONFIG = MqttConnectionConfig(
        server_uri=f"{os.getenv('MQTT_BROKER_SCHEME', 'mqtt')}://"
                   f"{BROKER_HOSTNAME or 'localhost'}:{int(os.getenv('MQTT_BROKER_PORT', 1883))}",
        username=os.getenv("MQTT_BROKER_USERNAME") or None,
        password=os.getenv("MQTT_BROKER_PASSWORD") or None,
        connect_timeout_seconds=10,
        reconnect=False,
        operation_timeout_seconds=10,
    )
except ValidationError as e:
    logging.error(f"Invalid MQTT Broker configuration: {e.json()}")
    raise


# === In-memory broker fixtures ===
@pytest.fixture
def broker() -> MockBroker:
    return MockBroker()


@pytest.fixture
def config() -> MqttConnectionConfig:
    return MqttConnectionConfig(
        server_uri="mqtt://broker.test:1883",
        client_id=f"test-{generate_uuid()}",
        connect_timeout_seconds=1,
        reconnect_delay_seconds=0.05,
    )


@pytest.fixture
def make_connection(broker):
    """Factory for connections wired to the in-memory broker; all are closed on teardown."""
    connections = []

    def factory(config: MqttConnectionConfig, **kwargs) -> MqttConnection:
        connection = MqttConnection(config, transport_factory=broker.transport_factory, **kwargs)
        connections.append(connection)
        return connection

    yield factory
    for connection in connections:
        connection.close()


@pytest.fixture
def connection(make_connection, config) -> MqttConnection:
    return make_connection(config)


@pytest.fixture
def open_connection(connection) -> MqttConnection:
    connection.open().result(timeout=5)
    return connection
