"""
Data models shared by the connection, the state machine and the transports.

All value types are immutable pydantic models so a snapshot handed to a
transport or a handler can never change underneath it.
"""
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

import orjson
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


DEFAULT_PORT = 1883
DEFAULT_PORT_SSL = 8883
DEFAULT_OPERATION_TIMEOUT = 10
MAX_MESSAGE_SIZE_LIMIT = 256_000_000

SSL_SCHEMES = {"mqtts", "ssl"}
SUPPORTED_SCHEMES = {"mqtt", "tcp"} | SSL_SCHEMES


class MqttQos(Enum):
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


class ConnectionState(Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECT_WAITING = "reconnect_waiting"
    CLOSING = "closing"


class MqttVersion(Enum):
    MQTT_3_1 = 3
    MQTT_3_1_1 = 4
    MQTT_5 = 5


class ConnectReturnCode(Enum):
    ACCEPTED = 0
    UNACCEPTABLE_PROTOCOL_VERSION = 1
    CLIENT_ID_REJECTED = 2
    SERVER_UNAVAILABLE = 3
    BAD_CREDENTIALS = 4
    NOT_AUTHORIZED = 5


class MqttMessage(BaseModel):
    """
    An MQTT application message.

    Example:
        >>> msg = MqttMessage(topic="sensors/temp", payload=b"21.5", qos=MqttQos.AT_LEAST_ONCE)
        >>> MqttMessage.from_json("sensors/temp", {"value": 21.5}).json()
        {'value': 21.5}
    """
    model_config = ConfigDict(frozen=True)

    topic: str
    payload: bytes = b""
    qos: MqttQos = MqttQos.AT_MOST_ONCE
    retained: bool = False

    @field_validator("topic")
    def validate_topic(cls, v):
        if not v:
            raise ValueError("topic must not be empty")
        return v

    @field_validator("qos", mode="before")
    def validate_qos(cls, v):
        # Accept the raw wire value (0, 1, 2) as well as the enum
        if isinstance(v, int) and not isinstance(v, bool):
            return MqttQos(v)
        return v

    @classmethod
    def from_json(
        cls,
        topic: str,
        obj: Any,
        qos: MqttQos = MqttQos.AT_MOST_ONCE,
        retained: bool = False,
    ) -> "MqttMessage":
        """Build a message whose payload is ``obj`` encoded as JSON."""
        return cls(topic=topic, payload=orjson.dumps(obj), qos=qos, retained=retained)

    def json(self) -> Any:
        """Decode the payload as JSON."""
        return orjson.loads(self.payload)

    def __str__(self) -> str:
        return f"MqttMessage(topic={self.topic!r}, qos={self.qos.name}, retained={self.retained}, {len(self.payload)} bytes)"


class MqttConnectionConfig(BaseModel):
    """
    Immutable connection settings.

    A connection holds exactly one snapshot at a time; use ``with_changes()``
    to derive a new snapshot and hand it to ``MqttConnection.reconfigure()``.

    Attributes:
        server_uri: Broker URI, e.g. ``mqtt://localhost:1883`` or ``mqtts://broker:8883``
        client_id: MQTT client identifier (generated per connection when None)
        username: Optional username
        password: Optional password, kept as a SecretStr
        clean_session: Ask the broker to discard prior session state
        connect_timeout_seconds: Bound for a single connect attempt
        reconnect: Keep retrying failed connects and reconnect after a loss
        reconnect_delay_seconds: Delay between connect attempts
        keep_alive_seconds: MQTT keep-alive interval
        version: Protocol version
        last_will: Optional will message
        operation_timeout_seconds: Fail publish/subscribe/unsubscribe handles
            whose acknowledgment does not arrive in time (None waits forever)
        maximum_message_size: Largest payload, in bytes, that publish accepts
            (None for no limit)
        wire_logging: Log the MQTT client's packet traffic at DEBUG
        uid: Display name used in logs and statistics
    """
    model_config = ConfigDict(frozen=True)

    server_uri: str
    client_id: str | None = None
    username: str | None = None
    password: SecretStr | None = None
    clean_session: bool = True
    connect_timeout_seconds: float = Field(default=10, gt=0)
    reconnect: bool = True
    reconnect_delay_seconds: float = Field(default=10, ge=0)
    keep_alive_seconds: int = Field(default=60, ge=0)
    version: MqttVersion = MqttVersion.MQTT_3_1_1
    last_will: MqttMessage | None = None
    operation_timeout_seconds: float | None = Field(default=DEFAULT_OPERATION_TIMEOUT, gt=0)
    maximum_message_size: int | None = Field(default=None, gt=0, le=MAX_MESSAGE_SIZE_LIMIT)
    wire_logging: bool = False
    uid: str | None = None

    @field_validator("server_uri")
    def validate_server_uri(cls, v):
        parts = urlsplit(v)
        if parts.scheme.lower() not in SUPPORTED_SCHEMES:
            raise ValueError(
                f"server_uri scheme must be one of {sorted(SUPPORTED_SCHEMES)}, got {parts.scheme!r}"
            )
        if not parts.hostname:
            raise ValueError(f"server_uri has no host: {v!r}")
        # Accessing .port validates the port range
        parts.port
        return v

    @field_validator("password", mode="before")
    def validate_password(cls, v):
        if v == "":
            return None
        return v

    @property
    def host(self) -> str:
        return urlsplit(self.server_uri).hostname

    @property
    def use_ssl(self) -> bool:
        parts = urlsplit(self.server_uri)
        return parts.scheme.lower() in SSL_SCHEMES or parts.port == DEFAULT_PORT_SSL

    @property
    def port(self) -> int:
        port = urlsplit(self.server_uri).port
        if port is not None:
            return port
        return DEFAULT_PORT_SSL if self.use_ssl else DEFAULT_PORT

    @property
    def display_name(self) -> str:
        return self.uid or self.client_id or self.server_uri

    def password_value(self) -> str | None:
        return self.password.get_secret_value() if self.password is not None else None

    def with_changes(self, **changes: Any) -> "MqttConnectionConfig":
        """Return a new, validated snapshot with ``changes`` applied."""
        return type(self).model_validate({**self.model_dump(), **changes})


class PingTestResult(BaseModel):
    success: bool
    message: str
    properties: dict[str, Any] = {}
