"""
Transport over paho-mqtt's threaded client.

One ``PahoTransport`` wraps one ``paho.mqtt.client.Client`` for a single
session. paho's automatic reconnect is disabled: when the session ends the
transport reports the loss and is discarded, and the state machine decides
whether and when to connect again with a fresh transport.

paho numbers outgoing packets itself (its "mid"), so the transport maps each
mid to the packet identifier the connection registered. An acknowledgment can
arrive on paho's network thread before ``publish()``/``subscribe()`` has
returned the mid; such acknowledgments are parked until the mapping is
recorded. No lock of this module is held while calling into paho.
"""
import logging
import threading
import time
from typing import Any, Optional

import paho.mqtt.client as mqtt

from ..core.exceptions import ConnectError, ConnectionLostError, MqttConnectionException
from ..core.models import ConnectReturnCode, MqttConnectionConfig, MqttMessage, MqttQos, MqttVersion
from ..core.pending import OperationKind
from ..core.transport import TransportListener

logger = logging.getLogger(__name__)

# paho reports MQTT 3.x CONNACK codes as MQTT 5 style reason codes
CONNACK_REASON_CODES = {
    0: ConnectReturnCode.ACCEPTED,
    132: ConnectReturnCode.UNACCEPTABLE_PROTOCOL_VERSION,
    133: ConnectReturnCode.CLIENT_ID_REJECTED,
    134: ConnectReturnCode.BAD_CREDENTIALS,
    135: ConnectReturnCode.NOT_AUTHORIZED,
    136: ConnectReturnCode.SERVER_UNAVAILABLE,
}

PROTOCOLS = {
    MqttVersion.MQTT_3_1: mqtt.MQTTv31,
    MqttVersion.MQTT_3_1_1: mqtt.MQTTv311,
    MqttVersion.MQTT_5: mqtt.MQTTv5,
}


def to_return_code(reason_code: Any) -> ConnectReturnCode:
    """Translate a paho CONNACK reason code (or raw 3.x code) to ConnectReturnCode."""
    value = getattr(reason_code, "value", reason_code)
    if value in CONNACK_REASON_CODES:
        return CONNACK_REASON_CODES[value]
    try:
        return ConnectReturnCode(value)
    except ValueError:
        return ConnectReturnCode.SERVER_UNAVAILABLE


def to_granted_qos(reason_code: Any) -> Optional[MqttQos]:
    """Translate one SUBACK entry; None marks a rejected filter."""
    if getattr(reason_code, "is_failure", False):
        return None
    value = getattr(reason_code, "value", reason_code)
    try:
        return MqttQos(value)
    except ValueError:
        return None


class PahoTransport:
    """
    Transport implementation backed by ``paho.mqtt.client.Client``.

    Callbacks run in paho's network thread (``loop_start``); keep listeners fast.
    """

    def __init__(self, config: MqttConnectionConfig):
        self._config = config
        self._client: mqtt.Client | None = None
        self._listener: TransportListener | None = None
        self._lock = threading.Lock()
        self._connack = threading.Event()
        self._return_code: ConnectReturnCode | None = None
        self._connected = False
        self._closing = False
        self._inflight: dict[int, tuple[OperationKind, int | None]] = {}
        self._early_acks: dict[int, tuple[OperationKind, Any]] = {}

    def _create_client(self, config: MqttConnectionConfig) -> mqtt.Client:
        options = {}
        if config.version is not MqttVersion.MQTT_5:
            # MQTT 5 carries the flag as clean_start on connect() instead
            options["clean_session"] = config.clean_session
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id or "",
            protocol=PROTOCOLS[config.version],
            reconnect_on_failure=False,
            **options,
        )
        if config.wire_logging:
            # paho reports packet traffic at DEBUG
            client.enable_logger(logging.getLogger(f"{__name__}.wire"))

        if config.username:
            client.username_pw_set(config.username, config.password_value())
        if config.use_ssl:
            client.tls_set()
        if config.last_will is not None:
            will = config.last_will
            client.will_set(will.topic, will.payload, qos=will.qos.value, retain=will.retained)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_publish = self._on_publish
        client.on_subscribe = self._on_subscribe
        client.on_unsubscribe = self._on_unsubscribe
        return client

    def connect(
        self,
        config: MqttConnectionConfig,
        listener: TransportListener,
        timeout: float,
    ) -> ConnectReturnCode:
        """
        Connect (blocking) and wait for the CONNACK.

        Raises:
            ConnectError: If the socket cannot be opened, no CONNACK arrives in
                time, or the broker refuses the connection
        """
        self._config = config
        self._listener = listener

        def connect_error(detail: str, return_code: ConnectReturnCode | None = None) -> ConnectError:
            return ConnectError(
                detail,
                return_code=return_code,
                server_uri=config.server_uri,
                client_id=config.client_id,
            )

        with self._lock:
            if self._closing:
                raise connect_error("Transport disconnected before connecting")
            client = self._client = self._create_client(config)

        logger.debug(f"Connecting to broker {config.host}:{config.port} (ssl={config.use_ssl})")
        deadline = time.monotonic() + timeout
        client.connect_timeout = timeout
        connect_options = {}
        if config.version is MqttVersion.MQTT_5:
            connect_options["clean_start"] = config.clean_session
        try:
            client.connect(config.host, config.port, keepalive=config.keep_alive_seconds, **connect_options)
        except Exception as e:
            raise connect_error(f"Error connecting to {config.host}:{config.port}: {e}") from e

        client.loop_start()

        # The socket connect and the CONNACK share one budget
        if not self._connack.wait(timeout=max(0.0, deadline - time.monotonic())):
            self._shutdown(client)
            raise connect_error(f"No CONNACK within {timeout}s")

        return_code = self._return_code
        if self._closing:
            raise connect_error("Transport disconnected while connecting")
        if return_code is None:
            self._shutdown(client)
            raise connect_error("Connection closed before CONNACK")
        if return_code is not ConnectReturnCode.ACCEPTED:
            self._shutdown(client)
            raise connect_error("Connection refused", return_code)
        return return_code

    def disconnect(self, timeout: float) -> None:
        with self._lock:
            self._closing = True
            client = self._client
        self._connack.set()
        if client is not None:
            self._shutdown(client)

    def _shutdown(self, client: mqtt.Client):
        self._closing = True
        self._connected = False
        try:
            client.disconnect()
        finally:
            # loop_stop() does not join when called from paho's own thread
            client.loop_stop()
            with self._lock:
                self._inflight.clear()
                self._early_acks.clear()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _require_client(self) -> mqtt.Client:
        client = self._client
        if client is None or not self._connected:
            raise MqttConnectionException(
                "Transport is not connected",
                server_uri=self._config.server_uri,
                client_id=self._config.client_id,
            )
        return client

    def _check(self, rc: int, action: str):
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise MqttConnectionException(
                f"{action} failed: {mqtt.error_string(rc)}",
                server_uri=self._config.server_uri,
                client_id=self._config.client_id,
            )

    def publish(self, message: MqttMessage, packet_id: Optional[int]) -> None:
        info = self._require_client().publish(
            message.topic,
            message.payload,
            qos=message.qos.value,
            retain=message.retained,
        )
        self._check(info.rc, f"Publish to {message.topic}")
        self._bind(info.mid, OperationKind.PUBLISH, packet_id)

    def subscribe(self, topic_filter: str, qos: MqttQos, packet_id: int) -> None:
        rc, mid = self._require_client().subscribe(topic_filter, qos=qos.value)
        self._check(rc, f"Subscribe to {topic_filter}")
        self._bind(mid, OperationKind.SUBSCRIBE, packet_id)

    def unsubscribe(self, topic_filter: str, packet_id: int) -> None:
        rc, mid = self._require_client().unsubscribe(topic_filter)
        self._check(rc, f"Unsubscribe from {topic_filter}")
        self._bind(mid, OperationKind.UNSUBSCRIBE, packet_id)

    # mid <-> packet identifier correlation

    def _bind(self, mid: int, kind: OperationKind, packet_id: Optional[int]):
        with self._lock:
            early = self._early_acks.pop(mid, None)
            if early is None:
                self._inflight[mid] = (kind, packet_id)
                return
        ack_kind, detail = early
        if ack_kind is not kind:
            logger.warning(f"Acknowledgment for mid {mid} was a {ack_kind.value}, expected {kind.value}")
            return
        self._deliver(kind, packet_id, detail)

    def _ack(self, mid: int, kind: OperationKind, detail: Any = None):
        with self._lock:
            binding = self._inflight.pop(mid, None)
            if binding is None:
                self._early_acks[mid] = (kind, detail)
                return
        bound_kind, packet_id = binding
        if bound_kind is not kind:
            logger.warning(f"Acknowledgment for mid {mid} was a {kind.value}, expected {bound_kind.value}")
            return
        self._deliver(kind, packet_id, detail)

    def _deliver(self, kind: OperationKind, packet_id: Optional[int], detail: Any):
        listener = self._listener
        if packet_id is None or listener is None:
            return
        if kind is OperationKind.PUBLISH:
            listener.on_publish_complete(packet_id)
        elif kind is OperationKind.SUBSCRIBE:
            listener.on_subscribe_complete(packet_id, detail)
        else:
            listener.on_unsubscribe_complete(packet_id)

    # paho callbacks (network thread)

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        return_code = to_return_code(reason_code)
        self._return_code = return_code
        if return_code is ConnectReturnCode.ACCEPTED:
            self._connected = True
            logger.info(f"Connected to broker {self._config.host}:{self._config.port}")
        else:
            logger.error(f"Connection to {self._config.host}:{self._config.port} refused: {reason_code}")
        self._connack.set()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        was_connected = self._connected
        self._connected = False
        self._connack.set()
        if self._closing:
            logger.info(f"Disconnected from broker {self._config.host}:{self._config.port}")
            return
        logger.warning(f"Unexpected disconnection from {self._config.host}:{self._config.port} ({reason_code})")
        with self._lock:
            self._inflight.clear()
            self._early_acks.clear()
        if not was_connected:
            return
        listener = self._listener
        if listener is not None:
            try:
                listener.on_connection_lost(ConnectionLostError(
                    f"Disconnected: {reason_code}",
                    server_uri=self._config.server_uri,
                    client_id=self._config.client_id,
                ))
            except Exception as e:
                logger.error(f"Error in connection lost callback: {e}", exc_info=True)

    def _on_message(self, client, userdata, msg):
        listener = self._listener
        if listener is None:
            return
        try:
            message = MqttMessage(
                topic=msg.topic,
                payload=bytes(msg.payload),
                qos=msg.qos,
                retained=bool(msg.retain),
            )
            listener.on_message(message)
        except Exception as e:
            logger.error(f"Error in message callback: {e}", exc_info=True)

    def _on_publish(self, client, userdata, mid, reason_code, properties):
        try:
            self._ack(mid, OperationKind.PUBLISH)
        except Exception as e:
            logger.error(f"Error in publish callback: {e}", exc_info=True)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        try:
            self._ack(mid, OperationKind.SUBSCRIBE, [to_granted_qos(rc) for rc in reason_code_list])
        except Exception as e:
            logger.error(f"Error in subscribe callback: {e}", exc_info=True)

    def _on_unsubscribe(self, client, userdata, mid, reason_code_list, properties):
        try:
            self._ack(mid, OperationKind.UNSUBSCRIBE)
        except Exception as e:
            logger.error(f"Error in unsubscribe callback: {e}", exc_info=True)

    def __repr__(self):
        return f"PahoTransport(server_uri={self._config.server_uri!r}, connected={self._connected})"
