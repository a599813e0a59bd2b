# Core components
from .core import (
    MqttConnectionBase,
    MessageLogger,
    ClientFormatter,
    generate_unique_id,
    MqttQos,
    ConnectionState,
    MqttVersion,
    ConnectReturnCode,
    MqttMessage,
    MqttConnectionConfig,
    PingTestResult,
    MqttConnectionException,
    ConnectError,
    ConnectionLostError,
    ConnectionClosedError,
    NotConnectedError,
    OperationTimeoutError,
    SubscriptionRejectedError,
    InvalidTopicError,
    MessageTooLargeError,
    IllegalStateTransition,
    MessageHandler,
    ConnectionObserverProtocol,
    ConnectionObserverBase,
    LoggingConnectionObserver,
    BasicCount,
    MqttStats,
    Transport,
    TransportListener,
    TransportFactory,
)

# Connection
from .connection import MqttConnection

# Default transport
from .paho_client import PahoTransport

__version__ = "0.1.0"

__all__ = [
    # Connection
    "MqttConnection",
    "MqttConnectionBase",
    "PahoTransport",
    # Configuration and messages
    "MqttConnectionConfig",
    "MqttMessage",
    "MqttQos",
    "MqttVersion",
    "ConnectionState",
    "ConnectReturnCode",
    "PingTestResult",
    # Handlers and observers
    "MessageHandler",
    "ConnectionObserverProtocol",
    "ConnectionObserverBase",
    "LoggingConnectionObserver",
    # Exceptions
    "MqttConnectionException",
    "ConnectError",
    "ConnectionLostError",
    "ConnectionClosedError",
    "NotConnectedError",
    "OperationTimeoutError",
    "SubscriptionRejectedError",
    "InvalidTopicError",
    "MessageTooLargeError",
    "IllegalStateTransition",
    # Statistics
    "BasicCount",
    "MqttStats",
    # Logging
    "MessageLogger",
    "ClientFormatter",
    "generate_unique_id",
    # Transport
    "Transport",
    "TransportListener",
    "TransportFactory",
]
