"""
Core building blocks of a managed MQTT connection, independent of any wire client.
"""
from .base import (
    MqttConnectionBase,
    MessageLogger,
    ClientFormatter,
    generate_unique_id,
)
from .models import (
    MqttQos,
    ConnectionState,
    MqttVersion,
    ConnectReturnCode,
    MqttMessage,
    MqttConnectionConfig,
    PingTestResult,
    DEFAULT_PORT,
    DEFAULT_PORT_SSL,
)
from .exceptions import (
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
)
from .message_handler import (
    MessageHandler,
    ConnectionObserverProtocol,
    ConnectionObserverBase,
    LoggingConnectionObserver,
)
from .pending import OperationKind, PendingOperation, PendingOperationTable
from .subscriptions import SubscriptionEntry, SubscriptionRegistry
from .state_machine import ConnectionStateMachine
from .stats import BasicCount, MqttStats
from .topic_filter import (
    validate_topic_filter,
    validate_topic_name,
    topic_matches,
    filter_specificity,
)
from .transport import Transport, TransportListener, TransportFactory

__all__ = [
    # Base
    "MqttConnectionBase",
    "MessageLogger",
    "ClientFormatter",
    "generate_unique_id",
    # Models
    "MqttQos",
    "ConnectionState",
    "MqttVersion",
    "ConnectReturnCode",
    "MqttMessage",
    "MqttConnectionConfig",
    "PingTestResult",
    "DEFAULT_PORT",
    "DEFAULT_PORT_SSL",
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
    # Handlers and observers
    "MessageHandler",
    "ConnectionObserverProtocol",
    "ConnectionObserverBase",
    "LoggingConnectionObserver",
    # Connection internals
    "OperationKind",
    "PendingOperation",
    "PendingOperationTable",
    "SubscriptionEntry",
    "SubscriptionRegistry",
    "ConnectionStateMachine",
    "BasicCount",
    "MqttStats",
    # Topics
    "validate_topic_filter",
    "validate_topic_name",
    "topic_matches",
    "filter_specificity",
    # Transport
    "Transport",
    "TransportListener",
    "TransportFactory",
]
