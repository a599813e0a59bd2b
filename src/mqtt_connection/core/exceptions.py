from typing import Optional

from .models import ConnectReturnCode


class MqttConnectionException(Exception):
    """
    Base for all connection-related errors. Carries:
      - detail: human readable description of what went wrong
      - server_uri: the broker the connection was talking to
      - client_id: the MQTT client identifier in use
    """

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        server_uri: Optional[str] = None,
        client_id: Optional[str] = None,
    ):
        self.detail = detail
        self.server_uri = server_uri
        self.client_id = client_id

        parts = []
        if server_uri:
            parts.append(f"server_uri={server_uri!r}")
        if client_id:
            parts.append(f"client_id={client_id!r}")
        message = detail or self.__class__.__name__
        if parts:
            message = f"{message} ({', '.join(parts)})"
        super().__init__(message)

    def __repr__(self):
        return (
            f"{self.__class__.__name__}("
            f"detail={self.detail!r}, "
            f"server_uri={self.server_uri!r}, "
            f"client_id={self.client_id!r}"
            f")"
        )


class ConnectError(MqttConnectionException):
    """A connect attempt failed: refused by the broker, timed out, or unreachable."""

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        return_code: Optional[ConnectReturnCode] = None,
        server_uri: Optional[str] = None,
        client_id: Optional[str] = None,
    ):
        self.return_code = return_code
        if return_code is not None and return_code is not ConnectReturnCode.ACCEPTED:
            detail = f"{detail or 'Connection refused'}: {return_code.name}"
        super().__init__(detail, server_uri=server_uri, client_id=client_id)


class ConnectionLostError(MqttConnectionException):
    """The connection dropped before the operation was acknowledged."""


class ConnectionClosedError(ConnectionLostError):
    """The connection was closed (or reconfigured) before the operation was acknowledged."""


class NotConnectedError(MqttConnectionException):
    """The operation was issued while the connection was not open."""


class OperationTimeoutError(MqttConnectionException, TimeoutError):
    """No acknowledgment arrived within the configured operation timeout."""


class SubscriptionRejectedError(MqttConnectionException):
    """The broker refused a topic filter in its SUBACK."""


class InvalidTopicError(MqttConnectionException, ValueError):
    """A topic name or topic filter is not valid MQTT."""


class MessageTooLargeError(MqttConnectionException, ValueError):
    """A message exceeds the configured maximum message size."""


class IllegalStateTransition(MqttConnectionException, RuntimeError):
    """The state machine was asked to move along an edge it does not have."""


__all__ = [
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
]
