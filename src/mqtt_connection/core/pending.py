"""
Correlation of outstanding publish/subscribe/unsubscribe requests.

Every QoS>0 publish, subscribe and unsubscribe is registered here under a
packet identifier before its frame is handed to the transport. The matching
acknowledgment (PUBACK/PUBCOMP, SUBACK, UNSUBACK) later resolves the entry.
A connection loss, a close, or an operation timeout may race with that
acknowledgment, so each PendingOperation resolves at most once.

Key Components:
    - OperationKind: which request an entry belongs to
    - PendingOperation: one outstanding request and its completion handle
    - PendingOperationTable: packet identifier allocation and lookup

Futures are always resolved *after* the table lock is released, so
done-callbacks are free to call back into the connection.
"""
import logging
import threading
from concurrent.futures import Future
from enum import Enum
from typing import Any, Callable

from .exceptions import MqttConnectionException, OperationTimeoutError

logger = logging.getLogger(__name__)

MAX_PACKET_ID = 65535


class OperationKind(Enum):
    PUBLISH = "publish"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


class PendingOperation:
    """
    One outstanding request awaiting its acknowledgment.

    Attributes:
        packet_id: MQTT packet identifier the acknowledgment will carry
        kind: The request type
        description: Free text for logs (usually the topic)
        context: Caller data needed when the acknowledgment arrives
        future: Completion handle returned to the caller
    """

    def __init__(self, packet_id: int, kind: OperationKind, description: str = "", context: Any = None):
        self.packet_id = packet_id
        self.kind = kind
        self.description = description
        self.context = context
        self.future: Future = Future()
        self._resolved = False
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    @property
    def resolved(self) -> bool:
        return self._resolved

    def _claim(self) -> bool:
        # The flag only ever goes False -> True
        with self._lock:
            if self._resolved:
                return False
            self._resolved = True
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        return True

    def resolve(self) -> bool:
        """Complete the handle successfully; False if already resolved."""
        if not self._claim():
            return False
        self.future.set_result(None)
        return True

    def fail(self, exc: BaseException) -> bool:
        """Complete the handle with ``exc``; False if already resolved."""
        if not self._claim():
            return False
        self.future.set_exception(exc)
        return True

    def __repr__(self):
        return (
            f"PendingOperation(packet_id={self.packet_id}, kind={self.kind.name}, "
            f"description={self.description!r}, resolved={self._resolved})"
        )


class PendingOperationTable:
    """
    Thread-safe packet identifier allocation and acknowledgment correlation.

    Identifiers are handed out sequentially in ``1..65535``, wrapping around and
    skipping identifiers that are still outstanding.

    Example:
        >>> table = PendingOperationTable()
        >>> op = table.register(OperationKind.PUBLISH, "sensors/temp")
        >>> table.complete(op.packet_id, OperationKind.PUBLISH)
        True
        >>> op.future.done()
        True
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._operations: dict[int, PendingOperation] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def _allocate_id(self) -> int:
        # Caller holds self._lock
        if len(self._operations) >= MAX_PACKET_ID:
            raise MqttConnectionException(
                f"No packet identifiers available: {len(self._operations)} operations outstanding"
            )
        while True:
            packet_id = self._next_id
            self._next_id = 1 if packet_id >= MAX_PACKET_ID else packet_id + 1
            if packet_id not in self._operations:
                return packet_id

    def register(
        self,
        kind: OperationKind,
        description: str = "",
        timeout: float | None = None,
        context: Any = None,
    ) -> PendingOperation:
        """
        Allocate a packet identifier and register a new pending operation.

        Args:
            kind: Request type the acknowledgment must match
            description: Free text for logs
            timeout: Seconds to wait for the acknowledgment before failing the
                handle with OperationTimeoutError (None waits forever)
            context: Stored on the operation for the acknowledgment handler

        Returns:
            The registered PendingOperation

        Raises:
            MqttConnectionException: If every packet identifier is in use
        """
        with self._lock:
            op = PendingOperation(self._allocate_id(), kind, description, context)
            self._operations[op.packet_id] = op
            if timeout is not None:
                timer = threading.Timer(timeout, self._expire, args=(op, timeout))
                timer.daemon = True
                timer.name = f"mqtt-op-timeout-{op.packet_id}"
                op._timer = timer
                timer.start()
        logger.debug(f"Registered pending {kind.value} {op.packet_id} for {description!r}")
        return op

    def _expire(self, op: PendingOperation, timeout: float):
        with self._lock:
            if self._operations.get(op.packet_id) is op:
                del self._operations[op.packet_id]
        if op.fail(OperationTimeoutError(
            f"No acknowledgment for {op.kind.value} {op.packet_id} ({op.description}) within {timeout}s"
        )):
            logger.warning(
                f"Pending {op.kind.value} {op.packet_id} for {op.description!r} timed out after {timeout}s"
            )

    def _pop(self, packet_id: int, kind: OperationKind | None = None) -> PendingOperation | None:
        with self._lock:
            op = self._operations.get(packet_id)
            if op is None:
                return None
            if kind is not None and op.kind is not kind:
                logger.warning(
                    f"Ignoring {kind.value} acknowledgment for packet {packet_id}: "
                    f"outstanding operation is a {op.kind.value}"
                )
                return None
            del self._operations[packet_id]
            return op

    def complete(self, packet_id: int, kind: OperationKind | None = None) -> bool:
        """
        Resolve the operation registered under ``packet_id``.

        Returns:
            True if an outstanding operation was resolved by this call
        """
        op = self._pop(packet_id, kind)
        if op is None:
            logger.debug(f"No pending operation for acknowledgment of packet {packet_id}")
            return False
        return op.resolve()

    def fail(self, packet_id: int, exc: BaseException, kind: OperationKind | None = None) -> bool:
        """Fail the operation registered under ``packet_id`` with ``exc``."""
        op = self._pop(packet_id, kind)
        if op is None:
            return False
        return op.fail(exc)

    def get(self, packet_id: int) -> PendingOperation | None:
        """Look up an outstanding operation without removing it."""
        with self._lock:
            return self._operations.get(packet_id)

    def discard(self, packet_id: int) -> PendingOperation | None:
        """Forget an operation without resolving it."""
        return self._pop(packet_id)

    def fail_all(self, exc_factory: Callable[[PendingOperation], BaseException]) -> int:
        """
        Fail every outstanding operation.

        Args:
            exc_factory: Builds the exception for each operation

        Returns:
            Number of handles failed by this call
        """
        with self._lock:
            operations = list(self._operations.values())
            self._operations.clear()
        failed = sum(1 for op in operations if op.fail(exc_factory(op)))
        if failed:
            logger.info(f"Failed {failed} pending operation(s) {self.name}".rstrip())
        return failed

    def packet_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._operations)

    def __contains__(self, packet_id: int) -> bool:
        with self._lock:
            return packet_id in self._operations

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)
