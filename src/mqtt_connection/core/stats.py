"""
Connection statistics.

Counters are updated from application threads, the transport's I/O thread and
the reconnect worker, so every update goes through a single lock.
"""
import logging
import threading
from enum import Enum

logger = logging.getLogger(__name__)


class BasicCount(Enum):
    CONNECTION_ATTEMPTS = "connection attempts"
    CONNECTION_SUCCESS = "connections made"
    CONNECTION_FAIL = "connections failed"
    CONNECTION_LOST = "connections lost"
    MESSAGES_RECEIVED = "messages received"
    MESSAGES_DELIVERED = "messages delivered"
    MESSAGES_DELIVERED_FAIL = "failed message deliveries"
    PAYLOAD_BYTES_RECEIVED = "payload bytes received"
    PAYLOAD_BYTES_DELIVERED = "payload bytes sent"

    @property
    def description(self) -> str:
        return self.value


class MqttStats:
    """
    Thread-safe counters for a single connection.

    Args:
        uid: Name used when logging counts
        log_frequency: Log a count at INFO every time it reaches a multiple of
            this value; 0 disables logging
    """

    def __init__(self, uid: str = "", log_frequency: int = 0):
        self.uid = uid
        self.log_frequency = log_frequency
        self._counts: dict[BasicCount, int] = {stat: 0 for stat in BasicCount}
        self._lock = threading.Lock()

    def get(self, stat: BasicCount) -> int:
        with self._lock:
            return self._counts[stat]

    def increment(self, stat: BasicCount) -> int:
        return self.add(stat, 1)

    def add(self, stat: BasicCount, count: int) -> int:
        with self._lock:
            previous = self._counts[stat]
            value = previous + count
            self._counts[stat] = value
        if self.log_frequency > 0 and value // self.log_frequency > previous // self.log_frequency:
            logger.info(f"MQTT {self.uid} {stat.description}: {value}")
        return value

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {stat.name.lower(): count for stat, count in self._counts.items()}

    def __str__(self) -> str:
        with self._lock:
            lines = [f"{stat.description:>30}: {count}" for stat, count in self._counts.items()]
        return "MqttStats{\n" + "\n".join(lines) + "\n}"
