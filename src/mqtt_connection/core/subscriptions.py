"""
Topic filter to handler registry consulted on every inbound message.
"""
import itertools
import logging
import threading
from dataclasses import dataclass, field

from .message_handler import MessageHandler
from .models import MqttQos
from .topic_filter import filter_specificity, topic_matches, validate_topic_filter

logger = logging.getLogger(__name__)

_sequence = itertools.count()


@dataclass(frozen=True, eq=False)
class SubscriptionEntry:
    """
    One local subscription: a topic filter paired with an optional handler.

    Entries compare by identity: two subscriptions to the same filter with the
    same handler are still distinct registrations.
    """
    topic_filter: str
    qos: MqttQos
    handler: MessageHandler | None = None
    order: int = field(default_factory=lambda: next(_sequence))

    def handles(self, handler: MessageHandler | None) -> bool:
        if self.handler is None or handler is None:
            return self.handler is handler
        # Bound methods are re-created on attribute access but compare equal
        return self.handler is handler or self.handler == handler


class SubscriptionRegistry:
    """
    Thread-safe multimap of topic filters to per-topic handlers.

    A filter holds one entry per handler; subscribing the same handler to a
    filter again replaces that entry (keeping its place in registration
    order). When an inbound topic matches several filters, the most specific
    filter carrying a handler claims the message (see ``filter_specificity``),
    ties going to the filter registered first, and every handler on that
    filter receives it.

    Example:
        >>> registry = SubscriptionRegistry()
        >>> entry = registry.add("sensors/+/temp", MqttQos.AT_LEAST_ONCE, print)
        >>> [e.handler for e in registry.match("sensors/kitchen/temp")] == [print]
        True
    """

    def __init__(self):
        self._entries: dict[str, list[SubscriptionEntry]] = {}
        self._lock = threading.Lock()

    def add(
        self,
        topic_filter: str,
        qos: MqttQos,
        handler: MessageHandler | None = None,
    ) -> SubscriptionEntry:
        """
        Register ``handler`` for ``topic_filter``, replacing its previous entry there.

        Raises:
            InvalidTopicError: If the filter is not valid MQTT
        """
        validate_topic_filter(topic_filter)
        with self._lock:
            entries = self._entries.setdefault(topic_filter, [])
            for i, previous in enumerate(entries):
                if previous.handles(handler):
                    entry = SubscriptionEntry(topic_filter, qos, handler, order=previous.order)
                    entries[i] = entry
                    break
            else:
                previous = None
                entry = SubscriptionEntry(topic_filter, qos, handler)
                entries.append(entry)
        if previous is not None:
            logger.debug(f"Replaced subscription entry for {topic_filter!r}")
        return entry

    def remove(self, topic_filter: str, handler: MessageHandler | None = None) -> bool:
        """
        Remove the entry for ``topic_filter`` registered with ``handler``.

        ``None`` only matches an entry registered without a handler.

        Returns:
            True if an entry was removed
        """
        with self._lock:
            entries = self._entries.get(topic_filter, [])
            for entry in entries:
                if entry.handles(handler):
                    self._discard(entry)
                    return True
            return False

    def remove_entry(self, entry: SubscriptionEntry) -> bool:
        """Remove ``entry`` if it is still registered."""
        with self._lock:
            return self._discard(entry)

    def _discard(self, entry: SubscriptionEntry) -> bool:
        # Caller holds self._lock
        entries = self._entries.get(entry.topic_filter)
        if not entries or not any(e is entry for e in entries):
            return False
        entries[:] = [e for e in entries if e is not entry]
        if not entries:
            del self._entries[entry.topic_filter]
        return True

    def restore(self, entry: SubscriptionEntry) -> bool:
        """Put a removed ``entry`` back unless its handler was registered again meanwhile."""
        with self._lock:
            entries = self._entries.setdefault(entry.topic_filter, [])
            if any(e.handles(entry.handler) for e in entries):
                return False
            entries.append(entry)
            entries.sort(key=lambda e: e.order)
            return True

    def match(self, topic: str) -> list[SubscriptionEntry]:
        """
        Find the entries whose handlers should receive a message on ``topic``.

        Entries without a handler never claim a message; such messages fall
        through to the connection-wide handler (an empty list is returned).
        """
        with self._lock:
            candidates = []
            for topic_filter, entries in self._entries.items():
                handled = [e for e in entries if e.handler is not None]
                if handled and topic_matches(topic, topic_filter):
                    candidates.append(handled)
        if not candidates:
            return []
        best = max(
            candidates,
            key=lambda handled: (filter_specificity(handled[0].topic_filter), -min(e.order for e in handled)),
        )
        return sorted(best, key=lambda entry: entry.order)

    def entries_for(self, topic_filter: str) -> list[SubscriptionEntry]:
        with self._lock:
            return list(self._entries.get(topic_filter, []))

    def filter_qos(self, topic_filter: str) -> MqttQos | None:
        """Highest QoS any entry requested for ``topic_filter``, or None if it has no entries."""
        with self._lock:
            entries = self._entries.get(topic_filter)
            if not entries:
                return None
            return MqttQos(max(e.qos.value for e in entries))

    def has_filter(self, topic_filter: str) -> bool:
        with self._lock:
            return topic_filter in self._entries

    def entries(self) -> list[SubscriptionEntry]:
        with self._lock:
            return sorted(
                (e for entries in self._entries.values() for e in entries),
                key=lambda entry: entry.order,
            )

    def clear(self) -> int:
        with self._lock:
            count = sum(len(entries) for entries in self._entries.values())
            self._entries.clear()
        return count

    def __contains__(self, topic_filter: str) -> bool:
        return self.has_filter(topic_filter)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._entries.values())
