"""
MQTT topic and topic-filter helpers.

Validation and matching delegate to aiomqtt's ``Topic`` / ``Wildcard`` types so
that the rules (``+`` single level, ``#`` trailing multi level, ``$share``
prefixes) are the same ones the rest of the MQTT stack applies.

Example:
    >>> topic_matches("sensors/kitchen/temp", "sensors/+/temp")
    True
    >>> topic_matches("sensors/kitchen/temp", "sensors/#")
    True
    >>> filter_specificity("sensors/kitchen/temp") > filter_specificity("sensors/+/temp")
    True
"""
import logging

from aiomqtt import Topic, Wildcard

from .exceptions import InvalidTopicError

logger = logging.getLogger(__name__)

SINGLE_LEVEL_WILDCARD = "+"
MULTI_LEVEL_WILDCARD = "#"


def validate_topic_filter(topic_filter: str) -> str:
    """
    Validate a subscription topic filter.

    Returns:
        The filter, unchanged

    Raises:
        InvalidTopicError: If the filter is empty, too long, or misuses wildcards
    """
    try:
        Wildcard(topic_filter)
    except (TypeError, ValueError) as e:
        raise InvalidTopicError(f"Invalid topic filter {topic_filter!r}: {e}") from e
    return topic_filter


def validate_topic_name(topic: str) -> str:
    """
    Validate a topic name used for publishing (no wildcards allowed).

    Raises:
        InvalidTopicError: If the topic is empty, too long, or contains wildcards
    """
    try:
        Topic(topic)
    except (TypeError, ValueError) as e:
        raise InvalidTopicError(f"Invalid topic {topic!r}: {e}") from e
    return topic


def is_wildcard(topic_filter: str) -> bool:
    return SINGLE_LEVEL_WILDCARD in topic_filter or MULTI_LEVEL_WILDCARD in topic_filter


def topic_matches(topic: str, topic_filter: str) -> bool:
    """Return True if the publish ``topic`` matches the subscription ``topic_filter``."""
    if topic == topic_filter:
        return True
    try:
        return Topic(topic).matches(topic_filter)
    except ValueError:
        logger.debug(f"Cannot match invalid topic {topic!r} against filter {topic_filter!r}")
        return False


def filter_specificity(topic_filter: str) -> tuple[int, int, int]:
    """
    Rank a topic filter for dispatch precedence; larger sorts first.

    The key is ``(exact, literal_levels, no_multi_level)``: an exact topic beats
    any wildcard filter, then more literal levels win, and ``+`` beats ``#``
    when the literal count ties.
    """
    levels = topic_filter.split("/")
    literal = sum(1 for level in levels if level not in (SINGLE_LEVEL_WILDCARD, MULTI_LEVEL_WILDCARD))
    exact = 0 if is_wildcard(topic_filter) else 1
    no_multi = 0 if levels[-1] == MULTI_LEVEL_WILDCARD else 1
    return exact, literal, no_multi
