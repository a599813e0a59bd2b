import logging
import threading

from mqtt_connection import BasicCount, MqttStats


def test_counts_start_at_zero():
    stats = MqttStats("test")
    assert all(count == 0 for count in stats.snapshot().values())
    assert set(stats.snapshot()) == {stat.name.lower() for stat in BasicCount}


def test_increment_and_add():
    stats = MqttStats()
    stats.increment(BasicCount.MESSAGES_RECEIVED)
    stats.add(BasicCount.PAYLOAD_BYTES_RECEIVED, 128)
    stats.add(BasicCount.PAYLOAD_BYTES_RECEIVED, 2)

    assert stats.get(BasicCount.MESSAGES_RECEIVED) == 1
    assert stats.get(BasicCount.PAYLOAD_BYTES_RECEIVED) == 130


def test_concurrent_increments():
    stats = MqttStats()

    def worker():
        for _ in range(1000):
            stats.increment(BasicCount.MESSAGES_DELIVERED)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert stats.get(BasicCount.MESSAGES_DELIVERED) == 4000


def test_log_frequency(caplog):
    stats = MqttStats("meter", log_frequency=2)
    with caplog.at_level(logging.INFO, logger="mqtt_connection.core.stats"):
        for _ in range(5):
            stats.increment(BasicCount.CONNECTION_ATTEMPTS)

    lines = [r.getMessage() for r in caplog.records if "connection attempts" in r.getMessage()]
    assert lines == ["MQTT meter connection attempts: 2", "MQTT meter connection attempts: 4"]


def test_log_frequency_when_add_crosses_boundary(caplog):
    stats = MqttStats("meter", log_frequency=100)
    with caplog.at_level(logging.INFO, logger="mqtt_connection.core.stats"):
        stats.add(BasicCount.PAYLOAD_BYTES_DELIVERED, 150)
    assert any("payload bytes sent: 150" in r.getMessage() for r in caplog.records)


def test_str_lists_descriptions():
    stats = MqttStats()
    stats.increment(BasicCount.CONNECTION_LOST)
    text = str(stats)
    assert "connections lost: 1" in text
    assert text.startswith("MqttStats{")
