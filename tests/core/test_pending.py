"""
Tests for packet identifier allocation and acknowledgment correlation.

Covers:
- Sequential allocation, wrap-around and in-use skipping
- Exactly-once resolution under racing completions
- Kind mismatches
- Operation timeouts
- Bulk failure on loss / close
"""
import threading
import time

import pytest

from mqtt_connection import ConnectionLostError, MqttConnectionException, OperationTimeoutError
from mqtt_connection.core import OperationKind, PendingOperationTable
from mqtt_connection.core.pending import MAX_PACKET_ID


class TestAllocation:

    def test_ids_are_sequential_from_one(self):
        table = PendingOperationTable()
        ids = [table.register(OperationKind.PUBLISH).packet_id for _ in range(3)]
        assert ids == [1, 2, 3]

    def test_ids_wrap_and_skip_in_use(self):
        table = PendingOperationTable()
        first = table.register(OperationKind.PUBLISH)
        assert first.packet_id == 1
        table._next_id = MAX_PACKET_ID

        last = table.register(OperationKind.PUBLISH)
        wrapped = table.register(OperationKind.PUBLISH)

        assert last.packet_id == MAX_PACKET_ID
        # 1 is still outstanding, so the allocator moves on to 2
        assert wrapped.packet_id == 2

    def test_completed_ids_are_reusable(self):
        table = PendingOperationTable()
        op = table.register(OperationKind.SUBSCRIBE)
        table.complete(op.packet_id)
        table._next_id = op.packet_id
        assert table.register(OperationKind.SUBSCRIBE).packet_id == op.packet_id

    def test_exhausted_table_raises(self):
        table = PendingOperationTable()
        table._operations = {i: object() for i in range(1, MAX_PACKET_ID + 1)}
        with pytest.raises(MqttConnectionException):
            table.register(OperationKind.PUBLISH)

    def test_concurrent_registration_yields_distinct_ids(self):
        table = PendingOperationTable()
        ids = []
        lock = threading.Lock()

        def worker():
            for _ in range(200):
                op = table.register(OperationKind.PUBLISH)
                with lock:
                    ids.append(op.packet_id)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(ids) == 1600
        assert len(set(ids)) == 1600
        assert len(table) == 1600


class TestCompletion:

    def test_complete_resolves_future(self):
        table = PendingOperationTable()
        op = table.register(OperationKind.PUBLISH, "a/b")

        assert table.complete(op.packet_id, OperationKind.PUBLISH) is True
        assert op.future.result(timeout=1) is None
        assert op.resolved
        assert op.packet_id not in table

    def test_second_completion_is_ignored(self):
        table = PendingOperationTable()
        op = table.register(OperationKind.PUBLISH)

        assert table.complete(op.packet_id) is True
        assert table.complete(op.packet_id) is False
        assert table.fail(op.packet_id, RuntimeError("late")) is False
        assert op.future.exception() is None

    def test_unknown_packet_id(self):
        table = PendingOperationTable()
        assert table.complete(42) is False

    def test_kind_mismatch_is_ignored(self):
        table = PendingOperationTable()
        op = table.register(OperationKind.SUBSCRIBE)

        assert table.complete(op.packet_id, OperationKind.PUBLISH) is False
        assert not op.future.done()
        assert op.packet_id in table

    def test_fail_sets_exception(self):
        table = PendingOperationTable()
        op = table.register(OperationKind.UNSUBSCRIBE)
        error = ConnectionLostError("gone")

        assert table.fail(op.packet_id, error) is True
        assert op.future.exception() is error

    def test_racing_resolution_happens_once(self):
        op = PendingOperationTable().register(OperationKind.PUBLISH)
        outcomes = []
        barrier = threading.Barrier(10)

        def race(i):
            barrier.wait()
            if i % 2:
                outcomes.append(op.resolve())
            else:
                outcomes.append(op.fail(RuntimeError(str(i))))

        threads = [threading.Thread(target=race, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(True) == 1
        assert op.future.done()

    def test_done_callback_can_reenter_table(self):
        table = PendingOperationTable()
        op = table.register(OperationKind.PUBLISH)
        registered = []
        op.future.add_done_callback(lambda f: registered.append(table.register(OperationKind.PUBLISH)))

        table.complete(op.packet_id)

        assert len(registered) == 1
        assert registered[0].packet_id in table

    def test_context_is_kept(self):
        table = PendingOperationTable()
        marker = object()
        op = table.register(OperationKind.SUBSCRIBE, "a/#", context=marker)
        assert table.get(op.packet_id).context is marker


class TestTimeouts:

    def test_operation_times_out(self):
        table = PendingOperationTable()
        op = table.register(OperationKind.PUBLISH, "slow/topic", timeout=0.05)

        with pytest.raises(OperationTimeoutError):
            op.future.result(timeout=2)
        assert op.packet_id not in table

    def test_timeout_is_a_timeout_error(self):
        op = PendingOperationTable().register(OperationKind.PUBLISH, timeout=0.01)
        assert isinstance(op.future.exception(timeout=2), TimeoutError)

    def test_completion_cancels_timer(self):
        table = PendingOperationTable()
        op = table.register(OperationKind.PUBLISH, timeout=0.1)
        table.complete(op.packet_id)

        time.sleep(0.2)
        assert op.future.exception() is None

    def test_late_ack_after_timeout_is_ignored(self):
        table = PendingOperationTable()
        op = table.register(OperationKind.SUBSCRIBE, timeout=0.01)
        op.future.exception(timeout=2)

        assert table.complete(op.packet_id) is False
        assert isinstance(op.future.exception(), OperationTimeoutError)


class TestFailAll:

    def test_fail_all(self):
        table = PendingOperationTable("test")
        ops = [table.register(kind) for kind in OperationKind]

        failed = table.fail_all(lambda op: ConnectionLostError(f"lost {op.packet_id}"))

        assert failed == 3
        assert len(table) == 0
        for op in ops:
            assert isinstance(op.future.exception(), ConnectionLostError)

    def test_fail_all_skips_resolved(self):
        table = PendingOperationTable()
        op = table.register(OperationKind.PUBLISH)
        op.resolve()
        assert table.fail_all(lambda op: ConnectionLostError()) == 0

    def test_packet_ids(self):
        table = PendingOperationTable()
        for _ in range(3):
            table.register(OperationKind.PUBLISH)
        table.discard(2)
        assert table.packet_ids() == [1, 3]
