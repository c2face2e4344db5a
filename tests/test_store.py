"""
Campaign Orchestrator — Operation Store Tests

Covers CRUD, atomic read-modify-write, history archiving, message
queries, the action ledger, and failure atomicity on a backend that
errors mid-transaction.
"""

import os
import shutil
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from harness import T0, FailingBackend

from engine.db import SQLiteBackend
from campaign.result import DuplicateActiveOperation, PersistenceError
from campaign.store import CampaignStore
from campaign.types import (
    Channel,
    MessageStatus,
    Operation,
    OperationStatus,
    ScheduledMessage,
)


def _op(target="G1", now=T0, **kw) -> Operation:
    return Operation.create(
        target_id=target,
        initiator_id="U1",
        campaign="test",
        max_phases=3,
        phase_duration=60.0,
        participant_ids=kw.pop("participant_ids", ["A", "B"]),
        now=now,
        **kw,
    )


def _msg(op: Operation, at: float, phase: int = 0, recipient="A") -> ScheduledMessage:
    return ScheduledMessage.create(
        operation_id=op.operation_id,
        target_id=recipient,
        channel=Channel.DIRECT,
        payload="hi",
        scheduled_at=at,
        phase=phase,
        now=T0,
    )


class TestOperations(unittest.TestCase):

    def setUp(self):
        self.store = CampaignStore()

    def tearDown(self):
        self.store.close()

    def test_create_and_get(self):
        op = _op(metadata={"source": "test"})
        self.store.create_operation(op)
        loaded = self.store.get_operation(op.operation_id)
        self.assertEqual(loaded.target_id, "G1")
        self.assertEqual(loaded.phase_start_times, {0: T0})
        self.assertEqual(loaded.metadata, {"source": "test"})
        self.assertEqual(loaded.status, OperationStatus.ACTIVE)

    def test_get_missing_returns_none(self):
        self.assertIsNone(self.store.get_operation("op_missing"))

    def test_second_active_for_target_rejected(self):
        self.store.create_operation(_op())
        with self.assertRaises(DuplicateActiveOperation):
            self.store.create_operation(_op())

    def test_duplicate_is_a_persistence_error(self):
        self.assertTrue(issubclass(DuplicateActiveOperation, PersistenceError))

    def test_other_targets_unaffected(self):
        self.store.create_operation(_op("G1"))
        self.store.create_operation(_op("G2"))
        self.assertEqual(len(self.store.list_active_operations()), 2)
        self.assertEqual(len(self.store.list_active_by_target("G2")), 1)

    def test_update_applies_mutator(self):
        op = _op()
        self.store.create_operation(op)

        def bump(o):
            o.phase = 1
            o.phase_start_times[1] = T0 + 60
            return o

        updated = self.store.update_operation(op.operation_id, bump)
        self.assertEqual(updated.phase, 1)
        self.assertEqual(self.store.get_operation(op.operation_id).phase_start_times[1], T0 + 60)

    def test_mutator_gets_a_fresh_copy(self):
        op = _op()
        self.store.create_operation(op)
        seen = []
        self.store.update_operation(op.operation_id, lambda o: seen.append(o))
        self.assertIsNot(seen[0], op)

    def test_mutator_returning_none_aborts(self):
        op = _op()
        self.store.create_operation(op)

        def abort(o):
            o.phase = 2
            return None

        current = self.store.update_operation(op.operation_id, abort)
        self.assertEqual(current.phase, 0)
        self.assertEqual(self.store.get_operation(op.operation_id).phase, 0)

    def test_update_missing_returns_none(self):
        self.assertIsNone(self.store.update_operation("op_missing", lambda o: o))

    def test_mutator_cannot_change_id(self):
        op = _op()
        self.store.create_operation(op)

        def rename(o):
            o.operation_id = "op_other"
            return o

        with self.assertRaises(ValueError):
            self.store.update_operation(op.operation_id, rename)
        self.assertIsNotNone(self.store.get_operation(op.operation_id))

    def test_remove(self):
        op = _op()
        self.store.create_operation(op)
        self.assertTrue(self.store.remove_operation(op.operation_id))
        self.assertFalse(self.store.remove_operation(op.operation_id))


class TestHistory(unittest.TestCase):

    def setUp(self):
        self.store = CampaignStore()
        self.op = _op()
        self.store.create_operation(self.op)

    def _terminal(self, status=OperationStatus.COMPLETED):
        op = self.store.get_operation(self.op.operation_id)
        op.status = status
        op.end_time = T0 + 10
        return op

    def test_archive_moves_and_purges(self):
        self.store.create_messages([_msg(self.op, T0 + 1), _msg(self.op, T0 + 2)])
        purged = self.store.archive_operation(self._terminal(), archived_at=T0 + 10)

        self.assertEqual(purged, 2)
        self.assertIsNone(self.store.get_operation(self.op.operation_id))
        self.assertEqual(self.store.list_messages(operation_id=self.op.operation_id), [])
        archived = self.store.get_history(self.op.operation_id)
        self.assertEqual(archived.status, OperationStatus.COMPLETED)
        self.assertEqual(archived.end_time, T0 + 10)

    def test_archive_rejects_active(self):
        with self.assertRaises(ValueError):
            self.store.archive_operation(self.store.get_operation(self.op.operation_id))

    def test_target_free_after_archive(self):
        self.store.archive_operation(self._terminal(OperationStatus.CANCELLED))
        self.store.create_operation(_op())
        self.assertEqual(len(self.store.list_active_by_target("G1")), 1)
        self.assertEqual(len(self.store.list_history("G1")), 1)

    def test_archive_leaves_other_operations_messages(self):
        other = _op("G2")
        self.store.create_operation(other)
        self.store.create_message(_msg(other, T0 + 1))
        self.store.archive_operation(self._terminal())
        self.assertEqual(len(self.store.list_messages(operation_id=other.operation_id)), 1)


class TestMessages(unittest.TestCase):

    def setUp(self):
        self.store = CampaignStore()
        self.op = _op()
        self.store.create_operation(self.op)

    def test_list_ordered_by_due_time(self):
        late, early = _msg(self.op, T0 + 20), _msg(self.op, T0 + 5)
        self.store.create_messages([late, early])
        ids = [m.message_id for m in self.store.list_messages()]
        self.assertEqual(ids, [early.message_id, late.message_id])

    def test_list_filters_and_limit(self):
        msgs = [_msg(self.op, T0 + i) for i in range(4)]
        self.store.create_messages(msgs)
        self.store.update_message(msgs[1].message_id, lambda m: _ready(m))
        self.assertEqual(len(self.store.list_messages(status=MessageStatus.PENDING)), 3)
        self.assertEqual(len(self.store.list_messages(status=MessageStatus.READY)), 1)
        self.assertEqual(len(self.store.list_messages(limit=2)), 2)

    def test_phase_is_immutable(self):
        msg = _msg(self.op, T0 + 1, phase=0)
        self.store.create_message(msg)

        def rephase(m):
            m.phase = 1
            return m

        with self.assertRaises(ValueError):
            self.store.update_message(msg.message_id, rephase)
        self.assertEqual(self.store.get_message(msg.message_id).phase, 0)

    def test_take_requires_expected_status(self):
        msg = _msg(self.op, T0 + 1)
        self.store.create_message(msg)

        seen, removed = self.store.take_message(msg.message_id, MessageStatus.READY)
        self.assertEqual(seen.status, MessageStatus.PENDING)
        self.assertFalse(removed)
        self.assertIsNotNone(self.store.get_message(msg.message_id))

        self.store.update_message(msg.message_id, _ready)
        seen, removed = self.store.take_message(msg.message_id, MessageStatus.READY)
        self.assertTrue(removed)
        self.assertIsNone(self.store.get_message(msg.message_id))

    def test_take_missing(self):
        self.assertEqual(self.store.take_message("msg_x", MessageStatus.READY), (None, False))

    def test_purge(self):
        self.store.create_messages([_msg(self.op, T0 + 1), _msg(self.op, T0 + 2)])
        self.assertEqual(self.store.purge_messages(self.op.operation_id), 2)
        self.assertEqual(self.store.purge_messages(self.op.operation_id), 0)


def _ready(m):
    m.status = MessageStatus.READY
    m.ready_at = T0
    return m


class TestLedger(unittest.TestCase):

    def setUp(self):
        self.store = CampaignStore()

    def test_append_and_read(self):
        self.store.log_action("op_1", "G1", "initiated", {"participants": 3}, now=T0)
        self.store.log_action("op_2", "G2", "initiated", {}, now=T0)
        entries = self.store.get_ledger(operation_id="op_1")
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]["details"], {"participants": 3})
        self.assertEqual(entries[0]["created_at"], T0)
        self.assertEqual(len(self.store.get_ledger(target_id="G2")), 1)

    def test_idempotency_key(self):
        self.assertTrue(self.store.log_action("op_1", "G1", "phase_advanced", {}, "op_1:phase:1"))
        self.assertFalse(self.store.log_action("op_1", "G1", "phase_advanced", {}, "op_1:phase:1"))
        self.assertEqual(len(self.store.get_ledger()), 1)

    def test_stats(self):
        op = _op()
        self.store.create_operation(op)
        self.store.create_message(_msg(op, T0 + 1))
        self.store.log_action(op.operation_id, "G1", "initiated", {})
        stats = self.store.stats()
        self.assertEqual(stats["operations"], {"active": 1})
        self.assertEqual(stats["messages"], {"pending": 1})
        self.assertEqual(stats["history"], {})
        self.assertEqual(stats["action_ledger_entries"], 1)


class TestFailureAtomicity(unittest.TestCase):

    def setUp(self):
        self.db = FailingBackend()
        self.store = CampaignStore(self.db)
        self.op = _op()
        self.store.create_operation(self.op)

    def test_driver_error_becomes_persistence_error(self):
        self.db.arm("INSERT INTO action_ledger")
        with self.assertRaises(PersistenceError) as ctx:
            self.store.log_action("op_1", "G1", "initiated", {})
        self.assertNotIsInstance(ctx.exception, DuplicateActiveOperation)

    def test_failed_batch_writes_nothing(self):
        self.db.arm("INSERT INTO scheduled_messages", skip=1)
        with self.assertRaises(PersistenceError):
            self.store.create_messages([_msg(self.op, T0 + 1), _msg(self.op, T0 + 2)])
        self.assertEqual(self.store.list_messages(), [])

    def test_failed_update_leaves_record(self):
        self.db.arm("UPDATE operations")

        def bump(o):
            o.phase = 1
            return o

        with self.assertRaises(PersistenceError):
            self.store.update_operation(self.op.operation_id, bump)
        self.assertEqual(self.store.get_operation(self.op.operation_id).phase, 0)

    def test_failed_archive_keeps_operation_active(self):
        self.store.create_message(_msg(self.op, T0 + 1))
        self.db.arm("INSERT INTO history")
        op = self.store.get_operation(self.op.operation_id)
        op.status = OperationStatus.CANCELLED
        with self.assertRaises(PersistenceError):
            self.store.archive_operation(op)
        self.assertTrue(self.store.get_operation(self.op.operation_id).is_active)
        self.assertEqual(len(self.store.list_messages()), 1)


class TestFileBackedStore(unittest.TestCase):
    """State survives reopening the database file."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "campaign.db")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_reopen(self):
        store = CampaignStore(SQLiteBackend(self.path))
        op = _op()
        store.create_operation(op)
        store.create_message(_msg(op, T0 + 1))
        store.close()

        reopened = CampaignStore(SQLiteBackend(self.path))
        self.assertEqual(reopened.get_operation(op.operation_id).target_id, "G1")
        self.assertEqual(len(reopened.list_messages(operation_id=op.operation_id)), 1)
        reopened.close()


if __name__ == "__main__":
    unittest.main()
