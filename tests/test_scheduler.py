"""
Campaign Orchestrator — Message Scheduler Tests

Plan expansion, due-time arithmetic, pending → ready on timer fire,
orphan handling, and the polling / confirmation contract.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from harness import T0, make_engine, step, tick

from campaign.result import ErrorKind
from campaign.scheduler import expand_plan, message_timer_key
from campaign.types import Channel, MessageStatus, Operation, OperationStatus, ScheduledMessage


def _op(participants=("A", "B", "C"), priority=("C", "A", "B")) -> Operation:
    return Operation.create(
        target_id="G1", initiator_id="U1", campaign="test",
        max_phases=3, phase_duration=60.0,
        participant_ids=list(participants), priority_list=list(priority),
        now=T0,
    )


class TestExpandPlan(unittest.TestCase):

    def test_target_step(self):
        msgs = expand_plan(_op(), 0, [step("target", offset=5)])
        self.assertEqual(len(msgs), 1)
        self.assertEqual(msgs[0].target_id, "G1")
        self.assertEqual(msgs[0].channel, Channel.BROADCAST)
        self.assertEqual(msgs[0].scheduled_at, T0 + 5)

    def test_stagger(self):
        msgs = expand_plan(_op(), 0, [step("participants", offset=10, stagger=3)])
        self.assertEqual([m.target_id for m in msgs], ["A", "B", "C"])
        self.assertEqual([m.scheduled_at for m in msgs], [T0 + 10, T0 + 13, T0 + 16])
        self.assertTrue(all(m.channel == Channel.DIRECT for m in msgs))

    def test_priority_uses_ranked_order_and_top_k(self):
        msgs = expand_plan(_op(), 0, [step("priority")], default_top_k=2)
        self.assertEqual([m.target_id for m in msgs], ["C", "A"])

    def test_step_limit_overrides_top_k(self):
        msgs = expand_plan(_op(), 0, [step("priority", limit=1)], default_top_k=5)
        self.assertEqual([m.target_id for m in msgs], ["C"])

    def test_uses_phase_start(self):
        op = _op()
        op.phase = 1
        op.phase_start_times[1] = T0 + 60
        msgs = expand_plan(op, 1, [step("target", offset=1)])
        self.assertEqual(msgs[0].scheduled_at, T0 + 61)
        self.assertEqual(msgs[0].phase, 1)

    def test_empty_participants(self):
        self.assertEqual(expand_plan(_op(participants=(), priority=()), 0,
                                     [step("participants")]), [])


class TestPlanningAndFiring(unittest.TestCase):

    def setUp(self):
        self.engine, self.clock, self.timers = make_engine(phases={
            0: [step("participants", payload="welcome", offset=5, stagger=1)],
        }, phase_duration=100.0)
        self.op_id = self.engine.initiate("G1", "U1", ["A", "B"], {}).value
        self.msgs = self.engine.store.list_messages(operation_id=self.op_id)

    def test_messages_persisted_pending_with_timers(self):
        self.assertEqual(len(self.msgs), 2)
        self.assertTrue(all(m.status == MessageStatus.PENDING for m in self.msgs))
        pending = self.timers.pending()
        for m in self.msgs:
            self.assertEqual(pending[message_timer_key(m.message_id)], m.scheduled_at)

    def test_not_ready_before_due(self):
        tick(self.clock, self.timers, 4.9)
        self.assertEqual(self.engine.get_ready_messages(), [])

    def test_timer_flips_to_ready(self):
        tick(self.clock, self.timers, 5.5)
        ready = self.engine.get_ready_messages()
        self.assertEqual(len(ready), 1)
        self.assertEqual(ready[0]["target_id"], "A")
        self.assertEqual(ready[0]["payload"], "welcome")
        self.assertEqual(ready[0]["ready_at"], T0 + 5.5)

    def test_ready_ordered_and_limited(self):
        tick(self.clock, self.timers, 10)
        ready = self.engine.get_ready_messages()
        self.assertEqual([r["target_id"] for r in ready], ["A", "B"])
        self.assertEqual(len(self.engine.get_ready_messages(limit=1)), 1)

    def test_duplicate_fire_is_harmless(self):
        mid = self.msgs[0].message_id
        tick(self.clock, self.timers, 5)
        self.assertTrue(self.engine.scheduler.fire(mid))
        ready_entries = [e for e in self.engine.get_ledger(operation_id=self.op_id)
                         if e["action_type"] == "message_ready"]
        self.assertEqual(len(ready_entries), 1)

    def test_fire_unknown_message(self):
        self.assertFalse(self.engine.scheduler.fire("msg_missing"))

    def test_orphan_message_dropped(self):
        # A message left behind for an operation that is no longer active
        self.engine.cancel(self.op_id)
        orphan = ScheduledMessage.create(
            operation_id=self.op_id, target_id="A", channel=Channel.DIRECT,
            payload="late", scheduled_at=T0, phase=0, now=T0,
        )
        self.engine.store.create_message(orphan)
        self.assertFalse(self.engine.scheduler.fire(orphan.message_id))
        self.assertIsNone(self.engine.store.get_message(orphan.message_id))
        actions = [e["action_type"] for e in self.engine.get_ledger(operation_id=self.op_id)]
        self.assertIn("message_dropped", actions)

    def test_plan_without_definition(self):
        op = self.engine.store.get_operation(self.op_id)
        with self.assertLogs("campaign_orchestrator.scheduler", level="WARNING"):
            self.assertEqual(self.engine.scheduler.plan_phase(op, 1, None), [])


class TestDeliveryContract(unittest.TestCase):

    def setUp(self):
        self.engine, self.clock, self.timers = make_engine(phases={
            0: [step("target", offset=10)],
        }, phase_duration=100.0)
        self.op_id = self.engine.initiate("G1", "U1", ["A"], {}).value
        self.mid = self.engine.store.list_messages(operation_id=self.op_id)[0].message_id

    def test_confirm_pending_is_invalid_state(self):
        result = self.engine.confirm_delivered(self.mid)
        self.assertFalse(result.ok)
        self.assertEqual(result.kind, ErrorKind.INVALID_STATE)
        msg = self.engine.store.get_message(self.mid)
        self.assertEqual(msg.status, MessageStatus.PENDING)

    def test_confirm_ready_removes(self):
        tick(self.clock, self.timers, 10)
        result = self.engine.confirm_delivered(self.mid)
        self.assertTrue(result.ok)
        self.assertTrue(result.value)
        self.assertIsNone(self.engine.store.get_message(self.mid))
        self.assertEqual(self.engine.get_ready_messages(), [])

    def test_confirm_writes_delivered_ledger_entry(self):
        tick(self.clock, self.timers, 10)
        self.engine.confirm_delivered(self.mid)
        entry = [e for e in self.engine.get_ledger(operation_id=self.op_id)
                 if e["action_type"] == "message_delivered"][0]
        self.assertEqual(entry["details"]["status"], "delivered")
        self.assertEqual(entry["details"]["message_id"], self.mid)

    def test_confirm_twice(self):
        tick(self.clock, self.timers, 10)
        self.assertTrue(self.engine.confirm_delivered(self.mid).value)
        second = self.engine.confirm_delivered(self.mid)
        self.assertTrue(second.ok)
        self.assertFalse(second.value)

    def test_confirm_unknown(self):
        result = self.engine.confirm_delivered("msg_nope")
        self.assertTrue(result.ok)
        self.assertFalse(result.value)

    def test_ready_message_of_completed_operation_not_listed(self):
        tick(self.clock, self.timers, 10)
        self.engine.mark_complete("G1")
        self.assertEqual(self.engine.get_ready_messages(), [])
        self.assertEqual(self.engine.get_status(self.op_id).value["status"],
                         OperationStatus.COMPLETED.value)


if __name__ == "__main__":
    unittest.main()
