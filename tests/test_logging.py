"""
Campaign Orchestrator — Structured Logging Tests

Tests:
  - test_json_parseable — every log line is valid JSON
  - test_entry_schema — every entry has the service fields
  - test_structured_fields_merged — extra structured fields land top-level
  - test_exception_fields — exc_info becomes exception.* fields
  - test_level_filtering — events below the configured level are dropped
  - test_reconfigure_replaces_handler — no duplicate lines
  - test_lifecycle_events — each CampaignEventLogger method's action name
  - test_engine_emits_events — a real initiate/advance/cancel run
"""

import io
import json
import logging
import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from harness import make_engine

from engine.logging import (
    ROOT_LOGGER,
    CampaignEventLogger,
    JSONFormatter,
    configure_logging,
    get_logger,
)


def _parse_log_lines(buf):
    return [json.loads(line) for line in buf.getvalue().splitlines() if line.strip()]


class LoggingTestCase(unittest.TestCase):

    def setUp(self):
        self.buf = io.StringIO()
        configure_logging(level="INFO", stream=self.buf)

    def tearDown(self):
        root = logging.getLogger(ROOT_LOGGER)
        root.handlers.clear()
        root.propagate = True
        root.setLevel(logging.NOTSET)


class TestJSONFormatter(LoggingTestCase):

    def test_json_parseable(self):
        log = get_logger("test")
        log.info("one")
        log.warning("two %s", "args")
        entries = _parse_log_lines(self.buf)
        self.assertEqual([e["message"] for e in entries], ["one", "two args"])

    def test_entry_schema(self):
        get_logger("test").info("hello")
        entry = _parse_log_lines(self.buf)[0]
        for key in ("timestamp", "level", "logger", "message", "service.name", "service.version"):
            self.assertIn(key, entry)
        self.assertEqual(entry["logger"], "campaign_orchestrator.test")
        self.assertEqual(entry["service.name"], ROOT_LOGGER)

    def test_structured_fields_merged(self):
        get_logger("test").info("x", extra={"structured": {"operation_id": "op_1", "phase": 2}})
        entry = _parse_log_lines(self.buf)[0]
        self.assertEqual(entry["operation_id"], "op_1")
        self.assertEqual(entry["phase"], 2)

    def test_exception_fields(self):
        try:
            raise ValueError("bad value")
        except ValueError:
            get_logger("test").exception("failed")
        entry = _parse_log_lines(self.buf)[0]
        self.assertEqual(entry["exception.type"], "ValueError")
        self.assertEqual(entry["exception.message"], "bad value")

    def test_non_serializable_values(self):
        get_logger("test").info("x", extra={"structured": {"obj": object()}})
        self.assertIn("object", _parse_log_lines(self.buf)[0]["obj"])

    def test_formatter_standalone(self):
        record = logging.LogRecord("n", logging.INFO, "", 0, "msg", (), None)
        entry = json.loads(JSONFormatter(service_name="svc").format(record))
        self.assertEqual(entry["service.name"], "svc")


class TestConfigureLogging(LoggingTestCase):

    def test_level_filtering(self):
        configure_logging(level="WARNING", stream=self.buf)
        log = get_logger("test")
        log.info("hidden")
        log.warning("shown")
        self.assertEqual([e["message"] for e in _parse_log_lines(self.buf)], ["shown"])

    def test_reconfigure_replaces_handler(self):
        configure_logging(level="INFO", stream=self.buf)
        configure_logging(level="INFO", stream=self.buf)
        get_logger("test").info("once")
        self.assertEqual(len(_parse_log_lines(self.buf)), 1)

    def test_does_not_propagate(self):
        root = configure_logging(level="INFO", stream=self.buf)
        self.assertFalse(root.propagate)


class TestCampaignEventLogger(LoggingTestCase):

    def setUp(self):
        super().setUp()
        self.events = CampaignEventLogger()

    def test_lifecycle_events(self):
        self.events.on_initiated("op_1", "G1", "U1", participants=3)
        self.events.on_phase_advanced("op_1", "G1", from_phase=0, to_phase=1)
        self.events.on_messages_planned("op_1", phase=1, count=4)
        self.events.on_message_ready("msg_1", "op_1", phase=1)
        self.events.on_message_dropped("msg_2", "op_1", reason="operation inactive")
        self.events.on_message_delivered("msg_1", "op_1")
        self.events.on_terminated("op_1", "G1", status="completed", purged_messages=3)
        self.events.on_resumption_pass(advanced=1, readied=2, armed=3, errors=0)

        entries = _parse_log_lines(self.buf)
        self.assertEqual([e["action"] for e in entries], [
            "operation_initiated", "phase_advanced", "messages_planned",
            "message_ready", "message_dropped", "message_delivered",
            "operation_terminated", "resumption_pass",
        ])
        self.assertEqual(entries[1]["to_phase"], 1)
        self.assertEqual(entries[6]["purged_messages"], 3)
        self.assertTrue(all(e["logger"] == "campaign_orchestrator.events" for e in entries))

    def test_callback_failed_is_warning_with_exception(self):
        self.events.on_callback_failed("phase:op_1", RuntimeError("boom"))
        entry = _parse_log_lines(self.buf)[0]
        self.assertEqual(entry["level"], "WARNING")
        self.assertEqual(entry["key"], "phase:op_1")
        self.assertEqual(entry["exception.type"], "RuntimeError")

    def test_disabled_level_emits_nothing(self):
        configure_logging(level="ERROR", stream=self.buf)
        self.events.on_initiated("op_1", "G1", "U1", participants=1)
        self.assertEqual(self.buf.getvalue(), "")

    def test_engine_emits_events(self):
        engine, clock, timers = make_engine(max_phases=3, phase_duration=10.0)
        op_id = engine.initiate("G1", "U1", ["A"], {}).value
        engine.advance_phase(op_id)
        engine.cancel(op_id)

        actions = [e.get("action") for e in _parse_log_lines(self.buf) if "action" in e]
        self.assertLess(actions.index("operation_initiated"), actions.index("phase_advanced"))
        self.assertEqual(actions[-1], "operation_terminated")
        ops = {e["operation_id"] for e in _parse_log_lines(self.buf) if "operation_id" in e}
        self.assertEqual(ops, {op_id})


if __name__ == "__main__":
    unittest.main()
