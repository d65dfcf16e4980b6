"""
Unit tests for the main.py command handlers
"""

import io
import unittest
from contextlib import redirect_stdout
from unittest.mock import patch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import main


class TestScheduleCommands(unittest.TestCase):

    def test_schedule_preview(self):
        out = io.StringIO()
        with redirect_stdout(out):
            code = main.schedule_preview("every tuesday at 3pm", "UTC")

        self.assertEqual(code, 0)
        self.assertIn("Every Tuesday at 3:00 PM", out.getvalue())
        self.assertIn("0 15 * * 2", out.getvalue())

    def test_schedule_preview_rejects_unsupported_cron(self):
        with redirect_stdout(io.StringIO()):
            self.assertEqual(main.schedule_preview("*/5 * * * *"), 2)


class TestEnrollmentCommands(unittest.TestCase):

    @patch("delivery.automation_engine.enroll_in_automation")
    def test_enroll_passes_trigger_data(self, mock_enroll):
        mock_enroll.return_value = {"success": True, "enrollment_id": "e1", "created": True, "error": None}

        with redirect_stdout(io.StringIO()):
            code = main.enroll("a1", "jane@example.com", "u1", '{"plan": "pro"}')

        self.assertEqual(code, 0)
        mock_enroll.assert_called_once_with(
            "a1", "jane@example.com", user_id="u1", trigger_data={"plan": "pro"}
        )

    @patch("delivery.automation_engine.enroll_in_automation")
    def test_enroll_failure_exit_code(self, mock_enroll):
        mock_enroll.return_value = {
            "success": False, "enrollment_id": None, "created": False, "error": "No active steps in automation",
        }
        out = io.StringIO()
        with redirect_stdout(out):
            self.assertEqual(main.enroll("a1", "jane@example.com"), 1)
        self.assertIn("No active steps", out.getvalue())

    @patch("delivery.automation_engine.enroll_in_automation")
    def test_enroll_rejects_malformed_data(self, mock_enroll):
        out = io.StringIO()
        with redirect_stdout(out):
            self.assertEqual(main.enroll("a1", "jane@example.com", None, "{plan: pro"), 2)
        self.assertIn("Invalid --data JSON", out.getvalue())
        mock_enroll.assert_not_called()

    @patch("delivery.automation_engine.enroll_for_trigger")
    def test_trigger_rejects_non_object_data(self, mock_trigger):
        for raw in ("not json", "[1, 2]"):
            with self.subTest(raw=raw), redirect_stdout(io.StringIO()):
                self.assertEqual(main.trigger("lead_created", "jane@example.com", None, raw), 2)
        mock_trigger.assert_not_called()

    @patch("delivery.automation_engine.enroll_for_trigger")
    def test_trigger_unknown_event(self, mock_trigger):
        mock_trigger.side_effect = ValueError("Unknown trigger event: 'birthday'")
        with redirect_stdout(io.StringIO()):
            self.assertEqual(main.trigger("birthday", "jane@example.com"), 2)

    @patch("delivery.automation_engine.enroll_for_trigger")
    def test_trigger_partial_failure(self, mock_trigger):
        mock_trigger.return_value = [
            {"automation_id": "a1", "success": True, "created": True, "enrollment_id": "e1", "error": None},
            {"automation_id": "a2", "success": False, "created": False, "enrollment_id": None,
             "error": "No active steps in automation"},
        ]
        with redirect_stdout(io.StringIO()):
            self.assertEqual(main.trigger("lead_created", "jane@example.com"), 1)


if __name__ == "__main__":
    unittest.main()
