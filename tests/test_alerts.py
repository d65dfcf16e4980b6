"""
Unit tests for delivery/alerts.py
"""

import asyncio
import unittest
from unittest.mock import patch, MagicMock, AsyncMock
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import aiohttp

from delivery.alerts import (
    AlertLevel,
    LEVEL_COLORS,
    MAX_ALERT_ERRORS,
    _build_discord_payload,
    _build_slack_payload,
    _build_telegram_payload,
    alert_invocation_crashed,
    alert_invocation_failures,
    send_alert,
)
from delivery.batch import SchedulerResult


def run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _mock_session(status=200, text="ok"):
    resp = MagicMock()
    resp.status = status
    resp.text = AsyncMock(return_value=text)

    post_ctx = MagicMock()
    post_ctx.__aenter__ = AsyncMock(return_value=resp)
    post_ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.post = MagicMock(return_value=post_ctx)

    session_ctx = MagicMock()
    session_ctx.__aenter__ = AsyncMock(return_value=session)
    session_ctx.__aexit__ = AsyncMock(return_value=False)
    return session_ctx, session


class TestPayloads(unittest.TestCase):

    def test_slack(self):
        payload = _build_slack_payload("Title", "Body", AlertLevel.CRITICAL)
        attachment = payload["attachments"][0]
        self.assertEqual(attachment["color"], f"#{LEVEL_COLORS[AlertLevel.CRITICAL]:06X}")
        self.assertEqual(attachment["title"], "Title")
        self.assertEqual(attachment["text"], "Body")
        self.assertIsInstance(attachment["ts"], int)

    def test_discord(self):
        embed = _build_discord_payload("Title", "Body", AlertLevel.WARNING)["embeds"][0]
        self.assertEqual(embed["color"], LEVEL_COLORS[AlertLevel.WARNING])
        self.assertEqual(embed["description"], "Body")

    @patch("config.TELEGRAM_CHAT_ID", "42")
    def test_telegram(self):
        payload = _build_telegram_payload("Title", "Body")
        self.assertEqual(payload["chat_id"], "42")
        self.assertTrue(payload["text"].startswith("*Title*"))


class TestSendAlert(unittest.TestCase):

    @patch("config.ALERT_WEBHOOK_URL", "")
    def test_no_webhook_configured(self):
        self.assertFalse(run_async(send_alert("hello")))

    @patch("config.ALERT_CHANNEL", "slack")
    @patch("config.ALERT_WEBHOOK_URL", "https://hooks.slack.test/x")
    def test_success(self):
        session_ctx, session = _mock_session(200)
        with patch("delivery.alerts.aiohttp.ClientSession", return_value=session_ctx):
            self.assertTrue(run_async(send_alert("hello", AlertLevel.WARNING, "Heads up")))

        url = session.post.call_args[0][0]
        self.assertEqual(url, "https://hooks.slack.test/x")
        self.assertEqual(session.post.call_args[1]["json"]["attachments"][0]["title"], "Heads up")

    @patch("config.ALERT_CHANNEL", "telegram")
    @patch("config.ALERT_WEBHOOK_URL", "bot-token")
    def test_telegram_url(self):
        session_ctx, session = _mock_session(200)
        with patch("delivery.alerts.aiohttp.ClientSession", return_value=session_ctx):
            run_async(send_alert("hello"))
        self.assertEqual(session.post.call_args[0][0], "https://api.telegram.org/botbot-token/sendMessage")

    @patch("config.ALERT_CHANNEL", "teams")
    @patch("config.ALERT_WEBHOOK_URL", "https://hooks.example.test/x")
    def test_unknown_channel_posts_slack_payload(self):
        session_ctx, session = _mock_session(204)
        with patch("delivery.alerts.aiohttp.ClientSession", return_value=session_ctx):
            self.assertTrue(run_async(send_alert("hello", AlertLevel.INFO)))
        self.assertIn("attachments", session.post.call_args[1]["json"])

    @patch("config.ALERT_WEBHOOK_URL", "https://hooks.slack.test/x")
    def test_http_error(self):
        session_ctx, _ = _mock_session(500, "nope")
        with patch("delivery.alerts.aiohttp.ClientSession", return_value=session_ctx):
            self.assertFalse(run_async(send_alert("hello")))

    @patch("config.ALERT_WEBHOOK_URL", "https://hooks.slack.test/x")
    def test_connection_error(self):
        session_ctx, session = _mock_session()
        session.post.side_effect = aiohttp.ClientError("refused")
        with patch("delivery.alerts.aiohttp.ClientSession", return_value=session_ctx):
            self.assertFalse(run_async(send_alert("hello")))


class TestInvocationAlerts(unittest.TestCase):

    @patch("delivery.alerts.send_alert", new_callable=AsyncMock)
    def test_clean_result_not_alerted(self, mock_send):
        result = SchedulerResult(processed=2, sent=2, notices=["empty audience"])
        self.assertFalse(run_async(alert_invocation_failures("Program", result)))
        mock_send.assert_not_awaited()

    @patch("delivery.alerts.send_alert", new_callable=AsyncMock)
    def test_item_failures_are_warnings(self, mock_send):
        mock_send.return_value = True
        result = SchedulerResult(processed=3, sent=2, failed=1, errors=["Program p1: boom"])

        self.assertTrue(run_async(alert_invocation_failures("Program", result)))

        message, level, title = mock_send.await_args[0]
        self.assertEqual(level, AlertLevel.WARNING)
        self.assertEqual(title, "Program scheduler reported failures")
        self.assertIn("failed=1", message)
        self.assertIn("Program p1: boom", message)

    @patch("delivery.alerts.send_alert", new_callable=AsyncMock)
    def test_fetch_failure_is_critical(self, mock_send):
        result = SchedulerResult(errors=["Failed to fetch due enrollments: timeout"])
        run_async(alert_invocation_failures("Automation", result))
        self.assertEqual(mock_send.await_args[0][1], AlertLevel.CRITICAL)

    @patch("delivery.alerts.send_alert", new_callable=AsyncMock)
    def test_error_list_truncated(self, mock_send):
        errors = [f"Enrollment {i}: failed" for i in range(MAX_ALERT_ERRORS + 5)]
        result = SchedulerResult(processed=15, failed=15, errors=errors)

        run_async(alert_invocation_failures("Automation", result))

        message = mock_send.await_args[0][0]
        self.assertIn("and 5 more", message)
        self.assertNotIn(errors[-1], message)

    @patch("delivery.alerts.send_alert", new_callable=AsyncMock)
    def test_crash(self, mock_send):
        run_async(alert_invocation_crashed("Program", RuntimeError("db gone")))
        message, level, title = mock_send.await_args[0]
        self.assertIn("db gone", message)
        self.assertEqual(level, AlertLevel.CRITICAL)
        self.assertEqual(title, "Program scheduler crashed")


if __name__ == "__main__":
    unittest.main()
