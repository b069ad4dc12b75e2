"""
Unit tests for sequencer/gateway.py

Tests cover:
- HTTP error classification (transient / permanent / restricted)
- Recipient lookup per platform
- RestGateway endpoints and duplicate handling (mocked _request)
- SmtpGateway delivery, delivery log dedup and SMTP error mapping
- GatewayRouter platform routing
"""

import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import aiosmtplib

from sequencer.errors import ConfigurationError, PermanentGatewayError, TransientGatewayError
from sequencer.gateway import (
    GatewayRouter,
    RestGateway,
    SendResult,
    Signal,
    SmtpGateway,
    classify_http_error,
    message_id_for,
    recipient_for,
    text_to_html,
)
from sequencer.rate_limits import CONNECTION_REQUEST
from sequencer.sequences import RenderedContent


def run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


CONTENT = RenderedContent(subject="Quick question", body="Hi Ada,\n\nWorth a chat?")


class TestClassifyHttpError(unittest.TestCase):

    def test_transient_statuses(self):
        for status in (408, 429, 500, 502, 503):
            self.assertIsInstance(classify_http_error(status, "oops"), TransientGatewayError)

    def test_permanent_statuses(self):
        error = classify_http_error(400, "invalid recipient")
        self.assertIsInstance(error, PermanentGatewayError)
        self.assertFalse(error.restricted)
        self.assertEqual(error.status_code, 400)

    def test_restriction(self):
        error = classify_http_error(403, '{"error": "Account Restricted"}')
        self.assertIsInstance(error, PermanentGatewayError)
        self.assertTrue(error.restricted)


class TestRecipients(unittest.TestCase):

    def test_platform_fields(self):
        contact = {"email": "ada@example.com", "linkedin_url": "https://linkedin.com/in/ada", "phone": "+15550100"}
        self.assertEqual(recipient_for(contact, "email"), "ada@example.com")
        self.assertEqual(recipient_for(contact, "linkedin"), "https://linkedin.com/in/ada")
        self.assertEqual(recipient_for(contact, "whatsapp"), "+15550100")
        self.assertIsNone(recipient_for(contact, "telegram"))
        self.assertIsNone(recipient_for(contact, "fax"))

    def test_explicit_platform_ids_win(self):
        contact = {"phone": "+15550100", "platform_ids": {"whatsapp": "wa-123"}}
        self.assertEqual(recipient_for(contact, "whatsapp"), "wa-123")

    def test_signal_from_dict(self):
        self.assertEqual(Signal.from_dict(None), Signal())
        self.assertTrue(Signal.from_dict({"replied": 1}).replied)


class TestRestGateway(unittest.TestCase):

    def setUp(self):
        self.gateway = RestGateway(base_url="https://api.example.com/v1/", api_key="k", timeout=5)

    def test_message_send(self):
        self.gateway._request = AsyncMock(return_value=(200, {"id": "m1"}))

        result = run_async(self.gateway.send("whatsapp", "acc-1", "+15550100", CONTENT, idempotency_key="k1"))

        self.assertEqual(result, SendResult(id="m1", status="sent"))
        method, endpoint, account = self.gateway._request.call_args[0]
        self.assertEqual((method, endpoint, account), ("POST", "messages/send", "acc-1"))
        kwargs = self.gateway._request.call_args.kwargs
        self.assertEqual(kwargs["idempotency_key"], "k1")
        self.assertEqual(kwargs["data"]["platform"], "whatsapp")
        self.assertEqual(kwargs["data"]["subject"], "Quick question")

    def test_connection_request_endpoint(self):
        self.gateway._request = AsyncMock(return_value=(201, {"id": "inv-1"}))

        run_async(self.gateway.send("linkedin", "acc-1", "https://linkedin.com/in/ada", CONTENT,
                                    idempotency_key="k1", action=CONNECTION_REQUEST))

        self.assertEqual(self.gateway._request.call_args[0][1], "linkedin/invitations")

    def test_conflict_is_duplicate(self):
        self.gateway._request = AsyncMock(return_value=(409, {"id": "m1"}))
        result = run_async(self.gateway.send("telegram", "acc-1", "tg-1", CONTENT, idempotency_key="k1"))
        self.assertEqual(result.status, "duplicate")

    def test_unknown_recipient_is_permanent(self):
        self.gateway._request = AsyncMock(return_value=(404, {}))
        with self.assertRaises(PermanentGatewayError):
            run_async(self.gateway.send("telegram", "acc-1", "tg-1", CONTENT))

    def test_signal(self):
        self.gateway._request = AsyncMock(return_value=(200, {"accepted": True}))
        signal = run_async(self.gateway.get_signal("linkedin", "acc-1", "https://linkedin.com/in/ada"))
        self.assertTrue(signal.accepted)
        self.assertFalse(signal.replied)

    def test_delivery_status(self):
        self.gateway._request = AsyncMock(return_value=(404, {}))
        self.assertIsNone(run_async(self.gateway.delivery_status("linkedin", "acc-1", "k1")))

        self.gateway._request = AsyncMock(return_value=(200, {"id": "m1"}))
        self.assertEqual(run_async(self.gateway.delivery_status("linkedin", "acc-1", "k1")).id, "m1")

    def test_supports_idempotency(self):
        self.assertTrue(self.gateway.supports_idempotency("linkedin"))
        self.assertEqual(self.gateway.base_url, "https://api.example.com/v1")


class TestSmtpGateway(unittest.TestCase):

    def setUp(self):
        self.log = MagicMock()
        self.log.find.return_value = None
        self.gateway = SmtpGateway(
            accounts=[{"email": "sender@acme.com", "password": "pw", "sender_name": "Sam"}],
            host="smtp.example.com", port=587, delivery_log=self.log, timeout=5,
        )

    def mock_smtp(self, mock_class):
        smtp = MagicMock()
        smtp.connect = AsyncMock()
        smtp.login = AsyncMock()
        smtp.sendmail = AsyncMock()
        smtp.quit = AsyncMock()
        mock_class.return_value = smtp
        return smtp

    @patch("sequencer.gateway.aiosmtplib.SMTP")
    def test_send_records_delivery(self, mock_class):
        smtp = self.mock_smtp(mock_class)

        result = run_async(self.gateway.send("email", "sender@acme.com", "ada@example.com", CONTENT,
                                             idempotency_key="exec:intro:1"))

        self.assertEqual(result.status, "sent")
        self.assertEqual(result.id, message_id_for("exec:intro:1", "sender@acme.com"))
        smtp.login.assert_awaited_once_with("sender@acme.com", "pw")
        raw = smtp.sendmail.await_args[0][2]
        self.assertIn("Subject: Quick question", raw)
        self.log.record.assert_called_once_with(
            "exec:intro:1", "email", "sender@acme.com", "ada@example.com", result.id
        )

    @patch("sequencer.gateway.aiosmtplib.SMTP")
    def test_already_delivered_is_not_resent(self, mock_class):
        self.log.find.return_value = {"message_id": "<abc@acme.com>"}

        result = run_async(self.gateway.send("email", "sender@acme.com", "ada@example.com", CONTENT,
                                             idempotency_key="exec:intro:1"))

        self.assertEqual(result, SendResult(id="<abc@acme.com>", status="duplicate"))
        mock_class.assert_not_called()

    @patch("sequencer.gateway.aiosmtplib.SMTP")
    def test_blocked_mailbox_is_restriction(self, mock_class):
        smtp = self.mock_smtp(mock_class)
        smtp.sendmail.side_effect = aiosmtplib.SMTPResponseException(554, "Message rejected")

        with self.assertRaises(PermanentGatewayError) as ctx:
            run_async(self.gateway.send("email", "sender@acme.com", "ada@example.com", CONTENT))

        self.assertTrue(ctx.exception.restricted)
        self.log.record.assert_not_called()

    @patch("sequencer.gateway.aiosmtplib.SMTP")
    def test_greylisting_is_transient(self, mock_class):
        smtp = self.mock_smtp(mock_class)
        smtp.sendmail.side_effect = aiosmtplib.SMTPResponseException(451, "Try again later")

        with self.assertRaises(TransientGatewayError):
            run_async(self.gateway.send("email", "sender@acme.com", "ada@example.com", CONTENT))

    @patch("sequencer.gateway.aiosmtplib.SMTP")
    def test_connect_failure_is_transient(self, mock_class):
        smtp = self.mock_smtp(mock_class)
        smtp.connect.side_effect = aiosmtplib.SMTPConnectError("refused")

        with self.assertRaises(TransientGatewayError):
            run_async(self.gateway.send("email", "sender@acme.com", "ada@example.com", CONTENT))

    def test_unknown_sender(self):
        with self.assertRaises(ConfigurationError):
            run_async(self.gateway.send("email", "nobody@acme.com", "ada@example.com", CONTENT))

    def test_delivery_status_from_log(self):
        self.assertIsNone(run_async(self.gateway.delivery_status("email", "sender@acme.com", "k1")))
        self.log.find.return_value = {"message_id": "<m@acme.com>"}
        self.assertEqual(run_async(self.gateway.delivery_status("email", "sender@acme.com", "k1")).id, "<m@acme.com>")
        self.assertFalse(self.gateway.supports_idempotency("email"))

    def test_message_id_stable_per_key(self):
        self.assertEqual(message_id_for("k1", "a@acme.com"), message_id_for("k1", "a@acme.com"))
        self.assertNotEqual(message_id_for("k1", "a@acme.com"), message_id_for("k2", "a@acme.com"))
        self.assertTrue(message_id_for("k1", "a@acme.com").endswith("@acme.com>"))

    def test_html_escapes_body(self):
        html = text_to_html("a < b\n\nc")
        self.assertIn("a &lt; b</p><p>c", html)


class TestRouter(unittest.TestCase):

    def test_routes_by_platform(self):
        rest, smtp = MagicMock(), MagicMock()
        rest.send = AsyncMock(return_value=SendResult("r", "sent"))
        smtp.send = AsyncMock(return_value=SendResult("s", "sent"))
        rest.supports_idempotency.return_value = True
        smtp.supports_idempotency.return_value = False
        router = GatewayRouter(rest, smtp)

        self.assertEqual(run_async(router.send("email", "a", "b", CONTENT)).id, "s")
        self.assertEqual(run_async(router.send("linkedin", "a", "b", CONTENT)).id, "r")
        self.assertFalse(router.supports_idempotency("email"))
        self.assertTrue(router.supports_idempotency("whatsapp"))

    def test_close_closes_both(self):
        rest, smtp = MagicMock(), MagicMock()
        rest.close = AsyncMock()
        smtp.close = AsyncMock()
        run_async(GatewayRouter(rest, smtp).close())
        rest.close.assert_awaited_once()
        smtp.close.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
