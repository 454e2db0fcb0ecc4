"""
Tests for mail_sender.py

Tests cover:
- plain_text_to_html conversion
- MIME message construction
- Allowlist gate (real send vs. audited suppression)
- SMTP error mapping
"""

import asyncio
import os
import sys
import unittest
from unittest.mock import AsyncMock, patch

import aiosmtplib
from bson import ObjectId

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from helpers import FakeTransport, MongoTestCase, run_async

from database import EmailLog, OwnerSummary
from mail_sender import Mailer, MailTransportError, SmtpTransport, build_from, html_to_text, plain_text_to_html


class TestPlainTextToHtml(unittest.TestCase):

    def test_newlines_to_br(self):
        self.assertEqual(plain_text_to_html("Hi\nthere"), "Hi<br>\nthere")

    def test_entities_escaped(self):
        result = plain_text_to_html('A < B & "C" > D')
        self.assertEqual(result, "A &lt; B &amp; &quot;C&quot; &gt; D")

    def test_empty(self):
        self.assertEqual(plain_text_to_html(""), "")
        self.assertEqual(plain_text_to_html(None), "")

    def test_html_to_text(self):
        self.assertEqual(html_to_text("Hi<br>\nthere &amp; you"), "Hi\n\nthere & you")


class TestSmtpTransport(unittest.TestCase):

    @patch("mail_sender.config.FROM_EMAIL", "outreach@example.com")
    def test_build_message(self):
        transport = SmtpTransport(host="smtp.test", port=587, username="u", password="p")
        msg = transport.build_message("Ada <outreach@example.com>", "jane@acme.com", "Hello",
                                      "Hi<br>\nthere", reply_to="cl-1@reply.example.com")
        self.assertEqual(msg["Subject"], "Hello")
        self.assertEqual(msg["To"], "jane@acme.com")
        self.assertEqual(msg["Reply-To"], "cl-1@reply.example.com")
        self.assertIn("@example.com>", msg["Message-ID"])
        self.assertEqual(len(msg.get_payload()), 2)

    def test_no_reply_to_header_when_absent(self):
        msg = SmtpTransport(host="h", port=1).build_message("a@b.c", "d@e.f", "S", "body")
        self.assertIsNone(msg["Reply-To"])

    def test_smtp_error_mapped(self):
        transport = SmtpTransport(host="smtp.test", port=587, username="", password="")
        with patch("mail_sender.aiosmtplib.SMTP") as mock_smtp:
            instance = mock_smtp.return_value
            instance.connect = AsyncMock()
            instance.sendmail = AsyncMock(side_effect=aiosmtplib.SMTPException("554 rejected"))
            with self.assertRaises(MailTransportError):
                run_async(transport.send("a@b.c", "d@e.f", "S", "body"))

    def test_timeout_mapped(self):
        transport = SmtpTransport(host="smtp.test", port=587, username="", password="")
        with patch("mail_sender.aiosmtplib.SMTP") as mock_smtp:
            mock_smtp.return_value.connect = AsyncMock(side_effect=asyncio.TimeoutError())
            with self.assertRaises(MailTransportError):
                run_async(transport.send("a@b.c", "d@e.f", "S", "body"))

    def test_successful_send_returns_message_id(self):
        transport = SmtpTransport(host="smtp.test", port=587, username="u", password="p")
        with patch("mail_sender.aiosmtplib.SMTP") as mock_smtp:
            instance = mock_smtp.return_value
            instance.connect = AsyncMock()
            instance.login = AsyncMock()
            instance.sendmail = AsyncMock()
            instance.quit = AsyncMock()
            message_id = run_async(transport.send("a@b.c", "d@e.f", "S", "body"))
        self.assertTrue(message_id.startswith("<"))
        instance.login.assert_awaited_once_with("u", "p")


class TestBuildFrom(unittest.TestCase):

    @patch("mail_sender.config.FROM_EMAIL", "outreach@example.com")
    @patch("mail_sender.config.DEFAULT_FROM_NAME", "Outreach")
    def test_sender_name(self):
        self.assertEqual(build_from("Ada"), "Ada <outreach@example.com>")
        self.assertEqual(build_from("  "), "Outreach <outreach@example.com>")


class TestMailer(MongoTestCase):

    def setUp(self):
        super().setUp()
        self.owner = self.make_owner()
        self.transport = FakeTransport()
        self.mailer = Mailer(self.transport)
        self.lead_id, self.campaign_id = ObjectId(), ObjectId()

    def _send(self, to="jane@acme.com"):
        return run_async(self.mailer.send_email(
            self.owner["_id"], to, "Hello", "<p>Hi</p>", self.lead_id, self.campaign_id,
            sender_name="Ada", reply_to="cl-1@r.example.com",
        ))

    @patch("mail_sender.config.ALLOWLIST_MODE", True)
    def test_empty_allowlist_suppresses_but_audits(self):
        self.assertFalse(self._send())
        self.assertEqual(self.transport.sent, [])
        logs = EmailLog.get_by_lead(self.lead_id)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["direction"], EmailLog.OUTBOUND)
        self.assertFalse(logs[0]["delivered"])
        self.assertEqual(OwnerSummary.get(self.owner["_id"])["email_sent_count"], 0)

    @patch("mail_sender.config.ALLOWLIST_MODE", True)
    def test_allowlisted_recipient_sent(self):
        self.allow(self.owner, "Jane@Acme.com")
        self.assertTrue(self._send())
        self.assertEqual(len(self.transport.sent), 1)
        self.assertEqual(self.transport.sent[0]["reply_to"], "cl-1@r.example.com")
        self.assertTrue(EmailLog.get_by_lead(self.lead_id)[0]["delivered"])
        self.assertEqual(OwnerSummary.get(self.owner["_id"])["email_sent_count"], 1)

    @patch("mail_sender.config.ALLOWLIST_MODE", False)
    def test_allowlist_mode_off_sends_everyone(self):
        self.assertTrue(self._send("anyone@else.com"))
        self.assertEqual(len(self.transport.sent), 1)

    @patch("mail_sender.config.ALLOWLIST_MODE", False)
    def test_transport_error_propagates_without_audit(self):
        self.mailer = Mailer(FakeTransport(error=MailTransportError("down")))
        with self.assertRaises(MailTransportError):
            self._send()
        self.assertEqual(EmailLog.get_by_lead(self.lead_id), [])


if __name__ == "__main__":
    unittest.main()
