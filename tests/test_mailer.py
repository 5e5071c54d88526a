import json
import logging
import unittest

import httpx

from httpxlogtransport import redact
from mailer import DEFAULT_SENDER, EmailSendError, ResetCodeMailer


class ResetCodeMailerTests(unittest.TestCase):
    def setUp(self):
        self.requests = []
        self.status_by_sender = {}

    def _handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        sender = json.loads(request.content)["from"]
        status = self.status_by_sender.get(sender, 200)
        if status != 200:
            return httpx.Response(status, json={"message": f"rejected {sender}"})
        return httpx.Response(200, json={"id": "email-1"})

    def _mailer(self, api_key="re_test_key", preferred_sender=None):
        return ResetCodeMailer(
            api_key=api_key,
            preferred_sender=preferred_sender,
            api_url="https://mail.example.test/emails",
            transport=httpx.MockTransport(self._handler),
        )

    def test_sends_with_preferred_sender(self):
        sender = self._mailer(preferred_sender="Ops <ops@example.org>").send_reset_code("owner@example.com", "123456", 10)

        self.assertEqual(sender, "Ops <ops@example.org>")
        self.assertEqual(len(self.requests), 1)
        request = self.requests[0]
        self.assertEqual(str(request.url), "https://mail.example.test/emails")
        self.assertEqual(request.headers["Authorization"], "Bearer re_test_key")
        body = json.loads(request.content)
        self.assertEqual(body["to"], ["owner@example.com"])
        self.assertIn("123456", body["text"])
        self.assertIn("10 minutes", body["html"])

    def test_rejected_preferred_sender_falls_back_once(self):
        self.status_by_sender["Ops <ops@example.org>"] = 403
        sender = self._mailer(preferred_sender="Ops <ops@example.org>").send_reset_code("owner@example.com", "123456", 10)

        self.assertEqual(sender, DEFAULT_SENDER)
        self.assertEqual([json.loads(r.content)["from"] for r in self.requests], ["Ops <ops@example.org>", DEFAULT_SENDER])

    def test_failure_of_every_sender_raises_with_details(self):
        self.status_by_sender["Ops <ops@example.org>"] = 403
        self.status_by_sender[DEFAULT_SENDER] = 422

        with self.assertRaises(EmailSendError) as ctx:
            self._mailer(preferred_sender="Ops <ops@example.org>").send_reset_code("owner@example.com", "123456", 10)

        self.assertEqual(ctx.exception.details, f"422 rejected {DEFAULT_SENDER}")
        self.assertEqual(len(self.requests), 2)

    def test_default_sender_only_when_no_preference(self):
        self._mailer().send_reset_code("owner@example.com", "123456", 10)
        self.assertEqual(json.loads(self.requests[0].content)["from"], DEFAULT_SENDER)

    def test_missing_api_key_fails_without_network(self):
        mailer = self._mailer(api_key="  ")
        self.assertFalse(mailer.configured())
        with self.assertRaises(EmailSendError):
            mailer.send_reset_code("owner@example.com", "123456", 10)
        self.assertEqual(self.requests, [])

    def test_debug_log_never_contains_reset_code(self):
        with self.assertLogs("mailer", level=logging.DEBUG) as captured:
            self._mailer().send_reset_code("owner@example.com", "987654", 10)

        output = "\n".join(captured.output)
        self.assertIn("https://mail.example.test/emails", output)
        self.assertNotIn("987654", output)
        self.assertNotIn("re_test_key", output)


class RedactTests(unittest.TestCase):
    def test_masks_nested_sensitive_fields(self):
        payload = {"to": ["a@example.com"], "text": "code 1", "meta": {"Password": "x", "keep": 1}}
        masked = redact(payload)

        self.assertEqual(masked["to"], ["a@example.com"])
        self.assertNotEqual(masked["text"], "code 1")
        self.assertNotEqual(masked["meta"]["Password"], "x")
        self.assertEqual(masked["meta"]["keep"], 1)
        self.assertEqual(payload["text"], "code 1")

    def test_masks_headers_case_insensitively(self):
        headers = httpx.Headers({"Authorization": "Bearer secret", "Content-Type": "application/json"})
        masked = redact(headers, {"authorization"})

        self.assertNotIn("secret", masked["authorization"])
        self.assertEqual(masked["content-type"], "application/json")


if __name__ == "__main__":
    unittest.main(verbosity=2)
