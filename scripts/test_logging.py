from __future__ import annotations

import json
import logging
import unittest

from cosigner.common import log_event, sanitize_text, sanitize_value
from cosigner.runtime.logging import JsonFormatter


class SanitizerTests(unittest.TestCase):
    def test_url_query_and_credentials_are_stripped(self) -> None:
        text = sanitize_text("GET https://keys.example/v1?idx=12&token=abc failed")
        self.assertEqual(text, "GET https://keys.example/v1 failed")

    def test_basic_auth_and_api_keys_are_masked(self) -> None:
        self.assertEqual(sanitize_text("Authorization: Basic c2VjcmV0LWtleQ=="), "Authorization: Basic ***")
        self.assertEqual(sanitize_text("api_key=hunter2"), "api_key=***")

    def test_secret_fields_are_replaced(self) -> None:
        payload = sanitize_value({"keypair": "5abc", "nested": {"siv_key": "s"}, "ok": "value"})
        self.assertEqual(payload, {"keypair": "***", "nested": {"siv_key": "***"}, "ok": "value"})


class JsonFormatterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.records: list[logging.LogRecord] = []
        self.logger = logging.getLogger("test.logging.json")
        self.logger.handlers.clear()
        self.logger.propagate = False
        self.logger.setLevel(logging.DEBUG)

        records = self.records

        class Capture(logging.Handler):
            def emit(self, record: logging.LogRecord) -> None:
                records.append(record)

        self.logger.addHandler(Capture())

    def test_log_event_emits_structured_json(self) -> None:
        log_event(
            self.logger,
            level="critical",
            event="bundle_tamper_detected",
            message="Signed bundle does not match",
            request_id="abc",
            bundle_index=2,
            private_key="never",
        )

        self.assertEqual(len(self.records), 1)
        payload = json.loads(JsonFormatter().format(self.records[0]))
        self.assertEqual(payload["level"], "CRITICAL")
        self.assertEqual(payload["event"], "bundle_tamper_detected")
        self.assertEqual(payload["bundle_index"], 2)
        self.assertEqual(payload["private_key"], "***")

    def test_unknown_level_falls_back_to_info(self) -> None:
        log_event(self.logger, level="chatty", event="x", message="y")
        self.assertEqual(self.records[0].levelno, logging.INFO)


if __name__ == "__main__":
    unittest.main()
