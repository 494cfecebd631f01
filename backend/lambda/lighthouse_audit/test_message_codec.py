"""Dispatch message codec tests: structured form, legacy delimited form, rejection of bad payloads."""

from __future__ import annotations

import json
import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(__file__))

from errors import MalformedMessageError  # noqa: E402
from message_codec import AuditMode, DeviceClass, DispatchMessage, decode, encode  # noqa: E402


class EncodeTests(unittest.TestCase):
    def test_encode_writes_compact_json_with_optional_fields(self) -> None:
        payload = encode(DispatchMessage("home", AuditMode.BLOCKED, DeviceClass.DESKTOP, "b-1"))
        self.assertEqual(json.loads(payload), {"id": "home", "mode": "3PBlocked", "device": "desktop", "batch": "b-1"})
        self.assertNotIn(" ", payload)

    def test_encode_omits_unset_device_and_batch(self) -> None:
        self.assertEqual(json.loads(encode(DispatchMessage("home"))), {"id": "home", "mode": "3PIncluded"})

    def test_encode_rejects_empty_identity(self) -> None:
        with self.assertRaises(ValueError):
            encode(DispatchMessage(""))

    def test_encode_rejects_empty_batch(self) -> None:
        with self.assertRaises(ValueError):
            encode(DispatchMessage("home", batch_id=""))

    def test_identity_containing_separator_survives(self) -> None:
        message = DispatchMessage("help_faq", AuditMode.INCLUDED, DeviceClass.MOBILE, "b_2")
        self.assertEqual(decode(encode(message)), message)


class DecodeTests(unittest.TestCase):
    def test_roundtrip_for_each_mode_and_device(self) -> None:
        for mode in AuditMode:
            for device in (None, DeviceClass.MOBILE, DeviceClass.DESKTOP):
                for batch in (None, "2f1c7a2e-0000-11ee-8000-000000000000"):
                    message = DispatchMessage("home", mode, device, batch)
                    self.assertEqual(decode(encode(message)), message)

    def test_bytes_payload_is_accepted(self) -> None:
        self.assertEqual(decode(b'{"id":"home"}'), DispatchMessage("home"))

    def test_legacy_delimited_payload(self) -> None:
        self.assertEqual(
            decode("home_3PBlocked_desktop_batch1"),
            DispatchMessage("home", AuditMode.BLOCKED, DeviceClass.DESKTOP, "batch1"),
        )

    def test_legacy_identity_only_uses_defaults(self) -> None:
        message = decode("home")
        self.assertEqual(message.mode, AuditMode.INCLUDED)
        self.assertIsNone(message.device)
        self.assertIsNone(message.batch_id)

    def test_legacy_missing_device_token_is_tolerated(self) -> None:
        self.assertEqual(decode("home_3PIncluded"), DispatchMessage("home", AuditMode.INCLUDED))
        self.assertEqual(decode("home_3PIncluded__b1"), DispatchMessage("home", AuditMode.INCLUDED, None, "b1"))

    def test_all_routes_to_fan_out_regardless_of_other_tokens(self) -> None:
        for payload in ("all", "all_bogus_mode_x_y_z", '{"id":"all","mode":"nope","device":7}', "  all  "):
            message = decode(payload)
            self.assertTrue(message.is_fan_out, payload)
            self.assertEqual(message, DispatchMessage("all"))

    def test_malformed_payloads_raise(self) -> None:
        bad = [
            None,
            "",
            "   ",
            b"\xff\xfe",
            "_3PIncluded_mobile",
            "home_3PIncluded_mobile_b1_extra",
            "home_3PSometimes",
            "home_3PIncluded_tablet",
            "{not json",
            '{"id": "home", "device": "tablet"}',
            '{"mode": "3PIncluded"}',
            '{"id": ""}',
            '{"id": 12}',
            '{"id": "home", "batch": 5}',
            12,
        ]
        for payload in bad:
            with self.assertRaises(MalformedMessageError, msg=repr(payload)):
                decode(payload)

    def test_deeply_nested_json_is_malformed(self) -> None:
        depth = 100_000
        payload = '{"id": "home", "x": ' + '{"a": ' * depth + "1" + "}" * (depth + 1)
        with self.assertRaises(MalformedMessageError):
            decode(payload)


class DebounceKeyTests(unittest.TestCase):
    def test_key_ignores_batch_but_separates_mode_and_device(self) -> None:
        a = DispatchMessage("home", AuditMode.INCLUDED, DeviceClass.MOBILE, "b1")
        b = DispatchMessage("home", AuditMode.INCLUDED, DeviceClass.MOBILE, "b2")
        c = DispatchMessage("home", AuditMode.INCLUDED, DeviceClass.DESKTOP, "b1")
        d = DispatchMessage("home", AuditMode.BLOCKED, DeviceClass.MOBILE, "b1")
        self.assertEqual(a.debounce_key, b.debounce_key)
        self.assertEqual(len({a.debounce_key, c.debounce_key, d.debounce_key}), 3)

    def test_missing_device_uses_default_slot(self) -> None:
        self.assertEqual(DispatchMessage("home").debounce_key, "home|3PIncluded|default")


if __name__ == "__main__":
    unittest.main()
