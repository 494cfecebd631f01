"""lighthouse_audit entry point tests: event normalization, SQS partial batches, wiring."""

from __future__ import annotations

import base64
import importlib.util
import json
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.dirname(__file__))

_SPEC = importlib.util.spec_from_file_location(
    "lighthouse_audit_lambda",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
lighthouse_audit = importlib.util.module_from_spec(_SPEC)
assert _SPEC.loader is not None
_SPEC.loader.exec_module(lighthouse_audit)

from config import Settings  # noqa: E402
from errors import CollaboratorUnavailableError, MalformedMessageError  # noqa: E402
from event_state import DynamoEventStateStore, S3EventStateStore  # noqa: E402
from fan_out import SnsMessageSink, SqsMessageSink  # noqa: E402
from targets import TargetSource  # noqa: E402
from trigger_handler import REASON_MALFORMED_MESSAGE, REASON_UNKNOWN_IDENTITY, TriggerHandler, TriggerOutcome  # noqa: E402


def _sqs_record(message_id: str, body: str) -> dict:
    return {"messageId": message_id, "eventSource": "aws:sqs", "body": body}


class ExtractPayloadsTests(unittest.TestCase):
    def test_sns_records(self) -> None:
        event = {"Records": [{"Sns": {"Message": '{"id":"home"}'}}, {"Sns": {"Message": "all"}}]}
        self.assertEqual(lighthouse_audit.extract_payloads(event), ['{"id":"home"}', "all"])

    def test_scheduled_event_means_all(self) -> None:
        event = {"source": "aws.events", "detail-type": "Scheduled Event", "detail": {}}
        self.assertEqual(lighthouse_audit.extract_payloads(event), ["all"])

    def test_direct_invocation(self) -> None:
        self.assertEqual(lighthouse_audit.extract_payloads({"message": "home_3PBlocked"}), ["home_3PBlocked"])

    def test_base64_data_field(self) -> None:
        encoded = base64.b64encode(b"home_3PIncluded_desktop").decode("ascii")
        self.assertEqual(lighthouse_audit.extract_payloads({"data": encoded}), ["home_3PIncluded_desktop"])

    def test_unknown_shape_yields_empty_payload(self) -> None:
        with self.assertLogs(level="WARNING"):
            self.assertEqual(lighthouse_audit.extract_payloads({"foo": 1}), [None])


class LambdaHandlerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.handler = MagicMock()
        self.handler.handle.return_value = TriggerOutcome(status="dispatched", batch_id="b", dispatched=4)
        patcher = patch.object(lighthouse_audit, "_get_trigger_handler", return_value=self.handler)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_sns_event_handles_every_record(self) -> None:
        resp = lighthouse_audit.lambda_handler({"Records": [{"Sns": {"Message": "all"}}]}, None)
        self.assertEqual(resp["status"], "OK")
        self.assertEqual(resp["results"], [{"status": "dispatched", "batch_id": "b", "dispatched": 4}])
        self.handler.handle.assert_called_once_with("all")

    def test_sqs_failures_are_reported_per_record(self) -> None:
        self.handler.handle.side_effect = [
            TriggerOutcome(status="rejected", reason="debounced"),
            CollaboratorUnavailableError("lighthouse", "boom"),
            TriggerOutcome(status="admitted", job_id="j"),
        ]
        event = {"Records": [_sqs_record("m1", "home"), _sqs_record("m2", "help"), _sqs_record("m3", "faq")]}

        resp = lighthouse_audit.lambda_handler(event, None)

        self.assertEqual(resp["batchItemFailures"], [{"itemIdentifier": "m2"}])
        self.assertEqual([r["status"] for r in resp["results"]], ["rejected", "admitted"])
        self.assertEqual(self.handler.handle.call_count, 3)

    def test_non_sqs_errors_propagate(self) -> None:
        self.handler.handle.side_effect = CollaboratorUnavailableError("sns", "down")
        with self.assertRaises(CollaboratorUnavailableError):
            lighthouse_audit.lambda_handler({"message": "all"}, None)

    def test_unexpected_exception_is_not_swallowed_in_sqs_batches(self) -> None:
        self.handler.handle.side_effect = RuntimeError("bug")
        with self.assertRaises(RuntimeError):
            lighthouse_audit.lambda_handler({"Records": [_sqs_record("m1", "home")]}, None)

    def test_malformed_error_type_is_still_a_batch_failure(self) -> None:
        self.handler.handle.side_effect = MalformedMessageError("bad")
        resp = lighthouse_audit.lambda_handler({"Records": [_sqs_record("m1", "x")]}, None)
        self.assertEqual(resp["batchItemFailures"], [{"itemIdentifier": "m1"}])


class SqsPoisonRecordTests(unittest.TestCase):
    def setUp(self) -> None:
        self.handler = TriggerHandler(
            target_source=TargetSource(local_source=[("home", "https://example.com/")]),
            gate=MagicMock(),
            dispatcher=MagicMock(),
            runner=MagicMock(),
            storage=MagicMock(),
            analytics=MagicMock(),
        )
        patcher = patch.object(lighthouse_audit, "_get_trigger_handler", return_value=self.handler)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_deeply_nested_record_does_not_stop_the_batch(self) -> None:
        depth = 100_000
        nested = '{"id": "home", "x": ' + '{"a": ' * depth + "1" + "}" * (depth + 1)
        event = {"Records": [_sqs_record("m1", nested), _sqs_record("m2", "retired-page")]}

        resp = lighthouse_audit.lambda_handler(event, None)

        self.assertEqual(resp["batchItemFailures"], [])
        self.assertEqual(
            [r.get("reason") for r in resp["results"]],
            [REASON_MALFORMED_MESSAGE, REASON_UNKNOWN_IDENTITY],
        )
        self.handler.gate.check_event_state.assert_not_called()
        self.handler.runner.run.assert_not_called()


class BuildTriggerHandlerTests(unittest.TestCase):
    def setUp(self) -> None:
        for name in ("_get_s3", "_get_ddb", "_get_sns", "_get_sqs", "_get_eb"):
            patcher = patch.object(lighthouse_audit, name, return_value=MagicMock(name=name))
            patcher.start()
            self.addCleanup(patcher.stop)

    def test_s3_state_and_sns_sink(self) -> None:
        settings = Settings(
            report_bucket="reports",
            state_bucket="reports",
            dispatch_topic_arn="arn:aws:sns:us-west-2:1:lh",
            thirdparty_to_block=("*.ads.com",),
            source=(("home", "https://example.com/"),),
        )
        handler = lighthouse_audit.build_trigger_handler(settings)
        self.assertIsInstance(handler.gate.store, S3EventStateStore)
        self.assertIsInstance(handler.dispatcher.sink, SnsMessageSink)
        self.assertTrue(handler.dispatcher.blocklist_enabled)
        self.assertEqual(handler.target_source.identities(), ["home"])
        self.assertEqual(handler.runner.blocked_url_patterns, ("*.ads.com",))

    def test_dynamodb_state_and_sqs_sink(self) -> None:
        settings = Settings(state_backend="dynamodb", dispatch_queue_url="https://sqs/lh")
        handler = lighthouse_audit.build_trigger_handler(settings)
        self.assertIsInstance(handler.gate.store, DynamoEventStateStore)
        self.assertIsInstance(handler.dispatcher.sink, SqsMessageSink)
        self.assertFalse(handler.dispatcher.blocklist_enabled)

    def test_no_sink_disables_fan_out(self) -> None:
        with self.assertLogs(level="WARNING"):
            handler = lighthouse_audit.build_trigger_handler(Settings(state_bucket="state"))
        self.assertIsNone(handler.dispatcher)

    def test_handler_is_built_once_per_container(self) -> None:
        lighthouse_audit._trigger_handler = None
        self.addCleanup(setattr, lighthouse_audit, "_trigger_handler", None)
        env = {"CONFIG_PATH": "", "STATE_BUCKET": "state", "DISPATCH_QUEUE_URL": "https://sqs/lh"}
        with patch.dict(os.environ, env, clear=False), patch.object(
            lighthouse_audit, "build_trigger_handler", wraps=lighthouse_audit.build_trigger_handler
        ) as build:
            first = lighthouse_audit._get_trigger_handler()
            second = lighthouse_audit._get_trigger_handler()
        self.assertIs(first, second)
        build.assert_called_once()


if __name__ == "__main__":
    unittest.main()
