import json
from unittest.mock import MagicMock, patch

import requests

from django.test import TestCase, override_settings

from conversions.channels import (
    HostedMessageQueue,
    HostedStatusTable,
    SdkMessageQueue,
    SdkStatusTable,
    belongs_to_site,
    ingest_queue,
    parse_sqs_message,
)
from conversions.hosted import HostedApiError
from conversions.models import QueueMessage

from .helpers import HASH, make_job


def sqs_message(object_key, receipt, status="complete", site_id=None, message=None):
    raw = {
        "MessageId": receipt,
        "ReceiptHandle": receipt,
        "Body": json.dumps({
            "objectkey": object_key,
            "process": "transcoder",
            "status": status,
            "message": message or {"jobId": "1"},
            "timestamp": "2026-01-01T00:00:00Z",
        }),
    }
    if site_id:
        raw["MessageAttributes"] = {"siteid": {"StringValue": site_id, "DataType": "String"}}
    return raw


class StatusTableTests(TestCase):
    def test_sdk_record_is_deserialised(self):
        client = MagicMock()
        client.get_item.return_value = {"Item": {"status": {"S": "COMPLETE"}, "progress": {"N": "100"}}}

        record = SdkStatusTable(client=client).get_status(HASH)

        self.assertEqual(record, {"status": "COMPLETE", "progress": 100})
        key = client.get_item.call_args.kwargs["Key"]
        self.assertEqual(key["contenthash"], {"S": HASH})
        self.assertEqual(key["domainid"], {"S": "videolesson"})

    def test_sdk_missing_record(self):
        client = MagicMock()
        client.get_item.return_value = {}
        self.assertIsNone(SdkStatusTable(client=client).get_status(HASH))

    def test_sdk_malformed_record_is_no_record(self):
        client = MagicMock()
        client.get_item.return_value = {"Item": {"status": {"XX": "COMPLETE"}}}
        self.assertIsNone(SdkStatusTable(client=client).get_status(HASH))

    @override_settings(HOSTED_API_URL="https://broker.example/api", LICENSE_KEY="key")
    @patch("conversions.hosted.requests.post")
    def test_hosted_transport_failure_is_no_record(self, post):
        post.side_effect = requests.ConnectionError("refused")
        self.assertIsNone(HostedStatusTable().get_status(HASH))

    @patch("conversions.channels.hosted_request")
    def test_hosted_error_is_no_record(self, hosted_request):
        hosted_request.return_value = {"error": "not found"}
        self.assertIsNone(HostedStatusTable().get_status(HASH))

        hosted_request.side_effect = HostedApiError("API URL or License Key not set")
        self.assertIsNone(HostedStatusTable().get_status(HASH))


class MessageParsingTests(TestCase):
    def test_tenant_filter(self):
        self.assertTrue(belongs_to_site(f"videolesson/{HASH}", None))
        self.assertFalse(belongs_to_site(f"othersite/{HASH}", None))

    @override_settings(SITE_IDENTIFIER="site-1")
    def test_legacy_messages_match_on_site_id(self):
        self.assertTrue(belongs_to_site(HASH, "site-1"))
        self.assertFalse(belongs_to_site(HASH, "site-2"))

    def test_malformed_body(self):
        self.assertIsNone(parse_sqs_message({"Body": "not json"}))
        self.assertIsNone(parse_sqs_message({"Body": json.dumps({"objectkey": HASH})}))

    def test_parsed_fields(self):
        msg = parse_sqs_message(sqs_message(f"videolesson/{HASH}", "r1"))
        self.assertEqual(msg["status"], "COMPLETE")
        self.assertEqual(msg["message"], json.dumps({"jobId": "1"}))
        self.assertEqual(len(msg["message_hash"]), 32)


class IngestQueueTests(TestCase):
    def test_duplicates_are_stored_once_and_all_acknowledged(self):
        client = MagicMock()
        client.receive_message.side_effect = [
            {"Messages": [
                sqs_message(f"videolesson/{HASH}", "r1"),
                sqs_message(f"videolesson/{HASH}", "r2"),
                sqs_message(f"othersite/{HASH}", "r3", message={"jobId": "2"}),
            ]},
            {"Messages": []},
        ]

        received = ingest_queue(SdkMessageQueue(client=client))

        self.assertEqual(received, 1)
        row = QueueMessage.objects.get()
        self.assertEqual(row.object_key, HASH)
        self.assertEqual(row.status, "COMPLETE")
        deleted = [c.kwargs["ReceiptHandle"] for c in client.delete_message.call_args_list]
        self.assertEqual(deleted, ["r1", "r2"])

    def test_redelivered_message_is_not_stored_again(self):
        client = MagicMock()
        client.receive_message.side_effect = [
            {"Messages": [sqs_message(f"videolesson/{HASH}", "r1")]},
            {"Messages": []},
            {"Messages": [sqs_message(f"videolesson/{HASH}", "r2")]},
            {"Messages": []},
        ]
        queue = SdkMessageQueue(client=client)

        ingest_queue(queue)
        ingest_queue(queue)

        self.assertEqual(QueueMessage.objects.count(), 1)

    @patch("conversions.channels.hosted_request")
    def test_hosted_queue(self, hosted_request):
        make_job()
        hosted_request.return_value = {"messages": [
            {"objectkey": HASH, "process": "transcoder", "status": "complete",
             "message": '{"jobId": "1"}', "senttime": "1"},
        ]}

        self.assertEqual(ingest_queue(HostedMessageQueue()), 1)
        self.assertEqual(json.loads(hosted_request.call_args[0][0]["objectkey"]), [HASH])
        self.assertEqual(QueueMessage.objects.get().status, "COMPLETE")

    @patch("conversions.channels.hosted_request")
    def test_receive_failure_is_not_fatal(self, hosted_request):
        make_job()
        hosted_request.side_effect = HostedApiError("down")
        self.assertEqual(ingest_queue(HostedMessageQueue()), 0)
