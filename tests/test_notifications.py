import json
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError
from django.test import TestCase, override_settings

from conversions.hosted import HostedApiError
from conversions.notifications import HostedPublisher, PublishError, SdkPublisher


@override_settings(SNS_TOPIC_ARN="arn:aws:sns:us-east-1:1:videolesson")
class SdkPublisherTests(TestCase):
    def test_trigger_subtitle_generation(self):
        client = MagicMock()
        client.publish.return_value = {"MessageId": "m-1"}

        result = SdkPublisher(client=client).trigger_subtitle_generation("videolesson/abc", "fr", "abc", "s3://x")

        self.assertEqual(result, {"success": True, "MessageId": "m-1"})
        kwargs = client.publish.call_args.kwargs
        self.assertEqual(kwargs["TopicArn"], "arn:aws:sns:us-east-1:1:videolesson")
        self.assertEqual(json.loads(kwargs["Message"])["target_lang"], "fr")

    def test_client_error(self):
        client = MagicMock()
        client.publish.side_effect = ClientError({"Error": {"Code": "AuthorizationError"}}, "Publish")
        with self.assertRaises(PublishError):
            SdkPublisher(client=client).publish({"action": "subtitle"})

    @override_settings(SNS_TOPIC_ARN="")
    def test_missing_topic(self):
        with self.assertRaises(PublishError):
            SdkPublisher(client=MagicMock()).trigger_subtitle_generation("k", "fr", "abc", "s3://x")


@patch("conversions.notifications.hosted_request")
class HostedPublisherTests(TestCase):
    def test_sends_hash_as_object_key(self, hosted_request):
        hosted_request.return_value = {"MessageId": "m-2"}

        result = HostedPublisher().trigger_subtitle_generation("videolesson/abc", "de", "abc", "s3://x")

        self.assertEqual(result["MessageId"], "m-2")
        sent = hosted_request.call_args[0][0]
        self.assertEqual(sent, {"action": "subtitle", "object_key": "abc", "target_lang": "de", "file_name": "abc"})

    def test_broker_error(self, hosted_request):
        hosted_request.return_value = {"result": "error", "message": "quota"}
        with self.assertRaisesRegex(PublishError, "quota"):
            HostedPublisher().publish("subtitle", {})

        hosted_request.side_effect = HostedApiError("down")
        with self.assertRaises(PublishError):
            HostedPublisher().publish("subtitle", {})
