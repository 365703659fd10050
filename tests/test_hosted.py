from unittest.mock import Mock, patch

import requests
from django.test import TestCase, override_settings

from conversions.hosted import HostedApiError, hosted_request


def response(status_code=200, payload=None, content=b"{}"):
    resp = Mock(status_code=status_code, content=content, text=content.decode())
    resp.json.return_value = payload if payload is not None else {}
    return resp


@override_settings(HOSTED_API_URL="https://broker.example/api", LICENSE_KEY="key")
@patch("conversions.hosted.requests.post")
class HostedRequestTests(TestCase):
    def test_posts_license_and_action(self, post):
        post.return_value = response(payload={"can_upload": True}, content=b'{"can_upload": true}')

        data = hosted_request({"action": "can_upload"})

        self.assertEqual(data, {"can_upload": True})
        sent = post.call_args.kwargs["data"]
        self.assertEqual(sent["license_key"], "key")
        self.assertEqual(sent["action"], "can_upload")

    def test_http_error_with_api_message(self, post):
        post.return_value = response(403, {"code": "expired", "message": "License expired"}, b"{...}")

        with self.assertRaisesRegex(HostedApiError, "License expired"):
            hosted_request({"action": "sqs"})

    def test_http_code_check_can_be_skipped(self, post):
        post.return_value = response(403, {"code": "quota", "message": "Quota"}, b"{...}")
        self.assertEqual(hosted_request({"action": "can_upload"}, check_http_code=False)["code"], "quota")

    def test_empty_response(self, post):
        post.return_value = response(content=b"")
        with self.assertRaises(HostedApiError):
            hosted_request({"action": "sqs"})

    def test_transport_error_raises(self, post):
        post.side_effect = requests.ConnectionError("refused")
        with self.assertRaisesRegex(HostedApiError, "Request error"):
            hosted_request({"action": "dynamodb_get_status"})


class HostedConfigTests(TestCase):
    @override_settings(HOSTED_API_URL="", LICENSE_KEY="")
    def test_missing_configuration(self):
        with self.assertRaises(HostedApiError):
            hosted_request({"action": "sqs"})
