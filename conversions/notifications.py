import json
import logging

from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings

from .hosted import HostedApiError, hosted_request
from .storage import get_aws_client

logger = logging.getLogger(__name__)


class PublishError(Exception):
    pass


class SdkPublisher:
    def __init__(self, client=None):
        self.topic_arn = settings.SNS_TOPIC_ARN
        self.client = client or get_aws_client("sns")

    def publish(self, message) -> dict:
        if isinstance(message, (dict, list)):
            message = json.dumps(message)
        try:
            resp = self.client.publish(TopicArn=self.topic_arn, Message=message)
        except (ClientError, BotoCoreError) as e:
            raise PublishError(f"SNS publish failed: {e}") from e
        return {"success": True, "MessageId": resp.get("MessageId")}

    def trigger_subtitle_generation(self, object_key: str, target_lang: str, file_name: str, s3_uri: str) -> dict:
        if not self.topic_arn:
            raise PublishError("SNS topic ARN not configured")
        return self.publish({
            "action": "subtitle",
            "object_key": object_key,
            "target_lang": target_lang,
            "file_name": file_name,
            "s3_uri": s3_uri,
        })


class HostedPublisher:
    def publish(self, action: str, message: dict) -> dict:
        try:
            data = hosted_request({"action": action, **message})
        except HostedApiError as e:
            raise PublishError(str(e)) from e
        if isinstance(data, dict) and data.get("result") == "error":
            raise PublishError(data.get("message") or "SNS publish failed")
        return {"success": True, "MessageId": data.get("MessageId") if isinstance(data, dict) else None}

    def trigger_subtitle_generation(self, object_key: str, target_lang: str, file_name: str, s3_uri: str) -> dict:
        # The broker resolves bucket and output location from the hash alone.
        return self.publish("subtitle", {
            "object_key": file_name,
            "target_lang": target_lang,
            "file_name": file_name,
        })


def publisher():
    if settings.HOSTING_TYPE == "hosted":
        return HostedPublisher()
    return SdkPublisher()
