"""
Status channels reporting on conversion jobs.

Two channels exist. The key-value status table gives one record per job and
is always preferred. The message queue is the older broadcast channel: it
carries transcoder and subtitle events for every tenant and delivers them at
least once, so messages are filtered by tenant and de-duplicated by payload
hash before they are stored as QueueMessage rows.
"""
import hashlib
import json
import logging
from decimal import Decimal

import requests
from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings
from django.db import transaction

from .hosted import HostedApiError, hosted_request
from .models import ConversionJob, ConversionStatus, QueueMessage, SubtitleJob
from .storage import get_aws_client

logger = logging.getLogger(__name__)

DEFAULT_STATUS_TABLE = "videolesson-transcoding-status"

_deserializer = TypeDeserializer()


class ChannelError(Exception):
    pass


def message_hash(payload: str) -> str:
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def _plain(value):
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


# -----------------------------------------------------
# Key-value status table
# -----------------------------------------------------
class SdkStatusTable:
    def __init__(self, client=None):
        self.table_name = settings.DYNAMODB_TABLE_NAME or DEFAULT_STATUS_TABLE
        self.client = client or get_aws_client("dynamodb")

    def get_status(self, content_hash: str) -> dict | None:
        try:
            resp = self.client.get_item(
                TableName=self.table_name,
                Key={
                    "contenthash": {"S": content_hash},
                    "domainid": {"S": str(settings.BUCKET_KEY)},
                },
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("dynamodb_get_item_failed hash=%s error=%s", content_hash, e)
            return None

        item = resp.get("Item")
        if not item:
            return None
        try:
            return {k: _plain(_deserializer.deserialize(v)) for k, v in item.items()}
        except (TypeError, ValueError) as e:
            logger.warning("dynamodb_item_malformed hash=%s error=%s", content_hash, e)
            return None


class HostedStatusTable:
    def get_status(self, content_hash: str) -> dict | None:
        try:
            data = hosted_request({"action": "dynamodb_get_status", "contenthash": content_hash})
        except HostedApiError as e:
            logger.warning("hosted_status_unavailable hash=%s error=%s", content_hash, e)
            return None
        if not isinstance(data, dict) or "error" in data:
            return None
        return data


def status_table():
    """The key-value channel in use, or None when it is not configured."""
    if settings.HOSTING_TYPE == "hosted":
        return HostedStatusTable()
    if settings.DYNAMODB_TABLE_NAME:
        return SdkStatusTable()
    return None


# -----------------------------------------------------
# Message queue
# -----------------------------------------------------
def strip_bucket_key(object_key: str) -> str:
    prefix = f"{settings.BUCKET_KEY}/"
    return object_key[len(prefix):] if object_key.startswith(prefix) else object_key


def belongs_to_site(object_key: str, site_id: str | None) -> bool:
    """
    Messages name their tenant through the bucket key in front of the object
    key. Older messages carry a bare hash and are matched on the siteid
    attribute instead.
    """
    parts = object_key.split("/", 1)
    bucket_key = parts[0] if len(parts) > 1 else None
    if bucket_key == settings.BUCKET_KEY:
        return True
    return bucket_key is None and site_id == settings.SITE_IDENTIFIER


def parse_sqs_message(raw: dict) -> dict | None:
    try:
        body = json.loads(raw["Body"])
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("sqs_message_malformed id=%s error=%s", raw.get("MessageId"), e)
        return None
    if not isinstance(body, dict) or not body.get("objectkey") or not body.get("timestamp"):
        logger.warning("sqs_message_incomplete id=%s", raw.get("MessageId"))
        return None

    payload = json.dumps(body.get("message"))
    site_id = raw.get("MessageAttributes", {}).get("siteid", {}).get("StringValue")
    return {
        "object_key": body["objectkey"],
        "process": str(body.get("process", "")),
        "status": str(body.get("status", "")).upper(),
        "message": payload,
        "sent_time": str(body["timestamp"]),
        "message_hash": message_hash(payload),
        "site_id": site_id,
        "receipts": [raw.get("ReceiptHandle")],
    }


class SdkMessageQueue:
    BATCH_SIZE = 10     # SQS maximum per receive call

    def __init__(self, client=None, max_messages: int | None = None):
        self.queue_url = settings.SQS_QUEUE_URL
        self.max_messages = max_messages or settings.QUEUE_MAX_MESSAGES
        self.client = client or get_aws_client("sqs")

    def receive_messages(self) -> list:
        messages = {}
        received = 0
        while received < self.max_messages:
            resp = self.client.receive_message(
                QueueUrl=self.queue_url,
                AttributeNames=["All"],
                MessageAttributeNames=["All"],
                MaxNumberOfMessages=self.BATCH_SIZE,
                VisibilityTimeout=60,
                WaitTimeSeconds=10,
            )
            batch = resp.get("Messages") or []
            if not batch:
                break
            received += len(batch)

            for raw in batch:
                msg = parse_sqs_message(raw)
                if msg is None:
                    # Unreadable, it would only come back forever.
                    self._delete(raw.get("ReceiptHandle"))
                    continue
                if not belongs_to_site(msg["object_key"], msg["site_id"]):
                    continue
                if msg["message_hash"] in messages:
                    messages[msg["message_hash"]]["receipts"].extend(msg["receipts"])
                else:
                    messages[msg["message_hash"]] = msg
        return list(messages.values())

    def acknowledge(self, messages) -> None:
        for msg in messages:
            for receipt in msg.get("receipts", []):
                self._delete(receipt)

    def _delete(self, receipt):
        if not receipt:
            return
        try:
            self.client.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt)
        except (ClientError, BotoCoreError) as e:
            logger.warning("sqs_delete_failed error=%s", e)


class HostedMessageQueue:
    """The broker drains the queue itself and returns messages for the hashes asked about."""

    def _pending_hashes(self) -> list:
        keys = list(
            ConversionJob.objects.filter(status=ConversionStatus.IN_PROGRESS)
            .values_list("content_hash", flat=True)
        )
        keys += list(
            SubtitleJob.objects.filter(
                status__in=[SubtitleJob.Status.PENDING, SubtitleJob.Status.PROCESSING]
            ).values_list("content_hash", flat=True).distinct()
        )
        return list(dict.fromkeys(keys))

    def receive_messages(self) -> list:
        keys = self._pending_hashes()
        if not keys:
            return []

        try:
            data = hosted_request({"action": "sqs", "objectkey": json.dumps(keys)})
        except HostedApiError as e:
            raise ChannelError(str(e)) from e

        raw_messages = data.get("messages") if isinstance(data, dict) else data
        messages = {}
        for raw in raw_messages or []:
            try:
                payload = raw["message"]
                if not isinstance(payload, str):
                    payload = json.dumps(payload)
                msg = {
                    "object_key": raw["objectkey"],
                    "process": str(raw["process"]),
                    "status": str(raw["status"]).upper(),
                    "message": payload,
                    "sent_time": str(raw.get("senttime", "")),
                    "message_hash": message_hash(payload),
                }
            except (KeyError, TypeError) as e:
                logger.warning("hosted_message_malformed error=%s", e)
                continue
            messages.setdefault(msg["message_hash"], msg)
        return list(messages.values())

    def acknowledge(self, messages) -> None:
        pass


def message_queue():
    """The queue channel in use, or None when it is not configured."""
    if settings.HOSTING_TYPE == "hosted":
        return HostedMessageQueue()
    if settings.SQS_QUEUE_URL:
        return SdkMessageQueue()
    return None


def ingest_queue(queue) -> int:
    """
    Pull a batch from the queue, store messages not seen before and
    acknowledge the batch. Returns the number of messages received.
    """
    try:
        messages = queue.receive_messages()
    except (ChannelError, ClientError, BotoCoreError, requests.RequestException) as e:
        logger.warning("queue_receive_failed error=%s", e)
        return 0
    if not messages:
        return 0

    hashes = [m["message_hash"] for m in messages]
    with transaction.atomic():
        existing = set(
            QueueMessage.objects.filter(message_hash__in=hashes).values_list("message_hash", flat=True)
        )
        QueueMessage.objects.bulk_create(
            [
                QueueMessage(
                    object_key=strip_bucket_key(m["object_key"]),
                    process=m["process"],
                    status=m["status"],
                    message_hash=m["message_hash"],
                    message=m["message"],
                    sent_time=m["sent_time"],
                )
                for m in messages
                if m["message_hash"] not in existing
            ],
            ignore_conflicts=True,
        )

    queue.acknowledge(messages)
    logger.info("queue_ingested received=%d new=%d", len(messages), len(set(hashes) - existing))
    return len(messages)
