import json
import logging
import xml.etree.ElementTree as ET

import boto3
import requests
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings
from django.core.cache import cache as default_cache

from .hosted import HostedApiError, hosted_request
from .results import StoreResult

logger = logging.getLogger(__name__)

AREAS = ("input", "output")


def aws_session():
    return boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )


def get_aws_client(service: str):
    return aws_session().client(service)


def get_s3_client():
    """
    SDK client for server-side upload/list/delete.
    """
    return aws_session().client(
        "s3",
        endpoint_url=settings.S3_ENDPOINT_URL,
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        ),
    )


def _client_error(e: ClientError, action: str) -> StoreResult:
    meta = e.response.get("ResponseMetadata", {})
    err = e.response.get("Error", {})
    return StoreResult.failure(
        f"Error {action}: {err.get('Code', '')}:{err.get('Message', str(e))}",
        status_code=meta.get("HTTPStatusCode"),
        code=err.get("Code"),
    )


def _group_prefixes(keys) -> list:
    """First path segment of every key, de-duplicated in order."""
    prefixes = []
    for key in keys:
        prefix = key.split("/", 1)[0]
        if prefix not in prefixes:
            prefixes.append(prefix)
    return prefixes


class SdkObjectStore:
    """Object store backed by direct S3 calls with configured credentials."""

    def __init__(self, area: str, client=None):
        if area not in AREAS:
            raise ValueError(f"Invalid bucket type: {area}")
        self.area = area
        self.bucket = settings.S3_INPUT_BUCKET if area == "input" else settings.S3_OUTPUT_BUCKET
        self.bucket_key = settings.BUCKET_KEY
        self.client = client or get_s3_client()

    def _key(self, key: str) -> str:
        return f"{self.bucket_key}/{key}"

    def can_upload(self) -> StoreResult:
        return StoreResult.success(True)

    def upload(self, key: str, body, metadata: dict | None = None) -> StoreResult:
        params = {"Bucket": self.bucket, "Key": self._key(key), "Body": body}
        if metadata:
            params["Metadata"] = {k: str(v) for k, v in metadata.items()}
        try:
            resp = self.client.put_object(**params)
        except ClientError as e:
            return _client_error(e, "putting object")
        except BotoCoreError as e:
            return StoreResult.failure(f"Error putting object: {e}")
        status = resp.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return StoreResult.success({"etag": resp.get("ETag")}, status_code=status)

    def list(self, prefix: str = "", continuation_token: str | None = None, delimiter: bool = False) -> StoreResult:
        params = {"Bucket": self.bucket, "Prefix": self._key(prefix)}
        if delimiter:
            params["Delimiter"] = "/"
        if continuation_token:
            params["ContinuationToken"] = continuation_token
        try:
            resp = self.client.list_objects_v2(**params)
        except ClientError as e:
            return _client_error(e, "listing objects")
        except BotoCoreError as e:
            return StoreResult.failure(f"Error listing objects: {e}")
        return StoreResult.success({
            "items": [{"key": o["Key"], "size": int(o.get("Size", 0))} for o in resp.get("Contents", [])],
            "prefixes": [p["Prefix"] for p in resp.get("CommonPrefixes", [])],
            "truncated": bool(resp.get("IsTruncated")),
            "next_token": resp.get("NextContinuationToken"),
        })

    def delete(self, key: str) -> StoreResult:
        # S3 answers 204 for keys that are already gone.
        try:
            resp = self.client.delete_object(Bucket=self.bucket, Key=self._key(key))
        except ClientError as e:
            return _client_error(e, "deleting object")
        except BotoCoreError as e:
            return StoreResult.failure(f"Error deleting object: {e}")
        return StoreResult.success(True, status_code=resp.get("ResponseMetadata", {}).get("HTTPStatusCode"))

    def delete_many(self, keys) -> dict:
        responses = {}
        for prefix in _group_prefixes(keys):
            errors = []
            try:
                paginator = self.client.get_paginator("list_objects_v2")
                for page in paginator.paginate(Bucket=self.bucket, Prefix=self._key(prefix)):
                    objects = [{"Key": o["Key"]} for o in page.get("Contents", [])]
                    if not objects:
                        continue
                    resp = self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": objects})
                    for err in resp.get("Errors", []):
                        errors.append(f"Object: {err.get('Key')}, Error: {err.get('Message')}")
            except (ClientError, BotoCoreError) as e:
                errors.append(str(e))
            responses[prefix] = {"success": not errors, "errors": errors}
        return responses

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._key(key))
            return True
        except ClientError as e:
            if e.response.get("ResponseMetadata", {}).get("HTTPStatusCode") != 404:
                logger.warning("object_exists_check_failed key=%s error=%s", key, e)
            return False
        except BotoCoreError as e:
            logger.warning("object_exists_check_failed key=%s error=%s", key, e)
            return False


class HostedObjectStore:
    """
    Object store reached through the hosted broker.

    Every call first asks the broker for a signed URL, then talks to that URL
    directly.
    """

    ACTION_UPLOAD_OBJECT = "upload_object"
    ACTION_CAN_UPLOAD = "can_upload"
    ACTION_DELETE_OBJECT = "delete_object"
    ACTION_DELETE_MULTIPLE_OBJECTS = "delete_objects"
    ACTION_LIST_OBJECTS = "list_objects"

    def __init__(self, area: str):
        if area not in AREAS:
            raise ValueError(f"Invalid bucket type: {area}")
        self.area = area
        self.bucket_key = settings.BUCKET_KEY
        self.timeout = settings.HOSTED_API_TIMEOUT

    def _signed_url(self, key: str, action: str, **extra) -> str:
        data = hosted_request({"bucket_type": self.area, "action": action, "key": key, **extra})
        if isinstance(data, dict) and data.get("code") == "invalid_action":
            raise HostedApiError(f"Error: {data.get('message')}")
        if not isinstance(data, dict) or "signed_url" not in data:
            raise HostedApiError(f"Signed URL not found in response: {data!r}")
        return data["signed_url"]

    def can_upload(self) -> StoreResult:
        try:
            data = hosted_request({"action": self.ACTION_CAN_UPLOAD}, check_http_code=False)
        except HostedApiError as e:
            logger.warning("can_upload_check_failed error=%s", e)
            return StoreResult.failure(
                "Failed to check upload limit. Please try again later.", code="network_error"
            )
        if isinstance(data, dict) and "code" in data and "message" in data:
            return StoreResult.failure(data["message"], code=data["code"])
        if isinstance(data, dict) and data.get("can_upload") is True:
            return StoreResult.success(True)
        return StoreResult.failure("Unexpected response from server.", code="unknown_error")

    def upload(self, key: str, body, metadata: dict | None = None) -> StoreResult:
        allowed = self.can_upload()
        if not allowed.ok:
            return StoreResult.failure(allowed.error, code="upload_denied")

        extra = {}
        if metadata:
            extra["metadata"] = json.dumps(metadata)
        headers = {f"x-amz-meta-{k}": str(v) for k, v in (metadata or {}).items()}
        try:
            url = self._signed_url(key, self.ACTION_UPLOAD_OBJECT, **extra)
            resp = requests.put(url, data=body, headers=headers, timeout=self.timeout)
        except (HostedApiError, requests.RequestException) as e:
            return StoreResult.failure(f"Error putting object: {e}")
        if resp.status_code != 200:
            return StoreResult.failure(
                f"Failed to upload object. HTTP Status Code: {resp.status_code}",
                status_code=resp.status_code,
            )
        return StoreResult.success({"etag": resp.headers.get("ETag")}, status_code=resp.status_code)

    def list(self, prefix: str = "", continuation_token: str | None = None, delimiter: bool = False) -> StoreResult:
        extra = {}
        if continuation_token:
            extra["continuationtoken"] = continuation_token
        if delimiter:
            extra["delimit"] = "1"
        try:
            url = self._signed_url(prefix, self.ACTION_LIST_OBJECTS, **extra)
            resp = requests.get(url, timeout=self.timeout)
        except (HostedApiError, requests.RequestException) as e:
            return StoreResult.failure(f"Error listing objects: {e}")
        if not 200 <= resp.status_code < 300:
            code, message = _error_details(resp.content)
            return StoreResult.failure(
                f"Unexpected HTTP response code {resp.status_code}: {message}",
                status_code=resp.status_code,
                code=code,
            )
        try:
            return StoreResult.success(parse_list_result(resp.content))
        except ET.ParseError as e:
            return StoreResult.failure(f"Failed to parse XML: {e}", status_code=resp.status_code)

    def delete(self, key: str) -> StoreResult:
        try:
            url = self._signed_url(key, self.ACTION_DELETE_OBJECT)
            resp = requests.delete(url, timeout=self.timeout)
        except (HostedApiError, requests.RequestException) as e:
            return StoreResult.failure(f"Error deleting object: {e}")
        if resp.status_code not in (200, 204):
            code, message = _error_details(resp.content)
            return StoreResult.failure(
                f"Unexpected HTTP response code {resp.status_code}: {message}",
                status_code=resp.status_code,
                code=code,
            )
        return StoreResult.success(True, status_code=resp.status_code)

    def delete_many(self, keys) -> dict:
        responses = {}
        for prefix in _group_prefixes(keys):
            try:
                data = hosted_request({
                    "bucket_type": self.area,
                    "action": self.ACTION_DELETE_MULTIPLE_OBJECTS,
                    "key": prefix,
                })
            except HostedApiError as e:
                responses[prefix] = {"success": False, "errors": [str(e)]}
                continue
            errors = list(data.get("errors") or []) if isinstance(data, dict) else []
            success = bool(data.get("success", not errors)) if isinstance(data, dict) else False
            responses[prefix] = {"success": success, "errors": errors}
        return responses

    def exists(self, key: str) -> bool:
        result = self.list(key)
        if not result.ok:
            logger.warning("object_exists_check_failed key=%s error=%s", key, result.error)
            return False
        full_key = f"{self.bucket_key}/{key}"
        return any(item["key"] == full_key for item in result.value["items"])


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _text(node, name: str):
    for child in node:
        if _local(child.tag) == name:
            return child.text
    return None


def _error_details(content: bytes):
    """Code and message of an S3 <Error> document, or (None, "Unknown error")."""
    if not content or b"<Error" not in content:
        return None, "Unknown error"
    try:
        root = ET.fromstring(content)
    except ET.ParseError:
        return None, "Unknown error"
    return _text(root, "Code"), _text(root, "Message") or "Unknown error"


def parse_list_result(content: bytes) -> dict:
    """Normalise an S3 ListObjectsV2 XML document to the list() result shape."""
    root = ET.fromstring(content)
    items, prefixes = [], []
    for child in root:
        tag = _local(child.tag)
        if tag == "Contents":
            items.append({"key": _text(child, "Key"), "size": int(_text(child, "Size") or 0)})
        elif tag == "CommonPrefixes":
            prefixes.append(_text(child, "Prefix"))
    return {
        "items": items,
        "prefixes": prefixes,
        "truncated": (_text(root, "IsTruncated") or "").lower() == "true",
        "next_token": _text(root, "NextContinuationToken"),
    }


def object_store(area: str):
    """Pick the backend once, from HOSTING_TYPE."""
    if settings.HOSTING_TYPE == "hosted":
        return HostedObjectStore(area)
    return SdkObjectStore(area)


def iter_objects(store, prefix: str):
    """Yield every object under prefix, following continuation tokens."""
    token = None
    while True:
        page = store.list(prefix, token).unwrap()
        yield from page["items"]
        token = page["next_token"] if page["truncated"] else None
        if not token:
            break


class PrefixCache:
    """
    Cached list of the content hashes present in a bucket area.

    refresh() drops and reloads the listing, delete() only drops it.
    """

    KEY = "conversions:all_prefixes"

    def __init__(self, store, cache=None, timeout: int | None = None):
        self.store = store
        self.cache = cache or default_cache
        self.timeout = settings.PREFIX_CACHE_TIMEOUT if timeout is None else timeout

    def get(self) -> list:
        prefixes = self.cache.get(self.KEY)
        if prefixes is not None:
            return prefixes
        prefixes = self._load()
        self.cache.set(self.KEY, prefixes, self.timeout)
        return prefixes

    def refresh(self) -> list:
        self.delete()
        return self.get()

    def delete(self) -> None:
        self.cache.delete(self.KEY)

    def _load(self) -> list:
        prefixes = []
        token = None
        while True:
            page = self.store.list("", token, delimiter=True).unwrap()
            for prefix in page["prefixes"]:
                # "videolesson/<hash>/" -> "<hash>"
                cleaned = prefix.split("/", 1)[1] if "/" in prefix else prefix
                prefixes.append(cleaned.rstrip("/"))
            token = page["next_token"] if page["truncated"] else None
            if not token:
                break
        return prefixes
