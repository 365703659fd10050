import requests
from django.conf import settings


class HostedApiError(Exception):
    pass


def hosted_request(postdata: dict, *, check_http_code: bool = True):
    """
    POST a form-encoded action to the hosted broker and return the decoded JSON.

    Every failure raises HostedApiError; best-effort callers catch it.
    """
    if not settings.HOSTED_API_URL or not settings.LICENSE_KEY:
        raise HostedApiError("API URL or License Key not set")

    data = {
        "license_key": settings.LICENSE_KEY,
        "plugin_version": settings.PLUGIN_VERSION,
        **postdata,
    }

    try:
        resp = requests.post(settings.HOSTED_API_URL, data=data, timeout=settings.HOSTED_API_TIMEOUT)
    except requests.RequestException as e:
        raise HostedApiError(f"Request error: {e}") from e

    if not resp.content:
        raise HostedApiError("API returned empty response")

    try:
        payload = resp.json()
    except ValueError as e:
        preview = resp.text[:200]
        raise HostedApiError(f"Failed to decode JSON response ({e}). Response preview: {preview}") from e

    if check_http_code and not (200 <= resp.status_code < 300):
        if isinstance(payload, dict) and "code" in payload and "message" in payload:
            error = f"API Error: {payload['message']} (code: {payload['code']})"
        else:
            error = f"API returned HTTP {resp.status_code}. Response: {resp.text[:200]}"
        raise HostedApiError(error)

    return payload

