"""Parse curl command lines into task request settings."""

from __future__ import annotations

import base64
import json
import logging
import shlex
from dataclasses import dataclass, field
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

_METHOD_FLAGS = {"-X", "--request"}
_HEADER_FLAGS = {"-H", "--header"}
_DATA_FLAGS = {"-d", "--data", "--data-raw", "--data-binary", "--data-ascii"}
_USER_FLAGS = {"-u", "--user"}
_API_KEY_HEADERS = {"x-api-key", "api-key", "apikey"}

# Flags that consume the following argument but are irrelevant here.
_VALUE_FLAGS = {
    "-A",
    "--user-agent",
    "-b",
    "--cookie",
    "-e",
    "--referer",
    "-m",
    "--max-time",
    "--connect-timeout",
    "-o",
    "--output",
    "-x",
    "--proxy",
    "--retry",
}


@dataclass
class ParsedRequest:
    method: str = "GET"
    url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    auth_type: str | None = None
    auth_value: str | None = None


def parse_curl_command(command: str) -> ParsedRequest | None:
    """Parse a curl command. Returns None if it is malformed or has no URL."""
    try:
        tokens = shlex.split(command.replace("\\\n", " "))
    except ValueError as exc:
        logger.warning("Failed to parse curl command: %s", exc)
        return None
    if tokens and tokens[0] == "curl":
        tokens = tokens[1:]

    result = ParsedRequest()
    explicit_method = False
    args = iter(tokens)
    for token in args:
        if token in _METHOD_FLAGS:
            result.method = next(args, "GET").upper()
            explicit_method = True
        elif token in _HEADER_FLAGS:
            name, sep, value = next(args, "").partition(":")
            if sep:
                result.headers[name.strip()] = value.strip()
        elif token in _DATA_FLAGS:
            result.body = next(args, "")
        elif token in _USER_FLAGS:
            credentials = next(args, "")
            result.auth_type = "basic"
            result.auth_value = base64.b64encode(credentials.encode()).decode()
        elif token in _VALUE_FLAGS:
            next(args, None)
        elif token.startswith(("http://", "https://")) and not result.url:
            result.url = token

    if result.body is not None:
        if not explicit_method and result.method == "GET":
            result.method = "POST"
        try:
            result.body = json.dumps(json.loads(result.body), separators=(",", ":"))
        except ValueError:
            pass

    _extract_auth(result)

    if not result.url:
        logger.warning("Failed to extract URL from curl command")
        return None
    return result


def _extract_auth(result: ParsedRequest) -> None:
    """Move Authorization / API-key headers into the auth directive."""
    for name in list(result.headers):
        if name.lower() != "authorization":
            continue
        value = result.headers.pop(name)
        if value.startswith("Bearer "):
            result.auth_type, result.auth_value = "bearer", value[len("Bearer ") :]
        elif value.startswith("Basic "):
            result.auth_type, result.auth_value = "basic", value[len("Basic ") :]
        else:
            result.auth_type, result.auth_value = "custom", value

    for name in list(result.headers):
        if name.lower() in _API_KEY_HEADERS:
            result.auth_type, result.auth_value = "api_key", result.headers.pop(name)
            break


def validate_url(url: str) -> bool:
    """Return True for absolute http(s) URLs."""
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def format_auth_for_display(auth_type: str | None, auth_value: str | None) -> str:
    """Describe an auth directive without revealing the credential."""
    if not auth_type or not auth_value:
        return "None"
    if len(auth_value) > 8:
        masked = f"{auth_value[:4]}****{auth_value[-4:]}"
    else:
        masked = "****"
    labels = {
        "bearer": "Bearer Token",
        "basic": "Basic Auth",
        "api_key": "API Key",
        "custom": "Custom",
    }
    label = labels.get(auth_type)
    return f"{label} ({masked})" if label else "Unknown"
