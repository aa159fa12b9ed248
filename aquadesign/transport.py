"""
Blocking JSON-over-HTTP helper shared by the engine, design and species clients.

Plain urllib: the collaborators speak small JSON bodies and we never need
streaming. Callers run it through `asyncio.to_thread` so the event loop keeps
servicing edits while a request is outstanding.
"""

import json
import logging
import urllib.error
import urllib.request
from typing import Optional

logger = logging.getLogger(__name__)


class HttpError(Exception):
    """Non-2xx response or a failure to reach the server at all."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body or {}


def error_message(body: dict, fallback: str) -> str:
    """Pull the human-readable message out of a collaborator error body."""
    if isinstance(body, dict):
        for key in ("error", "details", "message"):
            if body.get(key):
                return str(body[key])
    return fallback


def _decode(raw: bytes) -> dict:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {"data": parsed}


def request_json(method: str, url: str, payload: Optional[dict] = None,
                 token: str = "", timeout: float = 30) -> dict:
    """
    Send a JSON request and return the decoded JSON body.

    Raises HttpError for HTTP error statuses (with the decoded error body) and
    for connection failures / timeouts (status_code None).
    """
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = urllib.request.Request(url, data=data, headers=headers, method=method)

    logger.debug("%s %s", method, url)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return _decode(response.read())
    except urllib.error.HTTPError as e:
        body = _decode(e.read())
        message = error_message(body, f"HTTP {e.code}: {e.reason}")
        raise HttpError(message, status_code=e.code, body=body) from e
    except urllib.error.URLError as e:
        raise HttpError(f"Could not reach {url}: {e.reason}") from e
    except TimeoutError as e:
        raise HttpError(f"Timed out after {timeout}s calling {url}") from e
