from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from typing import Any


class HttpError(Exception):
    def __init__(self, status: int, body: str, headers: dict[str, str] | None = None) -> None:
        super().__init__(f"http_error {status}: {body[:500]}")
        self.status = status
        self.body = body
        self.headers = headers or {}


class HttpTimeout(Exception):
    pass


class NetworkError(Exception):
    pass


def request_json(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: float,
) -> Any:
    """Send a JSON request and decode the JSON body; raw text comes back as {"raw": ...}."""
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        raise HttpError(exc.code, body, dict(exc.headers or {})) from exc
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            raise HttpTimeout(f"timeout after {timeout}s") from exc
        raise NetworkError(f"network_error: {exc.reason}") from exc
    except (socket.timeout, TimeoutError) as exc:
        raise HttpTimeout(f"timeout after {timeout}s") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
