"""
Transport client: one JSON request in, one classified outcome out.

- requests.Session with a pooled HTTPAdapter, safe to share across threads.
- Outcomes: Ok (2xx), NotFound (404), Failed (any other status >= 300),
  TransportFailure (DNS, connection refused, timeout, unserializable body).
- No retries: the adapter is mounted with max_retries=0.
- The response is always closed before returning, on every exit path.
- Caller-driven cancellation through a threading.Event: an in-flight call
  returns as soon as the event is set and its late response is never applied.

Usage:
    transport = Transport(token="...", verify_tls=True, timeout_sec=30)
    outcome = transport.send("GET", "http://tacl.local:8080/groups/admins")
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import requests
from requests.adapters import HTTPAdapter

log = logging.getLogger("psync.http")

_LOG_PREVIEW = int(os.getenv("PSYNC_HTTP_PREVIEW", "600"))
_CANCEL_POLL_SEC = 0.02
_REDACT_KEYS = {"token", "authorization", "password", "client_secret", "api_key", "x-api-key"}


def _short_json(obj: Any, limit: int = _LOG_PREVIEW) -> str:
    try:
        if isinstance(obj, (dict, list)):
            s = json.dumps(obj, ensure_ascii=False)
        else:
            s = str(obj)
        return s[:limit]
    except (TypeError, ValueError):
        return f"<unserializable:{type(obj).__name__}>"


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            if str(k).lower() in _REDACT_KEYS:
                out[k] = "***REDACTED***"
            else:
                out[k] = _redact(v)
        return out
    if isinstance(obj, list):
        return [_redact(x) for x in obj]
    return obj


# ---------- Outcomes ----------

@dataclass(frozen=True)
class Ok:
    """2xx response; `body` holds the raw bytes (possibly empty)."""
    body: bytes
    status: int = 200

    def json(self) -> Any:
        if not self.body:
            return None
        return json.loads(self.body.decode("utf-8"))


@dataclass(frozen=True)
class NotFound:
    """404 response: the addressed entity does not exist."""
    url: str


@dataclass(frozen=True)
class Failed:
    """Any other status >= 300; `message` is the response body verbatim."""
    status: int
    message: str
    url: str


@dataclass(frozen=True)
class TransportFailure:
    """No response was produced (or the request could not be built)."""
    message: str
    url: str
    cancelled: bool = False


Outcome = Union[Ok, NotFound, Failed, TransportFailure]


class Transport:
    """Stateless JSON-over-HTTP sender apart from its connection pool."""

    def __init__(
        self,
        *,
        token: str = "",
        verify_tls: bool = True,
        timeout_sec: Optional[float] = 30,
        pool_maxsize: int = 10,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.verify_tls = bool(verify_tls)
        self.timeout = float(timeout_sec) if timeout_sec else None
        self.session = session or requests.Session()
        adapter = HTTPAdapter(pool_connections=pool_maxsize, pool_maxsize=pool_maxsize, max_retries=0)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        self.session.headers.update({"Accept": "application/json", "User-Agent": "policysync/HTTPClient"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------- Public API -------------
    # ------------- Public API -------------

    def send(
        self,
        method: str,
        url: str,
        body: Optional[Any] = None,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> Outcome:
        """
        Issue exactly one request and classify the response.

        With a `cancel` event the request runs on a worker thread and the call
        returns as soon as the event is set, leaving the worker to finish on
        its own. A response that has already arrived is returned as is.
        """
        method = method.upper()
        headers: Dict[str, str] = {}
        data: Optional[bytes] = None
        if body is not None:
            try:
                data = json.dumps(body).encode("utf-8")
            except (TypeError, ValueError) as exc:
                log.error("%s %s: cannot serialize body: %s", method, url, exc)
                return TransportFailure(message=f"cannot serialize body: {exc}", url=url)
            headers["Content-Type"] = "application/json"
            log.debug("%s %s payload=%s", method, url, _short_json(_redact(body)))

        if cancel is None:
            return self._perform(method, url, data, headers)
        if cancel.is_set():
            return TransportFailure(message="cancelled before send", url=url, cancelled=True)
        return self._perform_cancellable(method, url, data, headers, cancel)

    # ------------- Internal -------------

    def _perform(self, method: str, url: str, data: Optional[bytes], headers: Dict[str, str]) -> Outcome:
        start = time.time()
        try:
            resp = self.session.request(
                method,
                url,
                data=data,
                headers=headers,
                timeout=self.timeout,
                verify=self.verify_tls,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            log.warning("%s %s failed: %s", method, url, exc)
            return TransportFailure(message=str(exc), url=url)

        try:
            raw = resp.content or b""
            status = resp.status_code
        except requests.RequestException as exc:
            log.warning("%s %s failed while reading body: %s", method, url, exc)
            return TransportFailure(message=str(exc), url=url)
        finally:
            resp.close()

        elapsed = (time.time() - start) * 1000
        if status == 404:
            log.debug("%s %s -> 404 in %.1fms", method, url, elapsed)
            return NotFound(url=url)
        if status >= 300:
            text = raw.decode("utf-8", errors="replace")
            log.warning("%s %s -> %s: %s", method, url, status, text[:200])
            return Failed(status=status, message=text, url=url)

        log.debug("%s %s -> %s in %.1fms", method, url, status, elapsed)
        return Ok(body=raw, status=status)

    def _perform_cancellable(
        self,
        method: str,
        url: str,
        data: Optional[bytes],
        headers: Dict[str, str],
        cancel: threading.Event,
    ) -> Outcome:
        lock = threading.Lock()
        done = threading.Event()
        box: Dict[str, Any] = {"abandoned": False}

        def work() -> None:
            try:
                result: Any = self._perform(method, url, data, headers)
            except Exception as exc:  # re-raised in the calling thread
                result = exc
            with lock:
                if box["abandoned"]:
                    if isinstance(result, Ok):
                        log.warning(
                            "%s %s -> %s arrived after cancel and was not applied: %s",
                            method, url, result.status, _short_json(result.body.decode("utf-8", errors="replace")),
                        )
                    return
                box["result"] = result
                done.set()

        start = time.time()
        threading.Thread(target=work, name="psync-http", daemon=True).start()
        while not done.wait(_CANCEL_POLL_SEC):
            if not cancel.is_set():
                continue
            with lock:
                if "result" not in box:
                    box["abandoned"] = True
                    log.info("%s %s aborted after %.1fms (cancelled)", method, url, (time.time() - start) * 1000)
                    return TransportFailure(message="cancelled in flight", url=url, cancelled=True)
            break

        result = box["result"]
        if isinstance(result, Exception):
            raise result
        return result
