"""HTTP transport built on :mod:`requests`, one session per client connection."""

from __future__ import annotations

import threading
from typing import Callable, Iterator, List, Optional, Protocol

import requests
import urllib3

from .decoding import extract_error_message
from .llm import ProviderError, RequestTimeout, TransportFailure
from .logging import get_logger
from .translate import WireRequest

LOGGER = get_logger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
STREAM_READ_SIZE = 8192


class CancelToken:
    """Caller-side abort switch for an in-flight exchange."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:  # closing a half-read socket may raise
                LOGGER.debug("Ignoring error while aborting transport: %s", exc)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()


class ResponseStream(Protocol):
    content_type: str

    def chunks(self) -> Iterator[bytes]:
        ...

    def close(self) -> None:
        ...


class Transport(Protocol):
    session: Optional[requests.Session]

    def open(self, wire: WireRequest) -> ResponseStream:
        ...


class HttpResponseStream:
    def __init__(self, response: requests.Response) -> None:
        self._response = response
        self._closed = False
        self.content_type = response.headers.get("Content-Type", "")

    def _read(self) -> Iterator[bytes]:
        raw = self._response.raw
        if getattr(raw, "chunked", False):
            # Providers flush one frame per HTTP chunk.
            yield from self._response.iter_content(chunk_size=None)
            return
        # Without chunked encoding, hand over whatever has arrived instead of waiting for EOF.
        while True:
            chunk = raw.read1(STREAM_READ_SIZE, decode_content=True)
            if not chunk:
                return
            yield chunk

    def chunks(self) -> Iterator[bytes]:
        try:
            for chunk in self._read():
                if chunk:
                    yield chunk
        except urllib3.exceptions.ReadTimeoutError as exc:
            raise RequestTimeout("Timed out waiting for more data from the provider.") from exc
        except requests.exceptions.ConnectionError as exc:
            # ReadTimeoutError surfaces as ConnectionError while streaming.
            if "timed out" in str(exc).lower():
                raise RequestTimeout("Timed out waiting for more data from the provider.") from exc
            raise TransportFailure(f"Connection dropped while streaming: {exc}") from exc
        except (requests.RequestException, urllib3.exceptions.HTTPError) as exc:
            raise TransportFailure(f"Connection dropped while streaming: {exc}") from exc
        except (AttributeError, ValueError, OSError) as exc:
            # urllib3 drops its file object on close, so a read racing close() fails oddly.
            if not self._closed and not isinstance(exc, OSError):
                raise
            raise TransportFailure(f"Response stream closed while reading: {exc!r}") from exc

    def close(self) -> None:
        self._closed = True
        self._response.close()


class HttpTransport:
    def __init__(
        self,
        *,
        proxy: Optional[str] = None,
        connect_timeout: Optional[float] = None,
        read_timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.proxy = proxy
        self.connect_timeout = connect_timeout or DEFAULT_CONNECT_TIMEOUT
        self.read_timeout = read_timeout
        self.session = session or requests.Session()
        # Proxies come from the credential resolver, not from requests' own env lookup.
        self.session.trust_env = False
        if proxy:
            self.session.proxies = {"http": proxy, "https": proxy}

    def open(self, wire: WireRequest) -> HttpResponseStream:
        LOGGER.debug("%s %s", wire.method, _redact_url(wire.url))
        try:
            response = self.session.request(
                wire.method,
                wire.url,
                headers=wire.headers,
                data=wire.content(),
                stream=True,
                timeout=(self.connect_timeout, self.read_timeout),
            )
        except requests.Timeout as exc:
            raise RequestTimeout(f"Timed out connecting to {_redact_url(wire.url)}") from exc
        except requests.RequestException as exc:
            raise TransportFailure(f"Unable to reach {_redact_url(wire.url)}: {exc}") from exc

        if response.status_code >= 400:
            try:
                body = response.text
            finally:
                response.close()
            raise ProviderError(
                f"{response.status_code}: {extract_error_message(body)}",
                status=response.status_code,
                body=body,
            )
        return HttpResponseStream(response)

    def close(self) -> None:
        self.session.close()


def _redact_url(url: str) -> str:
    for marker in ("key=", "access_token="):
        if marker in url:
            head, _, tail = url.partition(marker)
            _, amp, rest = tail.partition("&")
            url = f"{head}{marker}***{amp}{rest}"
    return url
