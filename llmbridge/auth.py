"""Request signing for dialects whose credentials are not a static header."""

from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlsplit

import requests

from .credentials import ResolvedConnection
from .llm import ConfigurationError, ProviderError, TransportFailure
from .logging import get_logger
from .providers import AuthScheme, ProviderDescriptor
from .translate import WireRequest, append_query

LOGGER = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
BAIDU_TOKEN_URL = "https://aip.baidubce.com/oauth/2.0/token"
DEFAULT_ADC_FILE = Path("~/.config/gcloud/application_default_credentials.json")
AWS_SERVICE = "bedrock"


@dataclass
class _CachedToken:
    value: str
    expires_at: float


class TokenCache:
    """Short-lived access tokens keyed by the credentials that produced them."""

    def __init__(self, *, leeway: float = 60.0) -> None:
        self._tokens: Dict[Tuple[str, ...], _CachedToken] = {}
        self._lock = threading.Lock()
        self.leeway = leeway

    def get(self, key: Tuple[str, ...]) -> Optional[str]:
        with self._lock:
            token = self._tokens.get(key)
            if token is None or token.expires_at - self.leeway <= time.time():
                return None
            return token.value

    def put(self, key: Tuple[str, ...], value: str, expires_in: float) -> None:
        with self._lock:
            self._tokens[key] = _CachedToken(value=value, expires_at=time.time() + expires_in)


# ----------------------------------------------------------------------
# AWS Signature Version 4
# ----------------------------------------------------------------------
def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def sign_aws_v4(
    wire: WireRequest,
    *,
    access_key_id: str,
    secret_access_key: str,
    region: str,
    service: str = AWS_SERVICE,
    session_token: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> None:
    """Add SigV4 ``Authorization`` headers to *wire* in place."""

    now = now or dt.datetime.now(dt.timezone.utc)
    amz_date = now.strftime("%Y%m%dT%H%M%SZ")
    date_stamp = now.strftime("%Y%m%d")

    parts = urlsplit(wire.url)
    canonical_uri = quote(parts.path or "/", safe="/-_.~")
    query = sorted(parse_qsl(parts.query, keep_blank_values=True))
    canonical_query = "&".join(f"{quote(k, safe='-_.~')}={quote(v, safe='-_.~')}" for k, v in query)

    payload_hash = hashlib.sha256(wire.content()).hexdigest()
    wire.headers["host"] = parts.netloc
    wire.headers["x-amz-date"] = amz_date
    if session_token:
        wire.headers["x-amz-security-token"] = session_token

    signed = sorted((name.lower(), value.strip()) for name, value in wire.headers.items())
    canonical_headers = "".join(f"{name}:{value}\n" for name, value in signed)
    signed_headers = ";".join(name for name, _ in signed)

    canonical_request = "\n".join(
        [wire.method, canonical_uri, canonical_query, canonical_headers, signed_headers, payload_hash]
    )
    scope = f"{date_stamp}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join(
        ["AWS4-HMAC-SHA256", amz_date, scope, hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()]
    )

    key = _hmac(f"AWS4{secret_access_key}".encode("utf-8"), date_stamp)
    key = _hmac(key, region)
    key = _hmac(key, service)
    key = _hmac(key, "aws4_request")
    signature = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    wire.headers["Authorization"] = (
        f"AWS4-HMAC-SHA256 Credential={access_key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )


# ----------------------------------------------------------------------
# Token exchanges
# ----------------------------------------------------------------------
def _post_for_token(http: requests.Session, url: str, *, timeout: float, **kwargs) -> dict:  # type: ignore[no-untyped-def]
    try:
        response = http.post(url, timeout=timeout, **kwargs)
    except requests.RequestException as exc:
        raise TransportFailure(f"Unable to reach token endpoint {url}") from exc
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderError(
            f"Token endpoint answered with non-JSON content ({response.status_code}).",
            status=response.status_code,
            body=response.text,
        ) from exc
    if response.status_code >= 400 or "error" in payload:
        message = payload.get("error_description") or payload.get("error") or response.text
        raise ProviderError(f"Token request failed: {message}", status=response.status_code, body=response.text)
    return payload


class RequestSigner:
    """Apply the network-dependent auth schemes to a translated request."""

    def __init__(self, *, tokens: Optional[TokenCache] = None, timeout: float = 30.0) -> None:
        self.tokens = tokens or TokenCache()
        self.timeout = timeout

    def sign(
        self,
        wire: WireRequest,
        descriptor: ProviderDescriptor,
        connection: ResolvedConnection,
        http: requests.Session,
    ) -> WireRequest:
        scheme = descriptor.auth
        if scheme is AuthScheme.AWS_SIGV4:
            sign_aws_v4(
                wire,
                access_key_id=connection.values["access_key_id"],
                secret_access_key=connection.values["secret_access_key"],
                region=connection.values["region"],
                session_token=connection.get("session_token"),
            )
        elif scheme is AuthScheme.GOOGLE_OAUTH:
            wire.headers["Authorization"] = f"Bearer {self.google_access_token(connection, http)}"
        elif scheme is AuthScheme.BAIDU_ACCESS_TOKEN:
            wire.url = append_query(wire.url, "access_token", self.baidu_access_token(connection, http))
        return wire

    def google_access_token(self, connection: ResolvedConnection, http: requests.Session) -> str:
        adc_path = Path(connection.get("adc_file") or DEFAULT_ADC_FILE).expanduser()
        key = ("google", str(adc_path))
        cached = self.tokens.get(key)
        if cached:
            return cached
        try:
            credentials = json.loads(adc_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"Cannot read application default credentials at {adc_path}") from exc
        if credentials.get("type") != "authorized_user":
            raise ConfigurationError(
                f"Unsupported credentials type '{credentials.get('type')}' in {adc_path}; "
                "run `gcloud auth application-default login`."
            )
        payload = _post_for_token(
            http,
            GOOGLE_TOKEN_URL,
            timeout=self.timeout,
            data={
                "client_id": credentials.get("client_id", ""),
                "client_secret": credentials.get("client_secret", ""),
                "refresh_token": credentials.get("refresh_token", ""),
                "grant_type": "refresh_token",
            },
        )
        token = str(payload["access_token"])
        self.tokens.put(key, token, float(payload.get("expires_in", 3600)))
        LOGGER.debug("Refreshed Vertex AI access token from %s", adc_path)
        return token

    def baidu_access_token(self, connection: ResolvedConnection, http: requests.Session) -> str:
        api_key = connection.values["api_key"]
        secret_key = connection.values["secret_key"]
        key = ("baidu", api_key, hashlib.sha256(secret_key.encode("utf-8")).hexdigest())
        cached = self.tokens.get(key)
        if cached:
            return cached
        payload = _post_for_token(
            http,
            BAIDU_TOKEN_URL,
            timeout=self.timeout,
            params={"grant_type": "client_credentials", "client_id": api_key, "client_secret": secret_key},
        )
        token = str(payload["access_token"])
        self.tokens.put(key, token, float(payload.get("expires_in", 2592000)))
        LOGGER.debug("Fetched Ernie access token for client %s", connection.client)
        return token
