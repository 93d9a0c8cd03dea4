"""Request signing for exchange REST calls and inbound webhook verification.

Three schemes are supported:

- ``HmacSigner``: Coinbase legacy API keys. ``CB-ACCESS-SIGN`` is the hex
  HMAC-SHA256 of ``timestamp + METHOD + request_path + body`` keyed with the
  raw secret.
- ``JwtSigner``: Coinbase CDP keys. An ES256 JWT scoped to a single
  ``METHOD host/path`` is sent as ``Authorization: Bearer``.
- ``KrakenSigner``: ``API-Sign`` is the base64 HMAC-SHA512 of
  ``path + SHA256(nonce + postdata)`` keyed with the base64-decoded secret.
"""
import base64
import binascii
import hashlib
import hmac
import secrets as _secrets
import time
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlencode, urlsplit

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import ExchangeAPIError, ExchangeErrorType
from .secrets import CoinbaseCredentials, KrakenCredentials, normalize_pem

JWT_LIFETIME_SECONDS = 120
JWT_REFRESH_MARGIN_SECONDS = 5


class HmacSigner:
    def __init__(self, api_key: str, api_secret: str, *, clock: Callable[[], float] = time.time):
        if not api_key or not api_secret:
            raise ExchangeAPIError("HMAC signing requires an API key and secret", ExchangeErrorType.AUTHENTICATION)
        self.api_key = api_key
        self._secret = api_secret.encode("utf-8")
        self._clock = clock

    def signature(self, timestamp: str, method: str, request_path: str, body: Optional[str]) -> str:
        message = timestamp + method.upper() + request_path + (body or "")
        return hmac.new(self._secret, message.encode("utf-8"), hashlib.sha256).hexdigest()

    def headers(self, method: str, request_path: str, body: Optional[str] = None) -> Dict[str, str]:
        timestamp = str(int(self._clock()))
        return {
            "CB-ACCESS-KEY": self.api_key,
            "CB-ACCESS-SIGN": self.signature(timestamp, method, request_path, body),
            "CB-ACCESS-TIMESTAMP": timestamp,
            "Content-Type": "application/json",
        }


def load_ec_private_key(pem: str) -> ec.EllipticCurvePrivateKey:
    """Parse a PEM EC private key (SEC1 or PKCS#8)."""
    pem = normalize_pem(pem) or ""
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as e:
        raise ExchangeAPIError(f"Invalid private key: {e}", ExchangeErrorType.AUTHENTICATION)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ExchangeAPIError("Private key must be an EC key for ES256", ExchangeErrorType.AUTHENTICATION)
    return key


class JwtSigner:
    """ES256 JWT signer with a short-lived per-URI token cache."""

    def __init__(self, key_name: str, private_key_pem: str, *, host: str = "api.coinbase.com", clock: Callable[[], float] = time.time):
        if not key_name or not private_key_pem:
            raise ExchangeAPIError("JWT signing requires a key name and private key", ExchangeErrorType.AUTHENTICATION)
        self.key_name = key_name
        self.host = host
        self._private_key = load_ec_private_key(private_key_pem)
        self._clock = clock
        self._cache: Dict[str, Tuple[str, float]] = {}

    def format_uri(self, method: str, request_path: str) -> str:
        path = urlsplit(request_path).path
        return f"{method.upper()} {self.host}{path}"

    def build_token(self, method: str, request_path: str) -> str:
        uri = self.format_uri(method, request_path)
        now = self._clock()
        cached = self._cache.get(uri)
        if cached and cached[1] > now:
            return cached[0]

        issued = int(now)
        claims = {
            "sub": self.key_name,
            "iss": "cdp",
            "nbf": issued,
            "exp": issued + JWT_LIFETIME_SECONDS,
            "uri": uri,
        }
        token = jwt.encode(
            claims,
            self._private_key,
            algorithm="ES256",
            headers={"kid": self.key_name, "nonce": _secrets.token_hex(16)},
        )
        self._cache[uri] = (token, issued + JWT_LIFETIME_SECONDS - JWT_REFRESH_MARGIN_SECONDS)
        return token

    def headers(self, method: str, request_path: str, body: Optional[str] = None) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.build_token(method, request_path)}",
            "Content-Type": "application/json",
        }


def signer_from_credentials(credentials: CoinbaseCredentials, *, host: str = "api.coinbase.com"):
    """Pick the signing scheme: HMAC when a secret is present, else JWT."""
    if credentials.api_secret:
        return HmacSigner(credentials.api_key, credentials.api_secret)
    if credentials.private_key:
        return JwtSigner(credentials.api_key, credentials.private_key, host=host)
    raise ExchangeAPIError(
        "No authentication method available - configure either API secret or private key",
        ExchangeErrorType.AUTHENTICATION,
    )


class KrakenSigner:
    def __init__(self, credentials: KrakenCredentials, *, clock: Callable[[], float] = time.time):
        try:
            self._secret = base64.b64decode(credentials.api_secret, validate=True)
        except (binascii.Error, ValueError):
            raise ExchangeAPIError("Kraken secret must be base64-encoded", ExchangeErrorType.AUTHENTICATION)
        self.api_key = credentials.api_key
        self._clock = clock
        self._last_nonce = 0

    def next_nonce(self) -> str:
        # strictly increasing even when called twice in the same millisecond
        nonce = max(int(self._clock() * 1000), self._last_nonce + 1)
        self._last_nonce = nonce
        return str(nonce)

    def signature(self, url_path: str, nonce: str, postdata: str) -> str:
        sha = hashlib.sha256((nonce + postdata).encode("utf-8")).digest()
        mac = hmac.new(self._secret, url_path.encode("utf-8") + sha, hashlib.sha512)
        return base64.b64encode(mac.digest()).decode()

    def sign(self, url_path: str, data: Optional[dict] = None) -> Tuple[Dict[str, str], str]:
        """Return (headers, form-encoded body) for a private endpoint."""
        nonce = self.next_nonce()
        payload = {"nonce": nonce, **(data or {})}
        postdata = urlencode(payload)
        headers = {
            "API-Key": self.api_key,
            "API-Sign": self.signature(url_path, nonce, postdata),
            "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
        }
        return headers, postdata


def compute_hmac_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_hmac_signature(secret: str, raw_body: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of a hex HMAC-SHA256 webhook signature."""
    if not secret or not signature:
        return False
    expected = compute_hmac_signature(secret, raw_body)
    candidate = signature.strip().lower()
    if candidate.startswith("sha256="):
        candidate = candidate[len("sha256="):]
    return hmac.compare_digest(expected, candidate)


def constant_time_equals(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
