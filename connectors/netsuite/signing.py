"""OAuth 1.0a request signing (RFC 5849) for NetSuite Token-Based Authentication.

Every request is signed independently; nothing here holds mutable state.

Signing steps:
1. Protocol params: consumer key, token, nonce, timestamp, signature method, version
2. Canonical params: protocol params + query params (including any query already
   on the URL), percent-encoded per RFC 3986, sorted by encoded key then value
3. Base string: METHOD & enc(base URL) & enc(param string)
4. Key: enc(consumer_secret) & enc(token_secret)
5. HMAC digest, base64, percent-encoded into the Authorization header
"""

import base64
import hashlib
import hmac
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import parse_qsl, quote, urlsplit

from connectors.errors import ConfigurationError


SIGNATURE_METHODS = {
    "HMAC-SHA256": hashlib.sha256,
    "HMAC-SHA1": hashlib.sha1,
}

DEFAULT_SIGNATURE_METHOD = "HMAC-SHA256"
OAUTH_VERSION = "1.0"

_DEFAULT_PORTS = {"http": 80, "https": 443}

Params = Union[Mapping[str, str], Sequence[Tuple[str, str]]]


# =============================================================================
# Encoding and Normalization
# =============================================================================

def percent_encode(value) -> str:
    """RFC 3986 percent-encoding of the UTF-8 bytes of ``value``.

    Unreserved characters (ALPHA, DIGIT, '-', '.', '_', '~') are left as-is;
    everything else, including space, becomes %XX with uppercase hex.
    """
    return quote(str(value), safe="")


def _as_pairs(params: Optional[Params]) -> List[Tuple[str, str]]:
    if not params:
        return []
    items = params.items() if isinstance(params, Mapping) else params
    return [(str(k), str(v)) for k, v in items]


def normalize_base_url(url: str) -> str:
    """Base string URI: lower-case scheme and host, default port dropped,
    no query or fragment."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if not scheme or not host:
        raise ConfigurationError(f"Cannot sign request to non-absolute URL: {url}")

    netloc = host
    port = parts.port
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"

    return f"{scheme}://{netloc}{parts.path or '/'}"


def collect_parameters(url: str, query_params: Optional[Params] = None) -> List[Tuple[str, str]]:
    """Query parameters already present on ``url`` plus ``query_params``."""
    from_url = parse_qsl(urlsplit(url).query, keep_blank_values=True)
    return list(from_url) + _as_pairs(query_params)


def normalize_parameters(params: Iterable[Tuple[str, str]]) -> str:
    """Encode each name and value, sort by encoded name then value, join with '&'.

    Example:
        >>> normalize_parameters([("b", "2"), ("a", "3"), ("a", "1")])
        'a=1&a=3&b=2'
    """
    encoded = sorted((percent_encode(k), percent_encode(v)) for k, v in params)
    return "&".join(f"{k}={v}" for k, v in encoded)


def signature_base_string(method: str, url: str, params: Iterable[Tuple[str, str]]) -> str:
    """Build the signature base string.

    Args:
        method: HTTP method (upper-cased here)
        url: Request URL; its query, if any, must already be part of ``params``
        params: All protocol and query parameters, excluding oauth_signature
    """
    return "&".join([
        method.upper(),
        percent_encode(normalize_base_url(url)),
        percent_encode(normalize_parameters(params)),
    ])


def signing_key(consumer_secret: str, token_secret: str) -> str:
    return f"{percent_encode(consumer_secret)}&{percent_encode(token_secret)}"


def sign(base_string: str, key: str, signature_method: str = DEFAULT_SIGNATURE_METHOD) -> str:
    """HMAC the base string and return the base64 digest."""
    try:
        digestmod = SIGNATURE_METHODS[signature_method]
    except KeyError:
        raise ConfigurationError(f"Unsupported OAuth signature method: {signature_method}") from None
    digest = hmac.new(key.encode("utf-8"), base_string.encode("utf-8"), digestmod).digest()
    return base64.b64encode(digest).decode("ascii")


def generate_nonce() -> str:
    return uuid.uuid4().hex + secrets.token_hex(4)


# =============================================================================
# Signer
# =============================================================================

@dataclass(frozen=True)
class OAuth1Signer:
    """Produces Authorization headers for one set of TBA credentials.

    Usage:
        signer = OAuth1Signer(consumer_key, consumer_secret, token_id, token_secret, realm="1234567")
        headers = {"Authorization": signer.authorization_header("GET", url, {"limit": "1"})}
    """
    consumer_key: str
    consumer_secret: str
    token_id: str
    token_secret: str
    realm: str
    signature_method: str = DEFAULT_SIGNATURE_METHOD

    def __repr__(self) -> str:
        return f"OAuth1Signer(realm={self.realm!r}, signature_method={self.signature_method!r})"

    def protocol_params(
        self,
        nonce: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> Dict[str, str]:
        return {
            "oauth_consumer_key": self.consumer_key,
            "oauth_nonce": nonce or generate_nonce(),
            "oauth_signature_method": self.signature_method,
            "oauth_timestamp": str(int(time.time()) if timestamp is None else timestamp),
            "oauth_token": self.token_id,
            "oauth_version": OAUTH_VERSION,
        }

    def signature(
        self,
        method: str,
        url: str,
        oauth_params: Mapping[str, str],
        query_params: Optional[Params] = None,
    ) -> str:
        params = list(oauth_params.items()) + collect_parameters(url, query_params)
        base_string = signature_base_string(method, url, params)
        return sign(base_string, signing_key(self.consumer_secret, self.token_secret), self.signature_method)

    def authorization_header(
        self,
        method: str,
        url: str,
        query_params: Optional[Params] = None,
        nonce: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> str:
        """Sign a request and render the ``Authorization`` header value.

        A fresh nonce and timestamp are generated unless given, so callers must
        call this once per attempt.
        """
        oauth_params = self.protocol_params(nonce, timestamp)
        oauth_params["oauth_signature"] = self.signature(method, url, oauth_params, query_params)

        fields = [f'realm="{self.realm}"']
        fields.extend(f'{k}="{percent_encode(v)}"' for k, v in oauth_params.items())
        return "OAuth " + ",".join(fields)
