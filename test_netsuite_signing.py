"""
OAuth 1.0a Signing Tests

Validates the NetSuite TBA signer against published vectors:
1. OAuth Core 1.0 Appendix A.5 (HMAC-SHA1 signature)
2. RFC 5849 section 3.4.1.3.2 (parameter normalization)
3. HMAC-SHA256 signature computed independently from the base string
4. Percent-encoding and base URL normalization rules
"""

import base64
import hashlib
import hmac
from urllib.parse import unquote

import pytest

from connectors.errors import ConfigurationError
from connectors.netsuite.signing import (
    OAuth1Signer,
    collect_parameters,
    normalize_base_url,
    normalize_parameters,
    percent_encode,
    sign,
    signature_base_string,
    signing_key,
)


# OAuth Core 1.0, Appendix A.5
A5_SIGNER = OAuth1Signer(
    consumer_key="dpf43f3p2l4k3l03",
    consumer_secret="kd94hf93k423kf44",
    token_id="nnch734d00sl2jdk",
    token_secret="pfkkdhi9sl3r4s00",
    realm="http://photos.example.net/",
    signature_method="HMAC-SHA1",
)
A5_NONCE = "kllo9940pd9333jh"
A5_TIMESTAMP = 1191242096
A5_URL = "http://photos.example.net/photos"
A5_QUERY = {"file": "vacation.jpg", "size": "original"}
A5_SIGNATURE = "tR3+Ty81lMeYAr/Fid0kMTYa/WM="
A5_BASE_STRING = (
    "GET&http%3A%2F%2Fphotos.example.net%2Fphotos&file%3Dvacation.jpg%26"
    "oauth_consumer_key%3Ddpf43f3p2l4k3l03%26oauth_nonce%3Dkllo9940pd9333jh%26"
    "oauth_signature_method%3DHMAC-SHA1%26oauth_timestamp%3D1191242096%26"
    "oauth_token%3Dnnch734d00sl2jdk%26oauth_version%3D1.0%26size%3Doriginal"
)


def parse_authorization_header(header: str) -> dict:
    assert header.startswith("OAuth ")
    fields = {}
    for part in header[len("OAuth "):].split(","):
        key, _, value = part.partition("=")
        fields[key.strip()] = unquote(value.strip().strip('"'))
    return fields


class TestPublishedVectors:
    """Known-answer tests."""

    def test_a5_base_string(self):
        oauth_params = A5_SIGNER.protocol_params(A5_NONCE, A5_TIMESTAMP)
        params = list(oauth_params.items()) + collect_parameters(A5_URL, A5_QUERY)
        assert signature_base_string("GET", A5_URL, params) == A5_BASE_STRING

    def test_a5_signature(self):
        oauth_params = A5_SIGNER.protocol_params(A5_NONCE, A5_TIMESTAMP)
        assert A5_SIGNER.signature("GET", A5_URL, oauth_params, A5_QUERY) == A5_SIGNATURE

    def test_a5_signature_with_query_on_url(self):
        """Query parameters already on the URL are signed the same way."""
        oauth_params = A5_SIGNER.protocol_params(A5_NONCE, A5_TIMESTAMP)
        url = A5_URL + "?file=vacation.jpg&size=original"
        assert A5_SIGNER.signature("GET", url, oauth_params) == A5_SIGNATURE

    def test_a5_authorization_header(self):
        header = A5_SIGNER.authorization_header(
            "GET", A5_URL, A5_QUERY, nonce=A5_NONCE, timestamp=A5_TIMESTAMP
        )
        assert header.startswith('OAuth realm="http://photos.example.net/",')
        assert 'oauth_signature="tR3%2BTy81lMeYAr%2FFid0kMTYa%2FWM%3D"' in header

        fields = parse_authorization_header(header)
        assert fields["oauth_signature"] == A5_SIGNATURE
        assert fields["oauth_consumer_key"] == "dpf43f3p2l4k3l03"
        assert fields["oauth_token"] == "nnch734d00sl2jdk"
        assert fields["oauth_version"] == "1.0"
        # Query parameters are signed but not placed in the header
        assert "file" not in fields and "size" not in fields

    def test_rfc5849_parameter_normalization(self):
        params = [
            ("b5", "=%3D"),
            ("a3", "a"),
            ("c@", ""),
            ("a2", "r b"),
            ("oauth_consumer_key", "9djdj82h48djs9d2"),
            ("oauth_token", "kkk9d7dh3k39sjv7"),
            ("oauth_signature_method", "HMAC-SHA1"),
            ("oauth_timestamp", "137131201"),
            ("oauth_nonce", "7d8f3e4a"),
            ("c2", ""),
            ("a3", "2 q"),
        ]
        assert normalize_parameters(params) == (
            "a2=r%20b&a3=2%20q&a3=a&b5=%3D%253D&c%40=&c2=&"
            "oauth_consumer_key=9djdj82h48djs9d2&oauth_nonce=7d8f3e4a&"
            "oauth_signature_method=HMAC-SHA1&oauth_timestamp=137131201&"
            "oauth_token=kkk9d7dh3k39sjv7"
        )

    def test_duplicate_keys_sorted_by_value(self):
        assert normalize_parameters([("b", "2"), ("a", "3"), ("a", "1")]) == "a=1&a=3&b=2"


class TestHmacSha256:
    """NetSuite's default signature method."""

    def test_signature_matches_independent_hmac(self):
        signer = OAuth1Signer(
            consumer_key="ck",
            consumer_secret="cs&1",
            token_id="tk",
            token_secret="ts 2",
            realm="1234567_SB1",
        )
        url = "https://1234567-sb1.suitetalk.api.netsuite.com/services/rest/record/v1/inventoryItem"
        oauth_params = signer.protocol_params("nonce-1", 1700000000)
        assert oauth_params["oauth_signature_method"] == "HMAC-SHA256"

        params = list(oauth_params.items()) + [("limit", "1")]
        base_string = signature_base_string("GET", url, params)
        expected = base64.b64encode(
            hmac.new(b"cs%261&ts%202", base_string.encode("utf-8"), hashlib.sha256).digest()
        ).decode("ascii")

        assert signer.signature("GET", url, oauth_params, {"limit": "1"}) == expected

    def test_unsupported_signature_method(self):
        with pytest.raises(ConfigurationError):
            sign("base", "key&", "PLAINTEXT")

    def test_fresh_nonce_per_header(self):
        signer = OAuth1Signer("ck", "cs", "tk", "ts", realm="123")
        url = "https://123.suitetalk.api.netsuite.com/services/rest/record/v1/inventoryItem"
        first = parse_authorization_header(signer.authorization_header("GET", url))
        second = parse_authorization_header(signer.authorization_header("GET", url))
        assert first["oauth_nonce"] != second["oauth_nonce"]
        assert first["oauth_signature"] != second["oauth_signature"]

    def test_repr_hides_secrets(self):
        signer = OAuth1Signer("ck", "consumer-secret", "tk", "token-secret", realm="123")
        assert "consumer-secret" not in repr(signer)
        assert "token-secret" not in repr(signer)


class TestEncoding:
    """Percent-encoding and URL normalization."""

    def test_unreserved_characters_untouched(self):
        assert percent_encode("AZaz09-._~") == "AZaz09-._~"

    def test_reserved_characters_encoded(self):
        assert percent_encode(" ") == "%20"
        assert percent_encode("*") == "%2A"
        assert percent_encode("+") == "%2B"
        assert percent_encode("/") == "%2F"
        assert percent_encode("=") == "%3D"
        assert percent_encode("&") == "%26"

    def test_utf8_encoded_uppercase_hex(self):
        assert percent_encode("ü") == "%C3%BC"

    def test_signing_key_encodes_both_secrets(self):
        assert signing_key("a b", "c&d") == "a%20b&c%26d"

    def test_base_url_lowercases_scheme_and_host(self):
        assert normalize_base_url("HTTP://Example.COM:80/r%20v/X?id=123") == "http://example.com/r%20v/X"

    def test_base_url_keeps_non_default_port(self):
        assert normalize_base_url("https://www.example.net:8080/?q=1") == "https://www.example.net:8080/"

    def test_base_url_drops_default_https_port(self):
        assert normalize_base_url("https://example.com:443/path") == "https://example.com/path"

    def test_relative_url_rejected(self):
        with pytest.raises(ConfigurationError):
            normalize_base_url("/services/rest/record/v1")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
