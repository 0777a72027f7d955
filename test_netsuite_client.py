"""
NetSuite Client Tests

Runs the client against an in-process aiohttp server that verifies every
OAuth 1.0a signature with the same credentials:
1. Health check and record fetch send correctly signed requests
2. 503 is retried to the attempt budget with a fresh nonce per attempt
3. 401 is never retried; 404 maps to RecordNotFoundError
4. Pushes are never replayed after the request was sent
"""

import asyncio
from typing import Dict, List

import pytest
from aiohttp import test_utils, web

from connectors.credentials import NetSuiteCredentials
from connectors.erp_base import RecordPayload, RecordQuery
from connectors.errors import (
    AuthenticationError,
    RecordNotFoundError,
    TransientNetworkError,
)
from connectors.netsuite import NetSuiteClient, OAuth1Signer
from core.observability.metrics import get_metrics
from conftest import NETSUITE_CREDENTIALS
from test_netsuite_signing import parse_authorization_header


REST_PATH = "/services/rest/record/v1"


class FakeNetSuite:
    """Minimal REST Record API that checks OAuth 1.0a signatures."""

    def __init__(self):
        self.signer = OAuth1Signer(
            consumer_key=NETSUITE_CREDENTIALS["consumer_key"],
            consumer_secret=NETSUITE_CREDENTIALS["consumer_secret"],
            token_id=NETSUITE_CREDENTIALS["token_id"],
            token_secret=NETSUITE_CREDENTIALS["token_secret"],
            realm=NETSUITE_CREDENTIALS["account_id"],
        )
        self.requests: List[web.Request] = []
        self.nonces: List[str] = []
        self.realms: List[str] = []
        self.bodies: List[Dict] = []
        self.status_override = None

    def verify(self, request: web.Request) -> bool:
        fields = parse_authorization_header(request.headers.get("Authorization", "OAuth "))
        self.realms.append(fields.pop("realm", ""))
        signature = fields.pop("oauth_signature", "")
        self.nonces.append(fields.get("oauth_nonce", ""))
        return self.signer.signature(request.method, str(request.url), fields) == signature

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append(request)
        if request.can_read_body:
            self.bodies.append(await request.json())
        if not self.verify(request):
            return web.json_response({"title": "Invalid login attempt."}, status=401)
        if self.status_override is not None:
            return web.json_response({"title": "override"}, status=self.status_override)

        record_type = request.match_info["record_type"]
        if record_type == "missingType":
            return web.json_response({"title": "Record type not found"}, status=404)
        if request.method == "GET":
            return web.json_response({
                "items": [{"id": "101", "itemId": "WIDGET"}],
                "hasMore": True,
                "offset": int(request.query.get("offset", "0")),
                "totalResults": 7,
            })
        if request.method == "POST":
            location = f"{request.url.origin()}{REST_PATH}/{record_type}/987"
            return web.Response(status=204, headers={"Location": location})
        return web.Response(status=204)

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", REST_PATH + "/{record_type}", self.handle)
        app.router.add_route("*", REST_PATH + "/{record_type}/{record_id}", self.handle)
        return app


def run(coro):
    return asyncio.run(coro)


async def with_client(fake: FakeNetSuite, retry, scenario):
    async with test_utils.TestServer(fake.app()) as server:
        credentials = NetSuiteCredentials(
            **NETSUITE_CREDENTIALS,
            rest_base_url=str(server.make_url(REST_PATH)),
        )
        async with NetSuiteClient(credentials, connection_id="conn-ns", retry_config=retry) as client:
            return await scenario(client)


class TestNetSuiteReads:

    def test_health_check_is_signed(self, fast_retry):
        fake = FakeNetSuite()

        async def scenario(client):
            return await client.health_check()

        report = run(with_client(fake, fast_retry, scenario))
        assert report.status_code == 200
        assert report.endpoint.endswith(f"{REST_PATH}/inventoryItem")
        assert len(fake.requests) == 1
        assert fake.requests[0].query["limit"] == "1"
        assert fake.realms == ["1234567_SB1"]

    def test_fetch_records_pages(self, fast_retry):
        fake = FakeNetSuite()

        async def scenario(client):
            return await client.fetch_records(RecordQuery(
                filter='itemId CONTAIN "WID"',
                fields=["itemId", "quantityOnHand"],
                limit=5,
                offset=10,
            ))

        page = run(with_client(fake, fast_retry, scenario))
        assert page.records == [{"id": "101", "itemId": "WIDGET"}]
        assert page.has_more is True
        assert page.offset == 10
        assert page.total == 7

        query = fake.requests[0].query
        assert query["limit"] == "5"
        assert query["offset"] == "10"
        assert query["q"] == 'itemId CONTAIN "WID"'
        assert query["fields"] == "itemId,quantityOnHand"

    def test_unavailable_retried_to_budget(self, fast_retry):
        fake = FakeNetSuite()
        fake.status_override = 503

        async def scenario(client):
            return await client.health_check()

        with pytest.raises(TransientNetworkError) as exc_info:
            run(with_client(fake, fast_retry, scenario))

        assert exc_info.value.attempts == 3
        assert exc_info.value.status_code == 503
        assert len(fake.requests) == 3
        # Every attempt is signed from scratch
        assert len(set(fake.nonces)) == 3
        assert get_metrics().get_summary()["requests"]["retries"] == 2

    def test_authentication_failure_not_retried(self, fast_retry):
        fake = FakeNetSuite()
        fake.signer = OAuth1Signer("ck", "other-secret", "tk", "ts", realm="1234567_SB1")

        async def scenario(client):
            return await client.health_check()

        with pytest.raises(AuthenticationError) as exc_info:
            run(with_client(fake, fast_retry, scenario))

        error = exc_info.value
        assert error.status_code == 401
        assert error.provider == "netsuite"
        assert error.connection_id == "conn-ns"
        assert len(fake.requests) == 1

    def test_unknown_record_type(self, fast_retry):
        fake = FakeNetSuite()

        async def scenario(client):
            return await client.fetch_records(RecordQuery(record_type="missingType"))

        with pytest.raises(RecordNotFoundError):
            run(with_client(fake, fast_retry, scenario))
        assert len(fake.requests) == 1


class TestNetSuiteWrites:

    def test_create_returns_location_id(self, fast_retry):
        fake = FakeNetSuite()

        async def scenario(client):
            return await client.push_record(RecordPayload(
                record_type="inventoryItem",
                data={"itemId": "NEW-1"},
            ))

        result = run(with_client(fake, fast_retry, scenario))
        assert result.record_id == "987"
        assert result.status_code == 204
        assert fake.requests[0].method == "POST"
        assert fake.bodies == [{"itemId": "NEW-1"}]

    def test_update_patches_record(self, fast_retry):
        fake = FakeNetSuite()

        async def scenario(client):
            return await client.push_record(RecordPayload(
                record_type="inventoryItem",
                record_id="101",
                data={"displayName": "Widget"},
            ))

        result = run(with_client(fake, fast_retry, scenario))
        assert result.record_id == "101"
        assert fake.requests[0].method == "PATCH"
        assert fake.requests[0].path == f"{REST_PATH}/inventoryItem/101"

    def test_push_not_replayed_on_server_error(self, fast_retry):
        fake = FakeNetSuite()
        fake.status_override = 503

        async def scenario(client):
            return await client.push_record(RecordPayload(record_type="inventoryItem", data={"a": 1}))

        with pytest.raises(TransientNetworkError) as exc_info:
            run(with_client(fake, fast_retry, scenario))

        assert exc_info.value.attempts == 1
        assert len(fake.requests) == 1


def test_credentials_not_in_repr():
    credentials = NetSuiteCredentials(**NETSUITE_CREDENTIALS)
    client = NetSuiteClient(credentials)
    assert NETSUITE_CREDENTIALS["consumer_secret"] not in repr(client)
    assert NETSUITE_CREDENTIALS["token_secret"] not in repr(credentials)
    assert client.base_url == "https://1234567-sb1.suitetalk.api.netsuite.com/services/rest/record/v1"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
