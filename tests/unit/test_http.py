"""Unit tests for the signed request layer."""

import json
import logging

import httpx
import pytest
import respx

from acmekit.crypto import base64url_decode
from acmekit.directory import DirectoryResolver
from acmekit.exceptions import (
    AcmeError,
    BadNonceError,
    NoAccountError,
    RateLimitError,
    SchemaError,
)
from acmekit.http import DEFAULT_USER_AGENT, AcmeHttp, create_http_client
from acmekit.models import Order

DIRECTORY_URL = "https://acme.example/directory"
NONCE_URL = "https://acme.example/new-nonce"
ORDER_URL = "https://acme.example/order/1"
ACCOUNT_URL = "https://acme.example/acct/1"

DIRECTORY = {
    "newNonce": NONCE_URL,
    "newAccount": "https://acme.example/new-account",
    "newOrder": "https://acme.example/new-order",
}

ORDER = {
    "status": "pending",
    "identifiers": [{"type": "dns", "value": "example.com"}],
    "authorizations": ["https://acme.example/authz/1"],
    "finalize": "https://acme.example/order/1/finalize",
}


def _problem(code: str, status: int = 400, nonce: str = "next", **headers) -> httpx.Response:
    return httpx.Response(
        status,
        json={"type": f"urn:ietf:params:acme:error:{code}", "detail": f"{code} detail"},
        headers={"Content-Type": "application/problem+json", "Replay-Nonce": nonce, **headers},
    )


def _protected(request: httpx.Request) -> dict:
    body = json.loads(request.content)
    return json.loads(base64url_decode(body["protected"]))


@pytest.fixture
def ca():
    with respx.mock(assert_all_called=False) as mock:
        mock.get(DIRECTORY_URL).mock(return_value=httpx.Response(200, json=DIRECTORY))
        mock.head(NONCE_URL, name="new_nonce").mock(
            side_effect=lambda request: httpx.Response(200, headers={"Replay-Nonce": "fetched"})
        )
        yield mock


@pytest.fixture
async def api(account_key):
    async with httpx.AsyncClient() as http:
        yield AcmeHttp(http, DirectoryResolver(DIRECTORY_URL, http), account_key, ACCOUNT_URL)


class TestSignedRequest:
    """Tests for AcmeHttp.signed_request."""

    async def test_request_shape(self, ca, api):
        """Requests are JOSE POSTs with kid, nonce and url in the protected header."""
        route = ca.post(ORDER_URL).mock(
            return_value=httpx.Response(200, json=ORDER, headers={"Replay-Nonce": "n2"})
        )

        await api.signed_request(ORDER_URL, None)

        request = route.calls.last.request
        assert request.headers["Content-Type"] == "application/jose+json"
        protected = _protected(request)
        assert protected["kid"] == ACCOUNT_URL
        assert protected["nonce"] == "fetched"
        assert protected["url"] == ORDER_URL
        assert json.loads(request.content)["payload"] == ""

    async def test_response_nonce_is_reused(self, ca, api):
        """The Replay-Nonce of a response signs the next request."""
        route = ca.post(ORDER_URL).mock(
            return_value=httpx.Response(200, json=ORDER, headers={"Replay-Nonce": "from-ca"})
        )

        await api.signed_request(ORDER_URL, None)
        await api.signed_request(ORDER_URL, None)

        assert _protected(route.calls[1].request)["nonce"] == "from-ca"
        assert ca["new_nonce"].call_count == 1

    async def test_resource_name_resolved(self, ca, api):
        """A directory resource name is resolved to its URL."""
        route = ca.post("https://acme.example/new-order").mock(
            return_value=httpx.Response(201, json=ORDER, headers={"Location": ORDER_URL})
        )

        await api.signed_request("newOrder", {"identifiers": []})

        assert route.call_count == 1

    async def test_bad_nonce_retried_once(self, ca, api, log_capture):
        """A badNonce rejection is retried once with the nonce from the error."""
        route = ca.post(ORDER_URL).mock(
            side_effect=[
                _problem("badNonce", nonce="retry-nonce"),
                httpx.Response(200, json=ORDER, headers={"Replay-Nonce": "n3"}),
            ]
        )

        response = await api.signed_request(ORDER_URL, None)

        assert response.status_code == 200
        assert route.call_count == 2
        assert _protected(route.calls[1].request)["nonce"] == "retry-nonce"
        assert "Nonce rejected, retrying once with a fresh nonce" in log_capture.get_messages(
            logging.DEBUG
        )

    async def test_bad_nonce_twice_propagates(self, ca, api):
        """A second badNonce is raised to the caller."""
        route = ca.post(ORDER_URL).mock(
            side_effect=[_problem("badNonce", nonce="a"), _problem("badNonce", nonce="b")]
        )

        with pytest.raises(BadNonceError):
            await api.signed_request(ORDER_URL, None)

        assert route.call_count == 2

    async def test_other_errors_not_retried(self, ca, api):
        """Only badNonce is retried."""
        route = ca.post(ORDER_URL).mock(return_value=_problem("serverInternal", 500))

        with pytest.raises(AcmeError) as exc_info:
            await api.signed_request(ORDER_URL, None)

        assert exc_info.value.code == "serverInternal"
        assert route.call_count == 1

    async def test_problem_mapped_to_subclass(self, ca, api):
        """Problem documents become typed errors with Retry-After."""
        ca.post(ORDER_URL).mock(
            return_value=_problem("rateLimited", 429, **{"Retry-After": "60"})
        )

        with pytest.raises(RateLimitError) as exc_info:
            await api.signed_request(ORDER_URL, None)

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 60
        assert exc_info.value.detail == "rateLimited detail"

    async def test_error_nonce_harvested(self, ca, api):
        """Error responses replenish the nonce pool too."""
        ca.post(ORDER_URL).mock(return_value=_problem("malformed", nonce="after-error"))

        with pytest.raises(AcmeError):
            await api.signed_request(ORDER_URL, None)

        assert await api.nonces.take() == "after-error"

    async def test_non_json_error(self, ca, api):
        """An error without a problem document still raises AcmeError."""
        ca.post(ORDER_URL).mock(return_value=httpx.Response(502, text="Bad Gateway"))

        with pytest.raises(AcmeError) as exc_info:
            await api.signed_request(ORDER_URL, None)

        assert exc_info.value.status_code == 502
        assert exc_info.value.detail == "Bad Gateway"

    async def test_undecodable_error_body(self, ca, api):
        """An error body that is not valid UTF-8 still raises AcmeError."""
        ca.post(ORDER_URL).mock(return_value=httpx.Response(500, content=b"\x80\x81 not utf-8"))

        with pytest.raises(AcmeError) as exc_info:
            await api.signed_request(ORDER_URL, None)

        assert exc_info.value.status_code == 500
        assert exc_info.value.type == "unknown"

    async def test_no_account_raises_before_network(self, ca, account_key):
        """kid-signed requests without an account URL fail locally."""
        async with httpx.AsyncClient() as http:
            api = AcmeHttp(http, DirectoryResolver(DIRECTORY_URL, http), account_key)
            with pytest.raises(NoAccountError):
                await api.signed_request(ORDER_URL, None)

        assert ca.calls.call_count == 0

    async def test_jwk_request_without_account(self, ca, account_key):
        """use_kid=False embeds the JWK and needs no account URL."""
        route = ca.post("https://acme.example/new-account").mock(
            return_value=httpx.Response(201, json={"status": "valid"})
        )

        async with httpx.AsyncClient() as http:
            api = AcmeHttp(http, DirectoryResolver(DIRECTORY_URL, http), account_key)
            await api.signed_request("newAccount", {}, use_kid=False)

        protected = _protected(route.calls.last.request)
        assert protected["jwk"] == api.get_jwk()
        assert "kid" not in protected


class TestParse:
    """Tests for AcmeHttp.parse."""

    async def test_url_from_location(self, api):
        """The resource URL defaults to the Location header."""
        response = httpx.Response(201, json=ORDER, headers={"Location": ORDER_URL})
        order = api.parse(response, Order)

        assert order.url == ORDER_URL
        assert order.status == "pending"

    async def test_schema_error(self, api):
        """A body missing required members raises SchemaError."""
        response = httpx.Response(200, json={"status": "pending"})

        with pytest.raises(SchemaError) as exc_info:
            api.parse(response, Order, ORDER_URL)

        assert exc_info.value.resource == "Order"
        assert exc_info.value.url == ORDER_URL
        assert "finalize" in str(exc_info.value)

    async def test_non_json_body(self, api):
        """A non-JSON body raises SchemaError."""
        with pytest.raises(SchemaError):
            api.parse(httpx.Response(200, text="<html>"), Order, ORDER_URL)

    async def test_undecodable_body(self, api):
        """A body that is not valid UTF-8 raises SchemaError."""
        response = httpx.Response(200, content=b"\x80\x81 not utf-8")

        with pytest.raises(SchemaError):
            api.parse(response, Order, ORDER_URL)


class TestCreateHttpClient:
    """Tests for the default transport."""

    async def test_user_agent(self):
        """The default client identifies the library."""
        async with create_http_client() as http:
            assert http.headers["User-Agent"] == DEFAULT_USER_AGENT
            assert DEFAULT_USER_AGENT.startswith("acmekit/")
