"""Integration tests against a running ACME CA (requires pebble + challtestsrv).

Run with ``pytest -m integration``. ``--acme-directory-url`` points the
suite at another CA; ``--no-cap-*`` options skip what that CA lacks.
"""

import uuid
from collections.abc import AsyncGenerator

import httpx
import pytest
from cryptography import x509

from acmekit import Client
from acmekit.challenges import dns_record_name
from acmekit.crypto import (
    create_csr,
    generate_ecdsa_key,
    generate_rsa_key,
    get_csr_domains,
    split_pem_chain,
)
from acmekit.exceptions import AccountNotFoundError, AcmeError, TermsNotAgreedError
from acmekit.models import RevocationReason

pytestmark = pytest.mark.integration


def _domain(label: str) -> str:
    return f"{label}-{uuid.uuid4().hex[:8]}.example.com"


class ChallTestSrv:
    """Publishes challenge responses through the pebble-challtestsrv management API."""

    def __init__(self, url: str):
        self.url = url

    async def _post(self, path: str, payload: dict[str, str]) -> None:
        async with httpx.AsyncClient() as http:
            response = await http.post(f"{self.url}{path}", json=payload)
            response.raise_for_status()

    async def create(self, authz, challenge, value: str) -> None:
        if challenge.type == "dns-01":
            host = f"{dns_record_name(authz.identifier.value)}."
            await self._post("/set-txt", {"host": host, "value": value})
        elif challenge.type == "http-01":
            await self._post("/add-http01", {"token": challenge.token, "content": value})

    async def remove(self, authz, challenge, value: str) -> None:
        if challenge.type == "dns-01":
            host = f"{dns_record_name(authz.identifier.value)}."
            await self._post("/clear-txt", {"host": host})
        elif challenge.type == "http-01":
            await self._post("/del-http01", {"token": challenge.token})


@pytest.fixture
def challtestsrv(challtestsrv_url: str) -> ChallTestSrv:
    return ChallTestSrv(challtestsrv_url)


@pytest.fixture
async def ca_client(ca_capabilities, pebble_ca_cert) -> AsyncGenerator[Client]:
    """A Client for the CA under test with a fresh key and no account."""
    client = Client(
        ca_capabilities.directory_url, generate_ecdsa_key(), ca_cert=pebble_ca_cert
    )
    try:
        await client.get_directory()
    except httpx.HTTPError as e:
        await client.close()
        pytest.skip(f"ACME CA not reachable at {ca_capabilities.directory_url}: {e}")
    client.POLL_INTERVAL = 0.5
    try:
        yield client
    finally:
        await client.close()


@pytest.fixture
async def registered(ca_client: Client) -> Client:
    await ca_client.create_account(
        contact=["mailto:test@example.com"], terms_of_service_agreed=True
    )
    return ca_client


class TestDirectory:
    """Tests for directory and metadata."""

    async def test_directory(self, ca_client: Client):
        """The directory lists the required resources."""
        directory = await ca_client.get_directory()

        assert directory.new_nonce
        assert directory.new_account
        assert directory.new_order
        assert directory.revoke_cert

    async def test_terms_of_service(self, ca_client: Client, ca_capabilities):
        """The CA publishes a terms of service URL."""
        if not ca_capabilities.meta_tos_field:
            pytest.skip("CA does not publish meta.termsOfService")

        url = await ca_client.get_terms_of_service_url()

        assert url is not None
        assert url.startswith("http")


class TestAccount:
    """Tests for account management."""

    async def test_refuses_without_terms(self, ca_client: Client, ca_capabilities):
        """Terms must be agreed before an account is created."""
        if not ca_capabilities.meta_tos_field:
            pytest.skip("CA does not publish meta.termsOfService")

        with pytest.raises(TermsNotAgreedError):
            await ca_client.create_account()

    async def test_create_and_find(self, registered: Client, ca_capabilities, pebble_ca_cert):
        """A second client with the same key finds the account."""
        async with Client(
            ca_capabilities.directory_url, registered.account_key, ca_cert=pebble_ca_cert
        ) as other:
            account = await other.create_account(only_return_existing=True)

        assert account.status == "valid"
        assert other.get_account_url() == registered.get_account_url()

    async def test_unknown_key(self, ca_client: Client):
        """A key without an account is not found."""
        with pytest.raises(AccountNotFoundError):
            await ca_client.create_account(only_return_existing=True)

    async def test_update_contact(self, registered: Client):
        """Contact can be updated."""
        account = await registered.update_account(contact=["mailto:other@example.com"])

        assert account.contact == ["mailto:other@example.com"]

    async def test_update_account_key(self, registered: Client, ca_capabilities):
        """Rolling over the key keeps the account."""
        if not ca_capabilities.update_account_key:
            pytest.skip("CA does not support account key rollover")
        account_url = registered.get_account_url()

        account = await registered.update_account_key(generate_rsa_key(2048))

        assert account.url == account_url
        assert account.status == "valid"

    async def test_deactivate_account(self, registered: Client):
        """A deactivated account cannot place orders."""
        account = await registered.deactivate_account()

        assert account.status == "deactivated"
        with pytest.raises(AcmeError):
            await registered.create_order([_domain("deactivated")])


class TestOrder:
    """Tests for orders and authorizations."""

    async def test_create_order(self, registered: Client):
        """An order for a name and its wildcard has two authorizations."""
        name = _domain("order")
        order = await registered.create_order([name, f"*.{name}"])

        assert order.status == "pending"
        authorizations = await registered.get_authorizations(order)
        assert len(authorizations) == 2
        assert all(a.status == "pending" for a in authorizations)
        assert await registered.get_order(order) == order

    async def test_deactivate_authorization(self, registered: Client):
        """An authorization can be deactivated."""
        order = await registered.create_order([_domain("deactivate")])
        (authz,) = await registered.get_authorizations(order)

        deactivated = await registered.deactivate_authorization(authz)

        assert deactivated.status == "deactivated"


class TestIssuance:
    """Tests for the full issuance flow."""

    async def test_auto_dns01(self, ca_client: Client, challtestsrv: ChallTestSrv):
        """auto() issues a certificate covering every name in the CSR."""
        name = _domain("auto")
        csr = create_csr(generate_ecdsa_key(), [name, f"www.{name}"])

        pem = await ca_client.auto(
            csr,
            challtestsrv.create,
            challtestsrv.remove,
            email="test@example.com",
            terms_of_service_agreed=True,
            challenge_priority=["dns-01"],
        )

        chain = split_pem_chain(pem)
        san = chain[0].extensions.get_extension_for_class(x509.SubjectAlternativeName)
        assert sorted(san.value.get_values_for_type(x509.DNSName)) == sorted(get_csr_domains(csr))

    async def test_auto_http01_and_revoke(self, registered: Client, challtestsrv: ChallTestSrv):
        """A certificate obtained over http-01 can be revoked once."""
        csr = create_csr(generate_ecdsa_key(), [_domain("revoke")])

        pem = await registered.auto(csr, challtestsrv.create, challtestsrv.remove)
        await registered.revoke_certificate(pem, reason=RevocationReason.CESSATION_OF_OPERATION)

        with pytest.raises(AcmeError) as exc_info:
            await registered.revoke_certificate(pem)
        assert exc_info.value.code == "alreadyRevoked"
