"""ACME client for certificate management."""

import asyncio
import inspect
import ipaddress
import re
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import datetime
from typing import Any

import httpx

from acmekit import jws
from acmekit._logging import get_logger, identifier_context
from acmekit.challenges import challenge_response_value
from acmekit.crypto import (
    CSRLike,
    KeyLike,
    PrivateKey,
    base64url_encode,
    csr_to_der,
    get_chain_root_issuer,
    get_csr_domains,
    load_private_key,
    pem_to_der,
)
from acmekit.directory import DirectoryResolver
from acmekit.exceptions import (
    AcmeError,
    ExternalAccountBindingRequiredError,
    NoAccountError,
    OrderCreationError,
    TermsNotAgreedError,
)
from acmekit.http import PEM_CHAIN_CONTENT_TYPE, AcmeHttp, create_http_client
from acmekit.models import (
    Account,
    Authorization,
    AuthorizationStatus,
    Challenge,
    ChallengeType,
    Directory,
    Identifier,
    IdentifierType,
    Order,
)
from acmekit.polling import retry_after_seconds, wait_for_valid_status

logger = get_logger(__name__)

_ALTERNATE_LINK = re.compile(r'<([^>]+)>\s*;\s*rel="?alternate"?')

# Callback used by auto() to publish or remove a challenge response
ChallengeCallback = Callable[[Authorization, Challenge, str], Awaitable[None] | None]


def _to_identifier(value: Identifier | dict[str, str] | str) -> Identifier:
    if isinstance(value, Identifier):
        return value
    if isinstance(value, dict):
        return Identifier.model_validate(value)
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return Identifier(type=IdentifierType.DNS, value=value)
    return Identifier(type=IdentifierType.IP, value=value)


def _format_timestamp(value: datetime | str) -> str:
    return value if isinstance(value, str) else value.isoformat().replace("+00:00", "Z")


def _require_url(resource: Order | Authorization | Challenge) -> str:
    if not resource.url:
        raise ValueError(f"{type(resource).__name__} has no URL")
    return resource.url


async def _maybe_await(result: Awaitable[None] | None) -> None:
    if inspect.isawaitable(result):
        await result


class Client:
    """ACME client for automated SSL/TLS certificate management.

    This client implements RFC 8555 (ACME) for obtaining certificates
    from an ACME-compliant certificate authority. Every method that talks
    to the CA is a coroutine; resource snapshots passed in are never
    modified, fresh ones are returned instead.

    Args:
        directory_url: URL of the ACME directory endpoint.
        account_key: Private key for the ACME account (key object or PEM).
        account_url: URL of an existing account, if already known.
        http_client: Transport to use. When omitted one is created with
                     create_http_client() and closed by close().
        ca_cert: Path to CA certificate file, False to disable verification,
                 or None/True for default verification. Ignored when
                 http_client is given.
        timeout: Request timeout in seconds for a client-created transport.
        max_concurrency: Upper bound for concurrent authorization fetches.
    """

    # Polling configuration
    POLL_INTERVAL = 2.0  # seconds
    MAX_POLL_ATTEMPTS = 30  # 60 seconds total at a fixed interval
    MAX_CONCURRENCY = 5

    def __init__(
        self,
        directory_url: str,
        account_key: KeyLike,
        account_url: str | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        ca_cert: str | bool | None = None,
        timeout: float = 30.0,
        max_concurrency: int | None = None,
    ):
        self.directory_url = directory_url
        self.max_concurrency = max_concurrency or self.MAX_CONCURRENCY

        self._owns_http = http_client is None
        self._http = http_client or create_http_client(verify=ca_cert, timeout=timeout)

        self.directory = DirectoryResolver(directory_url, self._http)
        self.api = AcmeHttp(
            self._http, self.directory, load_private_key(account_key), account_url
        )

    async def close(self) -> None:
        """Close the HTTP client, if this client created it."""
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @property
    def account_key(self) -> PrivateKey:
        """The private key currently used to sign requests."""
        return self.api.account_key

    # -------------------------------------------------------------------------
    # Directory and account
    # -------------------------------------------------------------------------

    async def get_directory(self) -> Directory:
        """Get the ACME directory (cached after first fetch)."""
        return await self.directory.get()

    async def get_terms_of_service_url(self) -> str | None:
        """Get the CA's terms of service URL, or None if it publishes none."""
        return await self.directory.terms_of_service_url()

    def get_account_url(self) -> str:
        """Get the account URL (set after registration).

        Raises:
            NoAccountError: If no account has been created or found yet.
        """
        if not self.api.account_url:
            raise NoAccountError()
        return self.api.account_url

    def get_jwk(self) -> dict[str, str]:
        """Public JWK of the account key."""
        return self.api.get_jwk()

    async def create_account(
        self,
        contact: Sequence[str] | None = None,
        terms_of_service_agreed: bool | None = None,
        only_return_existing: bool = False,
        external_account_binding: dict[str, str] | None = None,
    ) -> Account:
        """Register a new account, or find the existing one for this key.

        If the client already knows its account URL, the existing account
        is refreshed (and its contact updated when given) instead.

        Args:
            contact: Contact URLs, e.g. ``["mailto:admin@example.com"]``.
            terms_of_service_agreed: Whether the caller agrees to the CA's terms.
            only_return_existing: Only look up an existing account; never create one.
            external_account_binding: ``{"kid": ..., "hmacKey": ...}`` issued by the CA.

        Returns:
            The Account resource.

        Raises:
            TermsNotAgreedError: The CA has terms of service that were not agreed to.
            ExternalAccountBindingRequiredError: The CA requires EAB and none was given.
            AccountNotFoundError: ``only_return_existing`` and the key has no account.
        """
        if self.api.account_url:
            logger.debug("Account URL already known, updating account instead")
            return await self.update_account(contact=contact)

        if not only_return_existing:
            terms_of_service = await self.directory.terms_of_service_url()
            if terms_of_service and not terms_of_service_agreed:
                raise TermsNotAgreedError(terms_of_service)
            eab_required = await self.directory.external_account_required()
            if external_account_binding is None and eab_required:
                raise ExternalAccountBindingRequiredError(
                    "The CA requires external account binding for new accounts"
                )

        new_account_url = await self.directory.resolve("newAccount")
        payload: dict[str, Any] = {}
        if contact is not None:
            payload["contact"] = list(contact)
        if terms_of_service_agreed is not None:
            payload["termsOfServiceAgreed"] = terms_of_service_agreed
        if only_return_existing:
            payload["onlyReturnExisting"] = True
        if external_account_binding:
            payload["externalAccountBinding"] = jws.sign_external_account_binding(
                kid=external_account_binding["kid"],
                hmac_key=external_account_binding["hmacKey"],
                jwk=self.api.get_jwk(),
                url=new_account_url,
            )

        response = await self.api.signed_request(new_account_url, payload, use_kid=False)

        # Store account URL from Location header
        self.api.account_url = response.headers.get("Location")
        account = self.api.parse(response, Account)

        if response.status_code == 200:
            logger.info("Found existing account", extra={"url": account.url})
            if contact is not None and not only_return_existing:
                return await self.update_account(contact=contact)
        else:
            logger.info("Account created", extra={"url": account.url})
        return account

    async def update_account(
        self,
        contact: Sequence[str] | None = None,
        status: str | None = None,
    ) -> Account:
        """Update the account, or just refresh it when nothing is given.

        If no account URL is known yet, it is looked up first with
        ``only_return_existing``; no account is ever created here.

        Args:
            contact: New contact URLs.
            status: ``"deactivated"`` to deactivate the account (irreversible).

        Returns:
            The updated Account resource.
        """
        if not self.api.account_url:
            logger.debug("No account URL known, looking up existing account")
            await self.create_account(only_return_existing=True)

        account_url = self.get_account_url()
        payload: dict[str, Any] = {}
        if contact is not None:
            payload["contact"] = list(contact)
        if status is not None:
            payload["status"] = status

        response = await self.api.signed_request(account_url, payload)
        account = self.api.parse(response, Account, account_url)
        if payload:
            logger.info(
                "Account updated",
                extra={"url": account_url, "status": str(account.status)},
            )
        return account

    async def deactivate_account(self) -> Account:
        """Deactivate the current account (RFC 8555 Section 7.3.6).

        WARNING: This is irreversible. A deactivated account cannot be
        reactivated, and no new orders can be created.
        """
        return await self.update_account(status="deactivated")

    async def update_account_key(self, new_key: KeyLike) -> Account:
        """Roll over to a new account key (RFC 8555 Section 7.3.5).

        The inner JWS is signed by the new key and wrapped in an outer JWS
        signed by the current key. The client switches to the new key only
        once the CA has accepted the change.

        Args:
            new_key: The new private key to use for the account.

        Returns:
            The Account resource, fetched with the new key.

        Raises:
            NoAccountError: If the account URL is not known.
            AcmeError: If the CA rejects the key change; the old key stays active.
        """
        new_key = load_private_key(new_key)
        account_url = self.get_account_url()
        key_change_url = await self.directory.resolve("keyChange")

        inner_jws = jws.sign_key_change(
            new_key=new_key,
            old_key=self.api.account_key,
            account_url=account_url,
            url=key_change_url,
        )
        await self.api.signed_request(key_change_url, inner_jws)

        self.api.account_key = new_key
        logger.info("Account key rolled over", extra={"url": account_url})
        return await self.update_account()

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def create_order(
        self,
        identifiers: Iterable[Identifier | dict[str, str] | str] | None = None,
        *,
        domains: Iterable[str] | None = None,
        not_before: datetime | str | None = None,
        not_after: datetime | str | None = None,
    ) -> Order:
        """Create a new certificate order.

        Args:
            identifiers: Identifiers for the certificate. Plain strings are
                         taken as DNS names (or IP addresses).
            domains: Alternative to ``identifiers`` for DNS names only.
            not_before: Requested notBefore of the certificate.
            not_after: Requested notAfter of the certificate.

        Returns:
            The Order resource.

        Raises:
            OrderCreationError: The CA refused the order. Not retried.
        """
        values = list(identifiers or []) + list(domains or [])
        if not values:
            raise ValueError("At least one identifier is required")

        payload: dict[str, Any] = {
            "identifiers": [
                _to_identifier(value).model_dump(mode="json") for value in values
            ]
        }
        if not_before is not None:
            payload["notBefore"] = _format_timestamp(not_before)
        if not_after is not None:
            payload["notAfter"] = _format_timestamp(not_after)

        names = [identifier["value"] for identifier in payload["identifiers"]]
        with identifier_context(names):
            try:
                response = await self.api.signed_request("newOrder", payload)
            except AcmeError as e:
                raise OrderCreationError.wrap(e) from e

            order = self.api.parse(response, Order)
            logger.info("Order created", extra={"url": order.url, "status": str(order.status)})
            return order

    async def get_order(self, order: Order) -> Order:
        """Refresh an order from the CA."""
        url = _require_url(order)
        response = await self.api.post_as_get(url)
        return self.api.parse(response, Order, url)

    async def finalize_order(self, order: Order, csr: CSRLike) -> Order:
        """Finalize an order by submitting the CSR.

        Args:
            order: The order to finalize; all its authorizations must be valid.
            csr: Certificate Signing Request (object, PEM or DER).

        Returns:
            The finalized Order resource.
        """
        payload = {"csr": base64url_encode(csr_to_der(csr))}
        response = await self.api.signed_request(order.finalize, payload)
        finalized = self.api.parse(response, Order, order.url)
        logger.info(
            "Order finalized",
            extra={"url": finalized.url, "status": str(finalized.status)},
        )
        return finalized

    async def get_certificate(self, order: Order, preferred_chain: str | None = None) -> str:
        """Download the certificate chain of a valid order.

        Args:
            order: The order with certificate URL.
            preferred_chain: Issuer common name of the preferred chain root.
                             Falls back to the default chain if none matches.

        Returns:
            The certificate chain in PEM format.

        Raises:
            ValueError: If order has no certificate URL.
        """
        if not order.certificate:
            raise ValueError("Order has no certificate URL")

        response = await self.api.post_as_get(order.certificate, accept=PEM_CHAIN_CONTENT_TYPE)
        certificate = response.text

        alternates = self._alternate_links(response)
        if preferred_chain and alternates:
            chains = [certificate]
            for url in alternates:
                alternate = await self.api.post_as_get(url, accept=PEM_CHAIN_CONTENT_TYPE)
                chains.append(alternate.text)
            for chain in chains:
                if get_chain_root_issuer(chain) == preferred_chain:
                    certificate = chain
                    break
            else:
                logger.info(
                    "No chain matches preferred issuer, using default",
                    extra={"preferred_chain": preferred_chain},
                )

        logger.info("Certificate downloaded", extra={"url": order.certificate})
        return certificate

    async def revoke_certificate(
        self,
        certificate_pem: str,
        reason: int | None = None,
    ) -> None:
        """Revoke a certificate (RFC 8555 Section 7.6).

        Args:
            certificate_pem: The PEM-encoded certificate to revoke.
            reason: Optional revocation reason code (RFC 5280 Section 5.3.1),
                    see RevocationReason.

        Raises:
            AcmeError: If revocation fails.
            ValueError: If the PEM data is not a certificate.
        """
        der_bytes = pem_to_der(certificate_pem)

        payload: dict[str, str | int] = {"certificate": base64url_encode(der_bytes)}
        if reason is not None:
            payload["reason"] = int(reason)

        await self.api.signed_request("revokeCert", payload)
        logger.info("Certificate revoked", extra={"reason": reason})

    # -------------------------------------------------------------------------
    # Authorizations and challenges
    # -------------------------------------------------------------------------

    async def get_authorizations(self, order: Order) -> list[Authorization]:
        """Fetch all authorizations for an order.

        Authorizations are fetched concurrently, at most ``max_concurrency``
        at a time, and returned in the order the CA lists them.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def fetch(url: str) -> Authorization:
            async with semaphore:
                response = await self.api.post_as_get(url)
                return self.api.parse(response, Authorization, url)

        return list(await asyncio.gather(*(fetch(url) for url in order.authorizations)))

    async def get_authorization(self, authorization: Authorization) -> Authorization:
        """Refresh an authorization from the CA."""
        url = _require_url(authorization)
        response = await self.api.post_as_get(url)
        return self.api.parse(response, Authorization, url)

    async def deactivate_authorization(self, authorization: Authorization) -> Authorization:
        """Deactivate an authorization (RFC 8555 Section 7.5.2).

        This prevents the authorization from being used to issue certificates.
        Deactivation is permanent.

        Returns:
            The updated Authorization with status "deactivated".
        """
        url = _require_url(authorization)
        response = await self.api.signed_request(url, {"status": "deactivated"})
        deactivated = self.api.parse(response, Authorization, url)
        logger.info(
            "Authorization deactivated",
            extra={"url": url, "identifier": deactivated.identifier.value},
        )
        return deactivated

    def get_challenge_key_authorization(self, challenge: Challenge) -> str:
        """Value to publish for a challenge, derived from the account key.

        http-01 and tls-alpn-01 return the key authorization
        (``token.thumbprint``); dns-01 returns the TXT record value.
        No network call is made.
        """
        return challenge_response_value(challenge, self.api.thumbprint())

    async def get_challenge(self, challenge: Challenge) -> Challenge:
        """Refresh a challenge from the CA."""
        response = await self.api.post_as_get(challenge.url)
        return self.api.parse(response, Challenge, challenge.url)

    async def complete_challenge(self, challenge: Challenge) -> Challenge:
        """Tell the CA the challenge is ready to be validated.

        Does not wait for validation; use wait_for_valid_status() for that.
        """
        response = await self.api.signed_request(challenge.url, {})
        return self.api.parse(response, Challenge, challenge.url)

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def wait_for_valid_status(
        self,
        resource: Order | Authorization | Challenge,
        *,
        target: str | None = None,
        interval: float | None = None,
        max_attempts: int | None = None,
        backoff: float = 1.0,
        deadline: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Any:
        """Poll a resource until it reaches a terminal status.

        Orders wait for ``ready`` by default (a ``valid`` order also counts);
        authorizations and challenges wait for ``valid``. The CA's
        Retry-After header, when sent, sets the next delay.

        Raises:
            InvalidStatusError: The CA reported a different terminal status.
            PollingTimeoutError: Attempts or deadline ran out, or cancel_event was set.
            ValueError: ``max_attempts`` is less than 1.
        """
        url = _require_url(resource)
        model = type(resource)
        if target is None:
            target = "ready" if isinstance(resource, Order) else "valid"

        async def getter() -> tuple[Any, float | None]:
            response = await self.api.post_as_get(url)
            return self.api.parse(response, model, url), retry_after_seconds(response.headers)

        return await wait_for_valid_status(
            getter,
            target=target,
            interval=self.POLL_INTERVAL if interval is None else interval,
            max_attempts=self.MAX_POLL_ATTEMPTS if max_attempts is None else max_attempts,
            backoff=backoff,
            deadline=deadline,
            cancel_event=cancel_event,
        )

    # -------------------------------------------------------------------------
    # Full issuance flow
    # -------------------------------------------------------------------------

    async def auto(
        self,
        csr: CSRLike,
        challenge_create: ChallengeCallback,
        challenge_remove: ChallengeCallback,
        *,
        email: str | None = None,
        terms_of_service_agreed: bool = False,
        challenge_priority: Sequence[str] = (ChallengeType.HTTP_01, ChallengeType.DNS_01),
        preferred_chain: str | None = None,
    ) -> str:
        """Obtain a certificate for the names in a CSR.

        This method:
        1. Creates or finds the account
        2. Creates an order for every name in the CSR
        3. For each pending authorization, publishes the challenge response
           through ``challenge_create``, completes the challenge and waits
           for it, then calls ``challenge_remove``
        4. Finalizes the order and downloads the certificate

        If any authorization fails, the remaining pending authorizations of
        the order are deactivated before the error is raised.

        Args:
            csr: Certificate Signing Request (object, PEM or DER).
            challenge_create: Called with (authorization, challenge, value)
                              before the CA is asked to validate.
            challenge_remove: Called with the same arguments afterwards.
            email: Contact email for a new account.
            terms_of_service_agreed: Agree to the CA's terms of service.
            challenge_priority: Challenge types to use, most preferred first.
            preferred_chain: Issuer common name of the preferred chain.

        Returns:
            The certificate chain in PEM format.
        """
        if not self.api.account_url:
            await self.create_account(
                contact=[f"mailto:{email}"] if email else None,
                terms_of_service_agreed=terms_of_service_agreed,
            )

        domains = get_csr_domains(csr)
        with identifier_context(domains):
            order = await self.create_order(domains=domains)
            authorizations = await self.get_authorizations(order)

            results = await asyncio.gather(
                *(
                    self._satisfy_authorization(
                        authz, challenge_create, challenge_remove, challenge_priority
                    )
                    for authz in authorizations
                ),
                return_exceptions=True,
            )
            failures = [r for r in results if isinstance(r, BaseException)]
            if failures:
                await self._deactivate_pending(authorizations)
                raise failures[0]

            order = await self.wait_for_valid_status(order)
            if order.status != "valid":
                order = await self.finalize_order(order, csr)
                order = await self.wait_for_valid_status(order, target="valid")

            return await self.get_certificate(order, preferred_chain=preferred_chain)

    async def _satisfy_authorization(
        self,
        authz: Authorization,
        challenge_create: ChallengeCallback,
        challenge_remove: ChallengeCallback,
        challenge_priority: Sequence[str],
    ) -> Authorization:
        if authz.status == AuthorizationStatus.VALID:
            logger.debug(
                "Authorization already valid, skipping",
                extra={"identifier": authz.identifier.value},
            )
            return authz

        challenge = next(
            (c for t in challenge_priority for c in authz.challenges if c.type == t),
            None,
        )
        if challenge is None:
            raise ValueError(
                f"No supported challenge for {authz.identifier.value}: "
                f"offered {[c.type for c in authz.challenges]}"
            )

        value = self.get_challenge_key_authorization(challenge)
        await _maybe_await(challenge_create(authz, challenge, value))
        try:
            await self.complete_challenge(challenge)
            await self.wait_for_valid_status(challenge)
        finally:
            await _maybe_await(challenge_remove(authz, challenge, value))

        return await self.wait_for_valid_status(authz)

    async def _deactivate_pending(self, authorizations: list[Authorization]) -> None:
        results = await asyncio.gather(
            *(
                self.deactivate_authorization(authz)
                for authz in authorizations
                if authz.status == AuthorizationStatus.PENDING
            ),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning(
                    "Failed to deactivate authorization after failed validation",
                    extra={"error": str(result)},
                )

    @staticmethod
    def _alternate_links(response: httpx.Response) -> list[str]:
        links = []
        for header in response.headers.get_list("Link"):
            links.extend(match.group(1) for match in _ALTERNATE_LINK.finditer(header))
        return links
