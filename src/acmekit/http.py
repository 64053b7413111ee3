"""Signed request layer for the ACME protocol.

Every authenticated ACME request follows the same path: resolve the
target URL, take a nonce, sign the payload as a flattened JWS, POST it,
harvest the returned nonce, and turn problem documents into typed
errors. A ``badNonce`` rejection is retried exactly once with a fresh
nonce; nothing else is retried here.
"""

import json
from typing import Any

import httpx

from acmekit import jws
from acmekit._logging import Timer, get_identifier_extra, get_logger
from acmekit._version import __version__
from acmekit.crypto import PrivateKey
from acmekit.directory import DirectoryResolver
from acmekit.exceptions import AcmeError, BadNonceError, NoAccountError
from acmekit.models import ResourceT, parse_resource
from acmekit.nonce import NoncePool

logger = get_logger(__name__)

JOSE_CONTENT_TYPE = "application/jose+json"
PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"

DEFAULT_USER_AGENT = f"acmekit/{__version__}"


def create_http_client(
    verify: str | bool | None = None,
    timeout: float = 30.0,
    max_connections: int = 10,
    max_keepalive_connections: int = 5,
    user_agent: str = DEFAULT_USER_AGENT,
) -> httpx.AsyncClient:
    """Build the HTTP client used to talk to the CA.

    Args:
        verify: Path to CA certificate file, False to disable verification,
                or None/True for default verification.
        timeout: Per-request timeout in seconds.
        max_connections: Connection pool size.
        max_keepalive_connections: Idle keep-alive connections to retain.
        user_agent: User-Agent header sent with every request.

    Returns:
        A configured httpx.AsyncClient.
    """
    return httpx.AsyncClient(
        verify=True if verify is None else verify,
        timeout=timeout,
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
        ),
        headers={"User-Agent": user_agent},
    )


class AcmeHttp:
    """Signs, sends and validates ACME requests for one account key.

    Holds the account key and, once known, the account URL used as the
    JWS ``kid``. The client replaces both after registration and
    key rollover.

    Args:
        http: Transport used for all requests.
        directory: Directory resolver for the CA.
        account_key: Private key of the ACME account.
        account_url: Account URL, if already known.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        directory: DirectoryResolver,
        account_key: PrivateKey,
        account_url: str | None = None,
    ):
        self._http = http
        self.directory = directory
        self.account_key = account_key
        self.account_url = account_url
        self.nonces = NoncePool(http, lambda: directory.resolve("newNonce"))

    def get_jwk(self) -> dict[str, str]:
        """Public JWK of the current account key."""
        return jws.get_jwk(self.account_key)

    def thumbprint(self) -> str:
        """RFC 7638 thumbprint of the current account key."""
        return jws.jwk_thumbprint(self.account_key)

    async def resolve_url(self, url_or_resource: str) -> str:
        """Return a URL as-is, or resolve a directory resource name."""
        if "://" in url_or_resource:
            return url_or_resource
        return await self.directory.resolve(url_or_resource)

    async def get(self, url: str, accept: str | None = None) -> httpx.Response:
        """Send an unsigned GET request."""
        headers = {"Accept": accept} if accept else None
        response = await self._send("GET", url, headers=headers)
        await self.nonces.harvest(response)
        self._raise_for_problem(response)
        return response

    async def signed_request(
        self,
        url_or_resource: str,
        payload: Any,
        *,
        use_kid: bool = True,
        accept: str | None = None,
    ) -> httpx.Response:
        """Make a JWS-signed POST request to the ACME server.

        Args:
            url_or_resource: Endpoint URL or directory resource name.
            payload: JSON payload, or None for POST-as-GET.
            use_kid: If True, sign with the account URL as ``kid``.
                     If False, embed the JWK (account creation).
            accept: Optional Accept header.

        Returns:
            The HTTP response.

        Raises:
            NoAccountError: If ``use_kid`` is set and no account URL is known.
            AcmeError: If the ACME server returns a problem document.
        """
        if use_kid and not self.account_url:
            raise NoAccountError()

        url = await self.resolve_url(url_or_resource)
        try:
            return await self._signed_post(url, payload, use_kid, accept)
        except BadNonceError:
            logger.debug(
                "Nonce rejected, retrying once with a fresh nonce",
                extra={"url": url, **get_identifier_extra()},
            )
            return await self._signed_post(url, payload, use_kid, accept)

    async def post_as_get(self, url: str, accept: str | None = None) -> httpx.Response:
        """Authenticated read of a resource (RFC 8555 Section 6.3)."""
        return await self.signed_request(url, None, accept=accept)

    def parse(
        self, response: httpx.Response, model: type[ResourceT], url: str | None = None
    ) -> ResourceT:
        """Validate a JSON response body as a resource model.

        The resource URL is taken from ``url`` or else the Location header.
        """
        url = url or response.headers.get("Location")
        try:
            data = response.json()
        except ValueError:
            data = None
        return parse_resource(model, data, url)

    async def _signed_post(
        self, url: str, payload: Any, use_kid: bool, accept: str | None
    ) -> httpx.Response:
        nonce = await self.nonces.take()
        body = jws.sign(
            key=self.account_key,
            payload=payload,
            url=url,
            nonce=nonce,
            kid=self.account_url if use_kid else None,
        )

        headers = {"Content-Type": JOSE_CONTENT_TYPE}
        if accept:
            headers["Accept"] = accept

        response = await self._send("POST", url, headers=headers, content=json.dumps(body))

        # Error responses carry a fresh nonce too
        await self.nonces.harvest(response)
        self._raise_for_problem(response)
        return response

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        with Timer() as t:
            response = await self._http.request(method, url, **kwargs)
        logger.debug(
            "ACME request",
            extra={
                "method": method,
                "url": url,
                "status": response.status_code,
                "elapsed_ms": t.elapsed_ms,
                **get_identifier_extra(),
            },
        )
        return response

    def _raise_for_problem(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return

        try:
            error_data = response.json()
        except ValueError:
            error_data = None

        if not isinstance(error_data, dict):
            raise AcmeError(
                type="unknown",
                detail=response.text or response.reason_phrase,
                status_code=response.status_code,
            )

        error = AcmeError.from_response(
            error_data,
            response.status_code,
            headers=response.headers,
        )
        logger.debug(
            "ACME problem",
            extra={
                "url": str(response.request.url),
                "status": response.status_code,
                "error_type": error.type,
                **get_identifier_extra(),
            },
        )
        raise error
