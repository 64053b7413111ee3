"""Replay nonce pool."""

import asyncio
from collections.abc import Awaitable, Callable

import httpx

from acmekit._logging import get_logger
from acmekit.exceptions import MissingNonceError

logger = get_logger(__name__)

REPLAY_NONCE_HEADER = "Replay-Nonce"


class NoncePool:
    """Single-use anti-replay nonces for one client.

    A nonce leaves the pool the moment it is handed out, whether or not
    the request it is used for succeeds, so no nonce is ever used twice.
    The pool is refilled from the ``Replay-Nonce`` header of every CA
    response and, when empty, from the CA's newNonce endpoint.

    Args:
        http: HTTP client used to fetch fresh nonces.
        new_nonce_url: Async callable returning the newNonce URL (resolved
            lazily so the directory is only fetched when needed).
    """

    def __init__(self, http: httpx.AsyncClient, new_nonce_url: Callable[[], Awaitable[str]]):
        self._http = http
        self._new_nonce_url = new_nonce_url
        self._nonces: list[str] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._nonces)

    async def take(self) -> str:
        """Return an unused nonce, fetching one from the CA if the pool is empty."""
        async with self._lock:
            if self._nonces:
                return self._nonces.pop()

        # A freshly fetched nonce goes straight to the caller
        return await self._fetch()

    async def deposit(self, nonce: str | None) -> None:
        """Add a nonce received from the CA."""
        if not nonce:
            return
        async with self._lock:
            if nonce not in self._nonces:
                self._nonces.append(nonce)

    async def harvest(self, response: httpx.Response) -> None:
        """Deposit the Replay-Nonce header of a response, if it carries one."""
        await self.deposit(response.headers.get(REPLAY_NONCE_HEADER))

    def clear(self) -> None:
        """Drop every stored nonce."""
        self._nonces.clear()

    async def _fetch(self) -> str:
        url = await self._new_nonce_url()
        logger.debug("Requesting fresh nonce", extra={"url": url})

        response = await self._http.head(url)
        if response.status_code == 405:
            response = await self._http.get(url)
        response.raise_for_status()

        nonce = response.headers.get(REPLAY_NONCE_HEADER)
        if not nonce:
            raise MissingNonceError(url)
        return nonce
