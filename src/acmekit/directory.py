"""ACME directory discovery and caching."""

import asyncio

import httpx

from acmekit._logging import Timer, get_logger
from acmekit.exceptions import UnknownResourceError
from acmekit.models import Directory, parse_resource

logger = get_logger(__name__)

# Well-known production and staging directories
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
BUYPASS_PRODUCTION = "https://api.buypass.com/acme/directory"
BUYPASS_STAGING = "https://api.test4.buypass.no/acme/directory"
ZEROSSL_PRODUCTION = "https://acme.zerossl.com/v2/DV90"
GOOGLE_PRODUCTION = "https://dv.acme-v02.api.pki.goog/directory"
GOOGLE_STAGING = "https://dv.acme-v02.test-api.pki.goog/directory"


class DirectoryResolver:
    """Fetches the ACME directory once and resolves resource names to URLs.

    The directory is fetched lazily on first use and cached for the life
    of the resolver. It is only refetched when refresh() is called, so
    endpoint URLs never change in the middle of an operation.

    Args:
        directory_url: URL of the ACME directory endpoint.
        http: HTTP client used for the unsigned directory fetch.
    """

    def __init__(self, directory_url: str, http: httpx.AsyncClient):
        self.directory_url = directory_url
        self._http = http
        self._directory: Directory | None = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> Directory | None:
        """The cached directory, or None if it has not been fetched yet."""
        return self._directory

    async def get(self) -> Directory:
        """Get the ACME directory (cached after first fetch)."""
        if self._directory is not None:
            return self._directory

        async with self._lock:
            # Another task may have fetched it while we waited
            if self._directory is None:
                self._directory = await self._fetch()
            return self._directory

    async def refresh(self) -> Directory:
        """Refetch the directory, replacing the cached copy."""
        async with self._lock:
            self._directory = await self._fetch()
            return self._directory

    async def resolve(self, resource: str) -> str:
        """Resolve a directory resource name to its URL.

        Args:
            resource: RFC 8555 name ("newOrder") or attribute name ("new_order").

        Returns:
            The resource URL.

        Raises:
            UnknownResourceError: If the CA does not advertise the resource.
        """
        directory = await self.get()
        url = directory.get_url(resource)
        if not url:
            raise UnknownResourceError(resource)
        return url

    async def terms_of_service_url(self) -> str | None:
        """Terms of service URL from the directory metadata, if any."""
        directory = await self.get()
        return directory.meta.terms_of_service if directory.meta else None

    async def external_account_required(self) -> bool:
        """Whether the CA requires external account binding."""
        directory = await self.get()
        return bool(directory.meta and directory.meta.external_account_required)

    async def _fetch(self) -> Directory:
        with Timer() as t:
            response = await self._http.get(self.directory_url)
            response.raise_for_status()
        logger.debug(
            "Fetched ACME directory",
            extra={"url": self.directory_url, "elapsed_ms": t.elapsed_ms},
        )
        return parse_resource(Directory, response.json(), self.directory_url)
