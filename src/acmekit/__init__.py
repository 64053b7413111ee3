"""acmekit - asyncio ACME (RFC 8555) client library."""

from acmekit._version import __version__
from acmekit.client import Client
from acmekit.crypto import create_csr, create_private_ec_key, create_private_key
from acmekit.polling import wait_for_valid_status

__all__ = [
    "Client",
    "__version__",
    "create_csr",
    "create_private_ec_key",
    "create_private_key",
    "wait_for_valid_status",
]
