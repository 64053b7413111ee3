"""DNS-01 challenge values (RFC 8555 Section 8.4)."""

import hashlib

from acmekit.crypto import base64url_encode

RECORD_PREFIX = "_acme-challenge"


def compute_dns_txt_value(key_authorization: str) -> str:
    """Compute the DNS TXT record value for DNS-01 challenge.

    The TXT record value is the base64url-encoded SHA-256 digest
    of the key authorization string.

    Args:
        key_authorization: The key authorization string.

    Returns:
        The base64url-encoded SHA-256 digest (without padding).
    """
    digest = hashlib.sha256(key_authorization.encode()).digest()
    return base64url_encode(digest)


def dns_record_name(identifier: str) -> str:
    """Name of the TXT record to publish for an identifier.

    Wildcard identifiers are validated at their base domain.
    """
    domain = identifier.removeprefix("*.").rstrip(".")
    return f"{RECORD_PREFIX}.{domain}"
