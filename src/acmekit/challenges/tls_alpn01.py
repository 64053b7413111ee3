"""TLS-ALPN-01 challenge values (RFC 8737)."""

import hashlib

from cryptography.x509 import ObjectIdentifier

ALPN_PROTOCOL = "acme-tls/1"

# id-pe-acmeIdentifier
ACME_IDENTIFIER_OID = ObjectIdentifier("1.3.6.1.5.5.7.1.31")


def acme_identifier_extension_value(key_authorization: str) -> bytes:
    """DER value of the acmeIdentifier extension for the validation certificate.

    The extension holds the SHA-256 digest of the key authorization as an
    ASN.1 OCTET STRING.
    """
    digest = hashlib.sha256(key_authorization.encode()).digest()
    # OCTET STRING, definite short-form length
    return bytes([0x04, len(digest)]) + digest
