"""ACME challenge values.

Publishing these values (DNS records, HTTP files, TLS certificates) is
left to the caller.
"""

from acmekit.challenges.dns01 import compute_dns_txt_value, dns_record_name
from acmekit.challenges.http01 import http_challenge_path, http_challenge_url
from acmekit.challenges.keyauth import challenge_response_value, compute_key_authorization
from acmekit.challenges.tls_alpn01 import ALPN_PROTOCOL, acme_identifier_extension_value

__all__ = [
    "ALPN_PROTOCOL",
    "acme_identifier_extension_value",
    "challenge_response_value",
    "compute_dns_txt_value",
    "compute_key_authorization",
    "dns_record_name",
    "http_challenge_path",
    "http_challenge_url",
]
