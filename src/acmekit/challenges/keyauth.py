"""Challenge key authorizations (RFC 8555 Section 8.1)."""

from acmekit.challenges.dns01 import compute_dns_txt_value
from acmekit.exceptions import UnsupportedChallengeError
from acmekit.models import Challenge, ChallengeType


def compute_key_authorization(token: str, thumbprint: str) -> str:
    """Compute the key authorization string.

    The key authorization is the token concatenated with the account
    key thumbprint, separated by a period.

    Args:
        token: The challenge token from the ACME server.
        thumbprint: The base64url-encoded SHA-256 thumbprint of the account key.

    Returns:
        The key authorization string (token.thumbprint).
    """
    return f"{token}.{thumbprint}"


def challenge_response_value(challenge: Challenge, thumbprint: str) -> str:
    """Value the caller must publish to satisfy a challenge.

    http-01 and tls-alpn-01 use the key authorization itself; dns-01 and
    dns-account-01 publish its SHA-256 digest as a TXT record.

    Raises:
        UnsupportedChallengeError: For challenge types without a known value,
            or a challenge that carries no token.
    """
    if not challenge.token:
        raise UnsupportedChallengeError(challenge.type)

    key_authorization = compute_key_authorization(challenge.token, thumbprint)
    if challenge.type in (ChallengeType.HTTP_01, ChallengeType.TLS_ALPN_01):
        return key_authorization
    if challenge.type in (ChallengeType.DNS_01, ChallengeType.DNS_ACCOUNT_01):
        return compute_dns_txt_value(key_authorization)
    raise UnsupportedChallengeError(challenge.type)
