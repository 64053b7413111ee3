"""HTTP-01 challenge values (RFC 8555 Section 8.3)."""

WELL_KNOWN_PATH = "/.well-known/acme-challenge/"


def http_challenge_path(token: str) -> str:
    """Path the CA will request; serve the key authorization there."""
    return f"{WELL_KNOWN_PATH}{token}"


def http_challenge_url(identifier: str, token: str) -> str:
    """Full URL the CA will request for an identifier."""
    return f"http://{identifier}{http_challenge_path(token)}"
