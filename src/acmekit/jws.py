"""JWS and JWK handling for signed ACME requests (RFC 7515, 7517, 7638).

Only the subset ACME needs is implemented: flattened JSON serialization,
RS256/ES256/ES384/ES512 signatures with the account key, HS256 for
external account binding, and the nested JWS used by key rollover.
"""

import hashlib
import hmac
import json
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from acmekit.crypto import PrivateKey, base64url_decode, base64url_encode

# Curve name -> (JWK crv, coordinate size in bytes, JWS alg, hash)
_EC_PARAMS: dict[str, tuple[str, int, str, type[hashes.HashAlgorithm]]] = {
    "secp256r1": ("P-256", 32, "ES256", hashes.SHA256),
    "secp384r1": ("P-384", 48, "ES384", hashes.SHA384),
    "secp521r1": ("P-521", 66, "ES512", hashes.SHA512),
}

# Members that take part in the RFC 7638 thumbprint, per key type
_THUMBPRINT_MEMBERS = {
    "RSA": ("e", "kty", "n"),
    "EC": ("crv", "kty", "x", "y"),
}


def _ec_params(key: ec.EllipticCurvePrivateKey | ec.EllipticCurvePublicKey):
    curve_name = key.curve.name
    if curve_name not in _EC_PARAMS:
        raise ValueError(f"Unsupported curve: {curve_name}")
    return _EC_PARAMS[curve_name]


def _int_to_base64url(n: int, length: int | None = None) -> str:
    """Convert an integer to base64url, big-endian, optionally fixed length."""
    if length is None:
        length = max(1, (n.bit_length() + 7) // 8)
    return base64url_encode(n.to_bytes(length, byteorder="big"))


def _json_bytes(data: Any) -> bytes:
    return json.dumps(data, separators=(",", ":")).encode("utf-8")


def get_jwk(key: PrivateKey) -> dict[str, str]:
    """Get the public JWK (JSON Web Key) of a private key.

    Args:
        key: Private key to extract public JWK from.

    Returns:
        JWK dictionary containing only public members.
    """
    if isinstance(key, rsa.RSAPrivateKey):
        public_numbers = key.public_key().public_numbers()
        return {
            "e": _int_to_base64url(public_numbers.e),
            "kty": "RSA",
            "n": _int_to_base64url(public_numbers.n),
        }
    if isinstance(key, ec.EllipticCurvePrivateKey):
        crv, coord_size, _, _ = _ec_params(key)
        public_numbers = key.public_key().public_numbers()
        return {
            "crv": crv,
            "kty": "EC",
            "x": _int_to_base64url(public_numbers.x, coord_size),
            "y": _int_to_base64url(public_numbers.y, coord_size),
        }
    raise ValueError(f"Unsupported key type: {type(key).__name__}")


def jwk_thumbprint(key: PrivateKey | dict[str, str]) -> str:
    """Compute the JWK thumbprint of a key (RFC 7638).

    The required members are serialized with lexicographically sorted
    keys and no whitespace, hashed with SHA-256, and base64url encoded.
    Any other serialization breaks every challenge key authorization.

    Args:
        key: Private key, or an already exported public JWK.

    Returns:
        Base64url-encoded SHA-256 thumbprint.
    """
    jwk = key if isinstance(key, dict) else get_jwk(key)
    try:
        members = _THUMBPRINT_MEMBERS[jwk["kty"]]
    except KeyError:
        raise ValueError(f"Unsupported JWK key type: {jwk.get('kty')}") from None

    canonical = {name: jwk[name] for name in members}
    json_bytes = json.dumps(canonical, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64url_encode(hashlib.sha256(json_bytes).digest())


def algorithm_for(key: PrivateKey) -> str:
    """Return the JWS algorithm used to sign with this key."""
    if isinstance(key, rsa.RSAPrivateKey):
        return "RS256"
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return _ec_params(key)[2]
    raise ValueError(f"Unsupported key type: {type(key).__name__}")


def _sign_bytes(key: PrivateKey, signing_input: bytes) -> bytes:
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    # JWS wants fixed-size r||s, not the DER structure cryptography returns
    _, coord_size, _, hash_cls = _ec_params(key)
    r, s = decode_dss_signature(key.sign(signing_input, ec.ECDSA(hash_cls())))
    return r.to_bytes(coord_size, byteorder="big") + s.to_bytes(coord_size, byteorder="big")


def encode_payload(payload: Any) -> str:
    """Encode a JWS payload. ``None`` produces the empty POST-as-GET payload."""
    if payload is None:
        return ""
    return base64url_encode(_json_bytes(payload))


def sign(
    key: PrivateKey,
    payload: Any,
    url: str,
    nonce: str | None = None,
    kid: str | None = None,
) -> dict[str, str]:
    """Sign a payload as a flattened JSON JWS for an ACME request.

    Args:
        key: Private key to sign with.
        payload: JSON-serializable payload, or None for POST-as-GET.
        url: URL of the ACME endpoint, bound into the protected header.
        nonce: Replay nonce (omitted for the inner JWS of key rollover).
        kid: Account URL. If None, the public JWK is embedded instead.

    Returns:
        Dict with ``protected``, ``payload`` and ``signature`` members.
    """
    protected: dict[str, Any] = {"alg": algorithm_for(key)}
    if kid:
        protected["kid"] = kid
    else:
        protected["jwk"] = get_jwk(key)
    if nonce is not None:
        protected["nonce"] = nonce
    protected["url"] = url

    protected_b64 = base64url_encode(_json_bytes(protected))
    payload_b64 = encode_payload(payload)
    signature = _sign_bytes(key, f"{protected_b64}.{payload_b64}".encode("ascii"))

    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": base64url_encode(signature),
    }


def sign_external_account_binding(
    kid: str,
    hmac_key: str | bytes,
    jwk: dict[str, str],
    url: str,
) -> dict[str, str]:
    """Build the externalAccountBinding JWS (RFC 8555 Section 7.3.4).

    Args:
        kid: Key identifier issued by the CA out of band.
        hmac_key: MAC key issued by the CA, base64url text or raw bytes.
        jwk: Public JWK of the account key being bound.
        url: The newAccount URL.

    Returns:
        Flattened JWS signed with HS256.
    """
    if isinstance(hmac_key, str):
        hmac_key = base64url_decode(hmac_key)

    protected_b64 = base64url_encode(_json_bytes({"alg": "HS256", "kid": kid, "url": url}))
    payload_b64 = base64url_encode(_json_bytes(jwk))
    signing_input = f"{protected_b64}.{payload_b64}".encode("ascii")
    signature = hmac.new(hmac_key, signing_input, hashlib.sha256).digest()

    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": base64url_encode(signature),
    }


def sign_key_change(
    new_key: PrivateKey,
    old_key: PrivateKey,
    account_url: str,
    url: str,
) -> dict[str, str]:
    """Build the inner JWS of an account key change (RFC 8555 Section 7.3.5).

    The inner JWS is signed by the new key, carries the new key's JWK and
    no nonce; its payload names the account and the old key.
    """
    payload = {"account": account_url, "oldKey": get_jwk(old_key)}
    return sign(new_key, payload, url, nonce=None, kid=None)


def decode_protected(jws: dict[str, str]) -> dict[str, Any]:
    """Decode the protected header of a flattened JWS."""
    return json.loads(base64url_decode(jws["protected"]))
