"""Cryptographic utilities for ACME protocol operations."""

import base64

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

# Type alias for private keys
PrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey

# Anything a caller may hand us where a key is expected
KeyLike = PrivateKey | bytes | str

CSRLike = x509.CertificateSigningRequest | bytes | str

_CURVES = {
    "P-256": ec.SECP256R1,
    "P-384": ec.SECP384R1,
    "P-521": ec.SECP521R1,
}


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key.

    Args:
        key_size: Key size in bits (2048 or 4096 recommended).

    Returns:
        RSA private key.
    """
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )


def generate_ecdsa_key(curve: str = "P-256") -> ec.EllipticCurvePrivateKey:
    """Generate an ECDSA private key.

    Args:
        curve: Curve name ("P-256", "P-384" or "P-521").

    Returns:
        ECDSA private key.

    Raises:
        ValueError: If curve is not supported.
    """
    if curve not in _CURVES:
        raise ValueError(f"Unsupported curve: {curve}. Supported: {list(_CURVES.keys())}")

    return ec.generate_private_key(_CURVES[curve]())


def private_key_to_pem(key: PrivateKey) -> bytes:
    """Serialize a private key as unencrypted PKCS#8 PEM."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def create_private_key(size: int = 2048) -> bytes:
    """Generate a new RSA private key and return it PEM encoded.

    Args:
        size: Key size in bits.

    Returns:
        PEM-encoded private key bytes, suitable as an account or certificate key.
    """
    return private_key_to_pem(generate_rsa_key(size))


def create_private_ec_key(curve: str = "P-256") -> bytes:
    """Generate a new ECDSA private key and return it PEM encoded."""
    return private_key_to_pem(generate_ecdsa_key(curve))


def load_private_key_pem(pem_data: str | bytes, password: bytes | None = None) -> PrivateKey:
    """Load a private key from PEM-encoded data.

    Args:
        pem_data: PEM-encoded private key.
        password: Optional password for encrypted keys.

    Returns:
        RSA or ECDSA private key.

    Raises:
        ValueError: If PEM data is invalid or password is incorrect.
    """
    if isinstance(pem_data, str):
        pem_data = pem_data.encode("utf-8")
    try:
        key = serialization.load_pem_private_key(pem_data, password=password)
    except ValueError as e:
        error_msg = str(e).lower()
        if "password" in error_msg or "decrypt" in error_msg or "asn.1" in error_msg:
            raise ValueError("Invalid password or encrypted key requires password") from e
        raise ValueError(f"Invalid PEM data: {e}") from e
    except TypeError as e:
        # TypeError is raised when encrypted key is loaded without password
        raise ValueError("Invalid password or encrypted key requires password") from e

    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError(f"Unsupported key type: {type(key).__name__}")

    return key


def load_private_key(key: KeyLike) -> PrivateKey:
    """Accept a key object or PEM data and return a key object."""
    if isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        return key
    return load_private_key_pem(key)


def create_csr(
    key: KeyLike,
    domains: list[str],
    common_name: str | None = None,
) -> x509.CertificateSigningRequest:
    """Create a Certificate Signing Request (CSR).

    Args:
        key: Private key to sign the CSR.
        domains: List of domain names to include in the CSR.
        common_name: Subject common name, defaults to the first domain.

    Returns:
        Certificate Signing Request.

    Raises:
        ValueError: If domains list is empty.
    """
    if not domains:
        raise ValueError("At least one domain is required")

    key = load_private_key(key)
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name or domains[0]),
        ]
    )

    # SAN carries every name, including the common name
    names = list(dict.fromkeys([common_name, *domains] if common_name else domains))
    san = x509.SubjectAlternativeName([x509.DNSName(domain) for domain in names])

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(subject)
        .add_extension(san, critical=False)
    )
    return builder.sign(key, hashes.SHA256())


def csr_to_der(csr: CSRLike) -> bytes:
    """Return DER bytes for a CSR object, PEM text or DER bytes."""
    if isinstance(csr, x509.CertificateSigningRequest):
        return csr.public_bytes(serialization.Encoding.DER)
    if isinstance(csr, str):
        csr = csr.encode("ascii")
    if csr.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_csr(csr).public_bytes(serialization.Encoding.DER)
    return csr


def base64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(data: str) -> bytes:
    """Decode base64url data with or without padding."""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def pem_to_der(pem: str) -> bytes:
    """Convert PEM-encoded certificate to DER format.

    Args:
        pem: PEM-encoded certificate string.

    Returns:
        DER-encoded certificate bytes.
    """
    cert = x509.load_pem_x509_certificate(pem.encode())
    return cert.public_bytes(serialization.Encoding.DER)


def split_pem_chain(pem_chain: str) -> list[x509.Certificate]:
    """Parse every certificate in a PEM chain, leaf first."""
    return x509.load_pem_x509_certificates(pem_chain.encode())


def get_chain_root_issuer(pem_chain: str) -> str | None:
    """Return the issuer common name of the last certificate in a chain."""
    certs = split_pem_chain(pem_chain)
    if not certs:
        return None
    names = certs[-1].issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(names[0].value) if names else None


def get_csr_domains(csr: CSRLike) -> list[str]:
    """Return the common name and DNS SANs of a CSR, deduplicated, CN first."""
    if not isinstance(csr, x509.CertificateSigningRequest):
        csr = x509.load_der_x509_csr(csr_to_der(csr))

    names = [str(a.value) for a in csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
    try:
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        pass
    else:
        names.extend(san.value.get_values_for_type(x509.DNSName))
    return list(dict.fromkeys(names))
