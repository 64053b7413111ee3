"""Pydantic models for ACME protocol resources."""

from datetime import datetime
from enum import IntEnum, StrEnum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from acmekit.exceptions import SchemaError

# =============================================================================
# ACME Protocol Enums (RFC 8555)
# =============================================================================


class RevocationReason(IntEnum):
    """Certificate revocation reasons (RFC 5280 Section 5.3.1)."""

    UNSPECIFIED = 0
    KEY_COMPROMISE = 1
    CA_COMPROMISE = 2
    AFFILIATION_CHANGED = 3
    SUPERSEDED = 4
    CESSATION_OF_OPERATION = 5
    CERTIFICATE_HOLD = 6
    REMOVE_FROM_CRL = 8
    PRIVILEGE_WITHDRAWN = 9
    AA_COMPROMISE = 10


class AcmeErrorType(StrEnum):
    """ACME error types (RFC 8555 Section 6.7)."""

    ACCOUNT_DOES_NOT_EXIST = "urn:ietf:params:acme:error:accountDoesNotExist"
    ALREADY_REVOKED = "urn:ietf:params:acme:error:alreadyRevoked"
    BAD_CSR = "urn:ietf:params:acme:error:badCSR"
    BAD_NONCE = "urn:ietf:params:acme:error:badNonce"
    BAD_PUBLIC_KEY = "urn:ietf:params:acme:error:badPublicKey"
    BAD_REVOCATION_REASON = "urn:ietf:params:acme:error:badRevocationReason"
    BAD_SIGNATURE_ALGORITHM = "urn:ietf:params:acme:error:badSignatureAlgorithm"
    CAA = "urn:ietf:params:acme:error:caa"
    COMPOUND = "urn:ietf:params:acme:error:compound"
    CONNECTION = "urn:ietf:params:acme:error:connection"
    DNS = "urn:ietf:params:acme:error:dns"
    EXTERNAL_ACCOUNT_REQUIRED = "urn:ietf:params:acme:error:externalAccountRequired"
    INCORRECT_RESPONSE = "urn:ietf:params:acme:error:incorrectResponse"
    INVALID_CONTACT = "urn:ietf:params:acme:error:invalidContact"
    MALFORMED = "urn:ietf:params:acme:error:malformed"
    ORDER_NOT_READY = "urn:ietf:params:acme:error:orderNotReady"
    RATE_LIMITED = "urn:ietf:params:acme:error:rateLimited"
    REJECTED_IDENTIFIER = "urn:ietf:params:acme:error:rejectedIdentifier"
    SERVER_INTERNAL = "urn:ietf:params:acme:error:serverInternal"
    TLS = "urn:ietf:params:acme:error:tls"
    UNAUTHORIZED = "urn:ietf:params:acme:error:unauthorized"
    UNSUPPORTED_CONTACT = "urn:ietf:params:acme:error:unsupportedContact"
    UNSUPPORTED_IDENTIFIER = "urn:ietf:params:acme:error:unsupportedIdentifier"
    USER_ACTION_REQUIRED = "urn:ietf:params:acme:error:userActionRequired"


class ChallengeStatus(StrEnum):
    """Challenge statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AuthorizationStatus(StrEnum):
    """Authorization statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


class OrderStatus(StrEnum):
    """Order statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AccountStatus(StrEnum):
    """Account statuses (RFC 8555 Section 7.1.6).

    ``pending`` is not part of RFC 8555 but is still reported by some
    older CA deployments.
    """

    PENDING = "pending"
    VALID = "valid"
    DEACTIVATED = "deactivated"
    REVOKED = "revoked"


class ChallengeType(StrEnum):
    """Challenge types (RFC 8555 Section 8)."""

    HTTP_01 = "http-01"
    DNS_01 = "dns-01"
    TLS_ALPN_01 = "tls-alpn-01"
    DNS_ACCOUNT_01 = "dns-account-01"


class IdentifierType(StrEnum):
    """Identifier types (RFC 8555 Section 9.7.7, RFC 8738)."""

    DNS = "dns"
    IP = "ip"


# Statuses after which a resource never changes again
TERMINAL_STATUSES = frozenset({"valid", "invalid", "deactivated", "expired", "revoked"})


# =============================================================================
# Pydantic Models
# =============================================================================


class DirectoryMeta(BaseModel):
    """Optional directory metadata (RFC 8555 Section 7.1.1)."""

    terms_of_service: str | None = Field(default=None, alias="termsOfService")
    website: str | None = None
    caa_identities: list[str] | None = Field(default=None, alias="caaIdentities")
    external_account_required: bool = Field(default=False, alias="externalAccountRequired")

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)


class Directory(BaseModel):
    """ACME directory resource (RFC 8555 Section 7.1.1)."""

    new_nonce: str = Field(alias="newNonce")
    new_account: str = Field(alias="newAccount")
    new_order: str = Field(alias="newOrder")
    new_authz: str | None = Field(default=None, alias="newAuthz")
    revoke_cert: str | None = Field(default=None, alias="revokeCert")
    key_change: str | None = Field(default=None, alias="keyChange")
    meta: DirectoryMeta | None = None

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    def get_url(self, resource: str) -> str | None:
        """Look up a resource URL by its RFC name or attribute name."""
        for name, field in type(self).model_fields.items():
            if resource in (name, field.alias) and name != "meta":
                return getattr(self, name)
        extra = self.model_extra or {}
        value = extra.get(resource)
        return value if isinstance(value, str) else None


class Identifier(BaseModel):
    """ACME identifier (RFC 8555 Section 7.1.3)."""

    type: IdentifierType
    value: str

    model_config = ConfigDict(frozen=True)


class Account(BaseModel):
    """ACME account resource (RFC 8555 Section 7.1.2)."""

    url: str | None = None
    status: AccountStatus
    contact: list[str] | None = None
    orders: str | None = None
    terms_of_service_agreed: bool | None = Field(default=None, alias="termsOfServiceAgreed")
    key: dict[str, Any] | None = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Challenge(BaseModel):
    """ACME challenge resource (RFC 8555 Section 7.5.1).

    ``type`` is kept as a plain string so challenge types this library
    does not know about still parse.
    """

    url: str
    type: str
    status: ChallengeStatus
    token: str | None = None
    validated: datetime | None = None
    error: dict[str, Any] | None = None

    model_config = ConfigDict(extra="allow")


class Authorization(BaseModel):
    """ACME authorization resource (RFC 8555 Section 7.1.4)."""

    url: str | None = None
    status: AuthorizationStatus
    identifier: Identifier
    challenges: list[Challenge]
    expires: datetime | None = None
    wildcard: bool = False

    model_config = ConfigDict(extra="allow")

    def get_challenge(self, challenge_type: str) -> Challenge | None:
        """Return the first challenge of the given type, if offered."""
        for challenge in self.challenges:
            if challenge.type == challenge_type:
                return challenge
        return None


class Order(BaseModel):
    """ACME order resource (RFC 8555 Section 7.1.3)."""

    url: str | None = None
    status: OrderStatus
    identifiers: list[Identifier]
    authorizations: list[str]
    finalize: str
    expires: datetime | None = None
    not_before: datetime | None = Field(default=None, alias="notBefore")
    not_after: datetime | None = Field(default=None, alias="notAfter")
    certificate: str | None = None
    error: dict[str, Any] | None = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")


ResourceT = TypeVar("ResourceT", bound=BaseModel)


def parse_resource(
    model: type[ResourceT], data: Any, url: str | None = None
) -> ResourceT:
    """Validate a CA response body against a resource model.

    Args:
        model: The expected resource model.
        data: Decoded JSON body.
        url: Resource URL, stored on models that carry one.

    Returns:
        A new model instance.

    Raises:
        SchemaError: If the body does not have the shape RFC 8555 requires.
    """
    if isinstance(data, dict) and url is not None and "url" in model.model_fields:
        data = {**data, "url": data.get("url", url)}
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise SchemaError(model.__name__, url, e.errors(include_url=False)) from e
