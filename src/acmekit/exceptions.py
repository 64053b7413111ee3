"""ACME protocol and client exceptions."""

from collections.abc import Mapping
from typing import Any

ERROR_PREFIX = "urn:ietf:params:acme:error:"


class AcmeError(Exception):
    """Base exception for ACME protocol errors.

    Represents errors returned by the ACME server in the standard
    problem document format (RFC 7807).
    """

    def __init__(
        self,
        type: str,
        detail: str,
        status_code: int,
        subproblems: list[dict[str, Any]] | None = None,
        retry_after: int | None = None,
    ):
        self.type = type
        self.detail = detail
        self.status_code = status_code
        self.subproblems = subproblems
        self.retry_after = retry_after
        super().__init__(f"{type}: {detail}")

    @classmethod
    def from_response(
        cls,
        data: dict[str, Any],
        status_code: int,
        headers: Mapping[str, str] | None = None,
    ) -> "AcmeError":
        """Create an AcmeError from a JSON problem document.

        Routes to the appropriate subclass based on the error type URN.

        Args:
            data: Parsed JSON error response.
            status_code: HTTP status code.
            headers: Response headers (for Retry-After extraction).

        Returns:
            AcmeError instance (or appropriate subclass).
        """
        retry_after = parse_retry_after(headers.get("Retry-After")) if headers else None
        error_type = data.get("type", "unknown")

        kwargs: dict[str, Any] = {
            "type": error_type,
            "detail": data.get("detail", "Unknown error"),
            "status_code": status_code,
            "subproblems": data.get("subproblems"),
            "retry_after": retry_after,
        }

        error_class = _ERROR_CLASSES.get(error_type, cls)
        return error_class(**kwargs)

    @classmethod
    def wrap(cls, error: "AcmeError") -> "AcmeError":
        """Build an instance of this class carrying the problem fields of another error."""
        return cls(
            type=error.type,
            detail=error.detail,
            status_code=error.status_code,
            subproblems=error.subproblems,
            retry_after=error.retry_after,
        )

    @property
    def code(self) -> str:
        """Short error code, e.g. "badNonce" for the badNonce URN."""
        if self.type.startswith(ERROR_PREFIX):
            return self.type[len(ERROR_PREFIX) :]
        return self.type

    @property
    def identifiers(self) -> list[str]:
        """Identifier values named by the subproblems, in listing order."""
        values = []
        for subproblem in self.subproblems or []:
            identifier = subproblem.get("identifier") or {}
            if "value" in identifier:
                values.append(identifier["value"])
        return values

    def get_retry_seconds(self, default: int = 3600) -> int:
        """Get retry delay, falling back to default.

        Args:
            default: Default seconds if retry_after is not set.

        Returns:
            Number of seconds to wait before retrying.
        """
        return self.retry_after if self.retry_after is not None else default


def parse_retry_after(value: str | None) -> int | None:
    """Parse a Retry-After header (seconds or HTTP-date).

    Args:
        value: Retry-After header value.

    Returns:
        Seconds to wait, or None if not parseable.
    """
    if not value:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        from datetime import datetime, timezone
        from email.utils import parsedate_to_datetime

        try:
            dt = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        return max(0, int((dt - datetime.now(timezone.utc)).total_seconds()))


class ChallengeError(AcmeError):
    """Error during challenge validation."""

    pass


class OrderError(AcmeError):
    """Error with order processing."""

    pass


class OrderCreationError(OrderError):
    """The CA refused to create an order."""

    pass


class AuthorizationError(AcmeError):
    """Error with authorization processing."""

    pass


class BadNonceError(AcmeError):
    """Bad nonce error (urn:ietf:params:acme:error:badNonce)."""

    pass


class RateLimitError(AcmeError):
    """Rate limit exceeded (urn:ietf:params:acme:error:rateLimited)."""

    @property
    def rate_limit_type(self) -> str:
        """Parse specific rate limit type from detail message.

        Returns:
            Rate limit type identifier.
        """
        detail = self.detail.lower()
        if "exact set" in detail:
            return "duplicate_certificate"
        elif "too many certificates" in detail:
            return "certificates_per_domain"
        elif "too many new orders" in detail:
            return "orders_per_account"
        elif "failed authorizations" in detail:
            return "failed_authorizations"
        return "unknown"


class AccountNotFoundError(AcmeError):
    """No account exists for the key (urn:ietf:params:acme:error:accountDoesNotExist)."""

    pass


class UnauthorizedError(AcmeError):
    """Request not authorized (urn:ietf:params:acme:error:unauthorized)."""

    pass


class MalformedError(AcmeError):
    """Malformed request (urn:ietf:params:acme:error:malformed)."""

    pass


class BadCSRError(AcmeError):
    """CSR rejected (urn:ietf:params:acme:error:badCSR)."""

    pass


class OrderNotReadyError(AcmeError):
    """Order finalized too early (urn:ietf:params:acme:error:orderNotReady)."""

    pass


class ExternalAccountRequiredError(AcmeError):
    """CA requires external account binding (urn:ietf:params:acme:error:externalAccountRequired)."""

    pass


class UserActionRequiredError(AcmeError):
    """Out-of-band action needed (urn:ietf:params:acme:error:userActionRequired)."""

    pass


class DnsValidationError(AcmeError):
    """DNS validation failed (urn:ietf:params:acme:error:dns)."""

    pass


class CAAError(AcmeError):
    """CAA record forbids issuance (urn:ietf:params:acme:error:caa)."""

    pass


class ServerInternalError(AcmeError):
    """ACME server internal error (urn:ietf:params:acme:error:serverInternal)."""

    pass


_ERROR_CLASSES: dict[str, type[AcmeError]] = {
    ERROR_PREFIX + "badNonce": BadNonceError,
    ERROR_PREFIX + "rateLimited": RateLimitError,
    ERROR_PREFIX + "accountDoesNotExist": AccountNotFoundError,
    ERROR_PREFIX + "unauthorized": UnauthorizedError,
    ERROR_PREFIX + "malformed": MalformedError,
    ERROR_PREFIX + "badCSR": BadCSRError,
    ERROR_PREFIX + "orderNotReady": OrderNotReadyError,
    ERROR_PREFIX + "externalAccountRequired": ExternalAccountRequiredError,
    ERROR_PREFIX + "userActionRequired": UserActionRequiredError,
    ERROR_PREFIX + "dns": DnsValidationError,
    ERROR_PREFIX + "caa": CAAError,
    ERROR_PREFIX + "serverInternal": ServerInternalError,
}


# =============================================================================
# Local errors (raised before or instead of a network call)
# =============================================================================


class AcmeClientError(Exception):
    """Base class for errors detected by the client itself."""

    pass


class TermsNotAgreedError(AcmeClientError):
    """The CA publishes terms of service that the caller has not agreed to."""

    def __init__(self, terms_of_service: str):
        self.terms_of_service = terms_of_service
        super().__init__(
            f"Terms of service must be agreed to before creating an account: {terms_of_service}"
        )


class ExternalAccountBindingRequiredError(AcmeClientError):
    """The CA requires external account binding but none was supplied."""

    pass


class UnknownResourceError(AcmeClientError):
    """The CA directory does not list the requested resource."""

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(f"Resource '{resource}' not found in ACME directory")


class NoAccountError(AcmeClientError):
    """No account URL is known to the client yet."""

    def __init__(self, message: str = "No account URL found. Call create_account() first."):
        super().__init__(message)


class MissingNonceError(AcmeClientError):
    """The CA's newNonce endpoint answered without a Replay-Nonce header."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"No Replay-Nonce header in response from {url}")


class UnsupportedChallengeError(AcmeClientError):
    """No key authorization can be produced for this challenge type."""

    def __init__(self, challenge_type: str):
        self.challenge_type = challenge_type
        super().__init__(
            f"Unable to produce key authorization for challenge type: {challenge_type}"
        )


class SchemaError(AcmeClientError):
    """A CA response body does not match the expected resource shape."""

    def __init__(self, resource: str, url: str | None, errors: list[dict[str, Any]]):
        self.resource = resource
        self.url = url
        self.errors = errors
        locations = ", ".join(".".join(str(p) for p in e.get("loc", ())) for e in errors)
        super().__init__(f"Invalid {resource} response from {url}: {locations}")


class PollingTimeoutError(AcmeClientError):
    """Polling gave up before the resource reached a terminal status."""

    def __init__(self, last_status: str | None, attempts: int, last_resource: Any = None):
        self.last_status = last_status
        self.attempts = attempts
        self.last_resource = last_resource
        super().__init__(
            f"Gave up waiting after {attempts} attempt(s); last status: {last_status}"
        )


class InvalidStatusError(AcmeClientError):
    """The CA moved a resource to a terminal status other than the one awaited."""

    def __init__(self, status: str, resource: Any):
        self.status = status
        self.resource = resource
        error = getattr(resource, "error", None)
        detail = f": {error.get('detail')}" if isinstance(error, dict) and "detail" in error else ""
        super().__init__(f"{type(resource).__name__} status is {status}{detail}")
