"""
Exceptions raised inside an ACME provisioning attempt.

The protocol client converts all of these into a failed CertificateResult
at its boundary; they never reach the certificate manager's callers.
"""

from typing import Any


class ACMEError(Exception):
    """Base exception for ACME operations."""

    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class ACMEProtocolError(ACMEError):
    """Transport failure or non-success response from the certificate authority."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        problem: dict[str, Any] | None = None,
        suggestion: str = None,
    ):
        self.status_code = status_code
        self.problem = problem or {}
        super().__init__(message, suggestion=suggestion)


class ACMEChallengeError(ACMEError):
    """ACME challenge could not be prepared or is not offered."""

    pass


class ACMEAuthorizationError(ACMEError):
    """ACME authorization failed."""

    pass


class ACMEOrderError(ACMEError):
    """ACME order failed."""

    pass


class ACMETimeoutError(ACMEError):
    """Polling budget exhausted before the CA reached a final state."""

    pass


class DomainValidationError(ACMEError):
    """One or more requested names are not valid hostnames."""

    def __init__(self, invalid: list[str]):
        self.invalid = invalid
        super().__init__(
            f"Invalid domain names: {', '.join(str(name) for name in invalid)}",
            suggestion="Use fully qualified hostnames such as www.example.com",
        )
