"""
Hostname and ACME token validation.

Every value interpolated into a generated config file, a CSR, a DNS record
or a filesystem path must pass through these checks first.
"""

import re
from dataclasses import dataclass, field

MAX_DOMAIN_LENGTH = 253
MAX_LABEL_LENGTH = 63

_LABEL_RE = re.compile(r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?")
_TLD_RE = re.compile(r"[a-zA-Z]{2,63}")
_TOKEN_RE = re.compile(r"[a-zA-Z0-9_-]+")


@dataclass
class DomainValidationResult:
    """Batch validation outcome."""

    valid: bool
    invalid: list[str] = field(default_factory=list)


def is_valid_domain(name: str) -> bool:
    """
    Check that a hostname is RFC 1035 shaped.

    Labels are alphanumeric with internal hyphens, at most 63 characters;
    the whole name is at most 253 characters and the top-level label is
    alphabetic with at least two characters.
    """
    if not isinstance(name, str) or not name:
        return False
    if len(name) > MAX_DOMAIN_LENGTH or ".." in name:
        return False

    labels = name.split(".")
    if len(labels) < 2:
        return False

    for label in labels:
        if not label or len(label) > MAX_LABEL_LENGTH:
            return False
        if not _LABEL_RE.fullmatch(label):
            return False

    return bool(_TLD_RE.fullmatch(labels[-1]))


def validate_domains(names: list[str]) -> DomainValidationResult:
    """Validate a batch of hostnames; the batch fails if any member fails."""
    invalid = [name for name in names if not is_valid_domain(name)]
    return DomainValidationResult(valid=bool(names) and not invalid, invalid=invalid)


def is_valid_token(token: str) -> bool:
    """Check that an ACME challenge token is base64url and safe as a filename."""
    return isinstance(token, str) and bool(_TOKEN_RE.fullmatch(token))
