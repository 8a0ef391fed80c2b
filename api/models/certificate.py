"""
Certificate models for ACME certificate management.

Provides Pydantic models for ACME protocol resources (directory, orders,
authorizations, challenges), persisted accounts, and the results returned
by the protocol client and the certificate manager.
"""

import uuid
from enum import Enum
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field

from models.domain import SSLStatus


class AcmeEnvironment(str, Enum):
    """Certificate authority environment."""
    PRODUCTION = "production"
    STAGING = "staging"


class ChallengeType(str, Enum):
    """Supported ACME challenge types."""
    HTTP_01 = "http-01"
    DNS_01 = "dns-01"


class OrderStatus(str, Enum):
    """ACME order status (RFC 8555 section 7.1.6)."""
    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AuthorizationStatus(str, Enum):
    """ACME authorization status."""
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


# ACME protocol resources

class AcmeDirectory(BaseModel):
    """Endpoint map published by the certificate authority."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    new_nonce: str = Field(..., alias="newNonce")
    new_account: str = Field(..., alias="newAccount")
    new_order: str = Field(..., alias="newOrder")
    revoke_cert: Optional[str] = Field(None, alias="revokeCert")
    key_change: Optional[str] = Field(None, alias="keyChange")


class AcmeIdentifier(BaseModel):
    """Identifier (domain name) covered by an order or authorization."""
    model_config = ConfigDict(extra="ignore")

    type: str = "dns"
    value: str


class AcmeChallenge(BaseModel):
    """A single proof-of-control mechanism offered for an authorization."""
    model_config = ConfigDict(extra="ignore")

    type: str
    url: str
    token: str = ""
    status: str = "pending"
    error: Optional[Dict[str, Any]] = None


class AcmeAuthorization(BaseModel):
    """CA-side proof-of-control record for one identifier."""
    model_config = ConfigDict(extra="ignore")

    status: AuthorizationStatus
    identifier: AcmeIdentifier
    challenges: List[AcmeChallenge] = Field(default_factory=list)
    expires: Optional[str] = None
    wildcard: bool = False

    def find_challenge(self, challenge_type: ChallengeType) -> Optional[AcmeChallenge]:
        """Return the offered challenge matching the requested type."""
        for challenge in self.challenges:
            if challenge.type == challenge_type.value:
                return challenge
        return None


class AcmeOrder(BaseModel):
    """
    In-memory representation of a CA order.

    Orders are created per provisioning attempt and never persisted.
    """
    model_config = ConfigDict(extra="ignore")

    status: OrderStatus
    authorizations: List[str] = Field(default_factory=list)
    finalize: str
    certificate: Optional[str] = None
    identifiers: List[AcmeIdentifier] = Field(default_factory=list)
    expires: Optional[str] = None
    url: Optional[str] = Field(None, description="Order URL from the Location header")


# ACME Account Model

class ACMEAccount(BaseModel):
    """ACME account registered with the certificate authority (one per environment)."""

    id: str = Field(
        default_factory=lambda: f"acme-{uuid.uuid4().hex[:12]}",
        description="Account identifier"
    )
    environment: AcmeEnvironment = Field(..., description="CA environment the account belongs to")
    email: Optional[str] = Field(None, description="Account contact email")
    account_url: str = Field(..., description="Account URL assigned by the CA")
    private_key_pem: str = Field(..., description="Account EC P-256 private key (PEM format)")
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        description="Account creation time"
    )


# Results

class CertificateResult(BaseModel):
    """Outcome of one protocol-level certificate request."""

    success: bool
    certificate: Optional[str] = Field(None, description="PEM certificate chain")
    private_key: Optional[str] = Field(None, description="PEM private key for the certificate")
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


class ProvisioningResult(BaseModel):
    """Outcome of a certificate manager provisioning cycle."""

    success: bool
    domain: str = ""
    domain_id: Optional[str] = None
    certificate: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


class CertificateInfo(BaseModel):
    """Certificate details for a domain, with expiry-derived status."""

    domain_id: str
    domain: str
    status: SSLStatus
    expires_at: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    last_error: Optional[str] = None


class RenewalSummary(BaseModel):
    """Summary of one renewal pass."""

    checked: int = 0
    renewed: int = 0
    failed: int = 0
    results: List[ProvisioningResult] = Field(default_factory=list)


class CertificateManagerStatus(BaseModel):
    """Aggregate certificate counts across all domains."""

    total_domains: int
    active_certificates: int
    pending_certificates: int
    expiring_certificates: int
    error_certificates: int
    renewal_threshold_days: int
    acme_environment: AcmeEnvironment
    dns_challenge_enabled: bool


class AcmeStatus(BaseModel):
    """Current ACME client configuration."""

    environment: AcmeEnvironment
    email: str
    directory_url: str


# API request/response models

class SSLAction(str, Enum):
    """Actions accepted by POST /domains/{domain_id}/ssl."""
    PROVISION = "provision"
    RENEW = "renew"
    PROVISION_ASYNC = "provision-async"


class SSLActionRequest(BaseModel):
    """Request body for SSL actions on a domain."""

    action: SSLAction = Field(default=SSLAction.PROVISION, description="Action to perform")
    challenge_type: Optional[ChallengeType] = Field(
        None,
        description="Force a challenge type; defaults to dns-01 when a DNS provider is configured"
    )


class SSLAcceptedResponse(BaseModel):
    """Response for background provisioning requests."""

    domain_id: str
    status: SSLStatus = SSLStatus.PROVISIONING
    message: str


class SchedulerStatus(BaseModel):
    """Renewal scheduler state."""

    running: bool
    interval_hours: float
    next_run: Optional[datetime] = None


class SSLOverview(BaseModel):
    """Combined certificate engine status."""

    certificates: CertificateManagerStatus
    acme: AcmeStatus
    scheduler: SchedulerStatus
