"""
ACME challenge strategies.

Each strategy publishes the proof for one authorization and removes it
afterwards. HTTP-01 uses a file in the webroot served by the reverse
proxy; DNS-01 uses a TXT record managed through the DNS provider.
"""

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from config import settings
from core.acme_errors import ACMEChallengeError
from core.dns_provider import CloudflareDNSProvider, get_dns_provider
from core.domain_validator import is_valid_token
from core.jws import b64url
from models.certificate import ChallengeType

logger = logging.getLogger(__name__)


def key_authorization(token: str, thumbprint: str) -> str:
    """Key authorization string: token.thumbprint."""
    return f"{token}.{thumbprint}"


def dns01_txt_value(key_authz: str) -> str:
    """TXT record value for DNS-01: base64url(sha256(key authorization))."""
    return b64url(hashlib.sha256(key_authz.encode("utf-8")).digest())


class ChallengeStrategy(ABC):
    """Common interface for challenge responders."""

    challenge_type: ChallengeType

    @abstractmethod
    async def prepare(self, domain: str, token: str, key_authz: str) -> None:
        """Publish the proof so the CA can validate it."""

    @abstractmethod
    async def cleanup(self, domain: str, token: str) -> None:
        """Remove the published proof. Must not raise."""


class HTTP01Challenge(ChallengeStrategy):
    """Serve key authorizations from <webroot>/.well-known/acme-challenge/<token>."""

    challenge_type = ChallengeType.HTTP_01

    def __init__(self, webroot: str | None = None):
        self.challenge_dir = Path(webroot or settings.acme_webroot) / ".well-known" / "acme-challenge"

    def _challenge_path(self, token: str) -> Path:
        # Tokens become filenames; reject anything outside the base64url alphabet
        if not is_valid_token(token):
            raise ACMEChallengeError(
                "Invalid ACME challenge token", suggestion="The CA returned a token that is not base64url"
            )
        return self.challenge_dir / token

    async def prepare(self, domain: str, token: str, key_authz: str) -> None:
        path = self._challenge_path(token)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(key_authz)
        except OSError as e:
            raise ACMEChallengeError(
                f"Failed to write challenge file: {e}",
                suggestion=f"Check that {self.challenge_dir} is writable",
            )
        logger.info(f"HTTP-01 challenge file created at {path} for {domain}")

    async def cleanup(self, domain: str, token: str) -> None:
        if not is_valid_token(token):
            return
        path = self.challenge_dir / token
        try:
            path.unlink(missing_ok=True)
            logger.info(f"Removed challenge file {path}")
        except OSError as e:
            logger.warning(f"Failed to remove challenge file {path}: {e}")


class DNS01Challenge(ChallengeStrategy):
    """Publish _acme-challenge TXT records through the DNS provider."""

    challenge_type = ChallengeType.DNS_01

    def __init__(self, dns_provider: CloudflareDNSProvider, propagation_delay: float | None = None):
        self.dns_provider = dns_provider
        self.propagation_delay = settings.dns_propagation_delay if propagation_delay is None else propagation_delay

    async def prepare(self, domain: str, token: str, key_authz: str) -> None:
        if not self.dns_provider.is_configured():
            raise ACMEChallengeError(
                "DNS provider not configured for DNS-01 challenge",
                suggestion="Set Cloudflare credentials or use the http-01 challenge",
            )

        record = await self.dns_provider.create_challenge_record(domain, dns01_txt_value(key_authz))
        if not record:
            raise ACMEChallengeError(
                f"Failed to create ACME challenge DNS record for {domain}",
                suggestion="Check that the Cloudflare token can edit DNS for this zone",
            )

        logger.info(f"DNS-01 challenge record created for {domain}, waiting {self.propagation_delay}s")
        await asyncio.sleep(self.propagation_delay)

    async def cleanup(self, domain: str, token: str) -> None:
        if not await self.dns_provider.remove_challenge_record(domain):
            logger.warning(f"DNS-01 challenge record for {domain} may not have been removed")


def select_challenge_type(dns_provider: CloudflareDNSProvider | None = None) -> ChallengeType:
    """DNS-01 when a DNS provider is configured, otherwise HTTP-01."""
    provider = dns_provider or get_dns_provider()
    return ChallengeType.DNS_01 if provider.is_configured() else ChallengeType.HTTP_01


def build_challenge(
    challenge_type: ChallengeType,
    webroot: str | None = None,
    dns_provider: CloudflareDNSProvider | None = None,
    propagation_delay: float | None = None,
) -> ChallengeStrategy:
    """
    Construct the strategy for a challenge type.

    Raises:
        ACMEChallengeError: DNS-01 requested without a configured DNS provider
    """
    challenge_type = ChallengeType(challenge_type)
    if challenge_type == ChallengeType.HTTP_01:
        return HTTP01Challenge(webroot=webroot)

    provider = dns_provider or get_dns_provider()
    if not provider.is_configured():
        raise ACMEChallengeError(
            "DNS provider not configured for DNS-01 challenge",
            suggestion="Set Cloudflare credentials or use the http-01 challenge",
        )
    return DNS01Challenge(provider, propagation_delay=propagation_delay)
