"""
Cloudflare DNS provider for ACME DNS-01 challenges.

Creates and removes `_acme-challenge` TXT records through the
Cloudflare v4 API. Configuration presence decides whether DNS-01
is offered at all.
"""

import logging
from typing import Any

import httpx

from config import settings
from core.domain_validator import is_valid_domain

logger = logging.getLogger(__name__)

CHALLENGE_RECORD_TTL = 60


class DNSProviderError(Exception):
    """DNS provider request failed."""

    def __init__(self, message: str, suggestion: str | None = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


def challenge_record_name(domain: str) -> str:
    """Name of the TXT record the CA queries for a DNS-01 challenge."""
    return f"_acme-challenge.{domain}"


class CloudflareDNSProvider:
    """DNS-provider collaborator backed by Cloudflare."""

    def __init__(
        self,
        api_token: str | None = None,
        email: str | None = None,
        api_key: str | None = None,
        zone_id: str | None = None,
        api_url: str | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_token = api_token if api_token is not None else settings.cloudflare_api_token
        self.email = email if email is not None else settings.cloudflare_email
        self.api_key = api_key if api_key is not None else settings.cloudflare_api_key
        self.zone_id = zone_id if zone_id is not None else settings.cloudflare_zone_id
        self.api_url = (api_url or settings.cloudflare_api_url).rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def is_configured(self) -> bool:
        """Check whether API credentials are present."""
        return bool(self.api_token or (self.email and self.api_key))

    def _headers(self) -> dict[str, str]:
        # Prefer a scoped API token over the global API key
        if self.api_token:
            return {"Authorization": f"Bearer {self.api_token}"}
        if self.email and self.api_key:
            return {"X-Auth-Email": self.email, "X-Auth-Key": self.api_key}
        raise DNSProviderError(
            "Cloudflare API credentials not configured",
            suggestion="Set CLOUDFLARE_API_TOKEN or CLOUDFLARE_EMAIL and CLOUDFLARE_API_KEY",
        )

    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Call the Cloudflare API and return the `result` member."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, f"{self.api_url}{endpoint}", headers=self._headers(), **kwargs)
        except httpx.RequestError as e:
            raise DNSProviderError(f"Cloudflare request failed: {e}")

        try:
            data = response.json()
        except ValueError:
            raise DNSProviderError(f"Cloudflare returned non-JSON response (HTTP {response.status_code})")

        if not data.get("success"):
            errors = "; ".join(err.get("message", "") for err in data.get("errors", [])) or "unknown error"
            raise DNSProviderError(f"Cloudflare API error: {errors}")

        return data.get("result")

    async def get_zone_id(self, domain: str) -> str | None:
        """Resolve the zone for a domain, walking up to the registrable name."""
        if self.zone_id:
            return self.zone_id

        labels = domain.split(".")
        for i in range(len(labels) - 1):
            candidate = ".".join(labels[i:])
            zones = await self._request("GET", "/zones", params={"name": candidate})
            if zones:
                return zones[0]["id"]
        return None

    async def _find_txt_record(self, zone_id: str, name: str) -> dict | None:
        records = await self._request("GET", f"/zones/{zone_id}/dns_records", params={"type": "TXT", "name": name})
        return records[0] if records else None

    async def create_challenge_record(self, domain: str, value: str) -> dict | None:
        """
        Create the `_acme-challenge` TXT record for a domain.

        A stale record from an earlier attempt is deleted first.

        Returns:
            The created record, or None if it could not be created
        """
        if not is_valid_domain(domain):
            logger.error(f"Refusing to create DNS record for invalid domain {domain!r}")
            return None

        name = challenge_record_name(domain)
        try:
            zone_id = await self.get_zone_id(domain)
            if not zone_id:
                logger.error(f"Could not determine Cloudflare zone for {domain}")
                return None

            existing = await self._find_txt_record(zone_id, name)
            if existing:
                await self._request("DELETE", f"/zones/{zone_id}/dns_records/{existing['id']}")

            record = await self._request(
                "POST",
                f"/zones/{zone_id}/dns_records",
                json={
                    "type": "TXT",
                    "name": name,
                    "content": value,
                    "ttl": CHALLENGE_RECORD_TTL,
                    "comment": "ACME DNS-01 challenge",
                },
            )
        except DNSProviderError as e:
            logger.error(f"Failed to create challenge record for {domain}: {e.message}")
            return None

        logger.info(f"Created DNS-01 challenge record {name}")
        return record

    async def remove_challenge_record(self, domain: str) -> bool:
        """Remove the `_acme-challenge` TXT record; True if absent afterwards."""
        if not is_valid_domain(domain):
            return False

        name = challenge_record_name(domain)
        try:
            zone_id = await self.get_zone_id(domain)
            if not zone_id:
                return False

            existing = await self._find_txt_record(zone_id, name)
            if existing:
                await self._request("DELETE", f"/zones/{zone_id}/dns_records/{existing['id']}")
                logger.info(f"Removed DNS-01 challenge record {name}")
        except DNSProviderError as e:
            logger.warning(f"Failed to remove challenge record for {domain}: {e.message}")
            return False

        return True


# Singleton instance
_dns_provider: CloudflareDNSProvider | None = None


def get_dns_provider() -> CloudflareDNSProvider:
    """Get the global DNS provider instance."""
    global _dns_provider
    if _dns_provider is None:
        _dns_provider = CloudflareDNSProvider()
    return _dns_provider
