"""
Certificate manager for custom domain SSL lifecycle.

Drives the ACME client for a stored domain, installs the issued
certificate on disk, updates the domain's SSL state, refreshes the
reverse proxy and notifies the domain owner. Provisioning failures are
recorded on the domain and never propagate to callers.
"""

import asyncio
import logging
import os
from pathlib import Path

from config import settings
from core.acme_client import ACMEClient, get_acme_client, parse_certificate_expiry
from core.acme_errors import ACMEError
from core.cert_helpers import days_until_expiry, effective_ssl_status, needs_renewal
from core.challenges import build_challenge, select_challenge_type
from core.dns_provider import CloudflareDNSProvider, get_dns_provider
from core.domain_store import DomainStore
from core.notification_service import NotificationService, get_notification_service
from core.proxy_service import NginxProxyService, get_proxy_service
from models.certificate import (
    CertificateInfo,
    CertificateManagerStatus,
    ChallengeType,
    ProvisioningResult,
    RenewalSummary,
)
from models.domain import Domain, SSLStatus
from models.notification import Notification, NotificationType

logger = logging.getLogger(__name__)


class CertificateError(Exception):
    """Certificate could not be installed."""

    def __init__(self, message: str, domain: str = None, suggestion: str = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


class CertManager:
    """
    High-level certificate lifecycle management.

    Handles the complete flow from certificate request through
    installation, renewal and expiry monitoring.
    """

    def __init__(
        self,
        domain_store: DomainStore | None = None,
        acme_client: ACMEClient | None = None,
        notifications: NotificationService | None = None,
        proxy: NginxProxyService | None = None,
        dns_provider: CloudflareDNSProvider | None = None,
        cert_dir: str | None = None,
    ):
        self.domains = domain_store or DomainStore()
        self.acme = acme_client or get_acme_client()
        self.notifications = notifications or get_notification_service()
        self.proxy = proxy or get_proxy_service()
        self.dns_provider = dns_provider or get_dns_provider()
        self.cert_base_dir = Path(cert_dir or settings.ssl_cert_dir)
        self._background_tasks: set[asyncio.Task] = set()

    def _get_cert_dir(self, domain: str) -> Path:
        return self.cert_base_dir / domain

    def _save_certificate_files(self, domain: str, certificate: str, private_key: str) -> tuple[str, str]:
        """
        Write fullchain.pem (0644) and privkey.pem (0600).

        Returns:
            Tuple of (cert_path, key_path)
        """
        cert_dir = self._get_cert_dir(domain)
        try:
            cert_dir.mkdir(parents=True, exist_ok=True)

            fullchain_path = cert_dir / "fullchain.pem"
            fullchain_path.write_text(certificate)
            fullchain_path.chmod(0o644)

            privkey_path = cert_dir / "privkey.pem"
            fd = os.open(privkey_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(private_key)
            # Mode on os.open only applies to new files
            privkey_path.chmod(0o600)
        except OSError as e:
            raise CertificateError(
                f"Failed to write certificate files: {e}",
                domain=domain,
                suggestion=f"Check that {self.cert_base_dir} is writable",
            )

        logger.info(f"Certificate files written to {cert_dir}")
        return str(fullchain_path), str(privkey_path)

    async def _notify(
        self, domain: Domain, notification_type: NotificationType, title: str, message: str, metadata: dict
    ):
        if not domain.user_id:
            return
        try:
            await self.notifications.send(
                Notification(
                    user_id=domain.user_id,
                    type=notification_type,
                    title=title,
                    message=message,
                    project_id=domain.project_id,
                    project_name=domain.project_name,
                    metadata=metadata,
                )
            )
        except Exception as e:
            logger.error(f"Failed to send {notification_type.value} notification for {domain.domain}: {e}")

    async def provision(self, domain_id: str, challenge_type: ChallengeType | None = None) -> ProvisioningResult:
        """
        Obtain and install a certificate for a stored domain.

        Args:
            domain_id: Domain record id
            challenge_type: Force a challenge type; defaults to DNS-01 when
                a DNS provider is configured, else HTTP-01

        Returns:
            ProvisioningResult; never raises
        """
        try:
            record = await self.domains.get(domain_id)
        except Exception as e:
            logger.error(f"Failed to load domain {domain_id}: {e}")
            return ProvisioningResult(success=False, domain_id=domain_id, error=str(e) or type(e).__name__)

        if not record:
            return ProvisioningResult(success=False, domain_id=domain_id, error="Domain not found")

        domain = record.domain
        if not record.verified:
            return ProvisioningResult(
                success=False,
                domain=domain,
                domain_id=domain_id,
                error="Domain must be verified before provisioning SSL",
            )

        logger.info(f"Starting certificate provisioning for {domain}")

        try:
            await self.domains.update_ssl(domain_id, ssl_status=SSLStatus.PROVISIONING, ssl_last_error=None)

            challenge_type = ChallengeType(challenge_type or select_challenge_type(self.dns_provider))
            strategy = build_challenge(challenge_type, dns_provider=self.dns_provider)

            result = await self.acme.request_certificate([domain], challenge_type, strategy=strategy)
            if not result.success or not result.certificate or not result.private_key:
                raise CertificateError(result.error or "Certificate request failed", domain=domain)

            cert_path, key_path = await asyncio.to_thread(
                self._save_certificate_files, domain, result.certificate, result.private_key
            )

            await self.domains.update_ssl(
                domain_id,
                ssl_status=SSLStatus.ACTIVE,
                ssl_cert_path=cert_path,
                ssl_key_path=key_path,
                ssl_expires_at=result.expires_at,
                ssl_last_error=None,
            )

            reload_result = await self.proxy.regenerate_and_reload()
            if not reload_result.success:
                # Certificate is installed; the next regeneration picks it up
                logger.warning(f"Proxy reload after provisioning {domain} failed: {reload_result.error}")

            logger.info(f"Certificate provisioned successfully for {domain}")

            await self._notify(
                record,
                NotificationType.DOMAIN_VERIFIED,
                title=f"SSL certificate active for {domain}",
                message="Your SSL certificate has been provisioned and is now active.",
                metadata={
                    "domain": domain,
                    "expiresAt": result.expires_at.isoformat() if result.expires_at else None,
                },
            )

            return ProvisioningResult(
                success=True,
                domain=domain,
                domain_id=domain_id,
                certificate=result.certificate,
                expires_at=result.expires_at,
            )

        except Exception as e:
            if isinstance(e, (ACMEError, CertificateError)):
                error_message = e.message
                logger.error(f"Certificate provisioning failed for {domain}: {error_message}")
            else:
                error_message = str(e) or type(e).__name__
                logger.exception(f"Certificate provisioning failed for {domain}")

            try:
                await self.domains.update_ssl(domain_id, ssl_status=SSLStatus.ERROR, ssl_last_error=error_message)
            except Exception as store_error:
                logger.error(f"Failed to record error status for {domain}: {store_error}")

            await self._notify(
                record,
                NotificationType.DOMAIN_ERROR,
                title=f"SSL certificate failed for {domain}",
                message=f"Failed to provision SSL certificate: {error_message}",
                metadata={"domain": domain, "error": error_message},
            )

            return ProvisioningResult(success=False, domain=domain, domain_id=domain_id, error=error_message)

    async def renew(self, domain_id: str) -> ProvisioningResult:
        """Renew a certificate; renewal is a full re-provision."""
        logger.info(f"Starting certificate renewal for domain {domain_id}")
        return await self.provision(domain_id)

    def trigger_provisioning_in_background(self, domain_id: str) -> None:
        """Start provisioning without waiting; the outcome lands on the domain record."""
        task = asyncio.create_task(self.provision(domain_id), name=f"provision-{domain_id}")
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {task.get_name()} failed: {error}")
            return
        result = task.result()
        if not result.success:
            logger.warning(f"Background provisioning for {result.domain or result.domain_id} failed: {result.error}")

    async def _resolve_expiry(self, record: Domain):
        if record.ssl_expires_at is not None:
            return record.ssl_expires_at
        if not record.ssl_cert_path or not Path(record.ssl_cert_path).exists():
            return None
        try:
            pem = await asyncio.to_thread(Path(record.ssl_cert_path).read_bytes)
            return parse_certificate_expiry(pem)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read certificate for {record.domain}: {e}")
            return None

    def _build_info(self, record: Domain, expires_at) -> CertificateInfo:
        return CertificateInfo(
            domain_id=record.id,
            domain=record.domain,
            status=effective_ssl_status(record.ssl_status, expires_at, settings.cert_renewal_days),
            expires_at=expires_at,
            days_until_expiry=days_until_expiry(expires_at),
            cert_path=record.ssl_cert_path,
            key_path=record.ssl_key_path,
            last_error=record.ssl_last_error,
        )

    async def get_certificate_info(self, domain_id: str) -> CertificateInfo | None:
        """Certificate details with status refined to expiring or expired."""
        record = await self.domains.get(domain_id)
        if not record:
            return None
        expires_at = await self._resolve_expiry(record) if record.ssl_status == SSLStatus.ACTIVE else None
        return self._build_info(record, expires_at or record.ssl_expires_at)

    async def get_expiring_certificates(self, threshold_days: int | None = None) -> list[CertificateInfo]:
        if threshold_days is None:
            threshold_days = settings.cert_renewal_days

        expiring = []
        for record in await self.domains.list_by_status(SSLStatus.ACTIVE):
            try:
                expires_at = await self._resolve_expiry(record)
                if expires_at is None:
                    continue
                info = self._build_info(record, expires_at)
            except Exception as e:
                logger.error(f"Skipping expiry check for {record.domain}: {e}")
                continue
            if info.days_until_expiry is not None and info.days_until_expiry <= threshold_days:
                expiring.append(info)
        return expiring

    async def check_and_renew_certificates(self) -> RenewalSummary:
        """Renew every active certificate inside the renewal window, one at a time."""
        logger.info("Starting certificate renewal check")

        domains = [d for d in await self.domains.list_by_status(SSLStatus.ACTIVE) if d.ssl_cert_path]
        logger.info(f"Checking {len(domains)} domains for renewal")

        summary = RenewalSummary(checked=len(domains))
        for record in domains:
            try:
                expires_at = await self._resolve_expiry(record)
                if expires_at is None or not needs_renewal(expires_at, settings.cert_renewal_days):
                    continue

                logger.info(f"Certificate for {record.domain} expires {expires_at.isoformat()}, renewing...")
                result = await self.renew(record.id)
            except Exception as e:
                logger.error(f"Renewal check for {record.domain} failed: {e}")
                summary.failed += 1
                continue
            summary.results.append(result)
            if result.success:
                summary.renewed += 1
            else:
                summary.failed += 1

            # Spread renewals out to stay under CA rate limits
            await asyncio.sleep(settings.cert_renewal_delay)

        logger.info(f"Renewal check complete: {summary.renewed} renewed, {summary.failed} failed")
        return summary

    async def send_expiration_warnings(self) -> int:
        """Warn owners of certificates expiring within the warning window."""
        sent = 0
        for info in await self.get_expiring_certificates():
            if info.days_until_expiry is None or info.days_until_expiry > settings.cert_expiry_warning_days:
                continue

            record = await self.domains.get(info.domain_id)
            if not record or not record.user_id:
                continue

            await self._notify(
                record,
                NotificationType.SSL_EXPIRING,
                title=f"SSL certificate expiring for {info.domain}",
                message=(
                    f"Your SSL certificate for {info.domain} will expire in {info.days_until_expiry} days. "
                    "Automatic renewal will be attempted."
                ),
                metadata={
                    "domain": info.domain,
                    "expiresAt": info.expires_at.isoformat() if info.expires_at else None,
                    "daysUntilExpiry": info.days_until_expiry,
                },
            )
            sent += 1

        if sent:
            logger.info(f"Sent {sent} certificate expiration warning(s)")
        return sent

    async def revoke(self, domain_id: str) -> bool:
        """
        Detach the certificate from a domain.

        Local only: the certificate is not revoked at the CA.
        """
        record = await self.domains.get(domain_id)
        if not record:
            return False

        await self.domains.update_ssl(
            domain_id,
            ssl_status=SSLStatus.PENDING,
            ssl_cert_path=None,
            ssl_key_path=None,
            ssl_expires_at=None,
        )
        await self.proxy.regenerate_and_reload()

        logger.info(f"Certificate removed for {record.domain}")
        return True

    async def get_status(self) -> CertificateManagerStatus:
        total = await self.domains.count(verified_only=True)
        active = await self.domains.count([SSLStatus.ACTIVE])
        pending = await self.domains.count([SSLStatus.PENDING, SSLStatus.PROVISIONING])
        errors = await self.domains.count([SSLStatus.ERROR])
        expiring = await self.get_expiring_certificates()

        return CertificateManagerStatus(
            total_domains=total,
            active_certificates=active,
            pending_certificates=pending,
            expiring_certificates=len(expiring),
            error_certificates=errors,
            renewal_threshold_days=settings.cert_renewal_days,
            acme_environment=self.acme.environment,
            dns_challenge_enabled=self.dns_provider.is_configured(),
        )


# Singleton instance
_cert_manager: CertManager | None = None


def get_cert_manager() -> CertManager:
    """Get the global certificate manager instance."""
    global _cert_manager
    if _cert_manager is None:
        _cert_manager = CertManager()
    return _cert_manager
