"""
Certificate renewal scheduler.

Background job that periodically renews certificates inside the renewal
window and warns owners of certificates about to expire, using APScheduler.
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from core.cert_manager import CertManager, get_cert_manager
from models.certificate import RenewalSummary

logger = logging.getLogger(__name__)

RENEWAL_JOB_ID = "cert_renewal_check"


class RenewalScheduler:
    """
    Periodic renewal and expiry warning runner.

    Each run renews first, then sends expiry warnings; a failed renewal
    pass does not prevent the warnings.
    """

    def __init__(
        self,
        cert_manager: CertManager | None = None,
        interval_hours: float | None = None,
        initial_delay: float = 60.0,
    ):
        self.scheduler = AsyncIOScheduler()
        self._cert_manager = cert_manager
        self.interval_hours = interval_hours or settings.cert_renewal_interval_hours
        self.initial_delay = initial_delay
        self._started = False

    @property
    def cert_manager(self) -> CertManager:
        if self._cert_manager is None:
            self._cert_manager = get_cert_manager()
        return self._cert_manager

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the renewal scheduler; calling it again is a no-op."""
        if self._started:
            logger.warning("Certificate renewal scheduler already started")
            return

        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(hours=self.interval_hours),
            id=RENEWAL_JOB_ID,
            name="Certificate Renewal Check",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            # First run shortly after startup instead of one full interval later
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=self.initial_delay),
        )

        self.scheduler.start()
        self._started = True
        logger.info(f"Certificate renewal scheduler started (every {self.interval_hours} hours)")

    async def stop(self) -> None:
        """Stop the renewal scheduler. Safe to call when not started."""
        if not self._started:
            return
        self.scheduler.shutdown(wait=False)
        self._started = False
        logger.info("Certificate renewal scheduler stopped")

    async def run_once(self) -> RenewalSummary | None:
        """Run one renewal pass followed by one expiry warning pass."""
        summary = None
        try:
            summary = await self.cert_manager.check_and_renew_certificates()
        except Exception as e:
            logger.exception(f"Error in renewal check: {e}")

        try:
            await self.cert_manager.send_expiration_warnings()
        except Exception as e:
            logger.exception(f"Error in expiry warning check: {e}")

        return summary

    async def trigger_check(self) -> RenewalSummary | None:
        """Manually trigger a renewal and warning run."""
        logger.info("Manual renewal check triggered")
        return await self.run_once()

    def get_next_run_time(self) -> datetime | None:
        job = self.scheduler.get_job(RENEWAL_JOB_ID)
        return job.next_run_time if job else None


# Singleton instance
_renewal_scheduler: RenewalScheduler | None = None


def get_renewal_scheduler() -> RenewalScheduler:
    """Get the global renewal scheduler instance."""
    global _renewal_scheduler
    if _renewal_scheduler is None:
        _renewal_scheduler = RenewalScheduler()
    return _renewal_scheduler
