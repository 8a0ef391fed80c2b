"""
Expiry arithmetic shared by the certificate manager and scheduler.

All datetimes are naive UTC, matching what the domain store returns.
"""

from datetime import datetime, timedelta

from models.domain import SSLStatus


def _utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.replace(tzinfo=None) - (value.utcoffset() or timedelta(0))
    return value


def needs_renewal(expires_at: datetime, threshold_days: int = 30, now: datetime | None = None) -> bool:
    """
    Check whether a certificate is inside its renewal window.

    True iff now >= expires_at - threshold_days; the boundary itself counts.
    """
    now = _utc_naive(now) if now is not None else datetime.utcnow()
    return now >= _utc_naive(expires_at) - timedelta(days=threshold_days)


def days_until_expiry(expires_at: datetime | None, now: datetime | None = None) -> int | None:
    """Whole days left before expiry; negative once expired."""
    if expires_at is None:
        return None
    now = _utc_naive(now) if now is not None else datetime.utcnow()
    return (_utc_naive(expires_at) - now).days


def effective_ssl_status(
    status: SSLStatus,
    expires_at: datetime | None,
    threshold_days: int = 30,
    now: datetime | None = None,
) -> SSLStatus:
    """
    Refine a stored ACTIVE status by the certificate's expiry.

    EXPIRING and EXPIRED are reported, never stored.
    """
    if status != SSLStatus.ACTIVE or expires_at is None:
        return status
    now = _utc_naive(now) if now is not None else datetime.utcnow()
    if now >= _utc_naive(expires_at):
        return SSLStatus.EXPIRED
    if needs_renewal(expires_at, threshold_days, now=now):
        return SSLStatus.EXPIRING
    return status
