"""
Unit tests for certificate expiry helpers.
"""

from datetime import datetime, timedelta, timezone

from core.cert_helpers import days_until_expiry, effective_ssl_status, needs_renewal
from models.domain import SSLStatus

NOW = datetime(2026, 3, 1, 12, 0, 0)


class TestNeedsRenewal:
    """Test the renewal window predicate."""

    def test_exact_boundary_needs_renewal(self):
        assert needs_renewal(NOW + timedelta(days=30), 30, now=NOW) is True

    def test_one_second_before_boundary(self):
        assert needs_renewal(NOW + timedelta(days=30, seconds=1), 30, now=NOW) is False

    def test_expired_certificate_needs_renewal(self):
        assert needs_renewal(NOW - timedelta(days=1), 30, now=NOW) is True

    def test_fresh_certificate(self):
        assert needs_renewal(NOW + timedelta(days=89), 30, now=NOW) is False

    def test_aware_datetimes_compare_as_utc(self):
        expires = datetime(2026, 3, 31, 14, 0, tzinfo=timezone(timedelta(hours=2)))  # 12:00 UTC
        assert needs_renewal(expires, 30, now=NOW) is True


class TestDaysUntilExpiry:

    def test_none(self):
        assert days_until_expiry(None, now=NOW) is None

    def test_partial_days_round_down(self):
        assert days_until_expiry(NOW + timedelta(days=7, hours=23), now=NOW) == 7

    def test_negative_after_expiry(self):
        assert days_until_expiry(NOW - timedelta(days=2), now=NOW) == -2


class TestEffectiveStatus:
    """Test expiry-derived status reporting."""

    def test_active_outside_window(self):
        assert effective_ssl_status(SSLStatus.ACTIVE, NOW + timedelta(days=60), 30, now=NOW) == SSLStatus.ACTIVE

    def test_active_inside_window_is_expiring(self):
        assert effective_ssl_status(SSLStatus.ACTIVE, NOW + timedelta(days=10), 30, now=NOW) == SSLStatus.EXPIRING

    def test_active_past_expiry_is_expired(self):
        assert effective_ssl_status(SSLStatus.ACTIVE, NOW - timedelta(seconds=1), 30, now=NOW) == SSLStatus.EXPIRED

    def test_other_statuses_untouched(self):
        expires = NOW - timedelta(days=1)
        assert effective_ssl_status(SSLStatus.ERROR, expires, 30, now=NOW) == SSLStatus.ERROR
        assert effective_ssl_status(SSLStatus.PENDING, None, 30, now=NOW) == SSLStatus.PENDING
