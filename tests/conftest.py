"""
Global test fixtures.

Points storage, webroot and certificate paths at a scratch directory
before any application module reads its settings.
"""

import os
import tempfile
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

_SCRATCH = tempfile.mkdtemp(prefix="domain-certs-tests-")
os.environ.setdefault("DATABASE_PATH", os.path.join(_SCRATCH, "certs.db"))
os.environ.setdefault("ACME_WEBROOT", os.path.join(_SCRATCH, "webroot"))
os.environ.setdefault("SSL_CERT_DIR", os.path.join(_SCRATCH, "live"))
os.environ.setdefault("NGINX_DOMAINS_CONF", os.path.join(_SCRATCH, "conf.d", "custom-domains.conf"))
os.environ.setdefault("ACME_EMAIL", "ops@example.com")


def make_certificate_pem(common_name: str = "example.com", not_after: datetime | None = None) -> str:
    """Self-signed certificate with a chosen expiry, as PEM text."""
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import ec
    from cryptography.x509.oid import NameOID

    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    not_after = not_after or datetime.utcnow().replace(microsecond=0) + timedelta(days=90)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - timedelta(days=90))
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


@pytest.fixture
def certificate_pem():
    """Factory fixture for self-signed PEM certificates."""
    return make_certificate_pem


@pytest_asyncio.fixture
async def db(tmp_path):
    """Initialized SQLite database in a temp directory."""
    from core.database import Database

    database = Database(str(tmp_path / "test.db"))
    await database.initialize()
    return database


@pytest.fixture
def domain_store(db):
    from core.domain_store import DomainStore

    return DomainStore(db)


@pytest.fixture
def account_store(db):
    from core.domain_store import AccountStore

    return AccountStore(db)


@pytest.fixture
def mock_proxy():
    """Reverse proxy that always reloads successfully."""
    from models.nginx import ProxyReloadResult

    proxy = MagicMock()
    proxy.regenerate_and_reload = AsyncMock(return_value=ProxyReloadResult(success=True, domains_configured=1))
    return proxy


@pytest.fixture
def mock_notifications():
    service = MagicMock()
    service.send = AsyncMock(side_effect=lambda notification: notification)
    return service


@pytest.fixture
def unconfigured_dns():
    provider = MagicMock()
    provider.is_configured.return_value = False
    return provider
