"""
Persistence for custom domains and ACME accounts.

Keyed lookups and status enumeration on top of the SQLite database;
no query surface beyond single-entity access and listing by status.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from core.database import Database, get_database
from models.certificate import ACMEAccount, AcmeEnvironment
from models.domain import Domain, SSLStatus

logger = logging.getLogger(__name__)


def _parse_datetime(value: str | None) -> datetime | None:
    """Parse a stored ISO timestamp, normalizing to naive UTC."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat()


class DomainStore:
    """Read and write custom domain records."""

    def __init__(self, db: Database | None = None):
        self.db = db or get_database()

    def _row_to_domain(self, row: dict[str, Any]) -> Domain:
        return Domain(
            id=row["id"],
            domain=row["domain"],
            user_id=row.get("user_id"),
            project_id=row.get("project_id"),
            project_name=row.get("project_name"),
            site_slug=row.get("site_slug"),
            verified=bool(row.get("verified")),
            ssl_status=SSLStatus(row["ssl_status"]),
            ssl_cert_path=row.get("ssl_cert_path"),
            ssl_key_path=row.get("ssl_key_path"),
            ssl_expires_at=_parse_datetime(row.get("ssl_expires_at")),
            ssl_last_error=row.get("ssl_last_error"),
            created_at=_parse_datetime(row.get("created_at")) or datetime.utcnow(),
            updated_at=_parse_datetime(row.get("updated_at")) or datetime.utcnow(),
        )

    def _domain_to_row(self, domain: Domain) -> dict[str, Any]:
        return {
            "id": domain.id,
            "domain": domain.domain,
            "user_id": domain.user_id,
            "project_id": domain.project_id,
            "project_name": domain.project_name,
            "site_slug": domain.site_slug,
            "verified": domain.verified,
            "ssl_status": domain.ssl_status.value,
            "ssl_cert_path": domain.ssl_cert_path,
            "ssl_key_path": domain.ssl_key_path,
            "ssl_expires_at": _format_datetime(domain.ssl_expires_at),
            "ssl_last_error": domain.ssl_last_error,
            "created_at": _format_datetime(domain.created_at),
            "updated_at": _format_datetime(domain.updated_at),
        }

    async def add(self, domain: Domain) -> Domain:
        await self.db.insert("domains", self._domain_to_row(domain))
        return domain

    async def get(self, domain_id: str) -> Domain | None:
        row = await self.db.fetch_one("SELECT * FROM domains WHERE id = ?", (domain_id,))
        return self._row_to_domain(row) if row else None

    async def update_ssl(self, domain_id: str, **fields: Any) -> bool:
        """
        Update SSL fields of a domain.

        Accepts ssl_status, ssl_cert_path, ssl_key_path, ssl_expires_at
        and ssl_last_error; values of None clear the column.
        """
        data: dict[str, Any] = {}
        for key, value in fields.items():
            if not key.startswith("ssl_"):
                raise ValueError(f"Not an SSL field: {key}")
            if isinstance(value, SSLStatus):
                value = value.value
            elif isinstance(value, datetime):
                value = _format_datetime(value)
            data[key] = value
        data["updated_at"] = _format_datetime(datetime.utcnow())
        return await self.db.update("domains", domain_id, data)

    async def list_by_status(self, status: SSLStatus, verified_only: bool = True) -> list[Domain]:
        query = "SELECT * FROM domains WHERE ssl_status = ?"
        if verified_only:
            query += " AND verified = 1"
        rows = await self.db.fetch_all(query + " ORDER BY domain", (status.value,))
        return [self._row_to_domain(row) for row in rows]

    async def list_verified(self) -> list[Domain]:
        rows = await self.db.fetch_all("SELECT * FROM domains WHERE verified = 1 ORDER BY domain")
        return [self._row_to_domain(row) for row in rows]

    async def count(self, statuses: list[SSLStatus] | None = None, verified_only: bool = False) -> int:
        clauses = []
        params: tuple = ()
        if statuses:
            clauses.append(f"ssl_status IN ({', '.join('?' for _ in statuses)})")
            params = tuple(s.value for s in statuses)
        if verified_only:
            clauses.append("verified = 1")
        return await self.db.count("domains", " AND ".join(clauses), params)


class AccountStore:
    """Persist one ACME account per CA environment."""

    def __init__(self, db: Database | None = None):
        self.db = db or get_database()

    async def get(self, environment: AcmeEnvironment) -> ACMEAccount | None:
        row = await self.db.fetch_one("SELECT * FROM acme_accounts WHERE environment = ?", (environment.value,))
        if not row:
            return None
        return ACMEAccount(
            id=row["id"],
            environment=AcmeEnvironment(row["environment"]),
            email=row.get("email"),
            account_url=row["account_url"],
            private_key_pem=row["private_key_pem"],
            created_at=_parse_datetime(row.get("created_at")) or datetime.utcnow(),
        )

    async def save(self, account: ACMEAccount) -> None:
        """Insert or replace the account for its environment."""
        await self.db.upsert(
            "acme_accounts",
            {
                "id": account.id,
                "environment": account.environment.value,
                "email": account.email,
                "account_url": account.account_url,
                "private_key_pem": account.private_key_pem,
                "created_at": _format_datetime(account.created_at),
            },
            conflict_column="environment",
            keep=("id", "created_at"),
        )
        logger.info(f"Saved ACME account for {account.environment.value}")
