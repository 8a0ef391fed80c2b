"""
Configuration utilities and settings management.

Handles environment variables, path resolution, and application settings.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    api_debug: bool = Field(default=False, alias="API_DEBUG")

    # ACME Configuration
    acme_env: str = Field(
        default="production",
        alias="ACME_ENV",
        description="Certificate authority environment (production or staging)",
    )
    acme_email: str = Field(
        default="admin@example.com", alias="ACME_EMAIL", description="Contact email for ACME account registration"
    )
    acme_directory_url: str = Field(
        default="https://acme-v02.api.letsencrypt.org/directory",
        alias="ACME_DIRECTORY_URL",
        description="ACME directory URL (production Let's Encrypt)",
    )
    acme_staging_url: str = Field(
        default="https://acme-staging-v02.api.letsencrypt.org/directory",
        alias="ACME_STAGING_URL",
        description="ACME staging directory URL for testing",
    )
    acme_webroot: str = Field(
        default="/var/www/certbot",
        alias="ACME_WEBROOT",
        description="Webroot served by the reverse proxy for HTTP-01 challenge files",
    )
    acme_request_timeout: float = Field(
        default=30.0, alias="ACME_REQUEST_TIMEOUT", description="Timeout in seconds for a single CA request"
    )
    acme_poll_attempts: int = Field(
        default=30, alias="ACME_POLL_ATTEMPTS", description="Maximum polls for authorization and order status"
    )
    acme_poll_interval: float = Field(
        default=2.0, alias="ACME_POLL_INTERVAL", description="Seconds between authorization and order polls"
    )
    dns_propagation_delay: float = Field(
        default=30.0,
        alias="DNS_PROPAGATION_DELAY",
        description="Seconds to wait after creating a DNS-01 TXT record before notifying the CA",
    )

    # Certificate storage and renewal
    ssl_cert_dir: str = Field(default="/etc/letsencrypt/live", alias="SSL_CERT_DIR")
    cert_renewal_days: int = Field(
        default=30, alias="CERT_RENEWAL_DAYS", description="Days before expiry to trigger automatic renewal"
    )
    cert_expiry_warning_days: int = Field(
        default=7, alias="CERT_EXPIRY_WARNING_DAYS", description="Days before expiry to notify domain owners"
    )
    cert_renewal_interval_hours: float = Field(
        default=12, alias="CERT_RENEWAL_INTERVAL_HOURS", description="Hours between renewal scheduler runs"
    )
    cert_renewal_delay: float = Field(
        default=1.0, alias="CERT_RENEWAL_DELAY", description="Seconds to wait between renewals to respect CA limits"
    )

    # Cloudflare DNS (enables DNS-01 challenges)
    cloudflare_api_token: str | None = Field(default=None, alias="CLOUDFLARE_API_TOKEN")
    cloudflare_email: str | None = Field(default=None, alias="CLOUDFLARE_EMAIL")
    cloudflare_api_key: str | None = Field(default=None, alias="CLOUDFLARE_API_KEY")
    cloudflare_zone_id: str | None = Field(default=None, alias="CLOUDFLARE_ZONE_ID")
    cloudflare_api_url: str = Field(default="https://api.cloudflare.com/client/v4", alias="CLOUDFLARE_API_URL")

    # NGINX reverse proxy
    nginx_domains_conf: str = Field(
        default="/etc/nginx/conf.d/custom-domains.conf",
        alias="NGINX_DOMAINS_CONF",
        description="Generated NGINX config holding every custom domain server block",
    )
    nginx_site_root: str = Field(default="/usr/share/nginx/html", alias="NGINX_SITE_ROOT")
    nginx_container_name: str = Field(
        default="platform-nginx", alias="NGINX_CONTAINER_NAME", description="Docker container name for NGINX"
    )
    nginx_operation_timeout: int = Field(
        default=30, alias="NGINX_OPERATION_TIMEOUT", description="Timeout in seconds for NGINX operations"
    )

    # Persistence
    database_path: str = Field(
        default="/var/lib/domain-certs/certs.db",
        alias="DATABASE_PATH",
        description="Path to SQLite database for accounts, domains and notifications",
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file


# Global settings instance
settings = Settings()


def ensure_directories():
    """Ensure required directories exist (for development/testing)."""
    dirs_to_create = [
        settings.ssl_cert_dir,
        Path(settings.acme_webroot) / ".well-known" / "acme-challenge",
    ]

    for dir_path in dirs_to_create:
        Path(dir_path).mkdir(parents=True, exist_ok=True)

