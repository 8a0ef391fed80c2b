"""
NGINX models for the generated custom domain configuration.
"""

from pydantic import BaseModel, Field


class DomainServerBlock(BaseModel):
    """Template context for one custom domain server block."""

    domain: str
    site_slug: str
    ssl_enabled: bool = False
    ssl_cert_path: str | None = None
    ssl_key_path: str | None = None


class ProxyReloadResult(BaseModel):
    """Outcome of regenerating the domain config and reloading NGINX."""

    success: bool = Field(..., description="Whether the new config is live")
    domains_configured: int = Field(default=0, description="Number of server blocks rendered")
    config_path: str | None = Field(None, description="Path of the generated config file")
    error: str | None = Field(None, description="Failure reason when success is false")
