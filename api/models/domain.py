"""
Domain models for custom domain SSL state.

The domain record is owned by the platform storage layer; the certificate
manager is the only writer of its SSL fields.
"""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class SSLStatus(str, Enum):
    """SSL lifecycle status of a custom domain."""

    PENDING = "pending"  # No certificate yet
    PROVISIONING = "provisioning"  # ACME exchange in progress
    ACTIVE = "active"  # Certificate issued and installed
    EXPIRING = "expiring"  # Within the renewal window
    EXPIRED = "expired"  # Reported only, never persisted
    ERROR = "error"  # Last provisioning attempt failed


class Domain(BaseModel):
    """A user-supplied custom domain attached to a project."""

    id: str = Field(default_factory=lambda: f"dom-{uuid.uuid4().hex[:12]}", description="Unique domain identifier")
    domain: str = Field(..., description="Hostname")
    user_id: str | None = Field(None, description="Owner of the project the domain belongs to")
    project_id: str | None = Field(None, description="Project serving this domain")
    project_name: str | None = Field(None, description="Display name of the project")
    site_slug: str | None = Field(None, description="Directory name of the deployed site")

    verified: bool = Field(default=False, description="Ownership verified by the platform")
    ssl_status: SSLStatus = Field(default=SSLStatus.PENDING, description="Current SSL status")
    ssl_cert_path: str | None = Field(None, description="Path to fullchain.pem")
    ssl_key_path: str | None = Field(None, description="Path to privkey.pem")
    ssl_expires_at: datetime | None = Field(None, description="Certificate not-after (UTC)")
    ssl_last_error: str | None = Field(None, description="Error from the last failed provisioning")

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
