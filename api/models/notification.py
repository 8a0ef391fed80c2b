"""
Notification models for domain owner alerts.

Notifications are emitted on provisioning success, provisioning failure,
and certificate expiry warnings.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class NotificationType(str, Enum):
    """Notification event types raised by the certificate engine."""

    DOMAIN_VERIFIED = "domain_verified"
    DOMAIN_ERROR = "domain_error"
    SSL_EXPIRING = "ssl_expiring"


class Notification(BaseModel):
    """A message addressed to the owner of a domain."""

    id: str = Field(default_factory=lambda: f"ntf-{uuid.uuid4().hex[:12]}", description="Unique notification id")
    user_id: str = Field(..., description="Recipient user")
    type: NotificationType
    title: str
    message: str
    project_id: str | None = None
    project_name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, description="Structured context for the notification")
    created_at: datetime = Field(default_factory=datetime.utcnow)
