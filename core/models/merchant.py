"""Merchant connection model.

Secret fields hold serialized AES-GCM envelopes (see
``core.security.encryption``), never plaintext.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from core.models.common import new_id, utcnow


class RegistrationStatus(str, Enum):
    """State of a merchant's connection to the registry."""
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DISCONNECTED = "disconnected"


class Merchant(BaseModel):
    """A business connected to the registry."""
    id: str = Field(default_factory=new_id, description="Internal id")
    team_id: Optional[str] = Field(None, description="Owning team")
    registry_merchant_id: Optional[str] = Field(None, description="Registry-side merchant id")
    endpoint_id: Optional[str] = Field(None, description="Registry endpoint id, unique per merchant")
    company_name: Optional[str] = None
    tin: Optional[str] = Field(None, description="Tax identification number")

    encrypted_client_id: Optional[Dict[str, Any]] = None
    encrypted_client_secret: Optional[Dict[str, Any]] = None
    encrypted_access_token: Optional[Dict[str, Any]] = None
    encrypted_refresh_token: Optional[Dict[str, Any]] = None
    token_expires_at: Optional[datetime] = None

    is_active: bool = False
    registration_status: RegistrationStatus = RegistrationStatus.PENDING
    last_sync_at: Optional[datetime] = Field(None, description="Cursor for official bulk polling")

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_connected(self) -> bool:
        return (
            self.is_active
            and self.registration_status == RegistrationStatus.ACTIVE
            and self.encrypted_access_token is not None
        )
