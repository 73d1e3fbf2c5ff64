"""Registry API payload models.

These mirror the registry's JSON and are kept separate from the domain
models in /core/models/. Unknown fields are preserved so raw payloads can be
stored verbatim.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from connectors.registry.errors import RegistryResponseError
from core.models.common import parse_timestamp, utcnow

DEFAULT_TOKEN_LIFETIME_SECONDS = 86400

_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_expires_in(value: Union[int, float, str, None]) -> int:
    """Parse ``expires_in`` from the token endpoint.

    The registry sends either seconds or a duration string like ``"1d"``.
    Anything unparseable falls back to one day.
    """
    if value is None or value == "":
        return DEFAULT_TOKEN_LIFETIME_SECONDS
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else DEFAULT_TOKEN_LIFETIME_SECONDS
    text = str(value).strip().lower()
    if text.isdigit():
        return int(text)
    match = re.fullmatch(r"(\d+)\s*([smhd])", text)
    if match:
        return int(match.group(1)) * _DURATION_UNITS[match.group(2)]
    return DEFAULT_TOKEN_LIFETIME_SECONDS


class RegistryBaseModel(BaseModel):
    """Base model for registry payloads."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @classmethod
    def from_response(cls, data: Any, operation: str):
        """Validate a response body.

        Raises:
            RegistryResponseError: the body does not match the model
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise RegistryResponseError(
                f"{operation}: unexpected registry response ({e.error_count()} error(s))",
                response_body=str(data),
            ) from e


class BusinessInfo(RegistryBaseModel):
    """Business details returned on connect."""
    endpoint_id: str
    moc_id: Optional[str] = None
    company_name_en: Optional[str] = None
    company_name_kh: Optional[str] = None
    tin: Optional[str] = None


@dataclass
class TokenSet:
    """Access/refresh token pair with expiry tracking."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = DEFAULT_TOKEN_LIFETIME_SECONDS
    token_type: str = "Bearer"
    obtained_at: datetime = field(default_factory=utcnow)
    business_info: Optional[BusinessInfo] = None

    @property
    def expires_at(self) -> datetime:
        return self.obtained_at + timedelta(seconds=self.expires_in)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "TokenSet":
        """Build from a token endpoint response.

        Raises:
            RegistryResponseError: no access token, or malformed business info
        """
        if not isinstance(data, dict) or not data.get("access_token"):
            raise RegistryResponseError("Token response is missing access_token", response_body=str(data))
        business = data.get("business_info")
        try:
            business_info = BusinessInfo.model_validate(business) if business else None
        except ValidationError as e:
            raise RegistryResponseError(
                f"Token response has invalid business_info: {e.error_count()} error(s)", response_body=str(data)
            ) from e
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=parse_expires_in(data.get("expires_in")),
            token_type=data.get("token_type") or "Bearer",
            business_info=business_info,
        )


class ValidDocument(RegistryBaseModel):
    document_id: str
    verification_link: Optional[str] = None
    document_type: Optional[str] = None


class FailedDocument(RegistryBaseModel):
    document_type: Optional[str] = None
    error_message: Optional[str] = None


class SubmissionResponse(RegistryBaseModel):
    """Response of POST /api/v1/document."""
    valid_documents: List[ValidDocument] = Field(default_factory=list)
    failed_documents: List[FailedDocument] = Field(default_factory=list)


class DocumentDetail(RegistryBaseModel):
    """Response of GET /api/v1/document/{id}."""
    document_id: Optional[str] = None
    status: Optional[str] = None
    updated_at: Optional[datetime] = None
    verification_link: Optional[str] = None
    document_type: Optional[str] = None

    @field_validator("updated_at", mode="before")
    @classmethod
    def _parse_updated_at(cls, value):
        return parse_timestamp(value)


class DocumentUpdate(RegistryBaseModel):
    """One entry of the official polling feed."""
    document_id: str
    updated_at: datetime
    type: Optional[str] = Field(None, description="SEND or RECEIVE")

    @field_validator("updated_at", mode="before")
    @classmethod
    def _parse_updated_at(cls, value):
        return parse_timestamp(value)


class DocumentUpdates(RegistryBaseModel):
    """Response of GET /api/v1/document/poll."""
    documents: List[DocumentUpdate] = Field(default_factory=list)
