"""
Data models for the DNS filter manager.

Records are persisted as plain JSON objects with camelCase keys so the
stored layout stays compatible with existing installations; the models
expose snake_case attributes and dump with ``by_alias=True``.
"""

from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator


class EncryptedSecret(BaseModel):
    """AES-GCM ciphertext of a short secret, base64-encoded for storage."""

    ciphertext: str = Field(..., description="Base64 ciphertext with GCM tag")
    iv: str = Field(..., description="Base64 96-bit nonce")
    version: int = Field(default=2, description="Key-derivation/cipher generation")


class ApplianceRecord(BaseModel):
    """Connection record for one appliance.

    ``password`` holds plaintext in memory only. ``None`` means the stored
    secret could not be decrypted on this device.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    name: str = ""
    host: str
    username: str = ""
    password: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    def to_dict(self, include_password: bool = True) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        if not include_password:
            data.pop("password", None)
        return data

    def summary(self) -> Dict[str, Any]:
        """Loggable view; never includes the password."""
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "username": "***" if self.username else None,
        }


class RuleCacheEntry(BaseModel):
    """Snapshot of an appliance's user rules."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    rules: List[str] = Field(default_factory=list)
    count: int = 0
    fetched_at: Optional[str] = Field(default=None, alias="fetchedAt")
    ttl_minutes: Optional[int] = Field(default=None, alias="ttlMinutes")

    def fetched_at_dt(self) -> Optional[datetime]:
        if not self.fetched_at:
            return None
        try:
            parsed = datetime.fromisoformat(self.fetched_at.replace('Z', '+00:00'))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Settings(BaseModel):
    """User-editable sync preferences."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    auto_sync: bool = Field(default=True, alias="autoSync")
    prefer_latest: bool = Field(default=True, alias="preferLatest")
    cache_ttl_minutes: int = Field(default=30, ge=0, alias="cacheTTLMinutes")
    theme: str = "dark"

    @field_validator('cache_ttl_minutes', mode='before')
    @classmethod
    def coerce_ttl(cls, v):
        if v is None:
            return 30
        return v

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


DEFAULT_SETTINGS = Settings().to_dict()


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
