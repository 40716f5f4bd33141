"""
teams_relay/models.py — typed shapes for everything the auth core touches.

Playwright-owned JSON (the storage_state snapshot) and the claims inside
signed tokens are validated through pydantic models, so a malformed entry
becomes a ValidationError at one well-defined decode step. The credential
bundles are plain frozen dataclasses: they are projections computed in
memory and never serialised on their own.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Audience(str, Enum):
    SEARCH     = "search"
    CHAT       = "chat"
    MESSAGING  = "messaging"
    FAVOURITES = "favourites"
    PRESENCE   = "presence"


# ─── Session snapshot (Playwright storage_state) ──────────────────────────────

class Cookie(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    value: str
    domain: str = ""
    path: str = "/"
    expires: Optional[float] = None
    http_only: bool = Field(default=False, alias="httpOnly")
    secure: bool = False
    same_site: Optional[str] = Field(default=None, alias="sameSite")


class StorageEntry(BaseModel):
    name: str
    value: str


class OriginStorage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    origin: str
    local_storage: List[StorageEntry] = Field(default_factory=list, alias="localStorage")


class SessionSnapshot(BaseModel):
    cookies: List[Cookie] = Field(default_factory=list)
    origins: List[OriginStorage] = Field(default_factory=list)

    @model_validator(mode="after")
    def _merge_duplicate_origins(self) -> "SessionSnapshot":
        merged: List[OriginStorage] = []
        seen = {}
        for origin in self.origins:
            if origin.origin in seen:
                seen[origin.origin].local_storage.extend(origin.local_storage)
                continue
            seen[origin.origin] = origin
            merged.append(origin)
        self.origins = merged
        return self

    def origin(self, name: str) -> Optional[OriginStorage]:
        for origin in self.origins:
            if origin.origin == name:
                return origin
        return None

    def to_storage_state(self) -> dict:
        """Dump in the exact shape Playwright's new_context(storage_state=) takes."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ─── Decoded local-storage values and token claims ────────────────────────────

class CachedSecret(BaseModel):
    """The JSON stored by MSAL under a token key: {"secret": ..., "target": ...}."""
    model_config = ConfigDict(extra="ignore")

    secret: Optional[str] = None
    target: Optional[str] = None


class TokenClaims(BaseModel):
    model_config = ConfigDict(extra="allow")

    exp: Optional[float] = None
    oid: Optional[str] = None
    tid: Optional[str] = None
    name: Optional[str] = None
    upn: Optional[str] = None
    preferred_username: Optional[str] = None
    email: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    aud: Any = None
    skypeid: Optional[str] = None

    @property
    def expiry(self) -> Optional[datetime]:
        if self.exp is None:
            return None
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


class CachedToken(BaseModel):
    """Persisted search-token cache document."""
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(alias="substrateToken")
    expires_at_ms: int = Field(alias="substrateTokenExpiry")
    extracted_at_ms: int = Field(alias="extractedAt")


# ─── Identity / routing ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class UserIdentity:
    object_id: str
    mri: str
    email: str
    display_name: str
    given_name: Optional[str] = None
    surname: Optional[str] = None
    tenant_id: Optional[str] = None


@dataclass(frozen=True)
class RegionConfig:
    region: str
    partition: Optional[str] = None
    chat_service_url: Optional[str] = None
    middle_tier_url: Optional[str] = None

    @property
    def has_partition(self) -> bool:
        return self.partition is not None

    @property
    def region_partition(self) -> str:
        if self.partition is None:
            return self.region
        return f"{self.region}-{self.partition}"


# ─── Credential bundles ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class SearchCredential:
    token: str
    expiry: datetime


@dataclass(frozen=True)
class ChatCredential:
    token: str
    expiry: datetime
    user_mri: str


@dataclass(frozen=True)
class MessagingCredential:
    skype_token: str
    auth_token: str
    user_mri: str


@dataclass(frozen=True)
class FavouritesCredential:
    skype_token: str
    favourites_token: str
