from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator
from typing import List, Optional
import os, pathlib


def _dedupe(tags: List[str]) -> List[str]:
    seen = set()
    out = []
    for t in tags:
        if t not in seen:
            seen.add(t)
            out.append(t)
    return out


def _non_empty(v: Optional[str], field: str) -> Optional[str]:
    if v is not None and not v:
        raise ValueError(f"{field} must not be empty")
    return v


class VaultItem(BaseModel):
    """One decrypted credential record. Stored with camelCase keys."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    title: str
    username: str = ""
    password: str
    url: str = ""
    notes: str = ""
    tags: List[str] = []
    created_at: int = Field(alias="createdAt")   # unix ms
    updated_at: int = Field(alias="updatedAt")   # unix ms

    @field_validator("id", "title", "password")
    @classmethod
    def required_not_empty(cls, v: str, info):
        return _non_empty(v, info.field_name)

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v: List[str]):
        return _dedupe(v)


class ItemDraft(BaseModel):
    """Fields supplied by the caller when creating an item."""
    title: str
    password: str
    username: str = ""
    url: str = ""
    notes: str = ""
    tags: List[str] = []

    @field_validator("title", "password")
    @classmethod
    def required_not_empty(cls, v: str, info):
        return _non_empty(v, info.field_name)

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v: List[str]):
        return _dedupe(v)


class ItemPatch(BaseModel):
    """Partial update. Only fields explicitly set are merged into the item.

    An explicit None clears username, url, notes or tags.
    """
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    password: Optional[str] = None
    username: Optional[str] = None
    url: Optional[str] = None
    notes: Optional[str] = None
    tags: Optional[List[str]] = None

    @field_validator("title", "password")
    @classmethod
    def required_not_empty(cls, v: Optional[str], info):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be cleared")
        return _non_empty(v, info.field_name)

    @field_validator("username", "url", "notes")
    @classmethod
    def none_clears(cls, v: Optional[str]):
        return "" if v is None else v

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v: Optional[List[str]]):
        return [] if v is None else _dedupe(v)


class ExportDocument(BaseModel):
    """Portable export: a version tag, export time and one envelope per item."""
    version: StrictStr
    timestamp: StrictInt   # unix ms
    items: List[StrictStr]


class AccountRecord(BaseModel):
    """Per-account authentication data kept outside the encrypted vault."""
    id: str
    email: str
    password_hash: str
    totp_enabled: bool = False
    totp_secret: Optional[str] = None


class Settings(BaseModel):
    """Runtime configuration, normally built from the environment."""
    home: pathlib.Path = pathlib.Path.home() / ".local" / "share" / "credvault"
    log_path: pathlib.Path = pathlib.Path.home() / ".local" / "state" / "credvault" / "credvault.log"
    workers: int = Field(default=1, ge=1, le=64)
    issuer: str = "CredVault"

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """Read CREDVAULT_* variables; explicit keyword overrides win."""
        values = {}
        env = {
            "home": "CREDVAULT_HOME",
            "log_path": "CREDVAULT_LOG",
            "workers": "CREDVAULT_WORKERS",
            "issuer": "CREDVAULT_ISSUER",
        }
        for field, var in env.items():
            if os.environ.get(var):
                values[field] = os.environ[var]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
