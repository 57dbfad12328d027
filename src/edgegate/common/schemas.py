"""Data models shared by the gateway components."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class Identity(BaseModel):
    """Validated caller: the registered client and, for user tokens, the user."""

    model_config = ConfigDict(extra="allow")

    client_id: str
    user_id: Optional[str] = None
    scopes: list[str] = Field(default_factory=list)
    secret: SecretStr

    @field_validator("user_id", mode="before")
    @classmethod
    def _coerce_user_id(cls, value):
        # Extension assertions carry numeric or empty user ids.
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("scopes", mode="before")
    @classmethod
    def _coerce_scopes(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return value.split()
        return value

    @property
    def claims(self) -> dict[str, object]:
        return dict(self.model_extra or {})


class KeyPage(BaseModel):
    """Raw page of keys returned by a storage backend."""

    keys: list[str] = Field(default_factory=list)
    cursor: Optional[str] = None
    truncated: bool = False


class ListingPage(BaseModel):
    """One page of a directory-style listing."""

    prefix: str
    cursor: Optional[str] = None
    truncated: bool = False
    entries: list[str] = Field(default_factory=list)


class StoredObject(BaseModel):
    """Object as reported by a storage backend.

    ``body`` is ``None`` for metadata-only lookups and when the backend
    withheld the content because a conditional header did not match.
    """

    key: str
    size: int
    etag: str
    body: Optional[bytes] = None
    http_metadata: dict[str, str] = Field(default_factory=dict)
    uploaded: Optional[datetime] = None
    content_range: Optional[str] = None
