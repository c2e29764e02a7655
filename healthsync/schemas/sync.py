"""Pydantic models for the sync wire protocol."""

from typing import Any, Literal
from pydantic import BaseModel, ConfigDict, Field

SyncOperation = Literal["insert", "update", "delete"]


class SyncChange(BaseModel):
    """A single row change; the unit of transfer in both directions."""
    table: str
    id: str
    operation: SyncOperation
    payload: dict[str, Any]
    timestamp: int  # epoch ms when the change was made


class SyncConflict(BaseModel):
    """A pushed change rejected because the server row is newer."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    table: str | None = None
    server_version: dict[str, Any] = Field(alias="serverVersion")


class PullRequest(BaseModel):
    cursor: str
    limit: int | None = Field(default=None, ge=1)


class PullResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    changes: list[SyncChange]
    cursor: str
    has_more: bool = Field(alias="hasMore")


class PushRequest(BaseModel):
    changes: list[SyncChange]


class PushResponse(BaseModel):
    accepted: list[str]
    conflicts: list[SyncConflict]


class AuthRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    password: str
    device_name: str = Field(alias="deviceName")


class AuthResponse(BaseModel):
    token: str
