"""Pydantic schemas for remote API response bodies."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

# === Entity schemas ===


class EntityResponse(BaseModel):
    """Entity returned by create/update.

    Only the sync-relevant fields are typed; the rest of the entity is
    kept as extra fields and handed back untouched.
    """

    model_config = ConfigDict(extra="allow")

    id: str | int | None = None
    version: int | None = None


# === Conflict schemas ===


class ConflictBody(BaseModel):
    """Body of a 409/410 response."""

    detail: str = "Conflict"
    current: dict[str, Any] | None = None
    version: int | None = None
    updated_at: str | float | None = None
    deleted: bool = False


# === Error schemas ===


class ErrorBody(BaseModel):
    """Body of any other error response."""

    detail: str = "Unknown error"
