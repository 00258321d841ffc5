"""Request models for the store and auth endpoints."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import ValidationFailed
from .machine import StoreState
from .models import Engine

STORE_NAME_PATTERN = r"^[a-z0-9][a-z0-9-]*[a-z0-9]$"
# bcrypt only hashes the first 72 bytes and rejects longer input.
MAX_PASSWORD_BYTES = 72


class CreateStoreRequest(BaseModel):
    # Unknown keys (ownerId included) are dropped, never trusted.
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    name: str = Field(min_length=3, max_length=63, pattern=STORE_NAME_PATTERN)
    engine: Optional[Any] = None


class ListStoresQuery(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    status: Optional[StoreState] = None
    engine: Optional[Engine] = None
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class PageQuery(BaseModel):
    model_config = ConfigDict(extra="ignore")

    limit: int = Field(default=100, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class AuditQuery(PageQuery):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    store_id: Optional[str] = Field(default=None, alias="storeId")
    action: Optional[str] = None


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    username: Optional[str] = Field(default=None, max_length=128)
    password: str = Field(min_length=8, max_length=72)

    @field_validator("password")
    @classmethod
    def _password_fits_bcrypt(cls, v: str) -> str:
        if len(v.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
        return v


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)


def parse_model(model_cls, data: Any):
    """Validate `data` into `model_cls`, mapping pydantic errors to ValidationFailed."""
    try:
        return model_cls.model_validate(data or {})
    except ValidationError as e:
        problems = []
        for err in e.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            problems.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid"))
        raise ValidationFailed("Request validation failed.", details="; ".join(problems))
