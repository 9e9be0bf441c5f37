# src/relay/config_schema.py

from __future__ import annotations
from typing import Annotated, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaError


def _check_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"'{value}' is not an absolute http(s) URL")
    return value.rstrip("/")


class _AuthBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("base_url")
    @classmethod
    def check_base_url(cls, value: Optional[str]) -> Optional[str]:
        return _check_url(value)


class NoAuth(_AuthBase):
    type: Literal["none"] = "none"


class ApiKeyAuth(_AuthBase):
    type: Literal["api_key"] = "api_key"
    api_key: str = ""


class BearerAuth(_AuthBase):
    type: Literal["bearer"] = "bearer"
    token: str


class BasicAuth(_AuthBase):
    type: Literal["basic"] = "basic"
    username: str
    password: str = ""


class HeadersAuth(_AuthBase):
    """Credentials travel only in `headers` (e.g. a gateway-specific header)."""
    type: Literal["headers"] = "headers"


ProviderAuth = Annotated[
    Union[NoAuth, ApiKeyAuth, BearerAuth, BasicAuth, HeadersAuth],
    Field(discriminator="type"),
]


class ProviderConfig(BaseModel):
    """
    One configured backend. Read once at startup, immutable afterwards;
    backend-specific defaults are applied by the factory via model_copy().
    `timeout` is in seconds; `retries` is advisory (the core never retries).
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    type: Literal["local", "remote"]
    priority: int = Field(default=0, ge=0)
    enabled: bool = True
    auth: ProviderAuth = Field(default_factory=NoAuth)
    models: List[str] = Field(default_factory=list)
    endpoint: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    retries: Optional[int] = Field(default=None, ge=0)

    @field_validator("endpoint")
    @classmethod
    def check_endpoint(cls, value: Optional[str]) -> Optional[str]:
        return _check_url(value)


def format_schema_error(exc: SchemaError) -> str:
    """Flatten pydantic issues into 'path: message' pairs."""
    issues = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        issues.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return ", ".join(issues)
