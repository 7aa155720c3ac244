"""
API request and response models for TenantGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Role and permission names travel in URLs and JSON; keep them to a safe alphabet.
ROLE_PATTERN = r"^[A-Za-z][A-Za-z0-9_-]{0,49}$"
PERMISSION_PATTERN = r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$"
_PERMISSION_RE = re.compile(PERMISSION_PATTERN)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. identifier is an email or username."""

    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    device: Optional[str] = Field(default=None, max_length=100)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh.

    The access token may already be expired; it must still carry a valid
    signature.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    access_token: str = Field(min_length=1, max_length=8192)
    refresh_token: str = Field(min_length=1, max_length=255)


class LogoutRequest(BaseModel):
    all_sessions: bool = False


class DefaultCompanyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    company_id: str = Field(min_length=1, max_length=64)


class MemberCreate(BaseModel):
    """Request body for POST /api/v1/companies/{company_id}/members."""

    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=255, description="Email or username of an existing principal.")
    role: str = Field(pattern=ROLE_PATTERN)
    is_default: bool = False


class MemberPatch(BaseModel):
    """Request body for PATCH /api/v1/companies/{company_id}/members/{principal_id}."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: Optional[str] = Field(default=None, pattern=ROLE_PATTERN)
    is_active: Optional[bool] = None


class RolePermissionsUpdate(BaseModel):
    """Request body for PUT /api/v1/companies/{company_id}/roles/{role}/permissions.

    An empty list removes the company override; the global default applies again.
    """

    permissions: list[str] = Field(max_length=200)

    @field_validator("permissions", mode="before")
    @classmethod
    def normalize_permissions(cls, values: list) -> list[str]:
        """Strip and deduplicate while preserving order, then check the format."""
        seen: set[str] = set()
        result: list[str] = []
        for v in values:
            normalized = str(v).strip()
            if not normalized or normalized in seen:
                continue
            seen.add(normalized)
            result.append(normalized)
        return result

    @field_validator("permissions")
    @classmethod
    def check_format(cls, values: list[str]) -> list[str]:
        for v in values:
            if not _PERMISSION_RE.match(v):
                raise ValueError(f"invalid permission name: {v!r}")
        return values


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Token pair returned by login and refresh. The refresh token is shown once."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Seconds until the access token expires.")
    access_expires_at: datetime
    refresh_expires_at: datetime


class PrincipalResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    username: str
    display_name: Optional[str] = None
    default_company_id: Optional[str] = None
    companies: dict[str, str] = Field(default_factory=dict)
    permissions: list[str] = Field(default_factory=list)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    tokens: TokenResponse
    principal: PrincipalResponse


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me -- what the presented token says."""

    model_config = ConfigDict(frozen=True)

    principal_id: str
    username: Optional[str] = None
    session_id: Optional[str] = None
    default_company_id: Optional[str] = None
    companies: dict[str, str] = Field(default_factory=dict)
    expires_at: datetime


class PermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    company_id: str
    role: Optional[str] = None
    permissions: list[str]


class MemberResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    principal_id: str
    company_id: str
    role: str
    is_active: bool
    is_default: bool
    joined_at: Optional[str] = None
    left_at: Optional[str] = None


class RolePermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    company_id: str
    role: str
    permissions: list[str]


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
