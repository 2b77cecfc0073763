from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantcrm.storage.common import is_valid_slug

MAX_NAME_LENGTH = 100


# zero-width characters and bidi overrides enable look-alike emails and slugs
_INVISIBLE = dict.fromkeys(
    [0x200B, 0x200C, 0x200D, 0xFEFF, *range(0x202A, 0x202F), *range(0x2066, 0x206A)]
)


def _normalize_unicode(value: str) -> str:
    return unicodedata.normalize("NFKC", value.translate(_INVISIBLE))


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[A-Za-z]", value) or not re.search(r"[0-9]", value):
        raise ValueError("password must contain letters and digits")
    return value


def _validate_slug(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = _normalize_unicode(value.strip().lower())
    if not is_valid_slug(normalized):
        raise ValueError(
            "slug must be 1-63 lowercase letters, digits or hyphens and cannot start or end with a hyphen"
        )
    return normalized


def _clean_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    return cleaned or None


class _CamelRequest(BaseModel):
    # Browser clients send camelCase; snake_case is accepted as well
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class RegisterRequest(_CamelRequest):
    email: str
    password: str
    first_name: str = Field(..., alias="firstName", min_length=1, max_length=MAX_NAME_LENGTH)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=MAX_NAME_LENGTH)
    company_name: str = Field(..., alias="companyName", min_length=1, max_length=200)
    company_slug: str = Field(..., alias="companySlug", max_length=63)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("company_slug")
    @classmethod
    def _validate_company_slug(cls, value: str) -> str:
        return _validate_slug(value)

    @field_validator("first_name", "last_name", "company_name")
    @classmethod
    def _normalize_names(cls, value: Optional[str]) -> Optional[str]:
        return _clean_name(value)


class _TenantHintRequest(_CamelRequest):
    """Email plus an optional slug for users whose email exists in several tenants."""

    email: str
    tenant_slug: Optional[str] = Field(default=None, alias="tenantSlug", max_length=63)

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("tenant_slug")
    @classmethod
    def _normalize_tenant_slug(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value.strip().lower()) if value else None


class LoginRequest(_TenantHintRequest):
    password: str = Field(..., min_length=1, max_length=128)


class PasswordForgotRequest(_TenantHintRequest):
    pass


class PasswordResetRequest(_CamelRequest):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(_CamelRequest):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., alias="currentPassword", min_length=1, max_length=128)
    new_password: str = Field(..., alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _reject_unchanged(self):
        if self.current_password == self.new_password:
            raise ValueError("new password must differ from the current password")
        return self


class TaskCreateRequest(_CamelRequest):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    assigned_to: Optional[str] = Field(default=None, alias="assignedTo", max_length=64)


class TaskUpdateRequest(_CamelRequest):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    status: Optional[Literal["open", "in_progress", "done"]] = None
    assigned_to: Optional[str] = Field(default=None, alias="assignedTo", max_length=64)

    def changes(self) -> dict:
        fields = self.model_dump(exclude_unset=True)
        # title and status are NOT NULL columns
        for key in ("title", "status"):
            if key in fields and fields[key] is None:
                fields.pop(key)
        return fields

    @model_validator(mode="after")
    def _require_change(self):
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        return self


class RoleChangeRequest(BaseModel):
    role: Literal["owner", "admin", "manager"]


class InviteRequest(_CamelRequest):
    email: str
    role: Literal["owner", "admin", "manager"] = "manager"

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)


class AcceptInviteRequest(_CamelRequest):
    token: str = Field(..., min_length=1, max_length=256)
    password: str
    first_name: str = Field(..., alias="firstName", min_length=1, max_length=MAX_NAME_LENGTH)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=MAX_NAME_LENGTH)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _normalize_names(cls, value: Optional[str]) -> Optional[str]:
        return _clean_name(value)


class TenantSettingsRequest(BaseModel):
    """Partial settings update; unknown keys are stored as given."""

    model_config = ConfigDict(extra="allow")

    modules: Optional[Dict[str, bool]] = None

    def changes(self) -> Dict[str, Any]:
        fields = self.model_dump(exclude_unset=True)
        if fields.get("modules") is None:
            fields.pop("modules", None)
        return fields

    @model_validator(mode="after")
    def _require_change(self):
        if not self.changes():
            raise ValueError("at least one setting must be provided")
        return self


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: Optional[str] = None
    role: str
    tenant_id: Optional[str] = None
    is_active: bool = True
    last_login_at: Optional[str] = None


class UserListResponse(BaseModel):
    items: List[UserResponse]


class TenantResponse(BaseModel):
    id: str
    name: str
    slug: str


class TenantDetailResponse(TenantResponse):
    is_active: bool = True
    settings: Dict[str, Any] = Field(default_factory=dict)


class InviteResponse(BaseModel):
    email: str
    role: str
    expires_at: str


class InvitePreviewResponse(BaseModel):
    email: str
    role: str
    company_name: str


class AuthResponse(BaseModel):
    user: UserResponse
    tenant: Optional[TenantResponse] = None
    access_token: Optional[str] = None
    token_type: str = "bearer"
    csrf_token: Optional[str] = None
