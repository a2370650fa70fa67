from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kanari.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "forbidden",
    "project_forbidden",
    "file_forbidden",
    "paid_model_requires_user_key",
    "not_found",
    "project_not_found",
    "chat_not_found",
    "file_not_found",
    "rate_limited",
    "validation_error",
    "content_required",
    "name_required",
    "invalid_model",
    "file_empty",
    "file_too_large",
    "unsupported_file_type",
    "conflict",
    "chat_stream_in_progress",
    "server_error",
    "openrouter_error",
    "openrouter_stream_timeout",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

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
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _validate_email(value: str) -> str:
    normalized = (value or "").strip().lower()
    local, sep, domain = normalized.partition("@")
    if not sep or not local or "." not in domain or len(normalized) > 254:
        raise ValueError("invalid email address")
    return normalized


class SignupRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    created_at: datetime


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: datetime
    access_token: str
    token_type: str = "bearer"


class ModelResponse(BaseModel):
    id: str
    label: str
    tier: str


class ModelListResponse(BaseModel):
    models: List[ModelResponse]
    default_model: str


class ProjectCreateRequest(BaseModel):
    name: str = Field(..., max_length=200)
    system_prompt: Optional[str] = Field(None, max_length=20000)
    model: Optional[str] = Field(None, max_length=200)
    params: Optional[Dict[str, Any]] = None


class ProjectUpdateRequest(BaseModel):
    """Partial update: only fields present in the request body are applied."""

    name: Optional[str] = Field(None, max_length=200)
    system_prompt: Optional[str] = Field(None, max_length=20000)
    model: Optional[str] = Field(None, max_length=200)
    params: Optional[Dict[str, Any]] = None


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class ChatCreateRequest(BaseModel):
    title: Optional[str] = Field(None, max_length=200)


class ChatUpdateRequest(BaseModel):
    title: Optional[str] = Field(None, max_length=200)


class ChatResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    title: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class MessageCreateRequest(BaseModel):
    content: str = Field(..., max_length=65536)


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    chat_id: str
    role: str
    content: str
    created_at: datetime


class FileRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    name: str
    mime: str
    size: int
    created_at: datetime


class ContextPreviewResponse(BaseModel):
    context: Optional[str] = None
