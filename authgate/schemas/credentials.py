"""Temporary credential response schemas."""

from datetime import datetime

from pydantic import BaseModel


class TemporaryCredentialsResponse(BaseModel):
    """Scoped cloud credentials issued for the caller's identity token."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime


class ErrorResponse(BaseModel):
    """Standard API error payload."""

    detail: str
    code: str
