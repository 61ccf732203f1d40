"""Shared FastAPI dependency helpers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from authgate.config import Settings, get_settings

ID_TOKEN_COOKIE = "id_token"


def get_app_settings() -> Settings:
    """Expose cached settings as an overridable dependency."""
    return get_settings()


async def get_identity_token(
    request: Request,
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> str:
    """Read the raw identity token from cookies or the Authorization header."""
    for cookie_name in (ID_TOKEN_COOKIE, settings.cookie.name):
        value = request.cookies.get(cookie_name, "").strip()
        if value:
            return value
    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return ""
