"""OAuth/OIDC login, callback, and logout routes."""

from __future__ import annotations

import time
from typing import Annotated
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from jose import jwt
from jose.exceptions import JWTError

from authgate.config import Settings
from authgate.core.errors import AuthGateError
from authgate.dependencies import get_app_settings
from authgate.services.audit_service import AuditService, get_audit_service
from authgate.services.flow_service import FlowOrchestrator, FlowState, get_flow_service

router = APIRouter(prefix="/auth/oauth", tags=["oauth"])

logger = structlog.get_logger(__name__)

DEFAULT_COOKIE_MAX_AGE = 3600


def _error_response(status_code: int, detail: str, code: str) -> JSONResponse:
    """Build standardized API error response payload."""
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": code})


def _parse_attempt(raw_value: str | None) -> int:
    """Parse the retry counter; anything unparseable counts as a first attempt."""
    if not raw_value:
        return 0
    try:
        return max(int(raw_value), 0)
    except ValueError:
        return 0


def token_max_age(raw_token: str, now: float | None = None) -> int:
    """Seconds until the token's exp claim, or a default when unavailable."""
    try:
        claims = jwt.get_unverified_claims(raw_token)
    except JWTError:
        return DEFAULT_COOKIE_MAX_AGE
    exp = claims.get("exp")
    if not isinstance(exp, int | float) or isinstance(exp, bool):
        return DEFAULT_COOKIE_MAX_AGE
    max_age = int(exp - (now if now is not None else time.time()))
    return max_age if max_age > 0 else DEFAULT_COOKIE_MAX_AGE


def _set_token_cookie(response: Response, settings: Settings, token: str, max_age: int) -> None:
    """Attach the identity token cookie, or clear it when max_age is zero."""
    response.set_cookie(
        key=settings.cookie.name,
        value=token,
        max_age=max_age,
        path="/",
        domain=settings.cookie.domain,
        secure=True,
        httponly=True,
        samesite="none",
    )


@router.get("/login")
async def login(
    request: Request,
    flow_service: Annotated[FlowOrchestrator, Depends(get_flow_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    redirect_url: Annotated[str | None, Query()] = None,
) -> Response:
    """Redirect the browser to the provider authorization endpoint."""
    try:
        authorization_url = await flow_service.build_authorization_url(redirect_url)
    except AuthGateError as exc:
        audit_service.log_login_attempt(
            request=request, success=False, stage="login", error_code=exc.code
        )
        return _error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)

    audit_service.log_login_attempt(request=request, success=True, stage="login")
    return RedirectResponse(url=authorization_url, status_code=302)


@router.get("/callback")
async def callback(
    request: Request,
    flow_service: Annotated[FlowOrchestrator, Depends(get_flow_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    settings: Annotated[Settings, Depends(get_app_settings)],
    code: Annotated[str, Query()] = "",
    state: Annotated[str, Query()] = "",
    redirect_url: Annotated[str | None, Query()] = None,
) -> Response:
    """Complete the code exchange, set the identity cookie, and redirect."""
    attempt = _parse_attempt(request.query_params.get(flow_service.retry_query_param))
    try:
        outcome = await flow_service.handle_callback(
            code=code,
            state=state,
            attempt=attempt,
            requested_redirect=redirect_url,
        )
    except AuthGateError as exc:
        audit_service.log_login_attempt(
            request=request,
            success=False,
            stage="callback",
            error_code=exc.code,
            attempt=attempt,
        )
        return _error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)

    if outcome.state is FlowState.RETRYING:
        audit_service.log_login_attempt(
            request=request,
            success=False,
            stage="retry",
            attempt=outcome.attempt,
        )
        return RedirectResponse(url=str(outcome.retry_url), status_code=302)

    principal = outcome.principal
    audit_service.log_login_attempt(
        request=request,
        success=True,
        stage="callback",
        subject_id=principal.subject_id if principal else None,
        attempt=outcome.attempt,
        provider=principal.provider if principal else None,
    )
    response = RedirectResponse(url=outcome.redirect_target, status_code=302)
    max_age = token_max_age(outcome.raw_id_token)
    _set_token_cookie(response, settings, outcome.raw_id_token, max_age)
    logger.info("identity_cookie_set", max_age=max_age)
    return response


@router.get("/logout")
async def logout(
    settings: Annotated[Settings, Depends(get_app_settings)],
    redirect_url: Annotated[str | None, Query()] = None,
) -> Response:
    """Clear the identity cookie and end the provider session when possible."""
    target = redirect_url or str(settings.app.frontend_url)
    if settings.provider.domain is not None:
        query = urlencode({"client_id": settings.provider.client_id, "logout_uri": target})
        target = f"{str(settings.provider.domain).rstrip('/')}/logout?{query}"

    response = RedirectResponse(url=target, status_code=302)
    _set_token_cookie(response, settings, "", 0)
    return response
