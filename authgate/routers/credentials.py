"""Temporary cloud credential routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from authgate.core.errors import AuthGateError
from authgate.core.oidc import TokenVerifier, get_token_verifier
from authgate.dependencies import get_identity_token
from authgate.schemas.credentials import ErrorResponse, TemporaryCredentialsResponse
from authgate.services.audit_service import AuditService, get_audit_service
from authgate.services.credential_service import CredentialBroker, get_credential_service

router = APIRouter(prefix="/auth", tags=["credentials"])


def _error_response(status_code: int, detail: str, code: str) -> JSONResponse:
    """Build standardized API error response payload."""
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": code})


@router.get(
    "/sts-credentials",
    response_model=TemporaryCredentialsResponse,
    responses={
        status_code: {"model": ErrorResponse} for status_code in (400, 401, 403, 502, 503)
    },
)
async def sts_credentials(
    request: Request,
    raw_id_token: Annotated[str, Depends(get_identity_token)],
    token_verifier: Annotated[TokenVerifier, Depends(get_token_verifier)],
    credential_service: Annotated[CredentialBroker, Depends(get_credential_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
) -> TemporaryCredentialsResponse | JSONResponse:
    """Exchange the caller's verified identity token for temporary credentials."""
    subject_id: str | None = None
    try:
        principal = await token_verifier.verify(raw_id_token)
        subject_id = principal.subject_id
        credential = await credential_service.get_credentials(principal.raw_token)
    except AuthGateError as exc:
        audit_service.log_credential_issuance(
            request=request,
            success=False,
            error_code=exc.code,
            subject_id=subject_id,
        )
        return _error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)

    audit_service.log_credential_issuance(
        request=request,
        success=True,
        subject_id=subject_id,
        cache_key=credential.cache_key,
    )
    return TemporaryCredentialsResponse(
        access_key_id=credential.access_key_id,
        secret_access_key=credential.secret_access_key,
        session_token=credential.session_token,
        expiration=credential.expiration,
    )
