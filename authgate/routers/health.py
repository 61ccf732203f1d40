"""Health check router endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from authgate.core.errors import UpstreamProviderError
from authgate.core.oidc import ProviderMetadataLoader, get_metadata_loader

router = APIRouter(prefix="/health", tags=["health"])


async def check_provider_ready(
    metadata_loader: Annotated[ProviderMetadataLoader, Depends(get_metadata_loader)],
) -> bool:
    """Return True once provider discovery metadata is available."""
    try:
        await metadata_loader.get()
    except UpstreamProviderError:
        return False
    return True


@router.get("/live")
async def live() -> dict[str, str]:
    """Liveness probe endpoint."""
    return {"status": "live"}


@router.get("/ready")
async def ready(
    provider_ready: Annotated[bool, Depends(check_provider_ready)],
) -> dict[str, str]:
    """Readiness probe requiring identity provider discovery."""
    if not provider_ready:
        raise HTTPException(
            status_code=503,
            detail={"detail": "Service not ready.", "code": "upstream_provider_failure"},
        )
    return {"status": "ready"}
