"""
FastAPI dependency injection.
Provides the pipeline, artifact store, calling principal and API key validation.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

from app.config import settings
from app.pipeline.orchestrator import InvoicePipeline
from app.storage.artifact_store import ArtifactStore


class Principal(BaseModel):
    """Who is calling: the tenant (invoice issuer) and the owning user/chat."""
    tenant_id: str
    owner_id: str


def get_pipeline(request: Request) -> InvoicePipeline:
    """The pipeline built at startup (see app.main lifespan)."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialised",
        )
    return pipeline


def get_artifact_store(pipeline: InvoicePipeline = Depends(get_pipeline)) -> ArtifactStore:
    """The store the pipeline reads sources from and writes archives to."""
    return pipeline.artifact_store


async def get_principal(
    x_tenant_id: str = Header(..., alias="X-Tenant-Id", min_length=1),
    x_owner_id: str = Header(..., alias="X-Owner-Id", min_length=1),
) -> Principal:
    return Principal(tenant_id=x_tenant_id, owner_id=x_owner_id)


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key
