"""FastAPI application entry point for the tenancy service.

Exposes workspace provisioning and invitation resolution over HTTP. The
acting user is taken from the X-User-Id header, set by the authentication
proxy in front of this service.

Saga outcomes map to distinct responses so a client can tell them apart:
- 502 with outcome "rolled_back": nothing was kept, safe to retry
- 500 with outcome "manual_cleanup_required": an operator must step in
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from src.tenancy.config import GatewayBackend, TenancySettings, get_settings
from src.tenancy.errors import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    SagaFailedError,
)
from src.tenancy.events.emitter import CompositeEventEmitter, LoggingEventEmitter
from src.tenancy.events.metrics import MetricsEventEmitter, generate_metrics_output
from src.tenancy.gateway.base import GatewayError
from src.tenancy.models import InvitationSummary, Membership, Workspace
from src.tenancy.service import TenancyService, create_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instance, initialized during lifespan startup
service: Optional[TenancyService] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: TenancySettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Tenancy configuration:")
    logger.info(f"  Gateway Backend: {settings.gateway_backend.value}")
    if settings.gateway_backend == GatewayBackend.REST:
        logger.info(f"  Gateway URL: {settings.gateway_url}")
        logger.info(f"  Gateway API Key: {_redact_secret(settings.gateway_api_key)}")
    elif settings.gateway_backend == GatewayBackend.POSTGRES:
        logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    logger.info(f"  Request Timeout Seconds: {settings.request_timeout_seconds}")
    logger.info(f"  Request Max Retries: {settings.request_max_retries}")
    logger.info(f"  Step Timeout Seconds: {settings.step_timeout_seconds}")
    logger.info(
        f"  Idempotency Retention Seconds: {settings.idempotency_retention_seconds}"
    )
    logger.info(f"  Idempotency Max Entries: {settings.idempotency_max_entries}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")
    logger.info(f"  Log Level: {settings.log_level}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load settings, connect the gateway and wire the service."""
    global service

    logger.info("Tenancy service starting up...")

    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)
    _log_configuration(settings)

    event_emitter = CompositeEventEmitter(
        [LoggingEventEmitter(), MetricsEventEmitter()]
    )
    service = create_service(settings, event_emitter=event_emitter)
    await service.gateway.connect()

    logger.info("Tenancy service started successfully")

    yield

    logger.info("Tenancy service shutting down...")

    await service.gateway.close()
    await event_emitter.close()
    service = None

    logger.info("Tenancy service shutdown complete")


app = FastAPI(
    title="Workspace Tenancy",
    description="Workspace provisioning and invitation resolution",
    version="1.0.0",
    lifespan=lifespan,
)


def get_service() -> TenancyService:
    """Dependency returning the wired service."""
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


class CreateWorkspaceRequest(BaseModel):
    name: str = Field(..., description="Workspace display name")
    request_token: Optional[str] = Field(
        default=None,
        description="Client-generated token; retries with the same token are deduplicated",
    )


class ResolveInvitationRequest(BaseModel):
    request_token: Optional[str] = Field(
        default=None,
        description="Client-generated token; retries with the same token are deduplicated",
    )


# -----------------------------------------------------------------------------
# Error mapping
# -----------------------------------------------------------------------------


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError):
    return JSONResponse(
        status_code=422,
        content={"error": exc.message, "field": exc.field},
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"error": exc.message})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"error": exc.message})


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    logger.error("Store request failed", extra={"error": exc.message})
    return JSONResponse(status_code=503, content={"error": "Store unavailable"})


@app.exception_handler(SagaFailedError)
async def saga_failed_handler(request: Request, exc: SagaFailedError):
    if exc.is_clean:
        return JSONResponse(
            status_code=502,
            content={"error": exc.message, "outcome": "rolled_back", "step": exc.step},
        )
    return JSONResponse(
        status_code=500,
        content={
            "error": exc.message,
            "outcome": "manual_cleanup_required",
            "step": exc.step,
            "unrecovered_steps": exc.unrecovered_steps,
        },
    )


# -----------------------------------------------------------------------------
# Endpoints
# -----------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Liveness check endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready(svc: TenancyService = Depends(get_service)):
    """Readiness check endpoint; checks the store is reachable."""
    store_status = "healthy" if await svc.health_check() else "unhealthy"
    if store_status != "healthy":
        raise HTTPException(status_code=503, detail={"store": store_status})
    return {"status": "ready", "dependencies": {"store": store_status}}


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_metrics_output())


@app.post("/workspaces", response_model=Workspace, status_code=201)
async def create_workspace(
    body: CreateWorkspaceRequest,
    user_id: str = Header(..., alias="X-User-Id"),
    svc: TenancyService = Depends(get_service),
):
    return await svc.provision_workspace(body.name, user_id, body.request_token)


@app.get("/workspaces", response_model=List[Workspace])
async def list_workspaces(
    user_id: str = Header(..., alias="X-User-Id"),
    svc: TenancyService = Depends(get_service),
):
    return await svc.list_workspaces(user_id)


@app.get("/invitations", response_model=List[InvitationSummary])
async def list_invitations(
    email: str = Query(...),
    svc: TenancyService = Depends(get_service),
):
    return await svc.list_invitations(email)


@app.post("/invitations/{invite_id}/accept", response_model=Membership)
async def accept_invitation(
    invite_id: str,
    body: Optional[ResolveInvitationRequest] = None,
    user_id: str = Header(..., alias="X-User-Id"),
    svc: TenancyService = Depends(get_service),
):
    token = body.request_token if body is not None else None
    return await svc.resolve_invitation(invite_id, user_id, True, token)


@app.post("/invitations/{invite_id}/reject", status_code=204)
async def reject_invitation(
    invite_id: str,
    body: Optional[ResolveInvitationRequest] = None,
    user_id: str = Header(..., alias="X-User-Id"),
    svc: TenancyService = Depends(get_service),
):
    token = body.request_token if body is not None else None
    await svc.resolve_invitation(invite_id, user_id, False, token)
    return Response(status_code=204)


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.tenancy.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
