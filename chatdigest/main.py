import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, time, timedelta
from typing import Annotated, Generator, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from chatdigest import storage
from chatdigest.config import Settings, get_settings
from chatdigest.errors import GenerationExhaustedError
from chatdigest.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from chatdigest.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from chatdigest.models import TransportStatus
from chatdigest.schemas import (
    CommandRequest,
    CommandResponse,
    ErrorResponse,
    HealthResponse,
    StatusResponse,
    SummarizeRequest,
    SummarizeResponse,
    WebhookRequest,
    WebhookResponse,
)
from chatdigest.services import Services, build_services
from chatdigest.utils import verify_hmac_signature

logger = logging.getLogger(__name__)

router = APIRouter()

NO_MESSAGES_TO_SUMMARIZE = "No messages found to summarize for the selected criteria."


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_db(services: Services = Depends(get_services)) -> Generator[Session, None, None]:
    yield from storage.session_scope(services.session_factory)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the API application.

    Passing services skips building the production collaborators (tests
    inject fakes this way); the caller then owns their cleanup.
    """
    settings = settings or (services.settings if services else get_settings())
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: build services, create tables, set status INIT, start the tick loop
        - Shutdown: stop the loop and release clients
        """
        svc = services or build_services(settings)
        storage.init_db(svc.engine)
        with svc.session_factory() as db:
            storage.set_system_status(db, svc.settings.STATUS_ID, TransportStatus.INIT.value)
        app.state.services = svc

        tick_task = None
        if settings.TICK_ENABLED:
            tick_task = asyncio.create_task(svc.tick_loop.run_forever())
        yield
        if tick_task is not None:
            svc.tick_loop.stop()
            await tick_task
        if services is None:
            await svc.aclose()

    app = FastAPI(
        title="chatdigest",
        description="Chat message archive with scheduled AI digests",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(router)
    return app


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response, services: Services = Depends(get_services)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. WEBHOOK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not services.settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_SECRET not configured")

    if not storage.check_db_health(services.session_factory):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@router.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
    }
)
async def webhook(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    services: Services = Depends(get_services),
    db: Session = Depends(get_db),
) -> WebhookResponse:
    """
    Ingest messages pushed by the transport exactly once.

    - Validates HMAC-SHA256 signature using X-Signature header
    - Validates request body against WebhookRequest schema
    - Idempotent: a repeated transport_id refreshes the stored row
    """
    raw_body = await request.body()

    if not x_signature or not verify_hmac_signature(raw_body, x_signature, services.settings.WEBHOOK_SECRET):
        logger.warning("Rejected webhook with missing or invalid X-Signature")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request=request, dup=False, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    body_dict = None
    try:
        body_dict = json.loads(raw_body)
        message = WebhookRequest.model_validate(body_dict)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Webhook validation error: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(
            request=request,
            transport_id=body_dict.get("transport_id") if isinstance(body_dict, dict) else None,
            dup=False,
            result="validation_error"
        )
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )

    owner_id = services.settings.OWNER_ID
    storage.upsert_chat(db, message.chat_id, message.chat_name, owner_id)
    stored, is_duplicate = storage.save_message(
        db,
        transport_id=message.transport_id,
        chat_id=message.chat_id,
        sender=message.sender,
        content=message.content,
        timestamp=message.timestamp,
        media_url=message.media_url,
        owner_id=owner_id,
    )

    result = "duplicate" if is_duplicate else ("created" if stored else "dropped")
    record_webhook_outcome(result)
    log_webhook_data(request=request, transport_id=message.transport_id, dup=is_duplicate, result=result)

    return WebhookResponse(status="ok")


# =============================================================================
# Control Plane Routes
# =============================================================================

@router.post("/commands", response_model=CommandResponse, status_code=status.HTTP_201_CREATED)
async def submit_command(body: CommandRequest, db: Session = Depends(get_db)) -> CommandResponse:
    """
    Queue a command for the running process.

    Unknown types are accepted and will be FAILED by the processor.
    """
    command = storage.enqueue_command(db, body.type, body.payload)
    return CommandResponse.model_validate(command)


@router.get(
    "/commands/{command_id}",
    response_model=CommandResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_command(command_id: str, db: Session = Depends(get_db)) -> CommandResponse:
    command = storage.get_command(db, command_id)
    if command is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="command not found")
    return CommandResponse.model_validate(command)


@router.get("/status", response_model=StatusResponse)
async def get_status(services: Services = Depends(get_services), db: Session = Depends(get_db)) -> StatusResponse:
    row = storage.get_system_status(db, services.settings.STATUS_ID)
    return StatusResponse(status=row.status if row else "UNKNOWN")


@router.post("/disconnect", response_model=StatusResponse)
async def disconnect(services: Services = Depends(get_services), db: Session = Depends(get_db)) -> StatusResponse:
    """
    Request a logout; the tick loop performs it on its next wake.
    """
    storage.set_system_status(db, services.settings.STATUS_ID, TransportStatus.LOGOUT_REQUEST.value)
    return StatusResponse(status=TransportStatus.LOGOUT_REQUEST.value)


@router.post(
    "/summarize",
    response_model=SummarizeResponse,
    responses={502: {"model": ErrorResponse, "description": "Every generation credential failed"}},
)
async def summarize(body: SummarizeRequest, services: Services = Depends(get_services)) -> SummarizeResponse:
    """
    Summarize stored messages on demand.

    Nothing is written to report history and nothing is sent.
    """
    generator = services.report_generator
    start = datetime.combine(body.start_date, time.min, tzinfo=generator.tz) if body.start_date else None
    end = (
        datetime.combine(body.end_date + timedelta(days=1), time.min, tzinfo=generator.tz)
        if body.end_date else None
    )

    try:
        result = await generator.summarize(start, end, chat_id=body.chat_id, sender=body.sender)
    except GenerationExhaustedError as e:
        logger.error(f"On-demand summary failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    if result is None:
        return SummarizeResponse(count=0, message=NO_MESSAGES_TO_SUMMARIZE)
    return SummarizeResponse(summary=result.text, count=result.message_count)


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


def main() -> None:
    settings = get_settings()
    uvicorn.run("chatdigest.main:create_app", factory=True, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    main()
