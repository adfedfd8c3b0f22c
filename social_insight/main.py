import json
import logging
import mimetypes
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import FileResponse, PlainTextResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.requests import ClientDisconnect

from social_insight.config import Settings, get_settings
from social_insight.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from social_insight.media_pipeline import MediaPipeline
from social_insight.media_store import MediaStore
from social_insight.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from social_insight.schemas import (
    ConversationResponse,
    ConversationsListResponse,
    ConversationSummary,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    WebhookResponse,
)
from social_insight.storage import (
    build_engine,
    build_session_factory,
    check_db_health,
    get_conversation,
    get_db,
    get_messages,
    init_db,
    list_conversations,
)
from social_insight.utils import append_raw_body, verify_token
from social_insight.webhook import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Dependencies
# =============================================================================

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_processor(request: Request) -> WebhookProcessor:
    return WebhookProcessor(request.app.state.settings, request.app.state.media_pipeline)


def _query_param(request: Request, *names: str) -> Optional[str]:
    """First present query parameter among several spellings (hub.mode, hub_mode, mode)."""
    for name in names:
        value = request.query_params.get(name)
        if value is not None:
            return value
    return None


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness check - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(
    request: Request,
    response: Response,
    settings: Settings = Depends(get_app_settings),
) -> HealthResponse:
    """
    Readiness check - returns 200 only if:
    1. DB is reachable and schema is applied
    2. The media storage root exists

    Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health(request.app.state.session_factory):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    if not Path(settings.MEDIA_STORAGE_PATH).is_dir():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Media storage path not available"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> PlainTextResponse:
    """
    Subscription handshake.

    Echoes the challenge when mode is "subscribe" and the verify token
    matches WEBHOOK_VERIFY_TOKEN; 403 otherwise.
    """
    mode = _query_param(request, "hub.mode", "hub_mode", "mode")
    token = _query_param(request, "hub.verify_token", "hub_verify_token", "token")
    challenge = _query_param(request, "hub.challenge", "hub_challenge", "challenge") or ""

    if mode == "subscribe" and verify_token(token, settings.WEBHOOK_VERIFY_TOKEN):
        logger.info("Webhook verification succeeded")
        record_webhook_outcome("verified")
        log_webhook_data(request=request, result="verified")
        return PlainTextResponse(challenge)

    logger.warning(f"Webhook verification failed: mode={mode}")
    record_webhook_outcome("verification_failed")
    log_webhook_data(request=request, result="verification_failed")
    return PlainTextResponse("Verification failed", status_code=status.HTTP_403_FORBIDDEN)


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Unreadable body or invalid JSON"},
        500: {"model": ErrorResponse, "description": "Payload could not be persisted"},
    }
)
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    processor: WebhookProcessor = Depends(get_processor),
    settings: Settings = Depends(get_app_settings),
) -> WebhookResponse:
    """
    Ingest a gateway webhook payload.

    - Appends the raw body to the debug log
    - Flattens every entry/change/message of the envelope
    - Persists conversations and messages in a single transaction,
      decrypting attachments along the way
    """
    logger.info("Webhook request received")

    try:
        raw_body = await request.body()
    except ClientDisconnect:
        logger.error("Client disconnected before the body was read")
        record_webhook_outcome("unreadable_body")
        log_webhook_data(request=request, result="unreadable_body")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Unable to read request body"
        )

    logger.debug(f"Request body size: {len(raw_body)} bytes")
    append_raw_body(settings.WEBHOOK_LOG_PATH, raw_body)

    try:
        payload = json.loads(raw_body)
    except (ValueError, RecursionError) as e:
        logger.error(f"Invalid JSON: {e}")
        payload = None

    if not isinstance(payload, (dict, list)):
        record_webhook_outcome("invalid_json")
        log_webhook_data(request=request, result="invalid_json")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    try:
        result = await run_in_threadpool(processor.process, db, payload)
    except Exception as e:
        logger.error(f"Failed to persist webhook payload: {e}")
        record_webhook_outcome("error")
        log_webhook_data(request=request, result="error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to persist webhook payload: {e}"
        )

    record_webhook_outcome("ok")
    log_webhook_data(
        request=request,
        result="ok",
        messages=result.messages,
        media=result.media,
        skipped=result.skipped,
    )

    return WebhookResponse(status="ok")


# =============================================================================
# Conversation Routes
# =============================================================================

@router.get("/conversations", response_model=ConversationsListResponse)
async def conversations(db: Session = Depends(get_db)) -> ConversationsListResponse:
    """
    List conversations, most recent activity first, with the latest
    message body and the message count.
    """
    rows = list_conversations(db)
    return ConversationsListResponse(data=[ConversationResponse(**row) for row in rows])


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
    responses={404: {"model": ErrorResponse, "description": "Conversation not found"}},
)
async def conversation_messages(
    conversation_id: int,
    limit: Annotated[int, Query(ge=1, le=500, description="Maximum number of messages to return")] = 100,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    Messages of one conversation ordered by sent_at ASC, id ASC.
    """
    conversation = get_conversation(db, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")

    messages, total = get_messages(db, conversation_id, limit=limit, offset=offset)

    data = []
    for msg in messages:
        item = MessageResponse.model_validate(msg)
        if msg.media_path:
            item.media_url = f"/media/{msg.media_path}"
        data.append(item)

    return MessagesListResponse(
        conversation=ConversationSummary(id=conversation.id, name=conversation.name or conversation.wa_id),
        data=data,
        total=total,
        limit=limit,
        offset=offset,
    )


# =============================================================================
# Media Route
# =============================================================================

@router.get("/media/{file_path:path}")
async def media_file(
    file_path: str,
    settings: Settings = Depends(get_app_settings),
) -> FileResponse:
    """
    Serve a stored media file.

    The requested path is canonicalized and must stay inside
    MEDIA_STORAGE_PATH.
    """
    if not Path(settings.MEDIA_STORAGE_PATH).is_dir():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Media storage is not configured or available"
        )

    target = MediaStore(settings.MEDIA_STORAGE_PATH).resolve(file_path)
    if target is None:
        logger.warning(f"Rejected media path outside storage root: {file_path}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid file path")

    if not target.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    media_type = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
    return FileResponse(
        target,
        media_type=media_type,
        headers={"Cache-Control": "public, max-age=31536000"},
    )


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


# =============================================================================
# Application Factory
# =============================================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application around an explicit Settings object.

    The engine and session factory are created here; the media pipeline
    (which owns an HTTP client) lives for the duration of the lifespan.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        init_db(app.state.engine)
        Path(settings.MEDIA_STORAGE_PATH).mkdir(parents=True, exist_ok=True)
        app.state.media_pipeline = MediaPipeline(settings)
        yield
        # Shutdown
        app.state.media_pipeline.close()
        app.state.engine.dispose()

    app = FastAPI(
        title="Social Insight",
        description="WhatsApp gateway webhook ingestion with encrypted media archiving",
        version="1.0.0",
        lifespan=lifespan,
    )

    engine = build_engine(settings.DATABASE_URL)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)

    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(router)

    return app


app = create_app()
