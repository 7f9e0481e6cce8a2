import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request, Response, status
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from despachante.classifier import ServiceCategory, classify, template_reply
from despachante.config import settings
from despachante.dispatcher import ReplyDispatcher, ZApiClient
from despachante.documents import DocumentIngestor, build_document_ingestor
from despachante.drive import DriveUploader, build_drive_uploader
from despachante.envelope import parse_envelope, unparsed_envelope
from despachante.errors import AlreadyTrained, NotFound, UpstreamDegraded, ValidationError
from despachante.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from despachante.metrics import get_metrics, get_metrics_content_type, record_training_decision
from despachante.pipeline import process_inbound
from despachante.pricing import QuoteRequest, build_quote, catalog, price_quote, render_quote_message
from despachante.schemas import (
    AnalyzeRequest,
    AnalyzeResponse,
    CorrectionRequest,
    DocumentResponse,
    DocumentsListResponse,
    DriveAuthUrlResponse,
    DriveTokenRequest,
    DriveTokenResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    PriceQuoteResponse,
    PromptTemplateResponse,
    QuoteCreateRequest,
    QuoteCreatedResponse,
    QuoteResponse,
    QuotesListResponse,
    SendRequest,
    SendResponse,
    ServiceHealthResponse,
    StatsResponse,
    StatusResponse,
    TrainingDecisionResponse,
    TrainingListResponse,
    TrainingResponse,
    WebhookResponse,
)
from despachante.storage import (
    DECISION_APPROVED,
    DECISION_CORRECTED,
    approve_message,
    check_db_health,
    correct_message,
    create_quote,
    get_db,
    get_operational_counters,
    get_training_examples,
    get_training_stats,
    ignore_message,
    init_db,
    list_documents,
    list_messages,
    list_pending,
    list_quotes,
    list_trained,
    utcnow_iso,
)
from despachante.suggestions import SuggestionChain, build_prompt, build_suggestion_chain

SERVICE_NAME = "despachante-webhook"
VERSION = "3.0.0"

# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the shared HTTP client and collaborators
    - Shutdown: close the HTTP client
    """
    init_db()

    http = httpx.AsyncClient()
    app.state.http = http
    app.state.dispatcher = ReplyDispatcher(
        gateway=ZApiClient(settings.zapi_base_url, settings.ZAPI_CLIENT_TOKEN, http, settings.GATEWAY_TIMEOUT_SECONDS),
        cooldown_seconds=settings.RESPONSE_COOLDOWN_SECONDS,
        enabled=settings.RESPONSE_ENABLED,
    )
    app.state.suggestions = build_suggestion_chain(settings, http)
    app.state.drive = build_drive_uploader(settings, http)
    app.state.documents = build_document_ingestor(settings, http, app.state.drive)

    logger.info(
        f"{SERVICE_NAME} {VERSION} started: storage={settings.storage_backend}, "
        f"auto_reply={settings.RESPONSE_ENABLED}, gateway={'set' if settings.zapi_base_url else 'unset'}"
    )
    yield
    await http.aclose()


app = FastAPI(
    title="Despachante Webhook API",
    description="WhatsApp gateway receiver with classification, quotes and reply training",
    version=VERSION,
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies and error handlers
# =============================================================================

def get_dispatcher(request: Request) -> ReplyDispatcher:
    return request.app.state.dispatcher


def get_suggestion_chain(request: Request) -> SuggestionChain:
    return request.app.state.suggestions


def get_document_ingestor(request: Request) -> DocumentIngestor:
    return request.app.state.documents


def get_drive(request: Request) -> DriveUploader:
    return request.app.state.drive


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": exc.message})


@app.exception_handler(AlreadyTrained)
async def already_trained_handler(request: Request, exc: AlreadyTrained) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": exc.message})


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_body_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Body errors become 400; path and query errors stay 422
    if exc.errors() and all(error["loc"][:1] == ("body",) for error in exc.errors()):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": "request body must be a JSON object"})
    return await request_validation_exception_handler(request, exc)


def require_text(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{field} is required")
    return value


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Missing field or already trained"},
    404: {"model": ErrorResponse, "description": "Message not found"},
}


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health", response_model=ServiceHealthResponse)
async def health(drive: DriveUploader = Depends(get_drive)) -> ServiceHealthResponse:
    """Liveness plus the feature flags the process was started with."""
    return ServiceHealthResponse(
        service=SERVICE_NAME,
        version=VERSION,
        response_enabled=settings.RESPONSE_ENABLED,
        llm_enabled=settings.llm_enabled,
        storage_backend=settings.storage_backend,
        drive_configured=drive.enabled,
    )


@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the schema
    is applied, otherwise 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


@app.get("/status", response_model=StatusResponse)
async def service_status(db: Session = Depends(get_db)) -> StatusResponse:
    counters = get_operational_counters(db)
    return StatusResponse(timestamp=utcnow_iso(), **counters)


@app.get("/debug")
async def debug(
    db: Session = Depends(get_db),
    dispatcher: ReplyDispatcher = Depends(get_dispatcher),
    chain: SuggestionChain = Depends(get_suggestion_chain),
) -> dict:
    """Operational snapshot for troubleshooting; never includes credentials."""
    return {
        "timestamp": utcnow_iso(),
        "counters": get_operational_counters(db),
        "config": {
            "storage_backend": settings.storage_backend,
            "gateway_configured": dispatcher.gateway.configured,
            "response_enabled": dispatcher.enabled,
            "cooldown_seconds": dispatcher.cooldown_seconds,
            "suggestion_strategies": chain.strategy_names,
            "detran_default_fee_code": settings.DETRAN_DEFAULT_FEE_CODE,
            "uploads_dir": settings.UPLOADS_DIR,
        },
    }


# =============================================================================
# Webhook Route
# =============================================================================

@app.post("/webhook", response_model=WebhookResponse)
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    dispatcher: ReplyDispatcher = Depends(get_dispatcher),
    chain: SuggestionChain = Depends(get_suggestion_chain),
    ingestor: DocumentIngestor = Depends(get_document_ingestor),
) -> WebhookResponse:
    """
    Receive a gateway callback.

    Always answers 200 with {received, timestamp}. Classification, storage,
    suggestion and reply run afterwards as a background task, so a 200 is
    not a durability acknowledgement.
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    try:
        body = json.loads(raw_body) if raw_body else None
    except ValueError as e:
        logger.warning(f"Webhook body is not valid JSON: {e}")
        body = None

    try:
        envelope = parse_envelope(body)
    except Exception:
        logger.exception("Webhook payload could not be parsed")
        envelope = unparsed_envelope(body)

    log_webhook_data(
        request=request,
        message_id=envelope.message_id,
        shape=envelope.shape,
        result="accepted" if envelope.parsed else "unparsed",
    )

    background_tasks.add_task(process_inbound, envelope, dispatcher, chain, ingestor)
    return WebhookResponse(timestamp=utcnow_iso())


# =============================================================================
# Analysis and sending
# =============================================================================

@app.post("/analyze", response_model=AnalyzeResponse, responses=ERROR_RESPONSES)
async def analyze(payload: Optional[AnalyzeRequest] = None) -> AnalyzeResponse:
    """Classify a text and return the keyword template reply, without storing anything."""
    text = require_text(payload.text if payload else None, "text")
    classification = classify(text)

    quote = None
    if classification.is_client and classification.category != ServiceCategory.GENERAL_INQUIRY:
        prices = price_quote(classification.category.value)
        quote = PriceQuoteResponse(
            service_fee=prices.service_fee,
            government_fee=prices.government_fee,
            total=prices.service_fee + prices.government_fee,
            turnaround_days=prices.turnaround_days,
        )

    return AnalyzeResponse(
        category=classification.category.value,
        is_client=classification.is_client,
        suggested_reply=template_reply(classification.category),
        quote=quote,
    )


async def _manual_send(payload: Optional[SendRequest], dispatcher: ReplyDispatcher) -> SendResponse:
    payload = payload or SendRequest()
    phone = require_text(payload.phone, "phone")
    message = require_text(payload.message, "message")
    result = await dispatcher.send(phone, message)
    return SendResponse(**result.as_dict())


@app.post("/send-test", response_model=SendResponse, responses=ERROR_RESPONSES)
async def send_test(payload: Optional[SendRequest] = None, dispatcher: ReplyDispatcher = Depends(get_dispatcher)) -> SendResponse:
    """Send a message through the gateway regardless of RESPONSE_ENABLED."""
    return await _manual_send(payload, dispatcher)


@app.post("/api/send", response_model=SendResponse, responses=ERROR_RESPONSES)
async def api_send(payload: Optional[SendRequest] = None, dispatcher: ReplyDispatcher = Depends(get_dispatcher)) -> SendResponse:
    return await _manual_send(payload, dispatcher)


# =============================================================================
# Quotes and prices
# =============================================================================

@app.get("/api/precos")
async def prices() -> dict:
    return catalog()


@app.post("/api/orcamento", response_model=QuoteCreatedResponse)
async def create_quote_route(payload: QuoteCreateRequest, db: Session = Depends(get_db)) -> QuoteCreatedResponse:
    """Compute and store a quote. Every call inserts a new row."""
    quote = build_quote(
        QuoteRequest(
            phone=payload.phone,
            client_name=payload.cliente,
            vehicle_description=payload.veiculo,
            plate=payload.placa,
            service_category=payload.servico,
        ),
        detran_fee_code=payload.codigo_taxa,
    )
    record = create_quote(db, quote)
    return QuoteCreatedResponse(
        **QuoteResponse.model_validate(record).model_dump(),
        mensagem=render_quote_message(quote),
    )


@app.get("/api/orcamentos", response_model=QuotesListResponse)
async def quotes(
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    db: Session = Depends(get_db),
) -> QuotesListResponse:
    rows = list_quotes(db, limit=limit)
    return QuotesListResponse(data=[QuoteResponse.model_validate(row) for row in rows], total=len(rows))


# =============================================================================
# Messages and training
# =============================================================================

@app.get("/api/mensagens", response_model=MessagesListResponse)
async def messages(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    rows = list_messages(db, limit=limit)
    return MessagesListResponse(data=[MessageResponse.model_validate(row) for row in rows], total=len(rows))


@app.get("/api/mensagens-pendentes", response_model=MessagesListResponse)
async def pending_messages(
    service: Annotated[Optional[str], Query(description="Filter by service category")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """Client messages still waiting for an operator decision, newest first."""
    rows = list_pending(db, service_category=service, limit=limit)
    logger.info(f"GET /api/mensagens-pendentes: service={service}, returned {len(rows)}")
    return MessagesListResponse(data=[MessageResponse.model_validate(row) for row in rows], total=len(rows))


@app.get("/api/mensagens-treinadas", response_model=TrainingListResponse)
async def trained_messages(
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    db: Session = Depends(get_db),
) -> TrainingListResponse:
    rows = list_trained(db, limit=limit)
    return TrainingListResponse(data=[TrainingResponse.model_validate(row) for row in rows], total=len(rows))


@app.post("/api/aprovar/{message_id}", response_model=TrainingDecisionResponse, responses=ERROR_RESPONSES)
async def approve(message_id: int, db: Session = Depends(get_db)) -> TrainingDecisionResponse:
    """Accept the stored suggestion for a message as a training example."""
    example = approve_message(db, message_id)
    record_training_decision(DECISION_APPROVED)
    return TrainingDecisionResponse(training=TrainingResponse.model_validate(example))


@app.post("/api/corrigir/{message_id}", response_model=TrainingDecisionResponse, responses=ERROR_RESPONSES)
async def correct(
    message_id: int,
    payload: Optional[CorrectionRequest] = None,
    db: Session = Depends(get_db),
) -> TrainingDecisionResponse:
    """Replace the stored suggestion with the operator's reply."""
    example = correct_message(db, message_id, payload.corrected_response if payload else None)
    record_training_decision(DECISION_CORRECTED)
    return TrainingDecisionResponse(training=TrainingResponse.model_validate(example))


@app.delete("/api/mensagem/{message_id}", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def delete_message(message_id: int, db: Session = Depends(get_db)) -> MessageResponse:
    """Soft delete: the message is kept with status "ignorado"."""
    return MessageResponse.model_validate(ignore_message(db, message_id))


@app.get("/api/estatisticas", response_model=StatsResponse)
async def statistics(db: Session = Depends(get_db)) -> StatsResponse:
    """
    Training statistics.

    Response:
        - total / approved / corrected: training example counts
        - today: examples created since 00:00 UTC
        - approval_rate: approved / total as an integer percent
        - by_category: the same counts per service category
    """
    stats = get_training_stats(db)
    logger.info(f"GET /api/estatisticas: total={stats['total']}, approval_rate={stats['approval_rate']}")
    return StatsResponse(**stats)


@app.get("/api/prompt-template", response_model=PromptTemplateResponse)
async def prompt_template(
    service: Annotated[str, Query(description="Service category")] = ServiceCategory.GENERAL_INQUIRY.value,
    db: Session = Depends(get_db),
) -> PromptTemplateResponse:
    """The few-shot prompt a new message of this category would be sent with."""
    try:
        category = ServiceCategory(service)
    except ValueError:
        raise ValidationError(f"unknown service category: {service}")

    examples = get_training_examples(db, category.value, limit=settings.TRAINING_EXAMPLES_IN_PROMPT)
    prompt = build_prompt("<mensagem do cliente>", category, examples, settings.BUSINESS_NAME)
    return PromptTemplateResponse(service=category.value, examples_used=len(examples), prompt=prompt)


# =============================================================================
# Documents
# =============================================================================

@app.get("/api/documentos", response_model=DocumentsListResponse)
async def documents(
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    db: Session = Depends(get_db),
) -> DocumentsListResponse:
    rows = list_documents(db, limit=limit)
    return DocumentsListResponse(data=[DocumentResponse.model_validate(row) for row in rows], total=len(rows))


@app.get("/api/drive/auth-url", response_model=DriveAuthUrlResponse)
async def drive_auth_url(drive: DriveUploader = Depends(get_drive)) -> DriveAuthUrlResponse:
    if not drive.enabled:
        return DriveAuthUrlResponse(enabled=False)
    return DriveAuthUrlResponse(enabled=True, auth_url=drive.get_auth_url())


@app.post("/api/drive/token", response_model=DriveTokenResponse, responses=ERROR_RESPONSES)
async def drive_token(payload: DriveTokenRequest, drive: DriveUploader = Depends(get_drive)) -> DriveTokenResponse:
    """Exchange the consent code for a stored Drive token."""
    code = require_text(payload.code, "code")
    if not drive.enabled:
        raise ValidationError("Google Drive is not configured")
    try:
        await drive.exchange_code(code)
    except UpstreamDegraded as e:
        logger.error(f"Drive code exchange failed: {e.message}")
        return DriveTokenResponse(success=False)
    return DriveTokenResponse(success=True)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including HTTP
    requests and latency, webhook outcomes, replies, training decisions
    and suggestion strategies.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
