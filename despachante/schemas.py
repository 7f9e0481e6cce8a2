"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the operator and test endpoints
- Response models for API responses

Required request fields are declared Optional and checked by the route
handlers, so a missing phone/message/text is reported as a 400 with a
readable message instead of a schema 422.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class AnalyzeRequest(BaseModel):
    """Body of POST /analyze."""
    text: Optional[str] = Field(None, description="Message text to classify")


class SendRequest(BaseModel):
    """Body of POST /send-test and POST /api/send."""
    phone: Optional[str] = Field(None, description="Destination phone, any format")
    message: Optional[str] = Field(None, description="Text to send")

    model_config = {
        "json_schema_extra": {
            "examples": [{"phone": "21999990000", "message": "Olá! Seu CRLV está pronto."}]
        }
    }


class QuoteCreateRequest(BaseModel):
    """
    Body of POST /api/orcamento.

    servico is not validated against the catalog; unknown services are
    quoted with the default fees.
    """
    phone: Optional[str] = None
    cliente: Optional[str] = None
    veiculo: Optional[str] = None
    placa: Optional[str] = None
    servico: Optional[str] = Field(None, description="Service key, e.g. transferencia")
    codigo_taxa: Optional[str] = Field(None, description="DETRAN fee code, e.g. 014-0")


class CorrectionRequest(BaseModel):
    """Body of POST /api/corrigir/{id}."""
    corrected_response: Optional[str] = Field(
        None,
        alias="correctedResponse",
        description="Reply the operator wants instead of the suggestion"
    )

    model_config = {"populate_by_name": True}


class DriveTokenRequest(BaseModel):
    code: Optional[str] = Field(None, description="Authorization code from the consent redirect")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Acknowledgement sent to the gateway before processing."""
    received: bool = Field(default=True)
    timestamp: str = Field(..., description="Server time (ISO-8601 UTC)")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class PriceQuoteResponse(BaseModel):
    service_fee: float
    government_fee: float
    total: float
    turnaround_days: str


class AnalyzeResponse(BaseModel):
    category: str = Field(..., description="Classifier tag")
    is_client: bool
    suggested_reply: str = Field(..., description="Keyword template reply")
    quote: Optional[PriceQuoteResponse] = Field(None, description="Catalog price for service categories")


class SendResponse(BaseModel):
    """Outcome of a send attempt; gateway failures are reported here, not raised."""
    status: str = Field(..., description="sent, cooldown, gateway_error or disabled")
    sent: bool
    phone: str = Field(..., description="Normalized destination phone")
    remaining_seconds: int = Field(0, ge=0, description="Cooldown left, when status is cooldown")
    gateway_message_id: Optional[str] = None
    http_status: Optional[int] = None
    error: Optional[str] = None
    details: Optional[Any] = None


class MessageResponse(BaseModel):
    """A stored inbound message."""
    id: int
    phone: str
    text: str
    category: str
    is_client: bool
    suggested_reply: Optional[str] = None
    suggestion_source: Optional[str] = None
    status: str
    reply_sent: bool
    gateway_message_id: Optional[str] = None
    created_at: str

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Number of rows returned")


class TrainingResponse(BaseModel):
    """A training example produced by an approval or a correction."""
    id: int
    message_id: int
    customer_message: str
    ai_suggestion: Optional[str] = None
    corrected_response: Optional[str] = None
    decision: str = Field(..., description="approved or corrected")
    service_category: str
    created_at: str

    model_config = {"from_attributes": True}


class TrainingListResponse(BaseModel):
    data: list[TrainingResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class TrainingDecisionResponse(BaseModel):
    success: bool = True
    training: TrainingResponse


class CategoryStats(BaseModel):
    service_category: str
    total: int = Field(..., ge=0)
    approved: int = Field(..., ge=0)
    corrected: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    """
    Response model for GET /api/estatisticas.

    approval_rate is an integer percent, 0 when nothing was trained yet.
    """
    total: int = Field(..., ge=0)
    approved: int = Field(..., ge=0)
    corrected: int = Field(..., ge=0)
    today: int = Field(..., ge=0, description="Training examples created today (UTC)")
    approval_rate: int = Field(..., ge=0, le=100)
    by_category: list[CategoryStats] = Field(default_factory=list)


class PromptTemplateResponse(BaseModel):
    service: str
    examples_used: int = Field(..., ge=0)
    prompt: str


class QuoteResponse(BaseModel):
    """A stored quote (orçamento)."""
    id: int
    phone: Optional[str] = None
    cliente: Optional[str] = None
    veiculo: Optional[str] = None
    placa: Optional[str] = None
    servico: Optional[str] = None
    honorario: float
    taxa_detran: float
    total: float
    prazo: str
    status: str
    created_at: str

    model_config = {"from_attributes": True}


class QuoteCreatedResponse(QuoteResponse):
    mensagem: str = Field(..., description="Quote rendered as a WhatsApp message")


class QuotesListResponse(BaseModel):
    data: list[QuoteResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class DocumentResponse(BaseModel):
    id: int
    phone: str
    source_message_id: Optional[str] = None
    document_type: str
    mime_type: str
    file_name: str
    byte_size: int
    content_hash: Optional[str] = None
    storage_locator: Optional[str] = None
    storage_backend: Optional[str] = None
    extracted_analysis: Optional[str] = None
    status: str
    created_at: str

    model_config = {"from_attributes": True}


class DocumentsListResponse(BaseModel):
    data: list[DocumentResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class DriveAuthUrlResponse(BaseModel):
    enabled: bool
    auth_url: Optional[str] = None


class DriveTokenResponse(BaseModel):
    success: bool


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ServiceHealthResponse(BaseModel):
    """GET /health: liveness plus the feature flags the service runs with."""
    status: str = "healthy"
    service: str
    version: str
    response_enabled: bool
    llm_enabled: bool
    storage_backend: str
    drive_configured: bool


class StatusResponse(BaseModel):
    status: str = "online"
    timestamp: str
    messages: int = Field(..., ge=0)
    messages_per_category: dict[str, int] = Field(default_factory=dict)
    replies_sent: int = Field(..., ge=0)
    trained: int = Field(..., ge=0)
    quotes: int = Field(..., ge=0)
    quoted_total: float
    documents: int = Field(..., ge=0)
