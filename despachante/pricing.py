"""
Price catalog and quote (orçamento) builder.

Lookups never fail: unknown services and DETRAN codes silently fall back to
the default values so a quote can always be produced.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from despachante.config import settings

logger = logging.getLogger(__name__)


DEFAULT_SERVICE_FEE = 450.00
DEFAULT_DETRAN_FEE = 209.78
DEFAULT_TURNAROUND_DAYS = "5-7"

SERVICE_FEES: dict[str, float] = {
    "transferencia": 450.00,
    "transferencia_jurisdicao": 450.00,
    "licenciamento_simples": 150.00,
    "licenciamento_debitos": 250.00,
    "primeira_licenca": 450.00,
    "segunda_via_crv": 450.00,
    "segunda_via_atpv": 250.00,
    "comunicacao_venda": 350.00,
    "cancelamento_comunicacao_venda": 350.00,
    "baixa_veiculo": 450.00,
    "baixa_gravame": 450.00,
    "inclusao_gravame": 450.00,
    "mudanca_municipio": 450.00,
    "mudanca_endereco": 450.00,
    "mudanca_nome": 450.00,
    "alteracao_caracteristicas": 450.00,
    "mudanca_cor": 450.00,
    "retirada_gnv": 450.00,
    "regularizacao_motor": 650.00,
    "remarcacao_chassi": 1200.00,
    "certidao_inteiro_teor": 250.00,
    "laudo_vistoria": 450.00,
    "vistoria_movel": 450.00,
    "vistoria_transito": 450.00,
    "troca_placa_mercosul_par": 450.00,
    "troca_placa_unitaria": 450.00,
    "veiculo_colecao": 1500.00,
    "pcd_ipi": 600.00,
    "pcd_icms": 600.00,
    "pcd_ipva": 600.00,
}

# DETRAN fee code -> amount
DETRAN_FEES: dict[str, float] = {
    "001-9": 209.78,
    "002-7": 209.78,
    "003-5": 209.78,
    "004-3": 209.78,
    "007-8": 93.26,
    "008-6": 209.78,
    "009-4": 209.78,
    "014-0": 209.78,
    "016-7": 251.74,
    "018-3": 233.09,
    "019-1": 419.55,
    "020-5": 2051.08,
    "023-0": 209.78,
    "037-0": 250.95,
    "038-8": 125.45,
    "041-8": 76.84,
}

# Business days
TURNAROUND_DAYS: dict[str, str] = {
    "transferencia": "5-7",
    "licenciamento_simples": "3-5",
    "licenciamento_debitos": "3-5",
    "segunda_via_crv": "5-7",
    "comunicacao_venda": "1-2",
    "baixa_gravame": "5-7",
    "troca_placa_mercosul_par": "5-7",
    "mudanca_endereco": "5-7",
    "transferencia_jurisdicao": "7-15",
    "alteracao_caracteristicas": "5-7",
}


class QuoteStatus(str, Enum):
    """Operator-driven quote lifecycle; transitions are not enforced here."""
    GENERATED = "gerado"
    PENDING_PAYMENT = "aguardando_pagamento"
    FILED = "protocolado"
    COMPLETED = "concluido"


@dataclass(frozen=True)
class PriceQuote:
    service_fee: float
    government_fee: float
    turnaround_days: str


@dataclass
class QuoteRequest:
    """Caller-supplied quote fields; none of them are validated."""
    phone: Optional[str] = None
    client_name: Optional[str] = None
    vehicle_description: Optional[str] = None
    plate: Optional[str] = None
    service_category: Optional[str] = None


@dataclass
class Quote:
    phone: Optional[str]
    client_name: Optional[str]
    vehicle_description: Optional[str]
    plate: Optional[str]
    service_category: Optional[str]
    service_fee: float
    government_fee: float
    total: float
    turnaround_days: str
    status: QuoteStatus = QuoteStatus.GENERATED
    id: Optional[int] = field(default=None)


def detran_fee(code: Optional[str] = None) -> float:
    """DETRAN fee for a code, falling back to the configured default code."""
    if code and code in DETRAN_FEES:
        return DETRAN_FEES[code]
    return DETRAN_FEES.get(settings.DETRAN_DEFAULT_FEE_CODE, DEFAULT_DETRAN_FEE)


def price_quote(service_category: Optional[str], detran_fee_code: Optional[str] = None) -> PriceQuote:
    """
    Look up fees and turnaround for a service.

    Args:
        service_category: Key into the service fee table (unknown keys allowed)
        detran_fee_code: DETRAN fee code; defaults to DETRAN_DEFAULT_FEE_CODE

    Returns:
        PriceQuote with service fee, government fee and turnaround days
    """
    key = service_category or ""
    if key not in SERVICE_FEES:
        logger.debug(f"Service '{key}' not in catalog, using default fee")

    return PriceQuote(
        service_fee=SERVICE_FEES.get(key, DEFAULT_SERVICE_FEE),
        government_fee=detran_fee(detran_fee_code),
        turnaround_days=TURNAROUND_DAYS.get(key, DEFAULT_TURNAROUND_DAYS),
    )


def build_quote(request: QuoteRequest, detran_fee_code: Optional[str] = None) -> Quote:
    """
    Compute a quote for a request.

    The total is a plain float sum of the two fees.
    """
    prices = price_quote(request.service_category, detran_fee_code)
    total = prices.service_fee + prices.government_fee

    return Quote(
        phone=request.phone,
        client_name=request.client_name,
        vehicle_description=request.vehicle_description,
        plate=request.plate,
        service_category=request.service_category,
        service_fee=prices.service_fee,
        government_fee=prices.government_fee,
        total=total,
        turnaround_days=prices.turnaround_days,
    )


def format_brl(value: float) -> str:
    """Format an amount as Brazilian currency, e.g. R$ 1.234,56."""
    return f"R$ {value:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")


def render_quote_message(quote: Quote) -> str:
    """Render the WhatsApp message for a quote."""
    service = (quote.service_category or "serviço").replace("_", " ")
    lines = [
        f"*ORÇAMENTO {settings.BUSINESS_NAME.upper()}*",
        "",
        f"*Cliente:* {quote.client_name or '[nome]'}",
        f"*Veículo:* {quote.vehicle_description or '[veículo]'} {quote.plate or '[placa]'}",
        f"*Serviço:* {service}",
        "",
        "*VALORES:*",
        f"├─ Honorários: {format_brl(quote.service_fee)}",
        f"├─ Taxa DETRAN: {format_brl(quote.government_fee)}",
        f"└─ *TOTAL: {format_brl(quote.total)}*",
        "",
        f"*Prazo:* {quote.turnaround_days} dias úteis",
        "",
        "*Pagamento:* PIX antecipado",
    ]
    if settings.PIX_KEY:
        lines.append(f"*PIX:* {settings.PIX_KEY}")
    if settings.INSTALLMENT_URL:
        lines.append(f"*Parcelamento:* {settings.INSTALLMENT_URL}")
    lines.extend(["", "Posso dar andamento?"])
    return "\n".join(lines)


def catalog() -> dict:
    """Full price tables, as served by GET /api/precos."""
    return {
        "honorarios": SERVICE_FEES,
        "taxas_detran": DETRAN_FEES,
        "prazos": TURNAROUND_DAYS,
        "taxa_padrao": settings.DETRAN_DEFAULT_FEE_CODE,
    }
