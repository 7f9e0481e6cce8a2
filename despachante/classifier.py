"""
Keyword classifier for inbound WhatsApp messages and attached documents.

Matching is plain lower-cased substring search (not tokenized), evaluated in
a fixed order where the first matching rule wins.
"""

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class ServiceCategory(str, Enum):
    """Closed set of tags assigned to inbound messages."""
    GROUP = "grupo"
    ADVERTISEMENT = "anuncio"
    TRANSFER = "transferencia"
    LICENSING = "licenciamento"
    FINE = "multa"
    CRLV = "crlv"
    LIEN = "gravame"
    INSPECTION = "vistoria"
    GENERAL_INQUIRY = "consulta"

ADVERTISEMENT_KEYWORDS = (
    "promoção",
    "desconto",
    "oferta",
    "liquidação",
    "clique aqui",
    "link na bio",
)

# Checked top to bottom
SERVICE_RULES: tuple[tuple[ServiceCategory, tuple[str, ...]], ...] = (
    (ServiceCategory.TRANSFER, ("transferir", "transferência", "transferencia", "compra", "vendi")),
    (ServiceCategory.LICENSING, ("ipva", "licenciamento", "licença", "detran")),
    (ServiceCategory.FINE, ("multa", "infração", "ponto")),
    (ServiceCategory.CRLV, ("crlv", "documento", "2ª via", "segunda via")),
    (ServiceCategory.LIEN, ("gravame", "financiamento", "baixa")),
    (ServiceCategory.INSPECTION, ("vistoria", "laudo")),
)

REPLY_TEMPLATES: dict[ServiceCategory, str] = {
    ServiceCategory.TRANSFER: (
        "Olá! Para transferência preciso:\n"
        "📄 CRLV do veículo\n"
        "📄 RG/CNH e CPF do comprador e do vendedor\n"
        "📄 Comprovante de residência\n\n"
        "Pode enviar fotos desses documentos?"
    ),
    ServiceCategory.LICENSING: (
        "Olá! Para licenciamento/IPVA preciso:\n"
        "📄 CRLV do veículo\n"
        "🚗 Placa e RENAVAM\n"
        "📋 CPF do proprietário\n\n"
        "Tem esses dados em mãos?"
    ),
    ServiceCategory.FINE: (
        "Olá! Para consultar ou recorrer de multas preciso:\n"
        "🚗 Placa do veículo\n"
        "🔢 RENAVAM\n"
        "📋 Auto de infração (se tiver)\n\n"
        "Pode me passar esses dados?"
    ),
    ServiceCategory.CRLV: (
        "Olá! Para a 2ª via do documento preciso:\n"
        "📄 RG/CNH e CPF do proprietário\n"
        "🚗 Placa e RENAVAM\n"
        "📍 Comprovante de residência\n\n"
        "Pode enviar essas informações?"
    ),
    ServiceCategory.LIEN: (
        "Olá! Para baixa ou inclusão de gravame preciso:\n"
        "📄 CRLV do veículo\n"
        "📄 Carta de quitação do financiamento\n"
        "📋 CPF do proprietário\n\n"
        "Já tem a carta de quitação?"
    ),
    ServiceCategory.INSPECTION: (
        "Olá! Fazemos vistoria e laudo.\n"
        "🚗 Me informe a placa e o tipo de vistoria\n"
        "📍 Temos opção de vistoria móvel\n\n"
        "Qual a melhor data para você?"
    ),
    ServiceCategory.GENERAL_INQUIRY: (
        "Olá! Posso te ajudar com:\n"
        "🚗 Transferência de veículo\n"
        "💰 IPVA e licenciamento\n"
        "🚨 Multas\n"
        "📄 CRLV e documentação\n\n"
        "Qual serviço você precisa?"
    ),
}

GENERIC_REPLY = "Olá! Recebemos sua mensagem. Em breve um atendente vai te responder."


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying a single message."""
    category: ServiceCategory
    is_client: bool


def _matches(text: str, keywords) -> bool:
    return any(keyword in text for keyword in keywords)


def classify(text: str, is_group_chat: bool = False, is_broadcast: bool = False) -> Classification:
    """
    Classify free text into a service category.

    Group chats and broadcasts short-circuit before any text is inspected.
    Unmatched and empty text falls through to the general inquiry tag.

    Args:
        text: Raw message body
        is_group_chat: Message came from a group JID
        is_broadcast: Message came from a channel/newsletter or template

    Returns:
        Classification with the category and whether the sender is a prospect
    """
    if is_group_chat:
        return Classification(ServiceCategory.GROUP, False)
    if is_broadcast:
        return Classification(ServiceCategory.ADVERTISEMENT, False)

    lower = (text or "").lower()

    if _matches(lower, ADVERTISEMENT_KEYWORDS):
        return Classification(ServiceCategory.ADVERTISEMENT, False)

    for category, keywords in SERVICE_RULES:
        if _matches(lower, keywords):
            logger.debug(f"Classified as {category.value}")
            return Classification(category, True)

    return Classification(ServiceCategory.GENERAL_INQUIRY, True)


def template_reply(category: ServiceCategory) -> str:
    """Deterministic reply used when no LLM suggestion is available."""
    return REPLY_TEMPLATES.get(category, GENERIC_REPLY)


# =============================================================================
# Document types
# =============================================================================

def detect_document_type(file_name: str, mime_type: str) -> str:
    """
    Guess the document type from the file name and MIME type.

    Any image MIME type counts as a CRLV.
    """
    name = (file_name or "").lower()
    mime = (mime_type or "").lower()

    if "crlv" in name or "image" in mime:
        return "crlv"
    if "cnh" in name:
        return "cnh"
    if "rg" in name:
        return "rg"
    if "cpf" in name:
        return "cpf"
    if "comp" in name or "residencia" in name:
        return "comprovante"
    if "contrato" in name:
        return "contrato"
    if "pdf" in mime:
        return "pdf"
    return "documentos"
