"""
Suggested replies for inbound client messages.

Strategies are tried in order and the first one that returns text wins:
Gemini, OpenRouter, the category keyword template, then a generic reply.
An LLM strategy that fails (network, HTTP status, unparseable answer) is
logged and skipped.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

import httpx

from despachante.classifier import GENERIC_REPLY, ServiceCategory, template_reply, REPLY_TEMPLATES
from despachante.config import Settings
from despachante.errors import UpstreamDegraded
from despachante.llm import GeminiClient, OpenRouterClient, extract_json
from despachante.metrics import record_suggestion
from despachante.pricing import SERVICE_FEES, detran_fee, format_brl

logger = logging.getLogger(__name__)


@dataclass
class SuggestionContext:
    text: str
    category: ServiceCategory
    examples: Sequence = field(default_factory=list)


@dataclass(frozen=True)
class Suggestion:
    text: str
    strategy: str


class Strategy(Protocol):
    name: str

    async def suggest(self, context: SuggestionContext) -> Optional[str]:
        ...


def example_reply(example) -> str:
    """The reply an operator endorsed: the correction if any, else the approved suggestion."""
    return example.corrected_response or example.ai_suggestion or ""


def build_prompt(text: str, category: ServiceCategory, examples: Sequence = (), business_name: str = "WDespachante") -> str:
    """
    Prompt for an LLM reply, with stored training examples as few-shot lines.

    Args:
        text: Customer message
        category: Classifier tag
        examples: Training examples (customer_message, ai_suggestion, corrected_response)
        business_name: Name the attendant speaks for
    """
    example_lines = [
        f'- Cliente: "{example.customer_message}"\n  Resposta: "{example_reply(example)}"'
        for example in examples
        if example_reply(example)
    ]
    examples_block = "\n".join(example_lines) if example_lines else "- (nenhum exemplo ainda)"

    return f"""Você é o atendente do {business_name}, despachante de veículos no Rio de Janeiro.

Seu estilo:
- Simpático mas direto
- Usa emojis moderadamente (✅, 📋, 💰)
- Sempre menciona valores e prazos
- Oferece solução completa

REGRAS:
- Transferência: {format_brl(SERVICE_FEES["transferencia"])} + taxa DETRAN {format_brl(detran_fee())}
- Licenciamento: {format_brl(SERVICE_FEES["licenciamento_simples"])} a {format_brl(SERVICE_FEES["licenciamento_debitos"])} + taxa DETRAN
- Pagamento: PIX antecipado, sem desconto

EXEMPLOS DAS SUAS RESPOSTAS REAIS:
{examples_block}

Mensagem do cliente: "{text}"
Classificação: {category.value}

Responda em JSON:
{{
  "tipo_servico": "{category.value}",
  "confianca": 0.0-1.0,
  "resposta_sugerida": "sua resposta"
}}"""


def _reply_from_answer(raw: str) -> str:
    data = extract_json(raw)
    reply = data.get("resposta_sugerida")
    if not isinstance(reply, str) or not reply.strip():
        raise UpstreamDegraded("LLM answer has no resposta_sugerida")
    return reply


# =============================================================================
# Strategies
# =============================================================================

class GeminiStrategy:
    name = "gemini"

    def __init__(self, client: GeminiClient, business_name: str = "WDespachante"):
        self.client = client
        self.business_name = business_name

    async def suggest(self, context: SuggestionContext) -> Optional[str]:
        prompt = build_prompt(context.text, context.category, context.examples, self.business_name)
        return _reply_from_answer(await self.client.generate(prompt))


class OpenRouterStrategy:
    name = "openrouter"

    def __init__(self, client: OpenRouterClient, business_name: str = "WDespachante"):
        self.client = client
        self.business_name = business_name

    async def suggest(self, context: SuggestionContext) -> Optional[str]:
        prompt = build_prompt(context.text, context.category, context.examples, self.business_name)
        return _reply_from_answer(await self.client.generate(prompt))


class KeywordTemplateStrategy:
    name = "template"

    async def suggest(self, context: SuggestionContext) -> Optional[str]:
        if context.category not in REPLY_TEMPLATES:
            return None
        return template_reply(context.category)


class GenericStrategy:
    name = "generic"

    async def suggest(self, context: SuggestionContext) -> Optional[str]:
        return GENERIC_REPLY


class SuggestionChain:
    """Ordered fallback over reply strategies."""

    def __init__(self, strategies: Sequence[Strategy]):
        self.strategies = list(strategies)

    @property
    def strategy_names(self) -> list[str]:
        return [strategy.name for strategy in self.strategies]

    async def suggest(self, context: SuggestionContext) -> Suggestion:
        for strategy in self.strategies:
            try:
                reply = await strategy.suggest(context)
            except UpstreamDegraded as e:
                logger.warning(f"Suggestion strategy '{strategy.name}' degraded: {e.message}")
                continue

            if reply and reply.strip():
                record_suggestion(strategy.name)
                logger.info(f"Suggestion produced by '{strategy.name}' for category {context.category.value}")
                return Suggestion(text=reply.strip(), strategy=strategy.name)

        record_suggestion(GenericStrategy.name)
        return Suggestion(text=GENERIC_REPLY, strategy=GenericStrategy.name)


def build_suggestion_chain(settings: Settings, http: httpx.AsyncClient) -> SuggestionChain:
    """Chain for the configured providers; the keyword fallbacks are always present."""
    strategies: list[Strategy] = []
    if settings.GEMINI_API_KEY:
        strategies.append(GeminiStrategy(
            GeminiClient(settings.GEMINI_API_KEY, settings.GEMINI_MODEL, http, settings.LLM_TIMEOUT_SECONDS),
            settings.BUSINESS_NAME,
        ))
    if settings.OPENROUTER_API_KEY:
        strategies.append(OpenRouterStrategy(
            OpenRouterClient(settings.OPENROUTER_API_KEY, settings.OPENROUTER_MODEL, http, settings.LLM_TIMEOUT_SECONDS),
            settings.BUSINESS_NAME,
        ))
    strategies.extend([KeywordTemplateStrategy(), GenericStrategy()])

    logger.info(f"Suggestion chain: {[strategy.name for strategy in strategies]}")
    return SuggestionChain(strategies)
