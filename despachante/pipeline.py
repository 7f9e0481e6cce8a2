"""
Post-acknowledgement processing of one inbound webhook.

Runs as a FastAPI background task after the gateway already received its
200, so it opens its own database session and never lets an exception
escape: failures are logged with the originating message id.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from despachante.classifier import classify
from despachante.config import settings
from despachante.dispatcher import ReplyDispatcher
from despachante.documents import DocumentIngestor
from despachante.envelope import InboundEnvelope
from despachante.metrics import record_webhook_outcome
from despachante.storage import (
    SessionLocal,
    attach_suggestion,
    get_training_examples,
    mark_reply_sent,
    record_inbound,
)
from despachante.suggestions import SuggestionChain, SuggestionContext
from despachante.utils import preview

logger = logging.getLogger(__name__)

RESULT_STORED = "stored"
RESULT_GROUP = "group"
RESULT_UNPARSED = "unparsed"
RESULT_DOCUMENT = "document"
RESULT_ERROR = "error"


async def handle_envelope(
    db: Session,
    envelope: InboundEnvelope,
    dispatcher: ReplyDispatcher,
    chain: SuggestionChain,
    ingestor: Optional[DocumentIngestor],
    examples_limit: int = 3,
) -> str:
    """
    Classify, store, suggest and optionally reply for one envelope.

    Returns:
        The webhook outcome label
    """
    if not envelope.parsed:
        logger.warning("Unparsed webhook payload dropped")
        return RESULT_UNPARSED

    if envelope.is_group:
        logger.info(f"Group message {envelope.message_id or '-'} ignored")
        return RESULT_GROUP

    if envelope.media is not None and ingestor is not None:
        media = envelope.media
        await ingestor.ingest(
            db,
            media_url=media.url,
            file_name=media.file_name,
            mime_type=media.mime_type,
            phone=envelope.sender,
            source_message_id=envelope.message_id,
        )
        return RESULT_DOCUMENT

    classification = classify(envelope.text, is_broadcast=envelope.is_broadcast)
    message_id = record_inbound(
        db,
        phone=envelope.sender,
        text=envelope.text,
        category=classification.category.value,
        is_client=classification.is_client,
        gateway_message_id=envelope.message_id,
    )
    logger.info(f"Message {message_id} from {envelope.sender}: {classification.category.value} | {preview(envelope.text)}")

    # Own messages and non-clients are kept for the record only
    if envelope.from_me or not classification.is_client or not envelope.text.strip():
        return RESULT_STORED

    examples = get_training_examples(db, classification.category.value, limit=examples_limit)
    suggestion = await chain.suggest(SuggestionContext(envelope.text, classification.category, examples))
    attach_suggestion(db, message_id, suggestion.text, suggestion.strategy)

    if dispatcher.enabled and envelope.has_known_sender:
        result = await dispatcher.auto_reply(envelope.sender, suggestion.text)
        if result.sent:
            mark_reply_sent(db, message_id)

    return RESULT_STORED


async def process_inbound(
    envelope: InboundEnvelope,
    dispatcher: ReplyDispatcher,
    chain: SuggestionChain,
    ingestor: Optional[DocumentIngestor] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> str:
    """Background entry point; owns the session and the outcome metric."""
    try:
        with session_factory() as db:
            result = await handle_envelope(
                db, envelope, dispatcher, chain, ingestor, settings.TRAINING_EXAMPLES_IN_PROMPT
            )
    except Exception:
        logger.exception(f"Processing failed for webhook message {envelope.message_id or '-'} from {envelope.sender}")
        result = RESULT_ERROR

    record_webhook_outcome(result)
    return result
