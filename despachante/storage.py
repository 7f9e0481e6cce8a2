import logging
from datetime import datetime, timezone
from typing import Generator, Optional

from sqlalchemy import case, create_engine, func, inspect, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from despachante.config import settings
from despachante.errors import AlreadyTrained, EmptyCorrection, NotFound

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
# and with background tasks that open their own session
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    pool_pre_ping=True,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

MESSAGE_PENDING = "pendente"
MESSAGE_PROCESSED = "processado"
MESSAGE_IGNORED = "ignorado"

DECISION_APPROVED = "approved"
DECISION_CORRECTED = "corrected"


def utcnow_iso() -> str:
    """Server time as ISO-8601 UTC string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing {settings.storage_backend} database")
    try:
        # Import models to register them with Base.metadata
        from despachante import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and the mensagens table exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("mensagens"):
            logger.error("Database schema not applied: 'mensagens' table not found")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def record_inbound(
    db: Session,
    phone: str,
    text: str,
    category: str,
    is_client: bool,
    gateway_message_id: Optional[str] = None,
) -> int:
    """
    Store an inbound message.

    Args:
        db: Database session
        phone: Sender phone (digits)
        text: Message body, empty for non-text payloads
        category: Classifier tag
        is_client: Whether the sender looks like a prospect
        gateway_message_id: Message id assigned by the gateway, if any

    Returns:
        The new message id
    """
    from despachante.models import InboundMessage

    message = InboundMessage(
        phone=phone,
        text=text or "",
        category=category,
        is_client=is_client,
        status=MESSAGE_PENDING,
        gateway_message_id=gateway_message_id or None,
        created_at=utcnow_iso(),
    )
    db.add(message)
    db.commit()
    logger.info(f"Message stored: id={message.id}, phone={phone}, category={category}")
    return message.id


def get_message(db: Session, message_id: int):
    """Return a message by id or raise NotFound."""
    from despachante.models import InboundMessage

    message = db.get(InboundMessage, message_id)
    if message is None:
        raise NotFound(f"message {message_id} not found")
    return message


def attach_suggestion(db: Session, message_id: int, suggestion: str, source: Optional[str] = None) -> None:
    """Set the suggested reply for a message. Last write wins."""
    from despachante.models import InboundMessage

    updated = (
        db.query(InboundMessage)
        .filter(InboundMessage.id == message_id)
        .update({"suggested_reply": suggestion, "suggestion_source": source})
    )
    db.commit()
    logger.debug(f"Suggestion attached to message {message_id} from {source} (rows={updated})")


def mark_reply_sent(db: Session, message_id: int) -> None:
    from despachante.models import InboundMessage

    db.query(InboundMessage).filter(InboundMessage.id == message_id).update({"reply_sent": True})
    db.commit()


def ignore_message(db: Session, message_id: int):
    """Soft-delete a message by flipping its status to ignored."""
    message = get_message(db, message_id)
    message.status = MESSAGE_IGNORED
    db.commit()
    logger.info(f"Message {message_id} ignored")
    return message


def list_messages(db: Session, limit: int = 50) -> list:
    from despachante.models import InboundMessage

    return (
        db.query(InboundMessage)
        .order_by(InboundMessage.created_at.desc(), InboundMessage.id.desc())
        .limit(limit)
        .all()
    )


def list_pending(db: Session, service_category: Optional[str] = None, limit: int = 50) -> list:
    """
    Client messages with no training example, most recent first.

    Args:
        db: Database session
        service_category: Optional category filter
        limit: Maximum rows to return
    """
    from despachante.models import InboundMessage, TrainingExample

    query = (
        db.query(InboundMessage)
        .outerjoin(TrainingExample, TrainingExample.message_id == InboundMessage.id)
        .filter(TrainingExample.id.is_(None))
        .filter(InboundMessage.is_client.is_(True))
        .filter(InboundMessage.status != MESSAGE_IGNORED)
    )
    if service_category:
        query = query.filter(InboundMessage.category == service_category)

    return (
        query.order_by(InboundMessage.created_at.desc(), InboundMessage.id.desc())
        .limit(limit)
        .all()
    )


# =============================================================================
# Training Repository Functions
# =============================================================================

def _insert_training_example(db: Session, message, example):
    """
    Insert a training example and mark the message processed.

    The unique index on message_id is the single source of AlreadyTrained,
    which also covers two concurrent submissions for the same message.
    """
    message_id = message.id
    try:
        db.add(example)
        message.status = MESSAGE_PROCESSED
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate training attempt for message {message_id}")
        raise AlreadyTrained(message_id)

    db.refresh(example)
    logger.info(f"Training example {example.id} stored: message={message_id}, decision={example.decision}")
    return example


def approve_message(db: Session, message_id: int):
    """
    Approve the stored suggestion for a message as-is.

    Raises:
        NotFound: message does not exist
        AlreadyTrained: message already has a training example
    """
    from despachante.models import TrainingExample

    message = get_message(db, message_id)
    example = TrainingExample(
        message_id=message.id,
        customer_message=message.text,
        ai_suggestion=message.suggested_reply,
        corrected_response=None,
        decision=DECISION_APPROVED,
        service_category=message.category,
        created_at=utcnow_iso(),
    )
    return _insert_training_example(db, message, example)


def correct_message(db: Session, message_id: int, corrected_text: Optional[str]):
    """
    Override the stored suggestion for a message with the operator's text.

    Raises:
        EmptyCorrection: corrected_text is blank
        NotFound: message does not exist
        AlreadyTrained: message already has a training example
    """
    from despachante.models import TrainingExample

    if corrected_text is None or not corrected_text.strip():
        raise EmptyCorrection()

    message = get_message(db, message_id)
    example = TrainingExample(
        message_id=message.id,
        customer_message=message.text,
        ai_suggestion=message.suggested_reply,
        corrected_response=corrected_text,
        decision=DECISION_CORRECTED,
        service_category=message.category,
        created_at=utcnow_iso(),
    )
    return _insert_training_example(db, message, example)


def list_trained(db: Session, limit: int = 50) -> list:
    from despachante.models import TrainingExample

    return (
        db.query(TrainingExample)
        .order_by(TrainingExample.created_at.desc(), TrainingExample.id.desc())
        .limit(limit)
        .all()
    )


def get_training_examples(db: Session, service_category: Optional[str] = None, limit: int = 3) -> list:
    """
    Most recent training examples for few-shot prompts.

    Corrected examples come before approved ones.
    """
    from despachante.models import TrainingExample

    query = db.query(TrainingExample)
    if service_category:
        query = query.filter(TrainingExample.service_category == service_category)

    corrected_first = case((TrainingExample.decision == DECISION_CORRECTED, 0), else_=1)
    return (
        query.order_by(corrected_first, TrainingExample.created_at.desc(), TrainingExample.id.desc())
        .limit(limit)
        .all()
    )


def get_training_stats(db: Session) -> dict:
    """
    Compute training statistics for GET /api/estatisticas.

    Returns:
        Dictionary with total, approved, corrected, today, approval_rate
        (integer percent) and a per-category breakdown
    """
    from despachante.models import TrainingExample

    approved_case = case((TrainingExample.decision == DECISION_APPROVED, 1), else_=0)
    corrected_case = case((TrainingExample.decision == DECISION_CORRECTED, 1), else_=0)

    total = db.query(func.count(TrainingExample.id)).scalar() or 0
    approved = db.query(func.sum(approved_case)).scalar() or 0
    corrected = db.query(func.sum(corrected_case)).scalar() or 0

    today_start = datetime.now(timezone.utc).strftime("%Y-%m-%dT00:00:00Z")
    today = (
        db.query(func.count(TrainingExample.id))
        .filter(TrainingExample.created_at >= today_start)
        .scalar()
        or 0
    )

    rows = (
        db.query(
            TrainingExample.service_category,
            func.count(TrainingExample.id).label("total"),
            func.sum(approved_case).label("approved"),
            func.sum(corrected_case).label("corrected"),
        )
        .group_by(TrainingExample.service_category)
        .order_by(func.count(TrainingExample.id).desc(), TrainingExample.service_category.asc())
        .all()
    )
    by_category = [
        {
            "service_category": row.service_category,
            "total": row.total,
            "approved": int(row.approved or 0),
            "corrected": int(row.corrected or 0),
        }
        for row in rows
    ]

    approval_rate = int(approved * 100 / total + 0.5) if total else 0
    logger.debug(f"Training stats: total={total}, approved={approved}, corrected={corrected}")

    return {
        "total": total,
        "approved": int(approved),
        "corrected": int(corrected),
        "today": today,
        "approval_rate": approval_rate,
        "by_category": by_category,
    }


# =============================================================================
# Quote and Document Repository Functions
# =============================================================================

def create_quote(db: Session, quote):
    """Insert a quote row and set quote.id. No duplicate check."""
    from despachante.models import QuoteRecord

    record = QuoteRecord(
        phone=quote.phone,
        cliente=quote.client_name,
        veiculo=quote.vehicle_description,
        placa=quote.plate,
        servico=quote.service_category,
        honorario=quote.service_fee,
        taxa_detran=quote.government_fee,
        total=quote.total,
        prazo=quote.turnaround_days,
        status=quote.status.value,
        created_at=utcnow_iso(),
    )
    db.add(record)
    db.commit()
    quote.id = record.id
    logger.info(f"Quote {record.id} stored: service={quote.service_category}, total={quote.total}")
    return record


def list_quotes(db: Session, limit: int = 50) -> list:
    from despachante.models import QuoteRecord

    return db.query(QuoteRecord).order_by(QuoteRecord.id.desc()).limit(limit).all()


def create_document(db: Session, **fields):
    from despachante.models import Document

    document = Document(created_at=utcnow_iso(), **fields)
    db.add(document)
    db.commit()
    db.refresh(document)
    logger.info(f"Document {document.id} stored: phone={document.phone}, type={document.document_type}")
    return document


def attach_document_analysis(db: Session, document_id: int, analysis: str) -> bool:
    """Fill the extracted analysis of a document once. Returns False if already set."""
    from despachante.models import Document

    updated = (
        db.query(Document)
        .filter(Document.id == document_id, Document.extracted_analysis.is_(None))
        .update({"extracted_analysis": analysis})
    )
    db.commit()
    return updated == 1


def list_documents(db: Session, limit: int = 50) -> list:
    from despachante.models import Document

    return db.query(Document).order_by(Document.id.desc()).limit(limit).all()


def get_operational_counters(db: Session) -> dict:
    """Counters for the /status and /debug endpoints."""
    from despachante.models import Document, InboundMessage, QuoteRecord, TrainingExample

    per_category = (
        db.query(InboundMessage.category, func.count(InboundMessage.id))
        .group_by(InboundMessage.category)
        .all()
    )
    return {
        "messages": db.query(func.count(InboundMessage.id)).scalar() or 0,
        "messages_per_category": {category: count for category, count in per_category},
        "replies_sent": db.query(func.count(InboundMessage.id)).filter(InboundMessage.reply_sent.is_(True)).scalar() or 0,
        "trained": db.query(func.count(TrainingExample.id)).scalar() or 0,
        "quotes": db.query(func.count(QuoteRecord.id)).scalar() or 0,
        "quoted_total": float(db.query(func.sum(QuoteRecord.total)).scalar() or 0),
        "documents": db.query(func.count(Document.id)).scalar() or 0,
    }
