"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
Timestamps are stored as ISO-8601 UTC strings.
"""

from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, String, Text

from despachante.storage import Base


class InboundMessage(Base):
    """
    Inbound WhatsApp message.

    Table: mensagens
    `category` is set once at ingestion; `suggested_reply` is filled later by
    the suggestion pipeline.
    """
    __tablename__ = "mensagens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String, nullable=False, index=True)
    text = Column(Text, nullable=False, default="")
    category = Column(String, nullable=False, index=True)
    is_client = Column(Boolean, nullable=False, default=True)
    suggested_reply = Column(Text, nullable=True)
    suggestion_source = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pendente")  # pendente, processado, ignorado
    reply_sent = Column(Boolean, nullable=False, default=False)
    gateway_message_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False, index=True)


class TrainingExample(Base):
    """
    Operator decision on a message suggestion.

    Table: mensagens_treinadas
    The unique index on message_id allows at most one example per message.
    """
    __tablename__ = "mensagens_treinadas"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey("mensagens.id"), nullable=False, unique=True, index=True)
    customer_message = Column(Text, nullable=False, default="")
    ai_suggestion = Column(Text, nullable=True)
    corrected_response = Column(Text, nullable=True)
    decision = Column(String, nullable=False)  # approved, corrected
    service_category = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False, index=True)


class QuoteRecord(Base):
    """
    Generated price quote.

    Table: orcamentos
    A new row per request, no deduplication.
    """
    __tablename__ = "orcamentos"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String, nullable=True, index=True)
    cliente = Column(String, nullable=True)
    veiculo = Column(String, nullable=True)
    placa = Column(String, nullable=True)
    servico = Column(String, nullable=True)
    honorario = Column(Float, nullable=False)
    taxa_detran = Column(Float, nullable=False)
    total = Column(Float, nullable=False)
    prazo = Column(String, nullable=False)
    status = Column(String, nullable=False, default="gerado")
    created_at = Column(String, nullable=False)


class Document(Base):
    """
    Media received from a customer.

    Table: documentos
    Only `extracted_analysis` is updated after insertion, at most once.
    """
    __tablename__ = "documentos"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String, nullable=False, index=True)
    source_message_id = Column(String, nullable=True)
    document_type = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    file_name = Column(String, nullable=False)
    byte_size = Column(Integer, nullable=False, default=0)
    content_hash = Column(String, nullable=True)
    storage_locator = Column(String, nullable=True)
    storage_backend = Column(String, nullable=True)  # drive, local
    extracted_analysis = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="recebido")
    created_at = Column(String, nullable=False)
