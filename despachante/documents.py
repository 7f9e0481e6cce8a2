"""
Ingestion of documents clients send as media.

Every step after the download is tolerated on failure: a Document row is
always written with whatever succeeded. Only a failure of both the Drive
upload and the local fallback marks the row as failed.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from despachante.classifier import detect_document_type
from despachante.drive import DriveUploader, structured_file_name
from despachante.errors import DocumentStorageError, UpstreamDegraded
from despachante.llm import GeminiClient, extract_json
from despachante.metrics import record_document
from despachante.storage import attach_document_analysis, create_document
from despachante.utils import md5_hex

logger = logging.getLogger(__name__)

STATUS_RECEIVED = "recebido"
STATUS_FAILED = "falhou"

BACKEND_DRIVE = "drive"
BACKEND_LOCAL = "local"

VISION_PROMPT = """Analise este documento de veículo ou de cliente de um despachante.
Extraia os campos que conseguir ler e responda apenas em JSON:
{
  "tipo_documento": "crlv|cnh|rg|cpf|comprovante|contrato|outro",
  "nome": "",
  "cpf": "",
  "placa": "",
  "renavam": "",
  "chassi": "",
  "marca_modelo": "",
  "ano": "",
  "observacoes": ""
}"""


def wants_vision(mime_type: str) -> bool:
    mime_type = (mime_type or "").lower()
    return mime_type.startswith("image/") or "pdf" in mime_type


@dataclass
class StoredFile:
    locator: str
    backend: str


class DocumentIngestor:
    """Download, store and optionally analyze one media attachment."""

    def __init__(
        self,
        uploader: Optional[DriveUploader],
        uploads_dir: str,
        http: httpx.AsyncClient,
        download_timeout: float = 30.0,
        vision: Optional[GeminiClient] = None,
    ):
        self.uploader = uploader
        self.uploads_dir = Path(uploads_dir)
        self.http = http
        self.download_timeout = download_timeout
        self.vision = vision

    async def download(self, media_url: Optional[str]) -> Optional[bytes]:
        """Fetch media bytes; None when there is no URL or the download fails."""
        if not media_url:
            return None
        try:
            response = await self.http.get(media_url, timeout=self.download_timeout, follow_redirects=True)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL, TypeError, ValueError) as e:
            logger.warning(f"Media download failed for {media_url}: {e}")
            return None
        return response.content

    def save_local(self, content: Optional[bytes], file_name: str, phone: str, doc_type: str) -> StoredFile:
        """
        Write the document under UPLOADS_DIR/<phone>/<type>/.

        With no content a zero-byte file is written, so the locator always
        names a real path.

        Raises:
            DocumentStorageError: the file could not be written
        """
        folder = self.uploads_dir / phone / doc_type
        path = folder / structured_file_name(file_name, phone, doc_type)
        try:
            folder.mkdir(parents=True, exist_ok=True)
            # Same-day files from one phone get a numeric suffix
            counter = 1
            while path.exists():
                path = folder / f"{path.stem.split('~')[0]}~{counter}{path.suffix}"
                counter += 1
            path.write_bytes(content or b"")
        except OSError as e:
            raise DocumentStorageError(f"local save failed for {path}: {e}")

        logger.info(f"Document saved locally: {path}")
        return StoredFile(locator=str(path), backend=BACKEND_LOCAL)

    async def store(self, content: Optional[bytes], file_name: str, phone: str, doc_type: str, mime_type: str) -> StoredFile:
        """Drive when possible, local disk otherwise."""
        if content and self.uploader is not None and self.uploader.enabled:
            try:
                url = await self.uploader.upload(content, file_name, phone, doc_type, mime_type)
                return StoredFile(locator=url, backend=BACKEND_DRIVE)
            except UpstreamDegraded as e:
                logger.warning(f"Drive upload degraded, saving locally: {e.message}")
        return self.save_local(content, file_name, phone, doc_type)

    async def analyze(self, content: bytes, mime_type: str) -> Optional[str]:
        """Vision extraction as a JSON string, None when unavailable or failed."""
        if self.vision is None:
            return None
        try:
            raw = await self.vision.generate(VISION_PROMPT, inline_data=(content, mime_type))
            return json.dumps(extract_json(raw), ensure_ascii=False)
        except UpstreamDegraded as e:
            logger.warning(f"Document analysis degraded: {e.message}")
            return None

    async def ingest(
        self,
        db: Session,
        media_url: Optional[str],
        file_name: str,
        mime_type: str,
        phone: str,
        source_message_id: Optional[str] = None,
    ):
        """
        Ingest one media reference and persist its Document row.

        Args:
            db: Database session
            media_url: URL the gateway serves the media from
            file_name: Original file name, used for type detection
            mime_type: Declared MIME type
            phone: Sender phone (digits)
            source_message_id: Gateway message id, if any

        Returns:
            The stored Document
        """
        file_name = file_name or "arquivo"
        mime_type = mime_type or "application/octet-stream"

        content = await self.download(media_url)
        content_hash = md5_hex(content) if content is not None else None

        doc_type = detect_document_type(file_name, mime_type)
        logger.info(f"Document from {phone}: {file_name} -> {doc_type}")

        stored = None
        status = STATUS_RECEIVED
        try:
            stored = await self.store(content, file_name, phone, doc_type, mime_type)
        except DocumentStorageError as e:
            logger.error(f"Document from {phone} could not be stored: {e.message}")
            status = STATUS_FAILED

        document = create_document(
            db,
            phone=phone,
            source_message_id=source_message_id or None,
            document_type=doc_type,
            mime_type=mime_type,
            file_name=file_name,
            byte_size=len(content) if content else 0,
            content_hash=content_hash,
            storage_locator=stored.locator if stored else None,
            storage_backend=stored.backend if stored else None,
            status=status,
        )
        record_document(stored.backend if stored else STATUS_FAILED)

        if content and wants_vision(mime_type):
            analysis = await self.analyze(content, mime_type)
            if analysis is not None and attach_document_analysis(db, document.id, analysis):
                db.refresh(document)

        return document


def build_document_ingestor(settings, http: httpx.AsyncClient, uploader: Optional[DriveUploader]) -> DocumentIngestor:
    vision = None
    if settings.GEMINI_API_KEY:
        vision = GeminiClient(
            settings.GEMINI_API_KEY,
            settings.GEMINI_MODEL,
            http,
            timeout=settings.LLM_TIMEOUT_SECONDS,
            max_output_tokens=800,
        )
    return DocumentIngestor(
        uploader=uploader,
        uploads_dir=settings.UPLOADS_DIR,
        http=http,
        download_timeout=settings.MEDIA_DOWNLOAD_TIMEOUT_SECONDS,
        vision=vision,
    )
