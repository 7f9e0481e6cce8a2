"""
Normalization of inbound gateway payloads.

The gateway has sent several payload shapes over time. Each known shape is
tried in priority order and the first one that applies produces an
InboundEnvelope. Payloads that match nothing become the "unparsed" sentinel
instead of a guessed message.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

UNKNOWN_SENDER = "unknown"

SHAPE_ZAPI_CALLBACK = "zapi_callback"
SHAPE_DATA_WRAPPED = "data_wrapped"
SHAPE_FLAT = "flat"
SHAPE_SCANNED = "scanned"
SHAPE_UNPARSED = "unparsed"

TEXT_FIELDS = ("text", "body", "message", "content")
SENDER_FIELDS = ("from", "phone", "sender", "number")
MEDIA_KINDS = ("image", "document", "audio", "video")


@dataclass(frozen=True)
class MediaReference:
    url: str
    file_name: str = "arquivo"
    mime_type: str = "application/octet-stream"
    kind: str = "document"


@dataclass(frozen=True)
class InboundEnvelope:
    """A gateway payload reduced to the fields the pipeline uses."""
    sender: str
    text: str
    message_id: str
    timestamp: str
    shape: str
    is_group: bool = False
    is_broadcast: bool = False
    from_me: bool = False
    media: Optional[MediaReference] = None
    raw: Any = field(default=None, compare=False, repr=False)

    @property
    def parsed(self) -> bool:
        return self.shape != SHAPE_UNPARSED

    @property
    def has_known_sender(self) -> bool:
        return self.sender != UNKNOWN_SENDER


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _coerce_text(value: Any) -> str:
    """Text fields are either plain strings or objects like {"message": "..."}."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("message", "body", "text", "content"):
            if isinstance(value.get(key), str):
                return value[key]
    return ""


def _first_text(source: dict, keys=TEXT_FIELDS) -> str:
    for key in keys:
        text = _coerce_text(source.get(key))
        if text:
            return text
    return ""


def _first_present(source: dict, keys) -> Any:
    for key in keys:
        value = source.get(key)
        if value:
            return value
    return None


def extract_phone(value: Any) -> str:
    """
    Reduce a sender id to digits.

    JID suffixes such as @c.us or @s.whatsapp.net are dropped; values with
    no digits become "unknown".
    """
    if isinstance(value, dict):
        value = value.get("phone") or value.get("id") or ""
    if value is None:
        return UNKNOWN_SENDER
    local_part = str(value).split("@", 1)[0]
    digits = re.sub(r"\D", "", local_part)
    return digits or UNKNOWN_SENDER


def _is_group_id(value: Any) -> bool:
    return isinstance(value, str) and (value.endswith("@g.us") or "-group" in value)


def _timestamp(value: Any) -> str:
    if isinstance(value, (int, float)):
        # Z-API sends epoch milliseconds
        seconds = value / 1000 if value > 10**11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        except (OverflowError, ValueError, OSError):
            logger.warning(f"Ignoring out-of-range timestamp: {value}")
            return _now_iso()
    if isinstance(value, str) and value:
        return value
    return _now_iso()


def _media_from(source: dict) -> Optional[MediaReference]:
    """Media references as sent by Z-API callbacks (image/document/audio/video objects or message.mediaUrl)."""
    for kind in MEDIA_KINDS:
        item = source.get(kind)
        if isinstance(item, dict):
            url = item.get(f"{kind}Url") or item.get("url") or item.get("mediaUrl")
            if url:
                return MediaReference(
                    url=url,
                    file_name=item.get("fileName") or item.get("title") or f"{kind}",
                    mime_type=item.get("mimeType") or "application/octet-stream",
                    kind=kind,
                )

    message = source.get("message")
    if isinstance(message, dict) and message.get("mediaUrl"):
        return MediaReference(
            url=message["mediaUrl"],
            file_name=message.get("fileName") or "arquivo",
            mime_type=message.get("mimeType") or "application/octet-stream",
            kind=message.get("type") or source.get("type") or "document",
        )
    return None


def _flags(source: dict, sender_value: Any) -> dict:
    return {
        "is_group": bool(source.get("isGroup")) or _is_group_id(sender_value),
        "is_broadcast": bool(source.get("isNewsletter") or source.get("broadcast"))
        or source.get("type") == "MessageTemplate",
        "from_me": bool(source.get("fromMe")),
    }


# =============================================================================
# Shape parsers
# =============================================================================

def _parse_zapi_callback(body: dict) -> Optional[InboundEnvelope]:
    """{phone, text: {message}, isGroup, messageId, momment, image|document|...}"""
    if "phone" not in body:
        return None
    text_value = body.get("text")
    media = _media_from(body)
    if not (isinstance(text_value, dict) or media or body.get("type") == "ReceivedCallback"):
        return None

    sender_value = body.get("phone")
    text = _coerce_text(text_value) or _coerce_text(body.get("message"))
    return InboundEnvelope(
        sender=extract_phone(sender_value),
        text=text,
        message_id=str(body.get("messageId") or body.get("id") or ""),
        timestamp=_timestamp(body.get("momment") or body.get("timestamp")),
        shape=SHAPE_ZAPI_CALLBACK,
        media=media,
        raw=body,
        **_flags(body, sender_value),
    )


def _parse_data_wrapped(body: dict) -> Optional[InboundEnvelope]:
    """{data: {from, text|body, messageId, timestamp}}"""
    data = body.get("data")
    if not isinstance(data, dict) or not data.get("from"):
        return None

    flags = _flags(data, data.get("from"))
    flags["is_group"] = flags["is_group"] or bool(body.get("isGroup"))
    return InboundEnvelope(
        sender=extract_phone(data.get("from")),
        text=_first_text(data),
        message_id=str(data.get("messageId") or data.get("id") or ""),
        timestamp=_timestamp(data.get("timestamp") or data.get("date")),
        shape=SHAPE_DATA_WRAPPED,
        media=_media_from(data),
        raw=body,
        **flags,
    )


def _parse_flat(body: dict) -> Optional[InboundEnvelope]:
    """{from, body|text, id}"""
    if not body.get("from"):
        return None

    return InboundEnvelope(
        sender=extract_phone(body.get("from")),
        text=_first_text(body, ("body", "text", "message", "content")),
        message_id=str(body.get("messageId") or body.get("id") or ""),
        timestamp=_timestamp(body.get("timestamp") or body.get("date")),
        shape=SHAPE_FLAT,
        media=_media_from(body),
        raw=body,
        **_flags(body, body.get("from")),
    )


def _parse_scanned(body: dict) -> Optional[InboundEnvelope]:
    """Last resort: look for any common text and sender field at the top level or under data."""
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    text = _first_text(body) or _first_text(data)
    sender_value = _first_present(body, SENDER_FIELDS) or _first_present(data, SENDER_FIELDS)
    media = _media_from(body) or _media_from(data)
    if not text and not sender_value and not media:
        return None

    return InboundEnvelope(
        sender=extract_phone(sender_value),
        text=text,
        message_id=str(body.get("messageId") or data.get("messageId") or body.get("id") or data.get("id") or ""),
        timestamp=_timestamp(body.get("timestamp") or data.get("timestamp")),
        shape=SHAPE_SCANNED,
        media=media,
        raw=body,
        **_flags(body, sender_value),
    )


PARSERS: tuple[Callable[[dict], Optional[InboundEnvelope]], ...] = (
    _parse_zapi_callback,
    _parse_data_wrapped,
    _parse_flat,
    _parse_scanned,
)


def unparsed_envelope(body: Any) -> InboundEnvelope:
    return InboundEnvelope(
        sender=UNKNOWN_SENDER,
        text="",
        message_id="",
        timestamp=_now_iso(),
        shape=SHAPE_UNPARSED,
        raw=body,
    )


def parse_envelope(body: Any) -> InboundEnvelope:
    """
    Normalize a webhook payload.

    Args:
        body: Decoded JSON payload (any type)

    Returns:
        InboundEnvelope; shape is "unparsed" when no known shape applies
    """
    if not isinstance(body, dict):
        logger.warning(f"Webhook body is not an object: {type(body).__name__}")
        return unparsed_envelope(body)

    for parser in PARSERS:
        envelope = parser(body)
        if envelope is not None:
            logger.debug(f"Payload parsed as {envelope.shape}")
            return envelope

    logger.warning(f"Webhook payload did not match any known shape, keys={list(body.keys())[:10]}")
    return unparsed_envelope(body)
