"""Canonical envelope for inbound webhook events.

Gateways (Promp, uazapi, Evolution-style) post the same logical message in
very different JSON shapes. Knowledge of those shapes lives in ``FIELD_PATHS``:
an ordered tuple of dotted paths per field. ``first_match`` walks them and
returns the first non-empty value; nothing is inferred when no path matches.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from atendente.logging_config import get_logger

logger = get_logger("payload_normalizer")

FIELD_PATHS: dict[str, tuple[str, ...]] = {
    "message_id": (
        "messageId",
        "message_id",
        "id",
        "key.id",
        "msg.messageid",
        "msg.id",
        "data.key.id",
        "body.messageId",
        "body.id",
        "message.id",
    ),
    "sender": (
        "sender",
        "from",
        "remoteJid",
        "msg.chatid",
        "msg.sender",
        "key.remoteJid",
        "data.key.remoteJid",
        "body.contact.number",
        "body.ticket.contact.number",
        "contact.number",
        "chat.wa_chatid",
    ),
    "owner": (
        "owner",
        "msg.owner",
        "body.owner",
        "body.channel.number",
        "data.owner",
        "chat.owner",
        "instance.owner",
    ),
    "connection_id": (
        "connectionId",
        "connection_id",
        "sessionId",
        "instanceId",
        "channelId",
        "body.channel.id",
        "body.ticket.whatsappId",
        "wuzapi.id",
        "sessionName",
        "session",
    ),
    "text": (
        "text",
        "body.content.text",
        "body.text",
        "msg.text",
        "msg.body",
        "message.conversation",
        "message.extendedTextMessage.text",
        "data.message.conversation",
        "data.message.extendedTextMessage.text",
        "message.text",
        "content.text",
        "caption",
    ),
    "media": (
        "body.content.media",
        "body.mediaUrl",
        "msg.media",
        "msg.mediaUrl",
        "media",
        "mediaUrl",
        "base64",
        "data.message.audioMessage",
        "message.audioMessage",
    ),
    "message_type": (
        "messageType",
        "msg.messageType",
        "data.messageType",
        "body.content.type",
        "body.messageType",
        "message.type",
        "type",
    ),
    "is_from_me": (
        "fromMe",
        "isFromMe",
        "msg.fromMe",
        "key.fromMe",
        "data.key.fromMe",
        "body.fromMe",
        "body.content.fromMe",
    ),
    "is_group": (
        "isGroup",
        "msg.isGroup",
        "chat.isGroup",
        "body.isGroup",
        "body.ticket.isGroup",
    ),
    "is_broadcast": (
        "isBroadcast",
        "msg.isBroadcast",
        "broadcast",
    ),
    "sent_by_platform": (
        "wasSentByApi",
        "msg.wasSentByApi",
        "body.wasSentByApi",
        "data.wasSentByApi",
        "sentByApi",
        "fromApi",
    ),
    "company_id": (
        "companyId",
        "company_id",
        "body.companyId",
    ),
    "sender_name": (
        "senderName",
        "pushName",
        "msg.senderName",
        "data.pushName",
        "body.contact.name",
        "chat.name",
    ),
    "ticket_id": (
        "ticketId",
        "body.ticket.id",
        "ticket.id",
    ),
}

AUDIO_MESSAGE_TYPES = {"audio", "ptt", "audiomessage", "voice"}
PERSONAL_JID_SUFFIXES = ("@s.whatsapp.net", "@c.us")
TRUE_STRINGS = {"1", "true", "yes", "sim"}


@dataclass(frozen=True)
class MessageEnvelope:
    sender_id: str
    company_id: str
    text: str = ""
    external_id: Optional[str] = None
    owner_id: Optional[str] = None
    connection_id: Optional[str] = None
    media_payload: Any = None
    message_type: Optional[str] = None
    is_from_me: bool = False
    is_group: bool = False
    is_broadcast: bool = False
    sent_by_platform: bool = False
    sender_name: Optional[str] = None
    ticket_id: Optional[str] = None

    @property
    def is_audio(self) -> bool:
        if (self.message_type or "").strip().lower() in AUDIO_MESSAGE_TYPES:
            return True
        if isinstance(self.media_payload, dict):
            mime = str(self.media_payload.get("mimetype") or self.media_payload.get("mimeType") or "")
            return mime.startswith("audio/")
        return False


class _InsufficientData:
    def __repr__(self) -> str:
        return "INSUFFICIENT_DATA"


INSUFFICIENT_DATA = _InsufficientData()


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (dict, list, tuple)):
        return bool(value)
    return True


def _is_scalar(value: Any) -> bool:
    return _has_value(value) and not isinstance(value, (dict, list, tuple))


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def resolve_path(payload: Any, path: str) -> Any:
    current = payload
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def first_match(payload: Any, paths: tuple[str, ...], accept: Callable[[Any], bool] = _has_value) -> Any:
    """Return the value of the first candidate path that ``accept`` approves."""
    for path in paths:
        value = resolve_path(payload, path)
        if accept(value):
            return value
    return None


def normalize_digits(value: Any) -> str:
    return re.sub(r"\D", "", str(value or ""))


def _coerce_sender(value: Any) -> Optional[str]:
    if not _is_scalar(value):
        return None
    text = str(value).strip()
    lowered = text.lower()
    for suffix in PERSONAL_JID_SUFFIXES:
        if lowered.endswith(suffix):
            text = text[: -len(suffix)]
            break
    if "@" in text:
        # group and broadcast jids keep their suffix so isolation can see them
        return text
    digits = normalize_digits(text.split(":")[0])
    return digits or None


def _coerce_str(value: Any) -> Optional[str]:
    if not _is_scalar(value):
        return None
    return str(value).strip()


def _coerce_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return False


def normalize_payload(
    payload: Any,
    company_hint: Optional[str] = None,
) -> Union[MessageEnvelope, _InsufficientData]:
    """Build a MessageEnvelope, or INSUFFICIENT_DATA when routing info is missing."""
    if isinstance(payload, list):
        payload = payload[0] if payload else None
    if not isinstance(payload, dict):
        return INSUFFICIENT_DATA

    sender_id = _coerce_sender(first_match(payload, FIELD_PATHS["sender"], _is_scalar))
    company_id = _coerce_str(company_hint) or _coerce_str(first_match(payload, FIELD_PATHS["company_id"], _is_scalar))

    if not sender_id or not company_id:
        logger.info(
            "Webhook payload missing routing fields",
            extra={
                "context": {
                    "has_sender": bool(sender_id),
                    "has_company": bool(company_id),
                    "payload_keys": list(payload.keys())[:20],
                }
            },
        )
        return INSUFFICIENT_DATA

    owner = first_match(payload, FIELD_PATHS["owner"], _is_scalar)
    text = first_match(payload, FIELD_PATHS["text"], _is_text)

    return MessageEnvelope(
        sender_id=sender_id,
        company_id=company_id,
        text=(text or "").strip(),
        external_id=_coerce_str(first_match(payload, FIELD_PATHS["message_id"], _is_scalar)),
        owner_id=normalize_digits(owner) or None,
        connection_id=_coerce_str(first_match(payload, FIELD_PATHS["connection_id"], _is_scalar)),
        media_payload=first_match(payload, FIELD_PATHS["media"]),
        message_type=_coerce_str(first_match(payload, FIELD_PATHS["message_type"], _is_scalar)),
        is_from_me=_coerce_flag(first_match(payload, FIELD_PATHS["is_from_me"])),
        is_group=_coerce_flag(first_match(payload, FIELD_PATHS["is_group"])),
        is_broadcast=_coerce_flag(first_match(payload, FIELD_PATHS["is_broadcast"])),
        sent_by_platform=_coerce_flag(first_match(payload, FIELD_PATHS["sent_by_platform"])),
        sender_name=_coerce_str(first_match(payload, FIELD_PATHS["sender_name"], _is_scalar)),
        ticket_id=_coerce_str(first_match(payload, FIELD_PATHS["ticket_id"], _is_scalar)),
    )
