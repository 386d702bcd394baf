"""Promp channel adapter: channel ownership lookup and outbound delivery."""

import base64
import os
import re
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional

import httpx

from atendente.logging_config import get_logger
from atendente.schemas.tenant import TenantConfig
from atendente.services.alert_service import alert_critical
from atendente.services.result import Result

logger = get_logger("channel_service")

PROMP_BASE_URL = os.environ.get("PROMP_BASE_URL", "https://api.promp.com.br")
PROMP_TIMEOUT_SECONDS = float(os.environ.get("PROMP_TIMEOUT_SECONDS", "30"))
MEDIA_DOWNLOAD_TIMEOUT_SECONDS = float(os.environ.get("MEDIA_DOWNLOAD_TIMEOUT_SECONDS", "15"))
DISPATCH_PACING_SECONDS = float(os.environ.get("DISPATCH_PACING_SECONDS", "0.6"))
CHANNEL_CACHE_MAX_ENTRIES = int(os.environ.get("CHANNEL_CACHE_MAX_ENTRIES", "1024"))

DATA_URI_RE = re.compile(r"^data:([\w.+/-]+);base64,(.+)$", re.DOTALL)
BUBBLE_SPLIT_RE = re.compile(r"\n\s*\n")
DOWNLOAD_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; AtendenteBot/1.0)",
    "Accept": "image/avif,image/webp,image/*,application/pdf,*/*;q=0.8",
}


class ChannelValidityCache:
    """(token, owner number) -> bool answers from the channel lookup.

    Bounded with LRU eviction. Entries live for the process lifetime unless
    ``invalidate`` is called; tenant reconfiguration does not clear them.
    """

    def __init__(self, max_entries: int = CHANNEL_CACHE_MAX_ENTRIES):
        self.max_entries = max_entries
        self._entries: "OrderedDict[tuple[str, str], bool]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, token: str, owner: str) -> Optional[bool]:
        with self._lock:
            key = (token, owner)
            if key not in self._entries:
                return None
            self._entries.move_to_end(key)
            return self._entries[key]

    def set(self, token: str, owner: str, valid: bool) -> None:
        with self._lock:
            key = (token, owner)
            self._entries[key] = valid
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, token: Optional[str] = None) -> None:
        with self._lock:
            if token is None:
                self._entries.clear()
                return
            for key in [k for k in self._entries if k[0] == token]:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


_validity_cache: Optional[ChannelValidityCache] = None


def get_validity_cache() -> ChannelValidityCache:
    global _validity_cache
    if _validity_cache is None:
        _validity_cache = ChannelValidityCache()
    return _validity_cache


def _external_url(path_key: str, suffix: str = "") -> str:
    return f"{PROMP_BASE_URL.rstrip('/')}/v2/api/external/{path_key.strip()}{suffix}"


def lookup_channel(token: str, owner_number: str) -> Result[dict]:
    """Ask Promp which channel owns ``owner_number``. Returns {"id", "name"}."""
    try:
        with httpx.Client(timeout=PROMP_TIMEOUT_SECONDS) as client:
            response = client.post(_external_url(token, "/showChannel"), json={"number": owner_number})
    except httpx.HTTPError as e:
        logger.warning(f"showChannel request failed: {e}")
        return Result.failure(str(e), "channel_lookup_error")

    if response.status_code != 200:
        logger.warning(
            "showChannel returned non-200",
            extra={"context": {"status": response.status_code, "body": response.text[:200]}},
        )
        return Result.failure(f"showChannel status {response.status_code}", "channel_lookup_error")

    try:
        data = response.json()
    except ValueError:
        return Result.failure("showChannel returned invalid JSON", "channel_lookup_error")

    channel = data.get("channel") if isinstance(data, dict) and isinstance(data.get("channel"), dict) else data
    if not isinstance(channel, dict):
        return Result.failure("showChannel returned unexpected shape", "channel_lookup_error")

    channel_id = channel.get("id") or channel.get("channelId") or channel.get("whatsappId")
    return Result.success(
        {
            "id": str(channel_id).strip() if channel_id is not None else None,
            "name": (channel.get("name") or "").strip() or None,
        }
    )


@dataclass(frozen=True)
class OutboundPart:
    kind: str  # text, image, audio, document
    content: str  # text body, media URL/data URI, or raw base64 for audio
    caption: Optional[str] = None
    mime_type: Optional[str] = None


@dataclass
class DispatchReport:
    sent: int = 0
    failed: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0


def split_bubbles(text: str) -> List[str]:
    """Split on blank lines so lists stay grouped in one WhatsApp bubble."""
    return [chunk.strip() for chunk in BUBBLE_SPLIT_RE.split(text or "") if chunk.strip()]


def _has_credentials(tenant: TenantConfig) -> bool:
    return bool(tenant.promp_uuid and tenant.promp_token)


def _headers(tenant: TenantConfig) -> dict:
    return {"Authorization": f"Bearer {tenant.promp_token}", "Content-Type": "application/json"}


def _external_key(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def send_text(tenant: TenantConfig, number: str, text: str) -> bool:
    if not _has_credentials(tenant):
        logger.warning("Promp credentials missing, text not sent", extra={"context": {"company_id": tenant.company_id}})
        return False
    if not text or not text.strip():
        return False

    payload = {"number": number, "body": text, "externalKey": _external_key("ai"), "isClosed": False}
    try:
        with httpx.Client(timeout=PROMP_TIMEOUT_SECONDS) as client:
            response = client.post(_external_url(tenant.promp_uuid), headers=_headers(tenant), json=payload)
        logger.info(f"Promp text response: status={response.status_code}, number={number}, body={response.text[:200]}")
        return response.is_success
    except httpx.HTTPError as e:
        logger.error(f"Error sending Promp text: {e}")
        return False


def send_base64_media(
    tenant: TenantConfig,
    number: str,
    *,
    base64_data: str,
    mime_type: str,
    file_name: str,
    caption: Optional[str] = None,
) -> bool:
    if not _has_credentials(tenant):
        logger.warning("Promp credentials missing, media not sent", extra={"context": {"company_id": tenant.company_id}})
        return False

    payload = {
        "number": number,
        "body": caption or "",
        "base64Data": base64_data,
        "mimeType": mime_type,
        "fileName": file_name,
        "externalKey": _external_key("ai_media"),
        "isClosed": False,
    }
    try:
        with httpx.Client(timeout=PROMP_TIMEOUT_SECONDS) as client:
            response = client.post(_external_url(tenant.promp_uuid, "/base64"), headers=_headers(tenant), json=payload)
        logger.info(f"Promp media response: status={response.status_code}, number={number}, mime={mime_type}")
        return response.is_success
    except httpx.HTTPError as e:
        logger.error(f"Error sending Promp media: {e}")
        return False


def send_presence(tenant: TenantConfig, ticket_id: Optional[str], state: str) -> bool:
    """Show typing/recording in the chat. Best effort: gateways without support answer non-2xx."""
    if not _has_credentials(tenant) or not ticket_id or not str(ticket_id).isdigit():
        return False
    try:
        with httpx.Client(timeout=PROMP_TIMEOUT_SECONDS) as client:
            response = client.post(
                _external_url(tenant.promp_uuid, "/sendPresence"),
                headers=_headers(tenant),
                json={"ticketId": int(ticket_id), "state": state},
            )
        return response.is_success
    except httpx.HTTPError as e:
        logger.debug(f"Presence update failed: {e}")
        return False


def load_media(source: str, default_mime: str) -> Optional[tuple[str, str]]:
    """Return (base64, mime) for a data URI, bare base64 or http(s) URL."""
    source = (source or "").strip()
    if not source:
        return None

    match = DATA_URI_RE.match(source)
    if match:
        return re.sub(r"\s+", "", match.group(2)), match.group(1)

    if source.startswith(("http://", "https://")):
        try:
            with httpx.Client(timeout=MEDIA_DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True) as client:
                response = client.get(source, headers=DOWNLOAD_HEADERS)
        except httpx.HTTPError as e:
            logger.error(f"Media download failed: {e}", extra={"context": {"url": source}})
            return None
        if not response.is_success:
            logger.error(f"Media download failed: status={response.status_code}", extra={"context": {"url": source}})
            return None
        mime = (response.headers.get("content-type") or default_mime).split(";")[0].strip()
        return base64.b64encode(response.content).decode("ascii"), mime

    # stored catalog PDFs are bare base64
    return re.sub(r"\s+", "", source), default_mime


def _file_name(kind: str, mime_type: str) -> str:
    extension = mime_type.split("/")[-1] if "/" in mime_type else "bin"
    if extension == "mpeg":
        extension = "mp3"
    return f"{kind}_{int(time.time() * 1000)}.{extension}"


def _send_part(tenant: TenantConfig, number: str, part: OutboundPart) -> bool:
    if part.kind == "text":
        return send_text(tenant, number, part.content)

    default_mime = {"image": "image/jpeg", "audio": "audio/mpeg", "document": "application/pdf"}.get(
        part.kind, "application/octet-stream"
    )
    if part.kind == "audio":
        loaded = (part.content, part.mime_type or default_mime)
    else:
        loaded = load_media(part.content, part.mime_type or default_mime)
    if not loaded:
        return False

    data, mime_type = loaded
    return send_base64_media(
        tenant,
        number,
        base64_data=data,
        mime_type=mime_type,
        file_name=_file_name(part.kind, mime_type),
        caption=part.caption,
    )


def dispatch_parts(
    tenant: TenantConfig,
    number: str,
    parts: List[OutboundPart],
    *,
    pacing_seconds: float = DISPATCH_PACING_SECONDS,
) -> DispatchReport:
    """Deliver parts one by one, pausing between them to keep channel order."""
    report = DispatchReport()
    for index, part in enumerate(parts):
        if _send_part(tenant, number, part):
            report.sent += 1
        else:
            report.failed += 1
            logger.warning(
                "Outbound part not delivered",
                extra={"context": {"company_id": tenant.company_id, "number": number, "kind": part.kind}},
            )
        if pacing_seconds > 0 and index < len(parts) - 1:
            time.sleep(pacing_seconds)

    if parts and report.sent == 0:
        alert_critical(
            "WhatsApp dispatch failed",
            {"company_id": tenant.company_id, "number": number, "parts": len(parts)},
        )
    return report
