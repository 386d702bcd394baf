import base64
import os
import random
import re
import threading
from typing import Any, Optional

import httpx

from atendente.logging_config import get_logger
from atendente.schemas.tenant import VoiceConfig
from atendente.services.channel_service import load_media
from atendente.services.llm import LLMProvider, OpenAIError
from atendente.services.result import Result

logger = get_logger("audio_service")

ELEVENLABS_BASE_URL = os.environ.get("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io/v1")
ELEVENLABS_MODEL_ID = os.environ.get("ELEVENLABS_MODEL_ID", "eleven_multilingual_v2")
ELEVENLABS_TIMEOUT_SECONDS = float(os.environ.get("ELEVENLABS_TIMEOUT_SECONDS", "30"))
DEFAULT_VOICE_ID = os.environ.get("ELEVENLABS_DEFAULT_VOICE_ID", "21m00Tcm4TlvDq8ikWAM")
AGENT_VOICE_PREFIX = "agent_"

# English words read out with Brazilian Portuguese phonetics
PHONETIC_REPLACEMENTS = {
    "prime": "praime",
    "premium": "prêmium",
    "black": "bléque",
    "gold": "gôuld",
    "standard": "istandard",
    "business": "bízness",
    "enterprise": "enter praise",
    "online": "on laine",
    "offline": "of laine",
    "home": "rôum",
    "office": "ófis",
    "feedback": "fid béque",
    "ticket": "tí que t",
    "login": "loguin",
    "email": "e-mail",
    "site": "saite",
    "web": "ueb",
    "app": "ép",
    "software": "sóft uér",
    "design": "dezáin",
    "layout": "lei aut",
    "briefing": "brífing",
    "deadline": "déd lain",
    "budget": "bã djet",
    "follow-up": "folo uáp",
}
PHONETIC_RE = re.compile(
    r"\b(" + "|".join(re.escape(word) for word in sorted(PHONETIC_REPLACEMENTS, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)
MARKDOWN_RE = re.compile(r"[*_#`~]")

_resolved_voices: dict[str, str] = {}
_resolved_voices_lock = threading.Lock()


def should_synthesize(voice: VoiceConfig, was_inbound_audio: bool, draw: Optional[float] = None) -> bool:
    if not voice.enabled or not voice.provider_key:
        return False
    if was_inbound_audio:
        return True

    response_type = (voice.response_type or "").strip().lower()
    if response_type == "percentage":
        if voice.response_percentage <= 0:
            return False
        draw = random.random() * 100 if draw is None else draw
        return draw <= voice.response_percentage
    return False


def _phonetic(match: re.Match) -> str:
    word = match.group(0)
    replacement = PHONETIC_REPLACEMENTS[word.lower()]
    return replacement[:1].upper() + replacement[1:] if word[:1].isupper() else replacement


def prepare_speech_text(text: str) -> str:
    clean = MARKDOWN_RE.sub("", text or "")
    clean = PHONETIC_RE.sub(_phonetic, clean)
    return re.sub(r"\n{3,}", "\n\n", clean).strip()


def resolve_voice_id(voice_id: Optional[str], api_key: str) -> str:
    """Agent references (``agent_...``) point at an ElevenLabs agent; look up its voice.

    Only a resolved voice is cached. Failed lookups fall back to the default
    voice for this reply and are retried on the next one.
    """
    if not voice_id:
        return DEFAULT_VOICE_ID
    if not voice_id.startswith(AGENT_VOICE_PREFIX):
        return voice_id

    with _resolved_voices_lock:
        cached = _resolved_voices.get(voice_id)
    if cached:
        return cached

    try:
        with httpx.Client(timeout=ELEVENLABS_TIMEOUT_SECONDS) as client:
            response = client.get(f"{ELEVENLABS_BASE_URL}/convai/agents/{voice_id}", headers={"xi-api-key": api_key})
    except httpx.HTTPError as e:
        logger.error(f"Agent voice lookup failed: {e}")
        return DEFAULT_VOICE_ID

    if response.status_code != 200:
        logger.warning(f"Agent voice lookup failed: status={response.status_code}")
        return DEFAULT_VOICE_ID

    tts = ((response.json().get("conversation_config") or {}).get("tts")) or {}
    resolved = tts.get("voice_id")
    if not resolved:
        logger.warning(f"Agent {voice_id} has no voice configured, using default voice")
        return DEFAULT_VOICE_ID

    with _resolved_voices_lock:
        _resolved_voices[voice_id] = resolved
    return resolved


def synthesize_speech(text: str, voice: VoiceConfig) -> Result[str]:
    """Base64 MP3 of ``text`` in the tenant's voice."""
    speech = prepare_speech_text(text)
    if not speech or not voice.provider_key:
        return Result.failure("Nothing to synthesize", "tts_skipped")

    voice_id = resolve_voice_id(voice.voice_id, voice.provider_key)
    try:
        with httpx.Client(timeout=ELEVENLABS_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"{ELEVENLABS_BASE_URL}/text-to-speech/{voice_id}",
                headers={
                    "Accept": "audio/mpeg",
                    "xi-api-key": voice.provider_key,
                    "Content-Type": "application/json",
                },
                json={
                    "text": speech,
                    "model_id": ELEVENLABS_MODEL_ID,
                    "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
                },
            )
    except httpx.HTTPError as e:
        logger.error(f"TTS request failed: {e}")
        return Result.failure(str(e), "tts_error")

    if response.status_code != 200:
        logger.error(f"TTS error: {response.status_code} {response.text[:200]}")
        return Result.failure(f"TTS status {response.status_code}", "tts_error")

    logger.info("Speech synthesized", extra={"context": {"voice_id": voice_id, "chars": len(speech)}})
    return Result.success(base64.b64encode(response.content).decode("ascii"))


def _media_source(media: Any) -> Optional[str]:
    if isinstance(media, str):
        return media
    if isinstance(media, dict):
        for key in ("base64", "data", "url", "mediaUrl", "link"):
            value = media.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return None


def transcribe_inbound_audio(media: Any, provider: LLMProvider) -> Result[str]:
    source = _media_source(media)
    if not source:
        return Result.failure("Audio message without media", "audio_missing")

    loaded = load_media(source, "audio/ogg")
    if not loaded:
        return Result.failure("Audio media could not be loaded", "audio_missing")

    data, mime_type = loaded
    try:
        audio_bytes = base64.b64decode(data)
        extension = mime_type.split("/")[-1].split(";")[0] or "ogg"
        transcript = provider.transcribe_audio(
            audio_bytes=audio_bytes,
            filename=f"audio.{extension}",
            mime_type=mime_type,
        )
    except (ValueError, httpx.HTTPError, OpenAIError) as e:
        logger.error(f"Audio transcription failed: {e}")
        return Result.failure(str(e), "transcription_error")

    if not transcript:
        return Result.failure("Empty transcription", "transcription_empty")
    return Result.success(transcript)
