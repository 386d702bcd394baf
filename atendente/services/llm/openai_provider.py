from typing import List, Optional

import httpx

from atendente.logging_config import get_logger
from atendente.services.llm.base import LLMProvider, LLMResponse, ToolCall

logger = get_logger("llm.openai")


class OpenAIError(Exception):
    """Non-200 answer from the OpenAI API."""


class OpenAIProvider(LLMProvider):
    """OpenAI API provider (chat completions with tools, whisper transcription)."""

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini", timeout_seconds: float = 60.0):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self.audio_url = "https://api.openai.com/v1/audio/transcriptions"

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        tools: Optional[List[dict]] = None,
    ) -> LLMResponse:
        model = model or self.default_model

        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}, tools={len(tools or [])}")

        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise OpenAIError(f"OpenAI API error: {response.status_code} - {response.text}")

        data = response.json()

        content = ""
        tool_calls: List[ToolCall] = []
        if data.get("choices"):
            message = data["choices"][0].get("message") or {}
            content = message.get("content") or ""
            for raw in message.get("tool_calls") or []:
                function = raw.get("function") or {}
                tool_calls.append(
                    ToolCall(
                        id=raw.get("id") or "",
                        name=function.get("name") or "",
                        arguments=function.get("arguments") or "{}",
                    )
                )

        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}, tool_calls={len(tool_calls)}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
            tool_calls=tool_calls,
        )

    def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        model: Optional[str] = None,
        language: Optional[str] = "pt",
    ) -> str:
        """Transcribe audio using OpenAI speech-to-text."""
        model = model or "whisper-1"
        if not audio_bytes:
            raise ValueError("audio_bytes is empty")

        files = {"file": (filename or "audio.ogg", audio_bytes, mime_type or "application/octet-stream")}
        data = {"model": model, "response_format": "text"}
        if language:
            data["language"] = language

        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.post(
                self.audio_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                files=files,
                data=data,
            )

        if response.status_code != 200:
            logger.error(f"OpenAI transcription error: {response.text}")
            raise OpenAIError(f"OpenAI transcription error: {response.status_code} - {response.text}")

        transcript = (response.text or "").strip()
        if not transcript:
            logger.warning("OpenAI transcription returned empty text")
        return transcript
