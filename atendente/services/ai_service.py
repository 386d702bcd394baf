import json
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

import httpx
from sqlalchemy.orm import Session

from atendente.logging_config import get_logger
from atendente.schemas.tenant import TenantConfig
from atendente.services.alert_service import alert_error
from atendente.services.conversation_service import ConversationTurn
from atendente.services.llm import LLMProvider, OpenAIError, OpenAIProvider, ToolCall
from atendente.services.prompt_builder import build_sections, render_sections, rewrite_user_message
from atendente.services.result import Result
from atendente.services.tools_service import TOOL_SCHEMA, available_products, execute_tool

logger = get_logger("ai_service")

OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
DEFAULT_MODEL = os.environ.get("DEFAULT_MODEL", "gpt-4o-mini")
LLM_TIMEOUT_SECONDS = float(os.environ.get("LLM_TIMEOUT_SECONDS", "60"))
LLM_MAX_TOKENS = int(os.environ.get("LLM_MAX_TOKENS", "800"))
LLM_TEMPERATURE = float(os.environ.get("LLM_TEMPERATURE", "0.5"))

MAX_TURNS = 3

CONFIG_MISSING_RESPONSE = (
    "Olá! No momento estou passando por uma atualização de configuração. "
    "Em breve um atendente retorna seu contato."
)
MSG_AI_ERROR = "Desculpe, tive uma instabilidade para responder agora. Pode me enviar a mensagem de novo em instantes?"
FALLBACK_RESPONSE = "Desculpe, não consegui concluir sua solicitação agora. Pode reformular ou tentar novamente?"

# One provider per API key; tenants may bring their own key
_llm_providers: dict[str, OpenAIProvider] = {}


@dataclass(frozen=True)
class ToolLoopOutcome:
    content: str
    transcript: tuple[ConversationTurn, ...]
    turns: int
    tool_calls: int
    exhausted: bool = False


@dataclass(frozen=True)
class ReplyDraft:
    text: str
    transcript: tuple[ConversationTurn, ...]
    turns: int
    used_fallback: bool = False


def resolve_api_key(tenant: TenantConfig) -> Optional[str]:
    return tenant.openai_key or OPENAI_API_KEY or None


def get_llm_provider(api_key: str) -> OpenAIProvider:
    """Get or create the provider for this key."""
    provider = _llm_providers.get(api_key)
    if provider is None:
        provider = OpenAIProvider(api_key=api_key, default_model=DEFAULT_MODEL, timeout_seconds=LLM_TIMEOUT_SECONDS)
        _llm_providers[api_key] = provider
    return provider


def run_tool_loop(
    provider: LLMProvider,
    transcript: tuple[ConversationTurn, ...],
    *,
    execute: Callable[[ToolCall], dict],
    model: Optional[str] = None,
    max_turns: int = MAX_TURNS,
) -> ToolLoopOutcome:
    """Call the model until it answers without tools or ``max_turns`` is spent.

    Tool calls run one by one in the order the model returned them; each adds
    a tool turn whatever its outcome. The transcript is never mutated: every
    step builds a new tuple, and the final one is returned with the outcome.
    """
    last_content = ""
    tool_call_count = 0

    for turn in range(1, max_turns + 1):
        response = provider.generate(
            messages=[item.to_message() for item in transcript],
            model=model,
            temperature=LLM_TEMPERATURE,
            max_tokens=LLM_MAX_TOKENS,
            tools=TOOL_SCHEMA,
        )
        if response.content:
            last_content = response.content

        if not response.tool_calls:
            transcript = transcript + (ConversationTurn(role="assistant", content=response.content),)
            return ToolLoopOutcome(
                content=response.content,
                transcript=transcript,
                turns=turn,
                tool_calls=tool_call_count,
            )

        transcript = transcript + (
            ConversationTurn(role="assistant", content=response.content or "", tool_calls=tuple(response.tool_calls)),
        )
        for call in response.tool_calls:
            tool_call_count += 1
            result = execute(call)
            logger.info(
                f"Tool executed: {call.name}",
                extra={"context": {"tool": call.name, "turn": turn, "success": result.get("success", True)}},
            )
            transcript = transcript + (
                ConversationTurn(
                    role="tool",
                    content=json.dumps(result, ensure_ascii=False, default=str),
                    tool_call_id=call.id,
                ),
            )

    logger.warning(
        "Tool loop exhausted",
        extra={"context": {"max_turns": max_turns, "tool_calls": tool_call_count, "has_content": bool(last_content)}},
    )
    return ToolLoopOutcome(
        content=last_content,
        transcript=transcript,
        turns=max_turns,
        tool_calls=tool_call_count,
        exhausted=True,
    )


def generate_reply(
    db: Session,
    tenant: TenantConfig,
    *,
    user_text: str,
    history: Sequence[ConversationTurn] = (),
    was_audio: bool = False,
    now: Optional[datetime] = None,
) -> Result[ReplyDraft]:
    api_key = resolve_api_key(tenant)
    if not api_key:
        logger.warning("No model credentials", extra={"context": {"company_id": tenant.company_id}})
        return Result.failure("No model credentials for tenant", "config_missing")

    history = tuple(history)
    sections = build_sections(
        tenant,
        available_products(tenant),
        has_history=bool(history),
        was_audio=was_audio,
        now=now,
    )
    user_content = rewrite_user_message(history, user_text)
    if user_content != user_text:
        logger.info("User message rewritten after document offer", extra={"context": {"company_id": tenant.company_id}})

    transcript = (
        (ConversationTurn(role="system", content=render_sections(sections)),)
        + history
        + (ConversationTurn(role="user", content=user_content),)
    )

    try:
        outcome = run_tool_loop(
            get_llm_provider(api_key),
            transcript,
            execute=lambda call: execute_tool(db, tenant, call),
            model=tenant.model_name or DEFAULT_MODEL,
        )
    except (httpx.HTTPError, OpenAIError, ValueError) as e:
        logger.error(
            f"LLM call failed: {e}",
            extra={"context": {"company_id": tenant.company_id}},
        )
        alert_error("LLM call failed", {"company_id": tenant.company_id, "error": str(e)[:300]})
        return Result.failure(str(e), "ai_error")

    text = (outcome.content or "").strip()
    return Result.success(
        ReplyDraft(
            text=text or FALLBACK_RESPONSE,
            transcript=outcome.transcript,
            turns=outcome.turns,
            used_fallback=not text,
        )
    )
