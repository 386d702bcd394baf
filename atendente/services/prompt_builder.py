"""System context assembled from independent sections in a fixed order."""

import os
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from atendente.schemas.tenant import ProductEntry, TenantConfig
from atendente.services.conversation_service import ConversationTurn

MAX_KNOWLEDGE_CHARS = int(os.environ.get("LLM_KNOWLEDGE_CHARS", "4000"))

DEFAULT_PERSONA = "Você é um atendente virtual cordial de uma empresa brasileira. Responda em português do Brasil."

WEEKDAYS_PT = ("segunda-feira", "terça-feira", "quarta-feira", "quinta-feira", "sexta-feira", "sábado", "domingo")

ANTI_HALLUCINATION_RULES = """REGRAS DE VERACIDADE:
- Use apenas produtos, preços e informações presentes neste contexto ou retornados pelas ferramentas.
- Nunca invente produtos, preços, prazos, links ou imagens.
- Se não souber, diga que vai verificar ou peça mais detalhes.
- Para saber o que está disponível agora, use a ferramenta list_available_products; o histórico da conversa pode estar desatualizado.
- Para horários, use check_availability antes de sugerir e book_appointment só depois que o cliente confirmar."""

RESPONSE_FORMAT_RULES = """FORMATO DA RESPOSTA:
- Mensagens curtas, no estilo WhatsApp. Separe assuntos diferentes com uma linha em branco.
- Para mostrar a foto de um item com imagem, escreva exatamente [SHOW_IMAGE: ID]. Uma tag por item.
- Para enviar o PDF de um item, escreva exatamente [SEND_PDF: ID]. No máximo um PDF por resposta.
- Nunca escreva links de imagem ou PDF; use somente as tags acima."""

CONTINUITY_RULES = """CONTINUIDADE:
- Esta conversa já está em andamento. Não se apresente novamente nem repita a saudação.
- Retome o assunto a partir da última mensagem do cliente."""

AUDIO_RULES = """MENSAGEM DE ÁUDIO:
- O cliente enviou um áudio, transcrito abaixo. Sua resposta também será convertida em áudio.
- Ao final, escreva [AUDIO_SCRIPT] seguido do texto a ser falado: natural, sem emojis, sem listas, sem tags."""

STOCK_HEADER = (
    "CATÁLOGO DISPONÍVEL AGORA (verificado no estoque; itens fora desta lista estão indisponíveis, "
    "não os ofereça):"
)

OFFER_VOCABULARY = (
    "pdf",
    "arquivo",
    "documento",
    "catálogo",
    "catalogo",
    "tabela",
    "material",
    "ficha técnica",
    "ficha tecnica",
    "apresentação",
    "apresentacao",
)

AFFIRMATIONS = {
    "sim",
    "s",
    "ss",
    "quero",
    "quero sim",
    "pode",
    "pode sim",
    "pode mandar",
    "pode enviar",
    "manda",
    "manda sim",
    "envia",
    "ok",
    "claro",
    "isso",
    "por favor",
    "bora",
    "aham",
    "yes",
}
MAX_AFFIRMATION_WORDS = 4


@dataclass(frozen=True)
class PromptSection:
    name: str
    content: str


def persona_section(tenant: TenantConfig) -> PromptSection:
    return PromptSection("persona", (tenant.system_prompt or "").strip() or DEFAULT_PERSONA)


def datetime_section(tenant: TenantConfig, now: Optional[datetime] = None) -> PromptSection:
    try:
        zone = ZoneInfo(tenant.scheduling.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    now = (now or datetime.now(zone)).astimezone(zone)
    weekday = WEEKDAYS_PT[now.weekday()]
    return PromptSection(
        "datetime",
        f"DATA E HORA ATUAIS: {weekday}, {now.strftime('%d/%m/%Y %H:%M')} ({tenant.scheduling.timezone}).",
    )


def format_price(price) -> str:
    if isinstance(price, float) and price.is_integer():
        return str(int(price))
    return str(price)


def _product_line(product: ProductEntry) -> str:
    label = "SERVIÇO" if product.is_service else "PRODUTO"
    price = "sob consulta" if product.price_hidden or product.price is None else f"R$ {format_price(product.price)}"
    flags = []
    if product.image:
        flags.append(f"[TEM_IMAGEM] use [SHOW_IMAGE: {product.id}]")
    if product.pdf:
        flags.append(f"[TEM_PDF] use [SEND_PDF: {product.id}]")
    if product.payment_link:
        flags.append(f"link de pagamento: {product.payment_link}")
    line = f"- [{label}] ID: {product.id} | Nome: {product.name} | Preço: {price}"
    if flags:
        line += " | " + " | ".join(flags)
    if product.description:
        line += f"\n  {product.description.strip()[:300]}"
    for variant in product.variant_items:
        details = ", ".join(part for part in (variant.color, variant.size) if part)
        image_flag = " [TEM_IMAGEM]" if variant.image or product.image else ""
        line += f"\n  -- [VARIAÇÃO] ID: {variant.id} | {variant.name}{f' ({details})' if details else ''}{image_flag}"
    return line


def product_section(products: Sequence[ProductEntry]) -> PromptSection:
    if not products:
        return PromptSection("products", f"{STOCK_HEADER}\n(nenhum item disponível no momento)")
    lines = "\n".join(_product_line(product) for product in products)
    return PromptSection("products", f"{STOCK_HEADER}\n{lines}")


def knowledge_section(knowledge_base: Optional[str], max_chars: int = MAX_KNOWLEDGE_CHARS) -> Optional[PromptSection]:
    text = (knowledge_base or "").strip()
    if not text:
        return None
    if len(text) > max_chars:
        text = text[:max_chars].rsplit(" ", 1)[0] + "..."
    return PromptSection("knowledge", f"BASE DE CONHECIMENTO:\n{text}")


def build_sections(
    tenant: TenantConfig,
    products: Sequence[ProductEntry],
    *,
    has_history: bool,
    was_audio: bool,
    now: Optional[datetime] = None,
) -> tuple[PromptSection, ...]:
    sections = (
        persona_section(tenant),
        datetime_section(tenant, now),
        PromptSection("anti_hallucination", ANTI_HALLUCINATION_RULES),
        PromptSection("response_format", RESPONSE_FORMAT_RULES),
        product_section(products),
        knowledge_section(tenant.knowledge_base),
        PromptSection("continuity", CONTINUITY_RULES) if has_history else None,
        PromptSection("audio", AUDIO_RULES) if was_audio else None,
    )
    return tuple(section for section in sections if section is not None)


def render_sections(sections: Sequence[PromptSection]) -> str:
    return "\n\n".join(section.content for section in sections)


def _normalize(text: str) -> str:
    return re.sub(r"[^\w\s]", "", (text or "").lower()).strip()


def is_short_affirmation(text: str) -> bool:
    normalized = _normalize(text)
    if not normalized or len(normalized.split()) > MAX_AFFIRMATION_WORDS:
        return False
    return normalized in AFFIRMATIONS or normalized.split()[0] in {"sim", "quero", "pode", "manda", "claro"}


def _mentions_offer(text: str) -> bool:
    lowered = (text or "").lower()
    return any(word in lowered for word in OFFER_VOCABULARY)


def rewrite_user_message(history: Sequence[ConversationTurn], user_text: str) -> str:
    """Make a bare "sim" after a document offer explicit for the model."""
    last_assistant = next((turn for turn in reversed(history) if turn.role == "assistant"), None)
    if last_assistant is None:
        return user_text

    offer = last_assistant.content.strip()
    if not (_mentions_offer(offer) and offer.endswith("?") and is_short_affirmation(user_text)):
        return user_text

    return (
        f'O cliente respondeu "{user_text.strip()}" aceitando a sua oferta anterior: "{offer[-300:]}". '
        "Envie agora o arquivo oferecido usando a tag [SEND_PDF: ID] do produto correspondente."
    )
