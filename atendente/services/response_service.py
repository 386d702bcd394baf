"""Turns raw model output into ordered, deliverable chunks.

Directive tags handled here:
    [AUDIO_SCRIPT] ... [/AUDIO_SCRIPT]   spoken version of the reply (closing tag optional)
    [SEND_PDF: id]                       one catalog PDF per reply
    [SHOW_IMAGE: id]                     catalog image, in place
No raw tag may reach the customer: unresolved ones become visible text.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Union

from atendente.logging_config import get_logger
from atendente.schemas.tenant import ProductEntry, TenantConfig, VariantEntry
from atendente.services.prompt_builder import format_price
from atendente.services.tools_service import available_products

logger = get_logger("response_service")

AUDIO_SCRIPT_RE = re.compile(r"\[AUDIO_SCRIPT\](.*?)(?:\[/AUDIO_SCRIPT\]|\Z)", re.IGNORECASE | re.DOTALL)
SEND_PDF_RE = re.compile(r"\[SEND_PDF:\s*([^\]]*?)\s*\]", re.IGNORECASE)
SHOW_IMAGE_RE = re.compile(r"\[SHOW_IMAGE:\s*([^\]]*?)\s*\]", re.IGNORECASE)
STRAY_MARKER_RE = re.compile(r"\[/?AUDIO_SCRIPT\]", re.IGNORECASE)
EXTRA_BLANK_LINES_RE = re.compile(r"\n{3,}")

IMAGE_NOT_FOUND = "Imagem indisponível (image not found for id {ref})"
PDF_NOT_FOUND = "PDF indisponível (pdf not found for id {ref})"


@dataclass(frozen=True)
class TextChunk:
    content: str
    unresolved_ref: Optional[str] = None


@dataclass(frozen=True)
class ImageChunk:
    url: str
    caption: str


ResponseChunk = Union[TextChunk, ImageChunk]


@dataclass(frozen=True)
class DocumentAttachment:
    source: str  # URL, data URI or bare base64
    product_id: str
    caption: str


@dataclass(frozen=True)
class ProcessedResponse:
    display_text: str
    chunks: tuple[ResponseChunk, ...]
    script_text: Optional[str] = None
    document: Optional[DocumentAttachment] = None


def _tidy(text: str) -> str:
    return EXTRA_BLANK_LINES_RE.sub("\n\n", text).strip()


def extract_audio_script(text: str) -> tuple[str, Optional[str]]:
    match = AUDIO_SCRIPT_RE.search(text or "")
    if not match:
        return STRAY_MARKER_RE.sub("", text or ""), None
    script = match.group(1).strip() or None
    display = text[: match.start()] + text[match.end() :]
    return STRAY_MARKER_RE.sub("", display), script


def _price_suffix(price, hidden: bool) -> str:
    if hidden or price is None or price == "":
        return ""
    return f" - R$ {format_price(price)}"


def product_caption(product: ProductEntry) -> str:
    return f"{product.name}{_price_suffix(product.price, product.price_hidden)}"


def variant_caption(product: ProductEntry, variant: VariantEntry) -> str:
    name = product.name
    if variant.name and variant.name != product.name:
        name = f"{name} - {variant.name}"
    details = " / ".join(part for part in (variant.color, variant.size) if part)
    if details:
        name = f"{name} ({details})"
    price = variant.price if variant.price not in (None, "") else product.price
    return f"{name}{_price_suffix(price, product.price_hidden)}"


def resolve_image(ref: str, products: List[ProductEntry]) -> Optional[ImageChunk]:
    """Product id, then name substring, then variant id. The match must carry an image."""
    ref = (ref or "").strip()
    if not ref:
        return None

    product = next((p for p in products if p.id == ref), None)
    if product is None:
        lowered = ref.lower()
        product = next((p for p in products if lowered in p.name.lower()), None)
    if product is not None:
        if not product.image:
            return None
        return ImageChunk(url=product.image, caption=product_caption(product))

    for parent in products:
        for variant in parent.variant_items:
            if variant.id == ref:
                image = variant.image or parent.image
                if not image:
                    return None
                return ImageChunk(url=image, caption=variant_caption(parent, variant))
    return None


def resolve_pdf(ref: str, products: List[ProductEntry]) -> Optional[DocumentAttachment]:
    ref = (ref or "").strip()
    product = next((p for p in products if p.id == ref), None)
    if product is None or not product.pdf:
        return None
    return DocumentAttachment(source=product.pdf, product_id=product.id, caption=product.name)


def _apply_pdf(text: str, products: List[ProductEntry]) -> tuple[str, Optional[DocumentAttachment]]:
    match = SEND_PDF_RE.search(text)
    if not match:
        return text, None

    ref = match.group(1)
    document = resolve_pdf(ref, products)
    if document is None:
        logger.warning(f"SEND_PDF unresolved: {ref}")
    replacement = "" if document else PDF_NOT_FOUND.format(ref=ref)
    text = text[: match.start()] + replacement + text[match.end() :]
    # single document per reply
    return SEND_PDF_RE.sub("", text), document


def _split_images(text: str, products: List[ProductEntry]) -> tuple[tuple[ResponseChunk, ...], str]:
    chunks: List[ResponseChunk] = []
    display_parts: List[str] = []
    cursor = 0

    def add_text(segment: str) -> None:
        segment = _tidy(segment)
        if segment:
            chunks.append(TextChunk(content=segment))
            display_parts.append(segment)

    for match in SHOW_IMAGE_RE.finditer(text):
        add_text(text[cursor : match.start()])
        cursor = match.end()
        ref = match.group(1)
        image = resolve_image(ref, products)
        if image is not None:
            chunks.append(image)
        else:
            logger.warning(f"SHOW_IMAGE unresolved: {ref}")
            message = IMAGE_NOT_FOUND.format(ref=ref)
            chunks.append(TextChunk(content=message, unresolved_ref=ref))
            display_parts.append(message)
    add_text(text[cursor:])

    return tuple(chunks), "\n\n".join(display_parts)


def postprocess_response(text: str, tenant: TenantConfig) -> ProcessedResponse:
    products = available_products(tenant)

    display, script_text = extract_audio_script(text or "")
    display, document = _apply_pdf(display, products)
    chunks, display_text = _split_images(display, products)

    return ProcessedResponse(
        display_text=display_text,
        chunks=chunks,
        script_text=script_text,
        document=document,
    )
