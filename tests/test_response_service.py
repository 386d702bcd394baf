import pytest

from atendente.services.response_service import (
    DocumentAttachment,
    ImageChunk,
    TextChunk,
    extract_audio_script,
    postprocess_response,
    resolve_image,
    variant_caption,
)
from atendente.services.tools_service import available_products


class TestShowImage:
    def test_resolved_image_follows_text(self, tenant):
        processed = postprocess_response("Aqui está! [SHOW_IMAGE: 123]", tenant)

        assert processed.chunks == (
            TextChunk(content="Aqui está!"),
            ImageChunk(url="http://x/i.jpg", caption="Camisa - R$ 49.9"),
        )

    def test_unknown_id_becomes_visible_error(self, tenant):
        processed = postprocess_response("[SHOW_IMAGE: 999]", tenant)

        assert len(processed.chunks) == 1
        chunk = processed.chunks[0]
        assert isinstance(chunk, TextChunk)
        assert chunk.unresolved_ref == "999"
        assert "image not found for id 999" in chunk.content
        assert "image not found for id 999" in processed.display_text

    @pytest.mark.parametrize(
        "text",
        [
            "Olha [SHOW_IMAGE: 123] e [SHOW_IMAGE: p5] e [SHOW_IMAGE: 999]",
            "[SHOW_IMAGE:123][SHOW_IMAGE:v1]",
            "[show_image: camisa] texto [SHOW_IMAGE: p3]",
        ],
    )
    def test_every_tag_yields_one_chunk_and_no_raw_tag(self, tenant, text):
        processed = postprocess_response(text, tenant)

        tag_count = text.lower().count("[show_image")
        image_like = [c for c in processed.chunks if isinstance(c, ImageChunk) or c.unresolved_ref is not None]
        assert len(image_like) == tag_count
        joined = " ".join(c.content for c in processed.chunks if isinstance(c, TextChunk))
        assert "SHOW_IMAGE" not in joined.upper()

    def test_text_is_split_around_images_in_order(self, tenant):
        processed = postprocess_response("Primeira [SHOW_IMAGE: 123] segunda [SHOW_IMAGE: v1] fim", tenant)

        kinds = [type(c).__name__ for c in processed.chunks]
        assert kinds == ["TextChunk", "ImageChunk", "TextChunk", "ImageChunk", "TextChunk"]
        assert processed.chunks[2].content == "segunda"
        assert processed.display_text == "Primeira\n\nsegunda\n\nfim"

    def test_plain_text_is_single_chunk(self, tenant):
        processed = postprocess_response("Olá!  \n\n\n\nTudo bem?", tenant)
        assert processed.chunks == (TextChunk(content="Olá!  \n\nTudo bem?"),)


class TestResolveImage:
    def test_name_substring_match(self, tenant):
        image = resolve_image("camisa", available_products(tenant))
        assert image.url == "http://x/i.jpg"

    def test_variant_with_own_image(self, tenant):
        image = resolve_image("v1", available_products(tenant))
        assert image == ImageChunk(url="http://x/azul.jpg", caption="Tênis - Tênis Azul (Azul / 42) - R$ 250")

    def test_variant_without_image_and_parent_without_image(self, tenant):
        assert resolve_image("v2", available_products(tenant)) is None

    def test_product_without_image_is_unresolved(self, tenant):
        assert resolve_image("p2", available_products(tenant)) is None

    def test_unavailable_products_are_not_resolved(self, tenant):
        products = available_products(tenant)
        assert resolve_image("p3", products) is None
        assert resolve_image("p4", products) is None

    def test_variant_falls_back_to_parent_image(self, make_tenant):
        tenant = make_tenant(
            products=[
                {"id": "p", "name": "Vestido", "price": 99, "image": "http://x/v.jpg", "variantItems": [{"id": "vv", "size": "M"}]}
            ]
        )
        image = resolve_image("vv", available_products(tenant))
        assert image.url == "http://x/v.jpg"
        assert image.caption == "Vestido (M) - R$ 99"

    def test_empty_ref(self, tenant):
        assert resolve_image("  ", available_products(tenant)) is None


class TestCaptions:
    def test_hidden_price_is_omitted(self, make_tenant):
        tenant = make_tenant(products=[{"id": "1", "name": "Sob Medida", "price": 999, "priceHidden": True, "image": "u"}])
        processed = postprocess_response("[SHOW_IMAGE: 1]", tenant)
        assert processed.chunks[0].caption == "Sob Medida"

    def test_variant_price_overrides_parent(self, tenant):
        parent = next(p for p in tenant.products if p.id == "p5")
        variant = parent.variant_items[1].model_copy(update={"price": 199})
        assert variant_caption(parent, variant) == "Tênis - Tênis Preto (Preto / 40) - R$ 199"


class TestSendPdf:
    def test_resolved_pdf_is_attached_and_tag_removed(self, tenant):
        processed = postprocess_response("Segue a tabela. [SEND_PDF: p2]", tenant)

        assert processed.document == DocumentAttachment(
            source="http://x/calca.pdf", product_id="p2", caption="Calça Jeans"
        )
        assert processed.display_text == "Segue a tabela."

    def test_only_first_pdf_is_sent(self, tenant):
        processed = postprocess_response("[SEND_PDF: p2] e [SEND_PDF: 123]", tenant)

        assert processed.document.product_id == "p2"
        assert "SEND_PDF" not in processed.display_text

    def test_unresolved_pdf_is_visible(self, tenant):
        processed = postprocess_response("Segue: [SEND_PDF: 123]", tenant)

        assert processed.document is None
        assert "pdf not found for id 123" in processed.display_text


class TestAudioScript:
    def test_script_is_split_from_display(self, tenant):
        processed = postprocess_response(
            "A camisa custa R$ 49,90.\n[AUDIO_SCRIPT]A camisa custa quarenta e nove e noventa.[/AUDIO_SCRIPT]",
            tenant,
        )

        assert processed.display_text == "A camisa custa R$ 49,90."
        assert processed.script_text == "A camisa custa quarenta e nove e noventa."

    def test_closing_tag_is_optional(self):
        display, script = extract_audio_script("Oi! [AUDIO_SCRIPT] Oi, tudo bem?")
        assert display == "Oi! "
        assert script == "Oi, tudo bem?"

    def test_no_script(self):
        assert extract_audio_script("Oi") == ("Oi", None)

    def test_empty_script_is_none(self):
        display, script = extract_audio_script("Oi [AUDIO_SCRIPT][/AUDIO_SCRIPT]")
        assert script is None
        assert "AUDIO_SCRIPT" not in display

    def test_stray_closing_marker_is_removed(self, tenant):
        processed = postprocess_response("Oi [/AUDIO_SCRIPT] tudo bem", tenant)
        assert "AUDIO_SCRIPT" not in processed.display_text
