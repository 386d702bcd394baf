from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from atendente.database import get_db
from atendente.logging_config import bind_logger, get_logger
from atendente.schemas.tenant import TenantConfig
from atendente.schemas.webhook import WebhookResponse
from atendente.services.ai_service import (
    CONFIG_MISSING_RESPONSE,
    MSG_AI_ERROR,
    generate_reply,
    get_llm_provider,
    resolve_api_key,
)
from atendente.services.alert_service import alert_critical
from atendente.services.audio_service import should_synthesize, synthesize_speech, transcribe_inbound_audio
from atendente.services.channel_service import (
    ChannelValidityCache,
    OutboundPart,
    dispatch_parts,
    get_validity_cache,
    lookup_channel,
    send_presence,
    split_bubbles,
)
from atendente.services.conversation_service import get_conversation_history, save_message
from atendente.services.dedup_service import DedupCache, get_dedup_cache
from atendente.services.followup_service import record_inbound, record_outbound
from atendente.services.isolation_service import check_isolation
from atendente.services.payload_normalizer import INSUFFICIENT_DATA, MessageEnvelope, normalize_payload
from atendente.services.response_service import ImageChunk, ProcessedResponse, postprocess_response
from atendente.services.tenant_service import load_tenant

logger = get_logger("webhook")

router = APIRouter()

AUDIO_CAPTION = "Áudio da IA"


def build_outbound_parts(processed: ProcessedResponse, audio_base64: Optional[str] = None) -> List[OutboundPart]:
    """Chunks in order (text split into bubbles), then the PDF, then the voice note."""
    parts: List[OutboundPart] = []
    for chunk in processed.chunks:
        if isinstance(chunk, ImageChunk):
            parts.append(OutboundPart(kind="image", content=chunk.url, caption=chunk.caption))
        else:
            parts.extend(OutboundPart(kind="text", content=bubble) for bubble in split_bubbles(chunk.content))

    if processed.document:
        parts.append(
            OutboundPart(
                kind="document",
                content=processed.document.source,
                caption=processed.document.caption,
                mime_type="application/pdf",
            )
        )
    if audio_base64:
        parts.append(OutboundPart(kind="audio", content=audio_base64, caption=AUDIO_CAPTION, mime_type="audio/mpeg"))
    return parts


def _send_config_missing(db: Session, tenant: TenantConfig, envelope: MessageEnvelope) -> WebhookResponse:
    report = dispatch_parts(tenant, envelope.sender_id, [OutboundPart(kind="text", content=CONFIG_MISSING_RESPONSE)])
    save_message(db, tenant.company_id, envelope.sender_id, "assistant", CONFIG_MISSING_RESPONSE, {"config_missing": True})
    db.commit()
    return WebhookResponse(status="config_missing", bot_response=CONFIG_MISSING_RESPONSE, parts_sent=report.sent)


def process_webhook_payload(
    db: Session,
    payload: Any,
    *,
    company_hint: Optional[str] = None,
    dedup_cache: DedupCache,
    validity_cache: ChannelValidityCache,
) -> WebhookResponse:
    """Full inbound pipeline for one delivery. Business drops answer ``ignored_*``."""
    envelope = normalize_payload(payload, company_hint)
    if envelope is INSUFFICIENT_DATA:
        return WebhookResponse(status="ignored_insufficient_data")

    if not dedup_cache.should_process(envelope.external_id):
        return WebhookResponse(status="ignored_duplicate")

    log = bind_logger(
        "webhook",
        company_id=envelope.company_id,
        remote_jid=envelope.sender_id,
        message_id=envelope.external_id,
    )

    tenant_result = load_tenant(db, envelope.company_id)
    if not tenant_result.ok:
        log.info(f"Tenant not loaded: {tenant_result.error_code}")
        if tenant_result.error_code == "invalid_config":
            return WebhookResponse(status="ignored_invalid_config")
        return WebhookResponse(status="ignored_unknown_tenant")
    tenant = tenant_result.value

    decision = check_isolation(envelope, tenant, validity_cache=validity_cache, channel_lookup=lookup_channel)
    if not decision.proceed:
        return WebhookResponse(status=decision.status)

    if envelope.is_from_me:
        # operator typed in the chat (or an echo without the platform flag): arm follow-up only
        state = record_outbound(db, tenant, envelope.sender_id)
        if state is None:
            # follow-up disabled, no attempts configured, or the tenant's own number
            return WebhookResponse(status="ignored_from_me")
        db.commit()
        return WebhookResponse(status="outbound_recorded")

    record_inbound(db, tenant.company_id, envelope.sender_id)

    api_key = resolve_api_key(tenant)
    if not api_key:
        log.warning("No model credentials, sending configuration notice")
        return _send_config_missing(db, tenant, envelope)

    text = envelope.text
    was_audio = envelope.is_audio
    if was_audio:
        send_presence(tenant, envelope.ticket_id, "recording")
        transcript = transcribe_inbound_audio(envelope.media_payload, get_llm_provider(api_key))
        if transcript.ok:
            text = transcript.value
            log.info("Inbound audio transcribed", context={"chars": len(text)})
        else:
            log.warning(f"Inbound audio not transcribed: {transcript.error}")

    if not text:
        db.commit()
        return WebhookResponse(status="ignored_empty_message")

    send_presence(tenant, envelope.ticket_id, "typing")

    history = get_conversation_history(db, tenant.company_id, envelope.sender_id)
    save_message(
        db,
        tenant.company_id,
        envelope.sender_id,
        "user",
        text,
        {"message_id": envelope.external_id, "was_audio": was_audio, "sender_name": envelope.sender_name},
    )

    draft = generate_reply(db, tenant, user_text=text, history=history, was_audio=was_audio)
    if not draft.ok and draft.error_code == "config_missing":
        return _send_config_missing(db, tenant, envelope)
    reply_text = draft.map(lambda reply: reply.text).unwrap_or(MSG_AI_ERROR)

    processed = postprocess_response(reply_text, tenant)

    audio_base64 = None
    if should_synthesize(tenant.voice, was_audio):
        speech = synthesize_speech(processed.script_text or processed.display_text, tenant.voice)
        audio_base64 = speech.unwrap_or(None)

    parts = build_outbound_parts(processed, audio_base64)
    report = dispatch_parts(tenant, envelope.sender_id, parts)

    save_message(
        db,
        tenant.company_id,
        envelope.sender_id,
        "assistant",
        processed.display_text or reply_text,
        {
            "parts": len(parts),
            "parts_sent": report.sent,
            "has_audio": bool(audio_base64),
            "document": processed.document.product_id if processed.document else None,
            "ai_error": draft.error_code if not draft.ok else None,
        },
    )
    if report.sent:
        record_outbound(db, tenant, envelope.sender_id)
    db.commit()

    log.info(
        "Reply dispatched",
        context={"parts": len(parts), "sent": report.sent, "failed": report.failed, "turns": draft.value.turns if draft.ok else 0},
    )
    return WebhookResponse(
        status="sent_via_api" if report.sent else "dispatch_failed",
        detail=None if draft.ok else draft.error_code,
        bot_response=processed.display_text,
        parts_sent=report.sent,
    )


async def _read_payload(request: Request, company_id: Optional[str]) -> Any:
    try:
        return await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read", extra={"context": {"company_id": company_id}})
        return WebhookResponse(status="ignored_client_disconnected")
    except ValueError as exc:
        try:
            raw = await request.body()
        except ClientDisconnect:
            return WebhookResponse(status="ignored_client_disconnected")
        if not raw or not raw.strip():
            logger.info("Webhook ping with empty body", extra={"context": {"company_id": company_id}})
            return WebhookResponse(status="ignored_empty_payload")
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        return WebhookResponse(status="ignored_invalid_json")


@router.get("/webhook/{company_id}")
async def webhook_ping(company_id: str):
    return {"status": "ok", "company_id": company_id}


@router.post("/webhook", response_model=WebhookResponse, response_model_exclude_none=True)
@router.post("/webhook/{company_id}", response_model=WebhookResponse, response_model_exclude_none=True)
async def receive_webhook(
    request: Request,
    company_id: Optional[str] = None,
    db: Session = Depends(get_db),
    dedup_cache: DedupCache = Depends(get_dedup_cache),
    validity_cache: ChannelValidityCache = Depends(get_validity_cache),
):
    payload = await _read_payload(request, company_id)
    if isinstance(payload, WebhookResponse):
        return payload

    try:
        return await run_in_threadpool(
            process_webhook_payload,
            db,
            payload,
            company_hint=company_id,
            dedup_cache=dedup_cache,
            validity_cache=validity_cache,
        )
    except Exception as e:
        db.rollback()
        logger.error(
            f"Webhook processing failed: {e}",
            extra={"context": {"company_id": company_id}},
            exc_info=True,
        )
        alert_critical("Webhook processing failed", {"company_id": company_id, "error": str(e)[:300]})
        raise
