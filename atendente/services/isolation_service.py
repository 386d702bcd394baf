"""Decides whether an inbound envelope really belongs to the addressed tenant.

The webhook endpoint is shared by every tenant, so each message must be
provably routed to exactly one of them before any model call. Checks run in
a fixed order and the first failing one wins; ambiguity means drop.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from atendente.logging_config import get_logger
from atendente.schemas.tenant import TenantConfig
from atendente.services.channel_service import ChannelValidityCache
from atendente.services.payload_normalizer import MessageEnvelope, normalize_digits
from atendente.services.result import Result

logger = get_logger("isolation_service")

STATUS_BROADCAST_JID = "status@broadcast"

PROTOCOL_MESSAGE_TYPES = {
    "protocolmessage",
    "senderkeydistributionmessage",
    "messagecontextinfo",
    "reactionmessage",
    "pollupdatemessage",
    "ephemeralmessage",
    "devicesentmessage",
}

ChannelLookup = Callable[[str, str], Result[dict]]


class DropReason(str, Enum):
    LOOP_PROTECTION = "loop_protection"
    FILTERED_KIND = "filtered_kind"
    PROTOCOL = "protocol"
    MISSING_CONNECTION_ID = "missing_connection_id"
    WRONG_CONNECTION = "wrong_connection"
    WRONG_IDENTITY = "wrong_identity"
    CHANNEL_MISMATCH = "channel_mismatch"
    VALIDATION_ERROR = "validation_error"


@dataclass(frozen=True)
class IsolationDecision:
    proceed: bool
    reason: Optional[DropReason] = None

    @property
    def status(self) -> str:
        return f"ignored_{self.reason.value}" if self.reason else "proceed"


PROCEED = IsolationDecision(proceed=True)


def _drop(reason: DropReason, envelope: MessageEnvelope, **context) -> IsolationDecision:
    logger.info(
        f"Message dropped: {reason.value}",
        extra={
            "context": {
                "company_id": envelope.company_id,
                "sender": envelope.sender_id,
                "message_id": envelope.external_id,
                **context,
            }
        },
    )
    return IsolationDecision(proceed=False, reason=reason)


def _is_filtered_kind(envelope: MessageEnvelope) -> bool:
    sender = envelope.sender_id.lower()
    return envelope.is_group or envelope.is_broadcast or sender == STATUS_BROADCAST_JID or sender.endswith("@g.us")


def _channel_matches(channel: dict, connection_id: str) -> bool:
    expected = connection_id.strip()
    candidates = (channel.get("id"), channel.get("name"))
    return any(value is not None and str(value).strip() == expected for value in candidates)


def check_isolation(
    envelope: MessageEnvelope,
    tenant: TenantConfig,
    *,
    validity_cache: ChannelValidityCache,
    channel_lookup: ChannelLookup,
) -> IsolationDecision:
    if envelope.sent_by_platform:
        return _drop(DropReason.LOOP_PROTECTION, envelope)

    if _is_filtered_kind(envelope):
        return _drop(DropReason.FILTERED_KIND, envelope)

    if (envelope.message_type or "").strip().lower() in PROTOCOL_MESSAGE_TYPES:
        return _drop(DropReason.PROTOCOL, envelope, message_type=envelope.message_type)

    if tenant.connection_id:
        if not envelope.connection_id:
            return _drop(DropReason.MISSING_CONNECTION_ID, envelope, expected=tenant.connection_id)
        if envelope.connection_id.strip() != tenant.connection_id.strip():
            return _drop(
                DropReason.WRONG_CONNECTION,
                envelope,
                expected=tenant.connection_id,
                received=envelope.connection_id,
            )

    owner = normalize_digits(envelope.owner_id)

    if tenant.identity and owner:
        if normalize_digits(tenant.identity) != owner:
            return _drop(DropReason.WRONG_IDENTITY, envelope, owner=owner)

    if tenant.promp_token and tenant.connection_id and owner:
        cached = validity_cache.get(tenant.promp_token, owner)
        if cached is None:
            lookup = channel_lookup(tenant.promp_token, owner)
            if not lookup.ok:
                # transient; not cached so the next delivery retries the lookup
                return _drop(DropReason.VALIDATION_ERROR, envelope, error=lookup.error)
            cached = _channel_matches(lookup.value or {}, tenant.connection_id)
            validity_cache.set(tenant.promp_token, owner, cached)
        if not cached:
            return _drop(DropReason.CHANNEL_MISMATCH, envelope, owner=owner)

    return PROCEED
