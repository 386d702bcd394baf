import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from atendente.logging_config import get_logger
from atendente.models import ContactState
from atendente.schemas.tenant import TenantConfig
from atendente.services.payload_normalizer import normalize_digits

logger = get_logger("followup_service")


def _is_self(tenant: TenantConfig, remote_jid: str) -> bool:
    identity = normalize_digits(tenant.identity)
    return bool(identity) and identity == normalize_digits(remote_jid)


def build_outbound_upsert(company_id: str, remote_jid: str, now: datetime, next_follow_up_at: datetime):
    """INSERT ... ON CONFLICT (company_id, remote_jid) DO UPDATE, re-arming attempt 0."""
    armed = {
        "is_active": True,
        "attempt_index": 0,
        "last_outbound_at": now,
        "next_follow_up_at": next_follow_up_at,
    }
    stmt = insert(ContactState).values(id=uuid.uuid4(), company_id=company_id, remote_jid=remote_jid, **armed)
    return stmt.on_conflict_do_update(
        index_elements=[ContactState.company_id, ContactState.remote_jid],
        set_=armed,
    ).returning(ContactState)


def record_outbound(
    db: Session,
    tenant: TenantConfig,
    remote_jid: str,
    now: Optional[datetime] = None,
) -> Optional[ContactState]:
    """Arm the first follow-up timer after the agent (or an operator) writes to a contact.

    Concurrent replies to the same contact race on the unique
    (company_id, remote_jid) pair, so the row is written with one atomic upsert.
    """
    if _is_self(tenant, remote_jid):
        return None

    config = tenant.follow_up
    if not config.enabled or not config.attempts:
        return None

    now = now or datetime.now(timezone.utc)
    next_follow_up_at = now + config.attempts[0].delay

    state = db.scalars(
        build_outbound_upsert(tenant.company_id, remote_jid, now, next_follow_up_at),
        execution_options={"populate_existing": True},
    ).one()

    logger.info(
        "Follow-up armed",
        extra={
            "context": {
                "company_id": tenant.company_id,
                "remote_jid": remote_jid,
                "next_follow_up_at": next_follow_up_at.isoformat(),
            }
        },
    )
    return state


def record_inbound(db: Session, company_id: str, remote_jid: str) -> int:
    """The contact answered: stop every pending follow-up for it."""
    updated = (
        db.query(ContactState)
        .filter(ContactState.company_id == company_id, ContactState.remote_jid == remote_jid)
        .update({ContactState.is_active: False}, synchronize_session=False)
    )
    if updated:
        logger.debug(f"Follow-up cleared for {remote_jid} ({updated} rows)")
    return updated


def list_due_contacts(db: Session, now: Optional[datetime] = None) -> List[ContactState]:
    """Rows an external scheduler should nudge. Nothing here sends or advances attempts."""
    now = now or datetime.now(timezone.utc)
    return (
        db.query(ContactState)
        .filter(ContactState.is_active.is_(True), ContactState.next_follow_up_at <= now)
        .order_by(ContactState.next_follow_up_at)
        .all()
    )
