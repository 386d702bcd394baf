import uuid

from sqlalchemy import Boolean, Column, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from atendente.database import Base


class ContactState(Base):
    __tablename__ = "contact_states"
    __table_args__ = (UniqueConstraint("company_id", "remote_jid", name="uq_contact_states_company_jid"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(Text, nullable=False)
    remote_jid = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    attempt_index = Column(Integer, nullable=False, default=0)
    last_outbound_at = Column(TIMESTAMP(timezone=True))
    next_follow_up_at = Column(TIMESTAMP(timezone=True))
