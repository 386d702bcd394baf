import uuid

from sqlalchemy import Column, Index, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from atendente.database import Base


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_company_contact_created", "company_id", "remote_jid", "created_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(Text, nullable=False)
    remote_jid = Column(Text, nullable=False)
    role = Column(Text, nullable=False)  # user, assistant, system
    content = Column(Text, nullable=False)
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
