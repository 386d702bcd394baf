import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from atendente.database import Base


class AgentConfig(Base):
    __tablename__ = "agent_configs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(Text, nullable=False, unique=True)
    system_prompt = Column(Text)
    model = Column(Text)
    knowledge_base = Column(Text)
    products = Column(JSONB, nullable=False, default=list)  # legacy rows store a JSON string
    integrations = Column(JSONB, nullable=False, default=dict)  # promp, openai, voice, channel binding
    follow_up_config = Column(JSONB, nullable=False, default=dict)
    scheduling_config = Column(JSONB, nullable=False, default=dict)
    calendar_config = Column(JSONB, nullable=False, default=dict)
    updated_at = Column(TIMESTAMP(timezone=True))
