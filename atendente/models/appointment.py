import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from atendente.database import Base


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(Text, nullable=False)
    customer_name = Column(Text, nullable=False)
    customer_phone = Column(Text, nullable=False)
    start_time = Column(TIMESTAMP(timezone=True), nullable=False)
    end_time = Column(TIMESTAMP(timezone=True), nullable=False)
    specialist_id = Column(Text)
    type_id = Column(Text)
    notes = Column(Text)
    external_event_id = Column(Text)
    external_link = Column(Text)
    status = Column(Text, nullable=False, default="scheduled")  # scheduled, cancelled
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
