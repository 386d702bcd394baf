from atendente.models.agent_config import AgentConfig
from atendente.models.appointment import Appointment
from atendente.models.contact_state import ContactState
from atendente.models.message import Message

__all__ = [
    "AgentConfig",
    "Appointment",
    "ContactState",
    "Message",
]
