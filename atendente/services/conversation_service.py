import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from atendente.models import Message

MAX_HISTORY_MESSAGES = int(os.environ.get("LLM_HISTORY_MESSAGES", "10"))


@dataclass(frozen=True)
class ConversationTurn:
    role: str  # system, user, assistant, tool
    content: str
    tool_calls: Optional[tuple] = None
    tool_call_id: Optional[str] = None

    def to_message(self) -> dict:
        """Chat-completions wire format."""
        message: dict = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [
                {"id": call.id, "type": "function", "function": {"name": call.name, "arguments": call.arguments}}
                for call in self.tool_calls
            ]
        if self.tool_call_id:
            message["tool_call_id"] = self.tool_call_id
        return message


def get_conversation_history(
    db: Session,
    company_id: str,
    remote_jid: str,
    limit: int = MAX_HISTORY_MESSAGES,
) -> tuple[ConversationTurn, ...]:
    """Last ``limit`` persisted turns, oldest first, as user/assistant turns."""
    messages = (
        db.query(Message)
        .filter(Message.company_id == company_id, Message.remote_jid == remote_jid)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )

    history = []
    for msg in reversed(messages):
        if msg.role not in {"user", "assistant"} or not msg.content:
            continue
        history.append(ConversationTurn(role=msg.role, content=msg.content))
    return tuple(history)


def save_message(
    db: Session,
    company_id: str,
    remote_jid: str,
    role: str,
    content: str,
    message_metadata: Optional[dict] = None,
) -> Message:
    message = Message(
        company_id=company_id,
        remote_jid=remote_jid,
        role=role,
        content=content,
        message_metadata=message_metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message
