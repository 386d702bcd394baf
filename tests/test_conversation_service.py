from unittest.mock import Mock

from atendente.models import Message
from atendente.services.conversation_service import ConversationTurn, get_conversation_history, save_message
from atendente.services.llm import ToolCall


class TestGetConversationHistory:
    def test_oldest_first_and_only_dialogue_roles(self):
        db = Mock()
        newest_first = [
            Message(role="assistant", content="Temos sim!"),
            Message(role="system", content="nota interna"),
            Message(role="user", content="tem camisa?"),
            Message(role="user", content=""),
        ]
        db.query().filter().order_by().limit().all.return_value = newest_first

        history = get_conversation_history(db, "company-1", "5511999990000", limit=4)

        assert history == (
            ConversationTurn(role="user", content="tem camisa?"),
            ConversationTurn(role="assistant", content="Temos sim!"),
        )


class TestSaveMessage:
    def test_adds_and_flushes(self):
        db = Mock()

        message = save_message(db, "company-1", "5511999990000", "user", "oi", {"message_id": "m1"})

        db.add.assert_called_once_with(message)
        db.flush.assert_called_once()
        assert message.message_metadata == {"message_id": "m1"}
        assert message.created_at is not None


class TestToMessage:
    def test_tool_calls_in_wire_format(self):
        turn = ConversationTurn(
            role="assistant", content="", tool_calls=(ToolCall(id="c1", name="check_availability", arguments="{}"),)
        )
        assert turn.to_message() == {
            "role": "assistant",
            "content": "",
            "tool_calls": [
                {"id": "c1", "type": "function", "function": {"name": "check_availability", "arguments": "{}"}}
            ],
        }

    def test_tool_result(self):
        turn = ConversationTurn(role="tool", content="{}", tool_call_id="c1")
        assert turn.to_message() == {"role": "tool", "content": "{}", "tool_call_id": "c1"}
