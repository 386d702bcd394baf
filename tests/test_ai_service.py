from unittest.mock import Mock, patch

import httpx

from atendente.services.ai_service import (
    FALLBACK_RESPONSE,
    MAX_TURNS,
    generate_reply,
    get_llm_provider,
    resolve_api_key,
    run_tool_loop,
)
from atendente.services.conversation_service import ConversationTurn
from atendente.services.llm import LLMResponse, OpenAIError, ToolCall

SYSTEM = (ConversationTurn(role="system", content="sys"), ConversationTurn(role="user", content="oi"))


def tool_response(content="", name="list_available_products", call_id="c1"):
    return LLMResponse(content=content, model="gpt", tool_calls=[ToolCall(id=call_id, name=name, arguments="{}")])


def text_response(content):
    return LLMResponse(content=content, model="gpt")


class TestMaxTurns:
    def test_max_turns_is_three(self):
        assert MAX_TURNS == 3


class TestRunToolLoop:
    def test_plain_content_ends_loop(self):
        provider = Mock()
        provider.generate.return_value = text_response("Olá! Como posso ajudar?")
        execute = Mock()

        outcome = run_tool_loop(provider, SYSTEM, execute=execute)

        assert outcome.content == "Olá! Como posso ajudar?"
        assert outcome.turns == 1
        assert outcome.exhausted is False
        execute.assert_not_called()
        assert outcome.transcript[-1] == ConversationTurn(role="assistant", content="Olá! Como posso ajudar?")

    def test_tool_result_is_fed_back(self):
        provider = Mock()
        provider.generate.side_effect = [tool_response(), text_response("Temos Camisa por R$ 49,90.")]
        execute = Mock(return_value={"success": True, "count": 1})

        outcome = run_tool_loop(provider, SYSTEM, execute=execute)

        assert outcome.turns == 2
        assert outcome.tool_calls == 1
        roles = [turn.role for turn in outcome.transcript]
        assert roles == ["system", "user", "assistant", "tool", "assistant"]
        tool_turn = outcome.transcript[3]
        assert tool_turn.tool_call_id == "c1"
        assert '"count": 1' in tool_turn.content

        second_messages = provider.generate.call_args_list[1].kwargs["messages"]
        assert second_messages[2]["tool_calls"][0]["function"]["name"] == "list_available_products"
        assert second_messages[3] == {"role": "tool", "content": tool_turn.content, "tool_call_id": "c1"}

    def test_tools_run_sequentially_in_order(self):
        provider = Mock()
        provider.generate.side_effect = [
            LLMResponse(
                content="",
                model="gpt",
                tool_calls=[
                    ToolCall(id="a", name="check_availability", arguments='{"date": "2025-03-10"}'),
                    ToolCall(id="b", name="list_available_products", arguments="{}"),
                ],
            ),
            text_response("ok"),
        ]
        executed = []

        outcome = run_tool_loop(provider, SYSTEM, execute=lambda call: executed.append(call.id) or {"success": True})

        assert executed == ["a", "b"]
        assert [turn.tool_call_id for turn in outcome.transcript if turn.role == "tool"] == ["a", "b"]

    def test_loop_stops_after_max_turns_when_model_always_calls_tools(self):
        provider = Mock()
        provider.generate.side_effect = [tool_response(call_id=f"c{i}") for i in range(5)]
        execute = Mock(return_value={"success": True})

        outcome = run_tool_loop(provider, SYSTEM, execute=execute)

        assert provider.generate.call_count == MAX_TURNS
        assert execute.call_count == MAX_TURNS
        assert outcome.turns == MAX_TURNS
        assert outcome.exhausted is True
        assert outcome.content == ""

    def test_exhausted_loop_returns_last_available_content(self):
        provider = Mock()
        provider.generate.side_effect = [
            tool_response(content="Vou verificar..."),
            tool_response(content="Quase lá"),
            tool_response(content=""),
        ]

        outcome = run_tool_loop(provider, SYSTEM, execute=lambda call: {"success": True})

        assert outcome.content == "Quase lá"

    def test_input_transcript_is_not_mutated(self):
        provider = Mock()
        provider.generate.side_effect = [tool_response(), text_response("fim")]
        original = SYSTEM

        outcome = run_tool_loop(provider, original, execute=lambda call: {"success": True})

        assert original == SYSTEM
        assert len(original) == 2
        assert len(outcome.transcript) == 5
        assert isinstance(outcome.transcript, tuple)

    def test_tool_schema_is_offered(self):
        provider = Mock()
        provider.generate.return_value = text_response("oi")

        run_tool_loop(provider, SYSTEM, execute=Mock(), model="gpt-4o")

        kwargs = provider.generate.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert {tool["function"]["name"] for tool in kwargs["tools"]} == {
            "check_availability",
            "book_appointment",
            "list_available_products",
        }


class TestResolveApiKey:
    def test_tenant_key_wins(self, make_tenant):
        assert resolve_api_key(make_tenant(openaiKey="sk-tenant")) == "sk-tenant"

    @patch("atendente.services.ai_service.OPENAI_API_KEY", "sk-env")
    def test_falls_back_to_environment(self, make_tenant):
        assert resolve_api_key(make_tenant(openaiKey="")) == "sk-env"

    @patch("atendente.services.ai_service.OPENAI_API_KEY", None)
    def test_none_when_unresolvable(self, make_tenant):
        assert resolve_api_key(make_tenant(openaiKey=None)) is None


class TestGetLlmProvider:
    def test_one_provider_per_key(self):
        assert get_llm_provider("k1") is get_llm_provider("k1")
        assert get_llm_provider("k1") is not get_llm_provider("k2")


class TestGenerateReply:
    @patch("atendente.services.ai_service.OPENAI_API_KEY", None)
    def test_missing_credentials_is_config_missing(self, make_tenant):
        result = generate_reply(Mock(), make_tenant(openaiKey=None), user_text="oi")

        assert result.ok is False
        assert result.error_code == "config_missing"

    @patch("atendente.services.ai_service.get_llm_provider")
    def test_generates_reply_with_system_context(self, mock_llm, tenant):
        mock_llm.return_value.generate.return_value = text_response("Temos a Camisa!")

        result = generate_reply(Mock(), tenant, user_text="tem camisa?")

        assert result.ok is True
        assert result.value.text == "Temos a Camisa!"
        assert result.value.used_fallback is False
        messages = mock_llm.return_value.generate.call_args.kwargs["messages"]
        assert messages[0]["role"] == "system"
        assert "Camisa" in messages[0]["content"]
        assert messages[-1] == {"role": "user", "content": "tem camisa?"}
        mock_llm.assert_called_once_with("sk-test")

    @patch("atendente.services.ai_service.get_llm_provider")
    def test_history_goes_between_system_and_user(self, mock_llm, tenant):
        mock_llm.return_value.generate.return_value = text_response("Claro")
        history = (
            ConversationTurn(role="user", content="oi"),
            ConversationTurn(role="assistant", content="Olá!"),
        )

        generate_reply(Mock(), tenant, user_text="quero ver camisas", history=history)

        messages = mock_llm.return_value.generate.call_args.kwargs["messages"]
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert "CONTINUIDADE" in messages[0]["content"]

    @patch("atendente.services.ai_service.get_llm_provider")
    def test_exhausted_loop_without_content_uses_fallback(self, mock_llm, tenant):
        mock_llm.return_value.generate.side_effect = [tool_response(call_id=f"c{i}") for i in range(5)]

        result = generate_reply(Mock(), tenant, user_text="agenda pra mim")

        assert result.ok is True
        assert result.value.text == FALLBACK_RESPONSE
        assert result.value.used_fallback is True
        assert result.value.turns == MAX_TURNS

    @patch("atendente.services.ai_service.alert_error")
    @patch("atendente.services.ai_service.get_llm_provider")
    def test_llm_failure_is_ai_error(self, mock_llm, mock_alert, tenant):
        mock_llm.return_value.generate.side_effect = OpenAIError("OpenAI API error: 500")

        result = generate_reply(Mock(), tenant, user_text="oi")

        assert result.ok is False
        assert result.error_code == "ai_error"
        mock_alert.assert_called_once()

    @patch("atendente.services.ai_service.alert_error")
    @patch("atendente.services.ai_service.get_llm_provider")
    def test_llm_timeout_is_ai_error(self, mock_llm, mock_alert, tenant):
        mock_llm.return_value.generate.side_effect = httpx.ReadTimeout("timed out")

        result = generate_reply(Mock(), tenant, user_text="oi")

        assert result.error_code == "ai_error"

    @patch("atendente.services.ai_service.get_llm_provider")
    def test_audio_instructions_when_inbound_was_audio(self, mock_llm, tenant):
        mock_llm.return_value.generate.return_value = text_response("ok")

        generate_reply(Mock(), tenant, user_text="oi", was_audio=True)

        system = mock_llm.return_value.generate.call_args.kwargs["messages"][0]["content"]
        assert "[AUDIO_SCRIPT]" in system
