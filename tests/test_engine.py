"""Tests for the LLM turn generator and prompt-condition matcher."""
import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.settings import LLMConfig, Settings
from core.engine import (
    CONDITION_TOOL_NAME, EMPTY_REPLY, TURN_TOOL_NAME, ConversationEngine,
)
from models.schemas import ContentConfig, TransitionCondition


def openai_response(tool_name: str = None, arguments: dict = None, text: str = "",
                    raw_arguments: str = None):
    tool_calls = []
    if tool_name:
        tool_calls.append(SimpleNamespace(function=SimpleNamespace(
            name=tool_name,
            arguments=raw_arguments if raw_arguments is not None else json.dumps(arguments or {}),
        )))
    message = SimpleNamespace(content=text, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def openai_client(*responses, side_effect=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        side_effect=side_effect if side_effect is not None else list(responses),
    )
    return client


@pytest.fixture
def llm_settings():
    return Settings(llm=LLMConfig(provider="openai", model="gpt-4o-mini",
                                  condition_model="gpt-4o-mini", api_key="test",
                                  timeout_seconds=0.5))


@pytest.fixture
def transitions():
    return [
        TransitionCondition(type="equation", condition="{{n}} > 3", handle="big"),
        TransitionCondition(type="prompt", condition="User wants to book", handle="book"),
        TransitionCondition(type="prompt", condition="User wants to cancel", handle="cancel"),
    ]


PROMPT = ContentConfig(mode="prompt", content="You help {{name}} book a table.")


class TestGenerateTurn:

    @pytest.mark.asyncio
    async def test_structured_output(self, llm_settings, transitions):
        client = openai_client(openai_response(TURN_TOOL_NAME, {
            "response": "Great, for how many people?",
            "matched_transition": "book",
            "extracted_variables": {"party_size": 4},
        }))
        engine = ConversationEngine(llm_settings, client=client)

        result = await engine.generate_turn(PROMPT, "I'd like to book", {"name": "Ana"}, [], transitions)

        assert result.response == "Great, for how many people?"
        assert result.matched_transition == "book"
        assert result.extracted_variables == {"party_size": 4}

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["tool_choice"]["function"]["name"] == TURN_TOOL_NAME
        system = kwargs["messages"][0]["content"]
        assert "You help Ana book a table." in system
        assert 'handle="big"' in system and 'handle="cancel"' in system

    @pytest.mark.asyncio
    async def test_unknown_handle_is_dropped(self, llm_settings, transitions):
        client = openai_client(openai_response(TURN_TOOL_NAME, {
            "response": "Okay.", "matched_transition": "teleport", "extracted_variables": None,
        }))
        engine = ConversationEngine(llm_settings, client=client)

        result = await engine.generate_turn(PROMPT, "hi", {}, [], transitions)
        assert result.response == "Okay."
        assert result.matched_transition is None
        assert result.extracted_variables == {}

    @pytest.mark.asyncio
    async def test_missing_tool_call_uses_raw_text(self, llm_settings, transitions):
        client = openai_client(openai_response(text="Sorry, which day?"))
        engine = ConversationEngine(llm_settings, client=client)

        result = await engine.generate_turn(PROMPT, "tomorrow", {}, [], transitions)
        assert result.response == "Sorry, which day?"
        assert result.matched_transition is None
        assert result.extracted_variables == {}

    @pytest.mark.asyncio
    async def test_malformed_arguments_use_raw_text(self, llm_settings, transitions):
        client = openai_client(openai_response(TURN_TOOL_NAME, raw_arguments="{not json",
                                               text=""))
        engine = ConversationEngine(llm_settings, client=client)

        result = await engine.generate_turn(PROMPT, "hi", {}, [], transitions)
        assert result.response == EMPTY_REPLY

    @pytest.mark.asyncio
    async def test_api_failure_falls_back(self, llm_settings, transitions):
        client = openai_client(side_effect=RuntimeError("quota exceeded"))
        engine = ConversationEngine(llm_settings, client=client)

        result = await engine.generate_turn(PROMPT, "hi", {}, [], transitions)
        assert result.response == llm_settings.engine.fallback_message
        assert result.matched_transition is None

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self, llm_settings, transitions):
        async def stall(**kwargs):
            await asyncio.sleep(5)

        client = openai_client(side_effect=stall)
        engine = ConversationEngine(llm_settings, client=client)

        result = await engine.generate_turn(PROMPT, "hi", {}, [], transitions)
        assert result.response == llm_settings.engine.fallback_message

    @pytest.mark.asyncio
    async def test_no_api_key_falls_back(self, transitions):
        engine = ConversationEngine(Settings(llm=LLMConfig(api_key="")))
        result = await engine.generate_turn(PROMPT, "hi", {}, [], transitions)
        assert result.response == engine.fallback_message

    @pytest.mark.asyncio
    async def test_global_prompt_comes_first(self, llm_settings):
        client = openai_client(openai_response(TURN_TOOL_NAME, {
            "response": "Hello.", "matched_transition": None, "extracted_variables": {},
        }))
        engine = ConversationEngine(llm_settings, client=client)

        await engine.generate_turn(PROMPT, "", {"name": "Ana"}, [], [],
                                   global_prompt="You are Max from Bistro.")
        system = client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        assert system.index("You are Max from Bistro.") < system.index("You help Ana")


class TestBuildMessages:
    def test_history_roles_and_dedup(self, llm_settings):
        engine = ConversationEngine(llm_settings, client=MagicMock())
        history = [
            {"role": "assistant", "content": "Hi there"},
            {"role": "user", "content": "book a table"},
        ]
        messages = engine._build_messages(history, "book a table")
        assert messages == [
            {"role": "user", "content": "[Call connected]"},
            {"role": "assistant", "content": "Hi there"},
            {"role": "user", "content": "book a table"},
        ]

    def test_empty_conversation(self, llm_settings):
        engine = ConversationEngine(llm_settings, client=MagicMock())
        assert engine._build_messages([], "") == [{"role": "user", "content": "[Call connected]"}]


class TestMatchPromptConditions:

    @pytest.mark.asyncio
    async def test_single_request_for_all_prompts(self, llm_settings, transitions):
        prompts = [t for t in transitions if t.type.value == "prompt"]
        client = openai_client(openai_response(CONDITION_TOOL_NAME, {
            "matched_handle": "cancel", "reasoning": "explicit",
        }))
        engine = ConversationEngine(llm_settings, client=client)

        handle = await engine.match_prompt_conditions(prompts, {}, "cancel it", [])
        assert handle == "cancel"
        assert client.chat.completions.create.await_count == 1
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["temperature"] == 0.1
        system = kwargs["messages"][0]["content"]
        assert system.index("User wants to book") < system.index("User wants to cancel")

    @pytest.mark.asyncio
    async def test_none_is_no_match(self, llm_settings, transitions):
        client = openai_client(openai_response(CONDITION_TOOL_NAME, {"matched_handle": "none"}))
        engine = ConversationEngine(llm_settings, client=client)
        assert await engine.match_prompt_conditions(transitions[1:], {}, "hmm", []) is None

    @pytest.mark.asyncio
    async def test_unknown_handle_rejected(self, llm_settings, transitions):
        client = openai_client(openai_response(CONDITION_TOOL_NAME, {"matched_handle": "refund"}))
        engine = ConversationEngine(llm_settings, client=client)
        assert await engine.match_prompt_conditions(transitions[1:], {}, "refund", []) is None

    @pytest.mark.asyncio
    async def test_json_text_fallback(self, llm_settings, transitions):
        client = openai_client(openai_response(text='```json\n{"matchedHandle": "book"}\n```'))
        engine = ConversationEngine(llm_settings, client=client)
        assert await engine.match_prompt_conditions(transitions[1:], {}, "book", []) == "book"

    @pytest.mark.asyncio
    async def test_failure_is_no_match(self, llm_settings, transitions):
        client = openai_client(side_effect=ConnectionError("down"))
        engine = ConversationEngine(llm_settings, client=client)
        assert await engine.match_prompt_conditions(transitions[1:], {}, "book", []) is None


class TestAnthropicProvider:

    @pytest.mark.asyncio
    async def test_tool_use_block(self, transitions):
        settings = Settings(llm=LLMConfig(provider="anthropic", model="claude-test", api_key="k"))
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(content=[
            SimpleNamespace(type="tool_use", name=TURN_TOOL_NAME, input={
                "response": "Booked.", "matched_transition": "book", "extracted_variables": {},
            }),
        ]))
        engine = ConversationEngine(settings, client=client)

        result = await engine.generate_turn(PROMPT, "book it", {}, [], transitions)
        assert result.response == "Booked."
        assert result.matched_transition == "book"
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": TURN_TOOL_NAME}
        assert "system" in kwargs
