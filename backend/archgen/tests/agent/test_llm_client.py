from unittest.mock import AsyncMock, patch, MagicMock

import pytest
from pydantic import BaseModel

from archgen.agent.llm_client import LLMClient, parse_candidates


class DummyModel(BaseModel):
    name: str
    age: int


def _mock_client(content):
    mock_message = MagicMock()
    mock_message.content = content

    mock_choice = MagicMock()
    mock_choice.message = mock_message

    mock_response = MagicMock()
    mock_response.choices = [mock_choice]

    mock_completions = MagicMock()
    mock_completions.create = AsyncMock(return_value=mock_response)

    mock_chat = MagicMock()
    mock_chat.completions = mock_completions

    mock_client_instance = AsyncMock()
    mock_client_instance.chat = mock_chat
    return mock_client_instance, mock_completions


@pytest.mark.asyncio
async def test_llm_client_json_parsing():
    mock_client_instance, mock_completions = _mock_client('{"name": "Alice", "age": 30}')

    with patch("archgen.agent.llm_client.AsyncOpenAI", return_value=mock_client_instance):
        with patch("archgen.agent.llm_client.settings.LLM_API_KEY", "dummy_key"):
            client = LLMClient(model_name="test-model")

            result = await client.generate_structured(
                system_prompt="You are a helpful assistant.",
                user_prompt="Give me Alice's details",
                response_schema=DummyModel
            )

            assert isinstance(result, DummyModel)
            assert result.name == "Alice"
            assert result.age == 30
            mock_completions.create.assert_called_once()
            kwargs = mock_completions.create.call_args.kwargs
            assert kwargs["model"] == "test-model"
            assert kwargs["response_format"] == {"type": "json_object"}
            assert "EXPECTED SCHEMA" in kwargs["messages"][0]["content"]


@pytest.mark.asyncio
async def test_llm_client_recovers_json_from_chatty_output():
    chatty = 'Sure! Here it is:\n```json\n{"name": "Bob", "age": 41}\n```\nAnything else?'
    mock_client_instance, _ = _mock_client(chatty)

    with patch("archgen.agent.llm_client.AsyncOpenAI", return_value=mock_client_instance):
        with patch("archgen.agent.llm_client.settings.LLM_API_KEY", "dummy_key"):
            result = await LLMClient(model_name="test-model").generate_structured("s", "u", DummyModel)

    assert result == DummyModel(name="Bob", age=41)


@pytest.mark.asyncio
async def test_llm_client_raises_on_unparseable_output():
    mock_client_instance, _ = _mock_client("I cannot help with that.")

    with patch("archgen.agent.llm_client.AsyncOpenAI", return_value=mock_client_instance):
        with patch("archgen.agent.llm_client.settings.LLM_API_KEY", "dummy_key"):
            with pytest.raises(ValueError, match="Unable to parse structured response"):
                await LLMClient(model_name="test-model").generate_structured("s", "u", DummyModel)


@pytest.mark.asyncio
async def test_llm_client_raises_on_empty_content():
    mock_client_instance, _ = _mock_client(None)

    with patch("archgen.agent.llm_client.AsyncOpenAI", return_value=mock_client_instance):
        with patch("archgen.agent.llm_client.settings.LLM_API_KEY", "dummy_key"):
            with pytest.raises(ValueError, match="empty content"):
                await LLMClient(model_name="test-model").generate_structured("s", "u", DummyModel)


def test_parse_candidates_finds_embedded_object():
    candidates = parse_candidates('prefix {"a": "}"} suffix')
    assert '{"a": "}"}' in candidates
    assert parse_candidates("   ") == []
