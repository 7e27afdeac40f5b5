"""Tests for OpenRouter LLM client."""

import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from career_guide_api.models import Occupation
from career_guide_api.openrouter_client import (
    LLMResponse,
    OpenRouterAuthError,
    OpenRouterClient,
    OpenRouterError,
    OpenRouterRateLimitError,
    OpenRouterResponseError,
    extract_json,
)


def completion(content: str, tokens: int = 42) -> MagicMock:
    """Build a mocked httpx response carrying one chat completion."""
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {
        "choices": [{"message": {"content": content}, "finish_reason": "stop"}],
        "usage": {"total_tokens": tokens},
    }
    response.raise_for_status = MagicMock()
    return response


def connected_client(response: MagicMock) -> OpenRouterClient:
    client = OpenRouterClient(api_key="sk-test")
    client._client = MagicMock()
    client._client.post = AsyncMock(return_value=response)
    return client


class TestOpenRouterClient:
    """Tests for OpenRouterClient class."""

    def test_init_custom_values(self) -> None:
        """Test client initialization with custom values."""
        client = OpenRouterClient(
            api_key="sk-test-key",
            model="gpt-4",
            max_tokens=2048,
            temperature=0.5,
            timeout=12.0,
        )
        assert client._api_key == "sk-test-key"
        assert client._model == "gpt-4"
        assert client._max_tokens == 2048
        assert client._temperature == 0.5
        assert client._timeout == 12.0

    def test_init_keeps_explicit_zero_values(self) -> None:
        client = OpenRouterClient(api_key="sk-test", temperature=0.0, max_tokens=0)
        assert client._temperature == 0.0
        assert client._max_tokens == 0

    def test_is_configured_with_valid_key(self) -> None:
        client = OpenRouterClient(api_key="sk-or-v1-test123")
        assert client.is_configured is True

    def test_is_configured_with_invalid_key(self) -> None:
        client = OpenRouterClient(api_key="invalid-key")
        assert client.is_configured is False

    def test_build_messages(self) -> None:
        """Test building messages for API request."""
        client = OpenRouterClient()
        messages = client._build_messages(
            system_prompt="Be warm",
            context="CURRENT PHASE: intro",
            history=[{"role": "assistant", "content": "Hi!"}, {"role": "user", "content": "Hello"}],
        )

        assert len(messages) == 3
        assert messages[0]["role"] == "system"
        assert "Be warm" in messages[0]["content"]
        assert "CURRENT PHASE: intro" in messages[0]["content"]
        assert messages[-1] == {"role": "user", "content": "Hello"}

    def test_build_messages_no_history(self) -> None:
        client = OpenRouterClient()
        messages = client._build_messages("Be warm", "Context", None)
        assert len(messages) == 1


class TestLLMModels:
    """Tests for LLM data models."""

    def test_llm_response(self) -> None:
        response = LLMResponse(content="Response text", tokens_used=50, finish_reason="stop")
        assert response.tokens_used == 50
        assert response.finish_reason == "stop"


class TestExtractJson:
    """Tests for pulling JSON out of model output."""

    def test_plain_object(self) -> None:
        assert extract_json('{"message": "Hi"}') == {"message": "Hi"}

    def test_object_wrapped_in_prose(self) -> None:
        text = 'Sure! Here it is:\n```json\n{"message": "Hi", "insights": {}}\n```'
        assert extract_json(text)["message"] == "Hi"

    def test_no_object(self) -> None:
        with pytest.raises(OpenRouterResponseError):
            extract_json("I cannot answer in JSON today")

    def test_invalid_json(self) -> None:
        with pytest.raises(OpenRouterResponseError):
            extract_json("{message: Hi}")


class TestOpenRouterErrors:
    """Tests for OpenRouter error classes."""

    def test_hierarchy(self) -> None:
        assert isinstance(OpenRouterAuthError("x"), OpenRouterError)
        assert isinstance(OpenRouterRateLimitError("x"), OpenRouterError)
        assert isinstance(OpenRouterResponseError("x"), OpenRouterError)


class TestOpenRouterClientAsync:
    """Async tests for OpenRouterClient."""

    @pytest.mark.asyncio
    async def test_connect_and_close(self, mock_settings: Callable[..., Any]) -> None:
        """Test connect and close lifecycle."""
        mock_settings(mock_openrouter="false")
        client = OpenRouterClient(api_key="sk-test")
        await client.connect()
        assert client._client is not None
        await client.close()
        assert client._client is None

    @pytest.mark.asyncio
    async def test_mock_mode_skips_http_client(self, mock_settings: Callable[..., Any]) -> None:
        mock_settings(mock_openrouter="true")
        client = OpenRouterClient(api_key="")
        await client.connect()
        assert client._client is None
        assert client.is_mock is True

    @pytest.mark.asyncio
    async def test_real_key_wins_over_mock_flag(self, mock_settings: Callable[..., Any]) -> None:
        mock_settings(mock_openrouter="true")
        client = OpenRouterClient(api_key="sk-test")
        await client.connect()
        assert client.is_mock is False
        assert client._client is not None
        await client.close()

    @pytest.mark.asyncio
    async def test_chat_requires_key(self, mock_settings: Callable[..., Any]) -> None:
        mock_settings(mock_openrouter="false")
        client = OpenRouterClient(api_key="")
        with pytest.raises(OpenRouterAuthError):
            await client.chat([{"role": "system", "content": "x"}])

    @pytest.mark.asyncio
    async def test_chat_success(self) -> None:
        client = connected_client(completion("Hello there", tokens=10))
        response = await client.chat([{"role": "system", "content": "Be warm"}], "turn")
        assert response.content == "Hello there"
        assert response.tokens_used == 10
        payload = client._client.post.call_args.kwargs["json"]
        assert payload["stream"] is False

    @pytest.mark.asyncio
    async def test_chat_transport_error(self) -> None:
        client = OpenRouterClient(api_key="sk-test")
        client._client = MagicMock()
        client._client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(OpenRouterError):
            await client.chat([{"role": "system", "content": "x"}])

    @pytest.mark.asyncio
    async def test_chat_malformed_completion(self) -> None:
        response = MagicMock()
        response.raise_for_status = MagicMock()
        response.json.return_value = {"choices": []}
        client = connected_client(response)
        with pytest.raises(OpenRouterResponseError):
            await client.chat([{"role": "system", "content": "x"}])


class TestOpenRouterHttpErrorHandling:
    """Tests for HTTP error handling."""

    def _error(self, status: int, body: Any) -> httpx.HTTPStatusError:
        mock_response = MagicMock()
        mock_response.status_code = status
        if isinstance(body, Exception):
            mock_response.json.side_effect = body
        else:
            mock_response.json.return_value = body
        return httpx.HTTPStatusError(
            message=f"{status} error", request=MagicMock(), response=mock_response
        )

    def test_handle_http_error_auth(self) -> None:
        client = OpenRouterClient(api_key="sk-test")
        with pytest.raises(OpenRouterAuthError) as exc_info:
            client._handle_http_error(self._error(401, {"error": {"message": "Invalid API key"}}))
        assert "Authentication failed" in str(exc_info.value)

    def test_handle_http_error_rate_limit(self) -> None:
        client = OpenRouterClient(api_key="sk-test")
        with pytest.raises(OpenRouterRateLimitError):
            client._handle_http_error(self._error(429, {"error": {"message": "Slow down"}}))

    def test_handle_http_error_json_parse_failure(self) -> None:
        client = OpenRouterClient(api_key="sk-test")
        with pytest.raises(OpenRouterError) as exc_info:
            client._handle_http_error(self._error(502, ValueError("Not JSON")))
        assert "API error (502)" in str(exc_info.value)


class TestGenerateTurn:
    """Tests for structured conversation turns."""

    @pytest.mark.asyncio
    async def test_parses_structured_turn(self) -> None:
        content = json.dumps(
            {
                "message": "Which animals do you enjoy working with?",
                "insights": {"interests": [{"domain": "animals", "confidence": 0.9}]},
                "milestones": {
                    "passions_identified": {
                        "achieved": True,
                        "confidence": 85,
                        "needsConfirmation": True,
                        "value": "animals",
                    }
                },
                "shouldTransition": False,
            }
        )
        client = connected_client(completion(content, tokens=120))
        turn = await client.generate_turn(
            "Be warm", [{"role": "user", "content": "I love animals"}], {}, ["1. ..."], "discovery"
        )
        assert turn.message.startswith("Which animals")
        assert turn.insights.interests[0].domain == "animals"
        assert turn.milestones["passions_identified"].needs_confirmation is True
        assert turn.tokens_used == 120
        system = client._client.post.call_args.kwargs["json"]["messages"][0]["content"]
        assert "CURRENT PHASE: discovery" in system

    @pytest.mark.asyncio
    async def test_non_json_output_is_response_error(self) -> None:
        client = connected_client(completion("Sorry, what?"))
        with pytest.raises(OpenRouterResponseError):
            await client.generate_turn("Be warm", [], {}, [], "intro")

    @pytest.mark.asyncio
    async def test_missing_message_is_response_error(self) -> None:
        client = connected_client(completion('{"insights": {}}'))
        with pytest.raises(OpenRouterResponseError):
            await client.generate_turn("Be warm", [], {}, [], "intro")


class TestRecommendOccupations:
    """Tests for generative occupation suggestions."""

    @pytest.mark.asyncio
    async def test_parses_suggestions(self) -> None:
        content = json.dumps(
            {
                "recommendations": [
                    {"title": "Animal Caretaker", "reasoning": ["loves animals", "patient"]},
                    {"jobTitle": "Veterinary Assistant", "reasoning": "helps vets"},
                    {"reasoning": "no title"},
                    {"title": "Dog Groomer"},
                    {"title": "Zookeeper"},
                ]
            }
        )
        client = connected_client(completion(content))
        suggestions = await client.recommend_occupations({}, [])
        assert [s.title for s in suggestions] == [
            "Animal Caretaker",
            "Veterinary Assistant",
            "Dog Groomer",
        ]
        assert suggestions[0].reasoning == "loves animals patient"


class TestOpenRouterMockModes:
    """Tests for mock mode functionality."""

    @pytest.mark.asyncio
    async def test_mock_turn(self, mock_settings: Callable[..., Any]) -> None:
        mock_settings(mock_openrouter="true")
        client = OpenRouterClient(api_key="")
        turn = await client.generate_turn("Be warm", [{"role": "user", "content": "hi"}], {}, [], "intro")
        assert turn.message
        assert turn.tokens_used == 50

    @pytest.mark.asyncio
    async def test_mock_recommendations(self, mock_settings: Callable[..., Any]) -> None:
        mock_settings(mock_openrouter="true")
        client = OpenRouterClient(api_key="")
        sample = [Occupation(id=f"o{i}", title=f"Job {i}") for i in range(5)]
        suggestions = await client.recommend_occupations({}, sample)
        assert [s.title for s in suggestions] == ["Job 0", "Job 1", "Job 2"]


class TestGlobalClientFunctions:
    """Tests for global client functions."""

    @pytest.mark.asyncio
    async def test_get_openrouter_client_creates_singleton(self) -> None:
        from career_guide_api import openrouter_client
        from career_guide_api.openrouter_client import (
            close_openrouter_client,
            get_openrouter_client,
        )

        client1 = await get_openrouter_client()
        client2 = await get_openrouter_client()
        assert client1 is client2

        await close_openrouter_client()
        assert openrouter_client._openrouter_client is None
