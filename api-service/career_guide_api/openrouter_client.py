"""OpenRouter LLM client for conversation turns and occupation suggestions."""

import json
import re
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from career_guide_api.config import get_settings
from career_guide_api.models import Occupation
from career_guide_api.observability import log_llm_request, log_llm_response
from career_guide_api.signals import (
    GenerativeTurn,
    MalformedSignalError,
    OccupationSuggestion,
    parse_generative_turn,
    parse_items,
)

logger = structlog.get_logger()

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class OpenRouterError(Exception):
    """Base exception for OpenRouter client errors."""

    pass


class OpenRouterAuthError(OpenRouterError):
    """Raised when authentication fails."""

    pass


class OpenRouterRateLimitError(OpenRouterError):
    """Raised when rate limit is exceeded."""

    pass


class OpenRouterResponseError(OpenRouterError):
    """Raised when the model output is not the JSON payload we asked for."""

    pass


@dataclass
class LLMResponse:
    """Completion returned by the LLM."""

    content: str
    tokens_used: int
    finish_reason: str | None = None


TURN_FORMAT = """Reply ONLY with a JSON object of this shape:
{
  "message": "your next message to the user",
  "insights": {
    "traits": [{"trait": "<trait dimension>", "score": 0.0-1.0, "confidence": 0.0-1.0}],
    "interests": [{"domain": "...", "confidence": 0.0-1.0, "context": "..."}],
    "values": [{"value": "...", "importance": 1-5, "context": "..."}],
    "constraints": [{"type": "...", "description": "...", "flexibility": 1-5, "impact": "blocking|limiting|preferential"}]
  },
  "experience": {"level": "student|beginner|intermediate|experienced|expert", "domains": []},
  "workEnvironment": {"teamSize": "...", "location": "...", "pace": "...", "structure": "..."},
  "profileData": {"age": null, "location": null, "currentSituation": null, "currentJob": null, "jobFeeling": null, "education": null},
  "milestones": {
    "<milestone name>": {"achieved": true, "confidence": 0-100, "needsConfirmation": true, "value": "..."}
  },
  "shouldTransition": false
}"""

RECOMMENDATION_FORMAT = """From the occupations listed, pick the 3 that best fit the profile.
Reply ONLY with a JSON object of this shape:
{"recommendations": [{"title": "...", "reasoning": "...", "sector": "...", "description": "..."}]}"""

MOCK_QUESTIONS = [
    "Thanks for sharing! What kind of activities make you lose track of time?",
    "That's helpful. Do you see yourself working more with people, with things, or with ideas?",
    "Interesting. What matters most to you in a job: stability, freedom, or making a difference?",
    "Got it. Would you rather work indoors, outdoors, or a mix of both?",
]


def extract_json(text: str) -> dict[str, Any]:
    """Decode the first JSON object embedded in model output.

    Raises:
        OpenRouterResponseError: If no JSON object can be decoded.
    """
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise OpenRouterResponseError("No JSON object in model output")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise OpenRouterResponseError(f"Invalid JSON in model output: {e.msg}") from e
    if not isinstance(data, dict):
        raise OpenRouterResponseError("Model output is not a JSON object")
    return data


class OpenRouterClient:
    """Async client for the OpenRouter chat completions API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
    ):
        """Initialize the OpenRouter client.

        Args:
            api_key: OpenRouter API key. Defaults to config value.
            base_url: API base URL. Defaults to config value.
            model: Model ID to use. Defaults to config value.
            max_tokens: Maximum tokens in response. Defaults to config value.
            temperature: Sampling temperature. Defaults to config value.
            timeout: Read timeout in seconds. Defaults to config value.
        """
        settings = get_settings()
        self._api_key = api_key or settings.openrouter_api_key
        self._base_url = base_url or settings.openrouter_base_url
        self._model = model or settings.llm_model
        self._max_tokens = max_tokens if max_tokens is not None else settings.llm_max_tokens
        self._temperature = temperature if temperature is not None else settings.llm_temperature
        self._timeout = timeout if timeout is not None else settings.llm_timeout_seconds
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "OpenRouterClient":
        await self.connect()
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Create the HTTP client.

        In mock mode (MOCK_OPENROUTER=true without a usable API key) no HTTP
        client is created since every request is served by the mock handlers.
        """
        if self.is_mock:
            logger.info("OpenRouter client in mock mode, skipping HTTP client creation", model=self._model)
            return

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "X-Title": "Career Guide",
            },
            timeout=httpx.Timeout(self._timeout, connect=10.0),
        )
        logger.info("OpenRouter client connected", model=self._model)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("OpenRouter client closed")

    @property
    def is_configured(self) -> bool:
        """Check if the client is properly configured with an API key."""
        return bool(self._api_key and self._api_key.startswith("sk-"))

    @property
    def is_mock(self) -> bool:
        return not self.is_configured and get_settings().mock_openrouter

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _build_messages(
        self,
        system_prompt: str,
        context: str,
        history: list[dict[str, str]] | None = None,
    ) -> list[dict[str, str]]:
        """Build the messages array: system prompt plus context, then history."""
        messages = [{"role": "system", "content": f"{system_prompt}\n\n---\n{context}"}]
        if history:
            messages.extend(history)
        return messages

    async def chat(
        self,
        messages: list[dict[str, str]],
        operation: str = "chat",
    ) -> LLMResponse:
        """Send a chat completion request.

        Raises:
            OpenRouterError: If the request fails.
            OpenRouterAuthError: If MOCK_OPENROUTER=false but API key missing.
        """
        if not self.is_configured:
            error_msg = (
                "OpenRouter API key not configured with MOCK_OPENROUTER=false. "
                "Either set OPENROUTER_API_KEY or set MOCK_OPENROUTER=true for testing."
            )
            logger.error(error_msg)
            raise OpenRouterAuthError(error_msg)

        if not self._client:
            await self.connect()

        payload = {
            "model": self._model,
            "messages": messages,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "stream": False,
        }

        request_log = log_llm_request(
            self._model, operation, messages[0]["content"], messages[1:]
        )
        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
            content = data["choices"][0]["message"]["content"]
            tokens_used = data.get("usage", {}).get("total_tokens", 0)
            finish_reason = data["choices"][0].get("finish_reason")
        except httpx.HTTPStatusError as e:
            log_llm_response(request_log, error=f"HTTP {e.response.status_code}")
            self._handle_http_error(e)
            raise
        except httpx.HTTPError as e:
            log_llm_response(request_log, error=type(e).__name__)
            raise OpenRouterError(f"Transport error: {type(e).__name__}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            log_llm_response(request_log, error="malformed completion")
            raise OpenRouterResponseError("Malformed completion payload") from e

        log_llm_response(request_log, tokens_total=tokens_used, finish_reason=finish_reason or "unknown")
        return LLMResponse(content=content, tokens_used=tokens_used, finish_reason=finish_reason)

    def _handle_http_error(self, error: httpx.HTTPStatusError) -> None:
        """Handle HTTP errors from OpenRouter API."""
        status = error.response.status_code
        try:
            detail = error.response.json().get("error", {}).get("message", str(error))
        except ValueError:
            detail = str(error)

        logger.error("OpenRouter API error", status=status, detail=detail)

        if status == 401:
            raise OpenRouterAuthError(f"Authentication failed: {detail}")
        elif status == 429:
            raise OpenRouterRateLimitError(f"Rate limit exceeded: {detail}")
        else:
            raise OpenRouterError(f"API error ({status}): {detail}")

    # -------------------------------------------------------------------------
    # Conversation operations
    # -------------------------------------------------------------------------

    async def generate_turn(
        self,
        system_prompt: str,
        history: list[dict[str, str]],
        profile_summary: dict[str, Any],
        milestone_lines: list[str],
        phase: str,
    ) -> GenerativeTurn:
        """Produce the next assistant turn with its structured insights.

        Raises:
            OpenRouterResponseError: If the output is not a usable JSON payload.
            OpenRouterError: If the request fails.
        """
        if self.is_mock:
            return self._mock_turn(history)

        context = "\n".join(
            [
                f"CURRENT PHASE: {phase}",
                "PROFILE SO FAR:",
                json.dumps(profile_summary, ensure_ascii=False, default=str),
                "MILESTONES:",
                *milestone_lines,
                "",
                TURN_FORMAT,
            ]
        )
        response = await self.chat(self._build_messages(system_prompt, context, history), "turn")
        try:
            turn = parse_generative_turn(extract_json(response.content))
        except MalformedSignalError as e:
            raise OpenRouterResponseError(str(e)) from e
        turn.tokens_used = response.tokens_used
        return turn

    async def recommend_occupations(
        self, profile_summary: dict[str, Any], sample: list[Occupation]
    ) -> list[OccupationSuggestion]:
        """Ask for up to three occupation suggestions drawn from ``sample``.

        Raises:
            OpenRouterResponseError: If the output is not a usable JSON payload.
            OpenRouterError: If the request fails.
        """
        if self.is_mock:
            return self._mock_recommendations(sample)

        occupations = [
            {"id": o.id, "title": o.title, "desc": o.description[:100], "sector": o.sector}
            for o in sample
        ]
        context = "\n".join(
            [
                "PROFILE:",
                json.dumps(profile_summary, ensure_ascii=False, default=str),
                "OCCUPATIONS:",
                json.dumps(occupations, ensure_ascii=False),
                "",
                RECOMMENDATION_FORMAT,
            ]
        )
        messages = self._build_messages(
            "You are a career matching expert.", context, [{"role": "user", "content": "Recommend."}]
        )
        response = await self.chat(messages, "recommend")
        data = extract_json(response.content)
        raw = data.get("recommendations", [])
        for item in raw if isinstance(raw, list) else []:
            # Some models return a list of reasons instead of one sentence
            if isinstance(item, dict) and isinstance(item.get("reasoning"), list):
                item["reasoning"] = " ".join(str(r) for r in item["reasoning"])
            if isinstance(item, dict) and "title" not in item and "jobTitle" in item:
                item["title"] = item["jobTitle"]
        return parse_items(raw, OccupationSuggestion, "recommendation")[:3]

    # -------------------------------------------------------------------------
    # Mock handlers
    # -------------------------------------------------------------------------

    def _mock_turn(self, history: list[dict[str, str]]) -> GenerativeTurn:
        """Canned turn for MOCK_OPENROUTER=true, cycling through a few questions."""
        user_turns = sum(1 for m in history if m["role"] == "user")
        payload = {
            "message": MOCK_QUESTIONS[user_turns % len(MOCK_QUESTIONS)],
            "insights": {"traits": [], "interests": [], "values": [], "constraints": []},
            "milestones": {},
            "shouldTransition": False,
        }
        logger.info("MOCK_OPENROUTER=true: Using mock LLM turn")
        turn = parse_generative_turn(extract_json(json.dumps(payload)))
        turn.tokens_used = 50
        return turn

    def _mock_recommendations(self, sample: list[Occupation]) -> list[OccupationSuggestion]:
        logger.info("MOCK_OPENROUTER=true: Using mock recommendations")
        return [
            OccupationSuggestion(
                title=o.title,
                reasoning=" ".join(o.skills),
                sector=o.sector,
                description=o.description or None,
            )
            for o in sample[:3]
        ]


# Global client instance
_openrouter_client: OpenRouterClient | None = None


async def get_openrouter_client() -> OpenRouterClient:
    """Get or create the global OpenRouter client instance."""
    global _openrouter_client
    if _openrouter_client is None:
        _openrouter_client = OpenRouterClient()
        await _openrouter_client.connect()
    return _openrouter_client


async def close_openrouter_client() -> None:
    """Close the global OpenRouter client."""
    global _openrouter_client
    if _openrouter_client:
        await _openrouter_client.close()
        _openrouter_client = None


def reset_openrouter_client() -> None:
    """Reset the global OpenRouter client (for testing)."""
    global _openrouter_client
    _openrouter_client = None
