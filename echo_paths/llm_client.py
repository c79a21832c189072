"""
LLM Client Module

This module handles communication with an OpenAI-compatible
chat-completion endpoint.

Features:
- Typed request/response wire contract (pydantic), strictly parsed
- SSL certificate handling (certifi bundle) and proxy support
- Retry with exponential backoff on connection errors, timeouts, 429 and 5xx
- Every call bounded by a timeout; a hang becomes LLMTimeoutError
"""

import asyncio
import json
import logging
import re
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import AppConfig, RetryConfig
from .http_utils import create_httpx_client


logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Exception raised when LLM request fails."""
    pass


class LLMConnectionError(LLMError):
    """Exception raised when LLM server is not reachable."""
    pass


class LLMTimeoutError(LLMError):
    """Exception raised when the LLM does not answer in time."""
    pass


class LLMResponseFormatError(LLMError):
    """Exception raised when the response does not match the wire contract."""
    pass


# =============================================================================
# Wire contract
# =============================================================================

class ChatMessage(BaseModel):
    """One role-tagged message."""
    model_config = ConfigDict(extra="ignore")

    role: Literal["system", "user", "assistant"]
    content: str | None = None


class ChatCompletionRequest(BaseModel):
    """Body of POST /chat/completions."""
    model: str
    messages: list[ChatMessage] = Field(..., min_length=1)
    temperature: float = Field(1.0, ge=0, le=2)
    max_tokens: int = Field(2000, gt=0)
    stream: Literal[False] = False


class ChatChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    message: ChatMessage
    finish_reason: str | None = None


class ChatUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


class ChatCompletionResponse(BaseModel):
    """Response body; anything without at least one choice is rejected."""
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    model: str | None = None
    choices: list[ChatChoice] = Field(..., min_length=1)
    usage: ChatUsage | None = None

    @property
    def text(self) -> str:
        """Content of the first choice ('' when the model returned none)."""
        return (self.choices[0].message.content or "").strip()


# =============================================================================
# Client
# =============================================================================

class LLMClient:
    """
    Async client for an OpenAI-compatible chat-completion API.

    Sends one user message per request; no conversation state is kept
    on either side.
    """

    def __init__(
        self,
        config: AppConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_config: RetryConfig | None = None,
    ):
        """
        Initialize LLM client.

        Args:
            config: Validated application config
            transport: Optional httpx transport (tests use httpx.MockTransport)
            retry_config: Override the retry policy from config
        """
        self.app_config = config
        llm = config.llm

        self.api_url = llm.api_url
        self.api_key = llm.api_key
        self.model = llm.model
        self.temperature = llm.temperature
        self.max_tokens = llm.max_tokens
        self.timeout = llm.timeout
        self.retry_config = retry_config or llm.retry

        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        logger.info(
            f"🤖 LLM client ready: model={self.model} endpoint={self.api_url} "
            f"timeout={self.timeout}s retries={self.retry_config.max_attempts}"
        )

    async def __aenter__(self) -> "LLMClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            kwargs: dict[str, Any] = {}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = create_httpx_client(self.app_config, timeout=self.timeout, **kwargs)
        return self._client

    def build_request(self, prompt: str, **kwargs: Any) -> ChatCompletionRequest:
        """Wrap a prompt as a single-user-message request."""
        return ChatCompletionRequest(
            model=kwargs.get("model", self.model),
            messages=[ChatMessage(role="user", content=prompt)],
            temperature=kwargs.get("temperature", self.temperature),
            max_tokens=kwargs.get("max_tokens", self.max_tokens),
        )

    async def generate(self, prompt: str, **kwargs: Any) -> str:
        """
        Generate completion text for one user prompt.

        Args:
            prompt: User prompt text
            **kwargs: Override model, temperature or max_tokens

        Returns:
            Assistant's response text (may be empty; callers decide)

        Raises:
            LLMError: If generation fails after retries
        """
        request = self.build_request(prompt, **kwargs)
        response = await self.chat_completion(request)
        return response.text

    async def chat_completion(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        """
        Send a chat completion request with retry logic.

        Args:
            request: Typed request

        Returns:
            Strictly parsed response
        """
        client = self._ensure_client()
        payload = request.model_dump(mode="json")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        last_error: Exception | None = None
        attempts = self.retry_config.max_attempts

        for attempt in range(attempts):
            is_last = attempt == attempts - 1
            try:
                # httpx timeouts bound each phase; wait_for bounds the whole call
                response = await asyncio.wait_for(
                    client.post(self.api_url, json=payload, headers=headers),
                    timeout=self.timeout,
                )
                response.raise_for_status()
                parsed = self._parse_response(response)

                usage = parsed.usage or ChatUsage()
                logger.info(
                    f"✅ LLM generation successful "
                    f"(prompt: {usage.prompt_tokens or 'N/A'}, "
                    f"completion: {usage.completion_tokens or 'N/A'} tokens)"
                )
                return parsed

            except httpx.HTTPStatusError as e:
                last_error = e
                status = e.response.status_code
                if status != 429 and status < 500:
                    raise LLMError(f"LLM HTTP error {status}: {e.response.reason_phrase}") from e
                if not is_last:
                    delay = self.retry_config.get_delay(attempt)
                    logger.warning(
                        f"🔄 LLM server error ({status}), "
                        f"retrying in {delay:.1f}s (attempt {attempt + 1}/{attempts})"
                    )
                    await asyncio.sleep(delay)

            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                last_error = e
                if is_last:
                    logger.error(f"❌ LLM endpoint not reachable at {self.api_url}")
                    raise LLMConnectionError(
                        f"LLM endpoint not reachable at {self.api_url}: {e}"
                    ) from e
                delay = self.retry_config.get_delay(attempt)
                logger.warning(
                    f"🔄 LLM connection error, retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{attempts}): {e}"
                )
                await asyncio.sleep(delay)

            except (httpx.TimeoutException, asyncio.TimeoutError) as e:
                last_error = e
                if is_last:
                    raise LLMTimeoutError(
                        f"LLM request timed out after {self.timeout}s ({attempts} attempts)"
                    ) from e
                delay = self.retry_config.get_delay(attempt)
                logger.warning(
                    f"⏱️  LLM request timed out after {self.timeout}s, "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"⚠️  LLM error on attempt {attempt + 1}: {type(e).__name__}: {e}")
                if not is_last:
                    await asyncio.sleep(self.retry_config.get_delay(attempt))

        raise LLMError(f"LLM request failed after {attempts} attempts: {last_error}")

    def _parse_response(self, response: httpx.Response) -> ChatCompletionResponse:
        """Validate the body against the wire contract."""
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise LLMResponseFormatError(f"LLM response is not JSON: {e}") from e

        try:
            return ChatCompletionResponse.model_validate(data)
        except ValidationError as e:
            raise LLMResponseFormatError(
                f"LLM response does not match chat-completion shape: {e.error_count()} error(s)"
            ) from e


class MockLLMClient(LLMClient):
    """
    Mock LLM client for running the pipeline without an endpoint.

    Answers outline prompts with a JSON array and segment prompts with a
    short paragraph built from the prompt's own fields.
    """

    def __init__(self, config: AppConfig | None = None, *args: Any, **kwargs: Any):
        # Don't call parent __init__; no HTTP client is ever created
        self.app_config = config or AppConfig()
        self.api_url = "mock://chat/completions"
        self.api_key = ""
        self.model = "mock-model"
        self.temperature = self.app_config.llm.temperature
        self.max_tokens = self.app_config.llm.max_tokens
        self.timeout = self.app_config.llm.timeout
        self.retry_config = RetryConfig(max_attempts=1)
        self._transport = None
        self._client = None
        self.prompts: list[str] = []

        logger.info("🎭 Using Mock LLM Client (no LLM endpoint required)")

    def _extract_field(self, prompt: str, field: str) -> str:
        """Extract a ``Field: value`` line from the prompt."""
        match = re.search(rf"^{field}:\s*([^\n]+)", prompt, re.IGNORECASE | re.MULTILINE)
        return match.group(1).strip() if match else ""

    def _mock_outline(self, prompt: str) -> str:
        match = re.search(r"exactly (\d+) chapters", prompt)
        count = int(match.group(1)) if match else 1
        journey = self._extract_field(prompt, "Journey").rstrip(".") or "the journey"
        chapters = [
            f"Chapter {i}: the traveler presses on along {journey}." for i in range(1, count + 1)
        ]
        return "Here is the outline:\n" + json.dumps(chapters)

    def _mock_segment(self, prompt: str) -> str:
        goal = self._extract_field(prompt, "CURRENT CHAPTER GOAL") or "The journey continues."
        status = self._extract_field(prompt, "Current Status").rstrip(".")
        return (
            f"{status}. The road unspools ahead, and every passing landmark feels like a "
            f"line in a story still being written. {goal} The traveler breathes in the "
            "moment, listening to the hum of motion, certain that the next turn will "
            "reveal something worth remembering."
        )

    async def chat_completion(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        """Generate mock chat completion."""
        prompt = ""
        for message in reversed(request.messages):
            if message.role == "user":
                prompt = message.content or ""
                break
        self.prompts.append(prompt)

        if "Output strictly valid JSON" in prompt:
            content = self._mock_outline(prompt)
        else:
            content = self._mock_segment(prompt)

        return ChatCompletionResponse(
            model=self.model,
            choices=[ChatChoice(message=ChatMessage(role="assistant", content=content))],
        )

    async def __aenter__(self) -> "MockLLMClient":
        return self

    async def aclose(self) -> None:
        return None
