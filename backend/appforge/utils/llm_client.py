from anthropic import AsyncAnthropic, APIStatusError, APIError, APIConnectionError, APITimeoutError
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any
import asyncio
import random
import httpx
from appforge.core.config import settings
from appforge.core.exceptions import AIServiceError
from appforge.core.logging_config import logger

MAX_RETRIES = settings.CLAUDE_MAX_RETRIES
BASE_DELAY = settings.CLAUDE_RETRY_BASE_DELAY
MAX_DELAY = settings.CLAUDE_RETRY_MAX_DELAY
REQUEST_TIMEOUT = float(settings.CLAUDE_REQUEST_TIMEOUT)
CONNECT_TIMEOUT = float(settings.CLAUDE_CONNECT_TIMEOUT)
RETRYABLE_ERRORS = ['overloaded_error', 'rate_limit_error', 'api_error']


@dataclass
class ToolCall:
    """One tool_use block requested by the model"""
    id: str
    name: str
    input: Dict[str, Any]


@dataclass
class LLMResponse:
    """
    Provider-neutral view of one model turn.

    `content` keeps the raw assistant blocks so the caller can append them to
    the conversation before sending tool results back.
    """
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    stop_reason: Optional[str] = None
    content: List[Dict[str, Any]] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


def _block_to_dict(block: Any) -> Dict[str, Any]:
    if block.type == "text":
        return {"type": "text", "text": block.text}
    if block.type == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {"type": block.type}


class LLMClient:
    """Anthropic Messages API wrapper with retry/backoff for the agent loop and analysis"""

    def __init__(self, client: Optional[AsyncAnthropic] = None):
        if client is None:
            client_kwargs: Dict[str, Any] = {"api_key": settings.ANTHROPIC_API_KEY}

            if settings.ANTHROPIC_BASE_URL and settings.ANTHROPIC_BASE_URL.strip():
                client_kwargs["base_url"] = settings.ANTHROPIC_BASE_URL.strip()
                logger.info(f"Using custom Claude API base URL: {settings.ANTHROPIC_BASE_URL}")

            client_kwargs["timeout"] = httpx.Timeout(
                connect=CONNECT_TIMEOUT,
                read=REQUEST_TIMEOUT,
                write=REQUEST_TIMEOUT,
                pool=REQUEST_TIMEOUT
            )
            client = AsyncAnthropic(**client_kwargs)

        self.async_client = client
        self.agent_model = settings.CLAUDE_AGENT_MODEL
        self.analysis_model = settings.CLAUDE_ANALYSIS_MODEL

    def _is_retryable_error(self, error: Exception) -> bool:
        """Overload, rate limit and network errors are retried"""
        if isinstance(error, (APIConnectionError, APITimeoutError)):
            return True

        if isinstance(error, (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError)):
            return True

        if isinstance(error, APIStatusError):
            if isinstance(error.body, dict):
                error_type = error.body.get('error', {}).get('type', '')
                if error_type in RETRYABLE_ERRORS:
                    return True
            return error.status_code in [429, 500, 502, 503, 529]

        return False

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff with 0-25% jitter"""
        delay = min(BASE_DELAY * (2 ** attempt), MAX_DELAY)
        return delay + delay * random.uniform(0, 0.25)

    async def create_message(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None
    ) -> LLMResponse:
        """
        One Messages API call. Retries transient failures, then raises AIServiceError.
        """
        request: Dict[str, Any] = {
            "model": model or self.agent_model,
            "max_tokens": max_tokens or settings.CLAUDE_MAX_TOKENS,
            "temperature": settings.AGENT_TEMPERATURE if temperature is None else temperature,
            "system": system,
            "messages": messages,
        }
        if tools:
            request["tools"] = tools

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self.async_client.messages.create(**request)
                break
            except (APIError, httpx.HTTPError) as e:
                error_type = type(e).__name__
                if self._is_retryable_error(e) and attempt < MAX_RETRIES:
                    delay = self._calculate_retry_delay(attempt)
                    logger.warning(
                        f"Claude API error [{error_type}] (attempt {attempt + 1}/{MAX_RETRIES + 1}), "
                        f"retrying in {delay:.1f}s...",
                        extra={
                            "event_type": "claude_api_retry",
                            "error_type": error_type,
                            "attempt": attempt + 1,
                            "retry_delay": delay
                        }
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error(f"Claude API error (non-retryable or max retries exceeded): {error_type}: {e}")
                raise AIServiceError(f"{error_type}: {e}", retryable=self._is_retryable_error(e)) from e

        content = [_block_to_dict(block) for block in response.content]
        text = "\n".join(b["text"] for b in content if b["type"] == "text")
        tool_calls = [
            ToolCall(id=b["id"], name=b["name"], input=b["input"] or {})
            for b in content if b["type"] == "tool_use"
        ]

        usage = getattr(response, "usage", None)
        logger.debug(
            f"Claude API response: id={response.id}, stop={response.stop_reason}, "
            f"tool_calls={len(tool_calls)}"
        )
        return LLMResponse(
            text=text,
            tool_calls=tool_calls,
            stop_reason=response.stop_reason,
            content=content,
            input_tokens=getattr(usage, "input_tokens", 0) if usage else 0,
            output_tokens=getattr(usage, "output_tokens", 0) if usage else 0,
        )

    async def complete(
        self,
        prompt: str,
        system: str = "",
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.0
    ) -> str:
        """Single-turn text completion"""
        response = await self.create_message(
            system=system,
            messages=[{"role": "user", "content": prompt}],
            model=model or self.analysis_model,
            max_tokens=max_tokens,
            temperature=temperature
        )
        return response.text


_llm_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """Process-wide client; the HTTP connection pool is safe to share across runs"""
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client
