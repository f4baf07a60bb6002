"""
Completion Provider Gateway
---------------------------
Uniform async interface over one or more OpenAI-compatible chat backends with
ordered fallback.

Fallback policy:
- 403 / 404 / 5xx / transport errors: try the next configured provider.
- Malformed structured output: try the next configured provider.
- 401 / 402 / 429: surface immediately, never masked by a fallback.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

import openai
import structlog
from openai import AsyncOpenAI

from research_pipeline.core.config import CompletionProviderSettings, PipelineConfig
from research_pipeline.core.exceptions import MalformedOutputError, ProviderError
from research_pipeline.utils.otel import otel_span

if TYPE_CHECKING:
    from research_pipeline.services.progress import CancellationToken

# ────────────────────────────────────────────────────────────
#  Logging
# ────────────────────────────────────────────────────────────
logger = structlog.get_logger(__name__)

DEFAULT_MAX_TOKENS = 4000

_QUOTA_MESSAGES = {
    429: "Rate limit exceeded. Please try again in a moment.",
    402: "AI usage limit reached. Please add funds to continue.",
    401: "The AI provider rejected the configured credentials.",
}


@dataclass
class CompletionResult:
    """Outcome of one successful completion call."""

    content: str
    provider: str
    model: str
    tool_arguments: Optional[Dict[str, Any]] = None
    latency_ms: int = 0
    attempted: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return f"{self.provider}:{self.model}"


def function_tool(name: str, description: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
    """Build an OpenAI-style function tool definition."""
    return {
        "type": "function",
        "function": {"name": name, "description": description, "parameters": parameters},
    }


def _tool_choice_for(tool: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "function", "function": {"name": tool["function"]["name"]}}


def _parse_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """Parse a JSON object, tolerating a fenced code block around it."""
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            parsed = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


# ────────────────────────────────────────────────────────────
#  Single provider
# ────────────────────────────────────────────────────────────
class OpenAICompletionProvider:
    """One OpenAI-compatible chat completions backend."""

    def __init__(
        self,
        settings: CompletionProviderSettings,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.name = settings.name
        self.model = settings.model
        self._client = client or AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
        )

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = 0.3,
    ) -> CompletionResult:
        request: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = tool_choice or "auto"

        t0 = time.time()
        try:
            response = await self._client.chat.completions.create(**request)
        except openai.APIStatusError as exc:
            raise ProviderError(
                f"{self.name} returned HTTP {exc.status_code}",
                provider=self.name,
                status=exc.status_code,
                user_message=_QUOTA_MESSAGES.get(exc.status_code),
            ) from exc
        except openai.APIConnectionError as exc:
            raise ProviderError(
                f"{self.name} unreachable: {exc}",
                provider=self.name,
                status=None,
            ) from exc

        latency_ms = int((time.time() - t0) * 1000)
        if not getattr(response, "choices", None):
            raise ProviderError(f"{self.name} returned no choices", provider=self.name, status=502)

        message = response.choices[0].message
        tool_arguments: Optional[Dict[str, Any]] = None
        if getattr(message, "tool_calls", None):
            raw_args = message.tool_calls[0].function.arguments
            tool_arguments = _parse_json_object(raw_args)
            if tool_arguments is None:
                raise MalformedOutputError(
                    f"{self.name} returned unparseable tool arguments",
                    details={"provider": self.name},
                )

        return CompletionResult(
            content=message.content or "",
            provider=self.name,
            model=self.model,
            tool_arguments=tool_arguments,
            latency_ms=latency_ms,
        )


# ────────────────────────────────────────────────────────────
#  Gateway
# ────────────────────────────────────────────────────────────
class CompletionGateway:
    """Ordered fallback over completion providers."""

    def __init__(self, providers: Sequence[Any]) -> None:
        self.providers = list(providers)

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "CompletionGateway":
        return cls([OpenAICompletionProvider(s) for s in config.completion_providers])

    def is_configured(self) -> bool:
        return bool(self.providers)

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = 0.3,
        require_tool: bool = False,
        cancel: Optional["CancellationToken"] = None,
        operation: str = "completion",
    ) -> CompletionResult:
        """Run one completion, falling back across providers on retryable errors."""
        if not self.providers:
            raise ProviderError("No completion providers configured", provider="none", status=503)

        attempted: List[str] = []
        last_error: Optional[Exception] = None
        for index, provider in enumerate(self.providers):
            if cancel is not None:
                cancel.raise_if_cancelled()
            attempted.append(provider.name)
            has_next = index + 1 < len(self.providers)
            with otel_span(
                "llm.complete",
                {"provider": provider.name, "model": provider.model, "operation": operation},
            ):
                try:
                    result = await provider.complete(
                        system_prompt,
                        user_prompt,
                        tools=tools,
                        tool_choice=tool_choice,
                        max_tokens=max_tokens,
                        temperature=temperature,
                    )
                    if require_tool and result.tool_arguments is None:
                        parsed = _parse_json_object(result.content)
                        if parsed is None:
                            raise MalformedOutputError(
                                f"{provider.name} returned no tool call for {operation}",
                                details={"provider": provider.name},
                            )
                        result.tool_arguments = parsed
                except ProviderError as exc:
                    last_error = exc
                    if exc.is_quota_error:
                        logger.warning(
                            "Completion provider quota error surfaced",
                            provider=provider.name,
                            status=exc.status,
                            operation=operation,
                        )
                        raise
                    if exc.is_retryable_with_fallback and has_next:
                        logger.warning(
                            "Completion provider failed, falling back",
                            provider=provider.name,
                            status=exc.status,
                            next_provider=self.providers[index + 1].name,
                            operation=operation,
                        )
                        continue
                    raise
                except MalformedOutputError as exc:
                    last_error = exc
                    if has_next:
                        logger.warning(
                            "Malformed structured output, retrying on fallback provider",
                            provider=provider.name,
                            next_provider=self.providers[index + 1].name,
                            operation=operation,
                        )
                        continue
                    raise

            result.attempted = attempted
            if len(attempted) > 1:
                logger.info(
                    "Completion served by fallback provider",
                    provider=result.provider,
                    attempted=attempted,
                    operation=operation,
                )
            return result

        raise ProviderError(
            "All completion providers failed",
            provider=attempted[-1],
            status=getattr(last_error, "status", None),
        )

    async def complete_structured(
        self,
        system_prompt: str,
        user_prompt: str,
        tool: Dict[str, Any],
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = 0.2,
        cancel: Optional["CancellationToken"] = None,
    ) -> Tuple[Dict[str, Any], CompletionResult]:
        """Force a single tool call and return its parsed arguments."""
        result = await self.complete(
            system_prompt,
            user_prompt,
            tools=[tool],
            tool_choice=_tool_choice_for(tool),
            max_tokens=max_tokens,
            temperature=temperature,
            require_tool=True,
            cancel=cancel,
            operation=tool["function"]["name"],
        )
        return result.tool_arguments or {}, result


__all__ = [
    "CompletionGateway",
    "CompletionResult",
    "OpenAICompletionProvider",
    "function_tool",
]
