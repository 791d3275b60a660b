"""LLM backend adapters.

One adapter per backend, all sharing the same contract: build the prompt,
pick the effective model, shape generation parameters for the model family,
call the backend once, time it, and wrap any failure into ``ProviderError``.

Adapters are looked up through ``ADAPTERS`` keyed by provider name, so adding
a backend means adding one subclass and one table entry.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Type

import google.generativeai as genai
from langchain_openai import ChatOpenAI

from ..core.config import Settings
from ..core.errors import ProviderError
from ..observability.langsmith import build_trace_config
from .config import ProviderSelection
from .messages import build_prompt_messages, message_content, to_langchain_messages

logger = logging.getLogger(__name__)


# Reasoning-optimized model families reject temperature and take their
# token budget as max_completion_tokens.
REASONING_MODEL_PREFIXES = ("o1", "o3", "o4")


@dataclass
class ProviderRequest:
    """A single call to a backend."""

    message: str
    system_prompt: Optional[str] = None
    context_note: Optional[str] = None
    history: List[Any] = field(default_factory=list)
    model_override: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    trace_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderReply:
    """Normalized backend response."""

    reply: str
    model_used: str
    response_time_ms: int
    provider: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


def is_reasoning_model(model: Optional[str]) -> bool:
    """Return True for o-series reasoning models (``o1``, ``o3-mini``, ...)."""
    name = (model or "").strip().lower()
    if "/" in name:
        name = name.rsplit("/", 1)[-1]
    return any(name == prefix or name.startswith(f"{prefix}-") for prefix in REASONING_MODEL_PREFIXES)


def build_generation_params(
    model: str,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Shape generation parameters for the model family.

    Reasoning models never receive a temperature and use
    ``max_completion_tokens``. Other models receive a temperature only when
    the caller supplied one, and use ``max_tokens``.
    """
    params: Dict[str, Any] = {}

    if is_reasoning_model(model):
        if max_tokens:
            params["max_completion_tokens"] = max_tokens
        return params

    if temperature is not None:
        params["temperature"] = temperature
    if max_tokens:
        params["max_tokens"] = max_tokens
    return params


def _is_llm_quota_error(exc: Exception) -> bool:
    """Detect provider quota/rate-limit errors."""
    text = str(exc).lower()
    return (
        "error code: 429" in text
        or "rate limit" in text
        or "ratelimit" in exc.__class__.__name__.lower()
        or "resource has been exhausted" in text
        or "insufficient_quota" in text
        or "quota" in text
    )


def _is_llm_connection_error(exc: Exception) -> bool:
    """Detect upstream LLM connectivity issues."""
    text = str(exc).lower()
    return (
        "connection error" in text
        or "connecterror" in text
        or "connection refused" in text
        or "failed to establish a new connection" in text
        or "connection" in exc.__class__.__name__.lower()
    )


def classify_provider_failure(exc: Exception) -> str:
    """Map an upstream exception to a ProviderError reason."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    if _is_llm_quota_error(exc):
        return "rate_limited"
    if _is_llm_connection_error(exc):
        return "connection"
    return "upstream"


Usage = Dict[str, Optional[int]]


class ProviderAdapter:
    """Base adapter; subclasses implement ``_invoke`` for one backend."""

    name = "base"

    def __init__(self, settings: Settings):
        self._settings = settings

    async def send(self, selection: ProviderSelection, request: ProviderRequest) -> ProviderReply:
        prompt = build_prompt_messages(
            request.message,
            system_prompt=request.system_prompt,
            context_note=request.context_note,
            history=request.history,
        )
        model = request.model_override or selection.model
        params = build_generation_params(
            model,
            temperature=request.temperature,
            max_tokens=request.max_tokens or self._settings.LLM_MAX_TOKENS,
        )
        timeout = self._settings.LLM_REQUEST_TIMEOUT

        start = time.perf_counter()
        try:
            text, usage = await asyncio.wait_for(
                self._invoke(selection, model, prompt, params, request),
                timeout=timeout,
            )
        except ProviderError:
            raise
        except (asyncio.TimeoutError, TimeoutError) as exc:
            logger.error(f"{self.name} call to {model} timed out after {timeout}s")
            raise ProviderError(
                f"{self.name} did not respond within {timeout} seconds",
                provider=self.name,
                reason="timeout",
            ) from exc
        except Exception as exc:
            logger.error(f"{self.name} call to {model} failed: {exc}")
            raise ProviderError(
                str(exc) or exc.__class__.__name__,
                provider=self.name,
                reason=classify_provider_failure(exc),
            ) from exc

        response_time_ms = int((time.perf_counter() - start) * 1000)

        if not text or not text.strip():
            raise ProviderError(
                f"{self.name} returned an empty response",
                provider=self.name,
                reason="upstream",
            )

        return ProviderReply(
            reply=text,
            model_used=model,
            response_time_ms=response_time_ms,
            provider=self.name,
            prompt_tokens=usage.get("prompt_tokens"),
            completion_tokens=usage.get("completion_tokens"),
            total_tokens=usage.get("total_tokens"),
        )

    async def _invoke(
        self,
        selection: ProviderSelection,
        model: str,
        prompt: List[dict],
        params: Dict[str, Any],
        request: ProviderRequest,
    ) -> Tuple[str, Usage]:
        raise NotImplementedError


class OpenAIAdapter(ProviderAdapter):
    """OpenAI chat completions through langchain-openai."""

    name = "openai"

    @staticmethod
    def build_client(selection: ProviderSelection, model: str, params: Dict[str, Any]) -> ChatOpenAI:
        """
        Chat client for one call.

        ChatOpenAI fills in a default temperature for some reasoning models,
        so it is cleared explicitly for that family.
        """
        client_kwargs: Dict[str, Any] = {
            "model": model,
            "api_key": selection.api_key,
            "max_retries": 0,
            **params,
        }
        if is_reasoning_model(model):
            client_kwargs["temperature"] = None
        if selection.base_url:
            client_kwargs["base_url"] = selection.base_url
        return ChatOpenAI(**client_kwargs)

    async def _invoke(self, selection, model, prompt, params, request):
        llm = self.build_client(selection, model, params)
        config = build_trace_config(
            thread_id=request.trace_id or "tutor",
            tags=request.tags,
            metadata={**request.metadata, "provider": self.name, "model": model},
            run_name=f"{self.name}:{model}",
        )
        response = await llm.ainvoke(to_langchain_messages(prompt), config=config)

        usage = getattr(response, "usage_metadata", None) or {}
        return message_content(response), {
            "prompt_tokens": usage.get("input_tokens"),
            "completion_tokens": usage.get("output_tokens"),
            "total_tokens": usage.get("total_tokens"),
        }


class GeminiAdapter(ProviderAdapter):
    """Google Gemini through google-generativeai."""

    name = "gemini"

    @staticmethod
    def _to_gemini_contents(prompt: List[dict]) -> Tuple[Optional[str], List[dict]]:
        """Split the leading system prompt off and merge same-role neighbours."""
        system_instruction = None
        contents: List[dict] = []

        for index, item in enumerate(prompt):
            role = item["role"]
            if role == "system" and index == 0:
                system_instruction = item["content"]
                continue

            gemini_role = "model" if role == "assistant" else "user"
            if contents and contents[-1]["role"] == gemini_role:
                contents[-1]["parts"].append(item["content"])
            else:
                contents.append({"role": gemini_role, "parts": [item["content"]]})

        return system_instruction, contents

    async def _invoke(self, selection, model, prompt, params, request):
        genai.configure(api_key=selection.api_key)

        generation_config: Dict[str, Any] = {}
        if "temperature" in params:
            generation_config["temperature"] = params["temperature"]
        budget = params.get("max_tokens") or params.get("max_completion_tokens")
        if budget:
            generation_config["max_output_tokens"] = budget

        system_instruction, contents = self._to_gemini_contents(prompt)
        client = genai.GenerativeModel(
            model_name=model,
            system_instruction=system_instruction,
            generation_config=generation_config or None,
        )
        response = await client.generate_content_async(contents)

        usage = getattr(response, "usage_metadata", None)
        return response.text, {
            "prompt_tokens": getattr(usage, "prompt_token_count", None),
            "completion_tokens": getattr(usage, "candidates_token_count", None),
            "total_tokens": getattr(usage, "total_token_count", None),
        }


ADAPTERS: Dict[str, Type[ProviderAdapter]] = {
    OpenAIAdapter.name: OpenAIAdapter,
    GeminiAdapter.name: GeminiAdapter,
}
