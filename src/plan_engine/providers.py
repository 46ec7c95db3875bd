# providers.py
# Model provider contract and implementations.
#
# The engine knows nothing about a provider beyond generate(): one request in,
# content plus token accounting out, or an exception scoped to the step.

import asyncio
import os
from abc import ABC, abstractmethod
from typing import Any, Literal

from dotenv import load_dotenv
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field

from plan_engine.errors import ConfigurationError, ProviderError, StepFailureError

load_dotenv()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3.5-haiku"

STEP_SYSTEM_PROMPT = """\
You are a precise execution agent working through a multi-step engineering plan.

Complete ONLY the step you are given. Be concrete: name files, functions, and \
the exact changes or findings. Do not repeat earlier steps.\
"""


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class ModelRequest(BaseModel):
    system_prompt: str
    user_message: str
    context: dict[str, Any] = Field(default_factory=dict)
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)


class ModelResponse(BaseModel):
    content: str
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)
    stop_reason: Literal["end_turn", "max_tokens", "tool_use", "error"] = "end_turn"


class ModelProvider(ABC):
    """Executes one step. Raises on failure; the engine records it."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def generate(self, request: ModelRequest) -> ModelResponse: ...

    async def is_available(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Prompt helpers
# ---------------------------------------------------------------------------


def build_system_prompt(base_prompt: str, context: dict[str, Any]) -> str:
    """
    Append run context to a base prompt.

    Previous step outputs are listed by key only; their content is never
    echoed into the prompt.
    """
    outputs = context.get("previous_outputs") or {}
    summary = "\n".join(f"- {key}: <output>" for key in outputs) or "(none)"
    return (
        f"{base_prompt}\n\n"
        "## Execution Context\n"
        f"- Run ID: {context.get('run_id', '')}\n"
        f"- Repo Path: {context.get('repo_path', '')}\n\n"
        "## Previous Step Outputs\n"
        f"{summary}\n"
    )


def build_user_message(prompt: str, step_title: str, step_description: str) -> str:
    return f"## Step: {step_title}\n{step_description}\n\n## Instructions\n{prompt}"


# ---------------------------------------------------------------------------
# Deterministic local adapter
# ---------------------------------------------------------------------------


class LocalMockAdapter(ModelProvider):
    """
    Deterministic provider for tests and dry runs. No network I/O.

    Every call returns the configured content and token counts. Steps whose id
    appears in `fail_on_steps` raise StepFailureError instead. `delay_ms`
    simulates backend latency.
    """

    def __init__(
        self,
        response_content: str = "Mock response",
        input_tokens: int = 100,
        output_tokens: int = 50,
        delay_ms: int = 0,
        fail_on_steps: tuple[str, ...] | list[str] = (),
    ) -> None:
        self._response_content = response_content
        self._input_tokens = input_tokens
        self._output_tokens = output_tokens
        self._delay_ms = delay_ms
        self._fail_on_steps = frozenset(fail_on_steps)
        self.call_count = 0

    @property
    def name(self) -> str:
        return "LocalMock"

    def set_next_response(self, **changes: Any) -> None:
        """Update any constructor setting for subsequent calls."""
        for key, value in changes.items():
            attr = f"_{key}"
            if not hasattr(self, attr):
                raise AttributeError(f"LocalMockAdapter has no setting '{key}'")
            setattr(self, attr, frozenset(value) if key == "fail_on_steps" else value)

    async def generate(self, request: ModelRequest) -> ModelResponse:
        self.call_count += 1
        if self._delay_ms > 0:
            await asyncio.sleep(self._delay_ms / 1000)

        step_id = request.context.get("step_id")
        if step_id in self._fail_on_steps:
            raise StepFailureError(f"Mock failure for step '{step_id}'.", step_id=step_id)

        return ModelResponse(
            content=self._response_content,
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
        )


# ---------------------------------------------------------------------------
# OpenAI-compatible adapter
# ---------------------------------------------------------------------------

_FINISH_REASONS = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "error",
}


class OpenAIAdapter(ModelProvider):
    """
    Chat-completions provider. Defaults to OpenRouter; any OpenAI-compatible
    endpoint works via `base_url`.

    Example:
        provider = OpenAIAdapter(model="anthropic/claude-3.5-haiku")
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        base_url: str = OPENROUTER_BASE_URL,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        if client is not None:
            self._client = client
            return

        api_key = api_key or os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("An API key is required (OPENROUTER_API_KEY or OPENAI_API_KEY).")
        self._client = AsyncOpenAI(base_url=base_url, api_key=api_key)

    @property
    def name(self) -> str:
        return f"OpenAI ({self._model})"

    async def is_available(self) -> bool:
        try:
            await self._client.models.retrieve(self._model)
        except OpenAIError:
            return False
        return True

    async def generate(self, request: ModelRequest) -> ModelResponse:
        kwargs: dict[str, Any] = {}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": request.system_prompt},
                    {"role": "user", "content": request.user_message},
                ],
                **kwargs,
            )
        except OpenAIError as exc:
            raise ProviderError(f"{self.name} request failed: {exc}") from exc

        if not response.choices:
            raise ProviderError(f"{self.name} returned no choices.")

        choice = response.choices[0]
        usage = response.usage
        return ModelResponse(
            content=(choice.message.content or "").strip(),
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            stop_reason=_FINISH_REASONS.get(choice.finish_reason, "end_turn"),
        )
