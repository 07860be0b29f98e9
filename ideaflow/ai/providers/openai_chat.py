"""OpenAI-compatible chat provider using the openai SDK."""

from __future__ import annotations

import json
import logging
from typing import Any, Final, cast

import openai
from openai import AsyncOpenAI

from ideaflow.ai.errors import NetworkFault, RateLimitExceededError, StageFailedError, StageTimeoutError, StageValidationError, parse_retry_after
from ideaflow.ai.json_parser import parse_json_with_fallback
from ideaflow.ai.providers.base import AIModel, Provider, StructuredModelResponse
from ideaflow.config import Settings

logger = logging.getLogger(__name__)


def _usage_dict(usage: Any) -> dict[str, int] | None:
  if usage is None:
    return None
  return {"prompt_tokens": usage.prompt_tokens, "completion_tokens": usage.completion_tokens, "total_tokens": usage.total_tokens}


def _translate_error(exc: openai.OpenAIError) -> Exception:
  """Tag SDK errors with the pipeline fault kind they represent."""
  if isinstance(exc, openai.APITimeoutError):
    return StageTimeoutError(f"Model call timed out: {exc}")
  if isinstance(exc, openai.RateLimitError):
    return RateLimitExceededError(f"Model provider rate limit: {exc}", retry_after=parse_retry_after(exc.response.headers.get("retry-after")))
  if isinstance(exc, openai.APIConnectionError):
    return NetworkFault(f"Model provider unreachable: {exc}")
  if isinstance(exc, openai.APIStatusError):
    return StageFailedError(f"Model provider returned {exc.status_code}: {exc.message}", retryable=exc.status_code >= 500)
  return StageFailedError(f"Model call failed: {exc}", retryable=False)


class OpenAIChatModel(AIModel):
  """Chat-completions model with JSON-schema structured output."""

  def __init__(self, name: str, *, api_key: str | None, base_url: str | None = None, timeout_seconds: float | None = None) -> None:
    if not api_key:
      raise ValueError("OPENAI_API_KEY environment variable is required")
    self.name = name
    # SDK retries are disabled so the orchestrator owns the retry budget.
    self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout_seconds, max_retries=0)

  async def generate_structured(self, prompt: str, schema: dict[str, Any]) -> StructuredModelResponse:
    """Generate JSON output constrained by `schema`."""
    schema_str = json.dumps(schema, indent=2)
    system_msg = f"You are a business research assistant that outputs valid JSON.\nYou MUST strictly output JSON adhering to this schema:\n```json\n{schema_str}\n```\nOutput valid JSON only, no markdown formatting."
    try:
      response = await self._client.chat.completions.create(
        model=self.name,
        messages=[{"role": "system", "content": system_msg}, {"role": "user", "content": prompt}],
        response_format={"type": "json_object"},
      )
    except openai.OpenAIError as exc:
      raise _translate_error(exc) from exc

    content = response.choices[0].message.content or "{}"
    logger.debug("Model %s structured response (raw):\n%s", self.name, content)
    try:
      parsed = parse_json_with_fallback(self.strip_json_fences(content))
    except json.JSONDecodeError as exc:
      raise StageValidationError(f"Model returned invalid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
      raise StageValidationError(f"Model returned a JSON {type(parsed).__name__}, expected an object")
    return StructuredModelResponse(content=cast(dict[str, Any], parsed), usage=_usage_dict(response.usage))


class OpenAIChatProvider(Provider):
  """Provider for OpenAI-compatible endpoints."""

  _DEFAULT_MODEL: Final[str] = "gpt-4o"

  def __init__(self, api_key: str | None, *, base_url: str | None = None, timeout_seconds: float | None = None) -> None:
    self.name = "openai"
    self._api_key = api_key
    self._base_url = base_url
    self._timeout_seconds = timeout_seconds

  @classmethod
  def from_settings(cls, settings: Settings) -> OpenAIChatProvider:
    return cls(settings.openai_api_key, base_url=settings.llm_base_url, timeout_seconds=settings.stage_timeout_seconds)

  def get_model(self, model: str | None = None) -> AIModel:
    """Return a chat model client."""
    return OpenAIChatModel(model or self._DEFAULT_MODEL, api_key=self._api_key, base_url=self._base_url, timeout_seconds=self._timeout_seconds)
