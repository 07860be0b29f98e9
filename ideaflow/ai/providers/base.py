"""Base interfaces for language-model providers."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

_JSON_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass
class StructuredModelResponse:
  """Structured model response structure."""

  content: dict[str, Any]
  usage: dict[str, int] | None = None


def total_tokens(usage: dict[str, int] | None) -> int:
  """Return total tokens from a usage mapping, summing parts when the total is absent."""
  if not usage:
    return 0
  if "total_tokens" in usage:
    return int(usage["total_tokens"])
  return int(usage.get("prompt_tokens", 0)) + int(usage.get("completion_tokens", 0))


class AIModel(ABC):
  """Abstract base class for language models."""

  name: str

  @abstractmethod
  async def generate_structured(self, prompt: str, schema: dict[str, Any]) -> StructuredModelResponse:
    """Generate structured output that conforms to the provided JSON schema."""

  @staticmethod
  def strip_json_fences(content: str) -> str:
    """Remove a surrounding markdown code fence from model output."""
    stripped = content.strip()
    match = _JSON_FENCE_RE.match(stripped)
    if match:
      return match.group(1)
    return stripped


class Provider(ABC):
  """Abstract base class for model providers."""

  name: str

  @abstractmethod
  def get_model(self, model: str | None = None) -> AIModel:
    """Return the model client for the provider."""
