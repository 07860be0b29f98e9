"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from ideaflow.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

BackoffStrategy = Literal["fixed", "exponential"]
_BACKOFF_STRATEGIES: frozenset[str] = frozenset({"fixed", "exponential"})


@dataclass(frozen=True)
class Settings:
  """Typed settings for the ideaflow engine."""

  environment: str
  debug: bool
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  serper_api_key: str | None
  search_base_url: str
  search_timeout_seconds: float
  search_cache_ttl_seconds: float
  search_cache_max_entries: int
  search_max_attempts: int
  search_retry_delay_seconds: float
  search_backoff: BackoffStrategy
  search_rate_limit_tokens: int
  search_rate_limit_interval_seconds: float
  search_default_gl: str
  search_default_hl: str
  search_default_num: int
  openai_api_key: str | None
  llm_model: str
  llm_base_url: str | None
  stage_timeout_seconds: float
  stage_max_attempts: int
  stage_validation_retries: int
  stage_rate_limit_retries: int
  stage_max_resumes: int
  stage_backoff: BackoffStrategy
  stage_retry_delay_seconds: float
  stage_max_delay_seconds: float
  idea_count: int
  checkpoint_retention: int
  worker_poll_seconds: float
  worker_batch_size: int


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _parse_int(name: str, default: int, *, minimum: int = 1) -> int:
  raw = os.getenv(name)
  if raw is None or raw.strip() == "":
    return default
  try:
    value = int(raw)
  except ValueError as exc:
    raise ValueError(f"{name} must be an integer.") from exc
  if value < minimum:
    raise ValueError(f"{name} must be >= {minimum}.")
  return value


def _parse_float(name: str, default: float, *, minimum: float = 0.0) -> float:
  raw = os.getenv(name)
  if raw is None or raw.strip() == "":
    return default
  try:
    value = float(raw)
  except ValueError as exc:
    raise ValueError(f"{name} must be a number.") from exc
  if value < minimum:
    raise ValueError(f"{name} must be >= {minimum}.")
  return value


def _parse_backoff(name: str, default: BackoffStrategy) -> BackoffStrategy:
  raw = (os.getenv(name) or default).strip().lower()
  if raw not in _BACKOFF_STRATEGIES:
    raise ValueError(f"{name} must be one of: {', '.join(sorted(_BACKOFF_STRATEGIES))}.")
  return raw  # type: ignore[return-value]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("IDEAFLOW_ENV", "development").lower()
  debug = _parse_bool(os.getenv("IDEAFLOW_DEBUG"))

  log_max_bytes = _parse_int("IDEAFLOW_LOG_MAX_BYTES", 5242880)  # 5MB default
  log_backup_count = _parse_int("IDEAFLOW_LOG_BACKUP_COUNT", 3, minimum=0)

  # Search timing values are seconds.
  search_timeout_seconds = _parse_float("IDEAFLOW_SEARCH_TIMEOUT_SECONDS", 10.0, minimum=0.001)
  search_rate_limit_interval_seconds = _parse_float("IDEAFLOW_SEARCH_RATE_LIMIT_INTERVAL_SECONDS", 60.0, minimum=0.001)

  return Settings(
    environment=environment,
    debug=debug,
    log_dir=(os.getenv("IDEAFLOW_LOG_DIR") or "logs").strip(),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    serper_api_key=_optional_str(os.getenv("SERPER_API_KEY")),
    search_base_url=(os.getenv("IDEAFLOW_SEARCH_BASE_URL") or "https://google.serper.dev/search").strip(),
    search_timeout_seconds=search_timeout_seconds,
    search_cache_ttl_seconds=_parse_float("IDEAFLOW_SEARCH_CACHE_TTL_SECONDS", 300.0),
    search_cache_max_entries=_parse_int("IDEAFLOW_SEARCH_CACHE_MAX_ENTRIES", 1000),
    search_max_attempts=_parse_int("IDEAFLOW_SEARCH_MAX_ATTEMPTS", 3),
    search_retry_delay_seconds=_parse_float("IDEAFLOW_SEARCH_RETRY_DELAY_SECONDS", 1.0),
    search_backoff=_parse_backoff("IDEAFLOW_SEARCH_BACKOFF", "fixed"),
    search_rate_limit_tokens=_parse_int("IDEAFLOW_SEARCH_RATE_LIMIT_TOKENS", 100),
    search_rate_limit_interval_seconds=search_rate_limit_interval_seconds,
    search_default_gl=(os.getenv("IDEAFLOW_SEARCH_DEFAULT_GL") or "jp").strip().lower(),
    search_default_hl=(os.getenv("IDEAFLOW_SEARCH_DEFAULT_HL") or "ja").strip().lower(),
    search_default_num=_parse_int("IDEAFLOW_SEARCH_DEFAULT_NUM", 10),
    openai_api_key=_optional_str(os.getenv("OPENAI_API_KEY")),
    llm_model=(os.getenv("IDEAFLOW_LLM_MODEL") or "gpt-4o").strip(),
    llm_base_url=_optional_str(os.getenv("IDEAFLOW_LLM_BASE_URL")),
    stage_timeout_seconds=_parse_float("IDEAFLOW_STAGE_TIMEOUT_SECONDS", 300.0, minimum=0.001),
    stage_max_attempts=_parse_int("IDEAFLOW_STAGE_MAX_ATTEMPTS", 3),
    stage_validation_retries=_parse_int("IDEAFLOW_STAGE_VALIDATION_RETRIES", 1, minimum=0),
    stage_rate_limit_retries=_parse_int("IDEAFLOW_STAGE_RATE_LIMIT_RETRIES", 10, minimum=0),
    stage_max_resumes=_parse_int("IDEAFLOW_STAGE_MAX_RESUMES", 1, minimum=0),
    stage_backoff=_parse_backoff("IDEAFLOW_STAGE_BACKOFF", "exponential"),
    stage_retry_delay_seconds=_parse_float("IDEAFLOW_STAGE_RETRY_DELAY_SECONDS", 1.0),
    stage_max_delay_seconds=_parse_float("IDEAFLOW_STAGE_MAX_DELAY_SECONDS", 30.0),
    idea_count=_parse_int("IDEAFLOW_IDEA_COUNT", 5),
    checkpoint_retention=_parse_int("IDEAFLOW_CHECKPOINT_RETENTION", 5),
    worker_poll_seconds=_parse_float("IDEAFLOW_WORKER_POLL_SECONDS", 2.0, minimum=0.01),
    worker_batch_size=_parse_int("IDEAFLOW_WORKER_BATCH_SIZE", 2),
  )
