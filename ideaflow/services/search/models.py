"""Search request, result and wire payload types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


@dataclass(frozen=True)
class SearchQuery:
  """One outbound search request."""

  query: str
  gl: str = "jp"
  hl: str = "ja"
  num: int = 10
  type: str = "search"

  def cache_key(self) -> str:
    """Normalized key over query text, locale, result count and search type."""
    text = " ".join(self.query.split()).lower()
    return f"{text}|{self.gl.lower()}|{self.hl.lower()}|{self.num}|{self.type.lower()}"

  def to_payload(self) -> dict[str, Any]:
    return {"q": self.query, "gl": self.gl, "hl": self.hl, "num": self.num, "type": self.type}


@dataclass(frozen=True)
class SearchResult:
  title: str
  link: str
  snippet: str
  position: int | None = None
  date: str | None = None


@dataclass(frozen=True)
class SearchResponse:
  """Results for one query plus metadata."""

  query: SearchQuery
  results: tuple[SearchResult, ...] = ()
  total_results: int = 0
  search_time: float = 0.0
  cached: bool = False
  error: str | None = None

  @classmethod
  def failed(cls, query: SearchQuery, error: str) -> SearchResponse:
    """Empty response used when a batch item fails."""
    return cls(query=query, error=error)


@dataclass(frozen=True)
class CacheEntry:
  """Whole cached result set; replaced, never mutated."""

  query: SearchQuery
  results: tuple[SearchResult, ...]
  total_results: int
  stored_at: float = field(compare=False)


class _PayloadItem(BaseModel):
  model_config = ConfigDict(extra="ignore")

  title: str = ""
  link: str
  snippet: str = ""
  position: int | None = None
  date: str | None = None


class _SearchInformation(BaseModel):
  model_config = ConfigDict(extra="ignore", populate_by_name=True)

  total_results: int = Field(default=0, alias="totalResults")
  time_taken: float = Field(default=0.0, alias="timeTaken")

  @field_validator("total_results", mode="before")
  @classmethod
  def _strip_separators(cls, value: Any) -> Any:
    if isinstance(value, str):
      return value.replace(",", "").strip() or 0
    return value


class SearchPayload(BaseModel):
  """Subset of the search API response the client relies on."""

  model_config = ConfigDict(extra="ignore", populate_by_name=True)

  organic: list[_PayloadItem] = Field(default_factory=list)
  news: list[_PayloadItem] = Field(default_factory=list)
  search_information: _SearchInformation | None = Field(default=None, alias="searchInformation")

  def to_results(self) -> tuple[SearchResult, ...]:
    """Organic results first, then news, preserving API order."""
    items = [*self.organic, *self.news]
    return tuple(SearchResult(title=item.title, link=item.link, snippet=item.snippet, position=item.position, date=item.date) for item in items)
