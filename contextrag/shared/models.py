"""
Core data model for the retrieval pipeline.

CandidateChunk follows append-only scoring: a retrieval stage creates the chunk
with its own score, later stages attach new score fields and never overwrite
one that is already set.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ContextBaseModel(BaseModel):
    model_config = ConfigDict(
        protected_namespaces=(),  # allow fields like model_name
        arbitrary_types_allowed=True,
    )


class SourceOrigin(str, Enum):
    """Where a candidate chunk was retrieved from."""

    VECTOR = "vector"
    LEXICAL = "lexical"
    WEB = "web"


# Lower value wins ties (vector before lexical before web)
SOURCE_PRIORITY = {
    SourceOrigin.VECTOR: 0,
    SourceOrigin.LEXICAL: 1,
    SourceOrigin.WEB: 2,
}

SCORE_FIELDS = ("similarity_score", "lexical_score", "fused_score", "rerank_score")


@dataclass(frozen=True)
class SourceDescriptor:
    origin: SourceOrigin
    source_id: str
    document_id: Optional[str] = None


@dataclass
class CandidateChunk:
    """A retrieval candidate with per-stage scoring metadata."""

    chunk_id: str
    text: str
    source: SourceDescriptor

    # Scores, attached stage by stage
    similarity_score: Optional[float] = None  # raw vector similarity
    lexical_score: Optional[float] = None  # raw lexical / web provider score
    fused_score: Optional[float] = None
    rerank_score: Optional[float] = None

    # Per-source ranks (1-based) used for tie-breaks and rank fusion
    vector_rank: Optional[int] = None
    lexical_rank: Optional[int] = None
    web_rank: Optional[int] = None

    token_count: Optional[int] = None
    truncated: bool = False
    embedding: Optional[List[float]] = field(default=None, repr=False, compare=False)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def attach_score(self, name: str, value: float) -> None:
        """Attach a score produced by a later stage.

        Raises:
            ValueError: If the name is not a score field or is already set
        """
        if name not in SCORE_FIELDS:
            raise ValueError(f"Unknown score field: {name}")
        if getattr(self, name) is not None:
            raise ValueError(f"{name} already set on chunk {self.chunk_id}")
        setattr(self, name, float(value))

    @property
    def document_id(self) -> Optional[str]:
        return self.source.document_id

    @property
    def origin(self) -> SourceOrigin:
        return self.source.origin

    @property
    def best_score(self) -> float:
        """Most refined score available (rerank > fused > raw)."""
        for name in ("rerank_score", "fused_score", "similarity_score", "lexical_score"):
            value = getattr(self, name)
            if value is not None:
                return value
        return 0.0

    @property
    def best_rank(self) -> int:
        ranks = [
            r for r in (self.vector_rank, self.lexical_rank, self.web_rank) if r is not None
        ]
        return min(ranks) if ranks else 1_000_000

    def has_score(self) -> bool:
        return any(getattr(self, name) is not None for name in SCORE_FIELDS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "text": self.text,
            "source": {
                "origin": self.source.origin.value,
                "source_id": self.source.source_id,
                "document_id": self.source.document_id,
            },
            "similarity_score": self.similarity_score,
            "lexical_score": self.lexical_score,
            "fused_score": self.fused_score,
            "rerank_score": self.rerank_score,
            "vector_rank": self.vector_rank,
            "lexical_rank": self.lexical_rank,
            "web_rank": self.web_rank,
            "token_count": self.token_count,
            "truncated": self.truncated,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CandidateChunk":
        source = data["source"]
        return cls(
            chunk_id=data["chunk_id"],
            text=data["text"],
            source=SourceDescriptor(
                origin=SourceOrigin(source["origin"]),
                source_id=source["source_id"],
                document_id=source.get("document_id"),
            ),
            similarity_score=data.get("similarity_score"),
            lexical_score=data.get("lexical_score"),
            fused_score=data.get("fused_score"),
            rerank_score=data.get("rerank_score"),
            vector_rank=data.get("vector_rank"),
            lexical_rank=data.get("lexical_rank"),
            web_rank=data.get("web_rank"),
            token_count=data.get("token_count"),
            truncated=data.get("truncated", False),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    context_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.context_tokens + self.completion_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "context_tokens": self.context_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ContextWindow:
    """Final ordered context handed to answer generation."""

    query: str
    chunks: List[CandidateChunk]
    token_usage: TokenUsage
    token_budget: int
    target_chunk_count: int
    rationale: str = ""
    expanded_query: Optional[str] = None
    expansion_applied: bool = False
    degraded: bool = False
    degradation_reasons: List[str] = field(default_factory=list)

    @property
    def token_total(self) -> int:
        """Tokens occupied by chunk content (bounded by token_budget)."""
        return self.token_usage.context_tokens

    @property
    def document_chunks(self) -> List[CandidateChunk]:
        return [c for c in self.chunks if c.origin != SourceOrigin.WEB]

    @property
    def web_chunks(self) -> List[CandidateChunk]:
        return [c for c in self.chunks if c.origin == SourceOrigin.WEB]

    def mark_degraded(self, reason: str) -> None:
        self.degraded = True
        if reason not in self.degradation_reasons:
            self.degradation_reasons.append(reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "chunks": [c.to_dict() for c in self.chunks],
            "token_usage": self.token_usage.to_dict(),
            "token_budget": self.token_budget,
            "target_chunk_count": self.target_chunk_count,
            "rationale": self.rationale,
            "expanded_query": self.expanded_query,
            "expansion_applied": self.expansion_applied,
            "degraded": self.degraded,
            "degradation_reasons": list(self.degradation_reasons),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContextWindow":
        usage = data.get("token_usage") or {}
        return cls(
            query=data["query"],
            chunks=[CandidateChunk.from_dict(c) for c in data.get("chunks", [])],
            token_usage=TokenUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                context_tokens=usage.get("context_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
            ),
            token_budget=data["token_budget"],
            target_chunk_count=data["target_chunk_count"],
            rationale=data.get("rationale", ""),
            expanded_query=data.get("expanded_query"),
            expansion_applied=data.get("expansion_applied", False),
            degraded=data.get("degraded", False),
            degradation_reasons=list(data.get("degradation_reasons") or []),
        )


class RetrievalFilters(ContextBaseModel):
    """Per-request scope; also used for cache key derivation and invalidation."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    user_id: Optional[str] = None
    topic_id: Optional[str] = None
    document_ids: List[str] = Field(default_factory=list)
    time_range_start: Optional[datetime] = None
    time_range_end: Optional[datetime] = None
    geography: Optional[str] = None

    def to_provider_filters(self) -> Dict[str, Any]:
        """Filters as a plain dict for provider calls (unset fields omitted)."""
        return self.model_dump(mode="json", exclude_none=True, exclude_defaults=True)


class RetrievalOptions(ContextBaseModel):
    """Caller supplied options for one retrieve_context call."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    enable_document_search: bool = True
    enable_vector_search: bool = True
    enable_web_search: bool = False
    enable_query_expansion: Optional[bool] = None  # None: use configuration
    max_document_chunks: Optional[int] = Field(default=None, gt=0)
    max_web_results: Optional[int] = Field(default=None, ge=0)
    min_chunks: Optional[int] = Field(default=None, gt=0)
    max_chunks: Optional[int] = Field(default=None, gt=0)
    use_adaptive_context_selection: bool = True
    token_budget: Optional[int] = Field(default=None, gt=0)
    deadline_ms: Optional[int] = Field(default=None, gt=0)
    filters: RetrievalFilters = Field(default_factory=RetrievalFilters)

    @model_validator(mode="after")
    def check_chunk_bounds(self):
        if (
            self.min_chunks is not None
            and self.max_chunks is not None
            and self.min_chunks > self.max_chunks
        ):
            raise ValueError(
                f"min_chunks ({self.min_chunks}) must not exceed max_chunks ({self.max_chunks})"
            )
        return self

    def cache_params(self) -> Dict[str, Any]:
        """Options that change the pipeline output (deadline excluded)."""
        return self.model_dump(mode="json", exclude={"deadline_ms"})
