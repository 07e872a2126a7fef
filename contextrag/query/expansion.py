"""
Query expansion: broaden a query with related terms to improve lexical recall.

Methods:
- llm: ask the language model for comma-separated related terms (confidence 0.8)
- synonym: fixed synonym map (confidence 0.6)
- hybrid: both, LLM terms first, mean of positive confidences
- none: passthrough

Expansion never fails a request; on any provider error the original query is
returned with ``expansion_applied=False``.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from contextrag.providers.base import LanguageModelProvider
from contextrag.services.cache_layer import NAMESPACE_EXPANSION, CacheLayer
from contextrag.services.error_recovery import ErrorRecoveryCoordinator
from contextrag.shared.config import ExpansionConfig
from contextrag.shared.observability import get_logger
from contextrag.shared.resilience import Deadline

logger = get_logger(__name__)

LLM_CONFIDENCE = 0.8
SYNONYM_CONFIDENCE = 0.6

SYNONYMS: Dict[str, List[str]] = {
    "ai": ["artificial intelligence", "machine learning", "neural network"],
    "ml": ["machine learning", "artificial intelligence", "deep learning"],
    "learn": ["study", "understand", "comprehend", "grasp"],
    "help": ["assist", "support", "aid", "guide"],
    "create": ["make", "build", "generate", "produce"],
    "find": ["search", "locate", "discover", "identify"],
    "explain": ["describe", "clarify", "elaborate", "detail"],
}

SYSTEM_PROMPT = (
    "You are a helpful assistant that generates search query expansions. "
    "Return only comma-separated terms."
)

PROMPT_TEMPLATE = (
    "Given the following search query, generate {n} related terms, synonyms, or "
    "alternative phrasings that would help find relevant information. Return only "
    "the terms, separated by commas, without explanations.\n\n"
    'Query: "{query}"\n\nRelated terms:'
)


@dataclass
class ExpandedQuery:
    original_query: str
    expanded_query: str
    expanded_terms: List[str] = field(default_factory=list)
    method: str = "none"
    confidence: float = 0.0
    rationale: str = ""
    expansion_applied: bool = False

    @classmethod
    def passthrough(cls, query: str, method: str = "none", rationale: str = "") -> "ExpandedQuery":
        return cls(
            original_query=query,
            expanded_query=query,
            method=method,
            rationale=rationale or "No expansion",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_query": self.original_query,
            "expanded_query": self.expanded_query,
            "expanded_terms": list(self.expanded_terms),
            "method": self.method,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "expansion_applied": self.expansion_applied,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExpandedQuery":
        return cls(
            original_query=data["original_query"],
            expanded_query=data["expanded_query"],
            expanded_terms=list(data.get("expanded_terms") or []),
            method=data.get("method", "none"),
            confidence=float(data.get("confidence", 0.0)),
            rationale=data.get("rationale", ""),
            expansion_applied=bool(data.get("expansion_applied", False)),
        )


def parse_terms(content: str, query: str, limit: int) -> List[str]:
    """Split comma-separated terms, dropping empties and terms overlapping the query."""
    query_lower = query.lower()
    terms: List[str] = []
    for raw in content.split(","):
        term = raw.strip().strip('"').strip()
        lowered = term.lower()
        if not term or lowered in query_lower or query_lower in lowered:
            continue
        if term not in terms:
            terms.append(term)
    return terms[:limit]


def synonym_terms(query: str, limit: int) -> List[str]:
    query_lower = query.lower()
    terms: List[str] = []
    for word in query_lower.split():
        word = word.strip("?!.,;:\"'()")
        for synonym in SYNONYMS.get(word, []):
            if synonym not in terms and synonym != query_lower:
                terms.append(synonym)
    return terms[:limit]


class QueryExpander:
    """
    Produces an ExpandedQuery for lexical search.

    Args:
        config: Expansion settings
        llm: Language model provider (required for llm/hybrid methods)
        recovery: Coordinator wrapping the LLM call
        cache: Optional cache layer (namespace ``expansion``)
    """

    def __init__(
        self,
        config: Optional[ExpansionConfig] = None,
        llm: Optional[LanguageModelProvider] = None,
        recovery: Optional[ErrorRecoveryCoordinator] = None,
        cache: Optional[CacheLayer] = None,
    ):
        self.config = config or ExpansionConfig()
        self.llm = llm
        self.recovery = recovery or ErrorRecoveryCoordinator()
        self.cache = cache

    async def _llm_terms(self, query: str, deadline: Deadline) -> List[str]:
        if self.llm is None:
            raise RuntimeError("llm expansion requires a language model provider")
        prompt = PROMPT_TEMPLATE.format(n=self.config.max_expansions, query=query)
        options = {
            "system": SYSTEM_PROMPT,
            "temperature": self.config.llm_temperature,
            "max_tokens": self.config.llm_max_tokens,
        }
        response = await self.recovery.execute(
            "llm",
            lambda: asyncio.to_thread(self.llm.complete, prompt, options),
            timeout=self.config.llm_timeout_ms / 1000.0,
            deadline=deadline,
        )
        content = (response.get("text") or "").strip()
        if not content:
            raise ValueError("language model returned an empty expansion")
        return parse_terms(content, query, self.config.max_expansions)

    async def _expand_uncached(
        self, query: str, method: str, deadline: Deadline
    ) -> ExpandedQuery:
        limit = self.config.max_expansions
        terms: List[str] = []
        confidences: List[float] = []
        notes: List[str] = []

        if method in ("llm", "hybrid"):
            try:
                llm_terms = await self._llm_terms(query, deadline)
            except Exception as e:
                if method == "llm":
                    raise
                logger.warning("llm_expansion_failed", query=query[:100], error=str(e))
                notes.append(f"llm failed ({type(e).__name__})")
            else:
                terms.extend(llm_terms)
                if llm_terms:
                    confidences.append(LLM_CONFIDENCE)
                notes.append(f"llm terms={len(llm_terms)}")

        if method in ("synonym", "hybrid"):
            syn_terms = synonym_terms(query, limit)
            for term in syn_terms:
                if term not in terms:
                    terms.append(term)
            if syn_terms:
                confidences.append(SYNONYM_CONFIDENCE)
            notes.append(f"synonym terms={len(syn_terms)}")

        terms = terms[:limit]
        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        applied = bool(terms) and confidence >= self.config.confidence_threshold
        if not terms:
            notes.append("no expansion terms")
        elif not applied:
            notes.append(
                f"confidence {confidence:.2f} below threshold "
                f"{self.config.confidence_threshold:.2f}"
            )

        return ExpandedQuery(
            original_query=query,
            expanded_query=" ".join([query, *terms]) if applied else query,
            expanded_terms=terms,
            method=method,
            confidence=confidence,
            rationale="; ".join(notes),
            expansion_applied=applied,
        )

    async def expand(
        self,
        query: str,
        *,
        method: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> ExpandedQuery:
        """Expand ``query``; returns the query unchanged on any failure."""
        method = method or self.config.method
        deadline = deadline or Deadline.unbounded()
        if method == "none" or not query or not query.strip():
            return ExpandedQuery.passthrough(query, method)

        key = None
        if self.cache is not None:
            key = self.cache.make_key(
                NAMESPACE_EXPANSION,
                query,
                params={"method": method, "max_expansions": self.config.max_expansions},
            )
            cached = await self.cache.aget(key)
            if cached is not None:
                logger.debug("expansion_cache_hit", query=query[:100])
                # Cached terms were derived from the normalized query
                expanded = ExpandedQuery.from_dict(cached)
                expanded.original_query = query
                if expanded.expansion_applied:
                    expanded.expanded_query = " ".join([query, *expanded.expanded_terms])
                else:
                    expanded.expanded_query = query
                return expanded

        try:
            expanded = await self._expand_uncached(query, method, deadline)
        except Exception as e:
            logger.warning(
                "query_expansion_failed",
                query=query[:100],
                method=method,
                error=str(e),
                error_type=type(e).__name__,
            )
            self.recovery.record_degradation("query_expansion", e, reason="original_query")
            return ExpandedQuery.passthrough(
                query, method, rationale=f"Expansion failed: {type(e).__name__}"
            )

        if self.cache is not None and key is not None:
            await self.cache.aset(
                key, expanded.to_dict(), ttl_seconds=self.config.cache_ttl_seconds
            )

        logger.info(
            "query_expanded",
            query=query[:100],
            method=method,
            terms=len(expanded.expanded_terms),
            applied=expanded.expansion_applied,
        )
        return expanded
