"""
Query complexity analysis and adaptive chunk-count selection.

Classifies a query by length, keyword count, intent complexity and query type,
then derives how many chunks the context window should target:

    target = clamp(round(default * intent * length) + type_adj
                   + round((score - 0.5) * 4), min_chunks, max_chunks)

Pure and deterministic; no I/O.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from contextrag.shared.config import QueryAnalysisConfig
from contextrag.shared.observability import get_logger

logger = get_logger(__name__)

STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by from as into about
    is are was were be been being have has had do does did
    will would should could may might can must shall
    this that these those it its i me my we our you your he she they them their
    what which who whom whose where when why how
    """.split()
)

# First match wins, in this order
_QUERY_TYPE_PATTERNS = (
    (
        "exploratory",
        (
            re.compile(r"^(tell me about|learn about|information about|know about)", re.I),
            re.compile(
                r"\b(tell me about|learn about|overview|introduction|background|general"
                r"|in detail|in depth|comprehensive|across|various|different)\b",
                re.I,
            ),
        ),
    ),
    (
        "conceptual",
        (
            re.compile(r"\b(explain|understand|meaning|concept|theory|idea|definition)\b", re.I),
            re.compile(r"^(what does|what do|why)\b", re.I),
        ),
    ),
    (
        "factual",
        (
            re.compile(r"^(what|who|when|where|which)\s+\w+", re.I),
            re.compile(r"^how (many|much)\b", re.I),
        ),
    ),
    (
        "procedural",
        (
            re.compile(r"^how (to|do|can|should)\b", re.I),
            re.compile(r"\b(steps|process|method|procedure|guide|tutorial|way to)\b", re.I),
        ),
    ),
)

_INTENT_SCORES = {"simple": 0.3, "moderate": 0.6, "complex": 0.9}
_TYPE_SCORES = {"exploratory": 0.9, "conceptual": 0.7}


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (Python's round() is banker's rounding)."""
    return int(math.floor(value + 0.5))


def extract_keywords(query: str) -> List[str]:
    """Lowercase, whitespace-split, strip non-word chars, drop stop words and 1-char words."""
    words = (re.sub(r"[^\w]", "", word) for word in query.lower().split())
    return [w for w in words if len(w) >= 2 and w not in STOP_WORDS]


def detect_query_type(query: str) -> str:
    text = query.strip()
    for query_type, patterns in _QUERY_TYPE_PATTERNS:
        if any(pattern.search(text) for pattern in patterns):
            return query_type
    return "unknown"


@dataclass
class QueryAnalysis:
    """Result of analyzing one query."""

    query: str
    length: int
    length_class: str  # short, medium, long
    keyword_count: int
    keywords: List[str]
    intent_complexity: str  # simple, moderate, complex
    query_type: str  # factual, conceptual, procedural, exploratory, unknown
    complexity_score: float
    target_chunk_count: int
    intent_multiplier: float = 1.0
    length_multiplier: float = 1.0
    type_adjustment: int = 0
    complexity_adjustment: int = 0
    reasoning: str = ""

    def to_dict(self) -> Dict:
        return {
            "length": self.length,
            "length_class": self.length_class,
            "keyword_count": self.keyword_count,
            "keywords": list(self.keywords),
            "intent_complexity": self.intent_complexity,
            "query_type": self.query_type,
            "complexity_score": round(self.complexity_score, 4),
            "target_chunk_count": self.target_chunk_count,
            "intent_multiplier": self.intent_multiplier,
            "length_multiplier": self.length_multiplier,
            "type_adjustment": self.type_adjustment,
            "complexity_adjustment": self.complexity_adjustment,
            "reasoning": self.reasoning,
        }


@dataclass
class SourceBalance:
    """Per-origin chunk caps for one request."""

    document_chunks: int
    web_results: int
    reasoning: str = ""
    notes: List[str] = field(default_factory=list)


class QueryAnalyzer:
    """Classifies queries and selects the adaptive target chunk count."""

    def __init__(self, config: Optional[QueryAnalysisConfig] = None):
        self.config = config or QueryAnalysisConfig()

    def _length_class(self, length: int) -> str:
        if length <= self.config.short_max_length:
            return "short"
        if length <= self.config.medium_max_length:
            return "medium"
        return "long"

    def _intent(self, length: int, keyword_count: int) -> str:
        cfg = self.config
        if length < cfg.simple_max_length and keyword_count <= cfg.simple_max_keywords:
            return "simple"
        if length > cfg.complex_min_length or keyword_count > cfg.complex_min_keywords:
            return "complex"
        return "moderate"

    def analyze(
        self,
        query: str,
        min_chunks: Optional[int] = None,
        max_chunks: Optional[int] = None,
    ) -> QueryAnalysis:
        """
        Analyze ``query`` and compute its target chunk count.

        Args:
            query: Raw query text
            min_chunks: Per-request lower bound (defaults to configuration)
            max_chunks: Per-request upper bound (defaults to configuration)
        """
        cfg = self.config
        lower = min_chunks if min_chunks is not None else cfg.min_chunks
        upper = max_chunks if max_chunks is not None else cfg.max_chunks
        if lower > upper:
            raise ValueError(f"min_chunks ({lower}) must not exceed max_chunks ({upper})")

        if not query or not query.strip():
            return QueryAnalysis(
                query=query or "",
                length=0,
                length_class="short",
                keyword_count=0,
                keywords=[],
                intent_complexity="simple",
                query_type="unknown",
                complexity_score=0.0,
                target_chunk_count=lower,
                reasoning=f"Empty query; using minimum chunk count {lower}",
            )

        length = len(query)
        keywords = extract_keywords(query)
        keyword_count = len(keywords)
        length_class = self._length_class(length)
        intent = self._intent(length, keyword_count)
        query_type = detect_query_type(query)

        complexity_score = (
            min(1.0, length / 200) * 0.2
            + min(1.0, keyword_count / 10) * 0.3
            + _INTENT_SCORES[intent] * 0.3
            + _TYPE_SCORES.get(query_type, 0.5) * 0.2
        )

        intent_multiplier = cfg.intent_multipliers[intent]
        length_multiplier = cfg.length_multipliers[length_class]
        type_adjustment = cfg.type_adjustments.get(query_type, 0)
        complexity_adjustment = round_half_up((complexity_score - 0.5) * 4)

        raw = (
            round_half_up(cfg.default_chunks * intent_multiplier * length_multiplier)
            + type_adjustment
            + complexity_adjustment
        )
        target = max(lower, min(upper, raw))

        reasoning = "; ".join(
            [
                f"Query complexity: {intent} (score: {complexity_score:.2f})",
                f"Query type: {query_type}",
                f"Length: {length} chars ({length_class}), {keyword_count} keywords",
                f"Applied multipliers: intent={intent_multiplier:.2f}, length={length_multiplier:.2f}",
                f"Type adjustment: {type_adjustment:+d}, complexity adjustment: {complexity_adjustment:+d}",
                f"Final chunk count: {target} (bounds {lower}-{upper})",
            ]
        )

        logger.debug(
            "query_analyzed",
            query=query[:100],
            intent=intent,
            query_type=query_type,
            target_chunk_count=target,
        )

        return QueryAnalysis(
            query=query,
            length=length,
            length_class=length_class,
            keyword_count=keyword_count,
            keywords=keywords,
            intent_complexity=intent,
            query_type=query_type,
            complexity_score=complexity_score,
            target_chunk_count=target,
            intent_multiplier=intent_multiplier,
            length_multiplier=length_multiplier,
            type_adjustment=type_adjustment,
            complexity_adjustment=complexity_adjustment,
            reasoning=reasoning,
        )

    def plan_source_balance(
        self,
        analysis: QueryAnalysis,
        *,
        max_document_chunks: Optional[int] = None,
        max_web_results: Optional[int] = None,
        web_enabled: bool = False,
        adaptive: bool = True,
    ) -> SourceBalance:
        """
        Split the target between document chunks and web results.

        An explicit document cap bounds the target, it never raises it. An
        explicit web cap wins. Without one and with adaptive selection on, the
        web share is ``clamp(floor(doc * 0.8), 2, 10)``.
        """
        cfg = self.config
        notes: List[str] = []

        doc_chunks = analysis.target_chunk_count
        if max_document_chunks is not None:
            doc_chunks = min(max_document_chunks, doc_chunks)
            notes.append(f"document cap {max_document_chunks} from request")

        if not web_enabled:
            web_results = 0
        elif max_web_results is not None:
            web_results = max_web_results
            notes.append(f"web cap {web_results} from request")
        elif adaptive:
            web_results = max(
                cfg.min_web_results,
                min(cfg.max_web_results, math.floor(doc_chunks * cfg.web_ratio)),
            )
            notes.append(f"web share {web_results} = clamp(floor({doc_chunks} x {cfg.web_ratio}))")
        else:
            web_results = cfg.max_web_results // 2

        reasoning = f"documents={doc_chunks}, web={web_results}"
        if notes:
            reasoning += f" ({'; '.join(notes)})"
        return SourceBalance(
            document_chunks=doc_chunks,
            web_results=web_results,
            reasoning=reasoning,
            notes=notes,
        )
