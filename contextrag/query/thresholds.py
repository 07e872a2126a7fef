"""
Similarity threshold and top-K selection per query type.

Pure: every decision is a function of the query type, the target chunk count
and (optionally) the scores seen so far.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np

from contextrag.shared.config import ThresholdConfig


@dataclass
class ThresholdDecision:
    similarity_threshold: float
    top_k: int
    strategy: str  # query-type, distribution, relaxed, tightened
    reasoning: str


@dataclass
class ScoreDistribution:
    count: int
    mean: float
    median: float
    std: float
    min: float
    max: float
    percentiles: Dict[str, float]

    def to_dict(self) -> Dict:
        return {
            "count": self.count,
            "mean": self.mean,
            "median": self.median,
            "std": self.std,
            "min": self.min,
            "max": self.max,
            "percentiles": dict(self.percentiles),
        }


def analyze_distribution(scores: Sequence[float]) -> ScoreDistribution:
    """Summary statistics of a score list (nearest-rank percentiles)."""
    if len(scores) == 0:
        zeros = {f"p{p}": 0.0 for p in (25, 50, 75, 90, 95)}
        return ScoreDistribution(0, 0.0, 0.0, 0.0, 0.0, 0.0, zeros)

    ordered = np.sort(np.asarray(scores, dtype=float))
    n = len(ordered)

    def percentile(p: float) -> float:
        return float(ordered[min(int(n * p), n - 1)])

    median = float(ordered[n // 2])
    return ScoreDistribution(
        count=n,
        mean=float(ordered.mean()),
        median=median,
        std=float(ordered.std()),
        min=float(ordered[0]),
        max=float(ordered[-1]),
        percentiles={
            "p25": percentile(0.25),
            "p50": median,
            "p75": percentile(0.75),
            "p90": percentile(0.90),
            "p95": percentile(0.95),
        },
    )


class ThresholdOptimizer:
    def __init__(self, config: Optional[ThresholdConfig] = None):
        self.config = config or ThresholdConfig()

    def _clamp(self, threshold: float) -> float:
        return max(self.config.min_threshold, min(self.config.max_threshold, threshold))

    def analyze_distribution(self, scores: Sequence[float]) -> ScoreDistribution:
        return analyze_distribution(scores)

    def _distribution_threshold(self, dist: ScoreDistribution) -> float:
        p = self.config.percentile
        named = {0.75: "p75", 0.90: "p90", 0.95: "p95"}
        if p in named:
            threshold = dist.percentiles[named[p]]
        else:
            p50, p75 = dist.percentiles["p50"], dist.percentiles["p75"]
            threshold = p50 + (p75 - p50) * (p - 0.5) / 0.25
        threshold = self._clamp(threshold)
        # Tight distribution: stay close to the mean
        if dist.std < 0.1 and dist.mean > 0.5:
            threshold = max(threshold, dist.mean - 0.1)
        return threshold

    def thresholds_for(
        self,
        query_type: str,
        target_chunk_count: int,
        scores: Optional[Sequence[float]] = None,
    ) -> ThresholdDecision:
        cfg = self.config
        threshold = cfg.query_type_thresholds.get(query_type, cfg.default_threshold)
        strategy = "query-type"
        reasoning = f"Query type: {query_type}, type-specific threshold {threshold:.2f}"

        if cfg.use_distribution_analysis and scores:
            dist = analyze_distribution(scores)
            adaptive = self._distribution_threshold(dist)
            if cfg.min_threshold <= adaptive <= cfg.max_threshold:
                threshold = adaptive
                strategy = "distribution"
                reasoning = (
                    f"Distribution-based threshold {threshold:.3f} "
                    f"(mean {dist.mean:.3f}, p75 {dist.percentiles['p75']:.3f})"
                )

        type_top_k = cfg.query_type_top_k.get(query_type, cfg.query_type_top_k["unknown"])
        top_k = min(cfg.max_top_k, max(type_top_k, 2 * target_chunk_count))

        return ThresholdDecision(
            similarity_threshold=self._clamp(threshold),
            top_k=top_k,
            strategy=strategy,
            reasoning=f"{reasoning}; top_k={top_k}",
        )

    def relax_for_results(self, threshold: float, count: int) -> float:
        """Lower the threshold when too few results survive, raise it when too many."""
        cfg = self.config
        if count < cfg.min_results:
            return self._clamp(threshold - cfg.relax_step)
        if count > cfg.max_results:
            return self._clamp(threshold + cfg.tighten_step)
        return threshold
