"""MMR diversity selection."""

import numpy as np
import pytest

from contextrag.query.diversity import DiversityFilter, min_max
from contextrag.shared.config import DiversityConfig
from contextrag.shared.models import CandidateChunk, SourceDescriptor, SourceOrigin


def chunk(chunk_id, fused, embedding):
    return CandidateChunk(
        chunk_id=chunk_id,
        text=chunk_id,
        source=SourceDescriptor(SourceOrigin.VECTOR, chunk_id),
        fused_score=fused,
        embedding=embedding,
    )


@pytest.fixture
def candidates():
    # b is a near copy of a; c points elsewhere
    return [
        chunk("a", 1.0, [1.0, 0.0]),
        chunk("b", 0.9, [1.0, 0.01]),
        chunk("c", 0.8, [0.0, 1.0]),
        chunk("d", 0.1, [0.7, 0.7]),
    ]


class TestDiversityFilter:
    def test_mmr_prefers_dissimilar(self, candidates):
        selected = DiversityFilter(DiversityConfig(**{"lambda": 0.7})).select(candidates, 2)
        assert [c.chunk_id for c in selected] == ["a", "c"]

    def test_lambda_one_is_pure_relevance(self, candidates):
        selected = DiversityFilter(DiversityConfig(**{"lambda": 1.0})).select(candidates, 3)
        assert [c.chunk_id for c in selected] == ["a", "b", "c"]

    def test_missing_embedding_falls_back_to_relevance(self, candidates):
        candidates[0].embedding = None
        candidates[3].fused_score = None
        candidates[3].rerank_score = 0.95
        selected = DiversityFilter().select(candidates, 2)
        assert [c.chunk_id for c in selected] == ["a", "d"]

    def test_rerank_score_preferred_for_relevance(self):
        items = [chunk("x", 0.1, None), chunk("y", 0.9, None)]
        items[0].rerank_score = 0.99
        selected = DiversityFilter().select(items + [chunk("z", 0.5, None)], 1)
        assert [c.chunk_id for c in selected] == ["x"]

    def test_small_inputs(self, candidates):
        flt = DiversityFilter()
        assert flt.select(candidates, 0) == []
        assert flt.select([], 3) == []
        assert flt.select(candidates[:2], 5) == candidates[:2]

    def test_disabled_truncates(self, candidates):
        flt = DiversityFilter(DiversityConfig(enabled=False))
        assert flt.select(candidates, 2) == candidates[:2]


def test_min_max_constant_input():
    assert min_max(np.asarray([0.4, 0.4])).tolist() == [1.0, 1.0]
    assert min_max(np.asarray([0.0, 0.5, 1.0])).tolist() == [0.0, 0.5, 1.0]
