"""
Context assembly: ordering, caps, token budget and truncation.

The word tokenizer makes token counts equal to word counts.
"""

import pytest

from contextrag.query.context_assembly import (
    ContextAssembler,
    format_context_for_prompt,
    plan_token_budget,
)
from contextrag.shared.config import ContextConfig
from contextrag.shared.models import CandidateChunk, SourceDescriptor, SourceOrigin
from contextrag.shared.resilience import Deadline


def words(n, prefix="w"):
    return " ".join(f"{prefix}{i}" for i in range(n))


def chunk(chunk_id, n_words, score, origin=SourceOrigin.VECTOR, **metadata):
    return CandidateChunk(
        chunk_id=chunk_id,
        text=words(n_words, prefix=chunk_id),
        source=SourceDescriptor(origin, chunk_id, None if origin == SourceOrigin.WEB else "d1"),
        fused_score=score,
        metadata=metadata,
    )


@pytest.fixture
def assembler(tokenizer):
    return ContextAssembler(ContextConfig(system_prompt_tokens=0), tokenizer)


def assemble(assembler, candidates, **kwargs):
    params = dict(
        token_budget=1000,
        target_chunk_count=5,
        min_chunks=1,
        max_chunks=15,
    )
    params.update(kwargs)
    return assembler.assemble("what is ai", candidates, **params)


class TestOrderingAndCaps:
    def test_descending_score_order(self, assembler):
        window = assemble(assembler, [chunk("a", 3, 0.2), chunk("b", 3, 0.9), chunk("c", 3, 0.5)])
        assert [c.chunk_id for c in window.chunks] == ["b", "c", "a"]
        assert window.token_total == 9
        assert all(c.token_count == 3 for c in window.chunks)
        assert not window.degraded

    def test_document_and_web_caps(self, assembler):
        candidates = [
            chunk("d1", 2, 0.9),
            chunk("w1", 2, 0.85, SourceOrigin.WEB),
            chunk("d2", 2, 0.8),
            chunk("w2", 2, 0.75, SourceOrigin.WEB),
            chunk("d3", 2, 0.7),
        ]
        window = assemble(assembler, candidates, max_document_chunks=2, max_web_results=1)
        assert [c.chunk_id for c in window.chunks] == ["d1", "w1", "d2"]
        assert len(window.web_chunks) == 1

    def test_web_excluded_by_default(self, assembler):
        window = assemble(assembler, [chunk("w1", 2, 0.9, SourceOrigin.WEB), chunk("d1", 2, 0.1)])
        assert [c.chunk_id for c in window.chunks] == ["d1"]

    def test_max_chunks_limit(self, assembler):
        candidates = [chunk(f"c{i}", 1, 1.0 - i / 10) for i in range(6)]
        window = assemble(assembler, candidates, max_document_chunks=6, max_chunks=4)
        assert len(window.chunks) == 4

    def test_target_is_default_document_cap(self, assembler):
        candidates = [chunk(f"c{i}", 1, 1.0 - i / 10) for i in range(6)]
        window = assemble(assembler, candidates, target_chunk_count=3)
        assert len(window.chunks) == 3
        assert window.target_chunk_count == 3

    def test_document_cap_never_exceeds_target(self, assembler):
        candidates = [chunk(f"c{i}", 1, 1.0 - i / 20) for i in range(12)]
        window = assemble(assembler, candidates, target_chunk_count=3, max_document_chunks=20)
        assert [c.chunk_id for c in window.chunks] == ["c0", "c1", "c2"]


class TestTokenBudget:
    def test_truncates_last_chunk(self, assembler):
        candidates = [chunk("a", 10, 0.9), chunk("b", 10, 0.8), chunk("c", 10, 0.7)]
        window = assemble(assembler, candidates, token_budget=25)

        assert [c.chunk_id for c in window.chunks] == ["a", "b", "c"]
        last = window.chunks[-1]
        assert last.truncated
        assert last.token_count == 5
        assert last.text == words(5, prefix="c")
        assert window.token_total == 25
        # Original candidate is untouched
        assert not candidates[2].truncated
        assert "Truncated 1 chunk" in window.rationale

    def test_drops_chunk_below_truncation_ratio(self, assembler):
        candidates = [chunk("a", 10, 0.9), chunk("b", 10, 0.8), chunk("c", 10, 0.7)]
        window = assemble(assembler, candidates, token_budget=21)

        assert [c.chunk_id for c in window.chunks] == ["a", "b"]
        assert window.token_total == 20
        assert "Dropped 1 chunk" in window.rationale

    def test_budget_never_exceeded(self, assembler):
        candidates = [chunk(f"c{i}", 7, 1.0 - i / 10) for i in range(5)]
        for budget in (1, 6, 7, 13, 30):
            window = assemble(assembler, candidates, token_budget=budget)
            assert window.token_total <= budget

    def test_below_min_chunks_marks_degraded(self, assembler):
        candidates = [chunk("a", 10, 0.9), chunk("b", 10, 0.8)]
        window = assemble(assembler, candidates, token_budget=5, min_chunks=3)

        assert len(window.chunks) == 1
        assert window.degraded
        assert window.degradation_reasons[0].startswith("below_min_chunks: 1 < 3")

    def test_token_usage(self, tokenizer):
        assembler = ContextAssembler(ContextConfig(system_prompt_tokens=200), tokenizer)
        window = assemble(assembler, [chunk("a", 4, 0.9)], response_tokens=300)
        usage = window.token_usage.to_dict()
        assert usage == {
            "prompt_tokens": 203,
            "context_tokens": 4,
            "completion_tokens": 300,
            "total_tokens": 507,
        }


class TestDeadline:
    def test_expired_deadline_stops_assembly(self, assembler):
        now = [0.0]
        deadline = Deadline(10, clock=lambda: now[0])
        now[0] = 1.0

        window = assemble(assembler, [chunk("a", 2, 0.9)], deadline=deadline)
        assert window.chunks == []
        assert "deadline_exceeded_during_assembly" in window.degradation_reasons


class TestPlanTokenBudget:
    def test_allocation_capped_by_max_context_tokens(self):
        budget = plan_token_budget(ContextConfig())
        assert budget.model_limit == 16385
        assert budget.context_tokens == 6000
        assert (budget.document_tokens, budget.web_tokens) == (4285, 1715)
        assert budget.response_tokens == 2457
        assert budget.source == "allocation"

    def test_requested_budget_wins(self):
        budget = plan_token_budget(ContextConfig(), requested=1000)
        assert budget.context_tokens == 1000
        assert budget.source == "request"

    def test_small_model(self):
        config = ContextConfig(model="gpt-4", max_context_tokens=100000)
        assert plan_token_budget(config).context_tokens == int(8192 * 0.7)


def test_format_context_for_prompt(assembler):
    candidates = [
        chunk("d1", 2, 0.9, title="Neural Nets"),
        chunk("w1", 2, 0.8, SourceOrigin.WEB, title="Web Page", url="https://example.com"),
    ]
    window = assemble(assembler, candidates, max_web_results=1)
    assert format_context_for_prompt(window) == (
        "[Document 1] Neural Nets\nd10 d11\n\n"
        "[Web Source 1]\nTitle: Web Page\nURL: https://example.com\nw10 w11"
    )
