"""Exact and near-duplicate removal."""

from contextrag.query.dedup import Deduplicator, content_hash, normalize_text
from contextrag.shared.config import DeduplicationConfig
from contextrag.shared.models import CandidateChunk, SourceDescriptor, SourceOrigin

PASSAGE = (
    "Backpropagation computes the gradient of the loss function with respect to every "
    "weight in the network by applying the chain rule layer by layer."
)


def chunk(chunk_id, text, score, origin=SourceOrigin.VECTOR):
    return CandidateChunk(
        chunk_id=chunk_id,
        text=text,
        source=SourceDescriptor(origin, chunk_id),
        fused_score=score,
    )


class TestDeduplicator:
    def test_near_duplicates_keep_higher_score(self):
        # A single word differs; the lower-scored copy comes first
        web_copy = chunk("web:1", PASSAGE.replace("every", "each!"), 0.4, SourceOrigin.WEB)
        doc_copy = chunk("c4", PASSAGE, 0.8)
        other = chunk("c7", "Transformers replace recurrence with attention.", 0.6)

        kept = Deduplicator().deduplicate([web_copy, other, doc_copy])
        assert [c.chunk_id for c in kept] == ["c7", "c4"]

    def test_exact_duplicates_after_normalization(self):
        a = chunk("a", "Neural  networks learn.", 0.5)
        b = chunk("b", "neural networks LEARN.", 0.7)
        kept = Deduplicator().deduplicate([a, b])
        assert [c.chunk_id for c in kept] == ["b"]

    def test_distinct_texts_kept_in_order(self):
        items = [chunk("x", "alpha beta gamma", 0.1), chunk("y", "delta epsilon", 0.9)]
        assert Deduplicator().deduplicate(items) == items

    def test_threshold_is_configurable(self):
        a = chunk("a", "the quick brown fox jumps", 0.9)
        b = chunk("b", "the quick brown fox leaps", 0.5)
        assert len(Deduplicator().deduplicate([a, b])) == 2
        assert len(Deduplicator(DeduplicationConfig(near_duplicate_threshold=0.7)).deduplicate([a, b])) == 1

    def test_disabled(self):
        items = [chunk("a", "same", 0.5), chunk("b", "same", 0.4)]
        assert Deduplicator(DeduplicationConfig(enabled=False)).deduplicate(items) == items


def test_normalization_helpers():
    assert normalize_text("  A\tB \n c ") == "a b c"
    assert content_hash("A  b") == content_hash("a b")
