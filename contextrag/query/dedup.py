"""
Content deduplication.

Exact duplicates are found by SHA-256 of whitespace-normalized lowercase text;
near duplicates by difflib character ratio above the configured threshold.
Candidates are visited best score first so the higher-scored copy survives;
survivors keep their incoming order.
"""

import hashlib
from difflib import SequenceMatcher
from typing import List, Tuple

from contextrag.shared.config import DeduplicationConfig
from contextrag.shared.models import CandidateChunk
from contextrag.shared.observability import get_logger

logger = get_logger(__name__)


def normalize_text(text: str) -> str:
    return " ".join((text or "").lower().split())


def content_hash(text: str) -> str:
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def similarity(a: str, b: str) -> float:
    return SequenceMatcher(None, a, b, autojunk=False).ratio()


class Deduplicator:
    def __init__(self, config: DeduplicationConfig = None):
        self.config = config or DeduplicationConfig()

    def _is_near_duplicate(self, text: str, kept: List[str]) -> bool:
        threshold = self.config.near_duplicate_threshold
        for other in kept:
            # Cheap upper bounds first
            if 2 * min(len(text), len(other)) / ((len(text) + len(other)) or 1) <= threshold:
                continue
            matcher = SequenceMatcher(None, text, other, autojunk=False)
            if matcher.real_quick_ratio() <= threshold or matcher.quick_ratio() <= threshold:
                continue
            if matcher.ratio() > threshold:
                return True
        return False

    def deduplicate(self, candidates: List[CandidateChunk]) -> List[CandidateChunk]:
        if not self.config.enabled or len(candidates) < 2:
            return list(candidates)

        visit: List[Tuple[int, CandidateChunk]] = sorted(
            enumerate(candidates), key=lambda item: (-item[1].best_score, item[0])
        )
        hashes = set()
        kept_texts: List[str] = []
        kept_positions = set()
        exact = near = 0
        for position, chunk in visit:
            normalized = normalize_text(chunk.text)
            digest = content_hash(chunk.text)
            if digest in hashes:
                exact += 1
                continue
            if self._is_near_duplicate(normalized, kept_texts):
                near += 1
                continue
            hashes.add(digest)
            kept_texts.append(normalized)
            kept_positions.add(position)

        if exact or near:
            logger.debug(
                "duplicates_removed",
                exact=exact,
                near=near,
                kept=len(kept_positions),
            )
        return [c for i, c in enumerate(candidates) if i in kept_positions]
