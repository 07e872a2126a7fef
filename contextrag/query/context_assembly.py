"""
Context assembly and token budget enforcement.

Candidates are added greedily in descending score order until the chunk limit
or the token budget is reached. When the budget runs out first, the next chunk
is truncated to the remaining tokens if that keeps at least
``min_truncation_ratio`` of its tokens, otherwise it is dropped; assembly stops
either way. Deadline expiry stops assembly and marks the window degraded.
"""

import math
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional

from contextrag.providers.tokenizer_service import TokenizerService
from contextrag.shared.config import ContextConfig
from contextrag.shared.models import CandidateChunk, ContextWindow, SourceOrigin, TokenUsage
from contextrag.shared.observability import get_logger
from contextrag.shared.observability.metrics import context_tokens
from contextrag.shared.resilience import Deadline

logger = get_logger(__name__)


@dataclass
class TokenBudget:
    """Token plan for one request."""

    context_tokens: int  # chunk content budget
    document_tokens: int
    web_tokens: int
    response_tokens: int
    model: str
    model_limit: int
    source: str  # request or allocation


def plan_token_budget(config: ContextConfig, requested: Optional[int] = None) -> TokenBudget:
    """
    ``requested`` wins; otherwise ``model_limit * (document + web allocation)``
    capped by ``max_context_tokens``.
    """
    limit = config.model_context_limits.get(config.model, config.max_context_tokens)
    doc_ratio = config.allocation.get("document_context", 0.0)
    web_ratio = config.allocation.get("web_context", 0.0)

    if requested is not None:
        total, source = requested, "request"
    else:
        total = min(int(limit * (doc_ratio + web_ratio)), config.max_context_tokens)
        source = "allocation"

    share = doc_ratio / (doc_ratio + web_ratio) if doc_ratio + web_ratio > 0 else 1.0
    document_tokens = int(total * share)
    return TokenBudget(
        context_tokens=total,
        document_tokens=document_tokens,
        web_tokens=total - document_tokens,
        response_tokens=int(limit * config.allocation.get("response", 0.0)),
        model=config.model,
        model_limit=limit,
        source=source,
    )


class ContextAssembler:
    def __init__(self, config: ContextConfig, tokenizer: TokenizerService):
        self.config = config
        self.tokenizer = tokenizer

    def assemble(
        self,
        query: str,
        candidates: List[CandidateChunk],
        *,
        token_budget: int,
        target_chunk_count: int,
        min_chunks: int,
        max_chunks: int,
        max_document_chunks: Optional[int] = None,
        max_web_results: Optional[int] = None,
        response_tokens: int = 0,
        deadline: Optional[Deadline] = None,
        rationale: Iterable[str] = (),
    ) -> ContextWindow:
        """
        Build the ContextWindow from filtered candidates.

        Args:
            token_budget: Upper bound on the summed chunk tokens
            target_chunk_count: Adaptive target (already within bounds)
            max_document_chunks: Cap on vector/lexical chunks, never above the target
            max_web_results: Cap on web chunks (0 excludes web)
            response_tokens: Reserved completion tokens reported in the usage
        """
        deadline = deadline or Deadline.unbounded()
        doc_cap = target_chunk_count
        if max_document_chunks is not None:
            doc_cap = min(max_document_chunks, target_chunk_count)
        web_cap = max_web_results if max_web_results is not None else 0
        limit = min(max_chunks, doc_cap + web_cap)

        ordered = sorted(
            enumerate(candidates), key=lambda item: (-item[1].best_score, item[0])
        )

        window = ContextWindow(
            query=query,
            chunks=[],
            token_usage=TokenUsage(
                prompt_tokens=self.tokenizer.count_tokens(query) + self.config.system_prompt_tokens,
                completion_tokens=response_tokens,
            ),
            token_budget=token_budget,
            target_chunk_count=target_chunk_count,
        )

        used = 0
        doc_count = web_count = 0
        budget_exhausted = False
        truncated = dropped = 0
        for _, chunk in ordered:
            if deadline.expired():
                window.mark_degraded("deadline_exceeded_during_assembly")
                break
            if len(window.chunks) >= limit:
                break
            is_web = chunk.origin == SourceOrigin.WEB
            if (is_web and web_count >= web_cap) or (not is_web and doc_count >= doc_cap):
                continue

            tokens = self.tokenizer.count_tokens(chunk.text)
            if tokens == 0:
                continue
            remaining = token_budget - used
            if tokens <= remaining:
                chunk.token_count = tokens
                selected = chunk
            else:
                budget_exhausted = True
                if remaining > 0 and remaining >= math.ceil(tokens * self.config.min_truncation_ratio):
                    text = self.tokenizer.truncate_to_token_limit(chunk.text, remaining)
                    selected = replace(
                        chunk,
                        text=text,
                        token_count=self.tokenizer.count_tokens(text),
                        truncated=True,
                        metadata=dict(chunk.metadata),
                    )
                    truncated += 1
                else:
                    dropped += 1
                    break

            window.chunks.append(selected)
            used += selected.token_count
            if is_web:
                web_count += 1
            else:
                doc_count += 1
            if budget_exhausted:
                break

        window.token_usage.context_tokens = used

        if len(window.chunks) < min_chunks and (budget_exhausted or window.degraded):
            window.mark_degraded(
                f"below_min_chunks: {len(window.chunks)} < {min_chunks} (token budget {token_budget})"
            )

        notes = list(rationale)
        notes.append(
            f"Selected {len(window.chunks)} of {len(candidates)} candidates "
            f"(target {target_chunk_count}, bounds {min_chunks}-{max_chunks}, "
            f"documents {doc_count}/{doc_cap}, web {web_count}/{web_cap})"
        )
        notes.append(f"Context tokens {used}/{token_budget}")
        if truncated:
            notes.append(f"Truncated {truncated} chunk to fit the budget")
        if dropped:
            notes.append(f"Dropped {dropped} chunk below truncation ratio")
        window.rationale = "; ".join(notes)

        context_tokens.observe(used)
        logger.info(
            "context_assembled",
            chunks=len(window.chunks),
            candidates=len(candidates),
            tokens=used,
            budget=token_budget,
            truncated=truncated,
            degraded=window.degraded,
        )
        return window


def format_context_for_prompt(window: ContextWindow) -> str:
    """Render ``[Document n]`` and ``[Web Source n]`` blocks for answer generation."""
    blocks: List[str] = []
    for n, chunk in enumerate(window.document_chunks, start=1):
        header = f"[Document {n}]"
        title = chunk.metadata.get("title") or chunk.metadata.get("document_name")
        if title:
            header += f" {title}"
        blocks.append(f"{header}\n{chunk.text}")
    for n, chunk in enumerate(window.web_chunks, start=1):
        lines = [f"[Web Source {n}]"]
        if chunk.metadata.get("title"):
            lines.append(f"Title: {chunk.metadata['title']}")
        if chunk.metadata.get("url"):
            lines.append(f"URL: {chunk.metadata['url']}")
        lines.append(chunk.text)
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)
