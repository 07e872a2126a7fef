# Shared test fixtures
# In-memory doubles for Redis and every provider protocol; no network access.

import fnmatch
import hashlib
import os
import re
import time
from typing import Any, Dict, List, Optional

import numpy as np
import pytest
import redis

from contextrag.providers.lexical.bm25 import BM25Index
from contextrag.providers.tokenizer_service import TokenizerBackend, TokenizerService
from contextrag.providers.vector.memory import InMemoryVectorStore
from contextrag.services.error_recovery import ErrorRecoveryCoordinator
from contextrag.shared.config import Config, RecoveryConfig

os.environ["ENV"] = "development"

_WORD_RE = re.compile(r"\w+")


class FakeRedis:
    """Subset of the redis-py client used by the cache layer."""

    def __init__(self):
        self.store: Dict[str, Any] = {}
        self.sets: Dict[str, set] = {}
        self.ttls: Dict[str, int] = {}
        self.fail = False
        self.commands: List[str] = []

    def _check(self, command: str) -> None:
        self.commands.append(command)
        if self.fail:
            raise redis.ConnectionError("fake redis unavailable")

    def ping(self):
        self._check("ping")
        return True

    def get(self, key):
        self._check("get")
        return self.store.get(key)

    def set(self, key, value):
        self._check("set")
        self.store[key] = value
        return True

    def setex(self, key, ttl, value):
        self._check("setex")
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, *keys):
        self._check("delete")
        count = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                count += 1
            elif self.sets.pop(key, None) is not None:
                count += 1
        return count

    def scan(self, cursor=0, match=None, count=None):
        self._check("scan")
        keys = sorted(set(self.store) | set(self.sets))
        if match:
            keys = [k for k in keys if fnmatch.fnmatchcase(k, match)]
        return 0, keys

    def sadd(self, key, *members):
        self._check("sadd")
        self.sets.setdefault(key, set()).update(members)
        return len(members)

    def smembers(self, key):
        self._check("smembers")
        return set(self.sets.get(key, set()))

    def expire(self, key, ttl):
        self._check("expire")
        self.ttls[key] = ttl
        return True

    def incr(self, key):
        self._check("incr")
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, client: FakeRedis):
        self.client = client
        self.ops: List[tuple] = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self

        return queue

    def execute(self):
        return [getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self.ops]


class WordTokenizerBackend(TokenizerBackend):
    """One token per whitespace-separated word."""

    name = "words"

    def __init__(self):
        self._vocab: Dict[str, int] = {}
        self._words: List[str] = []

    def encode(self, text: str) -> List[int]:
        ids = []
        for word in text.split():
            if word not in self._vocab:
                self._vocab[word] = len(self._words)
                self._words.append(word)
            ids.append(self._vocab[word])
        return ids

    def decode(self, token_ids: List[int]) -> str:
        return " ".join(self._words[i] for i in token_ids)


class HashingEmbedder:
    """Deterministic bag-of-words embeddings (md5 buckets)."""

    def __init__(self, dims: int = 64):
        self.dims = dims
        self.calls = 0

    @property
    def model_id(self) -> str:
        return "hashing-test"

    def embed(self, text: str) -> List[float]:
        self.calls += 1
        vector = np.zeros(self.dims)
        for word in _WORD_RE.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dims
            vector[bucket] += 1.0
        return vector.tolist()

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.embed(text) for text in texts]


class CountingLexicalIndex:
    """Wraps a lexical index and counts searches."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = 0
        self.queries: List[str] = []

    def search(self, query, filters, top_k):
        self.calls += 1
        self.queries.append(query)
        return self.inner.search(query, filters, top_k)


class FailingProvider:
    """Raises ``error`` from every call; optionally sleeps first."""

    def __init__(self, error: Optional[BaseException] = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.calls = 0

    def _fail(self):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return []

    def search(self, *args, **kwargs):
        return self._fail()

    def score(self, *args, **kwargs):
        return self._fail()

    def complete(self, *args, **kwargs):
        return self._fail()


class ScriptedLLM:
    def __init__(self, text: str):
        self.text = text
        self.prompts: List[str] = []

    @property
    def model_id(self) -> str:
        return "scripted"

    def complete(self, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        self.prompts.append(prompt)
        return {"text": self.text, "token_usage": {"prompt_tokens": 10, "completion_tokens": 5}}


class StaticWebSearch:
    def __init__(self, results: List[Dict[str, Any]]):
        self.results = results
        self.calls = 0

    def search(self, query: str, options: Dict[str, Any]) -> Dict[str, Any]:
        self.calls += 1
        results = self.results[: options.get("max_results", len(self.results))]
        return {"results": results, "total_results": len(results)}


CORPUS = [
    ("c1", "d1", "Artificial intelligence is the field of building machines that reason and act."),
    ("c2", "d1", "Machine learning lets computers improve at tasks by learning from example data."),
    ("c3", "d2", "Neural networks are layers of weighted units that transform their inputs."),
    ("c4", "d2", "Backpropagation computes gradients of the loss for every weight in a network."),
    ("c5", "d3", "Convolutional architectures share filters across image positions."),
    ("c6", "d3", "Recurrent architectures carry hidden state from one sequence step to the next."),
    ("c7", "d4", "Transformers replace recurrence with attention over all tokens at once."),
    ("c8", "d4", "Gradient descent updates weights in the direction that lowers the loss."),
    ("c9", "d5", "Overfitting happens when a model memorizes noise instead of general patterns."),
    ("c10", "d5", "Regularization such as dropout keeps neural networks from overfitting."),
    ("c11", "d6", "AI assistants answer questions by combining retrieval with generation."),
    ("c12", "d6", "Deep learning stacks many neural network layers to learn representations."),
]


def build_stores(embedder: HashingEmbedder, corpus=CORPUS):
    vector_store = InMemoryVectorStore()
    lexical_index = BM25Index()
    vector_store.upsert(
        [
            {
                "id": chunk_id,
                "vector": embedder.embed(text),
                "metadata": {"document_id": doc_id, "text": text, "title": f"Doc {doc_id}"},
            }
            for chunk_id, doc_id, text in corpus
        ]
    )
    lexical_index.add_documents(
        [
            {"id": chunk_id, "text": text, "metadata": {"document_id": doc_id, "title": f"Doc {doc_id}"}}
            for chunk_id, doc_id, text in corpus
        ]
    )
    embedder.calls = 0
    return vector_store, lexical_index


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def tokenizer() -> TokenizerService:
    return TokenizerService(WordTokenizerBackend())


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def stores(embedder):
    return build_stores(embedder)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def recovery(sleeps) -> ErrorRecoveryCoordinator:
    """Coordinator whose backoff sleeps are recorded instead of awaited."""

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return ErrorRecoveryCoordinator(RecoveryConfig(), sleep=fake_sleep)


@pytest.fixture
def config() -> Config:
    cfg = Config()
    cfg.providers.vector_store = "memory"
    return cfg
