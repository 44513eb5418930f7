"""
Shared test fixtures: in-memory stand-ins for the external services.

- FakeEmbedder: deterministic hashed bag-of-words vectors (similar texts are close).
- FakeVectorService / FakeCollection: dict-backed collections with Chroma-style
  where filters, cosine distances, an injectable schema conflict and an
  injectable create race.
- FakeCompletion: scripted completion results and errors.
- FakeRedis: dict-backed get / setex / incr, optionally failing.
"""

import hashlib
import math
import re
from typing import Any, Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from docqa.config import BudgetConfig, ChunkerConfig, GeneratorConfig, RetrievalConfig, StoreConfig
from docqa.errors import CollectionExistsError, NotFoundError, SchemaConflictError, VectorStoreError
from docqa.generation import Completion
from docqa.vector_store import GetResult, QueryResult

DIM = 64


def embed_text(text: str) -> List[float]:
    vec = [0.0] * DIM
    for tok in re.findall(r"[a-z0-9]+", text.lower()):
        h = int(hashlib.md5(tok.encode()).hexdigest(), 16)
        vec[h % DIM] += 1.0
    norm = math.sqrt(sum(x * x for x in vec))
    if norm == 0:
        vec[0] = 1.0
        return vec
    return [x / norm for x in vec]


def cosine_distance(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 1.0
    return 1.0 - dot / (na * nb)


class FakeEmbedder:
    def __init__(self):
        self.calls: List[List[str]] = []

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [embed_text(t) for t in texts]

    async def embed_query(self, text: str) -> List[float]:
        return (await self.embed([text]))[0]


def _matches(meta: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    if not where:
        return True
    if "$and" in where:
        return all(_matches(meta, w) for w in where["$and"])
    for k, v in where.items():
        if isinstance(v, dict) and "$in" in v:
            if meta.get(k) not in v["$in"]:
                return False
        elif meta.get(k) != v:
            return False
    return True


class FakeCollection:
    def __init__(self, name: str, service: "FakeVectorService"):
        self.name = name
        self.service = service
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.add_calls = 0
        self.fail_delete = False

    async def add(self, ids, embeddings, documents, metadatas) -> None:
        self.add_calls += 1
        if self.service.schema_conflicts > 0:
            self.service.schema_conflicts -= 1
            raise SchemaConflictError("422 Unprocessable Entity")
        for i, e, d, m in zip(ids, embeddings, documents, metadatas):
            self.rows[i] = {"embedding": list(e), "document": d, "metadata": dict(m)}

    async def query(self, embedding, k, where=None) -> QueryResult:
        scored = [
            (cosine_distance(embedding, r["embedding"]), rid, r)
            for rid, r in self.rows.items()
            if _matches(r["metadata"], where)
        ]
        scored.sort(key=lambda t: (t[0], t[1]))
        top = scored[:k]
        return QueryResult(
            ids=[rid for _, rid, _ in top],
            documents=[r["document"] for _, _, r in top],
            metadatas=[dict(r["metadata"]) for _, _, r in top],
            distances=[d for d, _, _ in top],
        )

    async def get(self, where=None, ids=None, limit=None) -> GetResult:
        rows = [
            (rid, r) for rid, r in self.rows.items()
            if (ids is None or rid in ids) and _matches(r["metadata"], where)
        ]
        if limit is not None:
            rows = rows[:limit]
        return GetResult(
            ids=[rid for rid, _ in rows],
            documents=[r["document"] for _, r in rows],
            metadatas=[dict(r["metadata"]) for _, r in rows],
        )

    async def delete(self, ids) -> None:
        if self.fail_delete:
            # first id goes, then the backend falls over
            self.rows.pop(ids[0], None)
            raise VectorStoreError("backend exploded mid-delete")
        for i in ids:
            self.rows.pop(i, None)

    async def update(self, ids, metadatas) -> None:
        for i, m in zip(ids, metadatas):
            self.rows[i]["metadata"] = dict(m)

    async def count(self) -> int:
        return len(self.rows)


class FakeVectorService:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}
        self.create_calls = 0
        self.delete_calls = 0
        self.get_calls = 0
        self.schema_conflicts = 0
        # simulate another process creating the collection between list and create
        self.race_on_create = False
        self.fail_list = False

    async def list_collections(self) -> List[str]:
        if self.fail_list:
            raise VectorStoreError("connection refused")
        return list(self.collections)

    async def get_collection(self, name: str) -> FakeCollection:
        self.get_calls += 1
        if name not in self.collections:
            raise NotFoundError(f"Collection {name} does not exist")
        return self.collections[name]

    async def create_collection(self, name: str, metadata: Dict[str, Any]) -> FakeCollection:
        self.create_calls += 1
        if self.race_on_create:
            self.race_on_create = False
            self.collections.setdefault(name, FakeCollection(name, self))
            raise CollectionExistsError(f"Collection {name} already exists")
        if name in self.collections:
            raise CollectionExistsError(f"Collection {name} already exists")
        coll = FakeCollection(name, self)
        self.collections[name] = coll
        return coll

    async def delete_collection(self, name: str) -> None:
        self.delete_calls += 1
        if name not in self.collections:
            raise NotFoundError(f"Collection {name} does not exist")
        del self.collections[name]


class FakeCompletion:
    """Returns scripted results in order; Exceptions in the script are raised."""

    def __init__(self, script: Optional[List[Any]] = None, default: str = "Answer based on [1]."):
        self.script = list(script or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, max_tokens, temperature) -> Completion:
        self.calls.append({"messages": messages, "max_tokens": max_tokens, "temperature": temperature})
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        return Completion(text=item, usage_tokens=42, model="fake-model")


class FakeRedis:
    """The three async redis calls the answer cache makes."""

    def __init__(self, fail: bool = False):
        self.data: Dict[str, str] = {}
        self.fail = fail
        self.calls = 0

    def _check(self) -> None:
        self.calls += 1
        if self.fail:
            raise RedisConnectionError("redis down")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self._check()
        self.data[key] = value

    async def incr(self, key):
        self._check()
        self.data[key] = str(int(self.data.get(key) or 0) + 1)
        return int(self.data[key])


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def vector_service() -> FakeVectorService:
    return FakeVectorService()


@pytest.fixture
def store_config() -> StoreConfig:
    return StoreConfig(collection_prefix="test", batch_size=100, batch_pause_seconds=0.0)


@pytest.fixture
def retrieval_config() -> RetrievalConfig:
    return RetrievalConfig(top_k=5)


@pytest.fixture
def budget_config() -> BudgetConfig:
    return BudgetConfig(model="gpt-4o-mini", model_tier="small")


@pytest.fixture
def generator_config() -> GeneratorConfig:
    return GeneratorConfig(backoff_base_seconds=0.0)


@pytest.fixture
def chunker_config() -> ChunkerConfig:
    return ChunkerConfig(chunk_size=200, overlap=40)
