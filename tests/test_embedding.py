"""Tests for the batched embedding client."""

from types import SimpleNamespace

import pytest

from docqa.embedding import Embedder, _translate
from docqa.errors import EmbeddingError, ValidationError


class FakeEmbeddingsAPI:
    def __init__(self, short_by=0):
        self.inputs = []
        self.short_by = short_by

    async def create(self, model, input):
        self.inputs.append(list(input))
        n = len(input) - self.short_by
        return SimpleNamespace(data=[SimpleNamespace(embedding=[float(len(t)), 1.0]) for t in input[:n]])


def _embedder(api, batch_size=2):
    return Embedder(client=SimpleNamespace(embeddings=api), model="m", batch_size=batch_size, pause_seconds=0)


class TestEmbedder:
    @pytest.mark.asyncio
    async def test_batches_in_order(self):
        api = FakeEmbeddingsAPI()
        vectors = await _embedder(api).embed(["a", "bb", "ccc", "dddd", "eeeee"])
        assert [len(b) for b in api.inputs] == [2, 2, 1]
        assert [v[0] for v in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]

    @pytest.mark.asyncio
    async def test_empty_input(self):
        api = FakeEmbeddingsAPI()
        assert await _embedder(api).embed([]) == []
        assert api.inputs == []

    @pytest.mark.asyncio
    async def test_blank_text_rejected(self):
        with pytest.raises(ValidationError):
            await _embedder(FakeEmbeddingsAPI()).embed(["ok", "  "])

    @pytest.mark.asyncio
    async def test_vector_count_mismatch(self):
        with pytest.raises(EmbeddingError):
            await _embedder(FakeEmbeddingsAPI(short_by=1)).embed(["a", "b"])

    @pytest.mark.asyncio
    async def test_embed_query(self):
        assert await _embedder(FakeEmbeddingsAPI()).embed_query("abc") == [3.0, 1.0]

    def test_unknown_errors_become_embedding_errors(self):
        assert isinstance(_translate(Exception("boom")), EmbeddingError)
