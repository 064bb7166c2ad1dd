import openai
import pytest

from tidings.core.embed import (
    EMBEDDING_DIMENSIONS,
    EMBEDDING_MODEL,
    Embedder,
    EmbeddingConfig,
    get_embedding_config,
    is_quota_error,
    is_transient_error,
)
from tidings.core.errors import EmbeddingError, QuotaExhaustedError

from conftest import FakeOpenAIClient, QuotaError


def test_model_and_dimension_are_fixed(monkeypatch):
    monkeypatch.setenv("EMBED_BATCH_SIZE", "7")
    config = get_embedding_config()
    assert config.batch_size == 7
    assert config.model == EMBEDDING_MODEL == "text-embedding-3-small"
    assert config.dimensions == EMBEDDING_DIMENSIONS == 1536


def test_embed_batches_in_order():
    client = FakeOpenAIClient()
    embedder = Embedder(config=EmbeddingConfig(batch_size=2), client=client)
    vectors = embedder.embed(["가", "나", "다", "라", "마"])
    assert len(vectors) == 5
    assert all(len(v) == 1536 for v in vectors)
    assert [call["input"] for call in client.embeddings.calls] == [["가", "나"], ["다", "라"], ["마"]]
    assert all(call["model"] == "text-embedding-3-small" for call in client.embeddings.calls)
    assert all(call["dimensions"] == 1536 for call in client.embeddings.calls)


def test_empty_input_makes_no_call():
    client = FakeOpenAIClient()
    assert Embedder(client=client).embed([]) == []
    assert client.embeddings.calls == []


def test_long_text_is_truncated():
    client = FakeOpenAIClient()
    config = EmbeddingConfig(max_chars=10)
    Embedder(config=config, client=client).embed(["가" * 50])
    assert client.embeddings.calls[0]["input"] == ["가" * 10]


def test_quota_error_is_distinguished():
    client = FakeOpenAIClient(error=QuotaError("You exceeded your current quota"))
    with pytest.raises(QuotaExhaustedError):
        Embedder(client=client).embed(["가"])
    assert len(client.embeddings.calls) == 1


def test_quota_on_third_batch_stops_there():
    client = FakeOpenAIClient(error=QuotaError("rate limited"), fail_on_call=3)
    embedder = Embedder(config=EmbeddingConfig(batch_size=1), client=client)
    with pytest.raises(QuotaExhaustedError):
        embedder.embed(["1", "2", "3", "4", "5"])
    assert len(client.embeddings.calls) == 3


def test_other_errors_are_embedding_errors():
    client = FakeOpenAIClient(error=ValueError("bad input"))
    with pytest.raises(EmbeddingError) as excinfo:
        Embedder(client=client).embed(["가"])
    assert not isinstance(excinfo.value, QuotaExhaustedError)


def test_wrong_dimension_is_rejected():
    client = FakeOpenAIClient(dimensions=768)
    with pytest.raises(EmbeddingError):
        Embedder(client=client).embed(["가"])


def test_missing_key_is_an_embedding_error(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    from tidings.core.cache import CredentialStore
    with pytest.raises(EmbeddingError):
        Embedder(credentials=CredentialStore(loader=lambda: [])).embed(["가"])


def test_error_classification():
    assert is_quota_error(QuotaError("x"))
    assert is_quota_error(RuntimeError("insufficient_quota: check your plan and billing"))
    assert not is_quota_error(RuntimeError("connection reset"))
    assert not is_transient_error(QuotaError("x"))
    assert not is_transient_error(ValueError("bad input"))


def test_client_is_rebuilt_when_the_key_rotates(monkeypatch):
    from tidings.core.cache import CredentialStore
    created = []

    def fake_openai(api_key, timeout, max_retries):
        created.append(api_key)
        return FakeOpenAIClient()

    monkeypatch.setattr(openai, "OpenAI", fake_openai)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-old")
    embedder = Embedder(credentials=CredentialStore(loader=lambda: []))

    embedder.embed(["가"])
    embedder.embed(["나"])
    assert created == ["sk-old"]

    monkeypatch.setenv("OPENAI_API_KEY", "sk-new")
    embedder.embed(["다"])
    assert created == ["sk-old", "sk-new"]
