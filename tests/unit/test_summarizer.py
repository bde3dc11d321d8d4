"""Tests for Claude summaries and the default enrichment provider."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import anthropic
import pytest

from cc_recall.embeddings import DefaultEnrichment
from cc_recall.errors import EnrichmentError
from cc_recall.models import Exchange, Session
from cc_recall.summarizer import ClaudeSummarizer, build_transcript


class FakeMessages:
    def __init__(self, blocks):
        self.blocks = blocks
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        return SimpleNamespace(content=self.blocks)


def make_session():
    now = datetime(2025, 9, 15, tzinfo=timezone.utc)
    return Session(
        id="s1", project="demo", path=Path("/a/s1.jsonl"), started_at=now, last_modified=now
    )


def make_exchanges(*texts):
    return [
        Exchange(session_id="s1", ordinal=i, line_start=i + 1, line_end=i + 1, text=text)
        for i, text in enumerate(texts)
    ]


def test_build_transcript_short():
    assert build_transcript(make_exchanges("User: a", "User: b")) == "User: a\n\nUser: b"


def test_build_transcript_trims_middle():
    text = build_transcript(make_exchanges("A" * 100, "B" * 100, "C" * 100), limit=100)

    assert text.startswith("A" * 50)
    assert text.endswith("C" * 50)
    assert "omitted" in text
    assert "B" not in text


def test_summarize():
    messages = FakeMessages(
        [
            SimpleNamespace(type="text", text="Fixed the login "),
            SimpleNamespace(type="text", text="redirect loop."),
        ]
    )
    summarizer = ClaudeSummarizer("some-model", client=SimpleNamespace(messages=messages))

    summary = summarizer.summarize(make_session(), make_exchanges("User: login loops"))

    assert summary == "Fixed the login redirect loop."
    request = messages.requests[0]
    assert request["model"] == "some-model"
    assert request["max_tokens"] == 300
    assert "User: login loops" in request["messages"][0]["content"]


def test_summarize_empty_response():
    client = SimpleNamespace(messages=FakeMessages([]))
    with pytest.raises(EnrichmentError, match="no text"):
        ClaudeSummarizer("m", client=client).summarize(make_session(), make_exchanges("User: x"))


def test_summarize_api_error():
    import anthropic

    class FailingMessages:
        def create(self, **kwargs):
            raise anthropic.AnthropicError("overloaded")

    client = SimpleNamespace(messages=FailingMessages())
    with pytest.raises(EnrichmentError, match="overloaded"):
        ClaudeSummarizer("m", client=client).summarize(make_session(), make_exchanges("User: x"))


def test_summarize_requires_exchanges():
    client = SimpleNamespace(messages=FakeMessages([]))
    with pytest.raises(EnrichmentError):
        ClaudeSummarizer("m", client=client).summarize(make_session(), [])


class FakeVector(list):
    def tolist(self):
        return list(self)


class FakeModel:
    def encode(self, texts, **kwargs):
        return [FakeVector([float(len(t)), 1.0]) for t in texts]


def test_default_enrichment_embed(config):
    provider = DefaultEnrichment(config)
    provider.embedder._model = FakeModel()

    assert provider.embed(["ab", "abcd"]) == [[2.0, 1.0], [4.0, 1.0]]
    assert provider.embed([]) == []


def test_default_enrichment_embed_error(config):
    class BrokenModel:
        def encode(self, texts, **kwargs):
            raise RuntimeError("CUDA out of memory")

    provider = DefaultEnrichment(config)
    provider.embedder._model = BrokenModel()

    with pytest.raises(EnrichmentError, match="CUDA out of memory"):
        provider.embed(["text"])


def run_concurrently(fn, workers=8):
    barrier = threading.Barrier(workers)

    def call():
        barrier.wait()
        return fn()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return [f.result() for f in [pool.submit(call) for _ in range(workers)]]


def test_client_created_once_across_threads(monkeypatch):
    created = []

    def slow_client():
        time.sleep(0.02)
        client = SimpleNamespace(messages=FakeMessages([]))
        created.append(client)
        return client

    monkeypatch.setattr(anthropic, "Anthropic", slow_client)
    summarizer = ClaudeSummarizer("m")

    clients = run_concurrently(lambda: summarizer.client)

    assert len(created) == 1
    assert all(c is created[0] for c in clients)


def test_default_enrichment_builds_one_summarizer(config, monkeypatch):
    built = []

    class CountingSummarizer:
        def __init__(self, model, max_tokens):
            time.sleep(0.02)
            built.append(self)

        def summarize(self, session, exchanges):
            return "done"

    monkeypatch.setattr("cc_recall.summarizer.ClaudeSummarizer", CountingSummarizer)
    provider = DefaultEnrichment(config)

    results = run_concurrently(
        lambda: provider.summarize(make_session(), make_exchanges("User: hi"))
    )

    assert results == ["done"] * 8
    assert len(built) == 1
