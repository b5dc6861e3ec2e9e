import asyncio

import pytest

import ingest
from app.core.bootstrap import Pipeline
from app.core.settings import reset_settings_cache
from app.retrieval import IndexFilter
from conftest import FakeEmbedder, ScriptedChatProvider


@pytest.fixture
def built(monkeypatch):
    pipelines = []
    original = Pipeline.build

    def build(settings=None, **kwargs):
        pipeline = original(
            settings, embedder=FakeEmbedder(), chat_provider=ScriptedChatProvider()
        )
        pipelines.append(pipeline)
        return pipeline

    monkeypatch.setattr(ingest.Pipeline, "build", staticmethod(build))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    reset_settings_cache()
    yield pipelines
    reset_settings_cache()


def test_iter_docs_filters_extensions(tmp_path):
    (tmp_path / "b.md").write_text("ב", encoding="utf-8")
    (tmp_path / "a.txt").write_text("א", encoding="utf-8")
    (tmp_path / "skip.pdf").write_bytes(b"%PDF")

    assert [p.name for p in ingest._iter_docs(tmp_path)] == ["a.txt", "b.md"]


def test_cli_indexes_every_document(tmp_path, built):
    (tmp_path / "faq").mkdir()
    (tmp_path / "faq" / "hours.md").write_text("הסניף פתוח בימים א-ה.", encoding="utf-8")
    (tmp_path / "returns.txt").write_text("ניתן להחזיר מוצר תוך 14 יום.", encoding="utf-8")
    (tmp_path / "empty.txt").write_text("  ", encoding="utf-8")

    ingest.main(["--agent-id", "support-bot", "--docs", str(tmp_path)])

    pipeline = built[0]
    count = asyncio.run(pipeline.index.count(IndexFilter(agent_id="support-bot")))
    assert count == 2
    faq = asyncio.run(
        pipeline.index.count(IndexFilter(agent_id="support-bot", document_id="faq/hours.md"))
    )
    assert faq == 1


def test_cli_requires_agent(tmp_path, built, monkeypatch):
    monkeypatch.delenv("AGENT_ID", raising=False)
    with pytest.raises(SystemExit):
        ingest.main(["--docs", str(tmp_path)])
