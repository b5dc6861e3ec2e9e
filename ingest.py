"""Command line loader for an agent's knowledge base.

Queues every text/Markdown file under ``--docs`` as a document-processing
work item and drains the queue before exiting. Document ids are the file
paths relative to ``--docs`` so re-running the command replaces the
previously indexed chunks instead of duplicating them.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from dataclasses import replace
from pathlib import Path

from dotenv import load_dotenv

from app.core.bootstrap import Pipeline
from app.core.settings import get_settings

DOC_EXTENSIONS = {".txt", ".md"}


def _iter_docs(doc_path: Path) -> list[Path]:
    """Return text and Markdown files under ``doc_path`` in a stable order."""

    if doc_path.is_file():
        return [doc_path] if doc_path.suffix.lower() in DOC_EXTENSIONS else []
    return [
        p
        for p in sorted(doc_path.rglob("*"))
        if p.is_file() and p.suffix.lower() in DOC_EXTENSIONS
    ]


def _document_id(doc: Path, root: Path) -> str:
    if root.is_file():
        return doc.name
    return doc.relative_to(root).as_posix()


async def _ingest(pipeline: Pipeline, agent_id: str, root: Path) -> int:
    log = logging.getLogger("ingest")
    await pipeline.start(run_workers=False)
    try:
        count = 0
        for doc in _iter_docs(root):
            content = doc.read_text(encoding="utf-8")
            if not content.strip():
                log.info("skipping empty file %s", doc)
                continue
            log.info("queueing %s", doc)
            await pipeline.enqueue_document(
                agent_id,
                content,
                document_id=_document_id(doc, root),
                metadata={"source": str(doc)},
            )
            count += 1
        await pipeline.workers.run_until_empty()
        return count
    finally:
        await pipeline.close()


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and index the requested documents."""

    load_dotenv()
    parser = argparse.ArgumentParser(description="Index documents for an agent")
    parser.add_argument(
        "--agent-id",
        default=os.getenv("AGENT_ID"),
        help="Agent whose knowledge base receives the documents",
    )
    parser.add_argument(
        "--docs",
        default=os.getenv("DOCS_DIR"),
        help="File or directory containing .txt/.md documents",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="PostgreSQL DSN (defaults to DATABASE_URL)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    log = logging.getLogger("ingest")

    if not args.agent_id:
        parser.error("--agent-id is required (or set AGENT_ID)")
    if not args.docs:
        parser.error("--docs is required (or set DOCS_DIR)")
    root = Path(args.docs)
    if not root.exists():
        parser.error(f"{root} does not exist")

    settings = get_settings()
    if args.database_url:
        settings = replace(settings, database_url=args.database_url)
    if not settings.database_url:
        log.warning("no database configured; indexed chunks will not be persisted")

    count = asyncio.run(_ingest(Pipeline.build(settings), args.agent_id, root))
    log.info("indexed %d document(s) for %s", count, args.agent_id)


if __name__ == "__main__":  # pragma: no cover - CLI execution
    main()
