#!/usr/bin/env python3
"""
Re-enqueue chapter vectorization for chapters whose cached embedding is missing.

Run from backend/:
    python3 scripts/revectorize.py <project_id> --dry-run   # list chapters only
    python3 scripts/revectorize.py <project_id>             # embed and store
    python3 scripts/revectorize.py <project_id> --all       # refresh every chapter
"""

import argparse
import asyncio
import sys
from pathlib import Path

# ── ensure backend root is on sys.path so bare imports work ──
BACKEND_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BACKEND_ROOT))

from core.config import configure_logging, get_settings  # noqa: E402
from core.llm_client import create_llm_client_from_settings  # noqa: E402
from memory import StoryStore  # noqa: E402
from models import QueuePriority  # noqa: E402
from services.task_queue import TaskQueue  # noqa: E402
from services.vectorize import enqueue_vectorize, register_vectorizer  # noqa: E402


def chapters_to_refresh(store: StoryStore, project_id: str, include_all: bool = False) -> list:
    return [
        c
        for c in store.list_chapters(project_id)
        if (c.content or "").strip() and (include_all or not c.embedding)
    ]


async def revectorize(queue: TaskQueue, chapter_ids: list) -> dict:
    accepted = sum(1 for chapter_id in chapter_ids if enqueue_vectorize(queue, chapter_id, QueuePriority.LOW))
    await queue.drain()
    status = queue.status()
    await queue.close()
    return {"accepted": accepted, **status["counts"]}


def main(argv=None):
    parser = argparse.ArgumentParser(description="Refresh missing chapter embeddings")
    parser.add_argument("project_id")
    parser.add_argument("--db", default=None, help="SQLite path (default: <data_dir>/storyloom.db)")
    parser.add_argument("--all", action="store_true", help="refresh chapters that already have a vector")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file)
    db_path = args.db or str((BACKEND_ROOT / settings.data_dir).resolve() / "storyloom.db")
    store = StoryStore(db_path)

    chapters = chapters_to_refresh(store, args.project_id, include_all=args.all)
    print(f"Project: {args.project_id}")
    print(f"DB:      {db_path}")
    print(f"✓ {len(chapters)} chapters need vectorization")
    for chapter in chapters:
        print(f"  第{chapter.order_index + 1}章 {chapter.title} (v{chapter.version})")
    if args.dry_run or not chapters:
        return 0

    client = create_llm_client_from_settings(settings)
    if not client.is_configured:
        print("✗ no embedding provider configured", file=sys.stderr)
        return 1

    queue = TaskQueue()
    register_vectorizer(queue, store, client)
    summary = asyncio.run(revectorize(queue, [c.id for c in chapters]))
    print(f"✓ Done: {summary}")
    return 0 if summary.get("failed", 0) == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
