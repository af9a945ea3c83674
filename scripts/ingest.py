#!/usr/bin/env python3
"""
CLI Script for Text Ingestion.

Runs the ingestion pipeline against the persisted knowledge store and shows
the resulting review clusters.

Usage:
    python scripts/ingest.py --file notes.txt --capsule cap-1
    python scripts/ingest.py --dir notes/ --capsule cap-1
    python scripts/ingest.py --text "We decided to use PostgreSQL." --capsule cap-1
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rich.console import Console
from rich.table import Table

from app.config import get_settings
from knowledge_core.ingestion.pipeline import IngestionPipeline
from knowledge_core.ingestion.schemas import ProgressSignal, StageState
from knowledge_core.knowledge.store import GraphKnowledgeStore
from knowledge_core.utils.logger import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

STATE_STYLES = {
    StageState.PENDING: "dim",
    StageState.PROCESSING: "yellow",
    StageState.DONE: "green",
    StageState.ERROR: "bold red",
}


def default_store_path() -> Path:
    settings = get_settings()
    return settings.knowledge_store_path or settings.data_dir / "knowledge_store.json"


async def ingest_text(
    pipeline: IngestionPipeline,
    text: str,
    capsule_id: str,
    source_name: str | None,
) -> bool:
    """
    Ingest one text, printing stage progress.

    Returns:
        True if the batch was committed
    """
    console.print(f"\n[bold blue]Processing:[/] {source_name or capsule_id}")

    events = []
    try:
        async for event in pipeline.ingest(text, capsule_id, source_name):
            events.append(event)
            if event.stage is not None and event.state is not StageState.PENDING:
                style = STATE_STYLES[event.state]
                console.print(f"  {event.stage.value:<15} [{style}]{event.state.value}[/]")
    except Exception as e:
        console.print(f"\n[bold red]✗[/] Failed to ingest {source_name or capsule_id}: {e}")
        logger.debug(f"Ingestion failed for capsule '{capsule_id}'", exc_info=True)
        return False

    final = events[-1]
    if final.signal is ProgressSignal.COMPLETE:
        _display_clusters(pipeline, final.cluster_ids)
        console.print(
            f"\n[bold green]✓[/] Staged {final.atom_count} atoms in "
            f"{len(final.cluster_ids)} clusters"
        )
        return True
    return False


def _display_clusters(pipeline: IngestionPipeline, cluster_ids) -> None:
    """Display the staged clusters in a table."""
    snapshot = pipeline.store.snapshot()

    table = Table(title="Staged Clusters")
    table.add_column("Cluster", style="cyan", no_wrap=True)
    table.add_column("Title", style="green")
    table.add_column("Summary")
    table.add_column("Flags", style="yellow")

    for cluster_id in cluster_ids:
        cluster = snapshot.get_cluster(cluster_id)
        if cluster is None:
            continue
        actions = {
            atom.ai_action.value
            for atom in (snapshot.get_atom(i) for i in cluster.item_ids)
            if atom is not None and atom.ai_action is not None
        }
        table.add_row(str(cluster.id), cluster.title, cluster.summary, ", ".join(sorted(actions)))

    console.print(table)


async def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Ingest unstructured text into the staging layer"
    )
    parser.add_argument(
        "--file", "-f",
        type=Path,
        help="Path to a single text file",
    )
    parser.add_argument(
        "--dir", "-d",
        type=Path,
        help="Path to directory of .txt/.md files",
    )
    parser.add_argument(
        "--text", "-t",
        help="Inline text to ingest",
    )
    parser.add_argument(
        "--capsule", "-c",
        required=True,
        help="Capsule id grouping the new atoms",
    )
    parser.add_argument(
        "--store", "-s",
        type=Path,
        default=None,
        help="Knowledge store JSON file (default: settings or data/knowledge_store.json)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    args = parser.parse_args()

    setup_logging(args.log_level)

    if not (args.file or args.dir or args.text):
        parser.error("Must specify --file, --dir or --text")

    console.print("[bold]Knowledge Governance - Ingestion[/]")
    console.print("=" * 50)

    settings = get_settings()
    store = GraphKnowledgeStore(
        persist_path=args.store or default_store_path(),
        lock_timeout=settings.commit_lock_timeout_seconds,
    )
    pipeline = IngestionPipeline.from_settings(settings, store)

    sources: list[tuple[str, str | None]] = []
    if args.text:
        sources.append((args.text, None))
    if args.file:
        if not args.file.exists():
            console.print(f"[red]File not found: {args.file}[/red]")
            sys.exit(1)
        sources.append((args.file.read_text(), args.file.name))
    if args.dir:
        if not args.dir.is_dir():
            console.print(f"[red]Directory not found: {args.dir}[/red]")
            sys.exit(1)
        files = sorted([*args.dir.glob("*.txt"), *args.dir.glob("*.md")])
        console.print(f"Found {len(files)} text files")
        sources.extend((path.read_text(), path.name) for path in files)

    failures = 0
    for text, name in sources:
        if not await ingest_text(pipeline, text, args.capsule, name):
            failures += 1

    if failures:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
