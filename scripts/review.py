#!/usr/bin/env python3
"""
CLI Script for Staging Review.

Usage:
    python scripts/review.py list [--capsule cap-1] [--all]
    python scripts/review.py promote <cluster-id>
    python scripts/review.py reject <cluster-id>
"""

import argparse
import sys
from pathlib import Path
from uuid import UUID

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rich.console import Console
from rich.table import Table

from app.config import get_settings
from knowledge_core.governance.controller import GovernanceController
from knowledge_core.governance.query_service import QueryService
from knowledge_core.knowledge.schemas import ClusterDecision
from knowledge_core.knowledge.store import ClusterNotFound, GraphKnowledgeStore
from knowledge_core.utils.logger import setup_logging

console = Console()

DECISION_STYLES = {
    ClusterDecision.PENDING: "yellow",
    ClusterDecision.PROMOTED: "green",
    ClusterDecision.REJECTED: "red",
}


def list_clusters(queries: QueryService, capsule_id: str | None, show_all: bool) -> None:
    """Print review clusters and their atoms."""
    criteria = {"capsule_id": capsule_id}
    if not show_all:
        criteria["decision"] = ClusterDecision.PENDING.value
    clusters = queries.list_clusters(criteria)

    if not clusters:
        console.print("[dim]No clusters to review[/dim]")
        return

    for cluster in clusters:
        style = DECISION_STYLES[cluster.decision]
        table = Table(
            title=f"{cluster.title} [{style}]({cluster.decision.value})[/]",
            caption=f"{cluster.id} - {cluster.summary}",
        )
        table.add_column("Kind", style="cyan")
        table.add_column("Statement", style="green")
        table.add_column("Conf.", justify="right")
        table.add_column("AI", style="yellow")

        for item in cluster.items:
            table.add_row(
                item.type.value,
                item.content,
                str(item.confidence),
                item.ai_action.value if item.ai_action else "",
            )
        console.print(table)


def decide(controller: GovernanceController, cluster_id: str, decision: ClusterDecision) -> None:
    """Promote or reject one cluster."""
    try:
        target = UUID(cluster_id)
    except ValueError:
        console.print(f"[red]Invalid cluster id: {cluster_id}[/red]")
        sys.exit(2)

    try:
        if decision is ClusterDecision.PROMOTED:
            result = controller.promote(target)
        else:
            result = controller.reject(target)
    except ClusterNotFound as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if result.replayed:
        console.print(f"[yellow]Cluster was already {result.decision.value}[/yellow]")
    else:
        console.print(f"[bold green]✓[/] Cluster {result.decision.value}")


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Review staged knowledge clusters")
    parser.add_argument(
        "--store", "-s",
        type=Path,
        default=None,
        help="Knowledge store JSON file (default: settings or data/knowledge_store.json)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    list_cmd = commands.add_parser("list", help="List clusters awaiting review")
    list_cmd.add_argument("--capsule", "-c", help="Only clusters of this capsule")
    list_cmd.add_argument("--all", action="store_true", help="Include decided clusters")

    promote_cmd = commands.add_parser("promote", help="Promote a cluster to canonical")
    promote_cmd.add_argument("cluster_id")

    reject_cmd = commands.add_parser("reject", help="Reject a cluster")
    reject_cmd.add_argument("cluster_id")

    args = parser.parse_args()
    setup_logging(args.log_level)

    settings = get_settings()
    store_path = args.store or settings.knowledge_store_path or settings.data_dir / "knowledge_store.json"
    store = GraphKnowledgeStore(
        persist_path=store_path,
        lock_timeout=settings.commit_lock_timeout_seconds,
    )

    match args.command:
        case "list":
            list_clusters(QueryService(store), args.capsule, args.all)
        case "promote":
            decide(GovernanceController(store), args.cluster_id, ClusterDecision.PROMOTED)
        case "reject":
            decide(GovernanceController(store), args.cluster_id, ClusterDecision.REJECTED)


if __name__ == "__main__":
    main()
