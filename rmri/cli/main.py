"""
RMRI command line.

    rmri run papers.json --query "protein folding" --max-iterations 3
    rmri show <run-id>
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from rmri import __version__
from rmri.config import get_config
from rmri.core.errors import RMRIError
from rmri.core.logging import setup_logging
from rmri.db import get_session, init_database
from rmri.db.operations import create_run, get_final_report, get_run
from rmri.orchestration import build_pipeline

logger = logging.getLogger(__name__)

console = Console()


def print_error(message: str):
    console.print(f"[bold red]✗[/bold red] {message}")


def print_success(message: str):
    console.print(f"[bold green]✓[/bold green] {message}")


def load_papers(path: Path) -> List[Dict[str, Any]]:
    """Read papers from a JSON list or an object with a ``papers`` key."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("papers", [])
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of papers")
    return data


def gaps_table(gaps: List[Dict[str, Any]], title: str = "Top research gaps") -> Table:
    table = Table(title=title, show_lines=False)
    table.add_column("#", justify="right", style="cyan", no_wrap=True)
    table.add_column("Gap", style="white")
    table.add_column("Theme", style="magenta")
    table.add_column("Score", justify="right", style="green")

    for gap in gaps:
        table.add_row(
            str(gap.get("rank", "")),
            gap.get("description", ""),
            gap.get("theme") or "",
            f"{gap.get('total_score', 0):.2f}",
        )
    return table


def render_report(report: Dict[str, Any]):
    summary = report.get("summary", {})
    console.print(Panel.fit(
        f"Iterations: {summary.get('total_iterations')}\n"
        f"Converged: {summary.get('converged')} ({summary.get('convergence_reason')})\n"
        f"Papers: {summary.get('total_papers')}  Clusters: {summary.get('total_clusters')}\n"
        f"Confidence: {summary.get('confidence', 0):.2f}",
        title=f"Run {report.get('run_id')}",
    ))
    console.print(gaps_table(report.get("top_gaps", [])))

    directions = report.get("research_directions", [])
    if directions:
        console.print("\n[bold]Recommended directions[/bold]")
        for direction in directions:
            console.print(f"  {direction['priority']}. {direction['direction']}")


def cmd_run(args: argparse.Namespace) -> int:
    config = get_config()
    if args.max_iterations is not None:
        config.orchestration.max_iterations = args.max_iterations
    if args.threshold is not None:
        config.orchestration.convergence_threshold = args.threshold
    if args.no_delay:
        config.orchestration.iteration_delay_seconds = 0

    papers = load_papers(Path(args.papers))
    run_id = args.run_id or f"run-{uuid.uuid4().hex[:12]}"

    with get_session() as session:
        create_run(
            session,
            id=run_id,
            query=args.query,
            max_iterations=config.orchestration.max_iterations,
            convergence_threshold=config.orchestration.convergence_threshold,
            total_papers=len(papers),
        )

    async def _execute():
        orchestrator = build_pipeline(config)
        try:
            return await orchestrator.start(run_id, papers)
        finally:
            await orchestrator.close()

    console.print(f"Starting run [cyan]{run_id}[/cyan] over {len(papers)} papers")
    with console.status("Running micro → meso → meta iterations..."):
        report = asyncio.run(_execute())

    print_success(f"Run {run_id} finished")
    render_report(report)
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    with get_session() as session:
        run = get_run(session, args.run_id)
        if run is None:
            print_error(f"Run {args.run_id} not found")
            return 1
        record = get_final_report(session, args.run_id)
        status = run.status.value
        error = run.error_message

    if record is None:
        console.print(f"Run {args.run_id} is [yellow]{status}[/yellow]; no final report")
        if error:
            print_error(error)
        return 0 if status != "failed" else 1

    render_report(record.data)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rmri", description="Iterative research gap synthesis")
    parser.add_argument("--version", action="version", version=f"rmri {__version__}")
    parser.add_argument("--database-url", default=None, help="SQLAlchemy URL (default from config)")
    parser.add_argument("--log-level", default=None, help="Logging level (default from config)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the pipeline over a JSON file of papers")
    run_parser.add_argument("papers", help="Path to a JSON list of papers")
    run_parser.add_argument("--query", default=None, help="Research question recorded with the run")
    run_parser.add_argument("--run-id", default=None, help="Run id (generated if omitted)")
    run_parser.add_argument("--max-iterations", type=int, default=None)
    run_parser.add_argument("--threshold", type=float, default=None, help="Convergence threshold (0-1)")
    run_parser.add_argument("--no-delay", action="store_true", help="Skip the pause between iterations")
    run_parser.set_defaults(func=cmd_run)

    show_parser = subparsers.add_parser("show", help="Print the final report of a run")
    show_parser.add_argument("run_id")
    show_parser.set_defaults(func=cmd_show)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()

    setup_logging(level=args.log_level or config.logging.level, log_file=config.logging.file)
    init_database(
        args.database_url or config.database.url,
        echo=config.database.echo,
        pool_size=config.database.pool_size,
        max_overflow=config.database.max_overflow,
    )

    try:
        return args.func(args)
    except (RMRIError, ValueError, OSError) as e:
        logger.debug("Command failed", exc_info=True)
        print_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
