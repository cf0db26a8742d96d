"""Main CLI entry point for gemcutter."""

import time
from pathlib import Path

import typer
from dotenv import load_dotenv
from rich import print as rprint
from rich.markup import escape
from rich.table import Table

from gemcutter.cli.helpers import configure_logging, console, get_storage
from gemcutter.core.collection import DEFAULT_ROUNDS, GemCollection, RoundOutcome, RoundResult
from gemcutter.core.scheduler import FacetScheduler
from gemcutter.core.storage import GemStoreError

load_dotenv()

app = typer.Typer(
    name="gemcutter",
    help="Order multi-facet flashcards so the most useful facets are learned first.",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging",
    ),
) -> None:
    """Order multi-facet flashcards so the most useful facets are learned first."""
    configure_logging(verbose)


# ============================================================================
# ORDER command
# ============================================================================


@app.command()
def order(
    gems_file: str | None = typer.Option(
        None,
        "--file",
        "-f",
        help="Gem file to read (defaults to gems.json in the data directory)",
    ),
    rounds: int = typer.Option(
        DEFAULT_ROUNDS,
        "--rounds",
        "-r",
        min=0,
        help="Maximum number of ordering rounds",
    ),
    save: bool = typer.Option(
        True,
        "--save/--no-save",
        help="Write the finalized order to order.json",
    ),
    check: bool = typer.Option(
        False,
        "--check",
        help="Verify index consistency after every round",
    ),
) -> None:
    """Pick facet batches round by round and report each one."""
    storage = get_storage()

    try:
        collection = storage.load_collection(Path(gems_file) if gems_file else None)
    except GemStoreError as e:
        rprint(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)

    start = time.perf_counter()
    collection.build_index()
    elapsed_us = (time.perf_counter() - start) * 1_000_000
    rprint(f"[dim]Indexing {len(collection)} gem(s) took {elapsed_us:.0f} microseconds[/dim]")

    results: list[RoundResult] = []
    start = time.perf_counter()
    for result in collection.order_by_difficulty(rounds):
        results.append(result)
        _print_round(result, collection)
        if check:
            collection.check_invariants()
    elapsed_us = (time.perf_counter() - start) * 1_000_000

    taught = [r for r in results if r.outcome == RoundOutcome.TAUGHT]
    rprint(
        f"\n[bold green]Taught {len(collection.known_facets)} facet(s) "
        f"in {len(taught)} round(s).[/bold green]"
    )
    rprint(f"[dim]Ordering took {elapsed_us:.0f} microseconds[/dim]")

    if save:
        path = storage.save_order(collection, results)
        rprint(f"Order saved to {escape(str(path))}")


def _print_round(result: RoundResult, collection: GemCollection) -> None:
    """Print one round's outcome and the front of each gem it completed."""
    elapsed_us = result.elapsed_seconds * 1_000_000
    if result.outcome == RoundOutcome.EMPTY_CANDIDATE_GROUP:
        rprint(f"[yellow]Round {result.round_number}: ordering complete[/yellow]")
        return
    if result.outcome == RoundOutcome.NO_VIABLE_FACET_SELECTION:
        rprint(f"[yellow]Round {result.round_number}: no viable facet selection[/yellow]")
        return

    facets = escape(", ".join(sorted(result.facets)))
    rprint(
        f"Round {result.round_number}: [cyan]{facets}[/cyan] "
        f"[dim](sizes {result.target_size}/{result.support_size}, "
        f"{len(result.impacted_ids)} impacted, {len(result.completed_ids)} completed, "
        f"{elapsed_us:.0f} µs)[/dim]"
    )
    for gem_id in sorted(result.completed_ids):
        front = collection.gem(gem_id).front()
        if front:
            rprint(f"  [dim]{escape(front)}[/dim]")


# ============================================================================
# REVIEW commands
# ============================================================================


@app.command()
def review(
    facet: str = typer.Argument(..., help="Facet name"),
    score: float = typer.Option(
        1.0,
        "--score",
        "-s",
        min=0.0,
        max=1.0,
        help="How well the facet was recalled, from 0 (forgot) to 1 (perfect)",
    ),
) -> None:
    """Record an answer for a facet and reschedule it."""
    storage = get_storage()
    scheduler = FacetScheduler(storage.db)

    result = scheduler.review_facet(facet, score)
    rprint(f"[green]Reviewed {escape(result.facet)}[/green]")
    rprint(f"[dim]Lifetime: {result.lifetime_in_hours:.2f} hour(s)[/dim]")
    rprint(f"[dim]Next review: {result.review_date.strftime('%Y-%m-%d %H:%M')}[/dim]")


@app.command()
def due(
    limit: int = typer.Option(
        20,
        "--limit",
        "-l",
        help="Maximum facets to list",
    ),
) -> None:
    """List facets due for review."""
    storage = get_storage()
    scheduler = FacetScheduler(storage.db)

    names = scheduler.get_due_facets(limit)
    if not names:
        rprint("[green]No facets due for review![/green]")
        return

    rprint(f"\n[bold]{len(names)} facet(s) due:[/bold]\n")
    for name in names:
        rprint(f"  {escape(name)}")


@app.command()
def show(
    facet: str = typer.Argument(..., help="Facet name"),
) -> None:
    """Show a facet's schedule and review history."""
    storage = get_storage()
    state = storage.db.get_facet_state(facet)
    if state is None:
        rprint(f"[red]Facet not found: {escape(facet)}[/red]")
        raise typer.Exit(1)

    rprint(f"\n[bold]{escape(state.name)}[/bold] [dim]({state.stage.value})[/dim]")
    if state.is_scheduled():
        rprint(f"  Lifetime: {state.lifetime_in_hours:.2f} hour(s)")
        rprint(f"  Last seen: {state.last_seen_date.strftime('%Y-%m-%d %H:%M')}")
        rprint(f"  Next review: {state.review_date.strftime('%Y-%m-%d %H:%M')}")

    logs = storage.db.get_review_logs(facet)
    if logs:
        table = Table(title="Reviews")
        table.add_column("Reviewed", style="cyan")
        table.add_column("Score", justify="right")
        table.add_column("Lifetime (h)", justify="right")
        for log in logs:
            table.add_row(
                log["reviewed_at"][:16].replace("T", " "),
                f"{log['score']:.2f}",
                f"{log['lifetime_after']:.2f}",
            )
        console.print(table)


@app.command()
def stats() -> None:
    """Show facet and review statistics."""
    storage = get_storage()
    db_stats = storage.db.get_stats()

    table = Table(title="gemcutter Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Total Facets", str(db_stats["total_facets"]))
    table.add_row("New Facets", str(db_stats["new_facets"]))
    table.add_row("Learning Facets", str(db_stats["learning_facets"]))
    table.add_row("Total Reviews", str(db_stats["total_reviews"]))
    table.add_row("Due Now", str(db_stats["due_now"]))

    saved = storage.gems.load_order()
    if saved:
        table.add_row("", "")
        table.add_row("[bold]Last Ordering[/bold]", "")
        table.add_row("  Gems Ordered", str(len(saved.get("order", []))))
        table.add_row("  Rounds", str(len(saved.get("rounds", []))))

    console.print(table)


if __name__ == "__main__":
    app()
