"""Main CLI entry point for the beacon command."""

import json
import click
from pathlib import Path
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from typing import Optional

from ..storage.database import TrackingDatabase
from ..storage.migrations import run_migrations
from ..website_api.errors import TrackingError

console = Console()


def get_db(db_path: Optional[str] = None) -> TrackingDatabase:
    """Get database instance."""
    path = Path(db_path) if db_path else None
    return TrackingDatabase(path)


@click.group()
@click.version_option(version="1.0.0", prog_name="beacon")
def cli():
    """Beacon CRM - behavioral tracking ingestion and lead store.

    \b
    Quick Start:
      beacon migrate                       # Create or upgrade the database
      beacon add-business "Acme"           # Register a tenant
      beacon ingest batch.json             # Apply a recorded batch
      beacon leads --hot                   # View hot leads
      beacon serve                         # Run the ingestion API
    """
    pass


# ============================================================================
# DATABASE
# ============================================================================

@cli.command()
@click.option("--db", "db_path", help="Custom database path")
def migrate(db_path: Optional[str]):
    """Run pending database migrations."""
    db = get_db(db_path)
    count = run_migrations(str(db.db_path))
    if count:
        console.print(f"[green]Applied {count} migration(s)[/green]")
    else:
        console.print("[dim]No pending migrations[/dim]")


@cli.command("add-business")
@click.argument("name")
@click.option("--db", "db_path", help="Custom database path")
def add_business(name: str, db_path: Optional[str]):
    """Register a tenant that trackers can send batches for."""
    db = get_db(db_path)
    business = db.add_business(name)
    console.print(f"[green]✓ Business #{business.id} created:[/green] {business.name}")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--db", "db_path", help="Custom database path")
def ingest(path: str, db_path: Optional[str]):
    """Apply one batch (or a JSON list of batches) from a file.

    \b
    Examples:
      beacon ingest ./captured-batch.json
      beacon ingest ./replay.json --db /tmp/tracking.db
    """
    from ..website_api.services.ingestion import ingest_batch

    db = get_db(db_path)
    try:
        data = json.loads(Path(path).read_text())
    except ValueError as e:
        raise click.ClickException(f"Invalid JSON in {path}: {e}")

    batches = data if isinstance(data, list) else [data]
    processed = failed = 0
    for index, batch in enumerate(batches):
        try:
            result = ingest_batch(batch, db_path=str(db.db_path))
        except TrackingError as e:
            failed += 1
            console.print(f"[red]Batch {index} rejected:[/red] {e.message}")
            continue
        processed += result["processed"]
        console.print(f"[dim]Batch {index}:[/dim] {result['message']}")

    console.print(f"[green]✓ {len(batches) - failed} batch(es) applied, {processed} event(s) processed[/green]")
    if failed:
        raise click.ClickException(f"{failed} batch(es) rejected")


@cli.command()
@click.option("--business", "-b", "business_id", type=int, help="Limit to one business")
@click.option("--db", "db_path", help="Custom database path")
def stats(business_id: Optional[int], db_path: Optional[str]):
    """Show database statistics."""
    db = get_db(db_path)
    data = db.get_stats(business_id)

    console.print(Panel.fit(
        f"[bold]Visitors:[/bold]   {data['visitors']}\n"
        f"[bold]Sessions:[/bold]   {data['sessions']} ({data['ended_sessions']} ended)\n"
        f"[bold]Events:[/bold]     {data['tracking_events']}\n"
        f"[bold]Activities:[/bold] {data['activities']}\n"
        f"[bold]Contacts:[/bold]   {data['contacts']}\n"
        f"[bold]Leads:[/bold]      {data['leads']} ([red]{data['hot_leads']} hot[/red])",
        title="📊 Tracking Statistics" + (f" - business #{business_id}" if business_id else ""),
    ))


@cli.command()
@click.option("--business", "-b", "business_id", type=int, help="Limit to one business")
@click.option("--hot", is_flag=True, help="Only hot leads")
@click.option("--limit", "-n", default=20, help="Number of leads to show")
@click.option("--db", "db_path", help="Custom database path")
def leads(business_id: Optional[int], hot: bool, limit: int, db_path: Optional[str]):
    """List leads captured from conversion events."""
    db = get_db(db_path)
    rows = db.list_leads(business_id=business_id, hot_only=hot, limit=limit)

    if not rows:
        console.print("[yellow]No leads found matching criteria.[/yellow]")
        return

    table = Table(title=f"Leads ({len(rows)})" + (" - hot" if hot else ""))
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Business", justify="right")
    table.add_column("Score", justify="right", style="bold")
    table.add_column("Name", style="cyan", max_width=25)
    table.add_column("Email", max_width=30)
    table.add_column("Stage")
    table.add_column("Medium")

    for lead in rows:
        score = f"[red]{lead.score}[/red]" if lead.is_hot else str(lead.score)
        table.add_row(
            str(lead.id),
            str(lead.business_id),
            score,
            lead.display_name[:25],
            lead.email[:30],
            lead.stage.value,
            lead.medium or "",
        )

    console.print(table)


# ============================================================================
# SERVER
# ============================================================================

@cli.command()
@click.option("--host", default=None, help="Bind address (default from BEACON_API_HOST)")
@click.option("--port", type=int, default=None, help="Port (default from BEACON_API_PORT)")
@click.option("--db", "db_path", help="Custom database path")
def serve(host: Optional[str], port: Optional[int], db_path: Optional[str]):
    """Run the tracking ingestion API."""
    import os
    import uvicorn
    from ..website_api.config import reload_settings

    if db_path:
        os.environ["BEACON_DATABASE_PATH"] = db_path
    settings = reload_settings()

    from ..website_api.main import create_app

    console.print(f"[green]Serving on {host or settings.host}:{port or settings.port}[/green] "
                  f"[dim](db: {settings.db_path})[/dim]")
    uvicorn.run(create_app(), host=host or settings.host, port=port or settings.port)


if __name__ == "__main__":
    cli()
