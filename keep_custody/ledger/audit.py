"""
Keep Ledger Audit Tool — independent event-log integrity verification.

Connects directly to a keep's ledger database, recomputes every hash in
the event chain and prints the keep's authorization state. It never
writes.

Usage:
    python -m keep_custody.ledger.audit
    python -m keep_custody.ledger.audit --database-url sqlite+pysqlite:///keep.db
    python -m keep_custody.ledger.audit --verbose
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from keep_custody.config import settings
from keep_custody.errors import LedgerIntegrityError
from keep_custody.ledger.service import LedgerService
from keep_custody.protocol.schema import EXECUTE_ID

console = Console()


def run_audit(database_url: str, verbose: bool = False) -> bool:
    """
    Run a full hash chain integrity audit.

    Args:
        database_url: SQLAlchemy connection string.
        verbose: Print every event if True.

    Returns:
        True if the chain is valid, False otherwise.
    """
    console.print("\n[bold blue]═══ Keep Ledger Integrity Audit ═══[/bold blue]\n")

    service = LedgerService(database_url)

    count = service.get_event_count()
    console.print(f"  Events in log: [bold]{count}[/bold]")

    if count == 0:
        console.print("[yellow]⚠ Event log is empty — nothing to verify[/yellow]")
        return True

    try:
        keep_state = service.state()
        console.print(
            f"  Nonce: [bold]{keep_state.nonce}[/bold]  "
            f"Quorum: [bold]{keep_state.quorum}[/bold]  "
            f"Total weight: [bold]{service.total_supply(EXECUTE_ID)}[/bold]"
        )
    except LedgerIntegrityError as exc:
        console.print(f"[yellow]⚠ {exc}[/yellow]")

    console.print("  Verifying hash chain...", end=" ")
    start_time = time.time()

    is_valid, entries_verified, message = service.verify_chain()

    elapsed = time.time() - start_time

    if is_valid:
        console.print("[bold green]✓ VALID[/bold green]")
        console.print(f"  Events verified: [bold]{entries_verified}[/bold]")
        console.print(f"  Verification time: {elapsed:.3f}s")
    else:
        console.print("[bold red]✗ INVALID[/bold red]")
        console.print(f"  Failure at event: {entries_verified}")
        console.print(f"  Reason: {message}")

    if verbose:
        console.print("\n[bold]Event Listing:[/bold]")
        table = Table(show_lines=True)
        table.add_column("Seq", style="cyan", width=6)
        table.add_column("Event", style="green", width=20)
        table.add_column("Data", style="yellow")
        table.add_column("Hash (first 16)", style="dim", width=18)
        table.add_column("Recorded", width=22)

        for event in reversed(service.get_latest_events(limit=count)):
            table.add_row(
                str(event.sequence_number),
                event.name,
                ", ".join(f"{k}={v}" for k, v in event.data.items()),
                event.entry_hash[:16] + "...",
                event.recorded_at[:19],
            )
        console.print(table)

    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    return is_valid


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Keep ledger integrity auditor")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show every event",
    )
    args = parser.parse_args(argv)

    db_url = args.database_url or settings.database_url
    is_valid = run_audit(db_url, verbose=args.verbose)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
