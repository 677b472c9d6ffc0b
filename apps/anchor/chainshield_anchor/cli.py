"""CLI commands for ChainShield anchoring."""

import asyncio
import json
import sys

import click

from chainshield_anchor.db.session import create_db_engine, init_db
from chainshield_anchor.errors import (
    AnchorError,
    IntegrityMismatch,
    LedgerUnavailable,
    RecordNotFound,
    ValidationError,
)
from chainshield_anchor.runtime import AnchoringRuntime, configure_logging
from chainshield_anchor.settings import get_settings


def _dump(data) -> str:
    return json.dumps(data, indent=2, default=str)


@click.group()
def cli():
    """ChainShield anchoring CLI."""
    configure_logging(get_settings())


@cli.command("init-db")
def init_db_command():
    """Create database tables."""
    settings = get_settings()
    init_db(create_db_engine(settings.database_url))
    click.echo(f"✓ Database initialized at {settings.database_url}")


@cli.command()
def status():
    """Show ledger network status."""

    async def run():
        runtime = await AnchoringRuntime.create()
        try:
            network = await runtime.get_network_status()
            fee = await runtime.ledger.estimate_anchor_fee()
        finally:
            await runtime.ledger.close()
        return network, fee

    network, fee = asyncio.run(run())
    data = network.to_dict()
    if fee.estimated:
        data["estimated_anchor_cost"] = fee.estimated_cost
    click.echo(_dump(data))


@cli.command()
@click.argument("file", type=click.File("r"))
def ingest(file):
    """Create records from a JSON lines FILE and anchor them."""

    async def run():
        runtime = await AnchoringRuntime.create()
        await runtime.start()
        created, rejected = 0, 0
        try:
            for line_number, line in enumerate(file, start=1):
                if not line.strip():
                    continue
                try:
                    fields = json.loads(line)
                    if not isinstance(fields, dict):
                        raise ValidationError("Expected a JSON object")
                    record = await runtime.create_and_maybe_anchor(fields)
                except (json.JSONDecodeError, AnchorError) as e:
                    click.echo(f"✗ Line {line_number}: {e}", err=True)
                    rejected += 1
                    continue
                created += 1
                click.echo(f"{record.id} {record.severity} {record.anchor_status}")
        finally:
            await runtime.stop(flush=True)
        return created, rejected, runtime.coordinator.pending_count

    created, rejected, pending = asyncio.run(run())
    click.echo(f"✓ {created} records created, {rejected} rejected, {pending} still pending")
    if rejected:
        sys.exit(1)


@cli.command()
@click.argument("record_id")
def verify(record_id):
    """Verify a record against storage and the ledger."""

    async def run():
        runtime = await AnchoringRuntime.create()
        try:
            return await runtime.verify_integrity(record_id)
        finally:
            await runtime.ledger.close()

    try:
        report = asyncio.run(run())
    except RecordNotFound as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(2)

    click.echo(_dump(report.to_dict()))
    try:
        report.raise_for_status()
    except IntegrityMismatch as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    except LedgerUnavailable as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(3)
    if report.ledger_verified:
        click.echo("✓ Record verified against the ledger")
    elif report.anchored:
        click.echo("✓ Record intact (fallback anchor, not externally verifiable)")
    else:
        click.echo("✓ Record intact (not anchored yet)")


@cli.command()
@click.option("--limit", default=10, show_default=True, help="Number of anchors to show.")
def history(limit):
    """Show recent anchors of the organization."""

    async def run():
        runtime = await AnchoringRuntime.create()
        try:
            return await runtime.ledger.anchoring_history(limit)
        except LedgerUnavailable as e:
            click.echo(f"✗ {e}", err=True)
            return []
        finally:
            await runtime.ledger.close()

    click.echo(_dump(asyncio.run(run())))


if __name__ == "__main__":
    cli()
