"""Command-line interface for the postcard fulfillment service.

Usage:
    pf-fulfillment process <campaign_id> [--test]
    pf-fulfillment retry <campaign_id>
    pf-fulfillment readiness <campaign_id>
    pf-fulfillment process-ready
    pf-fulfillment stats <campaign_id>
    pf-fulfillment mailpieces <campaign_id> [--status delivered] [--json]
    pf-fulfillment cancel <provider_id>
    pf-fulfillment serve [--host 0.0.0.0] [--port 8000]

Configuration is read like the server does (``PF_CONFIG`` / ``config.ini``
and ``PF_*`` variables); ``--config`` and ``--db`` override it.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Dict

import click
from rich.console import Console
from rich.table import Table

from postcard_fulfillment.logger import configure_logging
from postcard_fulfillment.server import build_core, serve as serve_app
from postcard_fulfillment.settings import load_settings

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def execute(settings: Dict[str, Any], cmd: str, payload: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Run one service command against the configured database."""

    async def _run():
        core = build_core(settings)
        await core.init()
        return await core.handle_command(cmd, payload or {})

    return run_async(_run())


def _checked(result: Dict[str, Any]) -> Dict[str, Any]:
    if not result.get("ok"):
        print_error(result.get("error") or "command failed")
        sys.exit(1)
    return result


def _print_result(campaign_id: str, result: Dict[str, Any]) -> None:
    outcome = result["result"]
    colour = "green" if outcome["success"] else "red"
    console.print(f"[bold {colour}]Campaign {campaign_id}: {'sent' if outcome['success'] else 'failed'}[/bold {colour}]")
    console.print(f"  Processed: {outcome['processed']}")
    console.print(f"  Failed:    {outcome['failed']}")
    console.print(f"  Skipped:   {outcome.get('skipped', 0)}")
    for error in outcome.get("errors") or []:
        console.print(f"  [yellow]-[/yellow] {error}")


@click.group()
@click.version_option(package_name="postcard-fulfillment")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="INI configuration file.")
@click.option("--db", "db_path", default=None, help="Override the SQLite database path.")
@click.option("--log-level", default=None, help="Logging level (default: PF_LOG_LEVEL or INFO).")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, db_path: str | None, log_level: str | None) -> None:
    """Fulfil paid postcard campaigns through Stannp."""
    configure_logging(log_level)
    settings = load_settings(config_path)
    if db_path:
        settings["db_path"] = db_path
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command("process")
@click.argument("campaign_id")
@click.option("--test", "is_test", is_flag=True, help="Ignore the campaign status and submit in Stannp test mode.")
@click.pass_context
def process(ctx: click.Context, campaign_id: str, is_test: bool) -> None:
    """Process a paid campaign."""
    result = _checked(execute(ctx.obj["settings"], "processCampaign", {"campaign_id": campaign_id, "is_test": is_test}))
    _print_result(campaign_id, result)


@main.command("retry")
@click.argument("campaign_id")
@click.pass_context
def retry(ctx: click.Context, campaign_id: str) -> None:
    """Re-run a failed, stuck or partially sent campaign."""
    result = _checked(execute(ctx.obj["settings"], "retryCampaign", {"campaign_id": campaign_id}))
    _print_result(campaign_id, result)


@main.command("readiness")
@click.argument("campaign_id")
@click.pass_context
def readiness(ctx: click.Context, campaign_id: str) -> None:
    """Check whether a campaign can be processed now."""
    result = _checked(execute(ctx.obj["settings"], "checkReadiness", {"campaign_id": campaign_id}))
    if result["ready"]:
        print_success(f"Campaign {campaign_id} is ready")
        return
    console.print(f"[yellow]Campaign {campaign_id} is not ready[/yellow]")
    for issue in result["issues"]:
        console.print(f"  - {issue}")


@main.command("process-ready")
@click.pass_context
def process_ready(ctx: click.Context) -> None:
    """Process every paid campaign whose send date has come."""
    result = _checked(execute(ctx.obj["settings"], "processReady"))
    table = Table(title="Ready campaigns")
    table.add_column("Outcome", style="cyan")
    table.add_column("Campaigns")
    for key in ("processed", "skipped", "failed"):
        table.add_row(key, ", ".join(result[key]) or "-")
    console.print(table)


@main.command("stats")
@click.argument("campaign_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, campaign_id: str, as_json: bool) -> None:
    """Show mailpiece statistics of a campaign."""
    data = _checked(execute(ctx.obj["settings"], "campaignStats", {"campaign_id": campaign_id}))["stats"]
    if as_json:
        print_json(data)
        return
    console.print(f"\n[bold cyan]Campaign: {campaign_id}[/bold cyan]")
    console.print(f"  Total:       {data['total']}")
    console.print(f"  Total cost:  {data['total_cost']:.2f}")
    avg = data.get("avg_delivery_time")
    console.print(f"  Avg. days:   {avg:.1f}" if avg is not None else "  Avg. days:   -")
    for status_name, count in sorted(data["by_status"].items()):
        console.print(f"  {status_name:<12} {count}")


@main.command("mailpieces")
@click.argument("campaign_id")
@click.option("--status", "status_filter", default=None, help="Only show mailpieces in this status.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def mailpieces(ctx: click.Context, campaign_id: str, status_filter: str | None, as_json: bool) -> None:
    """List the tracked mailpieces of a campaign."""
    payload: Dict[str, Any] = {"campaign_id": campaign_id}
    if status_filter:
        payload["status"] = status_filter
    records = _checked(execute(ctx.obj["settings"], "listMailpieces", payload))["mailpieces"]
    if as_json:
        print_json(records)
        return
    if not records:
        console.print("[dim]No mailpieces found.[/dim]")
        return
    table = Table(title=f"Mailpieces of {campaign_id}")
    table.add_column("Lead", style="cyan")
    table.add_column("Design")
    table.add_column("Stannp ID")
    table.add_column("Status")
    table.add_column("Cost", justify="right")
    table.add_column("Error")
    for record in records:
        table.add_row(
            record["lead_id"],
            record["design_id"],
            record.get("provider_id") or "-",
            record["status"],
            f"{record.get('cost') or 0:.2f}",
            record.get("error") or "",
        )
    console.print(table)


@main.command("cancel")
@click.argument("provider_id")
@click.pass_context
def cancel(ctx: click.Context, provider_id: str) -> None:
    """Cancel a postcard at Stannp and mark it failed."""
    _checked(execute(ctx.obj["settings"], "cancelMailpiece", {"provider_id": provider_id}))
    print_success(f"Mailpiece {provider_id} cancelled")


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default: 0.0.0.0).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: 8000).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the HTTP API and the scheduler."""
    settings = dict(ctx.obj["settings"])
    if host:
        settings["http_host"] = host
    if port:
        settings["http_port"] = port
    console.print("\n[bold cyan]Starting postcard fulfillment[/bold cyan]")
    console.print(f"  DB:      {settings['db_path']}")
    console.print(f"  Listen:  {settings['http_host']}:{settings['http_port']}")
    serve_app(settings)


if __name__ == "__main__":
    main()
