"""CLI commands for the egress proxy pool."""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

proxies_app = typer.Typer(help="Inspect and health-check configured proxies.")
console = Console()


@proxies_app.command("check")
def proxies_check(
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Override the health-check URL."),
) -> None:
    """Probe every configured proxy once and report its health."""
    from flexscrape.proxies import ProxyPool
    from flexscrape.settings import get_settings

    proxy_settings = get_settings().proxy
    if url:
        proxy_settings = proxy_settings.model_copy(update={"health_check_url": url})
    pool = ProxyPool.from_settings(proxy_settings)
    if not len(pool):
        console.print("[yellow]No proxies configured.[/yellow] Set proxy.proxy_urls or FLEXSCRAPE_PROXY__PROXY_URLS.")
        return

    results = asyncio.run(pool.check_all())

    table = Table(title=f"Proxies ({proxy_settings.health_check_url})")
    table.add_column("Proxy", style="cyan")
    table.add_column("Healthy", justify="center")
    for address, healthy in results.items():
        table.add_row(address, "[green]✓[/green]" if healthy else "[red]✗[/red]")
    console.print(table)

    healthy_count = sum(results.values())
    console.print(f"\n[bold]{healthy_count}/{len(results)}[/bold] proxies healthy")
    if not healthy_count:
        raise typer.Exit(code=1)
