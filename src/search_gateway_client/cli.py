"""
Search Gateway CLI Tool
Command-line interface for the Search Gateway.
"""

import json
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn

from .client import (
    QuotaExceededError,
    RateLimitedError,
    SearchGatewayClient,
)


console = Console()


def get_client(obj: dict) -> SearchGatewayClient:
    """Create a client instance."""
    return SearchGatewayClient(
        base_url=obj["url"],
        api_key=obj["api_key"],
        user_id=obj["user_id"],
        org_id=obj["org_id"],
    )


def _fail(e: Exception) -> None:
    if isinstance(e, RateLimitedError):
        console.print(f"❌ [red]Rate limited, retry in {e.retry_after:.0f}s[/red]")
    elif isinstance(e, QuotaExceededError):
        console.print(f"❌ [red]Quota exceeded ({e.used}/{e.limit})[/red]")
    else:
        console.print(f"❌ [red]Error: {e}[/red]")
    sys.exit(1)


@click.group()
@click.option("--url", "-u", default="http://localhost:8000", help="API server URL")
@click.option("--api-key", "-k", envvar="SEARCH_GATEWAY_API_KEY", help="API key")
@click.option("--user", envvar="SEARCH_GATEWAY_USER_ID", help="User id (X-User-Id)")
@click.option("--org", envvar="SEARCH_GATEWAY_ORG_ID", help="Organization id (X-Org-Id)")
@click.pass_context
def cli(ctx, url: str, api_key: Optional[str], user: Optional[str], org: Optional[str]):
    """Search Gateway CLI - rate limited, cached semantic search."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["api_key"] = api_key
    ctx.obj["user_id"] = user
    ctx.obj["org_id"] = org


@cli.command()
@click.pass_context
def health(ctx):
    """Check API server health."""
    with get_client(ctx.obj) as client:
        try:
            status = client.health()
        except Exception as e:
            console.print(f"❌ [red]Connection failed: {e}[/red]")
            sys.exit(1)

        if status.get("status") == "healthy":
            console.print("✅ [green]API is healthy[/green]")
            for name, value in status.get("components", {}).items():
                if isinstance(value, dict):
                    value = value.get("backend", "unknown")
                console.print(f"   {name}: {value}")
        else:
            console.print("⚠️ [yellow]API status unknown[/yellow]")


@cli.command()
@click.argument("query")
@click.option("--mode", "-m", default="semantic", type=click.Choice(["semantic", "hybrid", "keyword"]))
@click.option("--limit", "-n", default=10, help="Number of results")
@click.option("--threshold", "-t", default=0.5, help="Minimum relevance score")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def search(ctx, query: str, mode: str, limit: int, threshold: float, as_json: bool):
    """Search the organization's content."""
    with get_client(ctx.obj) as client:
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                progress.add_task("Searching...", total=None)
                response = client.search(query, limit=limit, threshold=threshold, mode=mode)
        except Exception as e:
            _fail(e)
            return

        if as_json:
            console.print(json.dumps({
                "results": [
                    {"id": r.id, "score": r.score, "content": r.content}
                    for r in response.results
                ],
                "cache_hit": response.cache_hit,
                "latency_ms": response.latency_ms,
                "quota_remaining": response.quota_remaining,
            }, indent=2))
            return

        table = Table(title=f"Results for '{query}' ({mode})")
        table.add_column("#", style="dim", width=4)
        table.add_column("Score", justify="right", style="green")
        table.add_column("Source")
        table.add_column("Content", style="cyan")

        for i, hit in enumerate(response.results, 1):
            snippet = hit.content if len(hit.content) <= 80 else hit.content[:77] + "..."
            table.add_row(str(i), f"{hit.score:.2f}", hit.source_type or "-", snippet)

        console.print(table)
        cache = f"cache hit ({response.cache_layer})" if response.cache_hit else "computed"
        console.print(
            f"[dim]{len(response.results)} results, {response.latency_ms:.0f}ms, {cache}, "
            f"quota {response.quota_used}/{response.quota_limit}[/dim]"
        )


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def quota(ctx, as_json: bool):
    """Show quota usage for the organization."""
    with get_client(ctx.obj) as client:
        try:
            usage = client.get_quota()
        except Exception as e:
            _fail(e)
            return

        if as_json:
            console.print(json.dumps({
                name: {"used": q.used, "limit": q.limit, "remaining": q.remaining}
                for name, q in usage.items()
            }, indent=2))
            return

        plan = next(iter(usage.values())).plan_tier if usage else "unknown"
        table = Table(title=f"Quota ({plan} plan)")
        table.add_column("Resource", style="cyan")
        table.add_column("Used", justify="right")
        table.add_column("Limit", justify="right")
        table.add_column("Remaining", justify="right")
        table.add_column("Resets")

        for name, q in usage.items():
            ratio = q.used / q.limit if q.limit else 1.0
            color = "green" if ratio < 0.8 else "yellow" if ratio < 1.0 else "red"
            table.add_row(
                name,
                f"[{color}]{q.used:,}[/{color}]",
                f"{q.limit:,}",
                f"{q.remaining:,}",
                q.reset_at[:10],
            )

        console.print(table)


@cli.command()
@click.option("--days", "-d", default=7, help="Look-back period in days")
@click.pass_context
def metrics(ctx, days: int):
    """Show search analytics."""
    with get_client(ctx.obj) as client:
        try:
            summary = client.get_metrics(days=days)
        except Exception as e:
            _fail(e)
            return

        table = Table(title=f"Search Metrics (last {days}d)")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")

        table.add_row("Total Searches", f"{summary.total_searches:,}")
        table.add_row("Cache Hit Rate", f"{summary.cache_hit_rate:.0%}")
        table.add_row("Avg Latency", f"{summary.avg_latency_ms:.0f}ms")
        table.add_row("p95 Latency", f"{summary.p95_latency_ms:.0f}ms")
        table.add_row("Errors", f"{summary.error_count:,}")

        console.print(table)

        if summary.top_queries:
            console.print("\n[bold]Top Queries:[/bold]")
            for i, q in enumerate(summary.top_queries[:5], 1):
                console.print(f"  {i}. {q.get('query', '')} ({q.get('count', 0)})")


def main():
    """CLI entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
