"""CLI interface for novelctx"""

import asyncio
import logging
import sys
import yaml
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.markup import escape

from novelctx.errors import BudgetExceededError, GraphUnavailableError
from novelctx.memory import (
    CacheStats,
    ChapterStore,
    GraphQueryService,
    InMemoryGraphQueryService,
    LocalChapterStore,
    QueryCache,
)
from novelctx.models import BudgetPolicy, CountPolicy, TokenPolicy, WritingContext
from novelctx.orchestrator import BuildOptions, ContextAssembler, ContextDiagnostics


console = Console()

EXIT_BUDGET_EXCEEDED = 2
EXIT_GRAPH_UNAVAILABLE = 3


def load_config(path: Optional[Path] = None) -> dict:
    """Load configuration from config.yaml"""
    config_path = path or Path(__file__).parent.parent.parent / "config" / "config.yaml"
    if not config_path.exists():
        console.print(f"[yellow]Warning: Config file not found at {config_path}[/yellow]")
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def configure_logging(config: dict):
    """Set the root log level from the logging section"""
    level = str(config.get("logging", {}).get("level", "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_query_cache(config: dict) -> QueryCache:
    """Create the query cache from config"""
    cache_config = config.get("cache", {})
    return QueryCache(
        ttl_seconds=cache_config.get("ttl_seconds", 300),
        sweep_interval_seconds=cache_config.get("sweep_interval_seconds")
    )


def create_budget_policy(config: dict) -> BudgetPolicy:
    """Create the budget policy from config"""
    budget_config = config.get("budget", {})
    return BudgetPolicy(
        counts=CountPolicy(**budget_config.get("counts", {})),
        tokens=TokenPolicy(**budget_config.get("tokens", {}))
    )


def create_graph_service(config: dict) -> GraphQueryService:
    """Create the story graph service from config"""
    graph_config = config.get("graph", {}) or {}
    provider = graph_config.get("provider", "in_memory")
    if provider == "neo4j":
        from novelctx.memory import Neo4jGraphQueryService
        neo4j_config = graph_config.get("neo4j", {})
        return Neo4jGraphQueryService(
            uri=neo4j_config.get("uri", "bolt://localhost:7687"),
            user=neo4j_config.get("user", "neo4j"),
            password=neo4j_config.get("password", "password"),
            database=neo4j_config.get("database", "neo4j")
        )
    if provider != "in_memory":
        raise click.BadParameter(f"Unknown graph provider: {provider}", param_hint="graph.provider")

    fixture = graph_config.get("fixture")
    if fixture:
        return InMemoryGraphQueryService.from_fixture(fixture)
    return InMemoryGraphQueryService()


def create_chapter_store(config: dict) -> ChapterStore:
    """Create the chapter store from config"""
    storage_config = config.get("storage", {})
    return LocalChapterStore(storage_dir=storage_config.get("chapters_dir", "./data/novels"))


def create_assembler(config: dict, query_cache: Optional[QueryCache] = None) -> ContextAssembler:
    """Wire an assembler from config"""
    return ContextAssembler(
        graph_service=create_graph_service(config),
        chapter_store=create_chapter_store(config),
        query_cache=query_cache if query_cache is not None else create_query_cache(config),
        budget_policy=create_budget_policy(config)
    )


async def run_build(
    novel_id: str,
    chapter: int,
    options: BuildOptions,
    config: dict,
    repeat: int = 1
) -> Tuple[WritingContext, CacheStats]:
    """Build a context `repeat` times against one cache"""
    query_cache = create_query_cache(config)
    assembler = create_assembler(config, query_cache)
    context = None
    try:
        async with query_cache:
            for _ in range(repeat):
                context = await assembler.build_context(novel_id, chapter, options)
            return context, query_cache.stats()
    finally:
        await assembler.graph_service.close()


def print_context(context: WritingContext, cache_stats: CacheStats, health: Dict[str, Any]):
    """Render section usage, cache stats and alerts"""
    report = context.budget_report

    table = Table(title=f"Context for chapter {context.chapter_number}")
    table.add_column("Section", style="cyan")
    table.add_column("Items", justify="right")
    table.add_column("Tokens", justify="right", style="green")

    item_counts = {
        "relevant_events": len(context.relevant_events),
        "unresolved_foreshadows": len(context.unresolved_foreshadows),
        "plotline_status": len(context.plotline_status),
        "world_rules": len(context.world_rules),
        "character_arcs": len(context.character_arcs),
        "recent_full_chapters": len(context.recent_full_chapters),
        "recent_summaries": len(context.recent_summaries),
    }
    for section, tokens in report.section_tokens.items():
        table.add_row(section, str(item_counts.get(section, "")), str(tokens))
    table.add_row("[bold]total[/bold]", "", f"[bold]{report.total_tokens}/{report.total_budget}[/bold]")

    console.print()
    console.print(table)

    cache_table = Table(title="Query cache")
    cache_table.add_column("Entries", justify="right")
    cache_table.add_column("Expired", justify="right")
    cache_table.add_column("Hits", justify="right")
    cache_table.add_column("Misses", justify="right")
    cache_table.add_column("Hit rate", justify="right")
    cache_table.add_row(
        str(cache_stats.total),
        str(cache_stats.expired),
        str(cache_stats.hits),
        str(cache_stats.misses),
        f"{cache_stats.hit_rate:.0%}"
    )
    console.print(cache_table)

    if report.shed:
        shed = ", ".join(f"{r.section} (-{r.removed})" for r in report.shed)
        console.print(f"[yellow]Shed:[/yellow] {shed}")

    if health["alerts"]:
        lines = [escape(f"[{a['severity']}] {a['code']}: {a['message']}") for a in health["alerts"]]
        console.print(Panel("\n".join(lines), title="Alerts", border_style="red" if health["escalation_required"] else "yellow"))
    else:
        console.print("[green]No alerts[/green]")


@click.group()
def main():
    """novelctx - budgeted writing context for long-form fiction"""


@main.command()
@click.argument("novel_id")
@click.argument("chapter", type=click.IntRange(min=1))
@click.option("--pov", type=str, help="Point-of-view character")
@click.option("--adjust", type=str, default="", help="Author instructions for this chapter")
@click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Path to config file"
)
@click.option("--repeat", type=click.IntRange(min=1), default=1, help="Build N times against one cache")
def build(novel_id: str, chapter: int, pov: Optional[str], adjust: str, config: Optional[Path], repeat: int):
    """Assemble the writing context for CHAPTER of NOVEL_ID"""
    app_config = load_config(config)
    configure_logging(app_config)
    options = BuildOptions(pov_character=pov, user_adjustment=adjust)

    try:
        context, cache_stats = asyncio.run(run_build(novel_id, chapter, options, app_config, repeat))
    except BudgetExceededError as e:
        console.print(f"[red]Budget exceeded: {e}[/red]")
        sys.exit(EXIT_BUDGET_EXCEEDED)
    except GraphUnavailableError as e:
        console.print(f"[red]Story graph unavailable: {e}[/red]")
        sys.exit(EXIT_GRAPH_UNAVAILABLE)

    health = ContextDiagnostics(app_config.get("diagnostics", {})).report_health(cache_stats, context.budget_report)
    print_context(context, cache_stats, health)


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--max-tokens", type=click.IntRange(min=0), help="Show a truncation preview at this ceiling")
def estimate(file: Path, max_tokens: Optional[int]):
    """Estimate the token cost of FILE"""
    text = file.read_text(encoding="utf-8")
    policy = BudgetPolicy()
    console.print(f"Estimated tokens: [bold]{policy.estimate_tokens(text)}[/bold]")

    if max_tokens is not None:
        truncated = policy.truncate(text, max_tokens)
        console.print(Panel(
            Text(truncated or ""),
            title=f"Truncated to {policy.estimate_tokens(truncated)} tokens",
            border_style="blue"
        ))


if __name__ == "__main__":
    main()
