from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from perp_snapshot.core.config import Settings
from perp_snapshot.core.enums import UniverseStrategy
from perp_snapshot.core.errors import SnapshotError
from perp_snapshot.core.logging import configure_logging
from perp_snapshot.core.models import MarketRawSnapshot
from perp_snapshot.pipeline.assembler import SnapshotAssembler, create_assembler

app = typer.Typer(help="Perpetual-futures market snapshot CLI")
console = Console()

EXIT_RETRYABLE = 3


def _exit_code_for(error: SnapshotError) -> int:
    # 3 plays the role of a 503: the caller may simply try again
    return EXIT_RETRYABLE if error.retryable else 1


def _parse_symbols(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip().upper() for item in value.split(",") if item.strip()]


def _summary_table(snapshot: MarketRawSnapshot) -> Table:
    table = Table(title=f"Snapshot {snapshot.timestamp} feeds_ok={snapshot.feeds_ok}")
    table.add_column("symbol")
    table.add_column("H1 bars", justify="right")
    table.add_column("M15 bars", justify="right")
    table.add_column("funding", justify="right")
    table.add_column("oi_now", justify="right")
    table.add_column("24h volume (USD)", justify="right")

    def fmt(value: float | None, pattern: str) -> str:
        return "-" if value is None else format(value, pattern)

    for label, asset in (("BTCUSDT", snapshot.btc), ("ETHUSDT", snapshot.eth)):
        if asset is None:
            table.add_row(label, "-", "-", "-", "-", "-")
            continue
        table.add_row(
            f"[bold]{label}[/bold]",
            str(len(asset.klines.get("H1", []))),
            str(len(asset.klines.get("M15", []))),
            fmt(asset.funding, ".6f"),
            fmt(asset.oi_now, ",.0f"),
            "-",
        )
    for item in snapshot.universe:
        table.add_row(
            item.symbol,
            str(len(item.klines.get("H1", []))),
            str(len(item.klines.get("M15", []))),
            fmt(item.funding, ".6f"),
            fmt(item.oi_now, ",.0f"),
            fmt(item.volume24h_usd, ",.0f"),
        )
    return table


async def _run_snapshot(
    assembler: SnapshotAssembler,
    *,
    strategy: UniverseStrategy,
    top_n: int | None,
    include_symbols: list[str],
    warmup_seconds: float,
) -> MarketRawSnapshot:
    try:
        if warmup_seconds > 0:
            assembler.start()
            await asyncio.sleep(warmup_seconds)
        return await assembler.assemble(strategy=strategy, top_n=top_n, include_symbols=include_symbols)
    finally:
        await assembler.close()


@app.command("snapshot")
def snapshot(
    universe: UniverseStrategy = typer.Option(UniverseStrategy.VOLUME, help="Universe ranking strategy"),
    top_n: int | None = typer.Option(default=None, min=1, max=200, help="Alt universe size"),
    symbols: str | None = typer.Option(default=None, help="Comma-separated symbols to force into the universe"),
    warmup_seconds: float = typer.Option(
        default=0.0,
        min=0.0,
        max=300.0,
        help="Run the WebSocket collectors this long before assembling (0 = REST only)",
    ),
    output: Path | None = typer.Option(default=None, help="Write the snapshot JSON to this file"),
    as_json: bool = typer.Option(False, "--json", help="Print the full snapshot JSON instead of a summary"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    assembler = create_assembler(settings)

    try:
        result = asyncio.run(
            _run_snapshot(
                assembler,
                strategy=universe,
                top_n=top_n,
                include_symbols=_parse_symbols(symbols),
                warmup_seconds=warmup_seconds,
            )
        )
    except SnapshotError as exc:
        console.print(f"[red]Snapshot failed:[/red] {json.dumps(exc.to_dict())}")
        raise typer.Exit(code=_exit_code_for(exc)) from exc

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(result.to_json(), encoding="utf-8")
        console.print(f"Snapshot written to [bold]{output}[/bold]")

    if as_json:
        console.print_json(result.to_json())
        return

    console.print(_summary_table(result))
    console.print(f"duration_ms={result.duration_ms}, warnings={len(result.data_warnings)}")
    for warning in result.data_warnings:
        console.print(f" - [yellow]{warning}[/yellow]")


@app.command("universe")
def universe(
    strategy: UniverseStrategy = typer.Option(UniverseStrategy.VOLUME, help="Universe ranking strategy"),
    top_n: int = typer.Option(default=30, min=1, max=200),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    assembler = create_assembler(settings)

    async def run() -> tuple[list[str], set[str]]:
        try:
            filters = await assembler.exchange_info.get_filters()
            ranked = await assembler.selector.select_top_n(top_n, strategy)
            return ranked, set(filters)
        finally:
            await assembler.close()

    ranked, tradable = asyncio.run(run())
    table = Table(title=f"Top {top_n} by {strategy.value}")
    table.add_column("#", justify="right")
    table.add_column("symbol")
    table.add_column("tradable")
    for index, symbol in enumerate(ranked, start=1):
        table.add_row(str(index), symbol, "yes" if symbol in tradable else "[red]no[/red]")
    console.print(table)


@app.command("stream-health")
def stream_health(
    seconds: float = typer.Option(default=30.0, min=1.0, max=3600.0, help="How long to run the collectors"),
    top_n: int = typer.Option(default=10, min=1, max=200, help="Alt symbols to subscribe"),
) -> None:
    """
    Run both WebSocket collectors for a while and print their health report.
    """
    settings = Settings()
    configure_logging(settings.log_level)
    assembler = create_assembler(settings)

    async def run() -> dict[str, object]:
        assembler.start()
        try:
            ranked = await assembler.selector.select_top_n(top_n, settings.universe_strategy)
            await assembler.collector.set_alt_universe(ranked)
            if assembler.backfill is not None:
                await assembler.backfill.update_alt_symbols(ranked)
            await asyncio.sleep(seconds)
            return assembler.collector_health()
        finally:
            await assembler.close()

    console.print_json(json.dumps(asyncio.run(run())))


if __name__ == "__main__":
    app()
