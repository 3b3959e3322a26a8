from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from ..adapters.checkpoint_json import JsonCheckpointStore, safe_name
from ..adapters.manifest_jsonl import load_manifest
from ..adapters.parquet_sink import ParquetTransactionStore
from ..application.deployment import DeploymentBlockLocator
from ..application.fetchers import make_fetcher
from ..application.health import HealthMonitor
from ..application.manager import SessionManager
from ..application.planning import merge_intervals
from ..application.provider_pool import ProviderPool
from ..application.session import checkpoint_status
from ..config import Settings, get_chain
from ..domain.errors import ChainstreamError
from ..domain.normalize import normalize_address
from ..domain.tiers import get_tier
from ..domain.value_types import SessionId, TERMINAL_STATUSES
from ..log import configure_logging

app = typer.Typer(help="chainstream: multi-chain contract activity indexer.", no_args_is_help=True)
console = Console()


def _settings(data_dir: Optional[Path], log_level: Optional[str], **overrides: Any) -> Settings:
    kw = {k: v for k, v in overrides.items() if v is not None}
    if data_dir is not None:
        kw["data_dir"] = data_dir
    if log_level is not None:
        kw["log_level"] = log_level
    settings = Settings(**kw)
    configure_logging(settings.log_level)
    return settings


def _fail(msg: str) -> None:
    console.print(f"[red]error[/]: {msg}")
    raise typer.Exit(code=1)


def _status_panel(status: dict[str, Any]) -> Panel:
    color = {"failed": "red", "stopped": "yellow", "live-polling": "green"}.get(status["status"], "cyan")
    lines = [
        f"[bold]status[/]: [{color}]{status['status']}[/]  ({status['current_step']})",
        f"[bold]progress[/]: {status['progress']:.2f}%  chunk {status['current_chunk']}/{status['total_chunks']}",
        f"[bold]last confirmed block[/]: {status['last_confirmed_block']}",
        f"[bold]message[/]: {status['last_message']}",
    ]
    if status.get("stop_reason"):
        lines.append(f"[bold]stop reason[/]: {status['stop_reason']}")
    if status.get("failed_chunk"):
        fc = status["failed_chunk"]
        lines.append(f"[bold red]failed chunk[/]: #{fc['index']} [{fc['start']}, {fc['end']}] "
                     f"after {fc['attempts']} attempt(s): {fc['error']}")
    return Panel("\n".join(lines), title=str(status["session_id"]), expand=False)


@app.command()
def index(
    user_id: str,
    contract: str,
    chain: str = typer.Option("ethereum", help="Chain id (ethereum, lisk, starknet)"),
    tier: str = typer.Option("free", help="Subscription tier (free, starter, pro, enterprise)"),
    chunk_size: Optional[int] = typer.Option(None, help="Blocks per chunk"),
    data_dir: Optional[Path] = typer.Option(None, help="Root for checkpoints, manifests and transactions"),
    log_level: Optional[str] = typer.Option(None),
):
    """Run an indexing session until it finishes or the process receives SIGINT/SIGTERM."""
    settings = _settings(data_dir, log_level, chunk_size=chunk_size)
    try:
        get_chain(chain)
        get_tier(tier)
    except (ChainstreamError, ValueError) as e:
        _fail(str(e))

    async def main() -> dict[str, Any]:
        pool = ProviderPool.for_chain(settings, chain)
        pool.start_health_checks()
        manager = SessionManager(settings, pool)
        manager.install_signal_handlers()
        try:
            handle = await manager.start(user_id, contract, chain, tier)
            sub = manager.channel.subscribe(handle.session_id)

            progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold]{task.fields[status]}[/]"),
                BarColumn(),
                TextColumn("{task.percentage:>6.2f}%"),
                TimeElapsedColumn(),
                TextColumn(" • {task.description}"),
                expand=True,
            )

            async def follow() -> None:
                async for ev in sub:
                    progress.update(bar, completed=ev.progress, status=ev.status, description=ev.message[:80])
                    if ev.status in TERMINAL_STATUSES:
                        return

            with progress:
                bar = progress.add_task(description="starting", total=100, status="initializing")
                follower = asyncio.create_task(follow())
                await asyncio.gather(handle.task, return_exceptions=True)
                await manager.wait_shutdown()
                sub.close()
                await follower
            return handle.session.status_dict()
        finally:
            await manager.shutdown_all()
            await pool.aclose()

    status = asyncio.run(main())
    console.print(_status_panel(status))
    if status["status"] == "failed":
        raise typer.Exit(code=1)


@app.command()
def status(
    session_id: str,
    data_dir: Optional[Path] = typer.Option(None),
):
    """Show a session's checkpoint and the block ranges its manifest records as persisted."""
    settings = _settings(data_dir, "WARNING")
    store = JsonCheckpointStore(settings.data_dir)
    cp = asyncio.run(store.load(SessionId(session_id)))
    if cp is None:
        _fail(f"unknown session: {session_id}")
    console.print(_status_panel(checkpoint_status(cp)))

    path = os.path.join(os.fspath(settings.data_dir), "manifests", f"{safe_name(session_id)}.jsonl")
    persisted = merge_intervals([(r.from_block, r.to_block) for r in load_manifest(path) if r.status == "persisted"])
    if persisted:
        table = Table(title="persisted ranges")
        table.add_column("from", justify="right")
        table.add_column("to", justify="right")
        for s, e in persisted:
            table.add_row(f"{s:,}", f"{e:,}")
        console.print(table)


@app.command()
def locate(
    contract: str,
    chain: str = typer.Option("ethereum"),
    log_level: Optional[str] = typer.Option(None),
):
    """Binary-search the deployment block of a contract."""
    settings = _settings(None, log_level)

    async def main() -> int:
        pool = ProviderPool.for_chain(settings, chain)
        try:
            cfg = pool.chain_config(chain)
            fetcher = make_fetcher(pool, chain, get_tier("free"))
            locator = DeploymentBlockLocator(probe_attempts=settings.locator_probe_attempts)
            block = await locator.find_deployment_block(fetcher, normalize_address(contract, cfg.family))
            console.print(f"[dim]{locator.probes} probes[/]")
            return block
        finally:
            await pool.aclose()

    try:
        block = asyncio.run(main())
    except (ChainstreamError, ValueError) as e:
        _fail(str(e))
    console.print(f"[bold]{contract}[/] deployed on {chain} at block [green]{block:,}[/]")


@app.command()
def health(
    chain: Optional[str] = typer.Option(None, help="Only probe this chain"),
    log_level: Optional[str] = typer.Option(None),
):
    """Probe every configured endpoint once and print the aggregate status."""
    settings = _settings(None, log_level)

    async def main():
        pool = ProviderPool.for_chain(settings, chain) if chain else ProviderPool(settings)
        try:
            await pool.probe_all()
            monitor = HealthMonitor(pool, data_dir=settings.data_dir)
            return monitor.sample(), monitor.recent_alerts()
        finally:
            await pool.aclose()

    snap, alerts = asyncio.run(main())
    table = Table(title=f"providers: {snap.overall}")
    for col in ("chain", "endpoint", "healthy", "latency ms", "failures", "last error"):
        table.add_column(col)
    for c in snap.chains:
        for ep in c.endpoints:
            latency = ep["last_latency_ms"]
            table.add_row(
                c.chain, ep["url"],
                "[green]yes[/]" if ep["healthy"] else "[red]no[/]",
                f"{latency:.0f}" if latency is not None else "-",
                str(ep["total_failures"]), ep["last_error"] or "",
            )
    console.print(table)
    if "free_percent" in snap.storage:
        colour = "green" if snap.storage["healthy"] else "red"
        console.print(f"[bold]storage[/] {snap.storage['path']}: [{colour}]{snap.storage['free_percent']:.1f}% free[/]")
    for a in alerts:
        console.print(f"[{'red' if a.level == 'error' else 'yellow'}]{a.level}[/] {a.message}")


@app.command()
def export(
    contract: str,
    out: Path,
    chain: str = typer.Option("ethereum"),
    data_dir: Optional[Path] = typer.Option(None),
):
    """Write the deduplicated transaction dataset to CSV or Parquet (by file suffix)."""
    settings = _settings(data_dir, "WARNING")
    try:
        cfg = get_chain(chain)
        address = normalize_address(contract, cfg.family)
    except (ChainstreamError, ValueError) as e:
        _fail(str(e))
    df = ParquetTransactionStore(settings.data_dir, address, cfg.chain_id).to_frame()
    out.parent.mkdir(parents=True, exist_ok=True)
    if out.suffix.lower() == ".csv":
        df.to_csv(out, index=False)
    else:
        df.to_parquet(out, engine="pyarrow", index=False)
    console.print(f"[bold]exported[/]: {len(df):,} transactions → {out}")


if __name__ == "__main__":
    app()
