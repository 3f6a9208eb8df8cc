# netpulse_tui.py
"""
Netpulse TUI — live terminal dashboard for the latency/throughput monitor, plus
the small commands that manage its CSV log.

Features:
- Runs a measurement cycle every 60 seconds (ping, then speedtest with a hard deadline)
- Live status, last results and running averages, refreshed every second
- Failed measurements (-1) highlighted in red
- Type 'q' + Enter to quit, 't' + Enter to test now; Ctrl-C also works

Requirements:
  rich
  typer
  PyYAML, speedtest-cli (via probe.py)

Usage:
  netpulse [--config ./netpulse.yaml] [--log-level INFO]
  netpulse loc      # print the log file path
  netpulse view     # print the raw log (--table for a formatted view)
  netpulse empty    # delete the log and start over with only the header
  netpulse check    # check ping / speedtest-cli availability
"""
from __future__ import annotations

import asyncio
import functools
import signal
import sys
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as _get_version
from typing import Callable, Optional

import typer
from rich import box
from rich.align import Align
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from logsetup import configure_logging
from monitor import CycleScheduler, TickDriver
from probe import Config, LatencyProbe, ThroughputProbe, load_config
from probe import check as probe_check
from store import SENTINEL, Averages, CsvLog, CycleState, LogRecord, StatusSnapshot

app = typer.Typer(add_completion=False, help="Netpulse: periodic latency and speed monitor")
console = Console()

APP_NAME = "netpulse"

STATE_STYLES = {
    CycleState.IDLE: "green",
    CycleState.STARTING: "yellow",
    CycleState.RUNNING_LATENCY: "cyan",
    CycleState.LATENCY_FINISHED: "green",
    CycleState.LATENCY_FAILED: "bold red",
    CycleState.RUNNING_SPEED: "cyan",
    CycleState.SPEED_FINISHED: "green",
    CycleState.SPEED_FAILED: "bold red",
}


@functools.lru_cache(maxsize=None)
def app_version() -> str:
    try:
        return _get_version(APP_NAME)
    except PackageNotFoundError:
        return "unknown"


# --------------------
# Formatting
# --------------------

def fmt_uptime(seconds: int) -> str:
    days, rem = divmod(int(seconds), 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{days}:{hours}:{minutes}:{secs}"


def fmt_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.3f}".rstrip("0").rstrip(".")


def fmt_measure(value: float) -> Text:
    # sentinel shows up red so failed runs stand out from real results
    if value == SENTINEL:
        return Text(str(SENTINEL), style="bold red")
    return Text(fmt_number(value))


def fmt_state(state: CycleState) -> Text:
    return Text(state.label, style=STATE_STYLES.get(state, ""))


def build_header(snap: StatusSnapshot) -> Table:
    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold")
    grid.add_column()
    grid.add_row("Status:", fmt_state(snap.state))
    grid.add_row("Seconds until next test:", str(snap.countdown))
    grid.add_row("Total tests:", str(snap.tests))
    grid.add_row("Uptime:", fmt_uptime(snap.uptime))
    return grid


def build_results_table(snap: StatusSnapshot) -> Table:
    tbl = Table(box=box.SIMPLE_HEAVY, padding=(0, 1))
    tbl.add_column("", style="bold", no_wrap=True)
    tbl.add_column("Last test", justify="right", no_wrap=True)
    tbl.add_column("Average", justify="right", no_wrap=True)

    avg: Averages = snap.avg

    def pair(raw: float, human: float) -> Text:
        t = Text()
        t.append_text(fmt_measure(raw))
        t.append("  (")
        t.append_text(fmt_measure(human))
        t.append(" Mb)")
        return t

    tbl.add_row("Latency (ms)", fmt_measure(snap.latency), Text(fmt_number(avg.latency)))
    tbl.add_row("Down", pair(snap.down, snap.hdown), pair(avg.down, avg.hdown))
    tbl.add_row("Up", pair(snap.up, snap.hup), pair(avg.up, avg.hup))
    return tbl


def layout_render(snap: StatusSnapshot) -> Panel:
    body = Group(build_header(snap), Text(""), build_results_table(snap))
    footer = Text("q+Enter quit · t+Enter test now", style="dim")
    return Panel(Group(body, footer), title=f"{APP_NAME} | Version {app_version()}", box=box.SQUARE)


def build_log_table(records: list[LogRecord]) -> Table:
    tbl = Table(box=box.SIMPLE_HEAVY, padding=(0, 1))
    tbl.add_column("Date", no_wrap=True)
    tbl.add_column("Latency (ms)", justify="right")
    tbl.add_column("Down", justify="right")
    tbl.add_column("Up", justify="right")
    for r in records:
        when = datetime.fromtimestamp(r.timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")
        tbl.add_row(when, fmt_measure(r.latency), fmt_measure(r.download), fmt_measure(r.upload))
    return tbl


# --------------------
# Keyboard handling
# --------------------

def read_stdin_nonblocking() -> Optional[str]:
    import select
    if not sys.stdin.isatty():
        return None
    if sys.stdin in select.select([sys.stdin], [], [], 0)[0]:
        return sys.stdin.readline().strip() or None
    return None


class Dashboard:
    """Renderer handed to the TickDriver: redraws the live view and polls for key commands."""

    def __init__(self, live: Live, on_key: Optional[Callable[[str], None]] = None):
        self.live = live
        self.on_key = on_key

    def __call__(self, snap: StatusSnapshot) -> None:
        try:
            view = Align.left(layout_render(snap))
        except Exception as e:
            view = Panel(Text(f"Error: {e}", style="red"), title=APP_NAME)
        self.live.update(view, refresh=True)
        key = read_stdin_nonblocking()
        if key and self.on_key is not None:
            self.on_key(key.lower())


# --------------------
# Main loop
# --------------------

async def monitor_main(cfg: Config, renderer: Dashboard) -> None:
    log = CsvLog(cfg.resolved_log_path())
    log.ensure()
    scheduler = CycleScheduler(cfg, LatencyProbe(cfg.latency), ThroughputProbe(cfg.throughput), log)
    driver = TickDriver(cfg, scheduler, renderer=renderer)

    def _on_key(key: str) -> None:
        if key.startswith("q"):
            driver.stop()
        elif key.startswith("t"):
            driver.trigger()
    renderer.on_key = _on_key

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, driver.stop)
        except NotImplementedError:
            pass
    await driver.run()


def _load_or_exit(config: Optional[str]) -> Config:
    try:
        return load_config(config)
    except (OSError, ValueError) as e:
        typer.secho(f"Config error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)


def run_monitor(config: Optional[str], log_level: Optional[str], log_file: Optional[str]) -> None:
    cfg = _load_or_exit(config)
    configure_logging(log_level, log_file, console=console)
    initial = Align.left(layout_render(StatusSnapshot()))
    with Live(initial, console=console, auto_refresh=False, screen=True) as live:
        try:
            asyncio.run(monitor_main(cfg, Dashboard(live)))
        except Exception as e:
            live.stop()
            typer.secho(f"Fatal: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)


ConfigOpt = typer.Option(None, "--config", help="Path to netpulse.yaml")
LogLevelOpt = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING, ERROR (default: $NETPULSE_LOG_LEVEL or WARNING)")
LogFileOpt = typer.Option(None, "--log-file", help="Also write JSON-lines logs to this file")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context,
         config: Optional[str] = ConfigOpt,
         log_level: Optional[str] = LogLevelOpt,
         log_file: Optional[str] = LogFileOpt):
    """Run the monitor when no command is given."""
    if ctx.invoked_subcommand is None:
        run_monitor(config, log_level, log_file)


@app.command()
def run(config: Optional[str] = ConfigOpt,
        log_level: Optional[str] = LogLevelOpt,
        log_file: Optional[str] = LogFileOpt):
    """Run the monitor with the live dashboard."""
    run_monitor(config, log_level, log_file)


@app.command()
def loc(config: Optional[str] = ConfigOpt):
    """Print the location of the CSV log."""
    typer.echo(_load_or_exit(config).resolved_log_path())


@app.command()
def view(config: Optional[str] = ConfigOpt,
         table: bool = typer.Option(False, "--table", help="Render parsed rows as a table")):
    """Print the contents of the CSV log."""
    log = CsvLog(_load_or_exit(config).resolved_log_path())
    log.ensure()
    if table:
        console.print(build_log_table(log.read_records()))
    else:
        typer.echo(log.read_text(), nl=False)


@app.command()
def empty(config: Optional[str] = ConfigOpt):
    """Delete the CSV log and re-create it with only the header row."""
    log = CsvLog(_load_or_exit(config).resolved_log_path())
    log.clear()
    typer.secho(f"✓ Emptied {log.path}", fg=typer.colors.GREEN)


app.command(name="check")(probe_check)


if __name__ == "__main__":
    app()
