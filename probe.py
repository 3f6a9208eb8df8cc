# netpulse_probe.py
"""
Netpulse probes — the measurement side of the monitor.

Features:
- Loads an optional YAML config (probe tuning, cycle timing, log location)
- Latency probe: system `ping` subprocess, summary-line RTT parsing
- Throughput probe: speedtest-cli run on a worker thread
- Classified probe failures (no_internet, timeout_error, parse_error, probe_error)

CLI:
  python probe.py check --config ./netpulse.yaml

Requirements (see pyproject.toml):
  PyYAML
  typer
  speedtest-cli

Stdlib otherwise (asyncio, threading, re, platform, shutil, tempfile)
"""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import os
import platform
import re
import shutil
import tempfile
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import speedtest
import typer
import yaml

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, help="Netpulse probe utilities")

LOG_BASENAME = "netpulse.csv"

# -------------------------
# Config models (lightweight)
# -------------------------

@dataclass
class LatencyConfig:
    host: str = "google.com"
    timeout_secs: int = 10
    count: int = 10


@dataclass
class ThroughputConfig:
    max_time_secs: float = 7.5
    ping_count: int = 2
    max_servers: int = 2
    deadline_secs: float = 45.0


@dataclass
class Config:
    tick_secs: float = 1.0
    cycle_ticks: int = 60
    start_delay_secs: float = 2.0
    step_delay_secs: float = 2.0
    log_path: Optional[str] = None
    latency: LatencyConfig = dataclasses.field(default_factory=LatencyConfig)
    throughput: ThroughputConfig = dataclasses.field(default_factory=ThroughputConfig)

    def resolved_log_path(self) -> str:
        return self.log_path or default_log_path()


def default_log_path() -> str:
    return os.path.join(tempfile.gettempdir(), LOG_BASENAME)


_TOP_KEYS = {"tick_secs", "cycle_ticks", "start_delay_secs", "step_delay_secs", "log_path", "latency", "throughput"}


def _positive(raw: Dict[str, Any], key: str, default, cast, prefix: str = "", allow_zero: bool = False):
    value = raw.get(key, default)
    try:
        value = cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for {prefix}{key}: {raw.get(key)!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"{prefix}{key} must be positive, got {value}")
    return value


def config_from_dict(raw: Dict[str, Any]) -> Config:
    unknown = set(raw) - _TOP_KEYS
    if unknown:
        raise ValueError(f"Unknown config key(s): {', '.join(sorted(unknown))}")

    lat_raw = raw.get("latency") or {}
    thr_raw = raw.get("throughput") or {}
    if not isinstance(lat_raw, dict) or not isinstance(thr_raw, dict):
        raise ValueError("'latency' and 'throughput' must be mappings")

    defaults = Config()
    lat_def = defaults.latency
    thr_def = defaults.throughput

    host = str(lat_raw.get("host", lat_def.host)).strip()
    if not host:
        raise ValueError("latency.host must not be empty")
    latency = LatencyConfig(
        host=host,
        timeout_secs=_positive(lat_raw, "timeout_secs", lat_def.timeout_secs, int, "latency."),
        count=_positive(lat_raw, "count", lat_def.count, int, "latency."),
    )
    throughput = ThroughputConfig(
        max_time_secs=_positive(thr_raw, "max_time_secs", thr_def.max_time_secs, float, "throughput."),
        ping_count=_positive(thr_raw, "ping_count", thr_def.ping_count, int, "throughput."),
        max_servers=_positive(thr_raw, "max_servers", thr_def.max_servers, int, "throughput."),
        deadline_secs=_positive(thr_raw, "deadline_secs", thr_def.deadline_secs, float, "throughput."),
    )
    log_path = raw.get("log_path")
    return Config(
        tick_secs=_positive(raw, "tick_secs", defaults.tick_secs, float),
        cycle_ticks=_positive(raw, "cycle_ticks", defaults.cycle_ticks, int),
        start_delay_secs=_positive(raw, "start_delay_secs", defaults.start_delay_secs, float, allow_zero=True),
        step_delay_secs=_positive(raw, "step_delay_secs", defaults.step_delay_secs, float, allow_zero=True),
        log_path=os.path.expanduser(str(log_path)) if log_path else None,
        latency=latency,
        throughput=throughput,
    )


def load_config(path: Optional[str]) -> Config:
    """Load config from YAML; no path means all defaults."""
    if not path:
        return Config()
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config root must be a mapping: {path}")
    return config_from_dict(raw)


# -------------------------
# Probe failures
# -------------------------

class ProbeError(Exception):
    """Any probe-reported failure; `tag` classifies it for logs and display."""

    tag = "probe_error"


class NoInternetError(ProbeError):
    tag = "no_internet"


class ProbeTimeoutError(ProbeError):
    tag = "timeout_error"


class LatencyParseError(ProbeError):
    tag = "parse_error"


# -------------------------
# Latency probe (system ping)
# -------------------------

# Summary line, e.g. "rtt min/avg/max/mdev = 10.1/12.3/15.0/1.2 ms"
PING_SUMMARY_RE = re.compile(r"=\s*[0-9.]+/(?P<ms>[0-9]+(?:\.[0-9]+)?)")


def parse_latency_output(output: str) -> float:
    """Return the average RTT (ms) from the final summary line of ping output."""
    lines = [line for line in (output or "").splitlines() if line.strip()]
    if not lines:
        raise LatencyParseError("empty ping output")
    m = PING_SUMMARY_RE.search(lines[-1])
    if not m:
        raise LatencyParseError(f"no RTT summary in line: {lines[-1][:100]!r}")
    return float(m.group("ms"))


class LatencyProbe:
    """Ping a host `count` times and report the average round trip."""

    def __init__(self, cfg: LatencyConfig):
        self.cfg = cfg
        self.system = platform.system()

    def build_command(self) -> list[str]:
        cmd = ["ping", "-n", "-c", str(self.cfg.count)]
        if self.system == "Linux":
            cmd += ["-W", str(self.cfg.timeout_secs)]
        # macOS -W is in milliseconds and per-packet; rely on the outer timeout there
        cmd.append(self.cfg.host)
        return cmd

    @property
    def overall_timeout(self) -> float:
        # one-second ping interval plus the reply wait of the last packet
        return float(self.cfg.timeout_secs + self.cfg.count)

    async def measure(self) -> float:
        cmd = self.build_command()
        logger.debug("Executing ping: %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            raise ProbeError("ping binary not found")
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.overall_timeout)
        except asyncio.TimeoutError:
            await self._reap(proc)
            raise ProbeTimeoutError(f"ping {self.cfg.host} exceeded {self.overall_timeout:.0f}s")
        except asyncio.CancelledError:
            # monitor shutdown: the child must not outlive the cycle
            await self._reap(proc)
            raise
        if proc.returncode != 0:
            detail = stderr.decode(errors="ignore").strip() or f"exit status {proc.returncode}"
            raise NoInternetError(f"{self.cfg.host} unreachable ({detail})")
        return parse_latency_output(stdout.decode(errors="ignore"))

    @staticmethod
    async def _reap(proc: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


# -------------------------
# Throughput probe (speedtest-cli)
# -------------------------

@dataclass
class ThroughputResult:
    upload: float          # bytes per second
    download: float        # bytes per second
    human_upload: float    # Mbit/s
    human_download: float  # Mbit/s

    @classmethod
    def from_bits(cls, upload_bps: float, download_bps: float) -> "ThroughputResult":
        return cls(
            upload=round(upload_bps / 8, 2),
            download=round(download_bps / 8, 2),
            human_upload=round(upload_bps / 1_000_000, 2),
            human_download=round(download_bps / 1_000_000, 2),
        )


class ThroughputProbe:
    """Measure download/upload speed against the nearest speedtest.net servers.

    speedtest-cli is blocking, so every run gets its own daemon thread. The
    caller enforces the hard deadline; a run that loses the race keeps its
    thread until the library's own socket timeouts fire and its result is
    dropped, while the next run starts on a fresh thread. Daemon threads do
    not hold up interpreter exit.
    """

    def __init__(self, cfg: ThroughputConfig):
        self.cfg = cfg

    def _run(self) -> ThroughputResult:
        try:
            st = speedtest.Speedtest(timeout=self.cfg.max_time_secs, secure=True)
            st.config["length"]["download"] = self.cfg.max_time_secs
            st.config["length"]["upload"] = self.cfg.max_time_secs
            st.get_servers()
            closest = st.get_closest_servers(limit=self.cfg.max_servers)
            best = st.get_best_server(closest)
            logger.debug("speedtest server: %s (%s)", best.get("sponsor"), best.get("host"))
            download_bps = st.download()
            upload_bps = st.upload(pre_allocate=False)
        except (speedtest.SpeedtestException, OSError) as e:
            raise ProbeError(f"speedtest failed: {e}") from e
        return ThroughputResult.from_bits(upload_bps, download_bps)

    async def measure(self) -> ThroughputResult:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()

        def settle(result: Optional[ThroughputResult], exc: Optional[BaseException]) -> None:
            if fut.done():  # deadline already won
                return
            if exc is not None:
                fut.set_exception(exc)
            else:
                fut.set_result(result)

        def worker() -> None:
            try:
                result, exc = self._run(), None
            except Exception as e:
                result, exc = None, e
            # the loop may already be closed when a hung run finally returns
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(settle, result, exc)

        threading.Thread(target=worker, name="speedtest", daemon=True).start()
        return await fut


# -------------------------
# CLI commands
# -------------------------

def config_summary(cfg: Config) -> str:
    lat, thr = cfg.latency, cfg.throughput
    return (
        f"Cycle: every {cfg.cycle_ticks} ticks of {cfg.tick_secs:g}s | "
        f"ping {lat.host} x{lat.count} (timeout {lat.timeout_secs}s) | "
        f"speedtest {thr.max_time_secs:g}s budget, {thr.max_servers} servers, "
        f"ping_count {thr.ping_count} (informational), "
        f"hard deadline {thr.deadline_secs:g}s | log: {cfg.resolved_log_path()}"
    )


@app.command()
def check(config: Optional[str] = typer.Option(None, help="Path to netpulse.yaml")):
    """Check presence of the ping binary and speedtest-cli, and print the config summary."""
    try:
        cfg = load_config(config)
    except (OSError, ValueError) as e:
        typer.secho(f"Config error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    ping_ok = shutil.which("ping")
    typer.echo(f"ping present: {'yes' if ping_ok else 'NO'}")
    typer.echo(f"speedtest-cli version: {getattr(speedtest, '__version__', 'unknown')}")
    typer.echo(config_summary(cfg))


if __name__ == "__main__":
    app()
