"""
Netpulse monitor loop: cycle scheduler and tick driver.

One asyncio event loop drives everything:
- TickDriver wakes every `tick_secs`, counts down, keeps uptime and hands the
  snapshot to the renderer
- every `cycle_ticks` ticks it starts a CycleScheduler.run_cycle() task, which
  runs the latency step, then the throughput step raced against a hard
  deadline, then records the results
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from probe import Config, ProbeError, ProbeTimeoutError, ThroughputResult
from store import (
    CsvLog,
    CycleSample,
    CycleState,
    LogRecord,
    SampleHistory,
    StatusSnapshot,
)

logger = logging.getLogger(__name__)


class LatencySource(Protocol):
    async def measure(self) -> float: ...


class ThroughputSource(Protocol):
    async def measure(self) -> ThroughputResult: ...


class CycleReentryError(RuntimeError):
    """A cycle was started while another one was still running."""


@dataclass
class StepOutcome:
    value: Any = None
    failure: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


# -------------------------
# Cycle scheduler
# -------------------------

class CycleScheduler:
    """Runs one measurement cycle end to end and owns the status/history it writes."""

    def __init__(
        self,
        cfg: Config,
        latency_probe: LatencySource,
        throughput_probe: ThroughputSource,
        log: CsvLog,
        snapshot: Optional[StatusSnapshot] = None,
        history: Optional[SampleHistory] = None,
    ):
        self.cfg = cfg
        self.latency_probe = latency_probe
        self.throughput_probe = throughput_probe
        self.log = log
        self.snapshot = snapshot if snapshot is not None else StatusSnapshot()
        self.history = history if history is not None else SampleHistory()
        self.in_flight = False

    def _enter(self, state: CycleState) -> None:
        self.snapshot.state = state
        logger.debug("Cycle state: %s", state.name)

    async def run_cycle(self) -> CycleSample:
        if self.in_flight:
            raise CycleReentryError("measurement cycle started while another is in flight")
        self.in_flight = True
        try:
            return await self._run()
        finally:
            self.in_flight = False

    async def _run(self) -> CycleSample:
        snap = self.snapshot
        sample = CycleSample()

        self._enter(CycleState.STARTING)
        await asyncio.sleep(self.cfg.start_delay_secs)

        self._enter(CycleState.RUNNING_LATENCY)
        outcome = await self._latency_step()
        if outcome.ok:
            sample.latency = outcome.value
            self._enter(CycleState.LATENCY_FINISHED)
        else:
            self._enter(CycleState.LATENCY_FAILED)
        snap.latency = sample.latency
        await asyncio.sleep(self.cfg.step_delay_secs)

        self._enter(CycleState.RUNNING_SPEED)
        outcome = await self._speed_step()
        if outcome.ok:
            res: ThroughputResult = outcome.value
            sample.up, sample.down = res.upload, res.download
            sample.hup, sample.hdown = res.human_upload, res.human_download
            self._enter(CycleState.SPEED_FINISHED)
        else:
            self._enter(CycleState.SPEED_FAILED)
        snap.up, snap.down, snap.hup, snap.hdown = sample.up, sample.down, sample.hup, sample.hdown
        await asyncio.sleep(self.cfg.step_delay_secs)

        self._complete(sample)
        return sample

    async def _latency_step(self) -> StepOutcome:
        try:
            value = await self.latency_probe.measure()
        except ProbeError as e:
            logger.warning("Latency test failed [%s]: %s", e.tag, e)
            return StepOutcome(failure=e.tag)
        except Exception:
            logger.exception("Latency probe raised unexpectedly")
            return StepOutcome(failure=ProbeError.tag)
        logger.info("Latency: %.3f ms", value)
        return StepOutcome(value=value)

    async def _speed_step(self) -> StepOutcome:
        deadline = self.cfg.throughput.deadline_secs
        try:
            # wait_for cancels the probe when the deadline wins; its late result is never seen here
            result = await asyncio.wait_for(self.throughput_probe.measure(), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning("Speed test failed [%s]: no result within %.1fs", ProbeTimeoutError.tag, deadline)
            return StepOutcome(failure=ProbeTimeoutError.tag)
        except ProbeError as e:
            logger.warning("Speed test failed [%s]: %s", e.tag, e)
            return StepOutcome(failure=e.tag)
        except Exception:
            logger.exception("Throughput probe raised unexpectedly")
            return StepOutcome(failure=ProbeError.tag)
        logger.info("Speed: down %.2f Mb, up %.2f Mb", result.human_download, result.human_upload)
        return StepOutcome(value=result)

    def _complete(self, sample: CycleSample) -> None:
        record = LogRecord(
            timestamp_ms=int(time.time() * 1000),
            latency=sample.latency,
            download=sample.down,
            upload=sample.up,
        )
        try:
            self.log.append(record)
        except OSError:
            logger.exception("Could not append to %s", self.log.path)
        self.history.append(sample)
        self.snapshot.tests += 1
        self.snapshot.avg = self.history.averages()
        self._enter(CycleState.IDLE)


# -------------------------
# Tick driver
# -------------------------

Renderer = Callable[[StatusSnapshot], None]


class TickDriver:
    """Fixed-period clock: countdown, uptime, render, and cycle start every `cycle_ticks` ticks."""

    def __init__(self, cfg: Config, scheduler: CycleScheduler, renderer: Optional[Renderer] = None):
        self.cfg = cfg
        self.scheduler = scheduler
        self.renderer = renderer
        self.snapshot = scheduler.snapshot
        self._stop = asyncio.Event()
        self._cycle_task: Optional[asyncio.Task] = None
        self._fatal: Optional[BaseException] = None
        self._deferring = False

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    @property
    def cycle_running(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Stop requested (uptime=%ds, tests=%d)", self.snapshot.uptime, self.snapshot.tests)
        self._stop.set()

    def trigger(self) -> None:
        """Start a cycle on the next tick."""
        if self.cycle_running:
            logger.info("Manual trigger ignored: cycle in flight")
            return
        self.snapshot.countdown = 0

    def tick(self) -> None:
        snap = self.snapshot
        if snap.countdown <= 0:
            if self.cycle_running:
                # once per overrun, not once per tick
                if not self._deferring:
                    logger.warning("Cycle still running at countdown 0; deferring next cycle")
                    self._deferring = True
                snap.countdown = 0
            elif not self.stopped:
                self._deferring = False
                self._start_cycle()
                snap.countdown = self.cfg.cycle_ticks - 1
        else:
            snap.countdown -= 1
        snap.uptime += 1
        if self.renderer is not None:
            self.renderer(snap)

    def _start_cycle(self) -> None:
        self._cycle_task = asyncio.create_task(self.scheduler.run_cycle())
        self._cycle_task.add_done_callback(self._on_cycle_done)

    def _on_cycle_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.critical("Measurement cycle aborted", exc_info=exc)
            self._fatal = exc
            self.stop()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        try:
            while not self._stop.is_set():
                self.tick()
                next_at += self.cfg.tick_secs
                delay = max(0.0, next_at - loop.time())
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop.wait(), timeout=delay)
        finally:
            if self.cycle_running:
                self._cycle_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._cycle_task
        if self._fatal is not None:
            raise self._fatal
