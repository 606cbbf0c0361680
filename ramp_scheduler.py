"""
Stage Scheduler
===============
Ramping virtual-user scheduler driven by a declarative stage list.

Policy: linear ramp. Inside every stage the target concurrency moves linearly
from the previous stage's target to the stage's own target, so a stage that
repeats the previous target holds flat. Targets are rounded half-up and hit
each stage's target exactly at the stage boundary.

Each live virtual user slot is an asyncio task looping
``iteration -> think time -> iteration`` until its stop event is set. A
stopping slot always finishes the iteration it is in.
"""

import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from load_errors import ConfigError
from load_metrics import COUNTER, GAUGE, TREND, MetricsCollector

logger = logging.getLogger(__name__)

IterationFn = Callable[[int, int], Awaitable[Any]]

SCHEDULER_METRICS = (
    ("iterations", COUNTER),
    ("iteration_duration", TREND),
    ("iteration_errors", COUNTER),
    ("interrupted_iterations", COUNTER),
    ("vus", GAUGE),
    ("vus_max", GAUGE),
)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse ``"15s"``, ``"1m30s"``, ``"500ms"`` or a plain number of seconds.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ConfigError(f"invalid duration: {value!r}")
            seconds = sum(float(n) * _UNIT_SECONDS[u] for n, u in parts)
    else:
        raise ConfigError(f"invalid duration: {value!r}")

    if seconds < 0 or math.isnan(seconds) or math.isinf(seconds):
        raise ConfigError(f"duration must be a finite, non-negative value: {value!r}")
    return seconds


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# =============================================================================
# SCHEDULE
# =============================================================================

@dataclass(frozen=True)
class Stage:
    duration: float
    target: int

    def __post_init__(self):
        if self.duration < 0:
            raise ConfigError(f"stage duration must be >= 0, got {self.duration}")
        if isinstance(self.target, bool) or not isinstance(self.target, int) or self.target < 0:
            raise ConfigError(f"stage target must be a non-negative integer, got {self.target!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Stage":
        try:
            duration, target = data["duration"], data["target"]
        except (KeyError, TypeError) as e:
            raise ConfigError(f"stage needs 'duration' and 'target': {data!r}") from e
        return cls(duration=parse_duration(duration), target=target)

    def to_dict(self) -> Dict[str, Any]:
        return {"duration": f"{self.duration:g}s", "target": self.target}


class RampSchedule:
    """Ordered stages plus the concurrency the run starts from."""

    def __init__(self, stages: Sequence[Stage], start_target: int = 0):
        self.stages = tuple(stages)
        if not self.stages:
            raise ConfigError("ramp schedule needs at least one stage")
        if start_target < 0:
            raise ConfigError("start target must be >= 0")
        self.start_target = start_target
        self.total_duration = sum(s.duration for s in self.stages)
        if self.total_duration <= 0:
            raise ConfigError("ramp schedule total duration must be > 0")

    @classmethod
    def from_config(cls, stages: Sequence[Dict[str, Any]], start_target: int = 0) -> "RampSchedule":
        return cls([Stage.from_dict(s) for s in stages], start_target=start_target)

    @property
    def max_target(self) -> int:
        return max([self.start_target] + [s.target for s in self.stages])

    def stage_at(self, t: float) -> int:
        """Index of the stage running at elapsed time ``t``."""
        stage_start = 0.0
        for i, stage in enumerate(self.stages):
            stage_start += stage.duration
            if t < stage_start:
                return i
        return len(self.stages) - 1

    def target_at(self, t: float) -> int:
        """Target number of active slots at elapsed time ``t``."""
        if t <= 0:
            return self.start_target

        previous = self.start_target
        stage_start = 0.0
        for stage in self.stages:
            stage_end = stage_start + stage.duration
            if t < stage_end:
                fraction = (t - stage_start) / stage.duration
                return _round_half_up(previous + (stage.target - previous) * fraction)
            previous = stage.target
            stage_start = stage_end
        return self.stages[-1].target

    def to_list(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self.stages]


# =============================================================================
# SLOTS & SCHEDULER
# =============================================================================

@dataclass
class VirtualUserSlot:
    index: int
    sequence: int
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional["asyncio.Task"] = None

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()


@dataclass(frozen=True)
class ScheduleSample:
    elapsed: float
    stage: int
    target: int
    active: int


class StageScheduler:
    """
    Converges the number of live virtual user slots to ``schedule.target_at(t)``
    once per tick, then drains in-flight iterations at schedule end.
    """

    def __init__(
        self,
        schedule: RampSchedule,
        iteration_fn: IterationFn,
        metrics: MetricsCollector,
        think_time: float = 0.3,
        tick_interval: float = 0.1,
        graceful_stop: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if tick_interval <= 0:
            raise ConfigError("tick interval must be > 0")
        if think_time < 0:
            raise ConfigError("think time must be >= 0")
        self.schedule = schedule
        self.iteration_fn = iteration_fn
        self.metrics = metrics
        self.think_time = think_time
        self.tick_interval = tick_interval
        self.graceful_stop = graceful_stop
        self._clock = clock

        for name, kind in SCHEDULER_METRICS:
            metrics.register(name, kind)

        self._slots: Dict[int, VirtualUserSlot] = {}
        self._iterations: Dict[int, int] = {}
        self._sequence = 0
        self._stop_requested = asyncio.Event()
        self.samples: List[ScheduleSample] = []
        self.current_target = schedule.start_target
        self.current_stage = 0
        self.elapsed = 0.0
        self.finished = False

    @property
    def active_slots(self) -> int:
        """Slots that are running and not told to stop."""
        return sum(1 for s in self._slots.values() if not s.stopping)

    @property
    def live_slots(self) -> int:
        """All slot tasks still alive, including ones finishing their last iteration."""
        return len(self._slots)

    def stop(self):
        """Request an early, graceful end of the schedule."""
        self._stop_requested.set()

    async def run(self):
        self.metrics.set_gauge("vus_max", self.schedule.max_target)
        start = self._clock()
        try:
            while not self._stop_requested.is_set():
                self.elapsed = self._clock() - start
                if self.elapsed >= self.schedule.total_duration:
                    break
                self._tick(self.elapsed)

                remaining = self.schedule.total_duration - self.elapsed
                try:
                    await asyncio.wait_for(
                        self._stop_requested.wait(),
                        timeout=min(self.tick_interval, remaining),
                    )
                except asyncio.TimeoutError:
                    pass

            self.current_target = 0
            self._converge(0)
            await self._drain()
        finally:
            for slot in list(self._slots.values()):
                if slot.task and not slot.task.done():
                    slot.task.cancel()
            self.finished = True

        logger.info(
            "schedule finished after %.1fs (%d iterations)",
            self._clock() - start, self.metrics.counter("iterations"),
        )

    def _tick(self, elapsed: float):
        target = self.schedule.target_at(elapsed)
        stage = self.schedule.stage_at(elapsed)
        if stage != self.current_stage:
            logger.info("stage %d/%d started at %.1fs (target %d)",
                        stage + 1, len(self.schedule.stages), elapsed,
                        self.schedule.stages[stage].target)
        self.current_target = target
        self.current_stage = stage
        self._converge(target)

        active = self.active_slots
        self.samples.append(ScheduleSample(elapsed, stage, target, active))
        self.metrics.set_gauge("vus", active)

    def _converge(self, target: int):
        live = [s for s in self._slots.values() if not s.stopping]
        if len(live) < target:
            for _ in range(target - len(live)):
                self._start_slot()
        elif len(live) > target:
            # Newest slots go first, the same way they were added.
            live.sort(key=lambda s: s.sequence, reverse=True)
            for slot in live[:len(live) - target]:
                slot.stop_event.set()

    def _start_slot(self):
        index = 1
        while index in self._slots:
            index += 1
        self._sequence += 1
        slot = VirtualUserSlot(index=index, sequence=self._sequence)
        self._iterations.setdefault(index, 0)
        self._slots[index] = slot
        slot.task = asyncio.create_task(self._run_slot(slot), name=f"vu-{index}")
        logger.debug("started virtual user %d", index)

    async def _run_slot(self, slot: VirtualUserSlot):
        try:
            while not slot.stopping:
                iteration = self._iterations[slot.index]
                self._iterations[slot.index] = iteration + 1

                started = time.perf_counter()
                try:
                    await self.iteration_fn(slot.index, iteration)
                except Exception:
                    logger.exception("iteration %d of virtual user %d crashed", iteration, slot.index)
                    self.metrics.add_counter("iteration_errors")
                else:
                    self.metrics.add_counter("iterations")
                    self.metrics.add_trend("iteration_duration", (time.perf_counter() - started) * 1000)

                if self.think_time > 0 and not slot.stopping:
                    try:
                        await asyncio.wait_for(slot.stop_event.wait(), timeout=self.think_time)
                    except asyncio.TimeoutError:
                        pass
                else:
                    # An iteration that never awaited must still let other slots run.
                    await asyncio.sleep(0)
        finally:
            if self._slots.get(slot.index) is slot:
                del self._slots[slot.index]
            logger.debug("virtual user %d exited", slot.index)

    async def _drain(self):
        tasks = [s.task for s in self._slots.values() if s.task]
        if not tasks:
            return
        logger.info("waiting for %d in-flight iterations", len(tasks))
        _, pending = await asyncio.wait(tasks, timeout=self.graceful_stop)
        if pending:
            logger.warning("graceful stop expired, interrupting %d iterations", len(pending))
            for task in pending:
                task.cancel()
                self.metrics.add_counter("interrupted_iterations")
            await asyncio.gather(*pending, return_exceptions=True)
