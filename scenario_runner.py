"""
Scenario definitions and the runner that drives one scenario.

A Scenario is an immutable, validated value built with ScenarioBuilder (or
from k6-style options via Scenario.from_options). A ScenarioRunner executes
it: arrival-rate kinds pull ticks from a RateScheduler and dispatch each
iteration on a pooled VU; iteration-count kinds run a fixed set of VUs
back-to-back.
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from http_executor import HttpExecutor, RequestResult
from load_config import parse_duration
from load_errors import CheckFailed, InvalidConfig, TransportError
from load_metrics import IterationOutcome, MetricsCollector
from rate_scheduler import RateProfile, RateScheduler, Stage, Tick
from vu_pool import SharedIterations, VirtualUser, VirtualUserPool

logger = logging.getLogger(__name__)

SetupContext = Mapping[str, Any]
Check = Callable[[RequestResult], bool]
IterationFn = Callable[["IterationContext"], Awaitable[None]]

DEFAULT_GRACEFUL_STOP = 30.0
DEFAULT_MAX_DURATION = 600.0
OVERSHOOT_TOLERANCE = 0.001  # seconds


class ExecutorKind(Enum):
    CONSTANT_ARRIVAL_RATE = "constant-arrival-rate"
    RAMPING_ARRIVAL_RATE = "ramping-arrival-rate"
    PER_VU_ITERATIONS = "per-vu-iterations"
    SHARED_ITERATIONS = "shared-iterations"
    CONSTANT_VUS = "constant-vus"

    @property
    def is_arrival_rate(self) -> bool:
        return self in (ExecutorKind.CONSTANT_ARRIVAL_RATE, ExecutorKind.RAMPING_ARRIVAL_RATE)


class RunnerState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    DRAINING = "draining"
    COMPLETED = "completed"


# =============================================================================
# SCENARIO DEFINITION
# =============================================================================

@dataclass(frozen=True)
class Scenario:
    name: str
    executor: ExecutorKind
    exec: IterationFn
    profile: Optional[RateProfile] = None
    pre_allocated_vus: int = 0
    max_vus: int = 0
    vus: int = 0
    iterations: int = 0
    duration: float = 0.0
    max_duration: float = DEFAULT_MAX_DURATION
    start_time: float = 0.0
    graceful_stop: float = DEFAULT_GRACEFUL_STOP

    @property
    def vu_capacity(self) -> int:
        return self.max_vus if self.executor.is_arrival_rate else self.vus

    @property
    def run_time(self) -> float:
        """Longest time the scenario can issue new iterations, excluding start_time."""
        if self.executor.is_arrival_rate:
            return self.profile.duration
        if self.executor is ExecutorKind.CONSTANT_VUS:
            return self.duration
        return self.max_duration

    def validate(self) -> None:
        """Raise InvalidConfig unless every field is usable by a runner."""
        def fail(message):
            raise InvalidConfig(f"{self.name}: {message}")

        if not self.name or not isinstance(self.name, str):
            raise InvalidConfig("scenario name must not be empty")
        if not isinstance(self.executor, ExecutorKind):
            fail(f"unknown executor {self.executor!r}")
        if not callable(self.exec):
            fail("missing iteration function")
        if self.start_time < 0:
            fail(f"startTime must be >= 0, got {self.start_time}")
        if self.graceful_stop < 0:
            fail(f"gracefulStop must be >= 0, got {self.graceful_stop}")

        kind = self.executor
        if kind.is_arrival_rate:
            if not isinstance(self.profile, RateProfile):
                fail(f"{kind.value} needs a rate profile")
            if kind is ExecutorKind.CONSTANT_ARRIVAL_RATE and not self.profile.is_constant:
                fail("constant-arrival-rate needs a constant rate")
            if self.pre_allocated_vus < 0:
                fail(f"preAllocatedVUs must be >= 0, got {self.pre_allocated_vus}")
            if self.max_vus < max(self.pre_allocated_vus, 1):
                fail(f"maxVUs ({self.max_vus}) must be >= max(preAllocatedVUs, 1)")
            return

        if self.profile is not None:
            fail(f"{kind.value} does not take a rate profile")
        if self.vus < 1:
            fail(f"vus must be >= 1, got {self.vus}")
        if kind is ExecutorKind.CONSTANT_VUS:
            if self.duration <= 0:
                fail("constant-vus needs a positive duration")
            return
        if self.iterations < 1:
            fail(f"iterations must be >= 1, got {self.iterations}")
        if kind is ExecutorKind.SHARED_ITERATIONS and self.iterations < self.vus:
            fail(f"iterations ({self.iterations}) can't be less than vus ({self.vus})")
        if self.max_duration <= 0:
            fail(f"maxDuration must be positive, got {self.max_duration}")

    @classmethod
    def builder(cls, name: str) -> "ScenarioBuilder":
        return ScenarioBuilder(name)

    @classmethod
    def from_options(
        cls,
        name: str,
        options: Mapping[str, Any],
        functions: Optional[Mapping[str, IterationFn]] = None,
    ) -> "Scenario":
        """
        Build a scenario from k6-style options, e.g.

            {"executor": "constant-arrival-rate", "rate": 10, "timeUnit": "1s",
             "duration": "2m", "preAllocatedVUs": 20, "exec": "register_author"}

        `exec` may be a callable or the name of one in `functions`.
        """
        opts = dict(options)
        builder = ScenarioBuilder(name)

        kind = opts.pop("executor", None)
        if kind is None:
            raise InvalidConfig(f"{name}: executor is required")
        builder.executor(kind)

        exec_ref = opts.pop("exec", None)
        if isinstance(exec_ref, str):
            fn = (functions or {}).get(exec_ref)
            if fn is None:
                raise InvalidConfig(f"{name}: unknown iteration function {exec_ref!r}")
            builder.exec(fn)
        elif exec_ref is not None:
            builder.exec(exec_ref)

        time_unit = parse_duration(opts.pop("timeUnit", 1))
        if "rate" in opts:
            builder.constant_rate(opts.pop("rate"), parse_duration(opts.pop("duration", 0)), time_unit)
        if "stages" in opts or "startRate" in opts:
            raw_stages = opts.pop("stages", [])
            if not isinstance(raw_stages, (list, tuple)):
                raise InvalidConfig(f"{name}: stages must be a list, got {raw_stages!r}")
            stages = [_parse_stage(name, i, stage) for i, stage in enumerate(raw_stages)]
            builder.ramping_rate(opts.pop("startRate", 0), stages, time_unit)
        if "duration" in opts:
            builder.duration(parse_duration(opts.pop("duration")))

        for key, setter in (
            ("preAllocatedVUs", builder.pre_allocated_vus),
            ("maxVUs", builder.max_vus),
            ("vus", builder.vus),
            ("iterations", builder.iterations),
        ):
            if key in opts:
                setter(opts.pop(key))
        for key, setter in (
            ("maxDuration", builder.max_duration),
            ("startTime", builder.start_time),
            ("gracefulStop", builder.graceful_stop),
        ):
            if key in opts:
                setter(parse_duration(opts.pop(key)))

        if opts:
            raise InvalidConfig(f"{name}: unknown option(s): {', '.join(sorted(opts))}")
        return builder.build()


def _parse_stage(name: str, index: int, stage: Any) -> Stage:
    try:
        target, duration = stage["target"], stage["duration"]
    except (KeyError, TypeError):
        raise InvalidConfig(f"{name}: invalid stage {index}: {stage!r}") from None
    if isinstance(target, bool) or not isinstance(target, (int, float)):
        raise InvalidConfig(f"{name}: invalid stage {index}: target must be a number, got {target!r}")
    return Stage(target, parse_duration(duration))


class ScenarioBuilder:
    """Collects scenario settings and validates them in build()."""

    def __init__(self, name: str):
        self._name = name
        self._executor: Optional[ExecutorKind] = None
        self._exec: Optional[IterationFn] = None
        self._profile: Optional[RateProfile] = None
        self._pre_allocated: Optional[int] = None
        self._max_vus: Optional[int] = None
        self._vus: Optional[int] = None
        self._iterations: Optional[int] = None
        self._duration: Optional[float] = None
        self._max_duration = DEFAULT_MAX_DURATION
        self._start_time = 0.0
        self._graceful_stop = DEFAULT_GRACEFUL_STOP

    def executor(self, kind: Union[ExecutorKind, str]) -> "ScenarioBuilder":
        try:
            self._executor = ExecutorKind(kind)
        except ValueError:
            raise InvalidConfig(f"{self._name}: unknown executor {kind!r}") from None
        return self

    def exec(self, fn: IterationFn) -> "ScenarioBuilder":
        self._exec = fn
        return self

    def constant_rate(self, rate: float, duration: float, time_unit: float = 1.0) -> "ScenarioBuilder":
        if self._executor is None:
            self._executor = ExecutorKind.CONSTANT_ARRIVAL_RATE
        self._profile = RateProfile.constant(rate, duration, time_unit)
        return self

    def ramping_rate(
        self,
        start_rate: float,
        stages: Iterable[Union[Stage, Sequence[float]]],
        time_unit: float = 1.0,
    ) -> "ScenarioBuilder":
        if self._executor is None:
            self._executor = ExecutorKind.RAMPING_ARRIVAL_RATE
        self._profile = RateProfile.ramping(start_rate, stages, time_unit)
        return self

    def pre_allocated_vus(self, count: int) -> "ScenarioBuilder":
        self._pre_allocated = count
        return self

    def max_vus(self, count: int) -> "ScenarioBuilder":
        self._max_vus = count
        return self

    def vus(self, count: int) -> "ScenarioBuilder":
        self._vus = count
        return self

    def iterations(self, count: int) -> "ScenarioBuilder":
        self._iterations = count
        return self

    def duration(self, seconds: float) -> "ScenarioBuilder":
        self._duration = seconds
        return self

    def max_duration(self, seconds: float) -> "ScenarioBuilder":
        self._max_duration = seconds
        return self

    def start_time(self, seconds: float) -> "ScenarioBuilder":
        self._start_time = seconds
        return self

    def graceful_stop(self, seconds: float) -> "ScenarioBuilder":
        self._graceful_stop = seconds
        return self

    def _fail(self, message: str):
        raise InvalidConfig(f"{self._name}: {message}")

    def build(self) -> Scenario:
        if not self._name:
            raise InvalidConfig("scenario name must not be empty")
        kind = self._executor
        if kind is None:
            self._fail("executor is required")

        fields: Dict[str, Any] = {}
        if kind.is_arrival_rate:
            if self._profile is None:
                self._fail(f"{kind.value} needs a rate profile")
            if self._duration is not None and abs(self._duration - self._profile.duration) > 1e-9:
                self._fail(
                    f"duration {self._duration}s does not match the stage total {self._profile.duration}s"
                )
            if self._vus is not None or self._iterations is not None:
                self._fail(f"{kind.value} does not take vus/iterations")
            pre_allocated = 1 if self._pre_allocated is None else self._pre_allocated
            max_vus = pre_allocated if self._max_vus is None else self._max_vus
            fields.update(profile=self._profile, pre_allocated_vus=pre_allocated, max_vus=max_vus)
        else:
            if self._pre_allocated is not None or self._max_vus is not None:
                self._fail(f"{kind.value} does not take preAllocatedVUs/maxVUs")
            fields["profile"] = self._profile
            fields["vus"] = 1 if self._vus is None else self._vus
            if kind is ExecutorKind.CONSTANT_VUS:
                if self._iterations is not None:
                    self._fail("constant-vus does not take iterations")
                fields["duration"] = self._duration or 0.0
            else:
                if self._duration is not None:
                    self._fail(f"{kind.value} takes maxDuration, not duration")
                fields["iterations"] = 1 if self._iterations is None else self._iterations
                fields["max_duration"] = self._max_duration

        scenario = Scenario(
            name=self._name,
            executor=kind,
            exec=self._exec,
            start_time=self._start_time,
            graceful_stop=self._graceful_stop,
            **fields,
        )
        scenario.validate()
        return scenario


# =============================================================================
# ITERATION SURFACE
# =============================================================================

class ScenarioClient:
    """
    HTTP access for iteration bodies: resolves paths against the base URL,
    turns transport errors into status-0 results, evaluates checks on
    responses and records every request under the scenario's name.
    """

    def __init__(
        self,
        scenario: str,
        executor: HttpExecutor,
        collector: MetricsCollector,
        base_url: str = "",
    ):
        self.scenario = scenario
        self.executor = executor
        self.collector = collector
        self.base_url = base_url.rstrip("/")

    def url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _evaluate(self, result: RequestResult, checks: Mapping[str, Check]) -> List[str]:
        failed = []
        for name, predicate in checks.items():
            try:
                passed = bool(predicate(result))
            except Exception:
                # a predicate that blows up (e.g. on a non-JSON body) is a failed check
                passed = False
            self.collector.record_check(self.scenario, name, passed)
            if not passed:
                failed.append(name)
        return failed

    def check(self, result: RequestResult, checks: Mapping[str, Check], fatal: bool = False) -> bool:
        """Evaluate named checks against a result. Fatal checks raise CheckFailed."""
        failed = self._evaluate(result, checks)
        if failed and fatal:
            raise CheckFailed(failed, self.scenario)
        return not failed

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        checks: Optional[Mapping[str, Check]] = None,
        fatal: bool = False,
        timeout: Optional[float] = None,
    ) -> RequestResult:
        url = self.url(path)
        try:
            result = await self.executor.execute(method, url, headers=headers, json=json, timeout=timeout)
        except TransportError as e:
            # no response, so checks are not evaluated
            result = RequestResult.from_transport_error(method.upper(), url, e)
            self.collector.record(self.scenario, result, False)
            if fatal:
                raise
            return result

        failed = self._evaluate(result, checks) if checks else []
        self.collector.record(self.scenario, result, not failed)
        if failed and fatal:
            raise CheckFailed(failed, self.scenario)
        return result

    async def get(self, path: str, **kwargs) -> RequestResult:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs) -> RequestResult:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs) -> RequestResult:
        return await self.request("PUT", path, **kwargs)

    async def delete(self, path: str, **kwargs) -> RequestResult:
        return await self.request("DELETE", path, **kwargs)


@dataclass(frozen=True)
class IterationContext:
    """Everything an iteration body may use; there is no ambient state."""
    scenario: str
    data: SetupContext
    vu: VirtualUser
    iteration: int
    tick: Optional[Tick]
    http: ScenarioClient


@dataclass(frozen=True)
class ScenarioSummary:
    name: str
    executor: str
    state: str
    duration_s: float
    vus_allocated: int
    vus_max: int
    peak_busy_vus: int
    stopped_early: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executor": self.executor,
            "state": self.state,
            "duration_seconds": round(self.duration_s, 2),
            "vus_allocated": self.vus_allocated,
            "vus_max": self.vus_max,
            "peak_busy_vus": self.peak_busy_vus,
            "stopped_early": self.stopped_early,
        }


# =============================================================================
# RUNNER
# =============================================================================

class ScenarioRunner:
    """Drives one scenario: PENDING -> RUNNING -> DRAINING -> COMPLETED."""

    def __init__(
        self,
        scenario: Scenario,
        executor: HttpExecutor,
        collector: MetricsCollector,
        base_url: str = "",
    ):
        self.scenario = scenario
        self.collector = collector
        self.client = ScenarioClient(scenario.name, executor, collector, base_url)
        self.scheduler = RateScheduler(scenario.profile) if scenario.profile else None
        if scenario.executor.is_arrival_rate:
            self.pool = VirtualUserPool(scenario.name, scenario.pre_allocated_vus, scenario.max_vus)
        else:
            self.pool = VirtualUserPool(scenario.name, scenario.vus, scenario.vus)
        self.state = RunnerState.PENDING
        self.stopped_early = False
        self._stop_event = asyncio.Event()
        self._inflight: Set[asyncio.Task] = set()
        self._iteration_numbers = itertools.count()
        self._started = 0.0
        self._ended = 0.0

    @property
    def name(self) -> str:
        return self.scenario.name

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def stop(self) -> None:
        """Stop dispatching new iterations; in-flight ones drain."""
        if self.state is not RunnerState.COMPLETED and not self._stop_event.is_set():
            self.stopped_early = True
            self._stop_event.set()

    async def _sleep_or_stop(self, delay: float) -> bool:
        """Sleep for `delay` seconds. Returns True if stopped meanwhile."""
        if delay <= 0:
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    def _set_state(self, state: RunnerState) -> None:
        self.state = state
        logger.info("Scenario %s: %s", self.name, state.value)

    async def run(self, data: SetupContext) -> ScenarioSummary:
        if self.state is not RunnerState.PENDING:
            raise RuntimeError(f"scenario {self.name} already ran")

        self._started = time.monotonic()
        try:
            if self.scenario.start_time and await self._sleep_or_stop(self.scenario.start_time):
                return self._finish()
            self._set_state(RunnerState.RUNNING)
            if self.scenario.executor.is_arrival_rate:
                await self._run_arrival_rate(data)
            else:
                await self._run_vu_workers(data)
        finally:
            if self.state is RunnerState.RUNNING:
                self._set_state(RunnerState.DRAINING)
                await self._drain()
        return self._finish()

    def _finish(self) -> ScenarioSummary:
        self.pool.close()
        self._ended = time.monotonic()
        self._set_state(RunnerState.COMPLETED)
        return ScenarioSummary(
            name=self.name,
            executor=self.scenario.executor.value,
            state=self.state.value,
            duration_s=self._ended - self._started,
            vus_allocated=self.pool.allocated,
            vus_max=self.scenario.vu_capacity,
            peak_busy_vus=self.pool.peak_busy,
            stopped_early=self.stopped_early,
        )

    async def _run_arrival_rate(self, data: SetupContext) -> None:
        loop = asyncio.get_running_loop()
        start = loop.time()
        end = start + self.scheduler.duration

        for tick in self.scheduler.ticks():
            if self._stop_event.is_set():
                return
            delay = start + tick.offset - loop.time()
            if delay > 0:
                if await self._sleep_or_stop(delay):
                    return
            elif delay < -OVERSHOOT_TOLERANCE:
                self.collector.record_overshoot(self.name, -delay * 1000)
            if loop.time() >= end:
                return

            vu = self.pool.acquire()
            if vu is None:
                self.collector.record_iteration(self.name, IterationOutcome.DROPPED)
                logger.debug("%s: no free VU for tick %d, iteration dropped", self.name, tick.index)
                continue
            task = asyncio.create_task(self._dispatch(vu, data, tick))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _dispatch(self, vu: VirtualUser, data: SetupContext, tick: Tick) -> None:
        try:
            await self._execute(vu, data, tick)
        finally:
            self.pool.release(vu)

    async def _run_vu_workers(self, data: SetupContext) -> None:
        budget = None
        if self.scenario.executor is ExecutorKind.SHARED_ITERATIONS:
            budget = SharedIterations(self.scenario.iterations)

        workers = []
        for _ in range(self.scenario.vus):
            vu = self.pool.acquire()
            task = asyncio.create_task(self._vu_loop(vu, data, budget))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            workers.append(task)

        stopped = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait(
                [asyncio.gather(*workers, return_exceptions=True), stopped],
                timeout=self.scenario.run_time,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stopped.cancel()
        if any(not w.done() for w in workers):
            # duration or maxDuration elapsed: let current iterations finish
            self._stop_event.set()

    async def _vu_loop(self, vu: VirtualUser, data: SetupContext, budget: Optional[SharedIterations]) -> None:
        kind = self.scenario.executor
        try:
            while not self._stop_event.is_set():
                if budget is not None:
                    if budget.take() is None:
                        return
                elif kind is ExecutorKind.PER_VU_ITERATIONS and vu.iterations >= self.scenario.iterations:
                    return
                await self._execute(vu, data, None)
        finally:
            self.pool.release(vu)

    async def _execute(self, vu: VirtualUser, data: SetupContext, tick: Optional[Tick]) -> None:
        iteration = next(self._iteration_numbers)
        ctx = IterationContext(
            scenario=self.name,
            data=data,
            vu=vu,
            iteration=iteration,
            tick=tick,
            http=self.client,
        )
        outcome = IterationOutcome.COMPLETED
        try:
            await self.scenario.exec(ctx)
        except asyncio.CancelledError:
            outcome = IterationOutcome.INTERRUPTED
            raise
        except (CheckFailed, TransportError) as e:
            outcome = IterationOutcome.FAILED
            logger.debug("%s: iteration %d: %s", self.name, iteration, e)
        except Exception as e:
            outcome = IterationOutcome.FAILED
            logger.warning("%s: iteration %d raised %s: %s", self.name, iteration, type(e).__name__, e)
        finally:
            vu.iterations += 1
            self.collector.record_iteration(self.name, outcome)

    async def _drain(self) -> None:
        pending = set(self._inflight)
        if not pending:
            return
        _, pending = await asyncio.wait(pending, timeout=self.scenario.graceful_stop)
        if pending:
            logger.warning(
                "%s: %d iteration(s) still running after gracefulStop of %.1fs, interrupting",
                self.name, len(pending), self.scenario.graceful_stop,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
