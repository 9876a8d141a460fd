"""
Test-run orchestration: setup, concurrent scenarios, abort, report.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from http_executor import HttpExecutor
from load_config import console as default_console
from load_errors import InvalidConfig, SetupFailed
from load_metrics import MetricsCollector, MetricsSnapshot, StatsSnapshot
from scenario_runner import Scenario, ScenarioClient, ScenarioRunner, ScenarioSummary, SetupContext

logger = logging.getLogger(__name__)

SETUP_SCENARIO = "setup"
TEARDOWN_SCENARIO = "teardown"

SetupFn = Callable[[ScenarioClient], Awaitable[Optional[Mapping[str, Any]]]]
TeardownFn = Callable[[ScenarioClient, SetupContext], Awaitable[None]]


def freeze(value: Any) -> Any:
    """Deep read-only copy: mappings become MappingProxyType, sequences tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(item) for item in value)
    return value


# =============================================================================
# SETUP STAGE
# =============================================================================

class SetupStage:
    """
    Runs once before any scenario. Whatever it returns becomes the read-only
    SetupContext shared by every iteration; any exception aborts the run.
    """

    def __init__(self, setup: Optional[SetupFn] = None, teardown: Optional[TeardownFn] = None):
        self._setup = setup
        self._teardown = teardown
        self._ran = False

    async def run(self, client: ScenarioClient) -> SetupContext:
        if self._ran:
            raise RuntimeError("setup stage already ran")
        self._ran = True
        if self._setup is None:
            return MappingProxyType({})

        try:
            data = await self._setup(client)
        except Exception as e:
            raise SetupFailed(f"setup failed: {type(e).__name__}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise SetupFailed(f"setup must return a mapping, got {type(data).__name__}")
        return freeze(data)

    async def teardown(self, client: ScenarioClient, data: SetupContext) -> bool:
        """Run the teardown hook. Failures are logged, never raised."""
        if self._teardown is None:
            return True
        try:
            await self._teardown(client, data)
        except Exception as e:
            logger.warning("Teardown failed: %s: %s", type(e).__name__, e)
            return False
        return True


# =============================================================================
# STOP CONDITIONS AND PASS CRITERIA
# =============================================================================

@dataclass(frozen=True)
class AbortCondition:
    """Abort when the failure ratio over the last `window` requests exceeds the limit."""
    max_failure_ratio: float
    window: int = 100
    check_interval: float = 1.0

    def __post_init__(self):
        if not 0 <= self.max_failure_ratio <= 1:
            raise InvalidConfig(f"max_failure_ratio must be within [0, 1], got {self.max_failure_ratio}")
        if self.window < 1:
            raise InvalidConfig(f"abort window must be >= 1, got {self.window}")
        if self.check_interval <= 0:
            raise InvalidConfig(f"check interval must be positive, got {self.check_interval}")

    def evaluate(self, collector: MetricsCollector) -> Optional[str]:
        ratio, count = collector.trailing_failure_ratio()
        if count >= self.window and ratio > self.max_failure_ratio:
            return (
                f"failure ratio {ratio:.1%} over the last {count} requests "
                f"exceeds {self.max_failure_ratio:.1%}"
            )
        return None


@dataclass(frozen=True)
class Thresholds:
    """Pass criteria evaluated on the global statistics at the end of a run."""
    max_failure_rate: Optional[float] = None
    max_p95_ms: Optional[float] = None
    max_p99_ms: Optional[float] = None
    min_check_pass_rate: Optional[float] = None
    max_drop_rate: Optional[float] = None

    def evaluate(self, stats: StatsSnapshot) -> List[str]:
        failures = []
        if self.max_failure_rate is not None and stats.failure_rate > self.max_failure_rate:
            failures.append(
                f"Failure rate {stats.failure_rate:.2%} exceeds max {self.max_failure_rate:.2%}"
            )
        if self.max_p95_ms is not None and stats.latency.p95 > self.max_p95_ms:
            failures.append(f"P95 latency {stats.latency.p95:.2f}ms exceeds max {self.max_p95_ms}ms")
        if self.max_p99_ms is not None and stats.latency.p99 > self.max_p99_ms:
            failures.append(f"P99 latency {stats.latency.p99:.2f}ms exceeds max {self.max_p99_ms}ms")
        if self.min_check_pass_rate is not None and stats.check_pass_rate < self.min_check_pass_rate:
            failures.append(
                f"Check pass rate {stats.check_pass_rate:.2%} below min {self.min_check_pass_rate:.2%}"
            )
        if self.max_drop_rate is not None and stats.drop_rate > self.max_drop_rate:
            failures.append(f"Drop rate {stats.drop_rate:.2%} exceeds max {self.max_drop_rate:.2%}")
        return failures


# =============================================================================
# REPORT
# =============================================================================

@dataclass(frozen=True)
class RunReport:
    started_at: datetime
    duration_s: float
    base_url: str
    scenarios: Mapping[str, ScenarioSummary]
    metrics: MetricsSnapshot
    aborted: bool = False
    abort_reason: Optional[str] = None
    threshold_failures: Sequence[str] = field(default_factory=tuple)

    @property
    def passed(self) -> bool:
        return not self.aborted and not self.threshold_failures

    def to_dict(self) -> Dict[str, Any]:
        metrics = self.metrics.to_dict()
        return {
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration_s, 2),
            "base_url": self.base_url,
            "passed": self.passed,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "threshold_failures": list(self.threshold_failures),
            "total": metrics["total"],
            "scenarios": {
                name: {**summary.to_dict(), **metrics["scenarios"].get(name, {})}
                for name, summary in self.scenarios.items()
            },
        }

    def write_json(self, output_path: str) -> str:
        json_str = json.dumps(self.to_dict(), indent=2)
        Path(output_path).write_text(json_str)
        return json_str


def _scenario_table(report: RunReport) -> Table:
    table = Table(title="Scenarios", expand=True)
    table.add_column("Scenario", style="cyan")
    table.add_column("Executor", style="dim")
    table.add_column("Requests", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Transport", justify="right")
    table.add_column("Checks ✗", justify="right")
    table.add_column("Dropped", justify="right")
    table.add_column("P50 ms", justify="right")
    table.add_column("P95 ms", justify="right")
    table.add_column("P99 ms", justify="right")
    table.add_column("VUs", justify="right")

    for name, summary in report.scenarios.items():
        stats = report.metrics.scenarios.get(name)
        if stats is None:
            table.add_row(name, summary.executor, "0", "-", "-", "-", "-", "-", "-", "-",
                          f"{summary.vus_allocated}/{summary.vus_max}")
            continue
        table.add_row(
            name,
            summary.executor,
            f"{stats.requests:,}",
            f"[red]{stats.failures:,}[/red]" if stats.failures else "0",
            f"{stats.transport_failures:,}",
            f"{stats.check_failures:,}",
            f"[yellow]{stats.dropped:,}[/yellow]" if stats.dropped else "0",
            f"{stats.latency.p50:.1f}",
            f"{stats.latency.p95:.1f}",
            f"{stats.latency.p99:.1f}",
            f"{summary.vus_allocated}/{summary.vus_max}",
        )
    return table


def render_report(report: RunReport, console: Optional[Console] = None) -> None:
    """Print the final report with rich."""
    out = console or default_console
    total = report.metrics.total
    lat = total.latency

    status_lines = "\n".join(
        f"  [{'green' if code < 400 else 'red'}]{code}[/]: {count:,}"
        for code, count in sorted(total.status_codes.items())
    ) or "  No responses recorded"
    transport_lines = "\n".join(
        f"  [red]{kind}[/red]: {count:,}" for kind, count in sorted(total.transport_errors.items())
    ) or "  none"
    verdict = "[green]✓ PASSED[/green]" if report.passed else "[red]✗ FAILED[/red]"
    notes = ""
    if report.aborted:
        notes += f"\n[red]Aborted:[/red] {report.abort_reason}"
    for failure in report.threshold_failures:
        notes += f"\n[red]•[/red] {failure}"

    out.print(_scenario_table(report))
    out.print(Panel(
        f"""[bold]Run Summary[/bold]

[cyan]Target:[/cyan]             {report.base_url}
[cyan]Duration:[/cyan]           {report.duration_s:.2f}s
[cyan]Total Requests:[/cyan]     {total.requests:,}
[red]Failed:[/red]             {total.failures:,} ({total.failure_rate:.2%})
[dim]Transport Errors:[/dim]   {total.transport_failures:,}
[dim]Check Failures:[/dim]     {total.check_failures:,} (pass rate {total.check_pass_rate:.2%})
[yellow]Dropped Iterations:[/yellow] {total.dropped:,}

[bold]Latency (ms):[/bold]
  Min: {lat.min:.2f}  Avg: {lat.mean:.2f}  P50: {lat.p50:.2f}  P90: {lat.p90:.2f}
  P95: {lat.p95:.2f}  P99: {lat.p99:.2f}  Max: {lat.max:.2f}

[bold]Status Codes:[/bold]
{status_lines}

[bold]Transport Errors:[/bold]
{transport_lines}

[bold]Result:[/bold] {verdict}{notes}
""",
        title="📊 Final Results",
        border_style="green" if report.passed else "red",
    ))


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class Orchestrator:
    """
    Runs a set of scenarios concurrently against one target.

    The HTTP executor and metrics collector are created on demand unless
    passed in; an injected executor that is already open is left open.
    """

    def __init__(
        self,
        scenarios: Sequence[Scenario],
        setup: Optional[SetupStage] = None,
        *,
        base_url: str = "",
        executor: Optional[HttpExecutor] = None,
        collector: Optional[MetricsCollector] = None,
        abort: Optional[AbortCondition] = None,
        thresholds: Optional[Thresholds] = None,
        duration: Optional[float] = None,
    ):
        self.scenarios = list(scenarios)
        self.setup = setup or SetupStage()
        self.base_url = base_url
        self.executor = executor or HttpExecutor()
        self.abort_condition = abort
        self.thresholds = thresholds
        self.duration = duration
        window = abort.window if abort else 100
        self.collector = collector or MetricsCollector(trailing_window=window)
        self.runners: List[ScenarioRunner] = []
        self.aborted = False
        self.abort_reason: Optional[str] = None
        self._stop_reason: Optional[str] = None

    def validate(self) -> None:
        if not self.scenarios:
            raise InvalidConfig("no scenarios configured")
        seen = set()
        for scenario in self.scenarios:
            if not isinstance(scenario, Scenario):
                raise InvalidConfig(f"not a Scenario: {scenario!r}")
            if scenario.name in (SETUP_SCENARIO, TEARDOWN_SCENARIO):
                raise InvalidConfig(f"scenario name {scenario.name!r} is reserved")
            if scenario.name in seen:
                raise InvalidConfig(f"duplicate scenario name: {scenario.name!r}")
            scenario.validate()
            seen.add(scenario.name)
        if self.duration is not None and self.duration <= 0:
            raise InvalidConfig(f"test duration must be positive, got {self.duration}")
        if self.collector.trailing_window < (self.abort_condition.window if self.abort_condition else 0):
            raise InvalidConfig("collector trailing window is smaller than the abort window")

    def _client(self, name: str) -> ScenarioClient:
        return ScenarioClient(name, self.executor, self.collector, self.base_url)

    def abort(self, reason: str) -> None:
        """Stop every scenario early and mark the run as aborted."""
        if not self.aborted:
            self.aborted = True
            self.abort_reason = reason
            logger.warning("Aborting run: %s", reason)
        self._stop_all()

    def stop(self, reason: str) -> None:
        """Stop every scenario early without failing the run."""
        if self._stop_reason is None:
            self._stop_reason = reason
            logger.info("Stopping run: %s", reason)
        self._stop_all()

    def _stop_all(self) -> None:
        for runner in self.runners:
            runner.stop()

    async def _watch(self, started: float) -> None:
        interval = self.abort_condition.check_interval if self.abort_condition else 1.0
        deadline = started + self.duration if self.duration else None
        while True:
            now = time.monotonic()
            wait = interval if deadline is None else min(interval, max(deadline - now, 0))
            await asyncio.sleep(wait)
            if deadline is not None and time.monotonic() >= deadline:
                self.stop(f"test duration of {self.duration:.1f}s elapsed")
                return
            if self.abort_condition:
                reason = self.abort_condition.evaluate(self.collector)
                if reason:
                    self.abort(reason)
                    return

    async def run(self) -> RunReport:
        self.validate()
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()

        owns_session = not self.executor.is_open
        await self.executor.open()
        try:
            data = await self.setup.run(self._client(SETUP_SCENARIO))
            logger.info("Setup complete, starting %d scenario(s)", len(self.scenarios))

            self.runners = [
                ScenarioRunner(scenario, self.executor, self.collector, self.base_url)
                for scenario in self.scenarios
            ]
            if self.aborted or self._stop_reason:
                self._stop_all()

            watcher = None
            if self.abort_condition or self.duration:
                watcher = asyncio.create_task(self._watch(started))
            try:
                summaries = await asyncio.gather(*(runner.run(data) for runner in self.runners))
            finally:
                if watcher is not None:
                    watcher.cancel()
                    await asyncio.gather(watcher, return_exceptions=True)

            await self.setup.teardown(self._client(TEARDOWN_SCENARIO), data)
        finally:
            if owns_session:
                await self.executor.close()

        snapshot = self.collector.snapshot()
        failures = self.thresholds.evaluate(snapshot.total) if self.thresholds else []
        return RunReport(
            started_at=started_at,
            duration_s=time.monotonic() - started,
            base_url=self.base_url,
            scenarios=MappingProxyType({summary.name: summary for summary in summaries}),
            metrics=snapshot,
            aborted=self.aborted,
            abort_reason=self.abort_reason,
            threshold_failures=tuple(failures),
        )
