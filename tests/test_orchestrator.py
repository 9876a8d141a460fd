"""
Tests for the setup stage, abort condition, thresholds and full runs.
"""
import asyncio
import json

import pytest

from http_executor import RequestResult
from load_errors import CheckFailed, InvalidConfig, SetupFailed, TransportErrorKind
from load_metrics import MetricsCollector
from orchestrator import (
    AbortCondition,
    Orchestrator,
    SetupStage,
    Thresholds,
    freeze,
    render_report,
)
from rate_scheduler import RateProfile
from scenario_runner import ExecutorKind, Scenario


async def noop(ctx):
    pass


def ok(latency=10.0):
    return RequestResult("GET", "http://x/", 200, latency)


def transport():
    return RequestResult("GET", "http://x/", 0, 1.0, transport_error=TransportErrorKind.TIMEOUT)


def per_vu(name, fn=noop, vus=1, iterations=1):
    return Scenario.builder(name).executor("per-vu-iterations").vus(vus).iterations(iterations).exec(fn).build()


# =============================================================================
# SETUP STAGE
# =============================================================================

def test_freeze_is_deep():
    frozen = freeze({"ids": [1, 2], "nested": {"tags": {"a"}}})
    assert frozen["ids"] == (1, 2)
    assert frozen["nested"]["tags"] == frozenset({"a"})
    with pytest.raises(TypeError):
        frozen["ids"] = []
    with pytest.raises(TypeError):
        frozen["nested"]["x"] = 1


@pytest.mark.asyncio
async def test_setup_runs_once_and_freezes():
    calls = []

    async def setup(client):
        calls.append(client)
        return {"author_ids": ["a", "b"]}

    stage = SetupStage(setup)
    data = await stage.run(client=None)
    assert data["author_ids"] == ("a", "b")
    assert len(calls) == 1
    with pytest.raises(RuntimeError):
        await stage.run(client=None)


@pytest.mark.asyncio
async def test_setup_none_result_is_empty():
    async def setup(client):
        return None

    assert dict(await SetupStage(setup).run(client=None)) == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [RuntimeError("db down"), CheckFailed(["seed author created"]), KeyError("id")])
async def test_setup_errors_become_setup_failed(error):
    async def setup(client):
        raise error

    with pytest.raises(SetupFailed) as exc_info:
        await SetupStage(setup).run(client=None)
    assert exc_info.value.__cause__ is error


@pytest.mark.asyncio
async def test_setup_must_return_mapping():
    async def setup(client):
        return ["not", "a", "mapping"]

    with pytest.raises(SetupFailed):
        await SetupStage(setup).run(client=None)


@pytest.mark.asyncio
async def test_teardown_failure_is_not_fatal():
    async def teardown(client, data):
        raise RuntimeError("cleanup failed")

    assert await SetupStage(teardown=teardown).teardown(None, {}) is False


# =============================================================================
# STOP CONDITIONS AND PASS CRITERIA
# =============================================================================

class TestAbortCondition:
    @pytest.mark.parametrize("kwargs", [
        {"max_failure_ratio": 1.5},
        {"max_failure_ratio": 0.5, "window": 0},
        {"max_failure_ratio": 0.5, "check_interval": 0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(InvalidConfig):
            AbortCondition(**kwargs)

    def test_needs_full_window(self):
        collector = MetricsCollector(trailing_window=10)
        condition = AbortCondition(0.5, window=10)
        for _ in range(9):
            collector.record("a", transport())
        assert condition.evaluate(collector) is None
        collector.record("a", ok())
        assert "exceeds" in condition.evaluate(collector)


class TestThresholds:
    def test_pass_and_fail(self):
        collector = MetricsCollector()
        for _ in range(9):
            collector.record("a", ok(latency=50))
        collector.record("a", transport())
        stats = collector.snapshot().total

        assert Thresholds(max_failure_rate=0.2, max_p95_ms=100).evaluate(stats) == []
        failures = Thresholds(max_failure_rate=0.05, max_p99_ms=10).evaluate(stats)
        assert len(failures) == 2
        assert failures[0].startswith("Failure rate")


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class TestValidate:
    def test_empty(self):
        with pytest.raises(InvalidConfig):
            Orchestrator([]).validate()

    def test_duplicate_names(self):
        with pytest.raises(InvalidConfig, match="duplicate"):
            Orchestrator([per_vu("a"), per_vu("a")]).validate()

    def test_reserved_name(self):
        with pytest.raises(InvalidConfig, match="reserved"):
            Orchestrator([per_vu("setup")]).validate()

    def test_not_a_scenario(self):
        with pytest.raises(InvalidConfig):
            Orchestrator([{"executor": "per-vu-iterations"}]).validate()

    @pytest.mark.parametrize("scenario", [
        Scenario("pv", ExecutorKind.PER_VU_ITERATIONS, noop),
        Scenario("car", ExecutorKind.CONSTANT_ARRIVAL_RATE, noop, profile=RateProfile.constant(5, 1), max_vus=0),
        Scenario("rar", ExecutorKind.RAMPING_ARRIVAL_RATE, noop, max_vus=5),
        Scenario("cv", ExecutorKind.CONSTANT_VUS, noop, vus=2),
        Scenario("late", ExecutorKind.PER_VU_ITERATIONS, noop, vus=1, iterations=1, start_time=-1),
    ])
    def test_directly_built_scenario_fields(self, scenario):
        with pytest.raises(InvalidConfig, match=scenario.name):
            Orchestrator([scenario]).validate()


@pytest.mark.asyncio
async def test_invalid_scenario_stops_before_setup(library_server, executor):
    calls = []

    async def setup(client):
        calls.append(client)
        await client.post("/v1/library/author", json={"name": "Seed"})

    orchestrator = Orchestrator(
        [per_vu("reads"), Scenario("pv", ExecutorKind.PER_VU_ITERATIONS, noop)],
        SetupStage(setup),
        base_url=library_server.base_url,
        executor=executor,
    )
    with pytest.raises(InvalidConfig, match="vus must be >= 1"):
        await orchestrator.run()
    assert calls == []
    assert not library_server.hits
    assert orchestrator.collector.snapshot().total.requests == 0


@pytest.mark.asyncio
async def test_setup_failure_stops_before_traffic(library_server, executor):
    async def setup(client):
        await client.get("/v1/library/book/nope", checks={"found": lambda r: r.ok}, fatal=True)

    hits = []

    async def body(ctx):
        hits.append(ctx.iteration)

    orchestrator = Orchestrator(
        [per_vu("reads", body)],
        SetupStage(setup),
        base_url=library_server.base_url,
        executor=executor,
    )
    with pytest.raises(SetupFailed):
        await orchestrator.run()
    assert hits == []
    assert orchestrator.collector.snapshot().scenarios["setup"].requests == 1


@pytest.mark.asyncio
async def test_end_to_end_constant_rate(library_server, executor):
    library_server.delay = 0.05

    async def setup(client):
        result = await client.post("/v1/library/author", json={"name": "Seed"}, checks={"ok": lambda r: r.ok}, fatal=True)
        return {"author_ids": [result.json()["id"]]}

    async def add_book(ctx):
        await ctx.http.post(
            "/v1/library/book",
            json={"name": f"b{ctx.iteration}", "author_ids": list(ctx.data["author_ids"])},
            checks={"book added": lambda r: r.status == 200},
        )

    scenario = (
        Scenario.builder("add_book")
        .constant_rate(8, 5)
        .pre_allocated_vus(2)
        .max_vus(20)
        .exec(add_book)
        .build()
    )
    report = await Orchestrator(
        [scenario],
        SetupStage(setup),
        base_url=library_server.base_url,
        executor=executor,
        thresholds=Thresholds(max_failure_rate=0.01),
    ).run()

    stats = report.metrics.scenarios["add_book"]
    assert 39 <= stats.requests <= 41
    assert stats.dropped == 0
    assert stats.transport_failures == 0
    assert dict(stats.checks)["book added"][1] == 0
    assert report.passed
    assert len(library_server.books) == stats.requests
    assert report.scenarios["add_book"].vus_allocated <= 20
    assert 4.5 <= report.duration_s < 8


@pytest.mark.asyncio
async def test_scenarios_run_concurrently(library_server, executor):
    async def slow(ctx):
        await asyncio.sleep(0.3)

    report = await Orchestrator(
        [per_vu("a", slow), per_vu("b", slow), per_vu("c", slow)],
        base_url=library_server.base_url,
        executor=executor,
    ).run()
    assert report.duration_s < 0.8
    assert set(report.scenarios) == {"a", "b", "c"}


@pytest.mark.asyncio
async def test_abort_condition_stops_run(library_server, executor):
    library_server.force_status = 500

    async def get_author(ctx):
        await ctx.http.get("/v1/library/author/x", checks={"status 200": lambda r: r.status == 200})

    scenario = (
        Scenario.builder("authors")
        .executor("constant-vus")
        .vus(5)
        .duration(30)
        .exec(get_author)
        .build()
    )
    orchestrator = Orchestrator(
        [scenario],
        base_url=library_server.base_url,
        executor=executor,
        abort=AbortCondition(0.5, window=20, check_interval=0.1),
    )
    report = await asyncio.wait_for(orchestrator.run(), timeout=10)

    assert report.aborted
    assert "failure ratio" in report.abort_reason
    assert not report.passed
    assert report.scenarios["authors"].stopped_early
    assert report.duration_s < 5


@pytest.mark.asyncio
async def test_duration_cap(library_server, executor):
    async def body(ctx):
        await asyncio.sleep(0.05)

    scenario = Scenario.builder("long").executor("constant-vus").vus(2).duration(60).exec(body).build()
    report = await Orchestrator(
        [scenario], base_url=library_server.base_url, executor=executor, duration=0.5
    ).run()
    assert not report.aborted
    assert report.passed
    assert report.duration_s < 3


@pytest.mark.asyncio
async def test_report_outputs(library_server, executor, tmp_path):
    async def body(ctx):
        await ctx.http.post("/v1/library/author", json={"name": "x"})

    report = await Orchestrator(
        [per_vu("authors", body, vus=2, iterations=3)],
        base_url=library_server.base_url,
        executor=executor,
    ).run()

    path = tmp_path / "report.json"
    report.write_json(str(path))
    data = json.loads(path.read_text())
    assert data["passed"] is True
    assert data["total"]["requests"] == 6
    assert data["scenarios"]["authors"]["executor"] == "per-vu-iterations"
    assert data["scenarios"]["authors"]["iterations"] == {"completed": 6}

    from rich.console import Console

    console = Console(record=True, width=160)
    render_report(report, console=console)
    text = console.export_text()
    assert "authors" in text
    assert "PASSED" in text


@pytest.mark.asyncio
async def test_owned_executor_is_closed(library_server):
    orchestrator = Orchestrator([per_vu("a")], base_url=library_server.base_url)
    await orchestrator.run()
    assert not orchestrator.executor.is_open
