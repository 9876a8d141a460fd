#!/usr/bin/env python3
"""
📚 Library Service Load Test
============================
Drives the library service (authors and books) with concurrent scenarios.

Presets:
    parallel-endpoints   all six endpoints at once: arrival-rate writes,
                         iteration-count reads (default)
    add-book-smoke       10 VUs posting books for 30s, one per second each

Usage:
    BASE_URL=http://localhost:8080 library-load
    LOADGEN_PRESET=add-book-smoke LOADGEN_REPORT=report.json python library_load.py

Requirements:
    pip install aiohttp rich faker (optional: uvloop)
"""

import asyncio
import logging
import random
import signal
import sys
from typing import Any, Dict, List, Mapping, Optional

from faker import Faker
from rich.panel import Panel

from http_executor import HttpExecutor, RequestResult
from load_config import Settings, configure_logging, console
from load_errors import InvalidConfig, SetupFailed
from orchestrator import AbortCondition, Orchestrator, RunReport, SetupStage, Thresholds, render_report
from scenario_runner import IterationContext, Scenario, ScenarioClient

try:
    import uvloop
    UVLOOP_AVAILABLE = True
except ImportError:
    UVLOOP_AVAILABLE = False

logger = logging.getLogger(__name__)

fake = Faker()

SEED_AUTHORS = 20

AUTHOR_PATH = "/v1/library/author"
BOOK_PATH = "/v1/library/book"
AUTHOR_BOOKS_PATH = "/v1/library/author_books"


def _status_ok(r: RequestResult) -> bool:
    return r.status == 200


def _status_200_or_201(r: RequestResult) -> bool:
    return r.status in (200, 201)


def _has_author_id(r: RequestResult) -> bool:
    return bool(r.json().get("id"))


def _has_book_id(r: RequestResult) -> bool:
    return bool(r.json()["book"]["id"])


# =============================================================================
# SETUP
# =============================================================================

async def seed_library(client: ScenarioClient, authors: int = SEED_AUTHORS) -> Dict[str, List[str]]:
    """Create `authors` authors with one book each; any failure aborts the run."""
    author_ids = []
    for i in range(authors):
        result = await client.post(
            AUTHOR_PATH,
            json={"name": f"SeedAuthor{i}"},
            checks={"seed author created": _status_ok, "seed author has id": _has_author_id},
            fatal=True,
        )
        author_ids.append(result.json()["id"])

    book_ids = []
    for i, author_id in enumerate(author_ids):
        result = await client.post(
            BOOK_PATH,
            json={"name": f"SeedBook{i}", "author_ids": [author_id]},
            checks={"seed book created": _status_ok, "seed book has id": _has_book_id},
            fatal=True,
        )
        book_ids.append(result.json()["book"]["id"])

    logger.info("Seeded %d authors and %d books", len(author_ids), len(book_ids))
    return {"author_ids": author_ids, "book_ids": book_ids}


async def seed_smoke(client: ScenarioClient) -> Dict[str, List[str]]:
    return await seed_library(client, authors=5)


# =============================================================================
# ITERATIONS
# =============================================================================

async def register_author(ctx: IterationContext):
    await ctx.http.post(
        AUTHOR_PATH,
        json={"name": fake.name()},
        checks={"author registered": _status_ok, "author has id": _has_author_id},
    )


async def add_book(ctx: IterationContext):
    await ctx.http.post(
        BOOK_PATH,
        json={
            "name": fake.catch_phrase(),
            "author_ids": [random.choice(ctx.data["author_ids"])],
        },
        checks={"book added": _status_ok, "book has id": _has_book_id},
    )


async def update_book(ctx: IterationContext):
    await ctx.http.put(
        BOOK_PATH,
        json={
            "id": random.choice(ctx.data["book_ids"]),
            "name": f"Updated {fake.catch_phrase()}",
            "author_ids": [random.choice(ctx.data["author_ids"])],
        },
        checks={"book updated": _status_ok},
    )


async def get_book_info(ctx: IterationContext):
    book_id = random.choice(ctx.data["book_ids"])
    await ctx.http.get(f"{BOOK_PATH}/{book_id}", checks={"book found": _status_ok})


async def get_author_info(ctx: IterationContext):
    author_id = random.choice(ctx.data["author_ids"])
    await ctx.http.get(f"{AUTHOR_PATH}/{author_id}", checks={"author found": _status_ok})


async def get_author_books(ctx: IterationContext):
    author_id = random.choice(ctx.data["author_ids"])
    await ctx.http.get(f"{AUTHOR_BOOKS_PATH}/{author_id}", checks={"author books listed": _status_ok})


async def add_book_paced(ctx: IterationContext):
    """Post one book, then think for a second."""
    await ctx.http.post(
        BOOK_PATH,
        json={
            "name": f"book-{ctx.vu.id}-{ctx.vu.iterations}",
            "author_ids": [random.choice(ctx.data["author_ids"])],
        },
        checks={"status is 200 or 201": _status_200_or_201},
    )
    await asyncio.sleep(1)


ITERATIONS = {
    "register_author": register_author,
    "add_book": add_book,
    "update_book": update_book,
    "get_book_info": get_book_info,
    "get_author_info": get_author_info,
    "get_author_books": get_author_books,
    "add_book_paced": add_book_paced,
}


# =============================================================================
# PRESET CONFIGURATIONS
# =============================================================================

PRESETS: Dict[str, Dict[str, Any]] = {
    "parallel-endpoints": {
        "name": "📚 Parallel Endpoints",
        "description": "Every endpoint at once: 18 writes/s, a 2→15→0 update ramp and fixed read batches",
        "setup": seed_library,
        "scenarios": {
            "register_author": {
                "executor": "constant-arrival-rate",
                "rate": 10,
                "timeUnit": "1s",
                "duration": "2m",
                "preAllocatedVUs": 20,
                "exec": "register_author",
            },
            "add_book": {
                "executor": "constant-arrival-rate",
                "rate": 8,
                "timeUnit": "1s",
                "duration": "2m",
                "preAllocatedVUs": 20,
                "exec": "add_book",
            },
            "update_book": {
                "executor": "ramping-arrival-rate",
                "startRate": 2,
                "timeUnit": "1s",
                "stages": [
                    {"target": 15, "duration": "1m"},
                    {"target": 0, "duration": "30s"},
                ],
                "preAllocatedVUs": 25,
                "exec": "update_book",
            },
            "get_book_info": {
                "executor": "per-vu-iterations",
                "vus": 30,
                "iterations": 20,
                "exec": "get_book_info",
            },
            "get_author_info": {
                "executor": "per-vu-iterations",
                "vus": 30,
                "iterations": 20,
                "exec": "get_author_info",
            },
            "get_author_books": {
                "executor": "shared-iterations",
                "vus": 10,
                "iterations": 100,
                "exec": "get_author_books",
            },
        },
    },
    "add-book-smoke": {
        "name": "🌱 Add Book Smoke",
        "description": "10 VUs posting books for 30s with a 1s think time",
        "setup": seed_smoke,
        "scenarios": {
            "add_book_paced": {
                "executor": "constant-vus",
                "vus": 10,
                "duration": "30s",
                "exec": "add_book_paced",
            },
        },
    },
}

DEFAULT_THRESHOLDS = Thresholds(max_failure_rate=0.05, max_p99_ms=5000)
DEFAULT_ABORT = AbortCondition(max_failure_ratio=0.5, window=200)


def build_scenarios(preset_name: str, functions: Optional[Mapping[str, Any]] = None) -> List[Scenario]:
    """Turn a preset's declarative scenario options into validated Scenarios."""
    if preset_name not in PRESETS:
        raise InvalidConfig(f"unknown preset {preset_name!r}, choose from: {', '.join(PRESETS)}")
    functions = ITERATIONS if functions is None else functions
    return [
        Scenario.from_options(name, options, functions)
        for name, options in PRESETS[preset_name]["scenarios"].items()
    ]


def build_orchestrator(settings: Settings) -> Orchestrator:
    scenarios = build_scenarios(settings.preset)
    preset = PRESETS[settings.preset]
    executor = HttpExecutor(
        timeout=settings.request_timeout,
        connect_timeout=settings.connect_timeout,
        verify_ssl=settings.verify_ssl,
        max_connections=settings.max_connections,
    )
    return Orchestrator(
        scenarios,
        SetupStage(preset["setup"]),
        base_url=settings.base_url,
        executor=executor,
        abort=DEFAULT_ABORT,
        thresholds=DEFAULT_THRESHOLDS,
    )


async def run_preset(settings: Settings) -> RunReport:
    """Run the configured preset, with SIGINT/SIGTERM aborting it gracefully."""
    orchestrator = build_orchestrator(settings)
    preset = PRESETS[settings.preset]
    console.print(Panel(
        f"[bold]{preset['name']}[/bold]\n\n{preset['description']}\n\n"
        f"[cyan]Target:[/cyan] {settings.base_url}\n"
        f"[dim]uvloop: {'enabled ✓' if UVLOOP_AVAILABLE else 'not available'}[/dim]",
        title=f"Running Preset: {settings.preset}",
        border_style="blue",
    ))

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.abort, f"received {sig.name}")
            installed.append(sig)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass
    try:
        report = await orchestrator.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

    render_report(report)
    if settings.report_path:
        report.write_json(settings.report_path)
        console.print(f"[green]JSON report saved to: {settings.report_path}[/green]")
    return report


def main():
    try:
        settings = Settings.from_env()
    except InvalidConfig as e:
        console.print(Panel(str(e), title="❌ Invalid configuration", border_style="red"))
        sys.exit(2)
    configure_logging(settings.log_level)

    runner = uvloop.run if UVLOOP_AVAILABLE else asyncio.run
    try:
        report = runner(run_preset(settings))
    except (InvalidConfig, SetupFailed) as e:
        title = "❌ Invalid configuration" if isinstance(e, InvalidConfig) else "❌ Setup failed"
        console.print(Panel(str(e), title=title, border_style="red"))
        sys.exit(2)

    sys.exit(0 if report.passed else 1)


if __name__ == "__main__":
    main()
