"""
Test Orchestrator

Repeats timed tests for a direction and aggregates the results.

Run shape:
- down / up: one test per iteration
- both: download then upload per iteration, two independent series
- 500 ms pause between iterations, none after the last
- The first failure stops the run; earlier results are kept
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Callable, Dict

from rich.console import Console
from rich.table import Table

from .errors import SpeedTestError
from .transfer import (
    TestRunner, TestResult,
    DIRECTION_DOWN, DIRECTION_UP, DIRECTION_BOTH, DIRECTIONS,
)

logger = logging.getLogger(__name__)

ITERATION_PAUSE = 0.5  # seconds


def calculate_average(speeds: List[float]) -> float:
    """Arithmetic mean, 0.0 for an empty series."""
    if not speeds:
        return 0.0
    return sum(speeds) / len(speeds)


@dataclass
class DirectionReport:
    """All results for one direction."""
    direction: str
    results: List[TestResult] = field(default_factory=list)

    @property
    def speeds(self) -> List[float]:
        return [r.throughput_mbps for r in self.results]

    @property
    def average_mbps(self) -> float:
        return calculate_average(self.speeds)

    @property
    def total_elapsed(self) -> float:
        return sum(r.elapsed for r in self.results)


@dataclass
class RunReport:
    """Outcome of an orchestrated run."""
    direction: str
    size_mb: int
    count: int
    reports: Dict[str, DirectionReport] = field(default_factory=dict)
    error: Optional[str] = None
    wall_time: float = 0.0  # includes pauses

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def total_elapsed(self) -> float:
        """Sum of all test durations, pauses excluded."""
        return sum(r.total_elapsed for r in self.reports.values())

    def averages(self) -> Dict[str, float]:
        return {d: r.average_mbps for d, r in self.reports.items()}

    def to_dict(self) -> dict:
        return {
            'direction': self.direction,
            'size_mb': self.size_mb,
            'count': self.count,
            'ok': self.ok,
            'error': self.error,
            'total_elapsed': self.total_elapsed,
            'wall_time': self.wall_time,
            'results': {
                d: {
                    'average_mbps': r.average_mbps,
                    'runs': [res.to_dict() for res in r.results],
                }
                for d, r in self.reports.items()
            },
        }


# Called after every completed iteration with (iteration, {direction: result})
IterationCallback = Callable[[int, Dict[str, TestResult]], None]


class TestOrchestrator:
    """
    Drives a TestRunner through ``count`` iterations.

    Failures never escape run(); they end the run and are recorded on
    the returned report.
    """
    __test__ = False

    def __init__(self, runner: TestRunner, direction: str = DIRECTION_BOTH,
                 size_mb: int = 100, count: int = 1,
                 pause: float = ITERATION_PAUSE,
                 sleep: Callable = asyncio.sleep):
        if direction not in DIRECTIONS:
            raise ValueError(f"invalid direction '{direction}', must be 'down', 'up', or 'both'")
        if size_mb < 1:
            raise ValueError(f"size must be at least 1 MB, got {size_mb}")
        if count < 1:
            raise ValueError(f"count must be at least 1, got {count}")

        self.runner = runner
        self.direction = direction
        self.size_mb = size_mb
        self.count = count
        self.pause = pause
        self._sleep = sleep

    def _directions(self) -> List[str]:
        if self.direction == DIRECTION_BOTH:
            return [DIRECTION_DOWN, DIRECTION_UP]
        return [self.direction]

    async def _run_one(self, direction: str) -> TestResult:
        if direction == DIRECTION_DOWN:
            return await self.runner.run_download(self.size_mb)
        return await self.runner.run_upload(self.size_mb)

    async def run(self, on_iteration: IterationCallback = None) -> RunReport:
        """
        Run every iteration.

        Args:
            on_iteration: Optional callback for per-iteration output

        Returns:
            RunReport (check ``ok`` / ``error`` for an aborted run)
        """
        directions = self._directions()
        report = RunReport(
            direction=self.direction,
            size_mb=self.size_mb,
            count=self.count,
            reports={d: DirectionReport(direction=d) for d in directions},
        )

        logger.info(f"Running {self.count} x {self.direction} test(s) of {self.size_mb} MB")
        started = time.perf_counter()

        try:
            for i in range(self.count):
                iteration: Dict[str, TestResult] = {}

                for direction in directions:
                    try:
                        result = await self._run_one(direction)
                    except SpeedTestError as e:
                        name = "download" if direction == DIRECTION_DOWN else "upload"
                        report.error = f"{name} test {i + 1}: {e}"
                        logger.error(f"Aborting run: {report.error}")
                        return report

                    report.reports[direction].results.append(result)
                    iteration[direction] = result

                if on_iteration:
                    on_iteration(i, iteration)

                if i < self.count - 1:
                    await self._sleep(self.pause)
        finally:
            report.wall_time = time.perf_counter() - started

        return report


# === Rendering ===

def _direction_header(direction: str) -> List[str]:
    if direction == DIRECTION_BOTH:
        return [DIRECTION_DOWN, DIRECTION_UP]
    return [direction]


def make_results_table(direction: str) -> Table:
    """Empty results table with one Mbps column per direction."""
    table = Table(title="Speed Test (Mbps)")
    table.add_column("#", justify="right", style="dim")
    for name in _direction_header(direction):
        table.add_column(name, justify="right", style="cyan")
    return table


def render_iteration(console: Console, direction: str, index: int,
                     results: Dict[str, TestResult]):
    """Print one iteration as a line of Mbps figures."""
    cells = [f"{results[d].throughput_mbps:8.1f}" for d in _direction_header(direction)]
    console.print(f"[dim]{index + 1:>3}[/dim]  " + " | ".join(cells) + "  Mbps")


def render_report(console: Console, report: RunReport):
    """Print the final table: every run, the averages and total time."""
    table = make_results_table(report.direction)
    directions = _direction_header(report.direction)

    rows = max((len(r.results) for r in report.reports.values()), default=0)
    for i in range(rows):
        cells = []
        for d in directions:
            results = report.reports[d].results
            cells.append(f"{results[i].throughput_mbps:.1f}" if i < len(results) else "-")
        table.add_row(str(i + 1), *cells)

    if report.ok:
        table.add_section()
        table.add_row("Avg", *[f"{report.reports[d].average_mbps:.1f}" for d in directions],
                      style="bold green")

    console.print(table)

    if report.ok:
        console.print(f"Total time: {report.total_elapsed:.2f} seconds")
    else:
        console.print(f"[red]ERROR: {report.error}[/red]")
