"""Progress aggregation: normalized per-stage events and a tqdm display."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from tqdm import tqdm


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    units_completed: int
    units_total: Optional[int]
    rate: Optional[float] = None
    final: bool = False


ProgressSink = Callable[[ProgressEvent], None]


def compute_rate(units_completed: int, elapsed_seconds: float) -> Optional[float]:
    if elapsed_seconds <= 0:
        return None
    return units_completed / elapsed_seconds


def normalize(
    stage: str,
    units_completed: int,
    units_total: Optional[int],
    elapsed_seconds: float,
) -> ProgressEvent:
    """Turn a raw counter into an event, clamped to a known total."""
    completed = max(units_completed, 0)
    if units_total is not None:
        completed = min(completed, units_total)
    return ProgressEvent(
        stage=stage,
        units_completed=completed,
        units_total=units_total,
        rate=compute_rate(completed, elapsed_seconds),
    )


def terminal(
    stage: str,
    units_completed: int,
    units_total: Optional[int],
    elapsed_seconds: float,
) -> ProgressEvent:
    """Closing event: completed equals total, adopting the count when the total is unknown."""
    total = units_total if units_total is not None else max(units_completed, 0)
    return ProgressEvent(
        stage=stage,
        units_completed=total,
        units_total=total,
        rate=compute_rate(total, elapsed_seconds),
        final=True,
    )


class StageProgress:
    """
    Reporting scope for one pipeline stage.

    Entering emits a reset event, `update`/`advance` emit forward progress,
    and leaving without an exception emits the terminal event. A stage that
    raises never emits a terminal event.
    """

    def __init__(
        self,
        stage: str,
        total: Optional[int],
        sink: Optional[ProgressSink] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stage = stage
        self.total = total
        self.completed = 0
        self.closed = False
        self._sink = sink
        self._clock = clock
        self._started_at = 0.0

    def __enter__(self) -> "StageProgress":
        self._started_at = self._clock()
        self._emit(ProgressEvent(self.stage, 0, self.total, rate=None))
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started_at

    def update(self, units_completed: int) -> None:
        # Counters from tools only move forward.
        if units_completed <= self.completed:
            return
        event = normalize(self.stage, units_completed, self.total, self.elapsed)
        self.completed = event.units_completed
        self._emit(event)

    def advance(self, units: int = 1) -> None:
        self.update(self.completed + units)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        event = terminal(self.stage, self.completed, self.total, self.elapsed)
        self.completed = event.units_completed
        self._emit(event)

    def _emit(self, event: ProgressEvent) -> None:
        if self._sink is not None:
            self._sink(event)


class TqdmProgressDisplay:
    """Render stage events as one tqdm bar per stage."""

    BAR_FORMAT = "{desc} |{bar}| {percentage:3.0f}% | ETA: {remaining} | {n_fmt}/{total_fmt}{postfix}"
    UNKNOWN_TOTAL_FORMAT = "{desc} | {n_fmt} frames | {elapsed}{postfix}"

    def __init__(self, labels: Optional[dict[str, str]] = None, *, disable: Optional[bool] = False) -> None:
        self._labels = labels or {}
        self._disable = disable
        self._stage: Optional[str] = None
        self._bar: Optional[tqdm] = None

    def __call__(self, event: ProgressEvent) -> None:
        if event.stage != self._stage:
            self.close()
            self._open(event)

        assert self._bar is not None
        if event.final and self._bar.total is None:
            self._bar.total = event.units_total
        self._bar.n = event.units_completed
        if event.rate is not None:
            self._bar.set_postfix_str(f"FPS: {event.rate:.2f}", refresh=False)
        self._bar.refresh()

        if event.final:
            self.close()

    def _open(self, event: ProgressEvent) -> None:
        label = self._labels.get(event.stage, event.stage)
        bar_format = self.BAR_FORMAT if event.units_total is not None else self.UNKNOWN_TOTAL_FORMAT
        self._stage = event.stage
        self._bar = tqdm(
            total=event.units_total,
            desc=f"{label:<17}",
            bar_format=bar_format,
            ascii=" ░█",
            dynamic_ncols=True,
            disable=self._disable,
        )

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
        self._bar = None
        self._stage = None
