"""Core data types for the ATQ surveillance engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterator

import numpy as np
import pandas as pd

from atq.config import SimulationConfig


METRIC_NAMES: tuple[str, ...] = ("FAR", "ADD", "AATQ", "FATQ", "WAATQ", "WFATQ")

# Metrics where a lower value is better; the rest are maximised.
MINIMISED_METRICS: frozenset[str] = frozenset({"FAR", "ADD"})


# --- Epidemic ---

@dataclass(frozen=True, eq=False)
class EpidemicRun:
    """Daily compartment counts for one simulated season."""
    year: int
    N: int
    start_day: int
    S: np.ndarray
    I: np.ndarray
    R: np.ndarray
    new_infections: np.ndarray
    new_removed: np.ndarray
    reported_cases: np.ndarray

    def __post_init__(self):
        for name in ("S", "I", "R", "new_infections", "new_removed", "reported_cases"):
            arr = getattr(self, name)
            arr.setflags(write=False)

    @property
    def T(self) -> int:
        return len(self.S)

    @property
    def has_outbreak(self) -> bool:
        return bool(self.new_infections.sum() > 0)

    @property
    def peak_day(self) -> int | None:
        if not self.has_outbreak:
            return None
        return int(np.argmax(self.I))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            "year": self.year,
            "day": np.arange(self.T),
            "S": self.S,
            "I": self.I,
            "R": self.R,
            "new_infections": self.new_infections,
            "new_removed": self.new_removed,
            "reported_cases": self.reported_cases,
        })


@dataclass(frozen=True, eq=False)
class EpidemicDataset:
    """Ordered collection of simulated seasons."""
    runs: tuple[EpidemicRun, ...]
    config: SimulationConfig

    def __iter__(self) -> Iterator[EpidemicRun]:
        return iter(self.runs)

    def __len__(self) -> int:
        return len(self.runs)

    def __getitem__(self, idx: int) -> EpidemicRun:
        return self.runs[idx]

    @property
    def year_labels(self) -> list[int]:
        return [run.year for run in self.runs]

    @property
    def population_size(self) -> int:
        return self.config.N

    @property
    def horizon(self) -> int:
        return self.config.T

    def to_frame(self) -> pd.DataFrame:
        """Long table with one row per (year, day)."""
        return pd.concat([run.to_frame() for run in self.runs], ignore_index=True)

    def summary(self) -> pd.DataFrame:
        """Per-season totals, timing and attack rate."""
        rows = []
        for run in self.runs:
            total = int(run.new_infections.sum())
            rows.append({
                "year": run.year,
                "start_day": run.start_day,
                "total_infected": total,
                "total_reported": int(run.reported_cases.sum()),
                "peak_day": run.peak_day,
                "peak_infectious": int(run.I.max()),
                "attack_rate": total / run.N,
            })
        return pd.DataFrame(rows)


# --- Compiled signal ---

@dataclass(frozen=True)
class TrueAlarmWindow:
    """Ground-truth day range in which an alarm counts as correctly timed.

    ``start`` is the optimal alarm day; the window is ``[start, end]``
    inclusive.
    """
    year: int
    reference_day: int
    start: int
    end: int

    def __contains__(self, day: int) -> bool:
        return self.start <= day <= self.end

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True, eq=False)
class CompiledDataset:
    """Daily absenteeism signal and ground truth for every season."""
    frame: pd.DataFrame
    windows: dict[int, TrueAlarmWindow | None]
    reference_date: date
    year_length: float = 365.25
    catchment_frame: pd.DataFrame | None = None

    @property
    def years(self) -> list[int]:
        return sorted(self.windows)

    @property
    def usable_years(self) -> list[int]:
        """Years with a true alarm window."""
        return [y for y in self.years if self.windows[y] is not None]

    def year_frame(self, year: int) -> pd.DataFrame:
        return self.frame[self.frame["year"] == year].copy()

    def catchment_signals(self) -> pd.DataFrame:
        """Absenteeism per (year, day, catchment)."""
        if self.catchment_frame is None:
            return pd.DataFrame(
                columns=["year", "day", "catchment_id", "absent", "enrolled",
                         "absenteeism_proportion"]
            )
        return self.catchment_frame.copy()


# --- Alarm evaluation ---

@dataclass
class YearScore:
    """Metric values of one detector on one season."""
    year: int
    alarm_days: list[int]
    FAR: float
    ADD: float
    FATQ: float
    AATQ: float


@dataclass
class CellMetrics:
    """Aggregated scores for one (lag, threshold) grid cell."""
    lag: int
    threshold: float
    FAR: float = np.nan
    ADD: float = np.nan
    AATQ: float = np.nan
    FATQ: float = np.nan
    WAATQ: float = np.nan
    WFATQ: float = np.nan
    year_scores: dict[int, YearScore] = field(default_factory=dict)
    fit_failed: bool = False
    error: str | None = None

    def metric(self, name: str) -> float:
        if name not in METRIC_NAMES:
            raise KeyError(f"Unknown metric: {name!r}")
        return getattr(self, name)

    @property
    def n_alarms(self) -> int:
        return sum(len(s.alarm_days) for s in self.year_scores.values())


@dataclass
class MetricGrid:
    """Scores for every evaluated (lag, threshold) cell."""
    cells: dict[tuple[int, float], CellMetrics] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.cells)

    def __iter__(self) -> Iterator[CellMetrics]:
        for key in sorted(self.cells):
            yield self.cells[key]

    def __getitem__(self, key: tuple[int, float]) -> CellMetrics:
        return self.cells[key]

    def __contains__(self, key: object) -> bool:
        return key in self.cells

    @property
    def lags(self) -> list[int]:
        return sorted({lag for lag, _ in self.cells})

    @property
    def thresholds(self) -> list[float]:
        return sorted({thr for _, thr in self.cells})

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for cell in self:
            row = {"lag": cell.lag, "threshold": cell.threshold}
            row.update({name: cell.metric(name) for name in METRIC_NAMES})
            row["fit_failed"] = cell.fit_failed
            rows.append(row)
        return pd.DataFrame(rows, columns=["lag", "threshold", *METRIC_NAMES, "fit_failed"])

    def metric_matrix(self, name: str) -> pd.DataFrame:
        """Lag x threshold table of a single metric."""
        if name not in METRIC_NAMES:
            raise KeyError(f"Unknown metric: {name!r}")
        return self.to_frame().pivot(index="lag", columns="threshold", values=name)


@dataclass
class EvaluationResult:
    """Output of the alarm grid search."""
    grid: MetricGrid
    best_models: dict[str, tuple[int, float] | None]
    alarm_timelines: dict[tuple[int, int, float], list[int]]
    year_weights: dict[int, float] = field(default_factory=dict)

    def best_cell(self, metric: str) -> CellMetrics | None:
        key = self.best_models.get(metric)
        return None if key is None else self.grid[key]

    def summary(self) -> pd.DataFrame:
        """One row per metric with the selected model and its score."""
        rows = []
        for name in METRIC_NAMES:
            key = self.best_models.get(name)
            rows.append({
                "metric": name,
                "lag": None if key is None else key[0],
                "threshold": None if key is None else key[1],
                "value": np.nan if key is None else self.grid[key].metric(name),
            })
        return pd.DataFrame(rows)
