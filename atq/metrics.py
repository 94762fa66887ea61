"""Alert Time Quality metrics and ground-truth window utilities.

All functions here are pure: they take alarm days and a
:class:`TrueAlarmWindow` and return scores.  Missing values are ``NaN``.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Sequence

import numpy as np

from atq.config import TimeQualityCurve
from atq.types import (
    METRIC_NAMES,
    MINIMISED_METRICS,
    CellMetrics,
    EpidemicRun,
    MetricGrid,
    TrueAlarmWindow,
    YearScore,
)


# ---------------------------------------------------------------------------
# Ground truth
# ---------------------------------------------------------------------------

def _first_crossing(counts: np.ndarray, threshold: int) -> int | None:
    hits = np.flatnonzero(np.cumsum(counts) >= threshold)
    return int(hits[0]) if len(hits) else None


def true_alarm_window(
    run: EpidemicRun,
    activity_threshold: int = 1,
    lead_days: int = 14,
) -> TrueAlarmWindow | None:
    """Ground-truth alarm window of one season.

    The reference day is the first day cumulative reported cases reach
    ``activity_threshold`` (falling back to true infections when reporting
    never does).  The window opens ``lead_days`` before the reference day
    and closes at peak prevalence, or at the reference day if that is
    later.  Seasons without any activity have no window.
    """
    reference = _first_crossing(run.reported_cases, activity_threshold)
    if reference is None:
        reference = _first_crossing(run.new_infections, activity_threshold)
    if reference is None:
        return None
    start = max(0, reference - lead_days)
    end = max(int(np.argmax(run.I)), reference)
    return TrueAlarmWindow(year=run.year, reference_day=reference, start=start, end=end)


# ---------------------------------------------------------------------------
# Per-alarm quality
# ---------------------------------------------------------------------------

def alert_time_quality(
    alarm_days: Sequence[int] | np.ndarray,
    optimal_day: int,
    curve: TimeQualityCurve | None = None,
    window_end: int | None = None,
) -> np.ndarray:
    """Quality in [0, 1] of each alarm; 1 on the optimal day.

    Parameters
    ----------
    alarm_days : sequence of int
    optimal_day : int
        Start of the true alarm window.
    curve : TimeQualityCurve, optional
    window_end : int, optional
        Last day of the true alarm window.  Sets the late-side scale when
        ``curve.late_scale`` is ``None``; without it the curve is symmetric.
    """
    curve = curve or TimeQualityCurve()
    if curve.late_scale is not None:
        late_scale = curve.late_scale
    elif window_end is not None:
        late_scale = max(window_end - optimal_day + 1, 1)
    else:
        late_scale = curve.early_scale
    offset = np.asarray(alarm_days, dtype=float) - optimal_day
    scale = np.where(offset < 0, curve.early_scale, late_scale)
    penalty = np.minimum((np.abs(offset) / scale) ** curve.power, 1.0)
    return 1.0 - penalty


# ---------------------------------------------------------------------------
# Per-season metrics
# ---------------------------------------------------------------------------

def false_alarm_rate(alarm_days: Sequence[int], window: TrueAlarmWindow) -> float:
    """Share of alarms outside the window; 0 when no alarm is raised."""
    if len(alarm_days) == 0:
        return 0.0
    outside = sum(1 for d in alarm_days if d not in window)
    return outside / len(alarm_days)


def added_days_delayed(alarm_days: Sequence[int], window: TrueAlarmWindow) -> float:
    """Days from the optimal day to the first in-window alarm, else NaN."""
    in_window = [d for d in alarm_days if d in window]
    if not in_window:
        return np.nan
    return float(min(in_window) - window.start)


def first_alert_quality(
    alarm_days: Sequence[int],
    window: TrueAlarmWindow,
    curve: TimeQualityCurve | None = None,
) -> float:
    if len(alarm_days) == 0:
        return 0.0
    first = alert_time_quality([min(alarm_days)], window.start, curve, window.end)
    return float(first[0])


def average_alert_quality(
    alarm_days: Sequence[int],
    window: TrueAlarmWindow,
    curve: TimeQualityCurve | None = None,
) -> float:
    if len(alarm_days) == 0:
        return 0.0
    return float(np.mean(alert_time_quality(alarm_days, window.start, curve, window.end)))


def score_year(
    alarm_days: Sequence[int],
    window: TrueAlarmWindow,
    curve: TimeQualityCurve | None = None,
) -> YearScore:
    """All per-season metrics for one alarm sequence."""
    days = sorted(int(d) for d in alarm_days)
    return YearScore(
        year=window.year,
        alarm_days=days,
        FAR=false_alarm_rate(days, window),
        ADD=added_days_delayed(days, window),
        FATQ=first_alert_quality(days, window, curve),
        AATQ=average_alert_quality(days, window, curve),
    )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def default_year_weights(years: Iterable[int]) -> dict[int, float]:
    """Weights proportional to the position of each year, normalised."""
    years = sorted(years)
    raw = np.arange(1, len(years) + 1, dtype=float)
    if len(raw) == 0:
        return {}
    return {y: float(w) for y, w in zip(years, raw / raw.sum())}


def weighted_mean(values: Sequence[float], weights: Sequence[float]) -> float:
    """Weighted mean ignoring NaN values; NaN if nothing remains."""
    values = np.asarray(values, dtype=float)
    weights = np.asarray(weights, dtype=float)
    keep = np.isfinite(values)
    if not keep.any() or weights[keep].sum() <= 0:
        return np.nan
    return float(np.sum(values[keep] * weights[keep]) / weights[keep].sum())


def nan_mean(values: Sequence[float]) -> float:
    values = np.asarray(values, dtype=float)
    values = values[np.isfinite(values)]
    return float(values.mean()) if len(values) else np.nan


def aggregate_scores(
    lag: int,
    threshold: float,
    year_scores: Mapping[int, YearScore],
    year_weights: Mapping[int, float],
) -> CellMetrics:
    """Combine per-season scores into one grid cell."""
    years = sorted(year_scores)
    scores = [year_scores[y] for y in years]
    weights = [year_weights.get(y, 0.0) for y in years]
    return CellMetrics(
        lag=lag,
        threshold=threshold,
        FAR=nan_mean([s.FAR for s in scores]),
        ADD=nan_mean([s.ADD for s in scores]),
        AATQ=nan_mean([s.AATQ for s in scores]),
        FATQ=nan_mean([s.FATQ for s in scores]),
        WAATQ=weighted_mean([s.AATQ for s in scores], weights),
        WFATQ=weighted_mean([s.FATQ for s in scores], weights),
        year_scores=dict(year_scores),
    )


# ---------------------------------------------------------------------------
# Model selection
# ---------------------------------------------------------------------------

def select_best(grid: MetricGrid, metric: str) -> tuple[int, float] | None:
    """Best (lag, threshold) for ``metric``.

    FAR and ADD are minimised, the quality metrics maximised.  Missing
    values are skipped; ties go to the smaller lag, then the smaller
    threshold.  Returns ``None`` if every cell is missing.
    """
    if metric not in METRIC_NAMES:
        raise KeyError(f"Unknown metric: {metric!r}")
    sign = 1.0 if metric in MINIMISED_METRICS else -1.0
    best_key = None
    best_val = np.inf
    for cell in grid:  # sorted by (lag, threshold)
        value = cell.metric(metric)
        if not np.isfinite(value):
            continue
        if sign * value < best_val:
            best_val = sign * value
            best_key = (cell.lag, cell.threshold)
    return best_key


def select_best_models(grid: MetricGrid) -> dict[str, tuple[int, float] | None]:
    return {name: select_best(grid, name) for name in METRIC_NAMES}
