"""Grid-search evaluation of absenteeism-based outbreak alarms.

For every lag ``l`` a logistic regression predicts the daily probability
of at least one reported case from the absenteeism signal lagged
``0..l`` days, a seasonal sine/cosine pair and per-season intercepts.
Each threshold turns the predicted probabilities into alarm days, which
are scored against the true alarm windows with the ATQ metrics.
"""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Iterable, Mapping

import numpy as np
import pandas as pd
from sklearn.linear_model import LogisticRegression
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler

from atq.config import EvaluationConfig
from atq.errors import ConfigurationError, FitFailure, InsufficientData
from atq.metrics import (
    aggregate_scores,
    default_year_weights,
    score_year,
    select_best_models,
)
from atq.types import CellMetrics, CompiledDataset, EvaluationResult, MetricGrid

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Design matrix
# ---------------------------------------------------------------------------

@dataclass
class DesignMatrix:
    """Predictors and outcome for one lag, restricted to complete rows."""
    X: pd.DataFrame
    y: np.ndarray
    year: np.ndarray
    day: np.ndarray


def build_design(compiled: CompiledDataset, lag: int) -> DesignMatrix:
    """Lagged absenteeism, seasonal terms and season intercepts.

    Lags are taken within each season, so the first ``lag`` days of every
    season lack a full history and are dropped.
    """
    frame = compiled.frame.sort_values(["year", "day"], kind="stable")
    signal = frame.groupby("year", sort=False)["absenteeism_proportion"]

    columns = {f"absent_lag{k}": signal.shift(k) for k in range(lag + 1)}
    angle = 2.0 * math.pi * frame["day_of_year"].to_numpy(dtype=float) / compiled.year_length
    columns["season_sin"] = pd.Series(np.sin(angle), index=frame.index)
    columns["season_cos"] = pd.Series(np.cos(angle), index=frame.index)
    X = pd.DataFrame(columns)

    years = pd.get_dummies(frame["year"], prefix="year", drop_first=True, dtype=float)
    X = pd.concat([X, years], axis=1)

    complete = X.notna().all(axis=1).to_numpy()
    return DesignMatrix(
        X=X.loc[complete].reset_index(drop=True),
        y=(frame["true_case_count"].to_numpy()[complete] > 0).astype(int),
        year=frame["year"].to_numpy()[complete],
        day=frame["day"].to_numpy()[complete],
    )


# ---------------------------------------------------------------------------
# Model fitting
# ---------------------------------------------------------------------------

@dataclass
class FittedModel:
    """A converged detection model."""
    pipeline: Pipeline
    columns: list[str]
    n_iter: int

    def predict_proba(self, X: pd.DataFrame) -> np.ndarray:
        return self.pipeline.predict_proba(X[self.columns].to_numpy(dtype=float))[:, 1]


def fit_logistic(
    X: pd.DataFrame,
    y: np.ndarray,
    config: EvaluationConfig | None = None,
) -> FittedModel:
    """Fit the detection model or raise :class:`FitFailure`.

    Season effects enter as fixed intercepts.  A fit counts as failed when
    the outcome has a single class, the solver raises, or it stops at
    ``max_iter`` without converging.
    """
    config = config or EvaluationConfig()
    if len(y) == 0:
        raise FitFailure("no complete rows to fit")
    classes = np.unique(y)
    if len(classes) < 2:
        raise FitFailure(f"outcome has a single class ({classes[0]})")

    pipeline = Pipeline([
        ("scale", StandardScaler()),
        ("logit", LogisticRegression(
            C=config.C, max_iter=config.max_iter, solver="lbfgs",
        )),
    ])
    try:
        pipeline.fit(X.to_numpy(dtype=float), y)
    except (ValueError, np.linalg.LinAlgError) as exc:
        raise FitFailure(f"solver error: {exc}") from exc

    n_iter = int(np.max(pipeline.named_steps["logit"].n_iter_))
    if n_iter >= config.max_iter:
        raise FitFailure(f"no convergence within {config.max_iter} iterations")
    return FittedModel(pipeline=pipeline, columns=list(X.columns), n_iter=n_iter)


# ---------------------------------------------------------------------------
# Per-lag evaluation
# ---------------------------------------------------------------------------

def _failed_cells(
    lag: int, thresholds: list[float], error: str
) -> dict[tuple[int, float], CellMetrics]:
    return {
        (lag, thr): CellMetrics(lag=lag, threshold=thr, fit_failed=True, error=error)
        for thr in thresholds
    }


def _evaluate_lag(
    compiled: CompiledDataset,
    lag: int,
    thresholds: list[float],
    year_weights: Mapping[int, float],
    config: EvaluationConfig,
) -> tuple[dict[tuple[int, float], CellMetrics], dict[tuple[int, int, float], list[int]]]:
    """Fit once for ``lag`` and score every threshold."""
    design = build_design(compiled, lag)
    cells: dict[tuple[int, float], CellMetrics] = {}
    timelines: dict[tuple[int, int, float], list[int]] = {}

    try:
        model = fit_logistic(design.X, design.y, config)
    except FitFailure as exc:
        logger.warning("Fit failed for lag %d: %s", lag, exc)
        return _failed_cells(lag, thresholds, str(exc)), timelines

    proba = model.predict_proba(design.X)
    logger.debug("Lag %d fitted in %d iterations", lag, model.n_iter)

    for thr in thresholds:
        alarm = proba >= thr
        year_scores = {}
        for year in compiled.years:
            days = design.day[alarm & (design.year == year)].tolist()
            timelines[(year, lag, thr)] = days
            window = compiled.windows[year]
            if window is not None:
                year_scores[year] = score_year(days, window, config.quality_curve)
        cells[(lag, thr)] = aggregate_scores(lag, thr, year_scores, year_weights)
    return cells, timelines


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _check_grid(max_lag: int, thresholds: Iterable[float]) -> list[float]:
    if isinstance(max_lag, bool) or int(max_lag) != max_lag or max_lag < 0:
        raise ConfigurationError("max_lag", max_lag, "must be a non-negative integer")
    thresholds = sorted({float(t) for t in thresholds})
    if not thresholds:
        raise ConfigurationError("thresholds", thresholds, "must not be empty")
    for thr in thresholds:
        if not 0.0 <= thr <= 1.0:
            raise ConfigurationError("threshold", thr, "must be in [0, 1]")
    return thresholds


def _resolve_weights(
    years: list[int], year_weights: Mapping[int, float] | None
) -> dict[int, float]:
    if year_weights is None:
        return default_year_weights(years)
    missing = [y for y in years if y not in year_weights]
    if missing:
        raise ConfigurationError("year_weights", dict(year_weights),
                                 f"must provide a weight for years {missing}")
    weights = {y: float(year_weights[y]) for y in years}
    if any(w < 0 for w in weights.values()) or sum(weights.values()) <= 0:
        raise ConfigurationError("year_weights", weights,
                                 "must be non-negative with a positive sum")
    total = sum(weights.values())
    return {y: w / total for y, w in weights.items()}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def evaluate_alarms(
    compiled: CompiledDataset,
    max_lag: int,
    thresholds: Iterable[float],
    year_weights: Mapping[int, float] | None = None,
    config: EvaluationConfig | None = None,
) -> EvaluationResult:
    """Evaluate every (lag, threshold) cell for ``lag`` in ``0..max_lag``.

    Parameters
    ----------
    compiled : CompiledDataset
    max_lag : int
        Largest number of trailing absenteeism days used as predictors.
    thresholds : iterable of float
        Probability cut-offs in [0, 1].
    year_weights : mapping year -> weight, optional
        Weights of the WFATQ / WAATQ metrics.  Defaults to weights
        proportional to the year's position.
    config : EvaluationConfig, optional

    Returns
    -------
    EvaluationResult

    Raises
    ------
    ConfigurationError
        Invalid lag, thresholds or weights.
    InsufficientData
        Fewer than two seasons with a true alarm window.
    """
    config = config or EvaluationConfig()
    thresholds = _check_grid(max_lag, thresholds)
    usable = compiled.usable_years
    if len(usable) < 2:
        raise InsufficientData(
            f"need at least 2 seasons with epidemic activity, got {len(usable)} "
            f"(years with a window: {usable})"
        )
    weights = _resolve_weights(usable, year_weights)

    t0 = time.monotonic()
    cells: dict[tuple[int, float], CellMetrics] = {}
    timelines: dict[tuple[int, int, float], list[int]] = {}
    with ThreadPoolExecutor(max_workers=config.max_workers) as pool:
        future_to_lag = {
            pool.submit(_evaluate_lag, compiled, lag, thresholds, weights, config): lag
            for lag in range(int(max_lag) + 1)
        }
        for future in as_completed(future_to_lag):
            lag = future_to_lag[future]
            try:
                lag_cells, lag_timelines = future.result()
            except Exception as exc:
                logger.error("Lag %d evaluation failed: %s", lag, exc, exc_info=True)
                lag_cells = _failed_cells(lag, thresholds, f"{type(exc).__name__}: {exc}")
                lag_timelines = {}
            cells.update(lag_cells)
            timelines.update(lag_timelines)

    grid = MetricGrid(cells={key: cells[key] for key in sorted(cells)})
    best = select_best_models(grid)
    n_failed = sum(1 for cell in grid if cell.fit_failed)
    logger.info(
        "Evaluated %d cells (%d failed) in %.2f s", len(grid), n_failed,
        time.monotonic() - t0,
    )
    return EvaluationResult(
        grid=grid,
        best_models=best,
        alarm_timelines={key: timelines[key] for key in sorted(timelines)},
        year_weights=weights,
    )
