"""Tests for the alarm grid-search evaluator."""

from __future__ import annotations

from datetime import date

import numpy as np
import numpy.testing as npt
import pandas as pd
import pytest

import atq.alarms as alarms
from atq.alarms import build_design, evaluate_alarms, fit_logistic
from atq.config import EvaluationConfig
from atq.errors import ConfigurationError, FitFailure, InsufficientData
from atq.types import METRIC_NAMES, CompiledDataset, TrueAlarmWindow


# ============================================================
# Fixtures
# ============================================================

T = 120


def _compiled(n_years: int = 4, seed: int = 0, cases: bool = True,
              windows: dict | None = None) -> CompiledDataset:
    """Synthetic seasons where reported cases follow an absenteeism bump."""
    rng = np.random.default_rng(seed)
    frames = []
    made_windows = {}
    days = np.arange(T)
    for year in range(1, n_years + 1):
        onset = 30 + 5 * year
        bump = 0.3 * np.exp(-0.5 * ((days - onset - 10) / 6.0) ** 2)
        absent = 0.05 + bump + rng.normal(0.0, 0.01, T)
        p_case = 1.0 / (1.0 + np.exp(-(absent - 0.2) * 30.0))
        count = rng.binomial(3, p_case) if cases else np.zeros(T, dtype=int)
        in_window = (days >= onset - 5) & (days <= onset + 15)
        frames.append(pd.DataFrame({
            "year": year,
            "day": days,
            "day_of_year": (243 + days) % 365 + 1,
            "absenteeism_proportion": absent,
            "true_case_count": count,
            "outbreak": count > 0,
            "in_true_window": in_window,
        }))
        made_windows[year] = TrueAlarmWindow(
            year=year, reference_day=onset + 9, start=onset - 5, end=onset + 15,
        )
    return CompiledDataset(
        frame=pd.concat(frames, ignore_index=True),
        windows=made_windows if windows is None else windows,
        reference_date=date(2000, 9, 1),
    )


@pytest.fixture(scope="module")
def compiled():
    return _compiled()


@pytest.fixture(scope="module")
def result(compiled):
    return evaluate_alarms(compiled, max_lag=3, thresholds=[0.2, 0.5, 0.8])


# ============================================================
# Design matrix and fitting
# ============================================================

class TestDesign:

    def test_columns(self, compiled):
        design = build_design(compiled, 2)
        cols = list(design.X.columns)
        assert cols[:3] == ["absent_lag0", "absent_lag1", "absent_lag2"]
        assert "season_sin" in cols and "season_cos" in cols
        assert sum(c.startswith("year_") for c in cols) == 3  # one dropped

    def test_incomplete_rows_dropped(self, compiled):
        design = build_design(compiled, 3)
        assert len(design.X) == 4 * (T - 3)
        assert design.day.min() == 3
        assert not design.X.isna().any().any()

    def test_lags_stay_within_season(self, compiled):
        design = build_design(compiled, 1)
        frame = compiled.frame
        row = np.flatnonzero((design.year == 2) & (design.day == 1))[0]
        prev = frame[(frame["year"] == 2) & (frame["day"] == 0)]["absenteeism_proportion"]
        assert design.X["absent_lag1"].iloc[row] == pytest.approx(prev.iloc[0])

    def test_outcome_is_any_case(self, compiled):
        design = build_design(compiled, 0)
        expected = (compiled.frame["true_case_count"] > 0).astype(int).to_numpy()
        npt.assert_array_equal(design.y, expected)


class TestFitLogistic:

    def test_fit_and_predict(self, compiled):
        design = build_design(compiled, 1)
        model = fit_logistic(design.X, design.y)
        proba = model.predict_proba(design.X)
        assert proba.shape == (len(design.X),)
        assert np.all((proba >= 0) & (proba <= 1))
        assert model.n_iter > 0

    def test_single_class_fails(self, compiled):
        design = build_design(compiled, 0)
        with pytest.raises(FitFailure, match="single class"):
            fit_logistic(design.X, np.zeros(len(design.X), dtype=int))

    def test_empty_fails(self, compiled):
        design = build_design(compiled, 0)
        with pytest.raises(FitFailure):
            fit_logistic(design.X.iloc[:0], design.y[:0])

    def test_iteration_cap_fails(self, compiled):
        design = build_design(compiled, 2)
        with pytest.raises(FitFailure, match="convergence"):
            fit_logistic(design.X, design.y, EvaluationConfig(max_iter=1))


# ============================================================
# Grid evaluation
# ============================================================

class TestEvaluateAlarms:

    def test_grid_size(self, result):
        assert len(result.grid) == 4 * 3
        assert result.grid.lags == [0, 1, 2, 3]
        assert result.grid.thresholds == [0.2, 0.5, 0.8]

    def test_all_cells_fitted(self, result):
        assert not any(cell.fit_failed for cell in result.grid)

    def test_far_bounded(self, result):
        for cell in result.grid:
            assert 0.0 <= cell.FAR <= 1.0

    def test_quality_bounded(self, result):
        for cell in result.grid:
            for name in ("AATQ", "FATQ", "WAATQ", "WFATQ"):
                assert 0.0 <= cell.metric(name) <= 1.0

    def test_alarm_count_non_increasing_in_threshold(self, result):
        for lag in result.grid.lags:
            counts = [result.grid[(lag, thr)].n_alarms for thr in result.grid.thresholds]
            assert counts == sorted(counts, reverse=True)

    def test_timelines_cover_every_cell_and_year(self, result):
        assert len(result.alarm_timelines) == 4 * 4 * 3
        for (year, lag, thr), days in result.alarm_timelines.items():
            assert days == sorted(days)
            assert days == result.grid[(lag, thr)].year_scores[year].alarm_days

    def test_best_models_for_every_metric(self, result):
        assert set(result.best_models) == set(METRIC_NAMES)
        for key in result.best_models.values():
            assert key in result.grid

    def test_best_far_is_minimum(self, result):
        best = result.best_cell("FAR")
        assert best.FAR == min(cell.FAR for cell in result.grid)

    def test_deterministic(self, compiled, result):
        again = evaluate_alarms(compiled, max_lag=3, thresholds=[0.8, 0.2, 0.5])
        assert again.best_models == result.best_models
        pd.testing.assert_frame_equal(again.grid.to_frame(), result.grid.to_frame())

    def test_worker_count_does_not_change_result(self, compiled, result):
        serial = evaluate_alarms(
            compiled, max_lag=3, thresholds=[0.2, 0.5, 0.8],
            config=EvaluationConfig(max_workers=1),
        )
        pd.testing.assert_frame_equal(serial.grid.to_frame(), result.grid.to_frame())

    def test_threshold_superset_preserves_cells(self, compiled, result):
        wider = evaluate_alarms(compiled, max_lag=3, thresholds=[0.1, 0.2, 0.5, 0.65, 0.8])
        for key in result.grid.cells:
            for name in METRIC_NAMES:
                npt.assert_equal(wider.grid[key].metric(name), result.grid[key].metric(name))

    def test_high_threshold_has_no_alarms(self, compiled):
        res = evaluate_alarms(compiled, max_lag=0, thresholds=[1.0])
        cell = res.grid[(0, 1.0)]
        assert cell.n_alarms == 0
        assert cell.FAR == 0.0
        assert np.isnan(cell.ADD)
        assert cell.FATQ == 0.0

    def test_summary_and_matrix(self, result):
        summary = result.summary()
        assert list(summary["metric"]) == list(METRIC_NAMES)
        matrix = result.grid.metric_matrix("FAR")
        assert matrix.shape == (4, 3)


class TestYearWeights:

    def test_default_weights(self, result):
        assert result.year_weights[4] == pytest.approx(0.4)
        assert sum(result.year_weights.values()) == pytest.approx(1.0)

    def test_custom_weights_change_weighted_metrics_only(self, compiled, result):
        res = evaluate_alarms(
            compiled, max_lag=3, thresholds=[0.2, 0.5, 0.8],
            year_weights={1: 1.0, 2: 0.0, 3: 0.0, 4: 0.0},
        )
        for key in result.grid.cells:
            assert res.grid[key].FAR == result.grid[key].FAR
            assert res.grid[key].WFATQ == pytest.approx(
                res.grid[key].year_scores[1].FATQ
            )

    def test_missing_year_weight(self, compiled):
        with pytest.raises(ConfigurationError, match="year_weights"):
            evaluate_alarms(compiled, 0, [0.5], year_weights={1: 1.0})

    def test_negative_year_weight(self, compiled):
        with pytest.raises(ConfigurationError, match="year_weights"):
            evaluate_alarms(compiled, 0, [0.5], year_weights={1: -1, 2: 1, 3: 1, 4: 1})


# ============================================================
# Failures
# ============================================================

class TestFailures:

    def test_empty_thresholds(self, compiled):
        with pytest.raises(ConfigurationError, match="thresholds"):
            evaluate_alarms(compiled, 2, [])

    def test_threshold_out_of_range(self, compiled):
        with pytest.raises(ConfigurationError, match="threshold"):
            evaluate_alarms(compiled, 2, [0.5, 1.5])

    def test_negative_lag(self, compiled):
        with pytest.raises(ConfigurationError, match="max_lag"):
            evaluate_alarms(compiled, -1, [0.5])

    def test_insufficient_years(self):
        data = _compiled(n_years=3)
        windows = {1: data.windows[1], 2: None, 3: None}
        data = _compiled(n_years=3, windows=windows)
        with pytest.raises(InsufficientData, match="at least 2"):
            evaluate_alarms(data, 1, [0.5])

    def test_all_fits_fail_cells_missing(self):
        data = _compiled(cases=False)
        res = evaluate_alarms(data, max_lag=2, thresholds=[0.3, 0.6])
        assert len(res.grid) == 6
        for cell in res.grid:
            assert cell.fit_failed
            assert cell.error
            for name in METRIC_NAMES:
                assert np.isnan(cell.metric(name))
        assert all(v is None for v in res.best_models.values())
        assert res.alarm_timelines == {}

    def test_one_failed_lag_does_not_stop_others(self, compiled, monkeypatch):
        real_fit = alarms.fit_logistic

        def flaky(X, y, config=None):
            if "absent_lag2" in X.columns and "absent_lag3" not in X.columns:
                raise FitFailure("simulated non-convergence")
            return real_fit(X, y, config)

        monkeypatch.setattr(alarms, "fit_logistic", flaky)
        res = evaluate_alarms(compiled, max_lag=3, thresholds=[0.2, 0.5])
        for thr in (0.2, 0.5):
            assert res.grid[(2, thr)].fit_failed
            assert np.isnan(res.grid[(2, thr)].FAR)
            for lag in (0, 1, 3):
                assert not res.grid[(lag, thr)].fit_failed
                assert np.isfinite(res.grid[(lag, thr)].FAR)
        assert all(key is None or key[0] != 2 for key in res.best_models.values())

    def test_unexpected_error_isolated_to_its_lag(self, compiled, monkeypatch):
        real_design = alarms.build_design

        def broken(data, lag):
            if lag == 1:
                raise RuntimeError("corrupt lag column")
            return real_design(data, lag)

        monkeypatch.setattr(alarms, "build_design", broken)
        res = evaluate_alarms(compiled, max_lag=2, thresholds=[0.2, 0.5])
        for thr in (0.2, 0.5):
            cell = res.grid[(1, thr)]
            assert cell.fit_failed
            assert cell.error == "RuntimeError: corrupt lag column"
            assert np.isnan(cell.AATQ)
            for lag in (0, 2):
                assert not res.grid[(lag, thr)].fit_failed
        assert not any(key[1] == 1 for key in res.alarm_timelines)
