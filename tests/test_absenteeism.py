"""Tests for the absenteeism compiler."""

from __future__ import annotations

from datetime import date

import numpy as np
import numpy.testing as npt
import pandas as pd
import pytest

from atq.absenteeism import assign_infection_days, compile_absenteeism, season_calendar
from atq.config import CompileConfig, SimulationConfig
from atq.epidemic import simulate
from atq.errors import DataMismatch
from atq.population import PopulationTable, sample_population


# ============================================================
# Fixtures
# ============================================================

N = 600


@pytest.fixture
def sim_config():
    return SimulationConfig(
        N=N, T=90, alpha=1.0, avg_start=15, min_start=10,
        inf_period=4, inf_init=8, report_rate=0.2, lag_scale=2, num_years=3,
    )


@pytest.fixture
def epidemic(sim_config):
    return simulate(sim_config, rng=21)


@pytest.fixture
def population():
    return sample_population(N, rng=4)


def _everyone_enrolled(n: int, n_schools: int = 3) -> PopulationTable:
    return PopulationTable.from_frame(pd.DataFrame({
        "household_id": np.arange(n),
        "school_id": np.arange(n) % n_schools,
        "catchment_id": np.arange(n) % n_schools,
        "age_category": "school_age",
    }))


# ============================================================
# Input checks
# ============================================================

class TestInputChecks:

    def test_population_size_mismatch(self, epidemic):
        with pytest.raises(DataMismatch, match=str(N)):
            compile_absenteeism(epidemic, sample_population(N - 1, rng=0), rng=0)

    def test_year_range_mismatch(self, epidemic):
        pop = sample_population(N, rng=0, years=[1, 2, 3, 4])
        with pytest.raises(DataMismatch, match="years"):
            compile_absenteeism(epidemic, pop, rng=0)

    def test_matching_years_accepted(self, epidemic):
        pop = sample_population(N, rng=0, years=[3, 2, 1])
        compiled = compile_absenteeism(epidemic, pop, rng=0)
        assert compiled.years == [1, 2, 3]


# ============================================================
# Output structure
# ============================================================

class TestCompiledFrame:

    def test_one_row_per_day_and_year(self, epidemic, population, sim_config):
        compiled = compile_absenteeism(epidemic, population, rng=1)
        assert len(compiled.frame) == sim_config.T * sim_config.num_years
        counts = compiled.frame.groupby("year").size()
        assert (counts == sim_config.T).all()

    def test_columns(self, epidemic, population):
        frame = compile_absenteeism(epidemic, population, rng=1).frame
        for col in ("year", "day", "day_of_year", "absenteeism_proportion",
                    "true_case_count", "in_true_window", "outbreak"):
            assert col in frame.columns

    def test_case_counts_are_reported_cases(self, epidemic, population):
        compiled = compile_absenteeism(epidemic, population, rng=1)
        for run in epidemic:
            got = compiled.year_frame(run.year)["true_case_count"].to_numpy()
            npt.assert_array_equal(got, run.reported_cases)

    def test_proportion_bounded(self, epidemic, population):
        frame = compile_absenteeism(epidemic, population, rng=1).frame
        assert frame["absenteeism_proportion"].between(0.0, 1.0).all()

    def test_day_of_year_from_reference_date(self, epidemic, population):
        cfg = CompileConfig(reference_date=date(2021, 9, 1))
        frame = compile_absenteeism(epidemic, population, cfg, rng=1).frame
        first = frame[(frame["year"] == 1) & (frame["day"] == 0)]
        assert int(first["day_of_year"].iloc[0]) == date(2021, 9, 1).timetuple().tm_yday
        assert frame["day_of_year"].between(1, 366).all()

    def test_season_calendar_advances_one_year(self):
        cfg = CompileConfig(reference_date=date(2020, 9, 1))
        dates, doy = season_calendar(cfg, 1, 5)
        assert dates[0] == pd.Timestamp(2021, 9, 1)
        assert len(doy) == 5


# ============================================================
# Signal semantics
# ============================================================

class TestSignal:

    def test_deterministic_with_seed(self, epidemic, population):
        a = compile_absenteeism(epidemic, population, rng=8).frame
        b = compile_absenteeism(epidemic, population, rng=8).frame
        pd.testing.assert_frame_equal(a, b)

    def test_noise_free_signal_tracks_infectious_students(self, epidemic):
        pop = _everyone_enrolled(N)
        cfg = CompileConfig(p_absent_ill=1.0, p_absent_well=0.0)
        compiled = compile_absenteeism(epidemic, pop, cfg, rng=3)
        for run in epidemic:
            absent = compiled.year_frame(run.year)["absenteeism_proportion"].to_numpy() * N
            # everyone is a student, so absences are the currently infectious
            npt.assert_allclose(absent, run.I, atol=1e-9)

    def test_background_absence_without_outbreak(self, sim_config):
        cfg = SimulationConfig(**{**sim_config.__dict__, "alpha": 0.0, "inf_init": 0})
        epidemic = simulate(cfg, rng=2)
        compiled = compile_absenteeism(
            epidemic, _everyone_enrolled(N), CompileConfig(p_absent_well=0.05), rng=2,
        )
        mean = compiled.frame["absenteeism_proportion"].mean()
        assert mean == pytest.approx(0.05, abs=0.01)

    def test_zero_enrolled_population_gives_zero_signal(self, epidemic):
        pop = PopulationTable.from_frame(pd.DataFrame({
            "household_id": np.arange(N),
            "school_id": [None] * N,
            "catchment_id": 0,
            "age_category": "adult",
        }))
        compiled = compile_absenteeism(epidemic, pop, rng=0)
        assert (compiled.frame["absenteeism_proportion"] == 0).all()

    def test_catchment_without_students_contributes_zero(self, epidemic):
        frame = pd.DataFrame({
            "household_id": np.arange(N),
            "school_id": [i % 2 if i < N // 2 else None for i in range(N)],
            "catchment_id": ["x" if i < N // 2 else "y" for i in range(N)],
            "age_category": "school_age",
        })
        compiled = compile_absenteeism(epidemic, PopulationTable.from_frame(frame), rng=0)
        signals = compiled.catchment_signals()
        empty = signals[signals["catchment_id"] == "y"]
        assert (empty["enrolled"] == 0).all()
        assert (empty["absenteeism_proportion"] == 0).all()

    def test_catchment_absences_sum_to_total(self, epidemic, population):
        compiled = compile_absenteeism(epidemic, population, rng=5)
        signals = compiled.catchment_signals()
        totals = signals.groupby(["year", "day"])["absent"].sum().to_numpy()
        proportion = compiled.frame.sort_values(["year", "day"])["absenteeism_proportion"]
        npt.assert_allclose(totals / population.n_enrolled, proportion.to_numpy())

    def test_infection_assignment_distinct(self, epidemic):
        run = epidemic[0]
        days = assign_infection_days(run, np.random.default_rng(0))
        assert (days >= 0).sum() == run.new_infections.sum()
        for t in np.flatnonzero(run.new_infections):
            assert (days == t).sum() == run.new_infections[t]


# ============================================================
# True alarm window
# ============================================================

class TestTrueWindow:

    def test_window_flags_are_contiguous(self, epidemic, population):
        compiled = compile_absenteeism(epidemic, population, rng=1)
        for year in compiled.years:
            flags = compiled.year_frame(year)["in_true_window"].to_numpy()
            window = compiled.windows[year]
            if window is None:
                assert not flags.any()
                continue
            idx = np.flatnonzero(flags)
            assert idx[0] == window.start
            assert idx[-1] == window.end
            assert len(idx) == window.length

    def test_window_independent_of_population_and_noise(self, epidemic, population):
        a = compile_absenteeism(epidemic, population, rng=1).windows
        b = compile_absenteeism(epidemic, _everyone_enrolled(N), rng=99).windows
        assert a == b

    def test_quiet_year_has_no_window(self, sim_config):
        cfg = SimulationConfig(**{**sim_config.__dict__, "inf_init": 0})
        epidemic = simulate(cfg, rng=0)
        compiled = compile_absenteeism(epidemic, _everyone_enrolled(N), rng=0)
        assert all(w is None for w in compiled.windows.values())
        assert compiled.usable_years == []
        assert not compiled.frame["in_true_window"].any()
