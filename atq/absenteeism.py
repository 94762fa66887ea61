"""Compile daily school absenteeism from epidemic trajectories.

Infections from each simulated season are assigned to individuals of the
population; enrolled children who are currently infectious stay home with
high probability, everyone else with a small background probability.
The compiled table pairs that noisy signal with the reported case counts
and the ground-truth alarm window of each season.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from atq.config import CompileConfig
from atq.errors import DataMismatch
from atq.metrics import true_alarm_window
from atq.population import PopulationTable
from atq.samplers import ensure_generator
from atq.types import CompiledDataset, EpidemicDataset, EpidemicRun

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Input checks
# ---------------------------------------------------------------------------

def _check_inputs(epidemic: EpidemicDataset, population: PopulationTable) -> None:
    if population.size != epidemic.population_size:
        raise DataMismatch(
            f"population has {population.size} individuals but the epidemic "
            f"was simulated for N={epidemic.population_size}"
        )
    if population.years is not None:
        pop_years = sorted(population.years)
        epi_years = sorted(epidemic.year_labels)
        if pop_years != epi_years:
            raise DataMismatch(
                f"population years {pop_years} do not match epidemic years {epi_years}"
            )


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------

def season_calendar(
    config: CompileConfig, year_index: int, T: int
) -> tuple[pd.DatetimeIndex, np.ndarray]:
    """Dates and day-of-year for the ``year_index``-th season (0-based)."""
    start = pd.Timestamp(config.reference_date) + pd.DateOffset(years=year_index)
    dates = pd.date_range(start, periods=T, freq="D")
    return dates, dates.dayofyear.to_numpy()


# ---------------------------------------------------------------------------
# Infection assignment
# ---------------------------------------------------------------------------

def assign_infection_days(run: EpidemicRun, rng: np.random.Generator) -> np.ndarray:
    """Infection day per individual, -1 for never infected.

    Each day's new infections go to distinct, previously uninfected
    individuals picked from a random permutation.
    """
    infection_day = np.full(run.N, -1, dtype=np.int64)
    days = np.repeat(np.arange(run.T), run.new_infections)
    order = rng.permutation(run.N)
    infection_day[order[: len(days)]] = days
    return infection_day


def _season_absences(
    infection_day: np.ndarray,
    catchment_codes: np.ndarray,
    n_catchments: int,
    T: int,
    window: int,
    config: CompileConfig,
    rng: np.random.Generator,
) -> np.ndarray:
    """Daily absences per catchment, shape (T, n_catchments)."""
    absences = np.zeros((T, n_catchments), dtype=np.int64)
    if len(infection_day) == 0:
        return absences
    infected = infection_day >= 0
    for t in range(T):
        since = t - infection_day
        infectious = infected & (since >= 0) & (since < window)
        p = np.where(infectious, config.p_absent_ill, config.p_absent_well)
        absent = rng.random(len(p)) < p
        absences[t] = np.bincount(catchment_codes[absent], minlength=n_catchments)
    return absences


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def compile_absenteeism(
    epidemic: EpidemicDataset,
    population: PopulationTable,
    config: CompileConfig | None = None,
    rng: np.random.Generator | int | None = None,
) -> CompiledDataset:
    """Build the daily absenteeism dataset.

    Parameters
    ----------
    epidemic : EpidemicDataset
    population : PopulationTable
        Must describe exactly ``epidemic.population_size`` individuals.
    config : CompileConfig, optional
    rng : Generator or seed, optional
        Drives infection assignment and absence draws.

    Returns
    -------
    CompiledDataset
        One row per (year, day).

    Raises
    ------
    DataMismatch
        If population size or years disagree with the epidemic.
    """
    config = config or CompileConfig()
    _check_inputs(epidemic, population)
    rng = ensure_generator(rng)
    window = config.absence_window or epidemic.config.inf_period

    catchments = population.catchments
    denominators = population.catchment_denominators().reindex(catchments).to_numpy()
    enrolled_idx = np.flatnonzero(population.enrolled_mask)
    codes = pd.Categorical(
        population.frame["catchment_id"].to_numpy()[enrolled_idx],
        categories=catchments,
    ).codes.astype(np.int64)
    n_enrolled = len(enrolled_idx)
    if n_enrolled == 0:
        logger.warning("Population has no enrolled students; absenteeism is 0")

    frames = []
    catchment_frames = []
    windows = {}
    for year_index, run in enumerate(epidemic):
        T = run.T
        infection_day = assign_infection_days(run, rng)
        absences = _season_absences(
            infection_day[enrolled_idx], codes, len(catchments), T, window, config, rng,
        )
        total_absent = absences.sum(axis=1)
        proportion = total_absent / n_enrolled if n_enrolled else np.zeros(T)

        win = true_alarm_window(
            run, config.activity_threshold, config.lead_days
        )
        windows[run.year] = win
        days = np.arange(T)
        in_window = np.zeros(T, dtype=bool)
        if win is not None:
            in_window[win.start: win.end + 1] = True

        dates, doy = season_calendar(config, year_index, T)
        frames.append(pd.DataFrame({
            "year": run.year,
            "day": days,
            "date": dates,
            "day_of_year": doy,
            "absenteeism_proportion": proportion,
            "true_case_count": run.reported_cases,
            "infectious_count": run.I,
            "outbreak": run.reported_cases > 0,
            "in_true_window": in_window,
        }))

        with np.errstate(divide="ignore", invalid="ignore"):
            per_catchment = np.where(denominators > 0, absences / denominators, 0.0)
        catchment_frames.append(pd.DataFrame({
            "year": run.year,
            "day": np.repeat(days, len(catchments)),
            "catchment_id": np.tile(catchments, T),
            "absent": absences.ravel(),
            "enrolled": np.tile(denominators, T),
            "absenteeism_proportion": per_catchment.ravel(),
        }))
        logger.debug("Compiled season %d: window=%s", run.year, win)

    frame = pd.concat(frames, ignore_index=True)
    logger.info(
        "Compiled %d rows over %d seasons (%d enrolled students)",
        len(frame), len(epidemic), n_enrolled,
    )
    return CompiledDataset(
        frame=frame,
        windows=windows,
        reference_date=config.reference_date,
        year_length=config.year_length,
        catchment_frame=pd.concat(catchment_frames, ignore_index=True),
    )
