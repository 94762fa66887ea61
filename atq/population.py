"""Population table consumed by the absenteeism compiler.

The table has one row per individual.  ``school_id`` is null for anyone
who is not an enrolled school-age child.  :func:`sample_population` builds
a small seeded population for demos and tests; it is not a demographic
model.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from atq.config import PopulationConfig
from atq.errors import ConfigurationError
from atq.samplers import GammaSampler, PoissonSampler, ensure_generator

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: tuple[str, ...] = (
    "household_id",
    "school_id",
    "catchment_id",
    "age_category",
)


@dataclass(frozen=True, eq=False)
class PopulationTable:
    """Read-only individual-level population.

    Parameters
    ----------
    frame : DataFrame
        One row per individual with at least ``REQUIRED_COLUMNS``.
    years : tuple of int, optional
        Seasons this population is valid for.  ``None`` means any.
    """
    frame: pd.DataFrame
    years: tuple[int, ...] | None = None

    @classmethod
    def from_frame(
        cls, frame: pd.DataFrame, years: list[int] | tuple[int, ...] | None = None
    ) -> "PopulationTable":
        missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
        if missing:
            raise ConfigurationError("population columns", list(frame.columns),
                                     f"must include {missing}")
        if len(frame) == 0:
            raise ConfigurationError("population", len(frame), "must not be empty")
        frame = frame.reset_index(drop=True).copy()
        if "individual_id" not in frame.columns:
            frame.insert(0, "individual_id", np.arange(len(frame)))
        return cls(frame=frame, years=None if years is None else tuple(years))

    @property
    def size(self) -> int:
        return len(self.frame)

    @property
    def enrolled_mask(self) -> np.ndarray:
        return self.frame["school_id"].notna().to_numpy()

    @property
    def n_enrolled(self) -> int:
        return int(self.enrolled_mask.sum())

    @property
    def catchments(self) -> list:
        return sorted(self.frame["catchment_id"].unique())

    def catchment_denominators(self) -> pd.Series:
        """Enrolled students per catchment, zero-student catchments included."""
        enrolled = self.frame.loc[self.enrolled_mask, "catchment_id"].value_counts()
        return enrolled.reindex(self.catchments, fill_value=0).astype(int)

    def school_counts(self) -> pd.DataFrame:
        """Enrolment per school with its catchment."""
        students = self.frame[self.enrolled_mask]
        return (
            students.groupby(["catchment_id", "school_id"])
            .size()
            .rename("enrolled")
            .reset_index()
        )

    def household_counts(self) -> pd.DataFrame:
        """Household sizes with their catchment."""
        return (
            self.frame.groupby(["catchment_id", "household_id"])
            .size()
            .rename("members")
            .reset_index()
        )


# ---------------------------------------------------------------------------
# Minimal synthetic population
# ---------------------------------------------------------------------------

def sample_population(
    n_individuals: int,
    config: PopulationConfig | None = None,
    rng: np.random.Generator | int | None = None,
    years: list[int] | None = None,
) -> PopulationTable:
    """Draw a population of exactly ``n_individuals`` people.

    Catchments get a gamma-distributed number of schools (at least one)
    and schools a gamma-distributed relative enrolment.  Households are
    drawn until the target size is reached; households with children
    enrol every child in a school of the household's catchment.
    """
    if n_individuals <= 0:
        raise ConfigurationError("n_individuals", n_individuals, "must be positive")
    config = config or PopulationConfig()
    rng = ensure_generator(rng)

    n_schools = np.maximum(
        np.ceil(GammaSampler(config.schools_shape, config.schools_rate)
                .sample(rng, size=config.n_catchments)),
        1,
    ).astype(int)
    school_catchment = np.repeat(np.arange(config.n_catchments), n_schools)
    school_weight = GammaSampler(config.enrolment_shape, config.enrolment_rate).sample(
        rng, size=len(school_catchment)
    )
    catchment_weight = np.bincount(
        school_catchment, weights=school_weight, minlength=config.n_catchments
    )
    catchment_p = catchment_weight / catchment_weight.sum()

    adults = PoissonSampler(config.adults_per_household - 1, shift=1)
    children = PoissonSampler(config.children_per_household - 1, shift=1)

    rows: list[tuple[int, object, int, str]] = []
    household = 0
    while len(rows) < n_individuals:
        catchment = int(rng.choice(config.n_catchments, p=catchment_p))
        n_adults = int(adults.sample(rng))
        n_children = 0
        if rng.random() >= config.prop_no_children:
            n_children = int(children.sample(rng))
        for _ in range(n_adults):
            rows.append((household, None, catchment, "adult"))
        if n_children:
            local = np.flatnonzero(school_catchment == catchment)
            p = school_weight[local] / school_weight[local].sum()
            school = int(local[rng.choice(len(local), p=p)])
            for _ in range(n_children):
                rows.append((household, school, catchment, "school_age"))
        household += 1

    frame = pd.DataFrame(
        rows[:n_individuals],
        columns=["household_id", "school_id", "catchment_id", "age_category"],
    )
    frame["school_id"] = frame["school_id"].astype("Int64")
    logger.debug(
        "Sampled population: %d individuals, %d households, %d schools",
        len(frame), frame["household_id"].nunique(), len(school_catchment),
    )
    return PopulationTable.from_frame(frame, years=years)
