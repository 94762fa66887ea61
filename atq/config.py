"""Configuration management for the ATQ surveillance engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from atq.errors import ConfigurationError


@dataclass
class SimulationConfig:
    """Parameters of the stochastic SIR generator."""
    N: int = 10_000  # Population size
    T: int = 300  # Days simulated per year
    alpha: float = 0.298  # Transmission rate
    avg_start: float = 45.0  # Mean epidemic start day
    min_start: int = 20  # Earliest possible start day
    inf_period: int = 4  # Fixed infectious duration (days)
    inf_init: int = 32  # Infectious individuals on the start day
    report_rate: float = 0.02  # Probability a new infection is reported
    lag_scale: float = 7.0  # Mean reporting delay (days)
    num_years: int = 10  # Independent seasons

    def __post_init__(self):
        """Validate configuration parameters."""
        for name in ("N", "T", "inf_period", "num_years"):
            val = getattr(self, name)
            if val <= 0:
                raise ConfigurationError(name, val, "must be positive")
        if self.alpha < 0:
            raise ConfigurationError("alpha", self.alpha, "must be non-negative")
        if self.min_start < 0:
            raise ConfigurationError("min_start", self.min_start, "must be non-negative")
        if self.avg_start < self.min_start:
            raise ConfigurationError(
                "avg_start", self.avg_start, f"must be >= min_start ({self.min_start})"
            )
        if self.inf_init < 0:
            raise ConfigurationError("inf_init", self.inf_init, "must be non-negative")
        if not 0.0 <= self.report_rate <= 1.0:
            raise ConfigurationError("report_rate", self.report_rate, "must be in [0, 1]")
        if self.lag_scale < 0:
            raise ConfigurationError("lag_scale", self.lag_scale, "must be non-negative")


@dataclass
class PopulationConfig:
    """Parameters of the minimal synthetic population sampler."""
    n_catchments: int = 16
    schools_shape: float = 4.313  # Gamma shape for schools per catchment
    schools_rate: float = 3.027  # Gamma rate for schools per catchment
    enrolment_shape: float = 5.274  # Gamma shape for school enrolment
    enrolment_rate: float = 0.014  # Gamma rate for school enrolment
    adults_per_household: float = 1.77  # Mean adults in a household with children
    children_per_household: float = 1.84  # Mean school children per household
    prop_no_children: float = 0.43  # Share of households without school children

    def __post_init__(self):
        if self.n_catchments <= 0:
            raise ConfigurationError("n_catchments", self.n_catchments, "must be positive")
        for name in ("schools_shape", "schools_rate", "enrolment_shape",
                     "enrolment_rate"):
            val = getattr(self, name)
            if val <= 0:
                raise ConfigurationError(name, val, "must be positive")
        # households with children have at least one adult and one child
        for name in ("adults_per_household", "children_per_household"):
            val = getattr(self, name)
            if val < 1:
                raise ConfigurationError(name, val, "must be >= 1")
        if not 0.0 <= self.prop_no_children < 1.0:
            raise ConfigurationError(
                "prop_no_children", self.prop_no_children, "must be in [0, 1)"
            )


@dataclass
class CompileConfig:
    """Configuration of the absenteeism signal and ground truth."""
    p_absent_ill: float = 0.95  # Absence probability while infectious
    p_absent_well: float = 0.05  # Background absence probability
    # Trailing days an infection keeps a student home; None = inf_period
    absence_window: int | None = None
    activity_threshold: int = 1  # Cumulative cases marking epidemic onset
    lead_days: int = 14  # Optimal alarm precedes onset by this many days
    reference_date: date = field(default_factory=lambda: date(2000, 9, 1))
    year_length: float = 365.25

    def __post_init__(self):
        for name in ("p_absent_ill", "p_absent_well"):
            val = getattr(self, name)
            if not 0.0 <= val <= 1.0:
                raise ConfigurationError(name, val, "must be in [0, 1]")
        if self.absence_window is not None and self.absence_window <= 0:
            raise ConfigurationError(
                "absence_window", self.absence_window, "must be positive"
            )
        if self.activity_threshold <= 0:
            raise ConfigurationError(
                "activity_threshold", self.activity_threshold, "must be positive"
            )
        if self.lead_days < 0:
            raise ConfigurationError("lead_days", self.lead_days, "must be non-negative")
        if self.year_length <= 0:
            raise ConfigurationError("year_length", self.year_length, "must be positive")


@dataclass(frozen=True)
class TimeQualityCurve:
    """Penalty shape for alert time quality.

    The quality of an alarm raised ``d`` days from the optimal day is
    ``1 - min(1, (|d| / scale) ** power)``.  ``scale`` is ``early_scale``
    for alarms before the optimum.  For later alarms it is ``late_scale``
    when given, otherwise the length of the true alarm window, so quality
    stays positive up to the last window day and is 0 after it.
    """
    early_scale: float = 14.0
    late_scale: float | None = None
    power: float = 4.0

    def __post_init__(self):
        for name in ("early_scale", "power"):
            val = getattr(self, name)
            if val <= 0:
                raise ConfigurationError(name, val, "must be positive")
        if self.late_scale is not None and self.late_scale <= 0:
            raise ConfigurationError("late_scale", self.late_scale, "must be positive")


@dataclass
class EvaluationConfig:
    """Configuration for the alarm grid search."""
    quality_curve: TimeQualityCurve = field(default_factory=TimeQualityCurve)
    max_iter: int = 1000  # Solver iteration cap before a fit counts as failed
    C: float = 1e4  # Inverse L2 strength; large = close to unpenalised
    max_workers: int = 4

    def __post_init__(self):
        if self.max_iter <= 0:
            raise ConfigurationError("max_iter", self.max_iter, "must be positive")
        if self.C <= 0:
            raise ConfigurationError("C", self.C, "must be positive")
        if self.max_workers <= 0:
            raise ConfigurationError("max_workers", self.max_workers, "must be positive")


@dataclass
class ATQConfig:
    """Master configuration for the entire system."""
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    population: PopulationConfig = field(default_factory=PopulationConfig)
    compile: CompileConfig = field(default_factory=CompileConfig)
    evaluation: EvaluationConfig = field(default_factory=EvaluationConfig)
    max_lag: int = 15
    thresholds: tuple[float, ...] = (
        0.1, 0.15, 0.2, 0.25, 0.3, 0.35, 0.4, 0.45, 0.5, 0.55, 0.6,
    )
    random_seed: int = 42
    verbose: bool = True

    def __post_init__(self):
        if self.max_lag < 0:
            raise ConfigurationError("max_lag", self.max_lag, "must be non-negative")
        if len(self.thresholds) == 0:
            raise ConfigurationError("thresholds", self.thresholds, "must not be empty")
