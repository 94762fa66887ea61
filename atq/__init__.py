"""ATQ surveillance engine - epidemic simulation and alarm evaluation."""

from atq.types import (
    EpidemicRun,
    EpidemicDataset,
    TrueAlarmWindow,
    CompiledDataset,
    CellMetrics,
    MetricGrid,
    EvaluationResult,
    METRIC_NAMES,
)
from atq.errors import (
    ATQError,
    ConfigurationError,
    DataMismatch,
    FitFailure,
    InsufficientData,
)
from atq.epidemic import simulate, simulate_epidemics
from atq.population import PopulationTable, sample_population
from atq.absenteeism import compile_absenteeism
from atq.alarms import evaluate_alarms
