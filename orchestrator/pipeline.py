"""Orchestrator pipeline for the ATQ surveillance engine.

Executes the full analysis flow: Simulate -> Population -> Compile -> Evaluate.
Each step is timed, logged, and wrapped in error handling so that a
failure is reported on its step instead of crashing the caller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np

from atq.absenteeism import compile_absenteeism
from atq.alarms import evaluate_alarms
from atq.config import ATQConfig
from atq.epidemic import simulate
from atq.population import PopulationTable, sample_population
from atq.types import CompiledDataset, EpidemicDataset, EvaluationResult

logger = logging.getLogger(__name__)


# ===================================================================
# Seeding
# ===================================================================


def step_generators(seed: int | None) -> tuple[np.random.Generator, ...]:
    """Independent generators for the simulate, population and compile steps."""
    seeds = np.random.SeedSequence(seed).spawn(3)
    return tuple(np.random.default_rng(s) for s in seeds)


# ===================================================================
# Result data classes
# ===================================================================


@dataclass
class StepResult:
    """Result from a single pipeline step."""

    step_name: str
    status: str  # "success", "failed", "skipped"
    output: Any
    duration_seconds: float
    error: str | None = None


@dataclass
class PipelineResult:
    """Complete pipeline execution result."""

    epidemic: EpidemicDataset | None = None
    population: PopulationTable | None = None
    compiled: CompiledDataset | None = None
    evaluation: EvaluationResult | None = None
    step_results: list[StepResult] = field(default_factory=list)
    total_duration: float = 0.0

    @property
    def is_success(self) -> bool:
        """True when no step has failed."""
        return all(s.status != "failed" for s in self.step_results)

    def step(self, name: str) -> StepResult | None:
        for s in self.step_results:
            if s.step_name == name:
                return s
        return None


# ===================================================================
# Pipeline
# ===================================================================


class Pipeline:
    """Main orchestration pipeline.

    Flow
    ----
    1. **simulate** -- draw the multi-season epidemic.
    2. **population** -- sample a population of matching size (skipped
       when one is supplied).
    3. **compile** -- build the absenteeism signal and alarm windows.
    4. **evaluate** -- grid-search alarms and select the best models.

    A single seed in ``config.random_seed`` drives every step through
    independent child generators, so runs are reproducible.
    """

    STEPS = ("simulate", "population", "compile", "evaluate")

    def __init__(self, config: ATQConfig | None = None) -> None:
        self.config = config or ATQConfig()
        self._hooks: dict[str, list[Callable]] = {}

    # ---------------------------------------------------------------
    # Registration helpers
    # ---------------------------------------------------------------

    def add_hook(self, step: str, hook: Callable, when: str = "post") -> None:
        """Add a pre- or post-hook to a named pipeline step.

        Parameters
        ----------
        step : str
            One of ``Pipeline.STEPS``.
        hook : callable
            Will be called with the ``StepResult`` (post) or the step
            name string (pre).
        when : str
            ``"pre"`` or ``"post"``.
        """
        if step not in self.STEPS:
            raise ValueError(f"Unknown step {step!r}; choose from {self.STEPS}")
        if when not in ("pre", "post"):
            raise ValueError(f"when must be 'pre' or 'post', got {when!r}")
        key = f"{when}_{step}"
        self._hooks.setdefault(key, []).append(hook)

    # ---------------------------------------------------------------
    # Public run API
    # ---------------------------------------------------------------

    def run(
        self,
        population: PopulationTable | None = None,
        year_weights: dict[int, float] | None = None,
    ) -> PipelineResult:
        """Execute the full pipeline.

        Parameters
        ----------
        population : PopulationTable, optional
            Population to compile against.  When omitted a synthetic one
            of size ``config.simulation.N`` is sampled.
        year_weights : dict, optional
            Per-season weights for WFATQ / WAATQ.

        Returns
        -------
        PipelineResult
        """
        t0 = time.monotonic()
        result = PipelineResult()
        sim_rng, pop_rng, compile_rng = step_generators(self.config.random_seed)

        # --- Step 1: Simulate ----------------------------------------------
        step = self.run_step("simulate", simulate, self.config.simulation, sim_rng)
        result.step_results.append(step)
        if step.status == "failed":
            result.total_duration = time.monotonic() - t0
            return result
        result.epidemic = step.output

        # --- Step 2: Population --------------------------------------------
        if population is None:
            step = self.run_step(
                "population",
                sample_population,
                self.config.simulation.N,
                self.config.population,
                pop_rng,
            )
            result.step_results.append(step)
            if step.status == "failed":
                result.total_duration = time.monotonic() - t0
                return result
            result.population = step.output
        else:
            result.step_results.append(
                StepResult(
                    step_name="population",
                    status="skipped",
                    output=None,
                    duration_seconds=0.0,
                )
            )
            result.population = population

        # --- Step 3: Compile -----------------------------------------------
        step = self.run_step(
            "compile",
            compile_absenteeism,
            result.epidemic,
            result.population,
            self.config.compile,
            compile_rng,
        )
        result.step_results.append(step)
        if step.status == "failed":
            result.total_duration = time.monotonic() - t0
            return result
        result.compiled = step.output

        # --- Step 4: Evaluate ----------------------------------------------
        step = self.run_step(
            "evaluate",
            evaluate_alarms,
            result.compiled,
            self.config.max_lag,
            self.config.thresholds,
            year_weights,
            self.config.evaluation,
        )
        result.step_results.append(step)
        if step.status == "success":
            result.evaluation = step.output

        result.total_duration = time.monotonic() - t0
        return result

    # ---------------------------------------------------------------
    # Step runner with timing, hooks, and error handling
    # ---------------------------------------------------------------

    def run_step(
        self, step_name: str, fn: Callable, *args: Any, **kwargs: Any
    ) -> StepResult:
        """Run a single step with timing, hooks, and error handling.

        Parameters
        ----------
        step_name : str
            Human-readable name for the step.
        fn : callable
            The function to execute.
        *args, **kwargs
            Forwarded to *fn*.

        Returns
        -------
        StepResult
        """
        for hook in self._hooks.get(f"pre_{step_name}", []):
            try:
                hook(step_name)
            except Exception:
                logger.warning("Pre-hook for %s failed", step_name, exc_info=True)

        t0 = time.monotonic()
        try:
            output = fn(*args, **kwargs)
            duration = time.monotonic() - t0
            step_result = StepResult(
                step_name=step_name,
                status="success",
                output=output,
                duration_seconds=duration,
            )
            logger.log(
                logging.INFO if self.config.verbose else logging.DEBUG,
                "Step '%s' completed in %.4f s",
                step_name,
                duration,
            )
        except Exception as exc:
            duration = time.monotonic() - t0
            step_result = StepResult(
                step_name=step_name,
                status="failed",
                output=None,
                duration_seconds=duration,
                error=f"{type(exc).__name__}: {exc}",
            )
            logger.error(
                "Step '%s' failed after %.4f s: %s",
                step_name,
                duration,
                exc,
                exc_info=True,
            )

        for hook in self._hooks.get(f"post_{step_name}", []):
            try:
                hook(step_result)
            except Exception:
                logger.warning("Post-hook for %s failed", step_name, exc_info=True)

        return step_result
