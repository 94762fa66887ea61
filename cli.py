"""ATQ surveillance CLI.

Command-line interface for simulating seasonal epidemics, compiling the
school absenteeism signal and evaluating absenteeism-based alarms with
the Alert Time Quality metrics.

Usage:
    python cli.py simulate [--n 10000] [--years 10] [--seed 42]
    python cli.py compile [--n 10000] [--years 10] [--seed 42]
    python cli.py evaluate [--max-lag 15] [--thresholds 0.1 0.2 0.3] [--seed 42]
"""

from __future__ import annotations

import argparse
import logging
import sys
import textwrap
import traceback
from typing import Any

import numpy as np
import pandas as pd

from atq.config import (
    ATQConfig,
    EvaluationConfig,
    SimulationConfig,
    TimeQualityCurve,
)
from atq.types import METRIC_NAMES


# ===================================================================
# Text formatting utilities (stdlib only -- no tabulate/rich)
# ===================================================================

def _header(title: str, width: int = 78) -> str:
    """Return a formatted section header."""
    lines = [
        "",
        "=" * width,
        f"  {title}",
        "=" * width,
    ]
    return "\n".join(lines)


def _subheader(title: str, width: int = 78) -> str:
    """Return a formatted sub-section header."""
    return f"\n--- {title} {'-' * max(0, width - len(title) - 5)}"


def _table(headers: list[str], rows: list[list[str]],
           col_widths: list[int] | None = None, indent: int = 2) -> str:
    """Build a simple text table.

    Parameters
    ----------
    headers : column header strings.
    rows : list of row lists (each element is a string).
    col_widths : explicit per-column widths; auto-computed when *None*.
    indent : number of leading spaces.

    Returns
    -------
    Formatted table as a single string.
    """
    if not rows:
        return "  (no data)"

    if col_widths is None:
        col_widths = [
            max(len(str(h)), *(len(str(row[i])) for row in rows if i < len(row))) + 2
            for i, h in enumerate(headers)
        ]

    prefix = " " * indent
    lines = [
        prefix + "".join(str(h).ljust(w) for h, w in zip(headers, col_widths)),
        prefix + "-" * sum(col_widths),
    ]
    for row in rows:
        lines.append(prefix + "".join(str(c).ljust(w) for c, w in zip(row, col_widths)))
    return "\n".join(lines)


def _kv(key: str, value: Any, indent: int = 4) -> str:
    """Format a key-value pair."""
    return f"{' ' * indent}{key:30s}: {value}"


def _ff(v: float | None, decimals: int = 4) -> str:
    """Format a float; missing values print as NA."""
    if v is None or not np.isfinite(v):
        return "NA"
    return f"{v:.{decimals}f}"


# ===================================================================
# Config from arguments
# ===================================================================

def _config_from_args(args: argparse.Namespace) -> ATQConfig:
    simulation = SimulationConfig(
        N=args.n,
        T=args.days,
        alpha=args.alpha,
        avg_start=args.avg_start,
        min_start=args.min_start,
        inf_period=args.inf_period,
        inf_init=args.inf_init,
        report_rate=args.report_rate,
        lag_scale=args.lag_scale,
        num_years=args.years,
    )
    kwargs: dict[str, Any] = dict(
        simulation=simulation, random_seed=args.seed, verbose=args.verbose,
    )
    if getattr(args, "max_lag", None) is not None:
        kwargs["max_lag"] = args.max_lag
    if getattr(args, "thresholds", None):
        kwargs["thresholds"] = tuple(args.thresholds)
    if getattr(args, "early_scale", None) is not None:
        kwargs["evaluation"] = EvaluationConfig(
            quality_curve=TimeQualityCurve(
                early_scale=args.early_scale,
                late_scale=args.late_scale,
                power=args.power,
            ),
            max_workers=args.workers,
        )
    return ATQConfig(**kwargs)


# ===================================================================
# Commands
# ===================================================================

def cmd_simulate(args: argparse.Namespace) -> int:
    """Simulate seasons and print their summary."""
    from atq.epidemic import simulate
    from orchestrator.pipeline import step_generators

    config = _config_from_args(args)
    sim_rng, _, _ = step_generators(config.random_seed)
    epidemic = simulate(config.simulation, rng=sim_rng)

    print(_header("Epidemic Simulation"))
    print(_kv("Population size", config.simulation.N))
    print(_kv("Days per season", config.simulation.T))
    print(_kv("Seasons", config.simulation.num_years))
    print(_kv("Transmission rate", config.simulation.alpha))

    print(_subheader("Seasons"))
    summary = epidemic.summary()
    rows = [
        [
            str(r.year), str(r.start_day), str(r.total_infected),
            str(r.total_reported),
            "-" if pd.isna(r.peak_day) else str(int(r.peak_day)),
            _ff(r.attack_rate, 3),
        ]
        for r in summary.itertuples()
    ]
    print(_table(
        ["Year", "Start", "Infected", "Reported", "Peak day", "Attack rate"], rows,
    ))
    return 0


def cmd_compile(args: argparse.Namespace) -> int:
    """Simulate, sample a population and compile the absenteeism signal."""
    from atq.absenteeism import compile_absenteeism
    from atq.epidemic import simulate
    from atq.population import sample_population
    from orchestrator.pipeline import step_generators

    config = _config_from_args(args)
    sim_rng, pop_rng, compile_rng = step_generators(config.random_seed)
    epidemic = simulate(config.simulation, rng=sim_rng)
    population = sample_population(config.simulation.N, config.population, pop_rng)
    compiled = compile_absenteeism(epidemic, population, config.compile, compile_rng)

    print(_header("Compiled Absenteeism"))
    print(_kv("Individuals", population.size))
    print(_kv("Enrolled students", population.n_enrolled))
    print(_kv("Catchments", len(population.catchments)))
    print(_kv("Rows", len(compiled.frame)))

    print(_subheader("True alarm windows"))
    rows = []
    frame = compiled.frame
    for year in compiled.years:
        window = compiled.windows[year]
        absent = frame.loc[frame["year"] == year, "absenteeism_proportion"]
        if window is None:
            rows.append([str(year), "-", "-", "-", _ff(absent.mean(), 4)])
        else:
            rows.append([
                str(year), str(window.reference_day), str(window.start),
                str(window.end), _ff(absent.mean(), 4),
            ])
    print(_table(["Year", "Reference", "Start", "End", "Mean absent"], rows))
    return 0


def cmd_evaluate(args: argparse.Namespace) -> int:
    """Run the full pipeline and print the best model per metric."""
    from orchestrator.pipeline import Pipeline

    config = _config_from_args(args)
    result = Pipeline(config).run()

    print(_header("Alarm Evaluation"))
    print(_subheader("Pipeline steps"))
    print(_table(
        ["Step", "Status", "Duration (s)"],
        [[s.step_name, s.status, _ff(s.duration_seconds, 3)] for s in result.step_results],
    ))
    failed = [s for s in result.step_results if s.status == "failed"]
    if failed:
        for s in failed:
            print(f"\n  {s.step_name} failed: {s.error}", file=sys.stderr)
        return 1

    evaluation = result.evaluation
    grid = evaluation.grid
    print(_kv("Grid cells", len(grid)))
    print(_kv("Failed fits", sum(1 for c in grid if c.fit_failed)))

    print(_subheader("Best model per metric"))
    rows = []
    for name in METRIC_NAMES:
        key = evaluation.best_models[name]
        if key is None:
            rows.append([name, "-", "-", "NA"])
        else:
            rows.append([name, str(key[0]), _ff(key[1], 2), _ff(grid[key].metric(name))])
    print(_table(["Metric", "Lag", "Threshold", "Value"], rows, [10, 8, 12, 12]))

    if args.show_grid:
        print(_subheader("Metric grid"))
        rows = [
            [str(c.lag), _ff(c.threshold, 2)] + [_ff(c.metric(m), 3) for m in METRIC_NAMES]
            for c in grid
        ]
        print(_table(["Lag", "Thr", *METRIC_NAMES], rows))
    return 0


# ===================================================================
# Argument parser
# ===================================================================

def _add_simulation_args(p: argparse.ArgumentParser) -> None:
    defaults = SimulationConfig()
    p.add_argument("--n", type=int, default=defaults.N,
                   help=f"Population size (default: {defaults.N})")
    p.add_argument("--days", type=int, default=defaults.T,
                   help=f"Days per season (default: {defaults.T})")
    p.add_argument("--alpha", type=float, default=defaults.alpha,
                   help=f"Transmission rate (default: {defaults.alpha})")
    p.add_argument("--avg-start", type=float, default=defaults.avg_start,
                   help=f"Mean start day (default: {defaults.avg_start})")
    p.add_argument("--min-start", type=int, default=defaults.min_start,
                   help=f"Earliest start day (default: {defaults.min_start})")
    p.add_argument("--inf-period", type=int, default=defaults.inf_period,
                   help=f"Infectious period in days (default: {defaults.inf_period})")
    p.add_argument("--inf-init", type=int, default=defaults.inf_init,
                   help=f"Initial infectious count (default: {defaults.inf_init})")
    p.add_argument("--report-rate", type=float, default=defaults.report_rate,
                   help=f"Case reporting probability (default: {defaults.report_rate})")
    p.add_argument("--lag-scale", type=float, default=defaults.lag_scale,
                   help=f"Mean reporting delay (default: {defaults.lag_scale})")
    p.add_argument("--years", type=int, default=defaults.num_years,
                   help=f"Number of seasons (default: {defaults.num_years})")
    p.add_argument("--seed", type=int, default=42,
                   help="Random seed for reproducibility (default: 42)")


def build_parser() -> argparse.ArgumentParser:
    """Construct the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="atq",
        description=(
            "ATQ surveillance CLI -- evaluate school absenteeism as an "
            "early warning signal for seasonal epidemics"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              python cli.py simulate --n 5000 --years 5
              python cli.py compile --n 5000 --years 5 --seed 7
              python cli.py evaluate --max-lag 10 --thresholds 0.2 0.4 0.6
        """),
    )
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable INFO logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # ---- simulate ----
    p_sim = subparsers.add_parser(
        "simulate",
        help="Simulate seasonal epidemics",
        description="Run the stochastic SIR generator and summarise each season.",
    )
    _add_simulation_args(p_sim)

    # ---- compile ----
    p_compile = subparsers.add_parser(
        "compile",
        help="Compile the absenteeism signal",
        description="Simulate seasons, sample a population and compile the "
                    "daily absenteeism signal with its true alarm windows.",
    )
    _add_simulation_args(p_compile)

    # ---- evaluate ----
    p_eval = subparsers.add_parser(
        "evaluate",
        help="Evaluate alarms over a lag x threshold grid",
        description="Run the full pipeline (Simulate -> Population -> "
                    "Compile -> Evaluate) and report the best model per metric.",
    )
    _add_simulation_args(p_eval)
    p_eval.add_argument(
        "--max-lag", type=int, default=15,
        help="Largest absenteeism lag (default: 15)",
    )
    p_eval.add_argument(
        "--thresholds", type=float, nargs="+",
        help="Alarm probability thresholds (default: 0.1 to 0.6 by 0.05)",
    )
    p_eval.add_argument(
        "--early-scale", type=float, default=14.0,
        help="Days until an early alarm has zero quality (default: 14)",
    )
    p_eval.add_argument(
        "--late-scale", type=float, default=None,
        help="Days until a late alarm has zero quality (default: window length)",
    )
    p_eval.add_argument(
        "--power", type=float, default=4.0,
        help="Exponent of the time quality penalty (default: 4)",
    )
    p_eval.add_argument(
        "--workers", type=int, default=4,
        help="Parallel fits (default: 4)",
    )
    p_eval.add_argument(
        "--show-grid", action="store_true",
        help="Print every grid cell",
    )

    return parser


# ===================================================================
# Main entry point
# ===================================================================

_COMMAND_MAP = {
    "simulate": cmd_simulate,
    "compile": cmd_compile,
    "evaluate": cmd_evaluate,
}


def main(argv: list[str] | None = None) -> int:
    """CLI main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    handler = _COMMAND_MAP.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except Exception as exc:
        print(f"\nError: {exc}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
