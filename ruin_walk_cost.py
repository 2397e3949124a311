# -*- coding: utf-8 -*-
from __future__ import annotations

import math
import os
import sys
import threading
import time
import traceback
import unittest
import uuid
from collections.abc import Generator, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    Final,
    TypeAlias,
    Tuple,
)

try:
    import numpy as np
    import numpy.typing as npt
    import matplotlib.figure
    import matplotlib.pyplot as plt
    import scipy.stats as stats
except ImportError as import_error:
    print(
        f"Error: Missing dependencies -> {import_error}. "
        "Please run: pip install numpy matplotlib scipy"
    )
    sys.exit(1)


Cost: TypeAlias = float
NDArrayF64: TypeAlias = npt.NDArray[np.float64]
CostsLike: TypeAlias = Sequence[float] | NDArrayF64
ProgressCallback: TypeAlias = Callable[[float], None]

SYMMETRY_TOLERANCE: Final[float] = 1e-5
DEFAULT_OUTPUT_DIR: Final[Path] = Path("./simulation_outputs").resolve()
KILO: Final[int] = 1000
DEFAULT_MAX_WORKERS: Final[int] = min(8, os.cpu_count() or 1)
DEFAULT_SEED_FUNC: Callable[[], int] = lambda: int(
    time.time() * 1_000_000
) % (2**32)

_DEFAULT_RNG: Final[np.random.Generator] = np.random.default_rng()


class SimulationError(Exception):
    pass


class VisualizationError(Exception):
    pass


class ConfigError(ValueError):
    pass


class ValidationError(ConfigError):
    def __init__(self, parameter: str, message: str) -> None:
        super().__init__(message)
        self.parameter = parameter


def _create_unique_filename(prefix: str, suffix: str) -> str:
    timestamp = time.strftime("%Y%m%d_%H%M%S")
    unique_id = uuid.uuid4().hex[:6]
    return f"{prefix}_{timestamp}_{unique_id}.{suffix}"


def _ensure_output_dir(file_path: Path) -> Path | None:
    try:
        resolved_path = file_path.resolve()
        output_dir = resolved_path.parent
        output_dir.mkdir(parents=True, exist_ok=True)
        return resolved_path
    except OSError as e:
        print(
            f"Warning: Directory access error for {file_path.parent}: {e}",
            file=sys.stderr,
        )
        return None


def _is_integer(value: Any) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(
        value, bool
    )


def _is_real(value: Any) -> bool:
    return (
        isinstance(value, (int, float, np.integer, np.floating))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _validate_positive_ints(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not _is_integer(value) or value <= 0:
            raise ConfigError(
                f"Configuration error: '{name}' must be a positive integer, got {value}."
            )


def _validate_non_negative_ints(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not _is_integer(value) or value < 0:
            raise ConfigError(
                f"Configuration error: '{name}' must be a non-negative integer, got {value}."
            )


def _validate_floats_exclusive_0_1(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not isinstance(value, float) or not (0.0 < value < 1.0):
            raise ConfigError(
                f"Configuration error: '{name}' must be a float strictly between 0.0 and 1.0, got {value}."
            )


def _validate_alpha_floats(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not isinstance(value, float) or not (0.0 < value <= 1.0):
            raise ConfigError(
                f"Configuration error: '{name}' must be a float between 0.0 (exclusive) and 1.0 (inclusive), got {value}."
            )


@dataclass(frozen=True)
class SimulationConfig:
    MIN_MAX_STATE: int = 2
    MAX_MAX_STATE: int = 100
    MIN_TRIALS: int = 1 * KILO
    MAX_TRIALS: int = 100 * KILO
    BATCH_SIZE: int = 1 * KILO
    NUM_BINS: int = 20
    SYMMETRY_TOLERANCE: float = SYMMETRY_TOLERANCE
    CONFIDENCE_LEVEL: float = 0.95
    MAX_WORKERS: int = 1
    SEED: int | None = field(default_factory=DEFAULT_SEED_FUNC)

    def __post_init__(self) -> None:
        _validate_positive_ints(
            ("MIN_MAX_STATE", self.MIN_MAX_STATE),
            ("MAX_MAX_STATE", self.MAX_MAX_STATE),
            ("MIN_TRIALS", self.MIN_TRIALS),
            ("MAX_TRIALS", self.MAX_TRIALS),
            ("BATCH_SIZE", self.BATCH_SIZE),
            ("NUM_BINS", self.NUM_BINS),
            ("MAX_WORKERS", self.MAX_WORKERS),
        )
        _validate_floats_exclusive_0_1(
            ("SYMMETRY_TOLERANCE", self.SYMMETRY_TOLERANCE),
            ("CONFIDENCE_LEVEL", self.CONFIDENCE_LEVEL),
        )
        if self.SEED is not None:
            _validate_non_negative_ints(("SEED", self.SEED))

        if self.MIN_MAX_STATE < 2:
            raise ConfigError(
                "MIN_MAX_STATE must be at least 2 so that one transient state exists."
            )
        if self.MIN_MAX_STATE > self.MAX_MAX_STATE:
            raise ConfigError(
                "MIN_MAX_STATE cannot be greater than MAX_MAX_STATE."
            )
        if self.MIN_TRIALS > self.MAX_TRIALS:
            raise ConfigError("MIN_TRIALS cannot be greater than MAX_TRIALS.")


@dataclass(frozen=True)
class VisConfig:
    FIGSIZE: tuple[int, int] = (12, 7)
    DPI: int = 150
    BAR_COLOR: str = "#4bc0c0"
    BAR_EDGE_COLOR: str = "#2a8f8f"
    BAR_ALPHA: float = 0.6
    MARKER_COLOR: str = "red"
    MARKER_LINEWIDTH: float = 2.0
    GRID_ALPHA: float = 0.3
    LABEL_ROTATION: int = 45
    DEFAULT_HISTOGRAM_FILENAME: Final[str] = field(
        default_factory=lambda: _create_unique_filename(
            "cost_histogram", "png"
        )
    )

    def __post_init__(self) -> None:
        _validate_positive_ints(
            ("FIGSIZE width", self.FIGSIZE[0]),
            ("FIGSIZE height", self.FIGSIZE[1]),
            ("DPI", self.DPI),
        )
        _validate_alpha_floats(
            ("BAR_ALPHA", self.BAR_ALPHA),
            ("GRID_ALPHA", self.GRID_ALPHA),
        )
        if (
            not isinstance(self.MARKER_LINEWIDTH, (int, float))
            or self.MARKER_LINEWIDTH <= 0
        ):
            raise ConfigError(
                f"Configuration error: 'MARKER_LINEWIDTH' must be a positive number, got {self.MARKER_LINEWIDTH}."
            )
        if not _is_integer(self.LABEL_ROTATION) or not (
            0 <= self.LABEL_ROTATION <= 90
        ):
            raise ConfigError(
                f"Configuration error: 'LABEL_ROTATION' must be an integer between 0 and 90, got {self.LABEL_ROTATION}."
            )


@dataclass(frozen=True)
class WalkParameters:
    start_state: int
    max_state: int
    p_up: float
    step_cost: float
    num_trials: int


def validate_parameters(
    params: WalkParameters, config: SimulationConfig | None = None
) -> None:
    cfg = config or SimulationConfig(SEED=None)
    n_max = params.max_state
    if not _is_integer(n_max) or not (
        cfg.MIN_MAX_STATE <= n_max <= cfg.MAX_MAX_STATE
    ):
        raise ValidationError(
            "max_state",
            f"Max State (N) must be an integer between {cfg.MIN_MAX_STATE} "
            f"and {cfg.MAX_MAX_STATE}, got {n_max!r}.",
        )
    n0 = params.start_state
    if not _is_integer(n0) or not (1 <= n0 <= n_max - 1):
        raise ValidationError(
            "start_state",
            f"Start State (n0) must be an integer between 1 and {n_max - 1}, got {n0!r}.",
        )
    p = params.p_up
    if not _is_real(p) or not (0.0 < p < 1.0):
        raise ValidationError(
            "p_up",
            f"Prob. Up (p) must be strictly between 0 and 1, got {p!r}.",
        )
    cost = params.step_cost
    if not _is_real(cost) or cost <= 0:
        raise ValidationError(
            "step_cost",
            f"Cost Per Transition (C) must be a positive number, got {cost!r}.",
        )
    trials = params.num_trials
    if not _is_integer(trials) or not (
        cfg.MIN_TRIALS <= trials <= cfg.MAX_TRIALS
    ):
        raise ValidationError(
            "num_trials",
            f"Number of Trials (T) must be an integer between {cfg.MIN_TRIALS:,} "
            f"and {cfg.MAX_TRIALS:,}, got {trials!r}.",
        )


def expected_steps(
    n: int, max_state: int, p_up: float, tolerance: float = SYMMETRY_TOLERANCE
) -> float:
    if abs(p_up - 0.5) < tolerance:
        return float(n * (max_state - n))

    q_down = 1.0 - p_up
    ratio = q_down / p_up
    if ratio > 1.0:
        inv_ratio = p_up / q_down
        hitting_fraction = (
            inv_ratio ** (max_state - n) - inv_ratio**max_state
        ) / (1.0 - inv_ratio**max_state)
    else:
        hitting_fraction = (1.0 - ratio**n) / (1.0 - ratio**max_state)

    return (max_state * hitting_fraction - n) / (p_up - q_down)


def expected_cost(
    n: int,
    max_state: int,
    p_up: float,
    step_cost: float,
    tolerance: float = SYMMETRY_TOLERANCE,
) -> float:
    return step_cost * expected_steps(n, max_state, p_up, tolerance)


def run_trial(
    start_state: int,
    max_state: int,
    p_up: float,
    step_cost: float,
    rng: np.random.Generator | None = None,
) -> Cost:
    uniform = (rng if rng is not None else _DEFAULT_RNG).random
    state = start_state
    num_steps = 0
    while 0 < state < max_state:
        num_steps += 1
        if uniform() < p_up:
            state += 1
        else:
            state -= 1
    return num_steps * step_cost


def run_trials(
    start_state: int,
    max_state: int,
    p_up: float,
    step_cost: float,
    num_trials: int,
    rng: np.random.Generator | None = None,
) -> NDArrayF64:
    if num_trials <= 0:
        return np.array([], dtype=np.float64)

    generator = rng if rng is not None else _DEFAULT_RNG
    states = np.full(num_trials, start_state, dtype=np.int64)
    step_counts = np.zeros(num_trials, dtype=np.int64)
    active = np.flatnonzero((states > 0) & (states < max_state))

    while active.size > 0:
        step_counts[active] += 1
        moves = np.where(generator.random(active.size) < p_up, 1, -1)
        states[active] += moves
        active_states = states[active]
        active = active[(active_states > 0) & (active_states < max_state)]

    return step_counts.astype(np.float64) * step_cost


@dataclass(frozen=True)
class EmpiricalStatistics:
    mean: float
    std_dev: float
    minimum: float
    q1: float
    median: float
    q3: float
    maximum: float

    @classmethod
    def empty(cls) -> EmpiricalStatistics:
        return cls(
            mean=0.0,
            std_dev=0.0,
            minimum=0.0,
            q1=0.0,
            median=0.0,
            q3=0.0,
            maximum=0.0,
        )


def interpolated_quantile(sorted_values: NDArrayF64, q: float) -> float:
    """Linear-interpolation (R-7) quantile of an ascending array; 0.0 if empty."""
    num_values = len(sorted_values)
    if num_values == 0:
        return 0.0
    position = (num_values - 1) * q
    base = math.floor(position)
    fraction = position - base

    if base < 0 or base >= num_values - 1:
        return float(sorted_values[min(max(base, 0), num_values - 1)])

    lower = sorted_values[base]
    return float(lower + fraction * (sorted_values[base + 1] - lower))


def compute_statistics(costs: CostsLike) -> EmpiricalStatistics:
    sorted_costs = np.sort(np.array(costs, dtype=np.float64))
    if sorted_costs.size == 0:
        return EmpiricalStatistics.empty()

    mean = float(np.sum(sorted_costs) / sorted_costs.size)
    variance = float(np.sum((sorted_costs - mean) ** 2) / sorted_costs.size)

    return EmpiricalStatistics(
        mean=mean,
        std_dev=math.sqrt(variance),
        minimum=float(sorted_costs[0]),
        q1=interpolated_quantile(sorted_costs, 0.25),
        median=interpolated_quantile(sorted_costs, 0.5),
        q3=interpolated_quantile(sorted_costs, 0.75),
        maximum=float(sorted_costs[-1]),
    )


@dataclass(frozen=True)
class HistogramData:
    labels: tuple[str, ...]
    counts: tuple[int, ...]
    edges: tuple[float, ...] = ()

    @property
    def num_bins(self) -> int:
        return len(self.counts)

    @property
    def bin_width(self) -> float:
        if len(self.edges) < 2:
            return 0.0
        return self.edges[1] - self.edges[0]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def build_histogram(costs: CostsLike, num_bins: int) -> HistogramData:
    if not _is_integer(num_bins) or num_bins < 1:
        raise ValueError(
            f"Number of histogram bins must be a positive integer, got {num_bins}."
        )

    data = np.asarray(costs, dtype=np.float64)
    if data.size == 0:
        return HistogramData(labels=(), counts=(), edges=())

    min_cost = float(np.min(data))
    max_cost = float(np.max(data))
    cost_range = max_cost - min_cost
    bin_width = cost_range / num_bins if cost_range > 0 else 1.0

    bin_indices = np.floor((data - min_cost) / bin_width).astype(np.intp)
    bin_indices = np.clip(bin_indices, 0, num_bins - 1)
    counts = np.bincount(bin_indices, minlength=num_bins)

    edges = [min_cost + i * bin_width for i in range(num_bins)]
    edges.append(edges[-1] + bin_width)
    labels = tuple(
        f"${_round_half_up(lower)} - ${_round_half_up(lower + bin_width)}"
        for lower in edges[:-1]
    )

    return HistogramData(
        labels=labels,
        counts=tuple(int(c) for c in counts),
        edges=tuple(edges),
    )


@dataclass(frozen=True)
class MeanConsistency:
    standard_error: float
    z_score: float
    p_value: float
    confidence_level: float
    ci_low: float
    ci_high: float

    def contains(self, value: float) -> bool:
        return self.ci_low <= value <= self.ci_high


def check_mean_consistency(
    statistics: EmpiricalStatistics,
    sample_size: int,
    analytic_cost: float,
    confidence_level: float = 0.95,
) -> MeanConsistency:
    if sample_size <= 0:
        return MeanConsistency(0.0, 0.0, 1.0, confidence_level, 0.0, 0.0)

    standard_error = statistics.std_dev / math.sqrt(sample_size)
    deviation = statistics.mean - analytic_cost

    if standard_error > 0:
        z_score = deviation / standard_error
    elif math.isclose(statistics.mean, analytic_cost):
        z_score = 0.0
    else:
        z_score = math.copysign(math.inf, deviation)

    p_value = float(2.0 * stats.norm.sf(abs(z_score)))
    critical_value = float(stats.norm.ppf(0.5 + confidence_level / 2.0))
    half_width = critical_value * standard_error

    return MeanConsistency(
        standard_error=standard_error,
        z_score=z_score,
        p_value=p_value,
        confidence_level=confidence_level,
        ci_low=statistics.mean - half_width,
        ci_high=statistics.mean + half_width,
    )


@dataclass(frozen=True)
class SimulationRun:
    parameters: WalkParameters
    analytic_cost: float
    costs: NDArrayF64 = field(compare=False, repr=False)
    statistics: EmpiricalStatistics
    histogram: HistogramData
    consistency: MeanConsistency
    duration_seconds: float = 0.0

    @property
    def simulated_mean(self) -> float:
        return self.statistics.mean

    @property
    def num_trials(self) -> int:
        return int(self.costs.size)


def _split_batches(total: int, batch_size: int) -> list[int]:
    full_batches, remainder = divmod(total, batch_size)
    sizes = [batch_size] * full_batches
    if remainder:
        sizes.append(remainder)
    return sizes


class SimulationOrchestrator:
    _SE = SimulationError

    def __init__(self, config: SimulationConfig | None = None) -> None:
        self.config = config or SimulationConfig()
        self._seed_sequence = np.random.SeedSequence(self.config.SEED)
        self._run_lock = threading.Lock()
        self._latest_run: SimulationRun | None = None

    @property
    def latest_run(self) -> SimulationRun | None:
        return self._latest_run

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run(
        self,
        params: WalkParameters,
        on_progress: ProgressCallback | None = None,
    ) -> SimulationRun:
        progress_stream = self.iter_progress(params)
        try:
            while True:
                try:
                    fraction = next(progress_stream)
                except StopIteration as finished:
                    return finished.value
                if on_progress is not None:
                    on_progress(fraction)
        except (ConfigError, SimulationError):
            raise
        except Exception as e:
            raise self._SE(
                f"Simulation failed while reporting progress: {type(e).__name__}: {e}"
            ) from e
        finally:
            progress_stream.close()

    def iter_progress(
        self, params: WalkParameters
    ) -> Generator[float, None, SimulationRun]:
        if not self._run_lock.acquire(blocking=False):
            raise self._SE(
                "A simulation run is already in progress on this orchestrator."
            )
        batches: Generator[NDArrayF64, None, None] | None = None
        try:
            validate_parameters(params, self.config)
            start_time = time.monotonic()
            batch_costs: list[NDArrayF64] = []
            trials_complete = 0

            try:
                analytic_cost = expected_cost(
                    params.start_state,
                    params.max_state,
                    params.p_up,
                    params.step_cost,
                    self.config.SYMMETRY_TOLERANCE,
                )
                batch_sizes = _split_batches(
                    params.num_trials, self.config.BATCH_SIZE
                )
                batch_seeds = self._seed_sequence.spawn(len(batch_sizes))
                batches = self._generate_batches(
                    params, batch_sizes, batch_seeds
                )
            except Exception as e:
                raise self._SE(
                    f"Failed to prepare simulation: {type(e).__name__}: {e}"
                ) from e

            for costs in self._guarded(batches):
                batch_costs.append(costs)
                trials_complete += costs.size
                yield trials_complete / params.num_trials

            try:
                all_costs = np.concatenate(batch_costs)
                all_costs.flags.writeable = False
                statistics = compute_statistics(all_costs)
                histogram = build_histogram(all_costs, self.config.NUM_BINS)
                consistency = check_mean_consistency(
                    statistics,
                    all_costs.size,
                    analytic_cost,
                    self.config.CONFIDENCE_LEVEL,
                )
            except Exception as e:
                raise self._SE(
                    f"Failed to summarize simulation results: {type(e).__name__}: {e}"
                ) from e

            run = SimulationRun(
                parameters=params,
                analytic_cost=analytic_cost,
                costs=all_costs,
                statistics=statistics,
                histogram=histogram,
                consistency=consistency,
                duration_seconds=time.monotonic() - start_time,
            )
            self._latest_run = run
            return run
        finally:
            if batches is not None:
                batches.close()
            self._run_lock.release()

    def _guarded(self, batches: Iterator[NDArrayF64]) -> Iterator[NDArrayF64]:
        while True:
            try:
                costs = next(batches)
            except StopIteration:
                return
            except SimulationError:
                raise
            except Exception as e:
                raise self._SE(
                    f"Trial generation failed: {type(e).__name__}: {e}"
                ) from e
            yield costs

    def _generate_batches(
        self,
        params: WalkParameters,
        batch_sizes: list[int],
        batch_seeds: list[np.random.SeedSequence],
    ) -> Generator[NDArrayF64, None, None]:
        def run_batch(
            size: int, seed: np.random.SeedSequence
        ) -> NDArrayF64:
            return run_trials(
                params.start_state,
                params.max_state,
                params.p_up,
                params.step_cost,
                size,
                np.random.default_rng(seed),
            )

        max_workers = min(self.config.MAX_WORKERS, len(batch_sizes))
        if max_workers <= 1:
            for size, seed in zip(batch_sizes, batch_seeds):
                yield run_batch(size, seed)
            return

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(run_batch, size, seed)
                for size, seed in zip(batch_sizes, batch_seeds)
            ]
            try:
                for future in futures:
                    yield future.result()
            finally:
                for future in futures:
                    future.cancel()


def run_simulation(
    params: WalkParameters,
    on_progress: ProgressCallback | None = None,
    config: SimulationConfig | None = None,
) -> SimulationRun:
    return SimulationOrchestrator(config).run(params, on_progress)


def format_currency(value: float) -> str:
    if value < 0:
        return f"-${-value:,.2f}"
    return f"${value:,.2f}"


def format_progress(fraction: float) -> str:
    return f"Simulating... ({fraction * 100:.0f}%)"


def display_results(run: SimulationRun) -> None:
    params = run.parameters
    stats_record = run.statistics
    consistency = run.consistency

    max_table_width = 78
    title = "Absorbing Random Walk Cost Estimates"
    header_separator = "=" * max_table_width
    print(
        f"\n{header_separator}\n{title:^{max_table_width}}\n{header_separator}"
    )
    print(
        f"Start State (n0): {params.start_state}   Max State (N): {params.max_state}   "
        f"Prob. Up (p): {params.p_up:g}   Cost (C): {format_currency(params.step_cost)}   "
        f"Trials (T): {params.num_trials:,}"
    )

    label_width = 36
    value_width = max_table_width - label_width
    table_separator = "-" * max_table_width
    rows = [
        ("Analytic Expected Cost", format_currency(run.analytic_cost)),
        ("Simulated Mean Cost", format_currency(stats_record.mean)),
        ("Standard Deviation", format_currency(stats_record.std_dev)),
        ("Minimum", format_currency(stats_record.minimum)),
        ("Q1 (25th percentile)", format_currency(stats_record.q1)),
        ("Median", format_currency(stats_record.median)),
        ("Q3 (75th percentile)", format_currency(stats_record.q3)),
        ("Maximum", format_currency(stats_record.maximum)),
    ]
    print(table_separator)
    for label, value in rows:
        print(f"{label:<{label_width}}{value:>{value_width}}")
    print(table_separator)

    confidence_pct = consistency.confidence_level * 100
    check_rows = [
        (
            f"{confidence_pct:g}% CI of Mean",
            f"[{format_currency(consistency.ci_low)}, "
            f"{format_currency(consistency.ci_high)}]",
        ),
        (
            "z-score / p-value",
            f"{consistency.z_score:.3f} / {consistency.p_value:.4f}",
        ),
    ]
    for label, value in check_rows:
        print(f"{label:<{label_width}}{value:>{value_width}}")

    verdict = (
        "consistent"
        if consistency.contains(run.analytic_cost)
        else "NOT consistent"
    )
    print(f"(Analytic result is {verdict} with the simulated mean)")
    print(f"(Simulation time: {run.duration_seconds:.2f}s)")
    print(header_separator + "\n")


class HistogramPlotter:
    def __init__(self, config: VisConfig | None = None) -> None:
        self.config = config or VisConfig()
        self._figure: matplotlib.figure.Figure | None = None
        self._run: SimulationRun | None = None

    @property
    def figure(self) -> matplotlib.figure.Figure | None:
        return self._figure

    @property
    def run(self) -> SimulationRun | None:
        return self._run

    def release(self) -> None:
        if self._figure is not None:
            plt.close(self._figure)
        self._figure = None
        self._run = None

    def plot_histogram(
        self,
        run: SimulationRun,
        show_plot: bool = True,
        save_path: Path | None = None,
    ) -> matplotlib.figure.Figure | None:
        self.release()

        histogram = run.histogram
        if histogram.num_bins == 0:
            print("Info: No histogram data provided to plot.")
            return None

        cfg = self.config
        fig: matplotlib.figure.Figure | None = None
        try:
            fig, ax = plt.subplots(figsize=cfg.FIGSIZE)
            lower_edges = np.asarray(histogram.edges[:-1], dtype=np.float64)
            bin_width = histogram.bin_width

            ax.bar(
                lower_edges,
                histogram.counts,
                width=bin_width,
                align="edge",
                color=cfg.BAR_COLOR,
                edgecolor=cfg.BAR_EDGE_COLOR,
                alpha=cfg.BAR_ALPHA,
                label="Frequency (Cost Distribution)",
            )
            ax.axvline(
                run.analytic_cost,
                color=cfg.MARKER_COLOR,
                linewidth=cfg.MARKER_LINEWIDTH,
                label=f"Analytic Mean: {format_currency(run.analytic_cost)}",
            )

            ax.set_xticks(lower_edges + bin_width / 2.0)
            ax.set_xticklabels(
                histogram.labels,
                rotation=cfg.LABEL_ROTATION,
                ha="right" if cfg.LABEL_ROTATION else "center",
                fontsize="small",
            )
            ax.set_title(
                f"Cost Distribution over {run.num_trials:,} Trials", fontsize=14
            )
            ax.set_xlabel("Cost Bin")
            ax.set_ylabel("Number of Trials (Frequency)")
            ax.set_ylim(bottom=0)
            ax.grid(True, axis="y", alpha=cfg.GRID_ALPHA, linestyle=":")
            ax.legend(fontsize="small")
            fig.tight_layout()

            self._save_or_show(fig, show_plot, save_path)
        except Exception as e:
            if fig:
                plt.close(fig)
            raise VisualizationError(
                f"Failed to plot cost histogram: {e}"
            ) from e

        self._figure = fig
        self._run = run
        return fig

    def _save_or_show(
        self,
        fig: matplotlib.figure.Figure,
        show_plot: bool,
        save_path: Path | None,
    ) -> None:
        if save_path:
            target_path = _ensure_output_dir(save_path)
            if target_path:
                try:
                    fig.savefig(
                        target_path, dpi=self.config.DPI, bbox_inches="tight"
                    )
                except Exception as e:
                    print(
                        f"Warning: Failed to save plot to {target_path}: {e}",
                        file=sys.stderr,
                    )
            else:
                print(
                    f"Warning: Plot not saved due to directory issue for path: {save_path}",
                    file=sys.stderr,
                )

        if show_plot:
            try:
                plt.show()
            except Exception as e:
                print(
                    f"Warning: Failed to display plot interactively: {e}",
                    file=sys.stderr,
                )


class SimulationRunner:
    def __init__(
        self,
        sim_config: SimulationConfig | None = None,
        vis_config: VisConfig | None = None,
    ) -> None:
        try:
            self.s_cfg = sim_config or SimulationConfig()
            self.v_cfg = vis_config or VisConfig()
        except ConfigError as e:
            raise ConfigError(
                f"Configuration initialization failed: {e}"
            ) from e

        self.orchestrator = SimulationOrchestrator(self.s_cfg)
        self.plotter = HistogramPlotter(self.v_cfg)

    def _run_task(
        self,
        task_name: str,
        task_func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> bool:
        print(f"\n--- Running {task_name} ---")
        start_time = time.monotonic()
        success = False
        try:
            task_func(*args, **kwargs)
            success = True
        except (
            SimulationError,
            VisualizationError,
            ConfigError,
            IOError,
        ) as e:
            print(
                f"ERROR during {task_name}: {type(e).__name__}: {e}",
                file=sys.stderr,
            )
        except Exception as e:
            print(
                f"UNEXPECTED ERROR during {task_name}: {type(e).__name__}: {e}",
                file=sys.stderr,
            )
            traceback.print_exc(file=sys.stderr)
        finally:
            elapsed_time = time.monotonic() - start_time
            status = "OK" if success else "FAILED"
            print(
                f"--- {task_name} {status} (Duration: {elapsed_time:.2f}s) ---"
            )
        return success

    def run_analytic(self, params: WalkParameters) -> bool:
        def task():
            print("Calculating...")
            validate_parameters(params, self.s_cfg)
            analytic_cost = expected_cost(
                params.start_state,
                params.max_state,
                params.p_up,
                params.step_cost,
                self.s_cfg.SYMMETRY_TOLERANCE,
            )
            print(f"Analytic expected cost: {format_currency(analytic_cost)}")

        return self._run_task("Analytic Expected Cost", task)

    def run_cost_simulation(
        self,
        params: WalkParameters,
        show_plots: bool = True,
        save_plots: bool = True,
    ) -> bool:
        def report_progress(fraction: float) -> None:
            end = "\n" if fraction >= 1.0 else ""
            print(f"\r{format_progress(fraction)}", end=end, flush=True)

        def task(show: bool, save: bool):
            print(
                f"Simulating {params.num_trials:,} absorbing random walks "
                f"(n0={params.start_state}, N={params.max_state}, p={params.p_up:g})..."
            )
            run = self.orchestrator.run(params, on_progress=report_progress)
            display_results(run)

            if not (show or save):
                self.plotter.release()
                return

            histogram_path = (
                DEFAULT_OUTPUT_DIR / self.v_cfg.DEFAULT_HISTOGRAM_FILENAME
                if save
                else None
            )
            self.plotter.plot_histogram(
                run, show_plot=show, save_path=histogram_path
            )
            if histogram_path and histogram_path.exists():
                print(f"Histogram saved: {histogram_path.resolve()}")
            elif histogram_path:
                print(
                    f"Histogram FAILED to save to: {histogram_path.resolve()}"
                )

        return self._run_task(
            "Random Walk Cost Simulation", task, show_plots, save_plots
        )


DEFAULT_WALK_PARAMETERS: Final[WalkParameters] = WalkParameters(
    start_state=5, max_state=10, p_up=0.5, step_cost=1.0, num_trials=10 * KILO
)

_INT_OPTIONS: Final[dict[str, str]] = {
    "--start": "start_state",
    "--max-state": "max_state",
    "--trials": "num_trials",
}
_FLOAT_OPTIONS: Final[dict[str, str]] = {
    "--prob-up": "p_up",
    "--cost": "step_cost",
}
_CONFIG_OPTIONS: Final[dict[str, str]] = {
    "--bins": "NUM_BINS",
    "--batch-size": "BATCH_SIZE",
    "--workers": "MAX_WORKERS",
    "--seed": "SEED",
}
_FLAG_OPTIONS: Final[frozenset[str]] = frozenset(
    {"--analytic-only", "--no-plot", "--show"}
)


def parse_cli_arguments(
    command_args: list[str],
) -> tuple[WalkParameters, dict[str, int], set[str]]:
    walk_values: dict[str, Any] = {
        "start_state": DEFAULT_WALK_PARAMETERS.start_state,
        "max_state": DEFAULT_WALK_PARAMETERS.max_state,
        "p_up": DEFAULT_WALK_PARAMETERS.p_up,
        "step_cost": DEFAULT_WALK_PARAMETERS.step_cost,
        "num_trials": DEFAULT_WALK_PARAMETERS.num_trials,
    }
    config_values: dict[str, int] = {}
    flags: set[str] = set()

    index = 0
    while index < len(command_args):
        option = command_args[index]
        if option in _FLAG_OPTIONS:
            flags.add(option)
            index += 1
            continue

        known_option = (
            option in _INT_OPTIONS
            or option in _FLOAT_OPTIONS
            or option in _CONFIG_OPTIONS
        )
        if not known_option:
            raise ValueError(f"Unknown option '{option}'.")
        if index + 1 >= len(command_args):
            raise ValueError(f"Missing value after '{option}'.")

        raw_value = command_args[index + 1]
        if option in _FLOAT_OPTIONS:
            name = _FLOAT_OPTIONS[option]
            try:
                walk_values[name] = float(raw_value)
            except ValueError as e:
                raise ValidationError(
                    name, f"Option '{option}' expects a number, got '{raw_value}'."
                ) from e
        else:
            try:
                parsed = int(raw_value)
            except ValueError as e:
                name = _INT_OPTIONS.get(option, _CONFIG_OPTIONS.get(option, option))
                raise ValidationError(
                    name, f"Option '{option}' expects an integer, got '{raw_value}'."
                ) from e
            if option in _INT_OPTIONS:
                walk_values[_INT_OPTIONS[option]] = parsed
            else:
                config_values[_CONFIG_OPTIONS[option]] = parsed
        index += 2

    return WalkParameters(**walk_values), config_values, flags


def main_simulation_runner(command_args: list[str] | None = None) -> int:
    plt.ioff()
    exit_code = 0

    try:
        params, config_values, flags = parse_cli_arguments(
            list(command_args or [])
        )
    except ConfigError as e:
        print(f"\nINVALID PARAMETER: {e}", file=sys.stderr)
        return 2
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        display_help()
        return 4

    try:
        print("Initializing Simulation Runner...")
        runner = SimulationRunner(
            sim_config=SimulationConfig(**config_values)
        )
        validate_parameters(params, runner.s_cfg)

        if "--analytic-only" in flags:
            success = runner.run_analytic(params)
        else:
            plot = "--no-plot" not in flags
            success = runner.run_cost_simulation(
                params,
                show_plots=plot and "--show" in flags,
                save_plots=plot,
            )
        exit_code = 0 if success else 1

    except ConfigError as e:
        print(
            f"\nCRITICAL CONFIGURATION ERROR: {e}\nAborting simulation.",
            file=sys.stderr,
        )
        exit_code = 2
    except Exception as e:
        print(
            f"\nCRITICAL UNHANDLED ERROR: {type(e).__name__}: {e}",
            file=sys.stderr,
        )
        traceback.print_exc(file=sys.stderr)
        exit_code = 3
    finally:
        plt.close("all")

    print(f"\nSimulation run finished. Exiting with code {exit_code}.")
    return exit_code


def run_tests(verbosity_level: int = 2) -> int:
    print("\n--- Running Unit Tests ---")
    loader = unittest.TestLoader()
    loader.sortTestMethodsUsing = None
    suite = loader.discover(
        str(Path(__file__).resolve().parent), pattern="test_ruin_walk_cost.py"
    )
    runner = unittest.TextTestRunner(
        verbosity=verbosity_level, failfast=False, buffer=True
    )
    result = runner.run(suite)

    print("\n--- Unit Tests Complete ---")
    print(f"Total Tests Run: {result.testsRun}")
    print(f"Failures: {len(result.failures)}")
    print(f"Errors: {len(result.errors)}")
    print(f"Skipped: {len(result.skipped)}")

    return 0 if result.wasSuccessful() else 1


def display_help() -> None:
    try:
        script_name = Path(__file__).name
    except NameError:
        script_name = "ruin_walk_cost.py"

    defaults = DEFAULT_WALK_PARAMETERS
    help_text = f"""
Usage: python {script_name} [options]

Absorbing Random Walk Cost Simulator: closed-form vs. Monte Carlo estimates.

Walk parameters:
  --start N0        : Start state n0, 1 <= n0 <= N-1 (default {defaults.start_state}).
  --max-state N     : Absorbing boundary N, 2 <= N <= 100 (default {defaults.max_state}).
  --prob-up P       : Probability of stepping up, 0 < P < 1 (default {defaults.p_up}).
  --cost C          : Cost per transition, C > 0 (default {defaults.step_cost}).
  --trials T        : Number of trials, 1,000 <= T <= 100,000 (default {defaults.num_trials:,}).

Simulation options:
  --bins B          : Number of histogram bins (default 20).
  --batch-size S    : Trials per progress batch (default 1,000).
  --workers W       : Worker threads for trial batches (default 1, max useful {DEFAULT_MAX_WORKERS}).
  --seed SEED       : Seed for reproducible runs (default: clock based).
  --analytic-only   : Only compute the closed-form expected cost.
  --no-plot         : Do not render the cost histogram.
  --show            : Display the histogram interactively.

Other:
  --test [-v N]     : Run the unit test suite. Optional verbosity level N can
                      be 0 (quiet), 1, or 2 (verbose). Default is 2.
  --help, -h        : Display this help message and exit.

Description:
  A particle starts at n0 and moves +1 with probability p or -1 otherwise,
  paying C per step, until it is absorbed at 0 or N. The expected total cost
  is computed in closed form and estimated from simulated trials, together
  with mean, standard deviation, quartiles and a cost histogram.

Default Output Directory:
  Generated files are saved to: {DEFAULT_OUTPUT_DIR.resolve()}
"""
    print(help_text)


if __name__ == "__main__":
    exit_code: int = 0
    command_args = sys.argv[1:]

    if "--test" in command_args:
        test_verbosity = 2
        if "-v" in command_args:
            v_index = command_args.index("-v")
            if v_index + 1 < len(command_args):
                level_str = command_args[v_index + 1]
                if level_str.isdigit() and int(level_str) in [0, 1, 2]:
                    test_verbosity = int(level_str)
                else:
                    print(
                        "Warning: Invalid verbosity level specified after -v. Must be 0, 1, or 2. Using default (2).",
                        file=sys.stderr,
                    )
            else:
                print(
                    "Warning: Missing verbosity level after -v argument. Using default (2).",
                    file=sys.stderr,
                )
        exit_code = run_tests(verbosity_level=test_verbosity)

    elif "--help" in command_args or "-h" in command_args:
        display_help()
        exit_code = 0

    else:
        exit_code = main_simulation_runner(command_args)

    sys.exit(exit_code)
