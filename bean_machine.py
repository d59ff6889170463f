# -*- coding: utf-8 -*-
from __future__ import annotations

import math
import os
import sys
import time
import traceback
import uuid
from collections import deque
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    Final,
    Literal,
    Tuple,
    TypeAlias,
)

try:
    from PIL import Image, ImageDraw
    import numpy as np
    import numpy.typing as npt
    import matplotlib.figure
    import matplotlib.pyplot as plt
    import scipy.stats as stats
except ImportError as import_error:
    print(
        f"Error: Missing dependencies -> {import_error}. "
        "Please run: pip install Pillow numpy matplotlib scipy"
    )
    sys.exit(1)


Column: TypeAlias = int
Frequency: TypeAlias = int
Color: TypeAlias = Tuple[int, int, int]
NDArrayF64: TypeAlias = npt.NDArray[np.float64]
NDArrayInt: TypeAlias = npt.NDArray[np.int_]
BeanMode: TypeAlias = Literal["luck", "skill"]
Direction: TypeAlias = Literal["left", "right"]
HalfSelection: TypeAlias = Literal["lower", "upper"]
RandomSource: TypeAlias = "np.random.Generator | int | None"

NO_BEAN_IN_ROW: Final[Column] = -1
MAX_SLOT_COUNT: Final[int] = 30
VALID_MODES: Final[frozenset[str]] = frozenset({"luck", "skill"})
DEFAULT_OUTPUT_DIR: Final[Path] = Path("./simulation_outputs").resolve()
DEFAULT_MAX_WORKERS: Final[int] = min(8, os.cpu_count() or 1)
DEFAULT_SEED_FUNC: Callable[[], int] = lambda: int(
    time.time() * 1_000_000
) % (2**32)


class SimulationError(Exception):
    pass


class VisualizationError(Exception):
    pass


class ConfigError(ValueError):
    pass


def _create_unique_filename(prefix: str, suffix: str) -> str:
    timestamp = time.strftime("%Y%m%d_%H%M%S")
    unique_id = uuid.uuid4().hex[:6]
    return f"{prefix}_{timestamp}_{unique_id}.{suffix}"


def _ensure_output_dir(file_path: Path) -> Path | None:
    output_dir = file_path.parent
    try:
        resolved_path = file_path.resolve()
        output_dir = resolved_path.parent
        output_dir.mkdir(parents=True, exist_ok=True)
        return resolved_path
    except OSError as e:
        print(
            f"Warning: Directory access error for {output_dir}: {e}",
            file=sys.stderr,
        )
        return None


def _validate_positive_ints(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not isinstance(value, int) or value <= 0:
            raise ConfigError(
                f"Configuration error: '{name}' must be a positive integer, got {value}."
            )


def _validate_non_negative_ints(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not isinstance(value, int) or value < 0:
            raise ConfigError(
                f"Configuration error: '{name}' must be a non-negative integer, got {value}."
            )


def _validate_floats_exclusive_0_1(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not isinstance(value, float) or not (0.0 < value <= 1.0):
            raise ConfigError(
                f"Configuration error: '{name}' must be a float between 0.0 (exclusive) and 1.0 (inclusive), got {value}."
            )


def _validate_slot_count(slot_count: Any) -> None:
    _validate_positive_ints(("slot_count", slot_count))
    if slot_count > MAX_SLOT_COUNT:
        raise ConfigError(
            f"Configuration error: 'slot_count' must not exceed {MAX_SLOT_COUNT}, got {slot_count}."
        )


def _validate_mode(mode: Any) -> None:
    if mode not in VALID_MODES:
        raise ConfigError(
            f"Invalid bean mode '{mode}'. Must be one of {sorted(VALID_MODES)}."
        )


@dataclass(frozen=True)
class BeanMachineConfig:
    SLOT_COUNT: Final[int] = 10
    BEAN_COUNT: Final[int] = 400
    MODE: Final[BeanMode] = "luck"
    SEED: int | None = field(default_factory=DEFAULT_SEED_FUNC)
    IMAGE_WIDTH: Final[int] = 600
    IMAGE_HEIGHT: Final[int] = 400
    BACKGROUND_COLOR: Final[Color] = (40, 40, 80)
    LEFT_COLOR: Final[Color] = (100, 100, 220)
    RIGHT_COLOR: Final[Color] = (100, 220, 100)
    HISTOGRAM_BAR_MIN_WIDTH: Final[int] = 1
    FIGSIZE: tuple[int, int] = (10, 6)
    DPI: int = 120
    BAR_ALPHA: float = 0.7
    GRID_ALPHA: float = 0.3
    DEFAULT_IMAGE_FILENAME: Final[str] = field(
        default_factory=lambda: _create_unique_filename(
            "bean_machine", "png"
        )
    )
    DEFAULT_PLOT_FILENAME: Final[str] = field(
        default_factory=lambda: _create_unique_filename(
            "slot_distribution", "png"
        )
    )

    def __post_init__(self) -> None:
        _validate_positive_ints(
            ("SLOT_COUNT", self.SLOT_COUNT),
            ("IMAGE_WIDTH", self.IMAGE_WIDTH),
            ("IMAGE_HEIGHT", self.IMAGE_HEIGHT),
            ("HISTOGRAM_BAR_MIN_WIDTH", self.HISTOGRAM_BAR_MIN_WIDTH),
            ("FIGSIZE width", self.FIGSIZE[0]),
            ("FIGSIZE height", self.FIGSIZE[1]),
            ("DPI", self.DPI),
        )
        _validate_non_negative_ints(("BEAN_COUNT", self.BEAN_COUNT))
        if self.SEED is not None:
            _validate_non_negative_ints(("SEED", self.SEED))
        _validate_floats_exclusive_0_1(
            ("BAR_ALPHA", self.BAR_ALPHA),
            ("GRID_ALPHA", self.GRID_ALPHA),
        )
        if self.SLOT_COUNT > MAX_SLOT_COUNT:
            raise ConfigError(
                f"Configuration error: 'SLOT_COUNT' must not exceed {MAX_SLOT_COUNT}, got {self.SLOT_COUNT}."
            )
        _validate_mode(self.MODE)


class Bean:
    """A single falling bean.

    Luck beans flip a fair coin from their own generator at every row.
    Skill beans carry a skill level fixed at creation and move right on
    their first ``skill_level`` decisions, then left, so a bean of skill
    ``b`` always lands in slot ``b``.
    """

    def __init__(
        self, slot_count: int, mode: BeanMode, rng: np.random.Generator
    ) -> None:
        _validate_slot_count(slot_count)
        _validate_mode(mode)
        self._slot_count: Final[int] = slot_count
        self._mode: Final[BeanMode] = mode
        self._rng = rng
        self._skill_level: Final[int] = (
            self._draw_skill_level(slot_count, rng) if mode == "skill" else 0
        )
        self._step_counter = 0

    @staticmethod
    def _draw_skill_level(slot_count: int, rng: np.random.Generator) -> int:
        # Normal approximation of Binomial(slot_count - 1, 0.5), clipped
        # onto the legal slot range.
        mean = (slot_count - 1) * 0.5
        std_dev = math.sqrt(slot_count * 0.5 * (1 - 0.5))
        level = round(rng.normal(mean, std_dev))
        return int(np.clip(level, 0, slot_count - 1))

    @property
    def slot_count(self) -> int:
        return self._slot_count

    @property
    def mode(self) -> BeanMode:
        return self._mode

    @property
    def is_luck(self) -> bool:
        return self._mode == "luck"

    @property
    def skill_level(self) -> int:
        return self._skill_level

    @property
    def step_counter(self) -> int:
        return self._step_counter

    def decide(self) -> Direction:
        step = self._step_counter
        self._step_counter += 1
        if self._mode == "luck":
            return "right" if self._rng.integers(0, 2) == 1 else "left"
        return "right" if step < self._skill_level else "left"

    def reset(self) -> None:
        self._step_counter = 0

    def __repr__(self) -> str:
        if self._mode == "luck":
            return f"Bean(mode='luck', slot_count={self._slot_count})"
        return (
            f"Bean(mode='skill', slot_count={self._slot_count}, "
            f"skill_level={self._skill_level})"
        )


def create_bean(
    slot_count: int, mode: BeanMode, random_source: RandomSource = None
) -> Bean:
    return Bean(slot_count, mode, np.random.default_rng(random_source))


class BeanCounterLogic:
    """Run state of a bean machine with ``num_slots`` rows and slots.

    At most one bean is in flight. Its position lives in a row-indexed
    table holding the bean's column, or ``NO_BEAN_IN_ROW`` for every row
    it does not occupy. For every observable state::

        remaining_count() + in_flight_count() + sum(slot_counts())
            == total_bean_count
    """

    def __init__(self, slot_count: int) -> None:
        _validate_slot_count(slot_count)
        self._num_slots: Final[int] = slot_count
        self._population: tuple[Bean, ...] = ()
        self._remaining: deque[Bean] = deque()
        self._in_flight_bean: Bean | None = None
        self._in_flight: NDArrayInt = np.full(
            slot_count, NO_BEAN_IN_ROW, dtype=np.int_
        )
        self._slots: NDArrayInt = np.zeros(slot_count, dtype=np.int_)

    @property
    def num_slots(self) -> int:
        return self._num_slots

    @property
    def total_bean_count(self) -> int:
        return len(self._population)

    def remaining_count(self) -> int:
        return len(self._remaining)

    def in_flight_column(self, row: int) -> Column:
        self._check_index("Row", row)
        return int(self._in_flight[row])

    def in_flight_count(self) -> int:
        return 0 if self._in_flight_bean is None else 1

    def slot_count(self, index: int) -> Frequency:
        self._check_index("Slot", index)
        return int(self._slots[index])

    def slot_counts(self) -> list[Frequency]:
        return [int(count) for count in self._slots]

    def is_halted(self) -> bool:
        return self._in_flight_bean is None and not self._remaining

    def average_slot_index(self) -> float:
        landed = int(self._slots.sum())
        if landed == 0:
            return 0.0
        return float(np.dot(np.arange(self._num_slots), self._slots) / landed)

    def _check_index(self, label: str, index: int) -> None:
        if not isinstance(index, (int, np.integer)):
            raise TypeError(f"{label} index must be an integer.")
        if not 0 <= index < self._num_slots:
            raise IndexError(
                f"{label} index {index} out of range for {self._num_slots} slots."
            )

    def reset(self, beans: Iterable[Bean]) -> None:
        population = tuple(beans)
        mismatched = [
            i
            for i, bean in enumerate(population)
            if bean.slot_count != self._num_slots
        ]
        if mismatched:
            raise ConfigError(
                f"Beans at positions {mismatched} were created for a different "
                f"slot count than this machine ({self._num_slots})."
            )
        self._population = population
        self._start_run()

    def repeat(self) -> None:
        self._start_run()

    def _start_run(self) -> None:
        self._slots.fill(0)
        self._in_flight.fill(NO_BEAN_IN_ROW)
        self._in_flight_bean = None
        self._remaining = deque(self._population)
        self._drop_next_bean()

    def _drop_next_bean(self) -> None:
        if not self._remaining:
            return
        bean = self._remaining.popleft()
        bean.reset()
        self._in_flight_bean = bean
        self._in_flight[0] = 0

    def _in_flight_row(self) -> int:
        return int(np.flatnonzero(self._in_flight != NO_BEAN_IN_ROW)[0])

    def advance_step(self) -> bool:
        bean = self._in_flight_bean
        if bean is None:
            return False

        row = self._in_flight_row()
        column = int(self._in_flight[row])
        self._in_flight[row] = NO_BEAN_IN_ROW

        if row + 1 < self._num_slots:
            if bean.decide() == "right":
                column += 1
            self._in_flight[row + 1] = column
            return True

        self._slots[column] += 1
        self._in_flight_bean = None
        self._drop_next_bean()
        return True

    def run_to_completion(self) -> int:
        steps = 0
        while self.advance_step():
            steps += 1
        return steps

    def lower_half(self) -> None:
        self._select_half("lower")

    def upper_half(self) -> None:
        self._select_half("upper")

    def _select_half(self, keep: HalfSelection) -> None:
        if not self.is_halted():
            raise SimulationError(
                f"Cannot keep the {keep} half while beans are still falling "
                f"(remaining={self.remaining_count()}, in flight={self.in_flight_count()})."
            )
        remove_count = int(self._slots.sum()) // 2
        for _ in range(remove_count):
            occupied = np.flatnonzero(self._slots)
            index = occupied[-1] if keep == "lower" else occupied[0]
            self._slots[index] -= 1

    def render_text(self) -> str:
        lines: list[str] = []
        for row in range(self._num_slots):
            column = int(self._in_flight[row])
            cells = ["o" if col == column else "." for col in range(row + 1)]
            lines.append(" " * (self._num_slots - row - 1) + " ".join(cells))
        lines.append("slots: " + " ".join(str(c) for c in self.slot_counts()))
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"BeanCounterLogic(num_slots={self._num_slots}, "
            f"remaining={self.remaining_count()}, "
            f"in_flight={self.in_flight_count()}, "
            f"landed={int(self._slots.sum())})"
        )


def create_engine(slot_count: int) -> BeanCounterLogic:
    return BeanCounterLogic(slot_count)


def create_beans(config: BeanMachineConfig) -> list[Bean]:
    if config.BEAN_COUNT == 0:
        return []
    rng = np.random.default_rng(config.SEED)
    return [
        create_bean(config.SLOT_COUNT, config.MODE, child_rng)
        for child_rng in rng.spawn(config.BEAN_COUNT)
    ]


@dataclass(frozen=True)
class SlotSummary:
    total: int
    mean: float
    std_dev: float
    expected_mean: float
    expected_std_dev: float


def summarize_slots(counts: Sequence[Frequency]) -> SlotSummary:
    """Observed landing statistics next to the fair-coin expectation."""
    data = np.asarray(counts, dtype=np.float64)
    num_slots = data.size
    total = int(data.sum())
    expected = stats.binom(max(0, num_slots - 1), 0.5)

    if total == 0:
        mean, std_dev = 0.0, 0.0
    else:
        indices = np.arange(num_slots)
        mean = float(np.dot(indices, data) / total)
        std_dev = float(np.sqrt(np.dot((indices - mean) ** 2, data) / total))

    return SlotSummary(
        total=total,
        mean=mean,
        std_dev=std_dev,
        expected_mean=float(expected.mean()),
        expected_std_dev=float(expected.std()),
    )


@dataclass
class SlotHistogram:
    config: BeanMachineConfig = field(default_factory=BeanMachineConfig)

    def generate_image(self, counts: Sequence[Frequency]) -> Image.Image:
        cfg = self.config
        try:
            image = Image.new(
                "RGB",
                (cfg.IMAGE_WIDTH, cfg.IMAGE_HEIGHT),
                cfg.BACKGROUND_COLOR,
            )
            draw = ImageDraw.Draw(image)
        except Exception as e:
            raise VisualizationError(
                f"Failed to initialize image context (size: {cfg.IMAGE_WIDTH}x{cfg.IMAGE_HEIGHT}): {e}"
            ) from e

        max_frequency = max(counts) if counts else 0
        if max_frequency <= 0:
            return image

        num_slots = len(counts)
        bar_width = max(cfg.HISTOGRAM_BAR_MIN_WIDTH, cfg.IMAGE_WIDTH // num_slots)
        height_scale = cfg.IMAGE_HEIGHT / max_frequency
        image_center = cfg.IMAGE_WIDTH / 2.0

        try:
            for i, frequency in enumerate(counts):
                if frequency <= 0:
                    continue

                bar_height = max(1, int(round(frequency * height_scale)))
                x0 = i * bar_width
                y0 = cfg.IMAGE_HEIGHT - bar_height
                x1 = x0 + bar_width - 1
                y1 = cfg.IMAGE_HEIGHT

                bar_color = (
                    cfg.LEFT_COLOR
                    if x0 + bar_width / 2.0 < image_center
                    else cfg.RIGHT_COLOR
                )
                draw.rectangle((x0, y0, x1, y1), fill=bar_color)
        except Exception as e:
            raise VisualizationError(
                f"Failed to draw histogram bars: {e}"
            ) from e

        return image

    def save_image(
        self,
        counts: Sequence[Frequency],
        filename: str | Path | None = None,
    ) -> str:
        output_path = Path(
            filename or (DEFAULT_OUTPUT_DIR / self.config.DEFAULT_IMAGE_FILENAME)
        )

        resolved_path = _ensure_output_dir(output_path)
        if resolved_path is None:
            raise IOError(
                f"Invalid output path or directory creation failed for '{output_path}'. Image not saved."
            )

        try:
            self.generate_image(counts).save(resolved_path)
            return str(resolved_path)
        except (OSError, VisualizationError) as e:
            raise IOError(
                f"Failed to save bean machine image to '{resolved_path}': {e}"
            ) from e


class Visualizer:
    def __init__(self, config: BeanMachineConfig) -> None:
        self.config = config

    def _save_or_show(
        self,
        fig: matplotlib.figure.Figure,
        show_plot: bool,
        save_path: Path | None,
    ) -> None:
        try:
            if save_path:
                target_path = _ensure_output_dir(save_path)
                if target_path:
                    try:
                        fig.savefig(
                            target_path,
                            dpi=self.config.DPI,
                            bbox_inches="tight",
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
        finally:
            plt.close(fig)

    def plot_slot_distribution(
        self,
        counts: Sequence[Frequency],
        show_plot: bool = True,
        save_path: Path | None = None,
    ) -> None:
        total = sum(counts)
        if total == 0:
            print("Info: No landed beans to plot.")
            return

        num_slots = len(counts)
        fig: matplotlib.figure.Figure | None = None
        try:
            fig, ax = plt.subplots(figsize=self.config.FIGSIZE)
            slot_axis = np.arange(num_slots)
            observed = np.asarray(counts, dtype=np.float64) / total
            expected = stats.binom.pmf(slot_axis, max(0, num_slots - 1), 0.5)

            ax.bar(
                slot_axis,
                observed,
                alpha=self.config.BAR_ALPHA,
                color="skyblue",
                label=f"Observed ({total} bean{'s' if total != 1 else ''})",
            )
            ax.plot(
                slot_axis,
                expected,
                "ro-",
                label=f"Theory B({num_slots - 1}, 0.5)",
            )

            ax.set_title(
                f"Bean Machine Slots ({self.config.MODE} mode)", fontsize=14
            )
            ax.set_xlabel("Slot")
            ax.set_ylabel("Fraction of Beans")
            ax.set_xticks(slot_axis)
            ax.grid(True, alpha=self.config.GRID_ALPHA, linestyle=":")
            ax.legend(fontsize="small")

            self._save_or_show(fig, show_plot, save_path)
            fig = None

        except Exception as e:
            if fig:
                plt.close(fig)
            raise VisualizationError(
                f"Failed to plot slot distribution: {e}"
            ) from e


@dataclass
class InvariantReport:
    slot_count: int
    bean_count: int
    mode: BeanMode
    steps: int = 0
    final_counts: tuple[Frequency, ...] = ()
    violations: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations

    @property
    def label(self) -> str:
        return (
            f"slotCount={self.slot_count}, beanCount={self.bean_count}, "
            f"mode={self.mode}"
        )


def _state_violations(
    engine: BeanCounterLogic, total: int, where: str
) -> list[str]:
    violations: list[str] = []
    occupied_rows = 0
    for row in range(engine.num_slots):
        column = engine.in_flight_column(row)
        if column == NO_BEAN_IN_ROW:
            continue
        occupied_rows += 1
        if not 0 <= column <= row:
            violations.append(
                f"{where}: illegal in-flight position x={column}, y={row}"
            )
    if occupied_rows > 1:
        violations.append(f"{where}: {occupied_rows} rows hold a bean")

    observed = (
        engine.remaining_count() + occupied_rows + sum(engine.slot_counts())
    )
    if observed != total:
        violations.append(
            f"{where}: bean count {observed} does not match {total}"
        )
    return violations


def _check_halving(
    engine: BeanCounterLogic,
    keep: HalfSelection,
    total: int,
    report: InvariantReport,
) -> None:
    engine.repeat()
    engine.run_to_completion()
    select = engine.lower_half if keep == "lower" else engine.upper_half

    select()
    after = sum(engine.slot_counts())
    if after != total - total // 2:
        report.violations.append(
            f"{keep}_half: kept {after} of {total}, expected {total - total // 2}"
        )
        return

    count = after
    while count > 1:
        select()
        after = sum(engine.slot_counts())
        if after != count - count // 2:
            report.violations.append(
                f"repeated {keep}_half: kept {after} of {count}"
            )
            return
        count = after

    if total >= 1:
        select()
        if sum(engine.slot_counts()) != 1:
            report.violations.append(
                f"repeated {keep}_half did not settle on a single bean"
            )


def check_invariants(
    slot_count: int,
    bean_count: int,
    mode: BeanMode,
    seed: int | None = 42,
) -> InvariantReport:
    """Drive one machine configuration and record every broken invariant.

    State is checked after reset and after every step. Termination, the
    half-selection count law and its convergence, and (for skill beans)
    repeat reproducibility are checked once the run halts.
    """
    config = BeanMachineConfig(
        SLOT_COUNT=slot_count, BEAN_COUNT=bean_count, MODE=mode, SEED=seed
    )
    engine = create_engine(slot_count)
    report = InvariantReport(slot_count, bean_count, mode)

    engine.reset(create_beans(config))
    report.violations.extend(_state_violations(engine, bean_count, "reset"))
    expected_in_flight = 1 if bean_count > 0 else 0
    if engine.in_flight_column(0) == NO_BEAN_IN_ROW and expected_in_flight:
        report.violations.append("reset: first bean is not at the top")
    if engine.remaining_count() != bean_count - expected_in_flight:
        report.violations.append("reset: wrong remaining bean count")

    while engine.advance_step():
        report.steps += 1
        report.violations.extend(
            _state_violations(engine, bean_count, f"step {report.steps}")
        )

    if engine.remaining_count() != 0 or engine.in_flight_count() != 0:
        report.violations.append("halt: machine stopped with beans left")
    if sum(engine.slot_counts()) != bean_count:
        report.violations.append("halt: landed count does not match")
    report.final_counts = tuple(engine.slot_counts())

    engine.repeat()
    engine.run_to_completion()
    if mode == "skill" and tuple(engine.slot_counts()) != report.final_counts:
        report.violations.append(
            f"repeat: {engine.slot_counts()} differs from {list(report.final_counts)}"
        )

    _check_halving(engine, "lower", bean_count, report)
    _check_halving(engine, "upper", bean_count, report)
    return report


def sweep_configurations(
    slot_counts: Iterable[int] = range(1, 6),
    bean_counts: Iterable[int] = range(0, 4),
    modes: Iterable[BeanMode] = ("luck", "skill"),
    seed: int | None = 42,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> list[InvariantReport]:
    grid = [
        (slot_count, bean_count, mode)
        for slot_count in slot_counts
        for bean_count in bean_counts
        for mode in modes
    ]
    if not grid:
        return []

    reports: list[InvariantReport] = []
    with ThreadPoolExecutor(max_workers=max(1, min(len(grid), max_workers))) as executor:
        future_to_params = {
            executor.submit(check_invariants, *params, seed): params
            for params in grid
        }
        for future in as_completed(future_to_params):
            reports.append(future.result())

    reports.sort(key=lambda r: (r.slot_count, r.bean_count, r.mode))
    return reports


class SimulationRunner:
    def __init__(
        self,
        config: BeanMachineConfig | None = None,
        output_dir: Path = DEFAULT_OUTPUT_DIR,
    ) -> None:
        try:
            self.config = config or BeanMachineConfig()
        except ConfigError as e:
            raise ConfigError(
                f"Configuration initialization failed: {e}"
            ) from e

        self.engine = create_engine(self.config.SLOT_COUNT)
        self.beans = create_beans(self.config)
        self.histogram = SlotHistogram(self.config)
        self.visualizer = Visualizer(self.config)
        self.output_dir = Path(output_dir)
        self.last_run_counts: list[Frequency] | None = None

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

    def _print_counts(self) -> None:
        print(self.engine.render_text())
        summary = summarize_slots(self.engine.slot_counts())
        print(
            f"Landed: {summary.total:,} | mean slot {summary.mean:.3f} "
            f"(fair coin {summary.expected_mean:.3f}) | std dev "
            f"{summary.std_dev:.3f} (fair coin {summary.expected_std_dev:.3f})"
        )

    def run_machine(self) -> bool:
        def task():
            cfg = self.config
            print(
                f"Dropping {cfg.BEAN_COUNT:,} beans ({cfg.MODE} mode) into {cfg.SLOT_COUNT} slots..."
            )
            self.engine.reset(self.beans)
            steps = self.engine.run_to_completion()
            self.last_run_counts = self.engine.slot_counts()
            print(f"Machine halted after {steps:,} steps.")
            self._print_counts()

        return self._run_task("Bean Machine Run", task)

    def run_repeat_check(self) -> bool:
        def task():
            if self.last_run_counts is None:
                raise SimulationError(
                    "Nothing to repeat: the machine has not been run yet."
                )
            self.engine.repeat()
            self.engine.run_to_completion()
            repeated = self.engine.slot_counts()
            if repeated == self.last_run_counts:
                print("Repeat reproduced the previous slot counts exactly.")
            elif self.config.MODE == "skill":
                raise SimulationError(
                    f"Skill run was not reproduced: {self.last_run_counts} != {repeated}"
                )
            else:
                print("Info: Luck beans drew fresh outcomes on repeat.")
                self.last_run_counts = repeated
            self._print_counts()

        return self._run_task("Repeat Check", task)

    def run_half_selection(self, keep: HalfSelection) -> bool:
        def task():
            before = sum(self.engine.slot_counts())
            if keep == "lower":
                self.engine.lower_half()
            else:
                self.engine.upper_half()
            after = sum(self.engine.slot_counts())
            print(f"Kept the {keep} half: {after:,} of {before:,} beans.")
            self._print_counts()

        return self._run_task(f"{keep.capitalize()} Half Selection", task)

    def run_outputs(self, show_plots: bool = True, save_outputs: bool = True) -> bool:
        def task(show: bool, save: bool):
            counts = self.engine.slot_counts()
            if save:
                print("Generating and saving histogram image...")
                saved_path = self.histogram.save_image(
                    counts, self.output_dir / self.config.DEFAULT_IMAGE_FILENAME
                )
                print(f"Histogram image saved: {saved_path}")
            else:
                _ = self.histogram.generate_image(counts)
                print("Histogram image generated.")

            plot_path = (
                (self.output_dir / self.config.DEFAULT_PLOT_FILENAME)
                if save
                else None
            )
            self.visualizer.plot_slot_distribution(
                counts, show_plot=show, save_path=plot_path
            )
            if plot_path and plot_path.exists():
                print(f"Distribution plot saved: {plot_path.resolve()}")

        return self._run_task(
            "Slot Histogram & Distribution Plot", task, show_plots, save_outputs
        )

    def run_sweep(self) -> bool:
        def task():
            reports = sweep_configurations()
            failures = [r for r in reports if not r.ok]
            for report in reports:
                status = "OK" if report.ok else "FAILED"
                print(
                    f"{report.label:<45} steps={report.steps:<4} {status}"
                )
                for violation in report.violations:
                    print(f"    {violation}", file=sys.stderr)
            if failures:
                raise SimulationError(
                    f"{len(failures)} of {len(reports)} configurations broke an invariant."
                )
            print(f"All {len(reports)} configurations hold every invariant.")

        return self._run_task("Configuration Invariant Sweep", task)

    def run_all(
        self,
        half: HalfSelection | None = None,
        show_plots: bool = True,
        save_outputs: bool = True,
    ) -> bool:
        max_width = 78
        title = "Bean Machine Simulation Run"
        print(
            f"\n{'*' * max_width}\n{title:^{max_width}}\n{'*' * max_width}"
        )
        overall_start_time = time.monotonic()
        task_results: list[bool] = [self.run_machine()]

        if task_results[0]:
            task_results.append(self.run_repeat_check())
            task_results.append(self.run_outputs(show_plots, save_outputs))
            if half is not None:
                task_results.append(self.run_half_selection(half))

        overall_elapsed_time = time.monotonic() - overall_start_time
        overall_success = all(task_results)

        print("\n--- Simulation Summary ---")
        print(f"Total execution time: {overall_elapsed_time:.2f} seconds.")
        status_message = (
            "All selected tasks completed successfully"
            if overall_success
            else "One or more tasks FAILED"
        )
        print(f"Overall status: {status_message}")
        print("*" * max_width + "\n")

        return overall_success


def main_simulation_runner(
    config_overrides: dict[str, Any] | None = None,
    half: HalfSelection | None = None,
    sweep: bool = False,
) -> int:
    plt.ioff()
    exit_code = 0

    try:
        print("Initializing Simulation Runner...")
        runner = SimulationRunner(BeanMachineConfig(**(config_overrides or {})))
        if sweep:
            success = runner.run_sweep()
        else:
            success = runner.run_all(
                half=half, show_plots=False, save_outputs=True
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
    import unittest

    from test_bean_machine import TestBeanMachine

    print("\n--- Running Unit Tests ---")
    loader = unittest.TestLoader()
    loader.sortTestMethodsUsing = None
    suite = loader.loadTestsFromTestCase(TestBeanMachine)
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
        script_name = "bean_machine.py"

    help_text = f"""
Usage: python {script_name} [options]

Bean Machine: a step-by-step Galton board with luck and skill beans.

Options:
  --slots N     : Number of slots (and rows), 1-{MAX_SLOT_COUNT}. Default 10.
  --beans N     : Number of beans to drop. Default 400.
  --seed N      : Seed for skill levels and luck draws.
  --skill       : Use skill beans instead of luck beans.
  --lower       : Keep only the lower half of the landed beans afterwards.
  --upper       : Keep only the upper half of the landed beans afterwards.
  --sweep       : Check every engine invariant over slots 1-5, beans 0-3,
                  both modes.
  --test [-v N] : Run the unit test suite. Optional verbosity level N can be
                  0 (quiet), 1, or 2 (verbose). Default is 2.
  --help, -h    : Display this help message and exit.

Description:
  Luck beans flip a fair coin at every row and pile up in a binomial shape.
  Skill beans move right a fixed number of times, so repeating a skill run
  reproduces it exactly. The run prints the board and slot counts, and saves
  a histogram image and a distribution plot against Binomial(slots-1, 0.5).

Default Output Directory:
  Generated files are saved to: {DEFAULT_OUTPUT_DIR.resolve()}
"""
    print(help_text)


_INT_OPTIONS: Final[dict[str, str]] = {
    "--slots": "SLOT_COUNT",
    "--beans": "BEAN_COUNT",
    "--seed": "SEED",
}


def _parse_run_options(
    args: Sequence[str],
) -> tuple[dict[str, Any], HalfSelection | None, bool]:
    overrides: dict[str, Any] = {}
    half: HalfSelection | None = None
    sweep = False

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in _INT_OPTIONS:
            if i + 1 >= len(args) or not args[i + 1].isdigit():
                raise ValueError(f"Option {arg} needs a non-negative integer.")
            overrides[_INT_OPTIONS[arg]] = int(args[i + 1])
            i += 2
            continue
        if arg == "--skill":
            overrides["MODE"] = "skill"
        elif arg in ("--lower", "--upper"):
            if half is not None:
                raise ValueError("Choose at most one of --lower and --upper.")
            half = "lower" if arg == "--lower" else "upper"
        elif arg == "--sweep":
            sweep = True
        else:
            raise ValueError(f"Unknown argument: {arg}")
        i += 1

    return overrides, half, sweep


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
        try:
            options, half_choice, run_sweep = _parse_run_options(command_args)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            display_help()
            exit_code = 4
        else:
            exit_code = main_simulation_runner(options, half_choice, run_sweep)

    sys.exit(exit_code)
