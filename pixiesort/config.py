"""Run configuration: crates, modules, sampling rates and output naming."""

from __future__ import annotations

import tomllib
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

VALID_SAMPLING_RATES = frozenset({100, 125, 250, 500})
DEFAULT_REVISION = 15
MAX_CRATES = 4
MAX_MODULES = 104
MAX_BOARDS = 24
MAX_CHANNELS = 64

DEFAULT_TIME_BUFFER = 1_000_000_000  # ns, one second
DEFAULT_PROCESS_FRACTION = 0.9
DEFAULT_TIMES_HIST = 3600  # seconds covered by per-channel rate histograms
OUTPUT_SUFFIX = ".evt"


@dataclass(frozen=True)
class CrateConfig:
    """One crate: where its raw files live and how each module is set up."""

    raw_path: str
    raw_name: str
    sampling_rates: tuple[int, ...]
    revisions: tuple[int, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "sampling_rates", tuple(int(r) for r in self.sampling_rates))
        object.__setattr__(self, "revisions", tuple(int(r) for r in self.revisions))
        if not self.sampling_rates:
            raise ValueError("a crate needs at least one module")
        if len(self.sampling_rates) != len(self.revisions):
            raise ValueError(
                f"{len(self.sampling_rates)} sampling rates but {len(self.revisions)} revisions"
            )

    def module_path(self, run: int, module: int) -> str:
        """Path of the raw binary written by ``module`` during ``run``."""
        if not 0 <= module < len(self.sampling_rates):
            raise IndexError(f"module {module} is not in this crate")
        return f"{self.raw_path}{run:04d}/{self.raw_name}_R{run:04d}_M{module:02d}.bin"

    def active_modules(self) -> list[tuple[int, int, int]]:
        """``(module, sampling_rate, revision)`` for every module that is read."""
        return [
            (index, rate, revision)
            for index, (rate, revision) in enumerate(zip(self.sampling_rates, self.revisions))
            if rate in VALID_SAMPLING_RATES
        ]


@dataclass(frozen=True)
class SortConfig:
    """Everything a decode-and-sort run needs besides the run numbers."""

    root_path: str
    root_name: str
    crates: tuple[CrateConfig, ...]
    waveform: bool = True
    energy_sum: bool = False
    qdc_sum: bool = False
    external_ts: bool = False
    time_buffer: int = DEFAULT_TIME_BUFFER
    process_fraction: float = DEFAULT_PROCESS_FRACTION
    times_hist: int = DEFAULT_TIMES_HIST
    suffix: str = field(default=OUTPUT_SUFFIX)

    def __post_init__(self) -> None:
        object.__setattr__(self, "crates", tuple(self.crates))
        if not self.crates:
            raise ValueError("at least one crate must be configured")
        if len(self.crates) > MAX_CRATES:
            raise ValueError(f"at most {MAX_CRATES} crates are supported")
        total = sum(len(c.sampling_rates) for c in self.crates)
        if total > MAX_MODULES:
            raise ValueError(f"{total} modules exceed the limit of {MAX_MODULES}")
        if not 0.0 < self.process_fraction <= 1.0:
            raise ValueError("process_fraction must lie in (0, 1]")
        if self.time_buffer <= 0:
            raise ValueError("time_buffer must be positive")

    def output_path(self, runs: Sequence[int]) -> str:
        """Name of the sorted output file for one run number per crate."""
        runs = list(runs)
        if len(runs) != len(self.crates):
            raise ValueError(
                f"expected {len(self.crates)} run numbers, got {len(runs)}"
            )
        parts = "".join(f"_{run:04d}" for run in runs)
        tail = "_wave" if self.waveform else ""
        return f"{self.root_path}{self.root_name}_C{len(self.crates)}{parts}{tail}{self.suffix}"


def _csi_crate(raw_path: str, rates: Iterable[int]) -> CrateConfig:
    rates = tuple(rates)
    return CrateConfig(raw_path, "data", rates, (DEFAULT_REVISION,) * len(rates))


def _presets() -> dict[str, SortConfig]:
    ge = _csi_crate("Ge_ExpData/", (250,) * 4)
    csi9 = _csi_crate("CsI_ExpData/", (100,) * 7 + (250,) * 2)
    csi8 = _csi_crate("CsI_ExpData/", (100,) * 6 + (250,) * 2)
    return {
        "default": SortConfig("C2_Decode/", "data", (csi9,), waveform=True),
        "c2": SortConfig("C2_Decode/", "data", (ge, csi9), waveform=True),
        "csi": SortConfig("CsI_Decode/", "data", (csi8,), waveform=True),
        "ge": SortConfig("Ge_Decode/", "data", (ge,), waveform=False),
    }


def preset(name: str) -> SortConfig:
    """One of the built-in setups: ``default``, ``c2``, ``csi`` or ``ge``."""
    presets = _presets()
    try:
        return presets[name.lower()]
    except KeyError:
        raise ValueError(
            f"unknown preset {name!r}; choose from {', '.join(sorted(presets))}"
        ) from None


def _crate_from_table(table: dict[str, Any]) -> CrateConfig:
    try:
        rates = table["sampling_rates"]
    except KeyError:
        raise ValueError("crate entry lacks sampling_rates") from None
    revisions = table.get("revisions", [DEFAULT_REVISION] * len(rates))
    return CrateConfig(
        raw_path=str(table.get("raw_path", "")),
        raw_name=str(table.get("raw_name", "data")),
        sampling_rates=tuple(rates),
        revisions=tuple(revisions),
    )


def load_config(path: str | Path) -> SortConfig:
    """Read a TOML file describing the output and one ``[[crate]]`` per crate."""
    with open(path, "rb") as handle:
        data = tomllib.load(handle)
    crates = tuple(_crate_from_table(t) for t in data.get("crate", []))
    return SortConfig(
        root_path=str(data.get("root_path", "")),
        root_name=str(data.get("root_name", "data")),
        crates=crates,
        waveform=bool(data.get("waveform", True)),
        energy_sum=bool(data.get("energy_sum", False)),
        qdc_sum=bool(data.get("qdc_sum", False)),
        external_ts=bool(data.get("external_ts", False)),
        time_buffer=int(data.get("time_buffer", DEFAULT_TIME_BUFFER)),
        process_fraction=float(data.get("process_fraction", DEFAULT_PROCESS_FRACTION)),
        times_hist=int(data.get("times_hist", DEFAULT_TIMES_HIST)),
        suffix=str(data.get("suffix", OUTPUT_SUFFIX)),
    )