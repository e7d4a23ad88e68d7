"""Configuration for sabre pipeline runs."""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional


@dataclass(frozen=True)
class PipelineConfig:
    """Recognized options for `run_pipeline`.

    - `total`: closure constant in the measurement unit (1e6 for ppm).
    - `qcrit`: critical probability for outlier flagging.
    - `fixed_effects`: right-hand side of the detrending formula.
    - `random_effect_grouping`: label column holding the batch identifier.
    """

    total: float = 1e6
    qcrit: float = 0.9995
    fixed_effects: str = "Cultivar*Treatment"
    random_effect_grouping: str = "Experiment"
    fill_name: str = "Fv"
    pseudo_count: float = 0.0
    n_jobs: int = 1
    timeout: Optional[float] = None
    on_failure: str = "raise"
    support_fraction: Optional[float] = None
    random_state: int = 0
    n_calibration: int = 20
    drop_invalid_samples: bool = True

    def __post_init__(self) -> None:
        if self.total <= 0:
            raise ValueError(f"total must be positive, got {self.total}.")
        if not 0 < self.qcrit < 1:
            raise ValueError(f"qcrit must be in (0, 1), got {self.qcrit}.")
        if self.pseudo_count < 0:
            raise ValueError(f"pseudo_count must be >= 0, got {self.pseudo_count}.")
        if self.n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1, got {self.n_jobs}.")
        if self.n_calibration < 0:
            raise ValueError(f"n_calibration must be >= 0, got {self.n_calibration}.")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}.")
        if self.on_failure not in ("raise", "raw", "drop"):
            raise ValueError(
                f"Unknown on_failure '{self.on_failure}'. Choose from: 'raise', 'raw', 'drop'."
            )
        if not self.fixed_effects.strip():
            raise ValueError("fixed_effects must not be empty; use '1' for intercept only.")


def config_from_dict(data: dict[str, Any]) -> PipelineConfig:
    """Build a PipelineConfig from a mapping, rejecting unknown keys."""
    known = {f.name for f in fields(PipelineConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown config keys: {unknown}. Recognized: {sorted(known)}.")
    return PipelineConfig(**data)


def load_json_config(path: str | Path) -> PipelineConfig:
    """Load and validate a pipeline config from a JSON file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )
    return config_from_dict(data)
