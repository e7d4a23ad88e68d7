"""
sabre — Sequential-binary-partition Analysis with Batch Removal and robust Exclusion

Top-level package exposing the sabre public API.
"""

import logging

from sabre import simulate
from sabre.partition import PartitionModel
from sabre.codec import close, forward, inverse, close_table, ilr_table, inverse_table
from sabre.detrend import DetrendEngine, DetrendResult, CoordinateFit
from sabre.outliers import OutlierDetector, OutlierResult
from sabre.pipeline import run_pipeline, PipelineResult
from sabre.config import PipelineConfig, load_json_config, config_from_dict
from sabre.stats import check_batch_effect
from sabre.exceptions import (
    SabreError,
    InvalidPartitionError,
    NonPositiveFillError,
    DetrendConvergenceError,
    DetrendTimeoutError,
    DegenerateScatterError,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"
__all__ = [
    "simulate",
    "PartitionModel",
    "close",
    "forward",
    "inverse",
    "close_table",
    "ilr_table",
    "inverse_table",
    "DetrendEngine",
    "DetrendResult",
    "CoordinateFit",
    "OutlierDetector",
    "OutlierResult",
    "run_pipeline",
    "PipelineResult",
    "PipelineConfig",
    "load_json_config",
    "config_from_dict",
    "check_batch_effect",
    "SabreError",
    "InvalidPartitionError",
    "NonPositiveFillError",
    "DetrendConvergenceError",
    "DetrendTimeoutError",
    "DegenerateScatterError",
]
