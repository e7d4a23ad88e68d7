"""
sabre/pipeline.py

End-to-end driver: raw parts → closure → balances → batch detrending →
robust outlier flagging.

Per-item problems (samples over the closure total, coordinates whose mixed
model fails) are collected and logged; the config decides whether they are
dropped or escalated. Structural problems (bad partition, degenerate
scatter) propagate.
"""

import logging
import re
from dataclasses import dataclass, field

import pandas as pd
from typing import Optional

from sabre.codec import close_table, ilr_table, inverse_table
from sabre.config import PipelineConfig
from sabre.detrend import DetrendEngine
from sabre.outliers import OutlierDetector, OutlierResult
from sabre.partition import PartitionModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineResult:
    """Outputs of `run_pipeline`. Consumers must treat these as read-only."""

    closed: pd.DataFrame
    ilr: pd.DataFrame
    detrended: pd.DataFrame
    offsets: pd.DataFrame
    outliers: OutlierResult
    partition: PartitionModel
    total: float
    rejected_samples: list = field(default_factory=list)
    failed_coordinates: dict = field(default_factory=dict)

    @property
    def inliers(self) -> pd.Series:
        """Inlier mask over the detrended samples (True = keep)."""
        return self.outliers.mask

    def clean_ilr(self) -> pd.DataFrame:
        """Detrended coordinates of the inlier samples."""
        return self.detrended.loc[self.inliers.values]

    def back_transform(self, inliers_only: bool = False) -> pd.DataFrame:
        """
        Detrended compositions, closed to the original total.

        Balances dropped by the detrending failure policy are taken from the
        raw (not detrended) coordinates.
        """
        ilr = self.ilr.loc[self.detrended.index].copy()
        ilr[self.detrended.columns] = self.detrended
        dropped = [c for c in self.ilr.columns if c not in self.detrended.columns]
        if dropped:
            logger.warning(
                "Back-transforming with raw values for dropped balances %s.", dropped
            )
        if inliers_only:
            ilr = ilr.loc[self.inliers.values]
        return inverse_table(ilr, self.partition, self.total)


def run_pipeline(
    parts: pd.DataFrame,
    labels: pd.DataFrame,
    partition: PartitionModel,
    config: Optional[PipelineConfig] = None,
) -> PipelineResult:
    """
    Run the full cleaning pipeline.

    Parameters
    ----------
    parts : pd.DataFrame
        Raw measurements, rows = samples (index = sample id), columns =
        measured parts. Must contain every partition part except the
        filling value.
    labels : pd.DataFrame
        Design labels per sample: the grouping column and the columns used
        by the fixed-effects formula. Indexed by sample id.
    partition : PartitionModel
        Partition over the measured parts plus ``config.fill_name``.
    config : PipelineConfig, optional
        Defaults to PipelineConfig().

    Returns
    -------
    PipelineResult

    Raises
    ------
    ValueError
        If parts, labels and partition do not fit together.
    NonPositiveFillError
        If a sample exceeds the total and ``drop_invalid_samples`` is False.
    DetrendConvergenceError
        If a coordinate fails and ``on_failure`` is "raise".
    DegenerateScatterError
        If no valid robust scatter can be formed.

    Examples
    --------
    >>> from sabre import simulate
    >>> parts, labels, model = simulate.simulate_ionome(seed=0)
    >>> result = run_pipeline(parts, labels, model)
    >>> result.clean_ilr().head()
    """
    config = config or PipelineConfig()
    group_col = config.random_effect_grouping

    if config.fill_name not in partition.parts:
        raise ValueError(f"Partition has no filling-value part '{config.fill_name}'.")
    measured = [p for p in partition.parts if p != config.fill_name]
    missing = [p for p in measured if p not in parts.columns]
    if missing:
        raise ValueError(f"parts table is missing partition parts {missing}.")
    if group_col not in labels.columns:
        raise ValueError(f"labels has no grouping column '{group_col}'.")
    missing = [c for c in _formula_columns(config.fixed_effects) if c not in labels.columns]
    if missing:
        raise ValueError(f"labels is missing fixed-effect columns {missing}.")
    if not parts.index.isin(labels.index).all():
        raise ValueError("Every sample in parts needs a row in labels.")

    closed, rejected = close_table(
        parts[measured], config.total, config.fill_name, config.pseudo_count
    )
    if rejected and not config.drop_invalid_samples:
        raise rejected[0]
    if rejected:
        logger.warning("Dropped %d samples exceeding the closure total.", len(rejected))

    ilr = ilr_table(closed, partition)

    design_labels = labels.loc[closed.index]
    engine = DetrendEngine(
        design_labels.drop(columns=[group_col]),
        design_labels[group_col],
        fixed_effects=config.fixed_effects,
        n_jobs=config.n_jobs,
        timeout=config.timeout,
    )
    detrend = engine.fit_transform(ilr, on_failure=config.on_failure)

    detector = OutlierDetector(
        support_fraction=config.support_fraction,
        random_state=config.random_state,
        n_calibration=config.n_calibration,
    )
    outliers = detector.flag(detrend.detrended, qcrit=config.qcrit)

    logger.info(
        "Pipeline finished: %d samples, %d coordinates, %d outliers.",
        len(ilr), detrend.detrended.shape[1], outliers.n_outliers,
    )
    return PipelineResult(
        closed=closed,
        ilr=ilr,
        detrended=detrend.detrended,
        offsets=detrend.offsets,
        outliers=outliers,
        partition=partition,
        total=config.total,
        rejected_samples=rejected,
        failed_coordinates=detrend.failures,
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _formula_columns(formula: str) -> list:
    """Variable names in a formula right-hand side, skipping function calls."""
    return list(dict.fromkeys(re.findall(r"\b([A-Za-z_]\w*)\b(?!\s*\()", formula)))
