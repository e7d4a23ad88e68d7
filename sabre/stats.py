"""
sabre/stats.py

Diagnostics for batch structure in balance coordinates.

    check_batch_effect — one-way ANOVA of each coordinate across batches;
                         run before detrending to see which balances carry a
                         batch signal and after detrending to confirm it is gone.
"""

import numpy as np
import pandas as pd


def check_batch_effect(
    ilr: pd.DataFrame,
    groups,
    alpha: float = 0.05,
) -> pd.DataFrame:
    """
    Test whether coordinate means differ between batches.

    Parameters
    ----------
    ilr : pd.DataFrame
        Rows = samples, columns = coordinates (raw or detrended).
    groups : array-like
        Batch label per row of ``ilr``.
    alpha : float
        Significance threshold for the ``significant`` flag column.

    Returns
    -------
    pd.DataFrame
        One row per coordinate with columns:
          coordinate   — coordinate name
          n_batches    — batches with at least two samples
          f_statistic  — one-way ANOVA F
          p_value      — ANOVA p-value
          significant  — True if p_value < alpha

        Sorted by p_value ascending. Coordinates with fewer than two usable
        batches are omitted.

    Examples
    --------
    >>> report = check_batch_effect(result.detrended, labels["Experiment"])
    >>> report[report["significant"]]
    """
    from scipy.stats import f_oneway

    groups = np.asarray(groups)
    if len(groups) != len(ilr):
        raise ValueError(
            f"groups has {len(groups)} entries but ilr has {len(ilr)} rows."
        )

    records = []
    for coord in ilr.columns:
        values = ilr[coord].to_numpy(dtype=float)
        samples = [values[groups == g] for g in pd.unique(groups)]
        samples = [s for s in samples if len(s) >= 2]
        if len(samples) < 2:
            continue

        stat, p = f_oneway(*samples)
        if not np.isfinite(p):
            # All values identical: no variation to test.
            stat, p = 0.0, 1.0
        records.append({
            "coordinate": coord,
            "n_batches": len(samples),
            "f_statistic": float(stat),
            "p_value": float(p),
            "significant": bool(p < alpha),
        })

    if not records:
        return pd.DataFrame(
            columns=["coordinate", "n_batches", "f_statistic", "p_value", "significant"]
        )
    return (
        pd.DataFrame(records)
        .sort_values("p_value")
        .reset_index(drop=True)
    )
