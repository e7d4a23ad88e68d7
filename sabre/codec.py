"""
sabre/codec.py

Closure and isometric log-ratio (ILR) coding of compositions.

    close    — pad a raw part vector with a filling value so it sums to T.
    forward  — composition → balance coordinates, ilr = basis · ln(x).
    inverse  — balance coordinates → composition, closed back to T.

The table helpers apply the same operations row-wise to DataFrames
(rows = samples) and keep sample ids and part/balance names attached.
"""

import logging

import numpy as np
import pandas as pd

from sabre.exceptions import NonPositiveFillError

logger = logging.getLogger(__name__)

DEFAULT_TOTAL = 1e6


def close(
    raw,
    total: float = DEFAULT_TOTAL,
    sample_id=None,
    pseudo_count: float = 0.0,
) -> np.ndarray:
    """
    Close a raw part vector to a composition summing to ``total``.

    The unmeasured remainder is appended as a filling value,
    ``fill = total − sum(raw)``.

    Parameters
    ----------
    raw : array-like, shape (D,)
        Non-negative measured parts, in the same unit as ``total``.
    total : float
        Closure constant, e.g. 1e6 for ppm.
    sample_id : optional
        Identifier reported in errors.
    pseudo_count : float
        Added to every measured part before closure to handle zeros.

    Returns
    -------
    np.ndarray, shape (D + 1,)
        Measured parts followed by the filling value. Sums to ``total``.

    Raises
    ------
    NonPositiveFillError
        If sum(raw) ≥ total.
    ValueError
        If a raw value is negative or non-finite, or a measured part is still
        zero after adding ``pseudo_count``.
    """
    values = np.asarray(raw, dtype=float)
    if values.ndim != 1:
        raise ValueError(f"raw must be 1D, got shape {values.shape}.")
    if not np.isfinite(values).all() or (values < 0).any():
        raise ValueError(
            f"Raw parts must be finite and non-negative (sample {sample_id!r})."
        )

    values = values + pseudo_count
    if (values <= 0).any():
        raise ValueError(
            f"Zero parts in sample {sample_id!r}; set pseudo_count to replace them."
        )

    fill = total - values.sum()
    if fill <= 0:
        raise NonPositiveFillError(sample_id, float(fill), float(total))
    return np.append(values, fill)


def forward(composition, basis) -> np.ndarray:
    """
    Map compositions to balance coordinates.

    Parameters
    ----------
    composition : array-like, shape (n_parts,) or (N, n_parts)
        Strictly positive parts, columns in the basis column order.
    basis : np.ndarray or PartitionModel
        (n_balances × n_parts) contrast matrix.

    Returns
    -------
    np.ndarray, shape (n_balances,) or (N, n_balances)
        coordinate_k = Σ_i basis[k, i] · ln(composition[i]).
    """
    basis = _as_basis(basis)
    comp = np.asarray(composition, dtype=float)
    if comp.shape[-1] != basis.shape[1]:
        raise ValueError(
            f"composition has {comp.shape[-1]} parts but basis expects {basis.shape[1]}."
        )
    if not np.isfinite(comp).all() or (comp <= 0).any():
        raise ValueError("forward requires strictly positive, finite parts.")
    return np.log(comp) @ basis.T


def inverse(ilr, basis, total: float = DEFAULT_TOTAL) -> np.ndarray:
    """
    Map balance coordinates back to compositions closed to ``total``.

    Parameters
    ----------
    ilr : array-like, shape (n_balances,) or (N, n_balances)
    basis : np.ndarray or PartitionModel
    total : float
        Closure constant of the returned compositions.

    Returns
    -------
    np.ndarray, shape (n_parts,) or (N, n_parts)

    Notes
    -----
    basisᵀ · ilr recovers the centred log-composition. The row maximum is
    subtracted before exponentiating; closure removes the shift.
    """
    basis = _as_basis(basis)
    coords = np.asarray(ilr, dtype=float)
    if coords.shape[-1] != basis.shape[0]:
        raise ValueError(
            f"ilr has {coords.shape[-1]} coordinates but basis has {basis.shape[0]} balances."
        )
    log_comp = coords @ basis
    log_comp = log_comp - log_comp.max(axis=-1, keepdims=True)
    comp = np.exp(log_comp)
    return comp * (total / comp.sum(axis=-1, keepdims=True))


# ---------------------------------------------------------------------------
# Table helpers
# ---------------------------------------------------------------------------

def close_table(
    parts: pd.DataFrame,
    total: float = DEFAULT_TOTAL,
    fill_name: str = "Fv",
    pseudo_count: float = 0.0,
) -> tuple:
    """
    Close every row of a raw parts table.

    Samples whose parts exceed the total are left out of the result and
    returned as errors so the caller can decide to drop or escalate them.

    Parameters
    ----------
    parts : pd.DataFrame
        Rows = samples (index = sample id), columns = measured parts.
    total : float
        Closure constant.
    fill_name : str
        Column name for the filling value.
    pseudo_count : float
        Passed to close().

    Returns
    -------
    closed : pd.DataFrame
        Valid samples only; columns = parts + [fill_name].
    rejected : list of NonPositiveFillError
        One error per excluded sample, in input order.
    """
    if fill_name in parts.columns:
        raise ValueError(f"fill_name '{fill_name}' collides with a part column.")
    if parts.isna().any().any():
        raise ValueError("parts table contains missing values.")

    keep, rows = [], []
    rejected = []
    for pos, (sample_id, row) in enumerate(parts.iterrows()):
        try:
            rows.append(close(row.values, total, sample_id, pseudo_count))
            keep.append(pos)
        except NonPositiveFillError as err:
            logger.warning("Excluding %s", err)
            rejected.append(err)

    columns = list(parts.columns) + [fill_name]
    values = np.vstack(rows) if rows else np.empty((0, len(columns)))
    closed = pd.DataFrame(
        values,
        index=parts.index[keep],
        columns=columns,
    )
    logger.info("Closed %d of %d samples to %g.", len(closed), len(parts), total)
    return closed, rejected


def ilr_table(closed: pd.DataFrame, model) -> pd.DataFrame:
    """Balance coordinates of a closed table; columns = ``model.names``."""
    missing = [p for p in model.parts if p not in closed.columns]
    if missing:
        raise ValueError(f"Closed table is missing partition parts {missing}.")
    coords = forward(closed[model.parts].values, model.basis)
    return pd.DataFrame(coords, index=closed.index, columns=model.names)


def inverse_table(
    ilr: pd.DataFrame,
    model,
    total: float = DEFAULT_TOTAL,
) -> pd.DataFrame:
    """Compositions of a balance table; columns = ``model.parts``."""
    missing = [n for n in model.names if n not in ilr.columns]
    if missing:
        raise ValueError(f"ILR table is missing balances {missing}.")
    comp = inverse(ilr[model.names].values, model.basis, total)
    return pd.DataFrame(comp, index=ilr.index, columns=model.parts)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _as_basis(basis) -> np.ndarray:
    basis = getattr(basis, "basis", basis)
    basis = np.asarray(basis, dtype=float)
    if basis.ndim != 2:
        raise ValueError(f"basis must be 2D, got shape {basis.shape}.")
    return basis
