"""
sabre/simulate.py

Synthetic multi-batch compositional data with known batch offsets.

Samples are generated in balance space and mapped back to raw parts, so the
ground truth is exact:

    ilr = base + cultivar shift + treatment shift + batch offset + noise

The coordinates are inverse-transformed to compositions closed to ``total``
and the filling value is dropped, leaving a raw parts table in the
measurement unit (ppm by default). Closing that table again recovers the
simulated coordinates.
"""

import numpy as np
import pandas as pd
from typing import Optional, Sequence

from sabre.codec import close, forward, inverse
from sabre.partition import PartitionModel


# ---------------------------------------------------------------------------
# Primary simulation entry point
# ---------------------------------------------------------------------------

def simulate_ionome(
    n_per_cell: int = 5,
    batches: Sequence = ("1", "2", "3"),
    cultivars: Sequence = ("A", "B"),
    treatments: Sequence = ("control", "stress"),
    parts: Sequence[str] = ("N", "P", "K", "Fe"),
    partition: Optional[PartitionModel] = None,
    base_ppm: Optional[Sequence[float]] = None,
    batch_offsets: Optional[dict] = None,
    cultivar_effect: float = 0.3,
    treatment_effect: float = 0.2,
    noise_sd: float = 0.1,
    total: float = 1e6,
    fill_name: str = "Fv",
    seed: Optional[int] = 42,
) -> tuple:
    """
    Simulate raw part measurements for a batch × cultivar × treatment design.

    Parameters
    ----------
    n_per_cell : int
        Samples per (batch, cultivar, treatment) cell.
    batches, cultivars, treatments : sequence
        Factor levels. Every combination is sampled.
    parts : sequence of str
        Measured part names.
    partition : PartitionModel, optional
        Partition over parts + [fill_name]. Defaults to a cascade:
        [fill | measured], then each measured part against the ones after it.
    base_ppm : sequence of float, optional
        Typical raw value per measured part. Defaults to values spaced
        geometrically from 2e4 down to 1e2.
    batch_offsets : dict, optional
        {batch: sequence of n_balances offsets} added to that batch's
        coordinates. Unlisted batches get no offset.
    cultivar_effect, treatment_effect : float
        SD of the per-level fixed shifts (first level is the reference).
    noise_sd : float
        Residual SD per coordinate.
    total : float
        Closure constant.
    fill_name : str
        Name of the filling-value part.
    seed : int, optional
        Random seed for reproducibility.

    Returns
    -------
    parts : pd.DataFrame
        Raw measured parts, index = sample id. Ground truth in ``attrs``.
    labels : pd.DataFrame
        Columns Cultivar, Treatment, Experiment; same index.
    partition : PartitionModel

    Examples
    --------
    >>> parts, labels, model = simulate_ionome(
    ...     n_per_cell=10, batch_offsets={"2": [0.0, 0.5, 0.0, 0.0]}, seed=0)
    >>> parts.head()
    """
    rng = np.random.default_rng(seed)
    parts = [str(p) for p in parts]

    if partition is None:
        partition = _cascade_partition(parts, fill_name)
    n_bal = partition.n_balances

    if base_ppm is None:
        base_ppm = np.geomspace(2e4, 1e2, len(parts))
    base_comp = pd.Series(close(base_ppm, total), index=parts + [fill_name])
    base = forward(base_comp[partition.parts].values, partition.basis)

    offsets = pd.DataFrame(0.0, index=pd.Index(list(batches), name="batch"),
                           columns=partition.names)
    for batch, shift in (batch_offsets or {}).items():
        shift = np.asarray(shift, dtype=float)
        if shift.shape != (n_bal,):
            raise ValueError(
                f"batch_offsets['{batch}'] must have {n_bal} values, got shape {shift.shape}."
            )
        if batch not in offsets.index:
            raise ValueError(f"batch_offsets refers to unknown batch '{batch}'.")
        offsets.loc[batch] = shift

    cultivar_shift = _level_shifts(cultivars, cultivar_effect, n_bal, rng)
    treatment_shift = _level_shifts(treatments, treatment_effect, n_bal, rng)

    coords, records = [], []
    for batch in batches:
        for cultivar in cultivars:
            for treatment in treatments:
                mean = (
                    base
                    + cultivar_shift[cultivar]
                    + treatment_shift[treatment]
                    + offsets.loc[batch].values
                )
                for _ in range(n_per_cell):
                    coords.append(mean + rng.normal(0, noise_sd, size=n_bal))
                    records.append({
                        "Cultivar": cultivar,
                        "Treatment": treatment,
                        "Experiment": batch,
                    })

    index = pd.Index([f"S{i:04d}" for i in range(len(records))], name="sample_id")
    labels = pd.DataFrame(records, index=index)
    comp = pd.DataFrame(inverse(np.vstack(coords), partition.basis, total),
                        index=index, columns=partition.parts)
    raw = comp[parts].copy()

    raw.attrs["batch_offsets"] = offsets.to_dict(orient="index")
    raw.attrs["total"] = total
    raw.attrs["noise_sd"] = noise_sd
    raw.attrs["fill_name"] = fill_name

    return raw, labels, partition


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def get_ground_truth(parts: pd.DataFrame) -> dict:
    """
    Extract simulation metadata from a simulated parts table.

    Parameters
    ----------
    parts : pd.DataFrame
        First output of simulate_ionome.

    Returns
    -------
    dict
        batch_offsets (batches × balances DataFrame), total, noise_sd, fill_name.
    """
    if "batch_offsets" not in parts.attrs:
        raise ValueError(
            "This dataframe does not have simulation metadata. "
            "Make sure it was generated by simulate_ionome."
        )
    return {
        "batch_offsets": pd.DataFrame.from_dict(parts.attrs["batch_offsets"], orient="index"),
        "total": parts.attrs["total"],
        "noise_sd": parts.attrs["noise_sd"],
        "fill_name": parts.attrs["fill_name"],
    }


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _cascade_partition(parts: list, fill_name: str) -> PartitionModel:
    """[fill | measured], then part i against parts i+1..end."""
    splits = [(list(parts), [fill_name])]
    for i in range(len(parts) - 1):
        splits.append(([parts[i]], list(parts[i + 1:])))
    return PartitionModel([fill_name] + list(parts), splits)


def _level_shifts(levels, sd, n_bal, rng) -> dict:
    """Random shift per factor level; the first level is the zero reference."""
    shifts = {}
    for i, level in enumerate(levels):
        shifts[level] = np.zeros(n_bal) if i == 0 else rng.normal(0, sd, size=n_bal)
    return shifts
