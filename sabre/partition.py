"""
sabre/partition.py

Sequential binary partition (SBP) of compositional parts and the orthonormal
balance basis it induces.

A partition over D+1 parts is a strict binary tree with D internal nodes.
Each node splits one group of parts into a numerator subset (r parts) and a
denominator subset (s parts) and defines one balance contrast:

    numerator parts    → +sqrt(s / ((r + s) · r))
    denominator parts  → −sqrt(r / ((r + s) · s))
    all other parts    →  0

Every contrast row sums to zero, so the Aitchison inner product between rows
reduces to the Euclidean one and the stacked (D × (D+1)) basis satisfies
basis · basisᵀ = I.
"""

import logging

import numpy as np
import pandas as pd
from typing import Optional, Sequence

from sabre.exceptions import InvalidPartitionError

logger = logging.getLogger(__name__)


class PartitionModel:
    """
    Hierarchical partition of named parts and its balance basis.

    Parameters
    ----------
    parts : sequence of str
        Ordered part names, including the filling-value part. The basis
        columns follow this order.
    splits : sequence of (sequence of str, sequence of str)
        One (numerator, denominator) pair per internal node. The first split
        must cover every part; each later split must divide a group created
        by an earlier one. Depth-first and breadth-first orders are both
        accepted.
    names : sequence of str, optional
        Balance names, one per split. Defaults to "ilr1" .. "ilrD".

    Raises
    ------
    InvalidPartitionError
        If a split is empty, its subsets overlap, it names unknown parts, it
        does not divide an existing group, the split count is not D, or some
        group is never resolved to singleton leaves.

    Examples
    --------
    >>> model = PartitionModel(
    ...     ["Fv", "N", "P", "K", "Fe"],
    ...     [(["N", "P", "K", "Fe"], ["Fv"]),
    ...      (["N", "P", "K"], ["Fe"]),
    ...      (["N"], ["P", "K"]),
    ...      (["P"], ["K"])],
    ... )
    >>> model.basis.shape
    (4, 5)
    """

    def __init__(
        self,
        parts: Sequence[str],
        splits: Sequence[tuple],
        names: Optional[Sequence[str]] = None,
    ):
        self.parts = [str(p) for p in parts]
        if len(self.parts) < 2:
            raise InvalidPartitionError("a partition needs at least two parts.")
        if len(set(self.parts)) != len(self.parts):
            raise InvalidPartitionError("part names must be unique.")

        self.splits = _validate_splits(self.parts, splits)

        if names is None:
            names = [f"ilr{k + 1}" for k in range(len(self.splits))]
        names = [str(n) for n in names]
        if len(names) != len(self.splits):
            raise ValueError(
                f"Got {len(names)} balance names for {len(self.splits)} splits."
            )
        if len(set(names)) != len(names):
            raise ValueError("Balance names must be unique.")
        self.names = names
        self._basis = None

    # ------------------------------------------------------------------
    # Alternate constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_sign_table(cls, table: pd.DataFrame) -> "PartitionModel":
        """
        Build a partition from an SBP sign table.

        Parameters
        ----------
        table : pd.DataFrame
            One row per split, one column per part. Entries are +1
            (numerator), −1 (denominator) or 0 (not involved in the split).
            A non-default index is used as the balance names.

        Returns
        -------
        PartitionModel
        """
        values = table.to_numpy()
        if not np.isin(values, (-1, 0, 1)).all():
            raise InvalidPartitionError("sign table entries must be -1, 0 or +1.")

        parts = [str(c) for c in table.columns]
        splits = []
        for _, row in table.iterrows():
            num = [str(p) for p, v in row.items() if v == 1]
            den = [str(p) for p, v in row.items() if v == -1]
            splits.append((num, den))

        names = None
        if not isinstance(table.index, pd.RangeIndex):
            names = [str(i) for i in table.index]
        return cls(parts, splits, names=names)

    # ------------------------------------------------------------------
    # Basis
    # ------------------------------------------------------------------

    @property
    def n_parts(self) -> int:
        return len(self.parts)

    @property
    def n_balances(self) -> int:
        return len(self.splits)

    @property
    def basis(self) -> np.ndarray:
        """Read-only (n_balances × n_parts) contrast matrix."""
        if self._basis is None:
            self._basis = self.build_basis()
            self._basis.flags.writeable = False
        return self._basis

    def build_basis(self) -> np.ndarray:
        """
        Compute the orthonormal balance basis.

        Returns
        -------
        np.ndarray
            Shape (n_balances, n_parts). Row k is the contrast of split k;
            columns follow ``self.parts``.
        """
        index = {p: i for i, p in enumerate(self.parts)}
        basis = np.zeros((self.n_balances, self.n_parts))
        for k, (num, den) in enumerate(self.splits):
            r, s = len(num), len(den)
            basis[k, [index[p] for p in num]] = np.sqrt(s / ((r + s) * r))
            basis[k, [index[p] for p in den]] = -np.sqrt(r / ((r + s) * s))
        return basis

    # ------------------------------------------------------------------
    # Display helpers
    # ------------------------------------------------------------------

    def label(self, k: int) -> str:
        """Display label "[denominator | numerator]" for split k."""
        num, den = self.splits[k]
        return f"[{','.join(den)} | {','.join(num)}]"

    def labels(self) -> dict:
        """Display labels keyed by balance name."""
        return {name: self.label(k) for k, name in enumerate(self.names)}

    def to_sign_table(self) -> pd.DataFrame:
        """Return the partition as an SBP sign table (rows = balances)."""
        table = pd.DataFrame(0, index=self.names, columns=self.parts, dtype=int)
        for name, (num, den) in zip(self.names, self.splits):
            table.loc[name, num] = 1
            table.loc[name, den] = -1
        return table

    def __repr__(self) -> str:
        return f"PartitionModel(n_parts={self.n_parts}, n_balances={self.n_balances})"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _validate_splits(parts: list, splits: Sequence[tuple]) -> list:
    """Check that splits form a strict binary tree over parts; return them as lists."""
    known = set(parts)
    pending = [frozenset(parts)]
    checked = []

    for k, split in enumerate(splits):
        try:
            num, den = split
        except (TypeError, ValueError):
            raise InvalidPartitionError(
                "each split must be a (numerator, denominator) pair.", node=k
            )
        num = [str(p) for p in num]
        den = [str(p) for p in den]

        if not num or not den:
            raise InvalidPartitionError("numerator and denominator must be non-empty.", node=k)
        if len(set(num)) != len(num) or len(set(den)) != len(den):
            raise InvalidPartitionError("a part is repeated within one subset.", node=k)

        unknown = (set(num) | set(den)) - known
        if unknown:
            raise InvalidPartitionError(f"unknown parts {sorted(unknown)}.", node=k)

        overlap = set(num) & set(den)
        if overlap:
            raise InvalidPartitionError(
                f"parts {sorted(overlap)} appear in both subsets.", node=k
            )

        group = frozenset(num) | frozenset(den)
        if group not in pending:
            raise InvalidPartitionError(
                "split does not divide a group produced by an earlier split "
                f"(parts {sorted(group)}).",
                node=k,
            )
        pending.remove(group)
        pending.extend(g for g in (frozenset(num), frozenset(den)) if len(g) > 1)
        checked.append((num, den))

    if len(checked) != len(parts) - 1:
        unresolved = [sorted(g) for g in pending]
        raise InvalidPartitionError(
            f"expected {len(parts) - 1} splits for {len(parts)} parts, got "
            f"{len(checked)}; unresolved groups: {unresolved}."
        )

    logger.debug("Validated partition with %d parts and %d splits.", len(parts), len(checked))
    return checked
