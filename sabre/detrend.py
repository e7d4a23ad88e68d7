"""
sabre/detrend.py

Batch detrending of balance coordinates with a linear mixed model.

Each coordinate column is fitted independently:

    coordinate = X·β + b[batch] + ε,   b ~ N(0, σ_b²),  ε ~ N(0, σ_ε²)

by REML via statsmodels' MixedLM. The detrended coordinate is the observed
value minus the BLUP of its batch intercept. The fixed-effect part X·β
(e.g. Cultivar × Treatment) stays in the data: only the
nuisance batch offset is removed.

Optimizers are tried in turn. When every one of them hits a singular matrix
(σ_b² on the zero boundary), the variance components are taken from the
one-way ANOVA expected mean squares of the fixed-effect residuals instead,
and the offsets are shrunk with the same BLUP weights.

Fits share no state, so they can run on a thread pool. Failures are raised
per coordinate by fit() and collected by fit_transform().
"""

import logging
import time
import warnings
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from functools import partial

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from typing import Optional, Sequence

from sabre.exceptions import DetrendConvergenceError, DetrendTimeoutError

logger = logging.getLogger(__name__)

_FAILURE_POLICIES = ("raise", "raw", "drop")

# σ_b² at or below this fraction of σ_ε² is treated as the zero boundary.
_BOUNDARY_RTOL = 1e-10


@dataclass(frozen=True)
class CoordinateFit:
    """Fitted mixed model for one coordinate.

    - `offsets`: BLUP of the batch intercept, indexed by batch.
    - `batch_var`, `resid_var`: estimates of σ_b² and σ_ε².
    - `estimator`: "reml", "anova" (expected-mean-squares fallback) or
      "single-batch" (nothing to estimate).
    - `optimizer`: MixedLM optimizer that converged, None for the others.
    """

    coordinate: str
    offsets: pd.Series
    fe_params: pd.Series
    batch_var: float
    resid_var: float
    estimator: str
    optimizer: Optional[str] = None
    messages: tuple = ()


@dataclass(frozen=True)
class DetrendResult:
    """Output of `DetrendEngine.fit_transform`."""

    detrended: pd.DataFrame
    offsets: pd.DataFrame
    fits: dict = field(default_factory=dict)
    failures: dict = field(default_factory=dict)


class DetrendEngine:
    """
    Mixed-model batch detrending for a coordinate matrix.

    Parameters
    ----------
    design : pd.DataFrame
        Categorical fixed-effect predictors, one row per sample.
    groups : array-like
        Batch label per sample (same length and order as ``design``).
    fixed_effects : str
        Right-hand side of the fixed-effects formula, e.g.
        "Cultivar*Treatment". Use "1" for an intercept-only model.
    n_jobs : int
        Number of worker threads used by fit_transform().
    timeout : float, optional
        Wall-clock budget in seconds for one fit_transform() call (or one
        fit() call). Each optimizer run is waited on for at most the time
        left, and abandoned with DetrendTimeoutError when it runs over.
    method : sequence of str
        MixedLM optimizers tried in order until one converges.
    maxiter : int
        Iteration cap per optimizer.

    Examples
    --------
    >>> engine = DetrendEngine(labels[["Cultivar", "Treatment"]], labels["Experiment"])
    >>> result = engine.fit_transform(ilr)
    >>> result.offsets
    """

    def __init__(
        self,
        design: pd.DataFrame,
        groups,
        fixed_effects: str = "Cultivar*Treatment",
        n_jobs: int = 1,
        timeout: Optional[float] = None,
        method: Sequence[str] = ("lbfgs", "powell", "cg", "nm"),
        maxiter: int = 1000,
    ):
        groups = np.asarray(groups)
        if len(groups) != len(design):
            raise ValueError(
                f"groups has {len(groups)} entries but design has {len(design)} rows."
            )
        if pd.isna(groups).any():
            raise ValueError("groups contains missing batch labels.")
        if n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1, got {n_jobs}.")
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}.")

        self.design = design.astype("category")
        self.groups = pd.Series(groups, index=design.index, name="batch")
        self.levels = pd.unique(groups)
        self.fixed_effects = fixed_effects
        self.n_jobs = n_jobs
        self.timeout = timeout
        self.method = list(method)
        self.maxiter = maxiter

    # ------------------------------------------------------------------
    # Single coordinate
    # ------------------------------------------------------------------

    def fit(self, column, name=None, deadline: Optional[float] = None) -> CoordinateFit:
        """
        Fit the mixed model to one coordinate column.

        Parameters
        ----------
        column : pd.Series or array-like
            Coordinate values in design row order.
        name : optional
            Coordinate name used in results and errors. Defaults to the
            Series name.
        deadline : float, optional
            time.monotonic() value after which the fit is abandoned.
            Defaults to now + ``self.timeout``.

        Returns
        -------
        CoordinateFit

        Raises
        ------
        DetrendConvergenceError
            If the optimizer fails or does not converge.
        DetrendTimeoutError
            If the deadline passes during the fit.
        """
        if deadline is None and self.timeout is not None:
            deadline = time.monotonic() + self.timeout
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            fit = self._fit(column, name, deadline)
        messages = tuple(dict.fromkeys(str(w.message) for w in caught))
        for msg in messages:
            logger.warning("Coordinate %r: %s", fit.coordinate, msg)
        return replace(fit, messages=messages)

    def residualize(self, column, fit: Optional[CoordinateFit] = None) -> pd.Series:
        """
        Subtract each sample's batch offset from a coordinate column.

        Parameters
        ----------
        column : pd.Series or array-like
            Coordinate values in design row order.
        fit : CoordinateFit, optional
            A previous fit of this column. Fitted here when omitted.

        Returns
        -------
        pd.Series
            coordinate − b̂[batch], indexed like the design.
        """
        if fit is None:
            fit = self.fit(column)
        values = np.asarray(column, dtype=float)
        shift = fit.offsets.reindex(self.groups.values).fillna(0.0).values
        return pd.Series(values - shift, index=self.design.index, name=fit.coordinate)

    # ------------------------------------------------------------------
    # Whole matrix
    # ------------------------------------------------------------------

    def fit_transform(self, ilr: pd.DataFrame, on_failure: str = "raise") -> DetrendResult:
        """
        Fit every coordinate and return the detrended matrix.

        Parameters
        ----------
        ilr : pd.DataFrame
            Rows = samples (same index as the design), columns = coordinates.
        on_failure : str
            What to do with coordinates whose fit fails:
            "raise" → raise the first failure after all fits are done;
                      every failure is attached as ``err.failures``.
            "raw"   → keep the raw (non-detrended) values; offsets are NaN.
            "drop"  → remove the coordinate from the output.

        Returns
        -------
        DetrendResult
            detrended — same shape as ``ilr`` (minus dropped columns)
            offsets   — batches × coordinates BLUP table
            fits      — CoordinateFit per fitted coordinate
            failures  — DetrendConvergenceError per failed coordinate

        Raises
        ------
        ValueError
            If on_failure is unknown or ``ilr`` is not aligned with the design.
        DetrendConvergenceError
            With on_failure="raise", when any coordinate fails.
        """
        if on_failure not in _FAILURE_POLICIES:
            raise ValueError(
                f"Unknown on_failure '{on_failure}'. Choose from: 'raise', 'raw', 'drop'."
            )
        if not ilr.index.equals(self.design.index):
            raise ValueError("ilr must share the design's index (same samples, same order).")

        deadline = time.monotonic() + self.timeout if self.timeout is not None else None
        columns = list(ilr.columns)

        if self.n_jobs == 1:
            outcomes = [self._try_fit(ilr[col], col, deadline, self.fit) for col in columns]
        else:
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always")
                with ThreadPoolExecutor(max_workers=self.n_jobs) as pool:
                    outcomes = list(pool.map(
                        lambda col: self._try_fit(ilr[col], col, deadline, self._fit),
                        columns,
                    ))
            for msg in dict.fromkeys(str(w.message) for w in caught):
                logger.warning("Optimizer warning during detrending: %s", msg)

        fits, failures = {}, {}
        for col, outcome in zip(columns, outcomes):
            if isinstance(outcome, DetrendConvergenceError):
                logger.warning("Detrending failed for %s", outcome)
                failures[col] = outcome
            else:
                fits[col] = outcome

        if failures and on_failure == "raise":
            first = next(iter(failures.values()))
            first.failures = list(failures.values())
            raise first

        detrended = ilr.copy()
        offsets = {}
        for col in columns:
            if col in fits:
                detrended[col] = self.residualize(ilr[col], fits[col]).values
                offsets[col] = fits[col].offsets
            elif on_failure == "raw":
                offsets[col] = pd.Series(np.nan, index=self.levels)
        if on_failure == "drop" and failures:
            detrended = detrended.drop(columns=list(failures))

        offsets = pd.DataFrame(offsets, index=pd.Index(self.levels, name="batch"))
        logger.info(
            "Detrended %d of %d coordinates across %d batches.",
            len(fits), len(columns), len(self.levels),
        )
        return DetrendResult(detrended=detrended, offsets=offsets, fits=fits, failures=failures)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _try_fit(self, column, name, deadline, fit_func):
        try:
            return fit_func(column, name, deadline)
        except DetrendConvergenceError as err:
            return err

    def _fit(self, column, name, deadline) -> CoordinateFit:
        values = np.asarray(column, dtype=float)
        if name is None:
            name = getattr(column, "name", None)
        if len(values) != len(self.design):
            raise ValueError(
                f"column has {len(values)} values but design has {len(self.design)} rows."
            )
        if not np.isfinite(values).all():
            raise ValueError(f"coordinate {name!r} contains missing or infinite values.")

        if len(self.levels) < 2:
            # One batch: the random intercept is not identifiable, nothing to remove.
            logger.debug("Coordinate %r: single batch, skipping mixed model.", name)
            return CoordinateFit(
                coordinate=name,
                offsets=pd.Series(0.0, index=self.levels),
                fe_params=pd.Series(dtype=float),
                batch_var=0.0,
                resid_var=float(values.var(ddof=1)) if len(values) > 1 else 0.0,
                estimator="single-batch",
            )

        data = self.design.copy()
        data["_y"] = values
        model = smf.mixedlm(f"_y ~ {self.fixed_effects}", data, groups=self.groups.values)

        result, optimizer = None, None
        errors, singular = [], False
        for method in self.method:
            fit_call = partial(model.fit, reml=True, method=method, maxiter=self.maxiter)
            try:
                res = _run_before_deadline(fit_call, name, deadline, self.timeout)
            except np.linalg.LinAlgError as exc:
                singular = True
                errors.append(f"{method}: {exc}")
                continue
            except ValueError as exc:
                errors.append(f"{method}: {exc}")
                continue
            if res.converged:
                result, optimizer = res, method
                break
            errors.append(f"{method}: did not converge")

        if result is None:
            if singular:
                logger.debug(
                    "Coordinate %r: REML hit a singular matrix (%s); "
                    "using expected mean squares.", name, "; ".join(errors),
                )
                return self._fit_anova(data, name)
            raise DetrendConvergenceError(name, "; ".join(errors))

        batch_var = float(np.asarray(result.cov_re)[0, 0])
        resid_var = float(result.scale)
        if batch_var <= _BOUNDARY_RTOL * resid_var:
            offsets = pd.Series(0.0, index=self.levels)
        else:
            offsets = pd.Series(
                {g: float(re.iloc[0]) for g, re in result.random_effects.items()}
            ).reindex(self.levels).fillna(0.0)
        logger.debug(
            "Coordinate %r: batch var %.4g, residual var %.4g (%s).",
            name, batch_var, resid_var, optimizer,
        )
        return CoordinateFit(
            coordinate=name,
            offsets=offsets,
            fe_params=result.fe_params.copy(),
            batch_var=batch_var,
            resid_var=resid_var,
            estimator="reml",
            optimizer=optimizer,
        )

    def _fit_anova(self, data, name) -> CoordinateFit:
        """Variance components from one-way expected mean squares of OLS residuals."""
        ols = smf.ols(f"_y ~ {self.fixed_effects}", data).fit()
        resid = pd.Series(np.asarray(ols.resid), index=self.groups.values)

        counts = resid.groupby(level=0).size().reindex(self.levels)
        means = resid.groupby(level=0).mean().reindex(self.levels)
        n, a = len(resid), len(self.levels)
        grand = resid.mean()

        msb = float((counts * (means - grand) ** 2).sum()) / (a - 1)
        df_within = n - a
        if df_within > 0:
            msw = float(((resid - means.reindex(resid.index).values) ** 2).sum()) / df_within
        else:
            msw = float(ols.scale)
        n0 = (n - float((counts ** 2).sum()) / n) / (a - 1)
        batch_var = max(0.0, (msb - msw) / n0)

        if batch_var <= _BOUNDARY_RTOL * msw:
            offsets = pd.Series(0.0, index=self.levels)
        else:
            shrink = batch_var / (batch_var + msw / counts)
            offsets = shrink * (means - grand)
        logger.debug(
            "Coordinate %r: batch var %.4g, residual var %.4g (anova).", name, batch_var, msw
        )
        return CoordinateFit(
            coordinate=name,
            offsets=offsets.astype(float),
            fe_params=ols.params.copy(),
            batch_var=batch_var,
            resid_var=msw,
            estimator="anova",
        )


def _run_before_deadline(func, name, deadline, budget):
    """Call func, giving up with DetrendTimeoutError once the deadline passes.

    An abandoned call keeps running on its worker thread; its result is
    discarded.
    """
    if deadline is None:
        return func()
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise DetrendTimeoutError(name, budget)

    pool = ThreadPoolExecutor(max_workers=1)
    future = pool.submit(func)
    try:
        return future.result(timeout=remaining)
    except FutureTimeoutError:
        raise DetrendTimeoutError(name, budget) from None
    finally:
        pool.shutdown(wait=False)
