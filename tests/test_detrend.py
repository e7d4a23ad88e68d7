"""
tests/test_detrend.py

Unit tests for sabre.detrend.

The three-batch fixture carries a known +0.5 offset on ilr2 in batch "2"
plus smaller offsets on the other balances. TestBoundary covers data with
no batch effect at all.
"""

import time

import pytest
import numpy as np
import pandas as pd
from statsmodels.regression.mixed_linear_model import MixedLM
from sabre import simulate
from sabre.codec import close_table, ilr_table
from sabre.detrend import DetrendEngine
from sabre.exceptions import DetrendConvergenceError, DetrendTimeoutError
from sabre.stats import check_batch_effect


BATCH_OFFSETS = {
    "1": [0.2, 0.0, -0.15, 0.1],
    "2": [-0.1, 0.5, 0.1, -0.2],
    "3": [0.0, 0.0, 0.1, 0.1],
}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def dataset():
    parts, labels, model = simulate.simulate_ionome(
        n_per_cell=10, batch_offsets=BATCH_OFFSETS, noise_sd=0.1, seed=3,
    )
    closed, _ = close_table(parts)
    ilr = ilr_table(closed, model)
    return ilr, labels


@pytest.fixture(scope="module")
def engine(dataset):
    ilr, labels = dataset
    return DetrendEngine(labels[["Cultivar", "Treatment"]], labels["Experiment"])


@pytest.fixture(scope="module")
def result(engine, dataset):
    ilr, _ = dataset
    return engine.fit_transform(ilr)


@pytest.fixture
def slow_mixedlm(monkeypatch):
    """MixedLM.fit that takes three seconds before fitting."""
    original = MixedLM.fit

    def slow_fit(self, *args, **kwargs):
        time.sleep(3.0)
        return original(self, *args, **kwargs)

    monkeypatch.setattr(MixedLM, "fit", slow_fit)


@pytest.fixture
def singular_mixedlm(monkeypatch):
    """MixedLM.fit that always fails on a singular matrix."""
    def singular_fit(self, *args, **kwargs):
        raise np.linalg.LinAlgError("Singular matrix")

    monkeypatch.setattr(MixedLM, "fit", singular_fit)


# ---------------------------------------------------------------------------
# fit / residualize
# ---------------------------------------------------------------------------

class TestFit:

    def test_recovers_injected_offset(self, engine, dataset):
        ilr, _ = dataset
        fit = engine.fit(ilr["ilr2"])
        contrast = fit.offsets["2"] - fit.offsets[["1", "3"]].mean()
        assert contrast == pytest.approx(0.5, abs=0.1)

    def test_fit_fields(self, engine, dataset):
        ilr, _ = dataset
        fit = engine.fit(ilr["ilr2"])
        assert fit.coordinate == "ilr2"
        assert fit.estimator == "reml"
        assert fit.optimizer in engine.method
        assert fit.batch_var > 0
        assert fit.resid_var > 0
        assert list(fit.offsets.index) == ["1", "2", "3"]
        assert "Intercept" in fit.fe_params.index

    def test_residualize_subtracts_batch_offset(self, engine, dataset):
        ilr, labels = dataset
        fit = engine.fit(ilr["ilr2"])
        resid = engine.residualize(ilr["ilr2"], fit)
        shift = (ilr["ilr2"] - resid).values
        expected = fit.offsets.reindex(labels["Experiment"].values).values
        np.testing.assert_allclose(shift, expected, atol=1e-12)

    def test_residualize_fits_when_needed(self, engine, dataset):
        ilr, _ = dataset
        resid = engine.residualize(ilr["ilr2"])
        assert resid.name == "ilr2"
        assert resid.index.equals(ilr.index)

    def test_single_batch_is_neutral(self, dataset):
        ilr, labels = dataset
        one = DetrendEngine(labels[["Cultivar", "Treatment"]], ["only"] * len(labels))
        resid = one.residualize(ilr["ilr1"])
        np.testing.assert_array_equal(resid.values, ilr["ilr1"].values)

    def test_single_batch_offsets_zero(self, dataset):
        ilr, labels = dataset
        one = DetrendEngine(labels[["Cultivar", "Treatment"]], ["only"] * len(labels))
        fit = one.fit(ilr["ilr1"])
        assert (fit.offsets == 0).all()
        assert fit.batch_var == 0.0
        assert fit.estimator == "single-batch"

    def test_past_deadline_times_out(self, engine, dataset):
        ilr, _ = dataset
        with pytest.raises(DetrendTimeoutError) as excinfo:
            engine.fit(ilr["ilr1"], deadline=time.monotonic() - 1.0)
        assert excinfo.value.coordinate == "ilr1"
        assert isinstance(excinfo.value, DetrendConvergenceError)

    def test_deadline_expires_during_fit(self, engine, dataset, slow_mixedlm):
        ilr, _ = dataset
        start = time.monotonic()
        with pytest.raises(DetrendTimeoutError):
            engine.fit(ilr["ilr2"], deadline=start + 0.3)
        assert time.monotonic() - start < 1.5

    def test_budget_covers_whole_matrix(self, dataset, slow_mixedlm):
        ilr, labels = dataset
        eng = DetrendEngine(
            labels[["Cultivar", "Treatment"]], labels["Experiment"], timeout=0.3,
        )
        start = time.monotonic()
        res = eng.fit_transform(ilr, on_failure="raw")
        assert time.monotonic() - start < 1.5
        assert set(res.failures) == set(ilr.columns)
        assert all(isinstance(e, DetrendTimeoutError) for e in res.failures.values())
        assert res.failures["ilr1"].budget == 0.3

    def test_missing_values_rejected(self, engine, dataset):
        ilr, _ = dataset
        col = ilr["ilr1"].copy()
        col.iloc[0] = np.nan
        with pytest.raises(ValueError, match="missing"):
            engine.fit(col)


class TestShrinkage:

    def test_small_batch_shrinks_toward_zero(self):
        """BLUP of a 3-sample batch is smaller than its naive mean offset."""
        blup, naive = [], []
        for seed in range(5):
            rng = np.random.default_rng(seed)
            groups = np.array(["a"] * 30 + ["b"] * 30 + ["small"] * 3)
            y = rng.normal(0, 1.0, size=63)
            y[groups == "small"] += 2.0
            y[groups == "b"] -= 1.0
            design = pd.DataFrame(index=pd.RangeIndex(63))
            engine = DetrendEngine(design, groups, fixed_effects="1")
            fit = engine.fit(pd.Series(y, name="y"))
            blup.append(abs(fit.offsets["small"]))
            naive.append(abs(y[groups == "small"].mean() - y.mean()))
        assert np.mean(blup) < np.mean(naive)


class TestBoundary:

    @pytest.fixture(scope="class")
    def no_batch(self):
        parts, labels, model = simulate.simulate_ionome(n_per_cell=5, seed=1)
        closed, _ = close_table(parts)
        return ilr_table(closed, model), labels

    def test_no_batch_effect_fits_every_coordinate(self, no_batch):
        ilr, labels = no_batch
        eng = DetrendEngine(labels[["Cultivar", "Treatment"]], labels["Experiment"])
        res = eng.fit_transform(ilr)
        assert res.failures == {}
        assert res.offsets.notna().all().all()
        assert (res.offsets.abs() < 0.1).all().all()

    def test_singular_fit_falls_back_to_mean_squares(self, dataset, singular_mixedlm):
        ilr, labels = dataset
        eng = DetrendEngine(labels[["Cultivar", "Treatment"]], labels["Experiment"])
        fit = eng.fit(ilr["ilr2"])
        assert fit.estimator == "anova"
        assert fit.optimizer is None
        assert fit.batch_var > 0
        contrast = fit.offsets["2"] - fit.offsets[["1", "3"]].mean()
        assert contrast == pytest.approx(0.5, abs=0.1)

    def test_mean_squares_shrink_toward_zero(self, singular_mixedlm):
        rng = np.random.default_rng(4)
        groups = np.repeat(["a", "b", "c"], 8)
        y = rng.normal(0, 1.0, size=24) + np.repeat([0.0, 1.5, -1.5], 8)
        eng = DetrendEngine(pd.DataFrame(index=pd.RangeIndex(24)), groups, fixed_effects="1")
        fit = eng.fit(pd.Series(y, name="y"))
        naive = pd.Series(y).groupby(groups).mean() - y.mean()
        assert (fit.offsets.abs() < naive.abs()).all()
        assert (np.sign(fit.offsets) == np.sign(naive)).all()

    def test_no_between_batch_spread_gives_zero_offsets(self, singular_mixedlm):
        # Every batch holds the same values, so the between-batch mean square is 0.
        y = np.tile([0.3, -0.1, 0.4, -0.6], 3)
        groups = np.repeat(["a", "b", "c"], 4)
        eng = DetrendEngine(pd.DataFrame(index=pd.RangeIndex(12)), groups, fixed_effects="1")
        fit = eng.fit(pd.Series(y, name="y"))
        assert fit.batch_var == 0.0
        assert (fit.offsets == 0).all()
        assert fit.resid_var > 0

    def test_non_singular_failure_still_raises(self, dataset, monkeypatch):
        ilr, labels = dataset

        def bad_fit(self, *args, **kwargs):
            raise ValueError("bad start values")

        monkeypatch.setattr(MixedLM, "fit", bad_fit)
        eng = DetrendEngine(labels[["Cultivar", "Treatment"]], labels["Experiment"])
        with pytest.raises(DetrendConvergenceError, match="bad start values"):
            eng.fit(ilr["ilr1"])


# ---------------------------------------------------------------------------
# fit_transform
# ---------------------------------------------------------------------------

class TestFitTransform:

    def test_shapes(self, result, dataset):
        ilr, _ = dataset
        assert result.detrended.shape == ilr.shape
        assert result.offsets.shape == (3, 4)
        assert set(result.fits) == set(ilr.columns)
        assert result.failures == {}

    def test_does_not_mutate_input(self, engine, dataset):
        ilr, _ = dataset
        before = ilr.copy()
        engine.fit_transform(ilr)
        pd.testing.assert_frame_equal(ilr, before)

    def test_batch_effect_removed(self, result, dataset):
        ilr, labels = dataset
        before = check_batch_effect(ilr[["ilr2"]], labels["Experiment"])
        after = check_batch_effect(result.detrended[["ilr2"]], labels["Experiment"])
        assert before["significant"].iloc[0]
        assert not after["significant"].iloc[0]

    def test_recovered_offsets_track_truth(self, result):
        truth = pd.DataFrame(BATCH_OFFSETS, index=["ilr1", "ilr2", "ilr3", "ilr4"]).T
        centred_truth = truth - truth.mean()
        centred_est = result.offsets - result.offsets.mean()
        np.testing.assert_allclose(
            centred_est.loc[["1", "2", "3"]].values, centred_truth.values, atol=0.1
        )

    def test_fixed_effects_preserved(self, result, dataset):
        """Cultivar differences survive detrending."""
        ilr, labels = dataset
        raw_gap = ilr.groupby(labels["Cultivar"]).mean().diff().iloc[-1]
        det_gap = result.detrended.groupby(labels["Cultivar"]).mean().diff().iloc[-1]
        np.testing.assert_allclose(det_gap.values, raw_gap.values, atol=0.02)

    def test_parallel_matches_serial(self, result, dataset):
        ilr, labels = dataset
        parallel = DetrendEngine(
            labels[["Cultivar", "Treatment"]], labels["Experiment"], n_jobs=2,
        ).fit_transform(ilr)
        pd.testing.assert_frame_equal(parallel.detrended, result.detrended)
        pd.testing.assert_frame_equal(parallel.offsets, result.offsets)

    def test_unknown_policy(self, engine, dataset):
        ilr, _ = dataset
        with pytest.raises(ValueError, match="Unknown on_failure"):
            engine.fit_transform(ilr, on_failure="ignore")

    def test_misaligned_index(self, engine, dataset):
        ilr, _ = dataset
        with pytest.raises(ValueError, match="index"):
            engine.fit_transform(ilr.iloc[::-1])


class TestFailurePolicy:

    @pytest.fixture
    def failing_engine(self, dataset, monkeypatch):
        _, labels = dataset
        eng = DetrendEngine(labels[["Cultivar", "Treatment"]], labels["Experiment"])
        original = eng.fit

        def fit(column, name=None, deadline=None):
            if name == "ilr3":
                raise DetrendConvergenceError(name)
            return original(column, name, deadline)

        monkeypatch.setattr(eng, "fit", fit)
        return eng

    def test_raise(self, failing_engine, dataset):
        ilr, _ = dataset
        with pytest.raises(DetrendConvergenceError) as excinfo:
            failing_engine.fit_transform(ilr, on_failure="raise")
        assert excinfo.value.coordinate == "ilr3"
        assert len(excinfo.value.failures) == 1

    def test_raw_keeps_values(self, failing_engine, dataset):
        ilr, _ = dataset
        res = failing_engine.fit_transform(ilr, on_failure="raw")
        pd.testing.assert_series_equal(res.detrended["ilr3"], ilr["ilr3"])
        assert res.offsets["ilr3"].isna().all()
        assert list(res.failures) == ["ilr3"]

    def test_drop_removes_coordinate(self, failing_engine, dataset):
        ilr, _ = dataset
        res = failing_engine.fit_transform(ilr, on_failure="drop")
        assert list(res.detrended.columns) == ["ilr1", "ilr2", "ilr4"]
        assert "ilr3" not in res.offsets.columns


class TestValidation:

    def test_group_length_mismatch(self, dataset):
        _, labels = dataset
        with pytest.raises(ValueError, match="groups"):
            DetrendEngine(labels[["Cultivar"]], ["a", "b"])

    def test_bad_n_jobs(self, dataset):
        _, labels = dataset
        with pytest.raises(ValueError, match="n_jobs"):
            DetrendEngine(labels[["Cultivar"]], labels["Experiment"], n_jobs=0)
