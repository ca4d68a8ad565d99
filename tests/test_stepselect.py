"""
Step-Selection Pipeline — Tests (stages 1–5).

Covers:
1. Track regularisation (burst splitting, skipping, idempotence).
2. Step computation (length, bearing, turning angle, burst boundaries).
3. Movement-distribution MLE (gamma, von Mises).
4. Control-step generation (strata composition, reproducibility).
5. Covariate extraction and the grid sampler.
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure src is on the path
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def make_track(n: int = 150, seed: int = 1, individual_id: str = "A01") -> pd.DataFrame:
    """Correlated random walk sampled every 2 h."""
    rng = np.random.default_rng(seed)
    sl = rng.gamma(2.0, 100.0, size=n - 1)
    ta = rng.vonmises(0.0, 2.0, size=n - 1)
    heading = np.cumsum(ta)
    x = np.r_[0.0, np.cumsum(sl * np.cos(heading))]
    y = np.r_[0.0, np.cumsum(sl * np.sin(heading))]
    return pd.DataFrame({
        "individual_id": individual_id,
        "timestamp": pd.date_range("2021-01-01", periods=n, freq="2h"),
        "x": x,
        "y": y,
    })


def fixes_at(hours, xs=None) -> pd.DataFrame:
    hours = list(hours)
    t0 = pd.Timestamp("2021-03-01")
    return pd.DataFrame({
        "individual_id": "A01",
        "timestamp": [t0 + pd.Timedelta(hours=h) for h in hours],
        "x": xs if xs is not None else [100.0 * i for i in range(len(hours))],
        "y": [0.0] * len(hours),
    })


def habitat(x: float, y: float) -> dict:
    return {
        "forest": float(np.sin(x / 300.0) + np.cos(y / 400.0)),
        "elev": float(x / 1000.0 + 0.5 * y / 1000.0),
    }


# ═══════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def right_angle_bursts():
    """4 fixes going East then North then North, one burst."""
    return pd.DataFrame({
        "individual_id": "A01",
        "burst_id": 1,
        "timestamp": pd.date_range("2021-01-01", periods=4, freq="2h"),
        "x": [0.0, 100.0, 100.0, 100.0],
        "y": [0.0, 0.0, 100.0, 200.0],
    })


@pytest.fixture
def track():
    return make_track()


@pytest.fixture
def observed_steps(track):
    from stepselect.bursts import regularize_track
    from stepselect.steps import compute_steps
    bursts = regularize_track(track, "2h", "15min", min_burst_length=3)
    return compute_steps(bursts)


@pytest.fixture
def distributions(observed_steps):
    from stepselect.distributions import fit_movement_distributions
    return fit_movement_distributions(observed_steps)


# ═══════════════════════════════════════════════════════════════════════════
# 1. Track Regularisation
# ═══════════════════════════════════════════════════════════════════════════

class TestRegularizer:
    def test_single_long_gap_splits_into_two_bursts(self):
        from stepselect.bursts import regularize_track
        fixes = fixes_at([0, 2, 4, 6, 8, 13, 15, 17, 19])
        bursts = regularize_track(fixes, "2h", "15min", min_burst_length=2)
        assert bursts["burst_id"].nunique() == 2
        assert bursts["burst_id"].tolist() == [1] * 5 + [2] * 4

    def test_within_tolerance_stays_in_burst(self):
        from stepselect.bursts import regularize_track
        fixes = fixes_at([0, 2.2, 4.1, 6.0])
        bursts = regularize_track(fixes, "2h", "15min", min_burst_length=2)
        assert bursts["burst_id"].nunique() == 1
        assert len(bursts) == 4

    def test_fast_fixes_are_skipped(self):
        from stepselect.bursts import regularize_track
        fixes = fixes_at([0, 1, 2, 4])
        bursts = regularize_track(fixes, "2h", "15min", min_burst_length=2)
        hours = (bursts["timestamp"] - bursts["timestamp"].iloc[0]) / pd.Timedelta(hours=1)
        assert hours.tolist() == [0, 2, 4]
        assert bursts["burst_id"].nunique() == 1

    def test_short_bursts_dropped_and_renumbered(self):
        from stepselect.bursts import regularize_track
        fixes = fixes_at([0, 2, 4, 10, 20, 22, 24])
        bursts = regularize_track(fixes, "2h", "15min", min_burst_length=3)
        assert sorted(bursts["burst_id"].unique()) == [1, 2]
        assert len(bursts) == 6

    def test_no_surviving_burst_raises(self):
        from stepselect.bursts import regularize_track
        from stepselect.errors import InsufficientDataError
        fixes = fixes_at([0, 5, 10, 15])
        with pytest.raises(InsufficientDataError):
            regularize_track(fixes, "2h", "15min", min_burst_length=2)

    def test_idempotent(self):
        from stepselect.bursts import regularize_track
        fixes = fixes_at([0, 1, 2, 4, 6.1, 9, 11, 13, 13.5, 15, 30, 32])
        once = regularize_track(fixes, "2h", "15min", min_burst_length=2)
        twice = regularize_track(once.drop(columns="burst_id"), "2h", "15min", min_burst_length=2)
        pd.testing.assert_frame_equal(once, twice)

    def test_does_not_mutate_input(self):
        from stepselect.bursts import regularize_track
        fixes = fixes_at([0, 2, 4])
        before = fixes.copy()
        regularize_track(fixes, "2h", "15min", min_burst_length=2)
        pd.testing.assert_frame_equal(fixes, before)

    def test_rejects_non_increasing_timestamps(self):
        from stepselect.bursts import regularize_track
        fixes = fixes_at([0, 2, 2, 4])
        with pytest.raises(ValueError):
            regularize_track(fixes, "2h", "15min", min_burst_length=2)

    def test_rejects_min_burst_length_below_two(self):
        from stepselect.bursts import regularize_track
        with pytest.raises(ValueError):
            regularize_track(fixes_at([0, 2, 4]), "2h", "15min", min_burst_length=1)

    def test_tolerance_at_least_rate_skips_nothing(self):
        from stepselect.bursts import regularize_track
        fixes = fixes_at([0, 0.5, 2, 6])
        bursts = regularize_track(fixes, "2h", "3h", min_burst_length=2)
        assert len(bursts) == 4
        assert bursts["burst_id"].nunique() == 1

    def test_rejects_negative_tolerance(self):
        from stepselect.bursts import regularize_track
        with pytest.raises(ValueError):
            regularize_track(fixes_at([0, 2, 4]), "2h", "-5min", min_burst_length=2)

    def test_rejects_multiple_individuals(self):
        from stepselect.bursts import regularize_track
        fixes = pd.concat([make_track(10, individual_id="A"), make_track(10, individual_id="B")])
        with pytest.raises(ValueError):
            regularize_track(fixes, "2h", "15min")

    def test_sampling_rate_summary(self, track):
        from stepselect.bursts import summarize_sampling_rate
        summary = summarize_sampling_rate(track, unit="min")
        assert summary["median"] == 120
        assert summary["n"] == len(track) - 1


# ═══════════════════════════════════════════════════════════════════════════
# 2. Step Computation
# ═══════════════════════════════════════════════════════════════════════════

class TestSteps:
    def test_one_step_fewer_than_fixes(self, right_angle_bursts):
        from stepselect.steps import compute_steps
        steps = compute_steps(right_angle_bursts)
        assert len(steps) == 3
        assert steps["step_id"].tolist() == [1, 2, 3]
        assert steps["case"].all()

    def test_step_length_and_bearing(self, right_angle_bursts):
        from stepselect.steps import compute_steps
        steps = compute_steps(right_angle_bursts)
        assert steps["sl"].tolist() == pytest.approx([100.0, 100.0, 100.0])
        assert steps.iloc[0]["bearing"] == pytest.approx(0.0)
        assert steps.iloc[1]["bearing"] == pytest.approx(np.pi / 2)

    def test_turning_angles(self, right_angle_bursts):
        from stepselect.steps import compute_steps
        steps = compute_steps(right_angle_bursts)
        assert np.isnan(steps.iloc[0]["ta"])
        assert steps.iloc[1]["ta"] == pytest.approx(np.pi / 2)
        assert steps.iloc[2]["ta"] == pytest.approx(0.0)

    def test_first_step_of_each_burst_has_no_turn(self):
        from stepselect.bursts import regularize_track
        from stepselect.steps import compute_steps
        bursts = regularize_track(
            fixes_at([0, 2, 4, 6, 13, 15, 17]), "2h", "15min", min_burst_length=2,
        )
        steps = compute_steps(bursts)
        firsts = steps.groupby("burst_id").head(1)
        assert firsts["ta"].isna().all()
        assert steps["ta"].isna().sum() == 2
        assert len(steps) == 3 + 2

    def test_invariants(self, observed_steps):
        assert (observed_steps["sl"] >= 0).all()
        assert (observed_steps["dt"] >= pd.Timedelta(0)).all()
        for _bid, sub in observed_steps.groupby("burst_id"):
            assert np.allclose(sub["x2"].values[:-1], sub["x1"].values[1:])
            assert np.allclose(sub["y2"].values[:-1], sub["y1"].values[1:])
            assert (sub["t2"].values[:-1] == sub["t1"].values[1:]).all()

    def test_turning_angles_wrapped(self, observed_steps):
        ta = observed_steps["ta"].dropna()
        assert (ta > -np.pi).all() and (ta <= np.pi).all()

    def test_wrap_angle(self):
        from stepselect.steps import wrap_angle
        assert wrap_angle(np.pi) == pytest.approx(np.pi)
        assert wrap_angle(-np.pi) == pytest.approx(np.pi)
        assert wrap_angle(1.5 * np.pi) == pytest.approx(-0.5 * np.pi)
        assert wrap_angle(0.0) == pytest.approx(0.0)

    def test_replace_zero_lengths(self, right_angle_bursts):
        from stepselect.steps import compute_steps, replace_zero_lengths
        bursts = right_angle_bursts.copy()
        bursts.loc[2, ["x", "y"]] = [100.0, 0.0]
        steps = compute_steps(bursts)
        assert (steps["sl"] == 0).sum() == 1
        fixed = replace_zero_lengths(steps, epsilon=0.1)
        assert (fixed["sl"] == 0).sum() == 0
        assert fixed["sl"].min() == pytest.approx(0.1)
        assert (steps["sl"] == 0).sum() == 1


# ═══════════════════════════════════════════════════════════════════════════
# 3. Movement Distributions
# ═══════════════════════════════════════════════════════════════════════════

class TestDistributions:
    def test_gamma_with_zero_length_replaced(self):
        from stepselect.distributions import fit_gamma
        dist = fit_gamma([0, 1, 2, 3, 4], epsilon=0.1)
        assert dist.kind == "gamma"
        assert dist.shape > 0 and dist.scale > 0
        assert dist.mean == pytest.approx(np.mean([0.1, 1, 2, 3, 4]))

    def test_gamma_matches_scipy_mle(self):
        from scipy import stats
        from stepselect.distributions import fit_gamma
        x = np.random.default_rng(3).gamma(2.5, 40.0, size=2000)
        dist = fit_gamma(x)
        a, _loc, scale = stats.gamma.fit(x, floc=0)
        assert dist.shape == pytest.approx(a, rel=1e-4)
        assert dist.scale == pytest.approx(scale, rel=1e-4)

    def test_gamma_recovers_parameters(self):
        from stepselect.distributions import fit_gamma
        x = np.random.default_rng(4).gamma(2.5, 40.0, size=5000)
        dist = fit_gamma(x)
        assert dist.shape == pytest.approx(2.5, rel=0.1)
        assert dist.scale == pytest.approx(40.0, rel=0.1)

    def test_gamma_too_few_observations(self):
        from stepselect.distributions import fit_gamma
        from stepselect.errors import FitError
        with pytest.raises(FitError):
            fit_gamma([5.0, np.nan, -1.0])

    def test_gamma_identical_lengths(self):
        from stepselect.distributions import fit_gamma
        from stepselect.errors import FitError
        with pytest.raises(FitError):
            fit_gamma([2.0, 2.0, 2.0])

    def test_von_mises_recovers_parameters(self):
        from stepselect.distributions import fit_von_mises
        a = np.random.default_rng(5).vonmises(0.3, 4.0, size=5000)
        dist = fit_von_mises(a)
        assert dist.kind == "von_mises"
        assert dist.mu == pytest.approx(0.3, abs=0.05)
        assert dist.kappa == pytest.approx(4.0, rel=0.1)

    def test_von_mises_ignores_no_turn_markers(self):
        from stepselect.distributions import fit_von_mises
        a = np.r_[np.nan, np.random.default_rng(6).vonmises(0.0, 1.0, size=200)]
        assert np.isfinite(fit_von_mises(a).kappa)

    def test_von_mises_too_few_observations(self):
        from stepselect.distributions import fit_von_mises
        from stepselect.errors import FitError
        with pytest.raises(FitError):
            fit_von_mises([np.nan, 0.4])

    def test_von_mises_near_uniform(self):
        from stepselect.distributions import fit_von_mises
        dist = fit_von_mises([0.0, np.pi / 2, np.pi, -np.pi / 2])
        assert dist.kappa == pytest.approx(0.0, abs=1e-6)

    def test_deterministic(self, observed_steps):
        from stepselect.distributions import fit_movement_distributions
        a = fit_movement_distributions(observed_steps)
        b = fit_movement_distributions(observed_steps.sample(frac=1.0, random_state=0))
        assert a.step_length.shape == pytest.approx(b.step_length.shape, rel=1e-9)
        assert a.turning_angle.kappa == pytest.approx(b.turning_angle.kappa, rel=1e-9)

    def test_logpdf_normalised(self):
        from scipy import integrate
        from stepselect.distributions import GammaDistribution, VonMisesDistribution
        g = GammaDistribution(shape=2.0, scale=50.0)
        vm = VonMisesDistribution(mu=0.5, kappa=3.0)
        g_mass, _ = integrate.quad(lambda x: np.exp(g.logpdf(x)), 0, np.inf)
        vm_mass, _ = integrate.quad(lambda x: np.exp(vm.logpdf(x)), -np.pi, np.pi)
        assert g_mass == pytest.approx(1.0, abs=1e-6)
        assert vm_mass == pytest.approx(1.0, abs=1e-6)


# ═══════════════════════════════════════════════════════════════════════════
# 4. Control Steps
# ═══════════════════════════════════════════════════════════════════════════

class TestControls:
    def test_missing_distributions_raise(self, observed_steps):
        from stepselect.controls import generate_control_steps
        from stepselect.errors import GenerationError
        with pytest.raises(GenerationError):
            generate_control_steps(observed_steps, None, 5, np.random.default_rng(0))

    def test_partial_distributions_raise(self, observed_steps, distributions):
        from stepselect.controls import generate_control_steps
        from stepselect.distributions import MovementDistributions
        from stepselect.errors import GenerationError
        partial = MovementDistributions(step_length=distributions.step_length, turning_angle=None)
        with pytest.raises(GenerationError):
            generate_control_steps(observed_steps, partial, 5, np.random.default_rng(0))

    def test_strata_composition(self, observed_steps, distributions):
        from stepselect.controls import generate_control_steps
        design = generate_control_steps(observed_steps, distributions, 7, np.random.default_rng(0))
        counts = design.groupby("step_id")["case"].agg(["sum", "size"])
        assert (counts["sum"] == 1).all()
        assert (counts["size"] == 8).all()
        assert len(counts) == len(observed_steps)

    def test_reproducible_with_seed(self, observed_steps, distributions):
        from stepselect.controls import generate_control_steps
        a = generate_control_steps(observed_steps, distributions, 5, np.random.default_rng(11))
        b = generate_control_steps(observed_steps, distributions, 5, np.random.default_rng(11))
        c = generate_control_steps(observed_steps, distributions, 5, np.random.default_rng(12))
        pd.testing.assert_frame_equal(a, b)
        assert not np.allclose(a["x2"].values, c["x2"].values)

    def test_controls_share_start_and_window(self, observed_steps, distributions):
        from stepselect.controls import generate_control_steps
        design = generate_control_steps(observed_steps, distributions, 3, np.random.default_rng(1))
        first = design.groupby("step_id")[["x1", "y1", "t1", "t2", "burst_id"]].nunique()
        assert (first == 1).all().all()

    def test_control_geometry(self, observed_steps, distributions):
        from stepselect.controls import generate_control_steps
        from stepselect.steps import wrap_angle
        design = generate_control_steps(observed_steps, distributions, 3, np.random.default_rng(2))
        ctrl = design.loc[~design["case"]]
        length = np.hypot(ctrl["x2"] - ctrl["x1"], ctrl["y2"] - ctrl["y1"])
        assert np.allclose(length, ctrl["sl"])
        turned = ctrl.dropna(subset=["ta"])
        assert np.allclose(
            np.cos(turned["bearing"]),
            np.cos(wrap_angle(turned["prev_bearing"] + turned["ta"])),
        )

    def test_first_step_controls_have_no_turn(self, observed_steps, distributions):
        from stepselect.controls import generate_control_steps
        design = generate_control_steps(observed_steps, distributions, 3, np.random.default_rng(2))
        first = design.loc[design["step_id"] == 1]
        assert first["ta"].isna().all()
        assert first["bearing"].notna().all()

    def test_does_not_mutate_input(self, observed_steps, distributions):
        from stepselect.controls import generate_control_steps
        before = observed_steps.copy()
        generate_control_steps(observed_steps, distributions, 3, np.random.default_rng(2))
        pd.testing.assert_frame_equal(observed_steps, before)

    def test_rejects_zero_controls(self, observed_steps, distributions):
        from stepselect.controls import generate_control_steps
        with pytest.raises(ValueError):
            generate_control_steps(observed_steps, distributions, 0, np.random.default_rng(2))


# ═══════════════════════════════════════════════════════════════════════════
# 5. Covariates
# ═══════════════════════════════════════════════════════════════════════════

class TestCovariates:
    def test_sampled_at_end_point(self, observed_steps):
        from stepselect.covariates import extract_covariates
        out = extract_covariates(observed_steps, habitat)
        row = out.iloc[3]
        assert row["forest"] == pytest.approx(habitat(row["x2"], row["y2"])["forest"])
        assert "forest" not in observed_steps.columns

    def test_sampled_at_both_points(self, observed_steps):
        from stepselect.covariates import extract_covariates
        out = extract_covariates(observed_steps, habitat, where="both")
        assert {"forest_start", "forest_end", "elev_start", "elev_end"} <= set(out.columns)
        row = out.iloc[0]
        assert row["elev_start"] == pytest.approx(habitat(row["x1"], row["y1"])["elev"])

    def test_missing_coverage_becomes_nan(self, observed_steps):
        from stepselect.covariates import extract_covariates

        def patchy(x, y):
            if x < 0:
                return {"forest": None}
            return {"forest": 1.0, "water": 0.0}

        out = extract_covariates(observed_steps, patchy)
        west = out["x2"] < 0
        assert out.loc[west, "forest"].isna().all()
        assert out.loc[west, "water"].isna().all()
        assert (out.loc[~west, "forest"] == 1.0).all()

    def test_name_clash_rejected(self, observed_steps):
        from stepselect.covariates import extract_covariates
        with pytest.raises(ValueError):
            extract_covariates(observed_steps, lambda x, y: {"sl": 1.0})

    def test_grid_sampler(self):
        from stepselect.covariates import GridSampler
        xs, ys = np.meshgrid([0.0, 10.0, 20.0], [0.0, 10.0])
        grid = pd.DataFrame({
            "x": xs.ravel(),
            "y": ys.ravel(),
            "forest": np.arange(6, dtype=float),
        })
        sampler = GridSampler.from_frame(grid)
        assert sampler.cell_size == 10.0
        assert sampler(11.0, 1.0)["forest"] == 1.0
        assert sampler(19.0, 9.0)["forest"] == 5.0
        assert sampler(-50.0, 0.0)["forest"] is None
