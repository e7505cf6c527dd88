"""
tests/test_simulate.py

Unit tests for the trajdiff simulation framework.
These tests verify that simulated trajectories have the correct structure,
unassigned-cell conventions and embedded pseudotime shift.
"""

import pytest
import numpy as np
import pandas as pd
from trajdiff import simulate


# ---------------------------------------------------------------------------
# Test simulate_trajectory
# ---------------------------------------------------------------------------

class TestSimulateTrajectory:

    def test_output_shapes(self):
        pt, w, cond = simulate.simulate_trajectory(n_cells=50, n_lineages=3, seed=0)
        assert pt.shape == (50, 3)
        assert w.shape == (50, 3)
        assert len(cond) == 50

    def test_labels(self):
        pt, w, cond = simulate.simulate_trajectory(n_lineages=2, seed=0)
        assert list(pt.columns) == ["Lineage1", "Lineage2"]
        assert pt.index.equals(w.index)
        assert pt.index.equals(cond.index)
        assert cond.name == "condition"

    def test_group_sizes(self):
        _, _, cond = simulate.simulate_trajectory(
            n_cells=40, n_group1=15, conditions=("ctrl", "treated"), seed=0
        )
        assert (cond == "ctrl").sum() == 15
        assert (cond == "treated").sum() == 25

    def test_unassigned_pairs_are_nan_with_zero_weight(self):
        pt, w, _ = simulate.simulate_trajectory(unassigned_rate=0.3, seed=0)
        assert pt.isna().values.sum() > 0
        np.testing.assert_array_equal(pt.isna().values, (w == 0).values)

    def test_no_unassigned_when_rate_zero(self):
        pt, w, _ = simulate.simulate_trajectory(unassigned_rate=0.0, seed=0)
        assert not pt.isna().values.any()
        assert (w.values > 0).all()

    def test_soft_weights_sum_to_one_before_dropout(self):
        _, w, _ = simulate.simulate_trajectory(unassigned_rate=0.0, seed=0)
        np.testing.assert_allclose(w.sum(axis=1).values, 1.0)

    def test_hard_weights_are_one(self):
        _, w, _ = simulate.simulate_trajectory(unassigned_rate=0.0, soft_weights=False, seed=0)
        assert (w.values == 1.0).all()

    def test_shift_moves_second_condition(self):
        pt, _, cond = simulate.simulate_trajectory(
            n_cells=400, shift=1.0, shifted_lineages=[0], unassigned_rate=0.0, seed=0
        )
        gap = pt.loc[cond == "B", "Lineage1"].mean() - pt.loc[cond == "A", "Lineage1"].mean()
        other = pt.loc[cond == "B", "Lineage2"].mean() - pt.loc[cond == "A", "Lineage2"].mean()
        assert gap > 0.8
        assert abs(other) < 0.2

    def test_ground_truth_metadata(self):
        pt, _, _ = simulate.simulate_trajectory(
            n_lineages=3, shift=0.5, shifted_lineages=[1, 2], seed=0
        )
        truth = simulate.get_ground_truth(pt)
        assert truth["shift"] == 0.5
        assert truth["shifted_lineages"] == ["Lineage2", "Lineage3"]
        assert truth["null_lineages"] == ["Lineage1"]
        assert truth["conditions"] == ("A", "B")

    def test_reproducibility(self):
        a = simulate.simulate_trajectory(seed=42)
        b = simulate.simulate_trajectory(seed=42)
        pd.testing.assert_frame_equal(a[0], b[0])
        pd.testing.assert_frame_equal(a[1], b[1])
        pd.testing.assert_series_equal(a[2], b[2])

    def test_different_seeds_differ(self):
        a, _, _ = simulate.simulate_trajectory(seed=1)
        b, _, _ = simulate.simulate_trajectory(seed=2)
        assert not a.equals(b)

    def test_invalid_group_size_raises(self):
        with pytest.raises(ValueError, match="both conditions"):
            simulate.simulate_trajectory(n_cells=10, n_group1=10, seed=0)

    def test_invalid_lineage_raises(self):
        with pytest.raises(ValueError, match="out of range"):
            simulate.simulate_trajectory(n_lineages=2, shifted_lineages=[2], seed=0)

    def test_duplicate_conditions_raises(self):
        with pytest.raises(ValueError, match="two distinct"):
            simulate.simulate_trajectory(conditions=("A", "A"), seed=0)


# ---------------------------------------------------------------------------
# Test simulate_separated
# ---------------------------------------------------------------------------

class TestSimulateSeparated:

    def test_output_shape(self):
        pt, w, cond = simulate.simulate_separated(n_cells=100, seed=0)
        assert pt.shape == (100, 1)
        assert (w.values == 1.0).all()
        assert (cond == "A").sum() == 50

    def test_groups_separated(self):
        pt, _, cond = simulate.simulate_separated(seed=0)
        assert pt.loc[cond == "A", "Lineage1"].max() < pt.loc[cond == "B", "Lineage1"].min()


# ---------------------------------------------------------------------------
# Test calibration_report
# ---------------------------------------------------------------------------

class TestCalibrationReport:

    def test_reject_rate(self):
        report = simulate.calibration_report([0.01, 0.02, 0.5, 0.9], alpha=0.05)
        assert report["reject_rate"] == 0.5
        assert report["n_runs"] == 4

    def test_uniform_p_values_look_calibrated(self):
        ps = np.linspace(0.005, 0.995, 100)
        report = simulate.calibration_report(ps)
        assert report["uniformity_p"] > 0.5

    def test_skewed_p_values_flagged(self):
        ps = np.linspace(0.0, 0.1, 100)
        report = simulate.calibration_report(ps)
        assert report["uniformity_p"] < 0.01

    def test_empty_raises(self):
        with pytest.raises(ValueError, match="empty"):
            simulate.calibration_report([])

    def test_out_of_range_raises(self):
        with pytest.raises(ValueError, match=r"\[0, 1\]"):
            simulate.calibration_report([0.5, 1.5])

    def test_no_metadata_raises(self):
        df = pd.DataFrame({"a": [1, 2]})
        with pytest.raises(ValueError, match="simulation metadata"):
            simulate.get_ground_truth(df)
