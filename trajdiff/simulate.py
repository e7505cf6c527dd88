"""
trajdiff/simulate.py

Simulation framework for trajdiff validation.

Generates synthetic trajectory-inference output — per-cell pseudotime and
curve weights on each lineage — for cells from two conditions, with a known
pseudotime shift on chosen lineages. This gives ground truth for checking
the calibration (no shift) and power (shift) of the progression tests.

Core design:
    - Cells are split between two conditions
    - Every cell has a latent progression drawn uniformly on [0, 1]
    - Cells of the second condition are shifted on the shifted lineages
    - Soft curve weights come from a Dirichlet draw across lineages
    - A fraction of (cell, lineage) pairs is unassigned: weight 0 and NaN
      pseudotime, as trajectory tools report for cells off a branch
"""

import numpy as np
import pandas as pd
from scipy.stats import kstest
from typing import Optional


# ---------------------------------------------------------------------------
# Primary simulation entry point
# ---------------------------------------------------------------------------

def simulate_trajectory(
    n_cells: int = 200,
    n_lineages: int = 2,
    conditions: tuple = ("A", "B"),
    n_group1: Optional[int] = None,
    shift: float = 0.0,
    shifted_lineages: Optional[list] = None,
    noise_sd: float = 0.05,
    unassigned_rate: float = 0.2,
    soft_weights: bool = True,
    seed: Optional[int] = 42,
) -> tuple:
    """
    Simulate pseudotime and curve weights for two conditions.

    Parameters
    ----------
    n_cells : int
        Total number of cells across both conditions.
    n_lineages : int
        Number of lineages (columns "Lineage1", "Lineage2", ...).
    conditions : tuple of (label, label)
        Condition labels. The first n_group1 cells get conditions[0].
    n_group1 : int, optional
        Cells in the first condition. Defaults to half of n_cells.
    shift : float
        Pseudotime added to every second-condition cell on the shifted
        lineages. 0.0 simulates the null.
    shifted_lineages : list of int, optional
        Lineage indices carrying the shift. Defaults to [0].
    noise_sd : float
        SD of per-lineage Gaussian noise around each cell's progression.
    unassigned_rate : float
        Probability that a (cell, lineage) pair is off-lineage (weight 0,
        pseudotime NaN).
    soft_weights : bool
        If True, weights are Dirichlet draws across lineages; if False,
        every assigned pair has weight 1.
    seed : int, optional
        Random seed for reproducibility.

    Returns
    -------
    tuple of (pd.DataFrame, pd.DataFrame, pd.Series)
        pseudotime (cells × lineages), cellweights (cells × lineages) and
        conditions (name "condition"), all indexed by cell id. Ground truth
        is stored in pseudotime.attrs.

    Examples
    --------
    >>> pt, w, cond = simulate_trajectory(n_cells=300, shift=0.2, seed=0)
    >>> pt.head()
    """
    rng = np.random.default_rng(seed)

    if len(conditions) != 2 or conditions[0] == conditions[1]:
        raise ValueError(f"conditions must be two distinct labels, got {conditions}.")
    if n_group1 is None:
        n_group1 = n_cells // 2
    if not 0 < n_group1 < n_cells:
        raise ValueError(
            f"n_group1 ({n_group1}) must leave cells in both conditions "
            f"(n_cells={n_cells})."
        )
    if not 0.0 <= unassigned_rate < 1.0:
        raise ValueError(f"unassigned_rate must be in [0, 1), got {unassigned_rate}.")
    if shifted_lineages is None:
        shifted_lineages = [0]
    bad = [k for k in shifted_lineages if not 0 <= k < n_lineages]
    if bad:
        raise ValueError(f"shifted_lineages {bad} out of range for {n_lineages} lineages.")

    n_group2 = n_cells - n_group1
    cell_ids = [f"cell_{i:04d}" for i in range(n_cells)]
    lineages = [f"Lineage{k + 1}" for k in range(n_lineages)]
    labels = np.array([conditions[0]] * n_group1 + [conditions[1]] * n_group2, dtype=object)
    in_group2 = labels == conditions[1]

    progression = rng.uniform(0.0, 1.0, size=n_cells)
    pseudotime = progression[:, None] + rng.normal(0.0, noise_sd, size=(n_cells, n_lineages))
    for k in shifted_lineages:
        pseudotime[in_group2, k] += shift

    if soft_weights:
        weights = rng.dirichlet(alpha=np.ones(n_lineages) * 2, size=n_cells)
    else:
        weights = np.ones((n_cells, n_lineages))

    unassigned = rng.random((n_cells, n_lineages)) < unassigned_rate
    weights[unassigned] = 0.0
    pseudotime[unassigned] = np.nan

    pt_df = pd.DataFrame(pseudotime, index=cell_ids, columns=lineages)
    w_df = pd.DataFrame(weights, index=cell_ids, columns=lineages)
    cond = pd.Series(labels, index=cell_ids, name="condition")

    # Attach simulation metadata as attributes for downstream validation
    pt_df.attrs["shift"] = shift
    pt_df.attrs["shifted_lineages"] = [lineages[k] for k in shifted_lineages]
    pt_df.attrs["conditions"] = tuple(conditions)
    pt_df.attrs["n_group1"] = n_group1
    pt_df.attrs["n_group2"] = n_group2
    pt_df.attrs["unassigned_rate"] = unassigned_rate

    return pt_df, w_df, cond


def simulate_separated(
    n_cells: int = 100,
    conditions: tuple = ("A", "B"),
    spread: float = 0.05,
    seed: Optional[int] = 42,
) -> tuple:
    """
    Single-lineage data with a clear progression difference.

    The first condition's pseudotimes cluster near 0 and the second's near 1;
    every weight is 1. Half the cells go to each condition.

    Returns
    -------
    tuple of (pd.DataFrame, pd.DataFrame, pd.Series)
        Same layout as simulate_trajectory, with one column "Lineage1".
    """
    rng = np.random.default_rng(seed)

    n_group1 = n_cells // 2
    n_group2 = n_cells - n_group1
    cell_ids = [f"cell_{i:04d}" for i in range(n_cells)]
    labels = np.array([conditions[0]] * n_group1 + [conditions[1]] * n_group2, dtype=object)

    values = np.concatenate([
        rng.normal(0.0, spread, size=n_group1),
        rng.normal(1.0, spread, size=n_group2),
    ])

    pt_df = pd.DataFrame({"Lineage1": values}, index=cell_ids)
    w_df = pd.DataFrame({"Lineage1": np.ones(n_cells)}, index=cell_ids)
    cond = pd.Series(labels, index=cell_ids, name="condition")

    pt_df.attrs["shift"] = 1.0
    pt_df.attrs["shifted_lineages"] = ["Lineage1"]
    pt_df.attrs["conditions"] = tuple(conditions)
    pt_df.attrs["n_group1"] = n_group1
    pt_df.attrs["n_group2"] = n_group2
    pt_df.attrs["unassigned_rate"] = 0.0

    return pt_df, w_df, cond


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def get_ground_truth(pseudotime: pd.DataFrame) -> dict:
    """
    Extract ground truth metadata from a simulated pseudotime matrix.

    Parameters
    ----------
    pseudotime : pd.DataFrame
        First element returned by simulate_trajectory or simulate_separated.

    Returns
    -------
    dict
        shift, shifted_lineages, null_lineages, conditions, n_group1,
        n_group2, unassigned_rate.
    """
    if not pseudotime.attrs:
        raise ValueError(
            "This dataframe does not have simulation metadata. "
            "Make sure it was generated by simulate_trajectory or simulate_separated."
        )
    shifted = list(pseudotime.attrs.get("shifted_lineages", []))
    return {
        "shift": pseudotime.attrs.get("shift"),
        "shifted_lineages": shifted,
        "null_lineages": [c for c in pseudotime.columns if c not in shifted],
        "conditions": pseudotime.attrs.get("conditions"),
        "n_group1": pseudotime.attrs.get("n_group1"),
        "n_group2": pseudotime.attrs.get("n_group2"),
        "unassigned_rate": pseudotime.attrs.get("unassigned_rate"),
    }


def calibration_report(p_values, alpha: float = 0.05) -> dict:
    """
    Summarise p-values from repeated simulated runs.

    Under the null, p-values should be roughly uniform and the rejection
    rate close to alpha; under an alternative, the rejection rate is power.

    Parameters
    ----------
    p_values : array-like
        One p-value per simulated run.
    alpha : float
        Significance threshold.

    Returns
    -------
    dict
        n_runs, alpha, reject_rate (fraction of p < alpha), and
        uniformity_p (KS test of the p-values against Uniform(0, 1)).
    """
    ps = np.asarray(p_values, dtype=float)
    if ps.size == 0:
        raise ValueError("p_values is empty.")
    if ((ps < 0) | (ps > 1)).any():
        raise ValueError("p_values must lie in [0, 1].")

    return {
        "n_runs": int(ps.size),
        "alpha": alpha,
        "reject_rate": round(float(np.mean(ps < alpha)), 4),
        "uniformity_p": round(float(kstest(ps, "uniform").pvalue), 4),
    }
