"""
trajdiff/stats.py

Statistical tests for differential progression along a trajectory.

The core is a weighted permutation test, run independently per lineage:

    weighted_mean_difference — weighted mean pseudotime of one condition
                               minus that of the other, on one lineage.
                               Cells with zero weight are dropped before
                               their pseudotime is read.

    permutation_null         — null distribution of that statistic under
                               random permutations of the condition labels
                               across all cells; optionally sharded across
                               joblib workers with independent seed streams.

    empirical_p_value        — two-sided: fraction of |null| > |observed|.

    permutation_test         — the three steps above for one lineage.

    progression_test         — permutation_test for every lineage, as a
                               DataFrame.

    ks_test                  — two-sample Kolmogorov-Smirnov comparison of
                               the weighted cells' pseudotimes, per lineage.

Note on exchangeability: the permutation null assumes the labels are
exchangeable under H0. When the two conditions' pseudotime distributions
differ in shape but not in weighted mean, the test can be miscalibrated.
"""

import logging
import time

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.stats import ks_2samp
from typing import Optional, Union

from trajdiff.exceptions import (
    DegenerateGroupError,
    InsufficientPermutationsError,
    InvalidInputError,
)
from trajdiff.preprocess import select_lineage, validate_inputs

logger = logging.getLogger(__name__)

SeedLike = Union[int, None, np.random.SeedSequence]

_RESULT_COLUMNS = [
    "lineage", "statistic", "p_value", "null_mean", "null_sd",
    "n_permutations", "n_cells",
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def weighted_mean(pseudotime, weights) -> float:
    """
    Weighted mean pseudotime, ignoring cells with zero weight.

    Zero-weight cells are filtered out before their pseudotime is looked at,
    so they may hold NaN or any other placeholder.

    Raises
    ------
    InvalidInputError
        If the vectors differ in length, a weight is negative / non-finite,
        or a cell with positive weight has missing pseudotime.
    DegenerateGroupError
        If the weights sum to zero.
    """
    pt = np.asarray(pseudotime, dtype=float).ravel()
    w = np.asarray(weights, dtype=float).ravel()
    if pt.shape != w.shape:
        raise InvalidInputError(
            f"pseudotime length ({len(pt)}) != weights length ({len(w)})."
        )
    if not np.isfinite(w).all() or (w < 0).any():
        raise InvalidInputError("weights must be finite and non-negative.")

    keep = w > 0
    if not np.isfinite(pt[keep]).all():
        raise InvalidInputError(
            f"pseudotime is missing or non-finite for "
            f"{int((~np.isfinite(pt[keep])).sum())} cells with positive weight."
        )
    total = w[keep].sum()
    if total <= 0:
        raise DegenerateGroupError()
    return float(np.dot(pt[keep], w[keep]) / total)


def weighted_mean_difference(
    pseudotime,
    weights,
    conditions,
    levels: Optional[tuple] = None,
    lineage=None,
) -> float:
    """
    Difference in weighted mean pseudotime between two condition groups.

    Parameters
    ----------
    pseudotime : array-like
        Pseudotime of each cell on one lineage. May be NaN where the weight
        is zero.
    weights : array-like
        Non-negative curve weight of each cell on the same lineage.
    conditions : array-like
        Condition label of each cell; exactly two distinct levels.
    levels : tuple of (label, label), optional
        Group order; the statistic is mean(levels[0]) − mean(levels[1]).
        Defaults to the sorted unique labels.
    lineage : optional
        Lineage label, only used to give errors context.

    Returns
    -------
    float
        Weighted mean of group 1 minus weighted mean of group 2.

    Raises
    ------
    InvalidInputError
        On mismatched lengths, bad weights, != 2 condition levels, or a
        multi-lineage matrix (use permutation_test to pick a lineage).
    DegenerateGroupError
        If either group has zero total weight.
    """
    inputs = validate_inputs(pseudotime, weights, conditions, levels=levels)
    _require_single_lineage(inputs)
    pw, wk = _weighted_terms(inputs["pseudotime"][:, 0], inputs["cellweights"][:, 0])
    in_group1 = inputs["conditions"] == inputs["levels"][0]
    return _mean_difference(pw, wk, in_group1, inputs["levels"], lineage)


def permutation_null(
    pseudotime,
    weights,
    conditions,
    n_permutations: int = 10000,
    levels: Optional[tuple] = None,
    seed: SeedLike = 42,
    n_jobs: int = 1,
    chunk_size: int = 1000,
    timeout: Optional[float] = None,
    lineage=None,
) -> np.ndarray:
    """
    Permutation null distribution of the weighted mean difference.

    Every draw is a full random permutation of the condition labels across
    all cells, so group sizes are preserved exactly, while pseudotime and
    weights stay fixed.

    Draws are generated in chunks of ``chunk_size``; chunk k uses the k-th
    child of ``SeedSequence(seed)``. The chunk layout does not depend on
    ``n_jobs``, so a given seed yields the same null distribution whether
    the chunks run serially or across joblib workers.

    Parameters
    ----------
    pseudotime, weights, conditions : array-like
        As in weighted_mean_difference.
    n_permutations : int
        Number of permutations R.
    levels : tuple of (label, label), optional
        Group order for the statistic.
    seed : int, SeedSequence or None
        Root of the random streams. None draws fresh OS entropy. A
        SeedSequence is spawned from (which advances it), so pass an int
        when repeated calls must agree.
    n_jobs : int
        joblib worker count; 1 runs in-process, -1 uses every core.
    chunk_size : int
        Permutations per chunk (and per random stream).
    timeout : float, optional
        Wall-clock limit in seconds for the whole loop.
    lineage : optional
        Lineage label, only used to give errors context.

    Returns
    -------
    np.ndarray
        Float64 array of length n_permutations.

    Raises
    ------
    InsufficientPermutationsError
        If n_permutations <= 0, or the timeout expires before every
        permutation has been drawn.
    InvalidInputError
        If pseudotime has more than one lineage column.
    DegenerateGroupError
        If the observed data or any permuted draw leaves a group with zero
        total weight.
    """
    inputs = validate_inputs(pseudotime, weights, conditions, levels=levels)
    _require_single_lineage(inputs)
    pw, wk = _weighted_terms(inputs["pseudotime"][:, 0], inputs["cellweights"][:, 0])
    in_group1 = inputs["conditions"] == inputs["levels"][0]

    # Fail on degenerate observed data before spending any draws.
    _mean_difference(pw, wk, in_group1, inputs["levels"], lineage)

    return _null_distribution(
        pw, wk, in_group1, inputs["levels"], lineage,
        n_permutations=n_permutations,
        seed_seq=_seed_sequence(seed),
        n_jobs=n_jobs,
        chunk_size=chunk_size,
        timeout=timeout,
    )


def empirical_p_value(observed: float, null_distribution) -> float:
    """
    Two-sided empirical p-value: fraction of |null| strictly above |observed|.

    A value of 0 means no permuted statistic exceeded the observed one;
    read it as p < 1/R rather than as zero probability.

    Raises
    ------
    InsufficientPermutationsError
        If the null distribution is empty.
    InvalidInputError
        If the observed statistic is not finite.
    """
    null = np.asarray(null_distribution, dtype=float).ravel()
    if null.size == 0:
        raise InsufficientPermutationsError(
            "Cannot compute an empirical p-value from an empty null distribution.",
            n_completed=0,
        )
    if not np.isfinite(observed):
        raise InvalidInputError(f"observed statistic must be finite, got {observed}.")
    return float(np.mean(np.abs(null) > abs(observed)))


def permutation_test(
    pseudotime,
    cellweights,
    conditions,
    lineage=0,
    n_permutations: int = 10000,
    levels: Optional[tuple] = None,
    seed: SeedLike = 42,
    n_jobs: int = 1,
    chunk_size: int = 1000,
    timeout: Optional[float] = None,
    return_null: bool = False,
) -> dict:
    """
    Weighted permutation test for a pseudotime shift between two conditions.

    For one lineage, the test statistic is the difference in weighted mean
    pseudotime between the two condition groups. The null distribution is
    built by permuting condition labels across all cells (keeping pseudotime
    and weights fixed) and recomputing the statistic n_permutations times.

    Parameters
    ----------
    pseudotime : array-like or pd.DataFrame
        (n_cells, n_lineages) pseudotime matrix, or a single lineage vector.
    cellweights : array-like or pd.DataFrame
        Matching non-negative curve weights; 0 excludes the cell.
    conditions : array-like or pd.Series
        Condition label per cell; exactly two levels.
    lineage : label or int
        Lineage to test, by column label or position.
    n_permutations : int
        Number of label permutations.
    levels : tuple of (label, label), optional
        Group order; statistic = mean(levels[0]) − mean(levels[1]).
    seed : int, SeedSequence or None
        Random seed for reproducibility.
    n_jobs, chunk_size, timeout
        Passed through to the permutation engine (see permutation_null).
    return_null : bool
        If True, include the full null distribution in the result.

    Returns
    -------
    dict
        lineage            — lineage label tested
        statistic          — observed weighted mean difference
        p_value            — fraction of |null| > |statistic|
        null_mean          — mean of the permutation null distribution
        null_sd            — SD of the permutation null distribution
        n_permutations     — number of permutations run
        n_cells            — cells with positive weight on the lineage
        levels             — (group1, group2)
        null_distribution  — np.ndarray, only when return_null=True

    Examples
    --------
    >>> from trajdiff import simulate
    >>> pt, w, cond = simulate.simulate_trajectory(seed=0)
    >>> permutation_test(pt, w, cond, lineage="Lineage1", n_permutations=999)
    """
    inputs = validate_inputs(pseudotime, cellweights, conditions, levels=levels)
    col = select_lineage(inputs["lineages"], lineage)

    return _test_lineage(
        inputs, col,
        n_permutations=n_permutations,
        seed_seq=_seed_sequence(seed),
        n_jobs=n_jobs,
        chunk_size=chunk_size,
        timeout=timeout,
        return_null=return_null,
    )


def progression_test(
    pseudotime,
    cellweights,
    conditions,
    lineages: Optional[list] = None,
    n_permutations: int = 10000,
    levels: Optional[tuple] = None,
    seed: SeedLike = 42,
    n_jobs: int = 1,
    chunk_size: int = 1000,
    timeout: Optional[float] = None,
    errors: str = "raise",
) -> pd.DataFrame:
    """
    Run the weighted permutation test independently on each lineage.

    Each lineage draws from its own child of ``SeedSequence(seed)``, keyed by
    the lineage's column position, so a lineage's result does not depend on
    which other lineages are tested alongside it. No multiple-testing
    correction is applied.

    Parameters
    ----------
    pseudotime, cellweights, conditions
        As in permutation_test.
    lineages : list, optional
        Lineages to test (labels or positions). Defaults to all.
    n_permutations, levels, seed, n_jobs, chunk_size, timeout
        As in permutation_test; timeout applies to each lineage separately.
    errors : str
        "raise" — propagate the first failing lineage's error (default).
        "skip"  — log a warning and leave the failing lineage out.

    Returns
    -------
    pd.DataFrame
        One row per lineage with columns: lineage, statistic, p_value,
        null_mean, null_sd, n_permutations, n_cells. Rows keep the order
        in which lineages were requested.

    Raises
    ------
    ValueError
        If errors is not "raise" or "skip".
    InsufficientPermutationsError
        If n_permutations <= 0.
    """
    if errors not in ("raise", "skip"):
        raise ValueError(f"Unknown errors '{errors}'. Choose from: 'raise', 'skip'.")
    _check_n_permutations(n_permutations)

    inputs = validate_inputs(pseudotime, cellweights, conditions, levels=levels)
    all_lineages = inputs["lineages"]
    requested = all_lineages if lineages is None else list(lineages)
    cols = [select_lineage(all_lineages, lin) for lin in requested]

    children = _seed_sequence(seed).spawn(len(all_lineages))

    records = []
    for col in cols:
        try:
            result = _test_lineage(
                inputs, col,
                n_permutations=n_permutations,
                seed_seq=children[col],
                n_jobs=n_jobs,
                chunk_size=chunk_size,
                timeout=timeout,
                return_null=False,
            )
        except (DegenerateGroupError, InsufficientPermutationsError) as exc:
            if errors == "raise":
                raise
            logger.warning("Skipping lineage %r: %s", all_lineages[col], exc)
            continue
        records.append({key: result[key] for key in _RESULT_COLUMNS})

    if not records:
        return pd.DataFrame(columns=_RESULT_COLUMNS)

    return pd.DataFrame(records, columns=_RESULT_COLUMNS)


def ks_test(
    pseudotime,
    cellweights,
    conditions,
    lineage=0,
    levels: Optional[tuple] = None,
    weight_threshold: float = 0.0,
) -> dict:
    """
    Two-sample Kolmogorov-Smirnov test of pseudotime between conditions.

    Compares the full pseudotime distributions (not just their weighted
    means) of the two groups on one lineage, using only cells whose weight
    on that lineage exceeds ``weight_threshold``. Weights act as an
    inclusion filter; the KS statistic itself is unweighted.

    Parameters
    ----------
    pseudotime, cellweights, conditions, lineage, levels
        As in permutation_test.
    weight_threshold : float
        Cells with weight <= weight_threshold are excluded. Default 0.0
        keeps every cell with positive weight.

    Returns
    -------
    dict
        lineage, statistic (KS D), p_value (two-sided, scipy ks_2samp),
        n_group1, n_group2, levels.

    Raises
    ------
    DegenerateGroupError
        If either group has no cell above the weight threshold.
    """
    if weight_threshold < 0:
        raise InvalidInputError(f"weight_threshold must be >= 0, got {weight_threshold}.")

    inputs = validate_inputs(pseudotime, cellweights, conditions, levels=levels)
    col = select_lineage(inputs["lineages"], lineage)
    label = inputs["lineages"][col]
    g1, g2 = inputs["levels"]

    w = inputs["cellweights"][:, col]
    keep = w > weight_threshold
    pt = inputs["pseudotime"][keep, col]
    cond = inputs["conditions"][keep]

    x = pt[cond == g1]
    y = pt[cond == g2]
    if len(x) == 0:
        raise DegenerateGroupError(g1, label)
    if len(y) == 0:
        raise DegenerateGroupError(g2, label)

    result = ks_2samp(x, y, alternative="two-sided")
    return {
        "lineage": label,
        "statistic": float(result.statistic),
        "p_value": float(result.pvalue),
        "n_group1": int(len(x)),
        "n_group2": int(len(y)),
        "levels": (g1, g2),
    }


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _test_lineage(
    inputs: dict,
    col: int,
    n_permutations: int,
    seed_seq: np.random.SeedSequence,
    n_jobs: int,
    chunk_size: int,
    timeout: Optional[float],
    return_null: bool,
) -> dict:
    """Observed statistic, null distribution and p-value for one column."""
    label = inputs["lineages"][col]
    levels = inputs["levels"]
    pt = inputs["pseudotime"][:, col]
    w = inputs["cellweights"][:, col]

    pw, wk = _weighted_terms(pt, w)
    in_group1 = inputs["conditions"] == levels[0]

    observed = _mean_difference(pw, wk, in_group1, levels, label)
    null = _null_distribution(
        pw, wk, in_group1, levels, label,
        n_permutations=n_permutations,
        seed_seq=seed_seq,
        n_jobs=n_jobs,
        chunk_size=chunk_size,
        timeout=timeout,
    )
    p_value = empirical_p_value(observed, null)

    logger.info(
        "Lineage %r: statistic=%.6g, p=%.4g (%d permutations, %d weighted cells)",
        label, observed, p_value, len(null), int((w > 0).sum()),
    )

    result = {
        "lineage": label,
        "statistic": observed,
        "p_value": p_value,
        "null_mean": float(null.mean()),
        "null_sd": float(null.std()),
        "n_permutations": int(len(null)),
        "n_cells": int((w > 0).sum()),
        "levels": levels,
    }
    if return_null:
        result["null_distribution"] = null
    return result


def _weighted_terms(pt: np.ndarray, w: np.ndarray) -> tuple:
    """
    Per-cell pt·w and w, zeroed wherever the weight is not positive.

    Pseudotime is only read for weighted cells, so NaN placeholders on
    unassigned cells never reach the sums.
    """
    keep = w > 0
    pw = np.zeros_like(w, dtype=float)
    pw[keep] = pt[keep] * w[keep]
    wk = np.where(keep, w, 0.0)
    return pw, wk


def _mean_difference(pw, wk, in_group1, levels, lineage) -> float:
    """Weighted mean of group 1 minus group 2 from precomputed terms."""
    w1 = wk[in_group1].sum()
    w2 = wk[~in_group1].sum()
    if w1 <= 0:
        raise DegenerateGroupError(levels[0], lineage)
    if w2 <= 0:
        raise DegenerateGroupError(levels[1], lineage)
    return float(pw[in_group1].sum() / w1 - pw[~in_group1].sum() / w2)


def _permuted_membership(rng: np.random.Generator, in_group1: np.ndarray) -> np.ndarray:
    """Shuffle group membership across all cells; group sizes are unchanged."""
    return rng.permutation(in_group1)


def _permutation_chunk(
    pw: np.ndarray,
    wk: np.ndarray,
    in_group1: np.ndarray,
    levels: tuple,
    lineage,
    n_draws: int,
    seed_seq: np.random.SeedSequence,
    deadline: Optional[float],
) -> np.ndarray:
    """Draw n_draws permuted statistics; stop early if the deadline passes."""
    rng = np.random.default_rng(seed_seq)
    out = np.empty(n_draws)
    for i in range(n_draws):
        if deadline is not None and time.time() > deadline:
            return out[:i]
        perm = _permuted_membership(rng, in_group1)
        out[i] = _mean_difference(pw, wk, perm, levels, lineage)
    return out


def _null_distribution(
    pw: np.ndarray,
    wk: np.ndarray,
    in_group1: np.ndarray,
    levels: tuple,
    lineage,
    n_permutations: int,
    seed_seq: np.random.SeedSequence,
    n_jobs: int,
    chunk_size: int,
    timeout: Optional[float],
) -> np.ndarray:
    """Run the permutation chunks (serially or via joblib) and merge them."""
    _check_n_permutations(n_permutations)
    if chunk_size < 1:
        raise InvalidInputError(f"chunk_size must be >= 1, got {chunk_size}.")
    if timeout is not None and timeout <= 0:
        raise InvalidInputError(f"timeout must be positive, got {timeout}.")

    n_full, remainder = divmod(n_permutations, chunk_size)
    sizes = [chunk_size] * n_full + ([remainder] if remainder else [])
    streams = seed_seq.spawn(len(sizes))
    deadline = time.time() + timeout if timeout is not None else None

    logger.debug(
        "Lineage %r: %d permutations in %d chunks (n_jobs=%s)",
        lineage, n_permutations, len(sizes), n_jobs,
    )

    if n_jobs == 1 or len(sizes) == 1:
        chunks = [
            _permutation_chunk(pw, wk, in_group1, levels, lineage, n, ss, deadline)
            for n, ss in zip(sizes, streams)
        ]
    else:
        chunks = Parallel(n_jobs=n_jobs)(
            delayed(_permutation_chunk)(pw, wk, in_group1, levels, lineage, n, ss, deadline)
            for n, ss in zip(sizes, streams)
        )

    null = np.concatenate(chunks)
    if len(null) < n_permutations:
        raise InsufficientPermutationsError(
            f"Only {len(null)} of {n_permutations} permutations completed on "
            f"lineage {lineage!r} before the {timeout}s timeout.",
            n_completed=int(len(null)),
            n_requested=n_permutations,
        )
    return null


def _require_single_lineage(inputs: dict) -> None:
    n_lineages = inputs["pseudotime"].shape[1]
    if n_lineages != 1:
        raise InvalidInputError(
            f"Expected a single lineage, got {n_lineages} columns "
            f"{inputs['lineages']}. Select one, or use permutation_test(lineage=...)."
        )


def _check_n_permutations(n_permutations: int) -> None:
    if n_permutations <= 0:
        raise InsufficientPermutationsError(
            f"n_permutations must be positive, got {n_permutations}.",
            n_completed=0,
            n_requested=n_permutations,
        )


def _seed_sequence(seed: SeedLike) -> np.random.SeedSequence:
    if isinstance(seed, np.random.SeedSequence):
        return seed
    return np.random.SeedSequence(seed)
