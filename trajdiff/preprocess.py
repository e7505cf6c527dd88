"""
trajdiff/preprocess.py

Input handling for trajectory progression tests.

A trajectory-inference tool hands over two N × L matrices — pseudotime and
curve weights, one row per cell and one column per lineage — and the caller
supplies one condition label per cell. The functions here coerce those
inputs into float64 arrays, validate them, and offer the two usual ways of
treating curve weights (soft, normalised per cell; or hard, one lineage per
cell).
"""

import logging

import numpy as np
import pandas as pd
from typing import Optional, Union

from trajdiff.exceptions import InvalidInputError

logger = logging.getLogger(__name__)

MatrixLike = Union[np.ndarray, pd.DataFrame, pd.Series, list]


def as_lineage_matrix(x: MatrixLike, name: str = "matrix") -> tuple:
    """
    Coerce a pseudotime or weight input to a float64 (n_cells, n_lineages) array.

    Parameters
    ----------
    x : array-like, pd.Series or pd.DataFrame
        1D input is treated as a single lineage. DataFrame columns become
        lineage labels; plain arrays get integer labels 0..L-1.
    name : str
        Used in error messages.

    Returns
    -------
    tuple of (np.ndarray, list)
        The 2D float array and its lineage labels.

    Raises
    ------
    InvalidInputError
        If the input is not 1D or 2D, or is not numeric.
    """
    if isinstance(x, pd.DataFrame):
        labels = list(x.columns)
        values = x.to_numpy()
    elif isinstance(x, pd.Series):
        labels = [x.name if x.name is not None else 0]
        values = x.to_numpy().reshape(-1, 1)
    else:
        values = np.asarray(x)
        if values.ndim == 1:
            values = values.reshape(-1, 1)
        labels = list(range(values.shape[1])) if values.ndim == 2 else []

    if values.ndim != 2:
        raise InvalidInputError(
            f"{name} must be 1D or 2D (cells × lineages), got shape {values.shape}."
        )
    try:
        values = values.astype(np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"{name} must be numeric: {exc}") from exc

    return values, labels


def validate_inputs(
    pseudotime: MatrixLike,
    cellweights: MatrixLike,
    conditions,
    levels: Optional[tuple] = None,
) -> dict:
    """
    Validate and coerce the inputs shared by every test in trajdiff.stats.

    pandas inputs are aligned on the pseudotime index (and columns) before
    any check, so cellweights and conditions may come in a different row order.

    Parameters
    ----------
    pseudotime : array-like or pd.DataFrame
        (n_cells, n_lineages) pseudotime values. NaN is allowed only where
        the matching weight is zero.
    cellweights : array-like or pd.DataFrame
        (n_cells, n_lineages) non-negative, finite curve weights. Zero means
        the cell is not on that lineage.
    conditions : array-like or pd.Series
        One condition label per cell.
    levels : tuple of (label, label), optional
        Order of the two condition groups; the statistic is
        mean(levels[0]) − mean(levels[1]). Defaults to the sorted unique labels.

    Returns
    -------
    dict
        pseudotime   — float64 array (n_cells, n_lineages)
        cellweights  — float64 array (n_cells, n_lineages)
        conditions   — object array (n_cells,)
        lineages     — list of lineage labels
        levels       — (group1, group2) tuple

    Raises
    ------
    InvalidInputError
        On shape mismatches, negative or non-finite weights, missing
        pseudotime for a weighted cell, or anything other than exactly two
        condition levels.
    """
    if isinstance(pseudotime, pd.DataFrame):
        if isinstance(cellweights, pd.DataFrame) and not (
            cellweights.index.equals(pseudotime.index)
            and cellweights.columns.equals(pseudotime.columns)
        ):
            logger.debug("Aligning cellweights to pseudotime index and columns")
            cellweights = cellweights.reindex(
                index=pseudotime.index, columns=pseudotime.columns
            )
        if isinstance(conditions, pd.Series) and not conditions.index.equals(pseudotime.index):
            logger.debug("Aligning conditions to pseudotime index")
            conditions = conditions.reindex(pseudotime.index)

    pt, lineages = as_lineage_matrix(pseudotime, name="pseudotime")
    w, _ = as_lineage_matrix(cellweights, name="cellweights")

    if pt.shape != w.shape:
        raise InvalidInputError(
            f"pseudotime shape {pt.shape} does not match cellweights shape {w.shape}."
        )

    cond = np.asarray(conditions, dtype=object)
    if cond.ndim != 1 or len(cond) != pt.shape[0]:
        raise InvalidInputError(
            f"conditions must be 1D with one label per cell "
            f"({pt.shape[0]}), got shape {cond.shape}."
        )
    if pd.isna(cond).any():
        raise InvalidInputError("conditions contains missing labels.")

    if not np.isfinite(w).all():
        raise InvalidInputError("cellweights contains non-finite values.")
    if (w < 0).any():
        bad = int((w < 0).any(axis=1).sum())
        raise InvalidInputError(f"cellweights must be non-negative ({bad} cells have negative weights).")

    weighted = w > 0
    missing = weighted & ~np.isfinite(pt)
    if missing.any():
        col = int(np.argmax(missing.any(axis=0)))
        raise InvalidInputError(
            f"pseudotime is missing or non-finite for {int(missing[:, col].sum())} "
            f"cells with positive weight on lineage {lineages[col]!r}."
        )

    levels = _resolve_levels(cond, levels)

    return {
        "pseudotime": pt,
        "cellweights": w,
        "conditions": cond,
        "lineages": lineages,
        "levels": levels,
    }


def select_lineage(lineages: list, lineage) -> int:
    """
    Return the column position of a lineage.

    Looks the lineage up by label first, then, for integers, by position.

    Raises
    ------
    InvalidInputError
        If the lineage is neither a known label nor a valid position.
    """
    if lineage in lineages:
        return lineages.index(lineage)
    if isinstance(lineage, (int, np.integer)) and not isinstance(lineage, bool):
        if 0 <= lineage < len(lineages):
            return int(lineage)
    raise InvalidInputError(
        f"Unknown lineage {lineage!r}. Available lineages: {lineages}."
    )


def normalize_weights(cellweights: MatrixLike):
    """
    Rescale each cell's curve weights to sum to 1 across lineages.

    Cells with zero weight on every lineage are left at zero.

    Parameters
    ----------
    cellweights : array-like or pd.DataFrame
        (n_cells, n_lineages) non-negative weights.

    Returns
    -------
    np.ndarray or pd.DataFrame
        Same type and labels as the input.
    """
    w, _ = as_lineage_matrix(cellweights, name="cellweights")
    if (w < 0).any():
        raise InvalidInputError("cellweights must be non-negative.")

    totals = w.sum(axis=1, keepdims=True)
    result = np.divide(w, totals, out=np.zeros_like(w), where=totals > 0)
    return _like(cellweights, result)


def hard_assign_weights(
    cellweights: MatrixLike,
    seed: Optional[int] = 42,
):
    """
    Assign every weighted cell to exactly one lineage.

    Each cell draws one lineage with probability proportional to its curve
    weights; the result is a 0/1 matrix with a single 1 per cell. Cells with
    zero weight everywhere stay unassigned.

    Parameters
    ----------
    cellweights : array-like or pd.DataFrame
        (n_cells, n_lineages) non-negative weights.
    seed : int, optional
        Random seed for reproducibility.

    Returns
    -------
    np.ndarray or pd.DataFrame
        Same type and labels as the input.
    """
    rng = np.random.default_rng(seed)

    w, _ = as_lineage_matrix(cellweights, name="cellweights")
    probs = normalize_weights(w)
    n_cells, n_lineages = probs.shape
    assigned = probs.sum(axis=1) > 0

    # Inverse-CDF draw per cell; the last cdf entry is pinned to exactly 1.
    cdf = np.cumsum(probs, axis=1)
    last = cdf[:, -1:]
    cdf = np.divide(cdf, last, out=np.zeros_like(cdf), where=last > 0)
    u = rng.random(n_cells)
    choice = np.minimum((cdf <= u[:, None]).sum(axis=1), n_lineages - 1)

    result = np.zeros_like(probs)
    rows = np.flatnonzero(assigned)
    result[rows, choice[rows]] = 1.0
    return _like(cellweights, result)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _resolve_levels(cond: np.ndarray, levels: Optional[tuple]) -> tuple:
    """Check that exactly two condition levels are present and order them."""
    observed = pd.unique(cond)

    if levels is None:
        if len(observed) != 2:
            raise InvalidInputError(
                f"Exactly 2 condition levels are required, got {len(observed)}: "
                f"{sorted(map(str, observed))}."
            )
        try:
            return tuple(sorted(observed))
        except TypeError:
            return tuple(observed)

    levels = tuple(levels)
    if len(levels) != 2 or levels[0] == levels[1]:
        raise InvalidInputError(f"levels must name two distinct conditions, got {levels}.")
    unknown = set(observed) - set(levels)
    if unknown:
        raise InvalidInputError(
            f"conditions contains labels outside levels {levels}: {sorted(map(str, unknown))}."
        )
    absent = [lvl for lvl in levels if lvl not in set(observed)]
    if absent:
        raise InvalidInputError(f"No cells carry condition level(s) {absent}.")
    return levels


def _like(template, values: np.ndarray):
    """Wrap values in the same pandas container as template, if any."""
    if isinstance(template, pd.DataFrame):
        return pd.DataFrame(values, index=template.index, columns=template.columns)
    if isinstance(template, pd.Series):
        return pd.Series(values[:, 0], index=template.index, name=template.name)
    if np.ndim(template) == 1:
        return values[:, 0]
    return values
