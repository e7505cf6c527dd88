"""
trajdiff — differential progression tests along single-cell trajectories

Top-level package exposing the trajdiff public API.
"""

from trajdiff import simulate
from trajdiff.exceptions import (
    InvalidInputError,
    DegenerateGroupError,
    InsufficientPermutationsError,
)
from trajdiff.preprocess import (
    validate_inputs,
    select_lineage,
    normalize_weights,
    hard_assign_weights,
)
from trajdiff.stats import (
    weighted_mean,
    weighted_mean_difference,
    permutation_null,
    empirical_p_value,
    permutation_test,
    progression_test,
    ks_test,
)

__version__ = "0.1.0"
__all__ = [
    "simulate",
    "InvalidInputError",
    "DegenerateGroupError",
    "InsufficientPermutationsError",
    "validate_inputs",
    "select_lineage",
    "normalize_weights",
    "hard_assign_weights",
    "weighted_mean",
    "weighted_mean_difference",
    "permutation_null",
    "empirical_p_value",
    "permutation_test",
    "progression_test",
    "ks_test",
]
