"""
trajdiff/exceptions.py

Error taxonomy for trajectory progression tests.

Every class subclasses ValueError so callers that already guard calls with
``except ValueError`` keep working.

    InvalidInputError              — malformed inputs (shapes, labels, weights).
    DegenerateGroupError           — a condition group has zero total weight,
                                     so its weighted mean is undefined.
    InsufficientPermutationsError  — no permutations to compare against, or
                                     the permutation loop was cut short.
"""

from typing import Optional


class InvalidInputError(ValueError):
    """Inputs are inconsistent or out of range."""


class DegenerateGroupError(ValueError):
    """Undefined weighted mean: a condition group carries zero total weight."""

    def __init__(self, condition=None, lineage=None):
        self.condition = condition
        self.lineage = lineage
        where = f" on lineage {lineage!r}" if lineage is not None else ""
        who = f"condition {condition!r}" if condition is not None else "the selected cells"
        super().__init__(f"Undefined weighted mean{where}: {who} has zero total weight.")

    def __reduce__(self):
        # Survive the round trip back from joblib worker processes.
        return (self.__class__, (self.condition, self.lineage))


class InsufficientPermutationsError(ValueError):
    """Fewer permutations than requested were available for the p-value."""

    def __init__(self, message: str, n_completed: int = 0, n_requested: Optional[int] = None):
        self.n_completed = n_completed
        self.n_requested = n_requested
        super().__init__(message)

    def __reduce__(self):
        return (self.__class__, (self.args[0], self.n_completed, self.n_requested))
