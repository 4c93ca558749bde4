"""
base_rule.py
-------------
Abstract base class for all anomaly rules.

Each concrete rule (missing bill, duplicate bill, etc.) inherits from this.
The tolerance lookup and the absolute-floor component comparison live here.

Concrete rules only need to implement:
    - matches(): the rule's predicate over a ComparisonRecord
"""

from abc import ABC, abstractmethod
from typing import Optional

from core.models import ComparisonRecord
from core.taxonomy import AnomalyReason
from config.config_loader import get_reconciliation_config


class BaseAnomalyRule(ABC):
    """
    Abstract base for anomaly rules.

    Subclasses set `reason` and implement matches(). evaluate() returns the
    reason when the predicate holds, None otherwise.
    """

    reason: AnomalyReason

    def __init__(self, pct_tolerance: float | None = None):
        self.config = get_reconciliation_config()
        self.pct_tolerance = pct_tolerance if pct_tolerance is not None else self.config["pct_tolerance"]
        self.min_abs_delta = self.config["min_abs_delta"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def evaluate(self, record: ComparisonRecord) -> Optional[AnomalyReason]:
        return self.reason if self.matches(record) else None

    @abstractmethod
    def matches(self, record: ComparisonRecord) -> bool:
        """True when the record violates this rule."""
        ...

    # -------------------------------------------------------------------------
    # SHARED HELPERS
    # -------------------------------------------------------------------------

    def _component_exceeds_tolerance(self, actual: float, expected: float) -> bool:
        """|actual - expected| > max(floor, |expected| * tolerance)."""
        allowed = max(self.min_abs_delta, abs(expected) * self.pct_tolerance)
        return abs(actual - expected) > allowed

    def __repr__(self) -> str:
        return f"{type(self).__name__}(reason={self.reason.value}, pct_tolerance={self.pct_tolerance:.2f})"
