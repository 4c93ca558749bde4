"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- ExpectedCharges / ActualCharges: the two sides of a reconciliation, in the
  same four categories (base, usage, discount, taxes/fees).

- ComparisonRecord: one reconciled customer-month, carrying the allowance
  context the cascade needs and the anomaly reason it was assigned.

- HistoryStats: trailing statistics for one billed customer-month.

- AnomalyResult: scored output row. What gets ranked, filtered and written
  to the output table.

- DataQualityIssue / DataQualityReport: per-record rejections and
  per-customer failures collected during a run.

All records are frozen. Each stage builds new records instead of mutating
the ones it received.
"""

import math
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from core.taxonomy import AnomalyReason

# Amounts closer to zero than half a cent count as zero
CURRENCY_ABS_TOL = 0.005


def is_zero_amount(amount: float) -> bool:
    return math.isclose(amount, 0.0, abs_tol=CURRENCY_ABS_TOL)


@dataclass(frozen=True)
class ExpectedCharges:
    """Expected charges for one customer-month. Discount is signed (typically <= 0)."""

    base: float = 0.0
    usage: float = 0.0
    discount: float = 0.0
    tax_fee: float = 0.0

    @property
    def total(self) -> float:
        return self.base + self.usage + self.tax_fee + self.discount


@dataclass(frozen=True)
class ActualCharges:
    """Billed charges for one customer-month, summed from billing lines."""

    base: float = 0.0
    usage: float = 0.0
    discount: float = 0.0
    tax_fee: float = 0.0
    other: float = 0.0
    total: float = 0.0               # Every line type, "other" included.
    bill_count: int = 0              # Distinct bill documents. 0 = no bill, >1 = duplicate.


@dataclass(frozen=True)
class ComparisonRecord:
    """
    Expected vs. actual for one customer-month.

    Produced by the Reconciler, labelled by the AnomalyClassifier.
    """

    # Identity
    customer_id: str
    bill_month: date

    # Both sides
    expected: ExpectedCharges
    actual: ActualCharges

    # Allowance context (from the rating plan)
    units_used: float = 0.0
    included_units: Optional[float] = None   # None = no plan covered the month.
    overage_rate: Optional[float] = None
    plan_count: int = 0

    # Classification
    anomaly_reason: Optional[AnomalyReason] = None

    @property
    def is_unexpected_charge(self) -> bool:
        """Nothing was expected but something was billed."""
        return is_zero_amount(self.expected.total) and not is_zero_amount(self.actual.total)

    @property
    def pct_diff(self) -> Optional[float]:
        """
        Relative deviation of actual from expected total.

        0.0 when both totals are zero; None when nothing was expected but
        something was billed (see is_unexpected_charge).
        """
        if is_zero_amount(self.expected.total):
            return 0.0 if is_zero_amount(self.actual.total) else None
        return (self.actual.total - self.expected.total) / self.expected.total

    def component_pct_diff(self, category: str) -> Optional[float]:
        """Relative deviation for one category; None when nothing was expected there."""
        expected = getattr(self.expected, category)
        if is_zero_amount(expected):
            return None
        return (getattr(self.actual, category) - expected) / expected


@dataclass(frozen=True)
class HistoryStats:
    """Trailing statistics of a customer's billed totals, current month excluded."""

    customer_id: str
    bill_month: date
    current_total: float
    months_available: int = 0
    rolling_mean: Optional[float] = None
    rolling_std: Optional[float] = None
    z_score: Optional[float] = None          # None = insufficient history or zero spread.


@dataclass(frozen=True)
class AnomalyResult:
    """
    Scored customer-month. One per comparison row; only flagged ones are
    surfaced in the output table.
    """

    comparison: ComparisonRecord
    stats: Optional[HistoryStats]
    base_severity: float
    z_bonus: float
    confidence_score: float
    is_flagged: bool

    @property
    def z_score(self) -> Optional[float]:
        return self.stats.z_score if self.stats is not None else None

    @property
    def abs_z_score(self) -> float:
        """|z|, with an absent z-score ranked as 0."""
        z = self.z_score
        return abs(z) if z is not None else 0.0


@dataclass(frozen=True)
class DataQualityIssue:
    """A single quarantined source record or failed customer computation."""

    dataset: str                     # e.g. "plan_history", "billing_lines", "pipeline"
    record_ref: str                  # Row index or customer id
    reason: str


@dataclass
class DataQualityReport:
    """Data-quality outcome of one run."""

    issues: List[DataQualityIssue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    failed_customers: List[str] = field(default_factory=list)

    @property
    def quarantined_rows(self) -> int:
        return sum(1 for i in self.issues if i.dataset != "pipeline")

    def add_issue(self, dataset: str, record_ref, reason: str) -> None:
        self.issues.append(DataQualityIssue(dataset=dataset, record_ref=str(record_ref), reason=reason))
