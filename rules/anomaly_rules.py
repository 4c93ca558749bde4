"""
anomaly_rules.py
-----------------
Concrete anomaly rules. One class per anomaly reason.

Rules are evaluated top-to-bottom in RULE_REGISTRY order and the first
match wins, so each predicate only has to describe its own condition:
later rules may assume every earlier rule did not match.

Tolerance and absolute floor come from config.yaml; only the predicate
structure lives in code.
"""

from core.models import ComparisonRecord
from core.taxonomy import AnomalyReason
from rules.base_rule import BaseAnomalyRule


# =============================================================================
# BILL DOCUMENT RULES
# =============================================================================
class MissingBillRule(BaseAnomalyRule):
    """No bill document was issued for the customer-month."""

    reason = AnomalyReason.MISSING_BILL

    def matches(self, record: ComparisonRecord) -> bool:
        return record.actual.bill_count == 0


class DuplicateBillRule(BaseAnomalyRule):
    """More than one bill document for the same customer-month."""

    reason = AnomalyReason.DUPLICATE_BILL

    def matches(self, record: ComparisonRecord) -> bool:
        return record.actual.bill_count > 1


class UnexpectedBillRule(BaseAnomalyRule):
    """Charges billed where nothing was expected."""

    reason = AnomalyReason.UNEXPECTED_BILL

    def matches(self, record: ComparisonRecord) -> bool:
        return record.is_unexpected_charge


# =============================================================================
# USAGE ALLOWANCE
# =============================================================================
class AllowanceMismatchRule(BaseAnomalyRule):
    """
    Usage charged although consumption stayed within the included allowance.
    A month with no plan has an allowance of 0.
    """

    reason = AnomalyReason.ALLOWANCE_MISMATCH

    def matches(self, record: ComparisonRecord) -> bool:
        included = record.included_units if record.included_units is not None else 0.0
        return record.units_used <= included and record.actual.usage > 0


# =============================================================================
# COMPONENT MISMATCHES
# =============================================================================
class BaseProrationMismatchRule(BaseAnomalyRule):
    reason = AnomalyReason.BASE_PRORATION_MISMATCH

    def matches(self, record: ComparisonRecord) -> bool:
        return self._component_exceeds_tolerance(record.actual.base, record.expected.base)


class UsageMismatchRule(BaseAnomalyRule):
    reason = AnomalyReason.USAGE_MISMATCH

    def matches(self, record: ComparisonRecord) -> bool:
        return self._component_exceeds_tolerance(record.actual.usage, record.expected.usage)


class DiscountMismatchRule(BaseAnomalyRule):
    reason = AnomalyReason.DISCOUNT_MISMATCH

    def matches(self, record: ComparisonRecord) -> bool:
        return self._component_exceeds_tolerance(record.actual.discount, record.expected.discount)


class TaxFeeMismatchRule(BaseAnomalyRule):
    reason = AnomalyReason.TAX_FEE_MISMATCH

    def matches(self, record: ComparisonRecord) -> bool:
        return self._component_exceeds_tolerance(record.actual.tax_fee, record.expected.tax_fee)


# =============================================================================
# TOTALS
# =============================================================================
class OverBilledRule(BaseAnomalyRule):
    """Total billed above expected by more than the tolerance."""

    reason = AnomalyReason.OVER_BILLED

    def matches(self, record: ComparisonRecord) -> bool:
        return record.actual.total > record.expected.total * (1 + self.pct_tolerance)


class UnderBilledRule(BaseAnomalyRule):
    """Total billed below expected by more than the tolerance."""

    reason = AnomalyReason.UNDER_BILLED

    def matches(self, record: ComparisonRecord) -> bool:
        return record.actual.total < record.expected.total * (1 - self.pct_tolerance)


# =============================================================================
# RULE REGISTRY
# =============================================================================
# Single source of truth for the cascade. Order is priority: first match wins.
# ALLOWANCE_MISMATCH must stay ahead of BASE_PRORATION_MISMATCH.

RULE_REGISTRY: dict[AnomalyReason, type[BaseAnomalyRule]] = {
    AnomalyReason.MISSING_BILL: MissingBillRule,
    AnomalyReason.DUPLICATE_BILL: DuplicateBillRule,
    AnomalyReason.UNEXPECTED_BILL: UnexpectedBillRule,
    AnomalyReason.ALLOWANCE_MISMATCH: AllowanceMismatchRule,
    AnomalyReason.BASE_PRORATION_MISMATCH: BaseProrationMismatchRule,
    AnomalyReason.USAGE_MISMATCH: UsageMismatchRule,
    AnomalyReason.DISCOUNT_MISMATCH: DiscountMismatchRule,
    AnomalyReason.TAX_FEE_MISMATCH: TaxFeeMismatchRule,
    AnomalyReason.OVER_BILLED: OverBilledRule,
    AnomalyReason.UNDER_BILLED: UnderBilledRule,
}


def get_all_rules(pct_tolerance: float | None = None) -> list[BaseAnomalyRule]:
    """Instantiates every registered rule, in cascade order."""
    return [cls(pct_tolerance=pct_tolerance) for cls in RULE_REGISTRY.values()]
