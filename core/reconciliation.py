"""
reconciliation.py
------------------
Reconciler: joins expected and actual charges per customer-month and turns
each joined row into a ComparisonRecord.

Outer-join semantics over the grid: a customer-month produces a comparison
when it has expectations (plan coverage, or any non-zero expected category)
or actuals (any billing line). The missing side is zero-filled. A grid row
with neither is an inactive customer-month and produces no comparison.
"""

import logging
from typing import List

import pandas as pd

from core.expectations import KEYS
from core.models import ActualCharges, ComparisonRecord, ExpectedCharges

logger = logging.getLogger(__name__)

EXPECTED_AMOUNT_COLUMNS = [
    "expected_base_charge", "expected_usage_charge",
    "expected_discounts", "expected_taxes_fees",
]
ACTUAL_AMOUNT_COLUMNS = [
    "actual_total_charge", "actual_base", "actual_usage",
    "actual_discount", "actual_taxes_fees", "actual_other",
]


class Reconciler:
    """
    Usage:
        reconciler = Reconciler()
        records = reconciler.compare(expectations, actuals)
    """

    def join(self, expectations: pd.DataFrame, actuals: pd.DataFrame) -> pd.DataFrame:
        """
        Left-joins actuals onto the grid-shaped expectations and keeps the
        active customer-months.
        """
        df = expectations.merge(actuals, on=KEYS, how="left")
        df[ACTUAL_AMOUNT_COLUMNS] = df[ACTUAL_AMOUNT_COLUMNS].fillna(0.0)
        df[["bill_count", "line_count"]] = df[["bill_count", "line_count"]].fillna(0).astype(int)

        has_expectation = (df["plan_count"] > 0) | (df[EXPECTED_AMOUNT_COLUMNS] != 0).any(axis=1)
        has_actual = df["line_count"] > 0
        active = df[has_expectation | has_actual].reset_index(drop=True)

        inactive = len(df) - len(active)
        if inactive:
            logger.debug(f"{inactive:,} inactive customer-months (no plan, no rules, no bills) skipped.")
        return active

    def compare(self, expectations: pd.DataFrame, actuals: pd.DataFrame) -> List[ComparisonRecord]:
        joined = self.join(expectations, actuals)
        return [self._to_record(row) for row in joined.itertuples(index=False)]

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_record(row) -> ComparisonRecord:
        included = None if pd.isna(row.included_units) else float(row.included_units)
        overage = None if pd.isna(row.overage_rate) else float(row.overage_rate)

        return ComparisonRecord(
            customer_id=str(row.customer_id),
            bill_month=pd.Timestamp(row.bill_month).date(),
            expected=ExpectedCharges(
                base=float(row.expected_base_charge),
                usage=float(row.expected_usage_charge),
                discount=float(row.expected_discounts),
                tax_fee=float(row.expected_taxes_fees),
            ),
            actual=ActualCharges(
                base=float(row.actual_base),
                usage=float(row.actual_usage),
                discount=float(row.actual_discount),
                tax_fee=float(row.actual_taxes_fees),
                other=float(row.actual_other),
                total=float(row.actual_total_charge),
                bill_count=int(row.bill_count),
            ),
            units_used=float(row.units_used),
            included_units=included,
            overage_rate=overage,
            plan_count=int(row.plan_count),
        )
