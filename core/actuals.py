"""
actuals.py
-----------
Actuals Aggregator.

Sums billed line items per customer-month into the same categories as the
expectations:

    base -> actual_base          tax, fee -> actual_taxes_fees
    usage -> actual_usage        other    -> actual_other
    discount -> actual_discount  all      -> actual_total_charge

and counts distinct bill documents as bill_count (0 = no bill issued,
>1 = duplicate billing).
"""

import pandas as pd

from core.expectations import KEYS, empty_keyed_frame
from core.taxonomy import LINE_TYPE_BUCKETS

ACTUAL_COLUMNS = [
    "actual_total_charge", "actual_base", "actual_usage",
    "actual_discount", "actual_taxes_fees", "actual_other",
    "bill_count", "line_count",
]


class ActualsAggregator:
    """
    Aggregates billing lines.

    Usage:
        aggregator = ActualsAggregator()
        actuals = aggregator.aggregate(billing_lines, months)
        history = aggregator.monthly_totals(billing_lines, through_month)
    """

    def aggregate(self, billing_lines: pd.DataFrame, months) -> pd.DataFrame:
        """
        Args:
            billing_lines: validated lines (bill_month truncated to month start).
            months: window months; lines outside the window are ignored.

        Returns:
            One row per billed customer-month in the window. Customer-months
            with no lines are absent here and zero-filled by the Reconciler.
        """
        month_index = pd.DatetimeIndex(pd.to_datetime(pd.Series(list(months), dtype="object")))
        if billing_lines.empty:
            return empty_keyed_frame(ACTUAL_COLUMNS)

        df = billing_lines[billing_lines["bill_month"].isin(month_index)]
        if df.empty:
            return empty_keyed_frame(ACTUAL_COLUMNS)

        df = df.assign(bucket=df["line_type"].map(LINE_TYPE_BUCKETS))
        by_bucket = df.pivot_table(index=KEYS, columns="bucket", values="amount", aggfunc="sum", fill_value=0.0)
        for bucket in set(LINE_TYPE_BUCKETS.values()):
            if bucket not in by_bucket.columns:
                by_bucket[bucket] = 0.0

        grouped = df.groupby(KEYS)
        out = pd.DataFrame({
            "actual_total_charge": grouped["amount"].sum(),
            "bill_count": grouped["bill_id"].nunique(),
            "line_count": grouped["amount"].size(),
        }).join(by_bucket[sorted(set(LINE_TYPE_BUCKETS.values()))])

        return out.reset_index()[KEYS + ACTUAL_COLUMNS]

    def monthly_totals(self, billing_lines: pd.DataFrame, through_month) -> pd.DataFrame:
        """
        Billed total per customer-month for the customer's full history up
        to and including through_month. Feeds the historical statistics.

        Returns:
            customer_id, bill_month, actual_total_charge, sorted by customer then month.
        """
        if billing_lines.empty:
            return empty_keyed_frame(["actual_total_charge"])

        cutoff = pd.Timestamp(through_month)
        df = billing_lines[billing_lines["bill_month"] <= cutoff]
        totals = df.groupby(KEYS)["amount"].sum().rename("actual_total_charge").reset_index()
        return totals.sort_values(KEYS).reset_index(drop=True)
