"""
plan_coverage.py
-----------------
Plan Coverage Resolver.

For every (customer, month) grid row, finds each plan-history interval
[effective_from, effective_to) that overlaps the month [month_start,
next_month_start), clips it to the month and computes the proration
fraction:

    active window      = [max(effective_from, month_start), min(effective_to, next_month_start))
    active_days        = exclusive-end day count of the active window
    days_in_month      = exclusive-end day count of the month
    proration_fraction = active_days / days_in_month

Empty or inverted active windows are dropped (not an error). Open-ended
intervals (effective_to = NaT) are extended to the end of the window, which
clips identically to any far-future sentinel.

Overlapping intervals for the same customer-month are kept; they are only
reported through detect_overlaps() for the warning channel.
"""

import logging

import pandas as pd

logger = logging.getLogger(__name__)


COVERAGE_COLUMNS = [
    "customer_id", "bill_month", "plan_id",
    "monthly_rate", "included_units", "overage_rate",
    "active_from", "active_to_excl", "active_days", "days_in_month",
    "proration_fraction", "expected_base_charge",
]


class PlanCoverageResolver:
    """
    Resolves prorated plan coverage per customer-month.

    Usage:
        resolver = PlanCoverageResolver()
        coverage = resolver.resolve(grid, plan_history, plans)
    """

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def resolve(self, grid: pd.DataFrame, plan_history: pd.DataFrame, plans: pd.DataFrame) -> pd.DataFrame:
        """
        Args:
            grid: customer_id, bill_month (month-start datetimes).
            plan_history: validated intervals; effective_to NaT = open-ended.
            plans: validated rate card.

        Returns:
            One row per (customer, month, applicable interval) with the
            clipped window, proration fraction and prorated base charge.
        """
        if grid.empty or plan_history.empty:
            return pd.DataFrame(columns=COVERAGE_COLUMNS)

        window_end = grid["bill_month"].max() + pd.offsets.MonthBegin(1)

        intervals = plan_history[["customer_id", "plan_id", "effective_from", "effective_to"]].copy()
        intervals["effective_to"] = intervals["effective_to"].fillna(window_end)
        # Intervals running past the window clip the same way as open ones.
        intervals["effective_to"] = intervals["effective_to"].where(
            intervals["effective_to"] <= window_end, window_end
        )

        df = grid.merge(intervals, on="customer_id", how="inner")
        df["month_end_excl"] = df["bill_month"] + pd.offsets.MonthBegin(1)

        # Overlap test on the half-open ranges
        overlaps = (df["effective_from"] < df["month_end_excl"]) & (df["effective_to"] > df["bill_month"])
        df = df[overlaps].copy()
        if df.empty:
            return pd.DataFrame(columns=COVERAGE_COLUMNS)

        df["active_from"] = df["effective_from"].where(df["effective_from"] > df["bill_month"], df["bill_month"])
        df["active_to_excl"] = df["effective_to"].where(df["effective_to"] < df["month_end_excl"], df["month_end_excl"])
        df["active_days"] = (df["active_to_excl"] - df["active_from"]).dt.days
        df["days_in_month"] = (df["month_end_excl"] - df["bill_month"]).dt.days

        # Empty or inverted windows do not apply to the month
        df = df[df["active_days"] > 0].copy()

        df = df.merge(
            plans[["plan_id", "monthly_rate", "included_units", "overage_rate"]],
            on="plan_id",
            how="inner",
        )

        # No early rounding: amounts are rounded only at output
        df["proration_fraction"] = df["active_days"] / df["days_in_month"]
        df["expected_base_charge"] = df["monthly_rate"] * df["proration_fraction"]

        df = df.sort_values(["customer_id", "bill_month", "active_from", "active_to_excl"]).reset_index(drop=True)
        return df[COVERAGE_COLUMNS]

    def detect_overlaps(self, coverage: pd.DataFrame) -> pd.DataFrame:
        """
        Finds customer-months where two applicable intervals cover the same
        day. Sequential plan changes (one ends where the next starts) are
        not overlaps.

        Returns:
            DataFrame of customer_id, bill_month, plan_count for each
            ambiguous customer-month.
        """
        if coverage.empty:
            return pd.DataFrame(columns=["customer_id", "bill_month", "plan_count"])

        ordered = coverage.sort_values(["customer_id", "bill_month", "active_from"])
        running_end = ordered.groupby(["customer_id", "bill_month"])["active_to_excl"].transform(
            lambda s: s.cummax().shift(1)
        )
        ordered = ordered.assign(overlapping=ordered["active_from"] < running_end)

        flagged = ordered.groupby(["customer_id", "bill_month"]).agg(
            plan_count=("plan_id", "size"),
            overlapping=("overlapping", "any"),
        ).reset_index()
        flagged = flagged[flagged["overlapping"]]

        for row in flagged.itertuples(index=False):
            logger.warning(
                f"Overlapping plan intervals for customer {row.customer_id} in "
                f"{row.bill_month:%Y-%m}: {row.plan_count} intervals. "
                f"Usage is rated against the latest interval only."
            )

        return flagged[["customer_id", "bill_month", "plan_count"]].reset_index(drop=True)
