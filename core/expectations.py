"""
expectations.py
----------------
Expectation Composer.

Builds the expected charges for every customer-month of the grid:

    expected_base_charge   Σ prorated base over all applicable plan intervals
    expected_usage_charge  max(units_used - included_units, 0) * overage_rate
    expected_discounts     Σ discount rule amounts (signed, typically negative)
    expected_taxes_fees    Σ tax/fee rule amounts
    expected_total_charge  base + usage + taxes_fees + discounts

Usage is rated against a single bucket: the rating plan is the interval
whose active window starts last in the month (the plan in force at month
end). A mid-month plan change therefore rates all of the month's usage
against the later plan. This is a known approximation.

Missing usage / discount / tax rows mean "nothing expected" (0). Missing
plan coverage means no subscription was expected: base is 0 and the
allowance context (included_units, overage_rate) stays empty.
"""

import logging
from typing import List

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

KEYS = ["customer_id", "bill_month"]


def empty_keyed_frame(value_columns: List[str]) -> pd.DataFrame:
    """Empty customer-month frame with merge-compatible key dtypes."""
    frame = pd.DataFrame({
        "customer_id": pd.Series(dtype="object"),
        "bill_month": pd.Series(dtype="datetime64[ns]"),
    })
    for col in value_columns:
        frame[col] = pd.Series(dtype="float64")
    return frame


class ExpectationComposer:
    """
    Composes ExpectedCharges inputs per customer-month.

    Usage:
        composer = ExpectationComposer()
        expected = composer.compose(grid, coverage, usage, discounts, taxes_fees)
    """

    def compose(
        self,
        grid: pd.DataFrame,
        coverage: pd.DataFrame,
        usage: pd.DataFrame,
        discounts: pd.DataFrame,
        taxes_fees: pd.DataFrame,
    ) -> pd.DataFrame:
        """
        Returns:
            One row per grid row with columns: customer_id, bill_month,
            expected_base_charge, expected_usage_charge, expected_discounts,
            expected_taxes_fees, expected_total_charge, units_used,
            included_units, overage_rate, rating_plan_id, plan_count.
        """
        months = pd.DatetimeIndex(grid["bill_month"].unique())

        base = self._base_charges(coverage)
        rating = self._rating_plans(coverage)
        units = self._usage_by_month(usage, months)
        disc = self._sum_rule_amounts(discounts, months, "expected_discounts")
        taxes = self._sum_rule_amounts(taxes_fees, months, "expected_taxes_fees")

        df = grid[KEYS].copy()
        for part in (base, rating, units, disc, taxes):
            df = df.merge(part, on=KEYS, how="left")

        zero_fill = ["expected_base_charge", "plan_count", "units_used", "expected_discounts", "expected_taxes_fees"]
        df[zero_fill] = df[zero_fill].fillna(0)
        df["plan_count"] = df["plan_count"].astype(int)

        overage_units = np.maximum(df["units_used"] - df["included_units"], 0)
        df["expected_usage_charge"] = (overage_units * df["overage_rate"]).fillna(0.0)

        df["expected_total_charge"] = (
            df["expected_base_charge"]
            + df["expected_usage_charge"]
            + df["expected_taxes_fees"]
            + df["expected_discounts"]
        )

        logger.debug(f"Composed expectations for {len(df):,} customer-months.")
        return df

    # -------------------------------------------------------------------------
    # INTERNAL: PER-CATEGORY AGGREGATES
    # -------------------------------------------------------------------------

    @staticmethod
    def _base_charges(coverage: pd.DataFrame) -> pd.DataFrame:
        if coverage.empty:
            return empty_keyed_frame(["expected_base_charge", "plan_count"])
        return coverage.groupby(KEYS).agg(
            expected_base_charge=("expected_base_charge", "sum"),
            plan_count=("plan_id", "size"),
        ).reset_index()

    @staticmethod
    def _rating_plans(coverage: pd.DataFrame) -> pd.DataFrame:
        """Single-bucket simplification: the latest-starting interval rates the month's usage."""
        columns = KEYS + ["rating_plan_id", "included_units", "overage_rate"]
        if coverage.empty:
            return empty_keyed_frame(columns[2:])
        latest = (
            coverage.sort_values(KEYS + ["active_from", "active_to_excl"])
            .groupby(KEYS, as_index=False)
            .last()
        )
        latest = latest.rename(columns={"plan_id": "rating_plan_id"})
        return latest[columns]

    @staticmethod
    def _usage_by_month(usage: pd.DataFrame, months: pd.DatetimeIndex) -> pd.DataFrame:
        if usage.empty:
            return empty_keyed_frame(["units_used"])
        df = usage.assign(bill_month=usage["usage_date"].dt.to_period("M").dt.to_timestamp())
        df = df[df["bill_month"].isin(months)]
        return df.groupby(KEYS)["units"].sum().rename("units_used").reset_index()

    @staticmethod
    def _sum_rule_amounts(rules: pd.DataFrame, months: pd.DatetimeIndex, column: str) -> pd.DataFrame:
        if rules.empty:
            return empty_keyed_frame([column])
        df = rules[rules["bill_month"].isin(months)]
        return df.groupby(KEYS)["amount"].sum().rename(column).reset_index()
