"""
validation.py
--------------
Source data validation and normalization.

Every malformed record is quarantined individually: it is logged, recorded
in the DataQualityReport and excluded from the run. A bad row never aborts
the batch. Only schema violations (missing required columns) are fatal.

Normalization applied to surviving rows:
    - customer_id / plan_id / bill_id cast to str
    - dates parsed; bill_month truncated to the first day of its month
    - amounts and rate card values coerced to float
    - line_type lower-cased
    - open-ended plan intervals (null or far-future effective_to) stored as NaT
"""

import logging
from typing import Tuple

import pandas as pd

from core.models import DataQualityReport
from core.sources import SourceTables
from core.taxonomy import LINE_TYPE_BUCKETS
from config.config_loader import get_plan_coverage_config

logger = logging.getLogger(__name__)


def to_month_start(series: pd.Series) -> pd.Series:
    """Parses a date-like Series and truncates each value to its month start."""
    return _to_datetime(series).dt.to_period("M").dt.to_timestamp()


def _to_datetime(series: pd.Series) -> pd.Series:
    return pd.to_datetime(series, errors="coerce", format="mixed")


class SourceValidator:
    """
    Quarantines malformed source rows and normalizes the rest.

    Usage:
        validator = SourceValidator()
        clean_sources, report = validator.validate(sources)
    """

    def __init__(self):
        self.far_future_year = get_plan_coverage_config()["far_future_year"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def validate(self, sources: SourceTables) -> Tuple[SourceTables, DataQualityReport]:
        sources.check_required_columns()
        report = DataQualityReport()

        customers = self._validate_customers(sources.customers, report)
        plans = self._validate_plans(sources.plans, report)
        plan_history = self._validate_plan_history(sources.plan_history, plans, report)
        usage = self._validate_usage(sources.usage, report)
        discounts = self._validate_monthly_rules(sources.discounts, "discounts", report)
        taxes_fees = self._validate_monthly_rules(sources.taxes_fees, "taxes_fees", report)
        billing_lines = self._validate_billing_lines(sources.billing_lines, report)

        if report.quarantined_rows:
            logger.warning(f"Quarantined {report.quarantined_rows:,} malformed source rows.")

        known = set(customers["customer_id"])
        unknown_billed = set(billing_lines["customer_id"]) - known
        if unknown_billed:
            logger.info(
                f"{len(unknown_billed):,} billed customer ids are not in the customers table "
                f"and fall outside the analysis grid."
            )

        clean = SourceTables(
            customers=customers,
            plan_history=plan_history,
            plans=plans,
            usage=usage,
            discounts=discounts,
            taxes_fees=taxes_fees,
            billing_lines=billing_lines,
        )
        return clean, report

    # -------------------------------------------------------------------------
    # INTERNAL: PER-DATASET RULES
    # -------------------------------------------------------------------------

    def _validate_customers(self, df: pd.DataFrame, report: DataQualityReport) -> pd.DataFrame:
        df = df.copy()
        df = self._quarantine(df, df["customer_id"].isna(), "customers", "null customer_id", report)
        df["customer_id"] = df["customer_id"].astype(str)
        df = self._quarantine(
            df, df["customer_id"].duplicated(keep="first"), "customers", "duplicate customer_id", report
        )
        return df.reset_index(drop=True)

    def _validate_plans(self, df: pd.DataFrame, report: DataQualityReport) -> pd.DataFrame:
        df = df.copy()
        df = self._quarantine(df, df["plan_id"].isna(), "plans", "null plan_id", report)
        df["plan_id"] = df["plan_id"].astype(str)
        for col in ["monthly_rate", "included_units", "overage_rate"]:
            df[col] = pd.to_numeric(df[col], errors="coerce")

        df = self._quarantine(df, df["monthly_rate"].isna(), "plans", "null or non-numeric monthly_rate", report)
        # Missing allowance / overage rate means "none".
        df["included_units"] = df["included_units"].fillna(0.0)
        df["overage_rate"] = df["overage_rate"].fillna(0.0)

        negative = (df["monthly_rate"] < 0) | (df["included_units"] < 0) | (df["overage_rate"] < 0)
        df = self._quarantine(df, negative, "plans", "negative rate card value", report)
        df = self._quarantine(df, df["plan_id"].duplicated(keep="first"), "plans", "duplicate plan_id", report)
        return df.reset_index(drop=True)

    def _validate_plan_history(
        self, df: pd.DataFrame, plans: pd.DataFrame, report: DataQualityReport
    ) -> pd.DataFrame:
        df = df.copy()
        df = self._quarantine(
            df, df["customer_id"].isna() | df["plan_id"].isna(), "plan_history", "null customer_id or plan_id", report
        )
        df["customer_id"] = df["customer_id"].astype(str)
        df["plan_id"] = df["plan_id"].astype(str)

        df["effective_from"] = _to_datetime(df["effective_from"])
        df = self._quarantine(df, df["effective_from"].isna(), "plan_history", "unparseable effective_from", report)

        raw_to = df["effective_to"]
        parsed_to = _to_datetime(raw_to)
        year = pd.to_numeric(raw_to.astype(str).str.extract(r"^\s*(\d{4})")[0], errors="coerce")
        open_ended = raw_to.isna() | (year >= self.far_future_year)
        df["effective_to"] = parsed_to.where(~open_ended)
        df = self._quarantine(
            df, parsed_to.isna() & ~open_ended, "plan_history", "unparseable effective_to", report
        )

        inverted = df["effective_to"].notna() & (df["effective_to"] < df["effective_from"])
        df = self._quarantine(df, inverted, "plan_history", "effective_to before effective_from", report)

        unknown_plan = ~df["plan_id"].isin(set(plans["plan_id"]))
        df = self._quarantine(df, unknown_plan, "plan_history", "plan_id not in rate card", report)
        return df.reset_index(drop=True)

    def _validate_usage(self, df: pd.DataFrame, report: DataQualityReport) -> pd.DataFrame:
        df = df.copy()
        df = self._quarantine(df, df["customer_id"].isna(), "usage", "null customer_id", report)
        df["customer_id"] = df["customer_id"].astype(str)
        df["usage_date"] = _to_datetime(df["usage_date"])
        df = self._quarantine(df, df["usage_date"].isna(), "usage", "unparseable usage_date", report)
        df["units"] = pd.to_numeric(df["units"], errors="coerce")
        df = self._quarantine(df, df["units"].isna(), "usage", "null or non-numeric units", report)
        df = self._quarantine(df, df["units"] < 0, "usage", "negative units", report)
        return df.reset_index(drop=True)

    def _validate_monthly_rules(self, df: pd.DataFrame, dataset: str, report: DataQualityReport) -> pd.DataFrame:
        """Shared rules for the discount and tax/fee datasets."""
        df = df.copy()
        df = self._quarantine(df, df["customer_id"].isna(), dataset, "null customer_id", report)
        df["customer_id"] = df["customer_id"].astype(str)
        df["bill_month"] = to_month_start(df["bill_month"])
        df = self._quarantine(df, df["bill_month"].isna(), dataset, "unparseable bill_month", report)
        df["amount"] = pd.to_numeric(df["amount"], errors="coerce")
        df = self._quarantine(df, df["amount"].isna(), dataset, "null or non-numeric amount", report)
        return df.reset_index(drop=True)

    def _validate_billing_lines(self, df: pd.DataFrame, report: DataQualityReport) -> pd.DataFrame:
        df = self._validate_monthly_rules(df, "billing_lines", report)
        df = self._quarantine(df, df["bill_id"].isna(), "billing_lines", "null bill_id", report)
        df["bill_id"] = df["bill_id"].astype(str)
        df["line_type"] = df["line_type"].astype(str).str.strip().str.lower()
        unknown_type = ~df["line_type"].isin(set(LINE_TYPE_BUCKETS))
        df = self._quarantine(df, unknown_type, "billing_lines", "unknown line_type", report)
        return df.reset_index(drop=True)

    # -------------------------------------------------------------------------
    # INTERNAL: QUARANTINE
    # -------------------------------------------------------------------------

    @staticmethod
    def _quarantine(
        df: pd.DataFrame, mask: pd.Series, dataset: str, reason: str, report: DataQualityReport
    ) -> pd.DataFrame:
        """Records every masked row as an issue and returns the remaining rows."""
        mask = mask.fillna(False).astype(bool)
        bad_count = int(mask.sum())
        if bad_count == 0:
            return df

        for idx in df.index[mask]:
            report.add_issue(dataset, idx, reason)
        logger.warning(f"{dataset}: {bad_count} rows rejected ({reason})")
        return df[~mask].copy()
