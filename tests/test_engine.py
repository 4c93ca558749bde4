"""
test_engine.py
---------------
Test suite for the billing anomaly engine.

Run from the project root:
    python -m pytest tests/test_engine.py -v

Tests are organized by layer:
    - Config & Taxonomy
    - Window & Grid
    - Source Validation
    - Plan Coverage & Expectations
    - Actuals
    - Anomaly Rules & Classifier
    - Historical Statistics
    - Confidence Scoring & Ranking
    - Full Pipeline (integration)
    - Drift Monitor
"""

import sys
import os
import pytest
import pandas as pd
import numpy as np
from datetime import date

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import load_config, get_anomaly_severity_table, reset_config
from core.taxonomy import AnomalyReason, SeverityLookup
from core.models import ActualCharges, ComparisonRecord, ExpectedCharges, HistoryStats
from core.month_window import build_customer_month_grid, build_month_window, days_in_month
from core.sources import SourceTables
from core.validation import SourceValidator
from core.plan_coverage import PlanCoverageResolver
from core.expectations import ExpectationComposer
from core.actuals import ActualsAggregator
from core.classifier import AnomalyClassifier
from core.history_stats import HistoricalStatisticsEngine
from core.scoring import ConfidenceScorer
from rules.anomaly_rules import RULE_REGISTRY, get_all_rules, AllowanceMismatchRule, MissingBillRule
from pipeline import BillingAnomalyPipeline, OUTPUT_COLUMNS
from monitoring.drift_monitor import BillingDriftMonitor


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


def _make_sources(
    customers=("C1",),
    plans=None,
    plan_history=None,
    usage=None,
    discounts=None,
    taxes_fees=None,
    billing_lines=None,
) -> SourceTables:
    """Helper: builds a source snapshot, defaulting to one 60.00 flat-rate plan."""
    if plans is None:
        plans = [{"plan_id": "P1", "monthly_rate": 60.0, "included_units": 100, "overage_rate": 0.5}]
    if plan_history is None:
        plan_history = [{"customer_id": "C1", "plan_id": "P1", "effective_from": "2024-01-01", "effective_to": None}]

    frames = {
        "customers": pd.DataFrame({"customer_id": list(customers)}),
        "plans": pd.DataFrame(plans),
        "plan_history": pd.DataFrame(plan_history, columns=["customer_id", "plan_id", "effective_from", "effective_to"]),
    }
    for name, rows in [("usage", usage), ("discounts", discounts),
                       ("taxes_fees", taxes_fees), ("billing_lines", billing_lines)]:
        if rows is not None:
            frames[name] = pd.DataFrame(rows)
    return SourceTables.from_frames(**frames)


def _monthly_base_lines(customer_id="C1", months=(), amounts=None):
    """Helper: one base line and one bill per month."""
    amounts = amounts or [60.0] * len(months)
    return [
        {"customer_id": customer_id, "bill_month": m, "line_type": "base",
         "amount": amt, "bill_id": f"{customer_id}-{m}"}
        for m, amt in zip(months, amounts)
    ]


def _record(
    expected_base=60.0, expected_usage=0.0, expected_discount=0.0, expected_tax=0.0,
    actual_base=60.0, actual_usage=0.0, actual_discount=0.0, actual_tax=0.0, actual_other=0.0,
    bill_count=1, units_used=0.0, included_units=100.0,
    customer_id="C1", bill_month=date(2024, 6, 1),
) -> ComparisonRecord:
    """Helper: creates a ComparisonRecord directly for rule tests."""
    total = actual_base + actual_usage + actual_discount + actual_tax + actual_other
    return ComparisonRecord(
        customer_id=customer_id,
        bill_month=bill_month,
        expected=ExpectedCharges(base=expected_base, usage=expected_usage,
                                 discount=expected_discount, tax_fee=expected_tax),
        actual=ActualCharges(base=actual_base, usage=actual_usage, discount=actual_discount,
                             tax_fee=actual_tax, other=actual_other, total=total, bill_count=bill_count),
        units_used=units_used,
        included_units=included_units,
        overage_rate=0.5 if included_units is not None else None,
        plan_count=1 if included_units is not None else 0,
    )


def _validated(sources: SourceTables) -> SourceTables:
    clean, _ = SourceValidator().validate(sources)
    return clean


def _coverage_for(sources: SourceTables, asof="2024-06", lookback=6):
    clean = _validated(sources)
    months = build_month_window(asof, lookback)
    grid = build_customer_month_grid(clean.customers, months)
    coverage = PlanCoverageResolver().resolve(grid, clean.plan_history, clean.plans)
    return clean, grid, coverage


# =============================================================================
# CONFIG & TAXONOMY TESTS
# =============================================================================

class TestConfig:
    def test_config_loads_successfully(self):
        config = load_config()
        for block in ["run", "reconciliation", "plan_coverage", "history_stats",
                      "confidence", "anomaly_severity", "drift_monitoring"]:
            assert block in config

    def test_default_thresholds(self):
        config = load_config()
        assert config["reconciliation"]["pct_tolerance"] == pytest.approx(0.12)
        assert config["reconciliation"]["min_abs_delta"] == pytest.approx(2.0)
        assert config["history_stats"]["min_months_for_stats"] == 5
        assert config["confidence"]["z_threshold"] == pytest.approx(2.25)

    def test_missing_config_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/config.yaml")


class TestTaxonomy:
    def test_every_reason_has_a_severity(self):
        severities = SeverityLookup()
        assert len(severities) == len(AnomalyReason)

    def test_known_severities(self):
        severities = SeverityLookup()
        assert severities.get_severity(AnomalyReason.MISSING_BILL) == pytest.approx(0.95)
        assert severities.get_severity(AnomalyReason.DUPLICATE_BILL) == pytest.approx(0.90)
        assert severities.get_severity(AnomalyReason.UNDER_BILLED) == pytest.approx(0.65)

    def test_no_reason_has_zero_severity(self):
        assert SeverityLookup().get_severity(None) == 0.0

    def test_every_reason_has_a_description(self):
        severities = SeverityLookup()
        for reason in AnomalyReason:
            assert severities.get_description(reason)
        assert severities.get_description(None) == ""

    def test_unknown_reason_in_table_raises(self):
        get_anomaly_severity_table().append({"reason": "LATE_FEE", "severity": 0.5})
        with pytest.raises(KeyError):
            SeverityLookup()


# =============================================================================
# WINDOW & GRID TESTS
# =============================================================================

class TestWindowAndGrid:
    def test_window_is_ascending_and_ends_at_asof(self):
        months = build_month_window("2024-03", 4)
        assert months == [date(2023, 12, 1), date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)]

    def test_mid_month_asof_is_truncated(self):
        assert build_month_window("2024-06-17", 1) == [date(2024, 6, 1)]

    def test_invalid_lookback_raises(self):
        with pytest.raises(ValueError):
            build_month_window("2024-06", 0)

    def test_days_in_month(self):
        assert days_in_month(date(2024, 2, 1)) == 29
        assert days_in_month(date(2023, 2, 1)) == 28
        assert days_in_month(date(2024, 4, 1)) == 30

    def test_grid_has_one_row_per_customer_month(self):
        customers = pd.DataFrame({"customer_id": ["C2", "C1", "C1"]})
        grid = build_customer_month_grid(customers, build_month_window("2024-06", 3))
        assert len(grid) == 6
        assert not grid.duplicated(["customer_id", "bill_month"]).any()
        assert list(grid["customer_id"][:3]) == ["C1", "C1", "C1"]

    def test_empty_customers_give_empty_grid(self):
        grid = build_customer_month_grid(pd.DataFrame({"customer_id": []}), build_month_window("2024-06", 3))
        assert grid.empty
        assert list(grid.columns) == ["customer_id", "bill_month"]


# =============================================================================
# SOURCE VALIDATION TESTS
# =============================================================================

class TestSourceValidation:
    def _dirty_sources(self):
        return _make_sources(
            customers=("C1", "C1", "C2"),
            plans=[
                {"plan_id": "P1", "monthly_rate": 60.0, "included_units": 100, "overage_rate": 0.5},
                {"plan_id": "P2", "monthly_rate": -5.0, "included_units": 100, "overage_rate": 0.5},
            ],
            plan_history=[
                {"customer_id": "C1", "plan_id": "P1", "effective_from": "2024-01-01", "effective_to": None},
                {"customer_id": "C2", "plan_id": "P1", "effective_from": "2024-03-01", "effective_to": "2024-02-01"},
                {"customer_id": "C2", "plan_id": "P9", "effective_from": "2024-01-01", "effective_to": None},
                {"customer_id": "C2", "plan_id": "P1", "effective_from": "2024-01-01", "effective_to": "2999-12-31"},
            ],
            usage=[
                {"customer_id": "C1", "usage_date": "2024-06-01", "units": -3},
                {"customer_id": "C1", "usage_date": "not a date", "units": 5},
            ],
            billing_lines=[
                {"customer_id": "C1", "bill_month": "2024-06-01", "line_type": "BASE", "amount": 60.0, "bill_id": "B1"},
                {"customer_id": "C1", "bill_month": "2024-06-01", "line_type": "bogus", "amount": 5.0, "bill_id": "B1"},
                {"customer_id": "C1", "bill_month": "2024-06-01", "line_type": "tax", "amount": 3.0, "bill_id": None},
            ],
        )

    def test_malformed_rows_are_quarantined(self):
        clean, report = SourceValidator().validate(self._dirty_sources())
        reasons = {issue.reason for issue in report.issues}
        assert reasons == {
            "duplicate customer_id",
            "negative rate card value",
            "effective_to before effective_from",
            "plan_id not in rate card",
            "negative units",
            "unparseable usage_date",
            "unknown line_type",
            "null bill_id",
        }
        assert report.quarantined_rows == 8
        assert len(clean.customers) == 2
        assert len(clean.billing_lines) == 1

    def test_far_future_and_null_effective_to_are_open_ended(self):
        clean, _ = SourceValidator().validate(self._dirty_sources())
        assert len(clean.plan_history) == 2
        assert clean.plan_history["effective_to"].isna().all()

    def test_line_type_normalized_and_month_truncated(self):
        sources = _make_sources(billing_lines=[
            {"customer_id": "C1", "bill_month": "2024-06-17", "line_type": " Base ", "amount": 60.0, "bill_id": "B1"},
        ])
        clean = _validated(sources)
        assert clean.billing_lines["line_type"].iloc[0] == "base"
        assert clean.billing_lines["bill_month"].iloc[0] == pd.Timestamp("2024-06-01")

    def test_missing_columns_raises(self):
        sources = SourceTables.from_frames(billing_lines=pd.DataFrame({"customer_id": ["C1"], "amount": [1.0]}))
        with pytest.raises(ValueError, match="Missing required columns"):
            SourceValidator().validate(sources)

    def test_unknown_dataset_name_raises(self):
        with pytest.raises(ValueError):
            SourceTables.from_frames(invoices=pd.DataFrame())


# =============================================================================
# PLAN COVERAGE & EXPECTATION TESTS
# =============================================================================

class TestPlanCoverage:
    def test_full_month_prorates_to_one(self):
        _, _, coverage = _coverage_for(_make_sources(), asof="2024-06", lookback=1)
        assert len(coverage) == 1
        assert coverage.iloc[0]["proration_fraction"] == pytest.approx(1.0)
        assert coverage.iloc[0]["expected_base_charge"] == pytest.approx(60.0)

    def test_half_month_prorates_to_half(self):
        sources = _make_sources(plan_history=[
            {"customer_id": "C1", "plan_id": "P1", "effective_from": "2024-04-16", "effective_to": None},
        ])
        _, _, coverage = _coverage_for(sources, asof="2024-04", lookback=1)
        row = coverage.iloc[0]
        assert row["active_days"] == 15
        assert row["days_in_month"] == 30
        assert row["proration_fraction"] == pytest.approx(0.5)
        assert row["expected_base_charge"] == pytest.approx(30.0)

    def test_months_before_start_have_no_coverage(self):
        sources = _make_sources(plan_history=[
            {"customer_id": "C1", "plan_id": "P1", "effective_from": "2024-05-01", "effective_to": None},
        ])
        _, _, coverage = _coverage_for(sources, asof="2024-06", lookback=3)
        assert set(coverage["bill_month"].dt.month) == {5, 6}

    def test_plan_change_splits_month_without_overlap(self):
        sources = _make_sources(
            plans=[
                {"plan_id": "P1", "monthly_rate": 60.0, "included_units": 100, "overage_rate": 0.5},
                {"plan_id": "P2", "monthly_rate": 90.0, "included_units": 300, "overage_rate": 0.25},
            ],
            plan_history=[
                {"customer_id": "C1", "plan_id": "P1", "effective_from": "2024-01-01", "effective_to": "2024-04-16"},
                {"customer_id": "C1", "plan_id": "P2", "effective_from": "2024-04-16", "effective_to": None},
            ],
        )
        _, _, coverage = _coverage_for(sources, asof="2024-04", lookback=1)
        resolver = PlanCoverageResolver()
        assert len(coverage) == 2
        assert coverage["expected_base_charge"].sum() == pytest.approx(75.0)
        assert resolver.detect_overlaps(coverage).empty

    def test_overlapping_intervals_are_reported(self):
        sources = _make_sources(plan_history=[
            {"customer_id": "C1", "plan_id": "P1", "effective_from": "2024-01-01", "effective_to": None},
            {"customer_id": "C1", "plan_id": "P1", "effective_from": "2024-06-10", "effective_to": None},
        ])
        _, _, coverage = _coverage_for(sources, asof="2024-06", lookback=1)
        overlaps = PlanCoverageResolver().detect_overlaps(coverage)
        assert len(overlaps) == 1
        assert overlaps.iloc[0]["plan_count"] == 2


class TestExpectations:
    def test_expected_total_composition(self):
        sources = _make_sources(
            usage=[
                {"customer_id": "C1", "usage_date": "2024-06-03", "units": 90},
                {"customer_id": "C1", "usage_date": "2024-06-20", "units": 60},
            ],
            discounts=[{"customer_id": "C1", "bill_month": "2024-06-01", "amount": -5.0}],
            taxes_fees=[{"customer_id": "C1", "bill_month": "2024-06-01", "amount": 4.8}],
        )
        clean, grid, coverage = _coverage_for(sources, asof="2024-06", lookback=1)
        expected = ExpectationComposer().compose(grid, coverage, clean.usage, clean.discounts, clean.taxes_fees)

        row = expected.iloc[0]
        assert row["units_used"] == pytest.approx(150.0)
        assert row["expected_usage_charge"] == pytest.approx(25.0)   # (150 - 100) * 0.5
        assert row["expected_discounts"] == pytest.approx(-5.0)
        assert row["expected_taxes_fees"] == pytest.approx(4.8)
        assert row["expected_total_charge"] == pytest.approx(84.8)

    def test_usage_within_allowance_costs_nothing(self):
        sources = _make_sources(usage=[{"customer_id": "C1", "usage_date": "2024-06-03", "units": 80}])
        clean, grid, coverage = _coverage_for(sources, asof="2024-06", lookback=1)
        expected = ExpectationComposer().compose(grid, coverage, clean.usage, clean.discounts, clean.taxes_fees)
        assert expected.iloc[0]["expected_usage_charge"] == 0.0

    def test_month_without_plan_has_no_allowance(self):
        sources = _make_sources(customers=("C1", "C2"))
        clean, grid, coverage = _coverage_for(sources, asof="2024-06", lookback=1)
        expected = ExpectationComposer().compose(grid, coverage, clean.usage, clean.discounts, clean.taxes_fees)

        assert len(expected) == 2
        c2 = expected[expected["customer_id"] == "C2"].iloc[0]
        assert c2["plan_count"] == 0
        assert c2["expected_total_charge"] == 0.0
        assert pd.isna(c2["included_units"])

    def test_rating_plan_is_latest_interval(self):
        sources = _make_sources(
            plans=[
                {"plan_id": "P1", "monthly_rate": 60.0, "included_units": 100, "overage_rate": 0.5},
                {"plan_id": "P2", "monthly_rate": 90.0, "included_units": 300, "overage_rate": 0.25},
            ],
            plan_history=[
                {"customer_id": "C1", "plan_id": "P1", "effective_from": "2024-01-01", "effective_to": "2024-04-16"},
                {"customer_id": "C1", "plan_id": "P2", "effective_from": "2024-04-16", "effective_to": None},
            ],
            usage=[{"customer_id": "C1", "usage_date": "2024-04-05", "units": 400}],
        )
        clean, grid, coverage = _coverage_for(sources, asof="2024-04", lookback=1)
        row = ExpectationComposer().compose(grid, coverage, clean.usage, clean.discounts, clean.taxes_fees).iloc[0]
        assert row["rating_plan_id"] == "P2"
        assert row["expected_usage_charge"] == pytest.approx(25.0)   # (400 - 300) * 0.25


# =============================================================================
# ACTUALS TESTS
# =============================================================================

class TestActuals:
    def test_lines_bucketed_and_bills_counted(self):
        sources = _make_sources(billing_lines=[
            {"customer_id": "C1", "bill_month": "2024-06-01", "line_type": "base", "amount": 60.0, "bill_id": "B1"},
            {"customer_id": "C1", "bill_month": "2024-06-01", "line_type": "tax", "amount": 3.0, "bill_id": "B1"},
            {"customer_id": "C1", "bill_month": "2024-06-01", "line_type": "fee", "amount": 2.0, "bill_id": "B1"},
            {"customer_id": "C1", "bill_month": "2024-06-01", "line_type": "other", "amount": 1.5, "bill_id": "B1"},
        ])
        clean = _validated(sources)
        actuals = ActualsAggregator().aggregate(clean.billing_lines, build_month_window("2024-06", 1))

        row = actuals.iloc[0]
        assert row["actual_base"] == pytest.approx(60.0)
        assert row["actual_taxes_fees"] == pytest.approx(5.0)
        assert row["actual_other"] == pytest.approx(1.5)
        assert row["actual_total_charge"] == pytest.approx(66.5)
        assert row["bill_count"] == 1

    def test_distinct_bill_ids_counted(self):
        sources = _make_sources(billing_lines=_monthly_base_lines(months=["2024-06-01"]) + [
            {"customer_id": "C1", "bill_month": "2024-06-01", "line_type": "base", "amount": 60.0, "bill_id": "DUP"},
        ])
        clean = _validated(sources)
        actuals = ActualsAggregator().aggregate(clean.billing_lines, build_month_window("2024-06", 1))
        assert actuals.iloc[0]["bill_count"] == 2

    def test_monthly_totals_include_history_before_window(self):
        months = ["2023-10-01", "2023-11-01", "2024-06-01", "2024-07-01"]
        clean = _validated(_make_sources(billing_lines=_monthly_base_lines(months=months)))
        totals = ActualsAggregator().monthly_totals(clean.billing_lines, pd.Timestamp("2024-06-01"))
        assert list(totals["bill_month"].dt.strftime("%Y-%m")) == ["2023-10", "2023-11", "2024-06"]


# =============================================================================
# ANOMALY RULE & CLASSIFIER TESTS
# =============================================================================

class TestAnomalyRules:
    def test_registry_order(self):
        assert list(RULE_REGISTRY) == list(AnomalyReason)
        rules = get_all_rules()
        assert len(rules) == 10
        assert isinstance(rules[0], MissingBillRule)

    def test_missing_bill(self):
        record = _record(actual_base=0.0, bill_count=0)
        assert AnomalyClassifier().classify(record).anomaly_reason == AnomalyReason.MISSING_BILL

    def test_duplicate_bill_beats_component_mismatch(self):
        record = _record(actual_base=120.0, bill_count=2)
        assert AnomalyClassifier().classify(record).anomaly_reason == AnomalyReason.DUPLICATE_BILL

    def test_duplicate_bill_even_when_amounts_reconcile(self):
        record = _record(bill_count=2)
        assert record.pct_diff == pytest.approx(0.0)
        assert AnomalyClassifier().classify(record).anomaly_reason == AnomalyReason.DUPLICATE_BILL

    def test_unexpected_bill(self):
        record = _record(expected_base=0.0, actual_base=30.0, included_units=None)
        labelled = AnomalyClassifier().classify(record)
        assert labelled.anomaly_reason == AnomalyReason.UNEXPECTED_BILL
        assert labelled.is_unexpected_charge
        assert labelled.pct_diff is None

    def test_allowance_mismatch_beats_base_mismatch(self):
        record = _record(actual_base=80.0, actual_usage=10.0, units_used=50.0)
        assert AnomalyClassifier().classify(record).anomaly_reason == AnomalyReason.ALLOWANCE_MISMATCH

    def test_allowance_rule_treats_no_plan_as_zero_allowance(self):
        rule = AllowanceMismatchRule()
        assert not rule.matches(_record(units_used=10.0, actual_usage=5.0, included_units=None))
        assert rule.matches(_record(units_used=0.0, actual_usage=5.0, included_units=None))

    def test_base_proration_mismatch(self):
        record = _record(actual_base=70.0)
        assert AnomalyClassifier().classify(record).anomaly_reason == AnomalyReason.BASE_PRORATION_MISMATCH

    def test_small_delta_below_absolute_floor(self):
        assert AnomalyClassifier().classify(_record(actual_base=61.5)).anomaly_reason is None

    def test_usage_mismatch(self):
        record = _record(expected_usage=25.0, actual_usage=40.0, units_used=150.0)
        assert AnomalyClassifier().classify(record).anomaly_reason == AnomalyReason.USAGE_MISMATCH

    def test_discount_mismatch(self):
        record = _record(expected_discount=-5.0, actual_discount=0.0)
        assert AnomalyClassifier().classify(record).anomaly_reason == AnomalyReason.DISCOUNT_MISMATCH

    def test_tax_fee_mismatch(self):
        record = _record(expected_tax=4.8, actual_tax=9.0)
        assert AnomalyClassifier().classify(record).anomaly_reason == AnomalyReason.TAX_FEE_MISMATCH

    def test_over_billed_on_total_only(self):
        record = _record(actual_other=10.0)
        assert AnomalyClassifier().classify(record).anomaly_reason == AnomalyReason.OVER_BILLED

    def test_under_billed_on_total_only(self):
        record = _record(actual_other=-10.0)
        assert AnomalyClassifier().classify(record).anomaly_reason == AnomalyReason.UNDER_BILLED

    def test_clean_record_has_no_reason(self):
        assert AnomalyClassifier().classify(_record()).anomaly_reason is None

    def test_tolerance_override(self):
        record = _record(actual_other=10.0)
        assert AnomalyClassifier(pct_tolerance=0.5).classify(record).anomaly_reason is None

    def test_rule_repr_shows_tolerance(self):
        assert repr(MissingBillRule()) == "MissingBillRule(reason=MISSING_BILL, pct_tolerance=0.12)"

    def test_classification_does_not_mutate_input(self):
        record = _record(actual_base=0.0, bill_count=0)
        AnomalyClassifier().classify(record)
        assert record.anomaly_reason is None


class TestComparisonPctPolicy:
    def test_both_zero_is_zero(self):
        record = _record(expected_base=0.0, actual_base=0.0, included_units=None)
        assert record.pct_diff == 0.0
        assert not record.is_unexpected_charge

    def test_ratio_when_expected_nonzero(self):
        assert _record(actual_base=90.0).pct_diff == pytest.approx(0.5)

    def test_component_pct_absent_when_expected_zero(self):
        record = _record(actual_usage=10.0)
        assert record.component_pct_diff("usage") is None
        assert record.component_pct_diff("base") == pytest.approx(0.0)

    def test_float_residue_expectation_counts_as_zero(self):
        # -0.3 + (0.1 + 0.2) leaves a residue of about 5.5e-17
        record = _record(expected_base=0.0, expected_discount=-0.3, expected_tax=0.1 + 0.2,
                         actual_base=50.0, included_units=None)
        assert record.expected.total != 0
        assert record.is_unexpected_charge
        assert record.pct_diff is None
        assert AnomalyClassifier().classify(record).anomaly_reason == AnomalyReason.UNEXPECTED_BILL

    def test_sub_cent_amounts_count_as_zero(self):
        record = _record(expected_base=0.004, actual_base=0.003, included_units=None)
        assert not record.is_unexpected_charge
        assert record.pct_diff == 0.0
        assert record.component_pct_diff("base") is None


# =============================================================================
# HISTORICAL STATISTICS TESTS
# =============================================================================

def _month_pairs(totals, start=date(2024, 1, 1)):
    pairs = []
    for i, total in enumerate(totals):
        month = start.month - 1 + i
        pairs.append((date(start.year + month // 12, month % 12 + 1, 1), total))
    return pairs


class TestHistoryStats:
    def test_insufficient_history_has_no_z(self):
        stats = HistoricalStatisticsEngine().compute_customer("C1", _month_pairs([60.0, 70.0, 200.0]))
        assert all(s.z_score is None for s in stats.values())

    def test_current_month_excluded_from_baseline(self):
        pairs = _month_pairs([100.0, 102.0, 98.0, 101.0, 99.0, 200.0])
        stats = HistoricalStatisticsEngine().compute_customer("C1", pairs)
        last = stats[pairs[-1][0]]
        assert last.months_available == 5
        assert last.rolling_mean == pytest.approx(100.0)
        assert last.rolling_std == pytest.approx(np.sqrt(2.5))
        assert last.z_score == pytest.approx(100.0 / np.sqrt(2.5))

    def test_first_month_has_empty_baseline(self):
        pairs = _month_pairs([60.0, 61.0])
        first = HistoricalStatisticsEngine().compute_customer("C1", pairs)[pairs[0][0]]
        assert first.months_available == 0
        assert first.rolling_mean is None
        assert first.rolling_std is None

    def test_constant_history_has_no_z(self):
        pairs = _month_pairs([60.0] * 8)
        stats = HistoricalStatisticsEngine().compute_customer("C1", pairs)
        assert stats[pairs[-1][0]].z_score is None

    def test_trailing_buffer_is_bounded(self):
        pairs = _month_pairs([60.0 + i for i in range(15)])
        stats = HistoricalStatisticsEngine().compute_customer("C1", pairs)
        assert stats[pairs[-1][0]].months_available == 12

    def test_min_months_override(self):
        pairs = _month_pairs([60.0, 62.0, 120.0])
        stats = HistoricalStatisticsEngine(min_months_for_stats=2).compute_customer("C1", pairs)
        assert stats[pairs[-1][0]].z_score is not None


# =============================================================================
# CONFIDENCE SCORING & RANKING TESTS
# =============================================================================

def _stats(z, customer_id="C1", bill_month=date(2024, 6, 1)):
    return HistoryStats(customer_id=customer_id, bill_month=bill_month, current_total=0.0,
                        months_available=6, z_score=z)


def _labelled(reason, **kwargs):
    from dataclasses import replace
    return replace(_record(**kwargs), anomaly_reason=reason)


class TestConfidenceScorer:
    def test_confidence_is_capped(self):
        result = ConfidenceScorer().score(_labelled(AnomalyReason.MISSING_BILL), _stats(3.0))
        assert result.confidence_score == pytest.approx(1.0)
        assert result.is_flagged

    def test_severity_plus_bonus(self):
        result = ConfidenceScorer().score(_labelled(AnomalyReason.OVER_BILLED), _stats(-3.0))
        assert result.confidence_score == pytest.approx(0.90)

    def test_z_only_row_is_flagged(self):
        result = ConfidenceScorer().score(_labelled(None), _stats(2.25))
        assert result.is_flagged
        assert result.confidence_score == pytest.approx(0.25)

    def test_clean_row_not_flagged(self):
        result = ConfidenceScorer().score(_labelled(None), _stats(1.0))
        assert not result.is_flagged
        assert result.confidence_score == 0.0

    def test_absent_z_gets_no_bonus(self):
        result = ConfidenceScorer().score(_labelled(AnomalyReason.MISSING_BILL), None)
        assert result.confidence_score == pytest.approx(0.95)
        assert result.abs_z_score == 0.0

    def test_ranking_order(self):
        scorer = ConfidenceScorer()
        june, may = date(2024, 6, 1), date(2024, 5, 1)
        results = [
            scorer.score(_labelled(AnomalyReason.MISSING_BILL, customer_id="C2", bill_month=june), None),
            scorer.score(_labelled(AnomalyReason.OVER_BILLED, customer_id="C1", bill_month=may), _stats(3.0)),
            scorer.score(_labelled(AnomalyReason.MISSING_BILL, customer_id="C1", bill_month=may), None),
            scorer.score(_labelled(AnomalyReason.MISSING_BILL, customer_id="C1", bill_month=june), None),
            scorer.score(_labelled(None, customer_id="C3", bill_month=june), None),
        ]
        ranked = scorer.rank(results)
        order = [(r.comparison.customer_id, r.comparison.bill_month, r.comparison.anomaly_reason) for r in ranked]
        assert order == [
            ("C1", june, AnomalyReason.MISSING_BILL),
            ("C2", june, AnomalyReason.MISSING_BILL),
            ("C1", may, AnomalyReason.MISSING_BILL),
            ("C1", may, AnomalyReason.OVER_BILLED),
        ]


# =============================================================================
# FULL PIPELINE INTEGRATION TESTS
# =============================================================================

JAN_TO_JUN = ["2024-01-01", "2024-02-01", "2024-03-01", "2024-04-01", "2024-05-01", "2024-06-01"]


class TestPipeline:
    def test_correct_bills_produce_no_anomalies(self):
        sources = _make_sources(billing_lines=_monthly_base_lines(months=JAN_TO_JUN))
        pipeline = BillingAnomalyPipeline(asof_month="2024-06", lookback_months=6)
        output = pipeline.run(sources)

        assert isinstance(output, pd.DataFrame)
        assert output.empty
        assert list(output.columns) == OUTPUT_COLUMNS

    def test_reconciliation_only_returns_every_compared_month(self):
        sources = _make_sources(billing_lines=_monthly_base_lines(months=JAN_TO_JUN))
        output = BillingAnomalyPipeline(asof_month="2024-06", lookback_months=6).run_reconciliation_only(sources)

        assert len(output) == 6
        assert not output["is_flagged"].any()
        assert (output["pct_diff_pct"] == 0.0).all()
        # Constant history has zero spread, so no z-score
        assert not output["z_score_available"].any()

    def test_missing_bill_flagged(self):
        sources = _make_sources(billing_lines=_monthly_base_lines(months=JAN_TO_JUN[:-1]))
        output = BillingAnomalyPipeline(asof_month="2024-06", lookback_months=6).run(sources)

        assert len(output) == 1
        row = output.iloc[0]
        assert row["customer_id"] == "C1"
        assert row["bill_month"] == "2024-06-01"
        assert row["anomaly_reason"] == "MISSING_BILL"
        assert row["confidence_score"] >= 0.95
        assert row["expected_total_charge"] == pytest.approx(60.0)
        assert row["actual_total_charge"] == 0.0
        assert row["pct_diff_pct"] == pytest.approx(-100.0)
        assert not row["z_score_available"]

    def test_unexpected_charge_reported_as_full_deviation(self):
        sources = _make_sources(
            customers=("C1", "C2"),
            billing_lines=_monthly_base_lines(months=["2024-06-01"])
            + _monthly_base_lines(customer_id="C2", months=["2024-06-01"], amounts=[25.0]),
        )
        output = BillingAnomalyPipeline(asof_month="2024-06", lookback_months=1).run(sources)
        row = output[output["customer_id"] == "C2"].iloc[0]
        assert row["anomaly_reason"] == "UNEXPECTED_BILL"
        assert row["is_unexpected_charge"]
        assert row["pct_diff_pct"] == pytest.approx(100.0)

    def test_float_residue_expectation_is_unexpected_bill(self):
        sources = _make_sources(
            customers=("C1", "C2"),
            discounts=[{"customer_id": "C2", "bill_month": "2024-06-01", "amount": -0.3}],
            taxes_fees=[
                {"customer_id": "C2", "bill_month": "2024-06-01", "amount": 0.1},
                {"customer_id": "C2", "bill_month": "2024-06-01", "amount": 0.2},
            ],
            billing_lines=_monthly_base_lines(months=["2024-06-01"])
            + _monthly_base_lines(customer_id="C2", months=["2024-06-01"], amounts=[50.0]),
        )
        output = BillingAnomalyPipeline(asof_month="2024-06", lookback_months=1).run(sources)

        row = output[output["customer_id"] == "C2"].iloc[0]
        assert row["anomaly_reason"] == "UNEXPECTED_BILL"
        assert row["is_unexpected_charge"]
        assert row["expected_total_charge"] == 0.0
        assert row["pct_diff_pct"] == pytest.approx(100.0)

    def test_half_month_plan_reconciles_exactly(self):
        sources = _make_sources(
            plans=[{"plan_id": "P1", "monthly_rate": 100.0, "included_units": 100, "overage_rate": 0.5}],
            plan_history=[{"customer_id": "C1", "plan_id": "P1",
                           "effective_from": "2024-04-01", "effective_to": "2024-04-16"}],
            taxes_fees=[{"customer_id": "C1", "bill_month": "2024-04-01", "amount": 10.0}],
            billing_lines=[
                {"customer_id": "C1", "bill_month": "2024-04-01", "line_type": "base", "amount": 50.0, "bill_id": "B1"},
                {"customer_id": "C1", "bill_month": "2024-04-01", "line_type": "tax", "amount": 10.0, "bill_id": "B1"},
            ],
        )
        pipeline = BillingAnomalyPipeline(asof_month="2024-04", lookback_months=1)
        assert pipeline.run(sources).empty

        row = pipeline.run_reconciliation_only(sources).iloc[0]
        assert row["expected_base_charge"] == pytest.approx(50.0)
        assert row["expected_total_charge"] == pytest.approx(60.0)
        assert row["actual_total_charge"] == pytest.approx(60.0)
        assert row["pct_diff_pct"] == 0.0
        assert not row["is_flagged"]

    def test_half_month_plan_without_bill_is_missing(self):
        sources = _make_sources(
            plans=[{"plan_id": "P1", "monthly_rate": 100.0, "included_units": 100, "overage_rate": 0.5}],
            plan_history=[{"customer_id": "C1", "plan_id": "P1",
                           "effective_from": "2024-04-01", "effective_to": "2024-04-16"}],
            taxes_fees=[{"customer_id": "C1", "bill_month": "2024-04-01", "amount": 10.0}],
        )
        output = BillingAnomalyPipeline(asof_month="2024-04", lookback_months=1).run(sources)

        assert len(output) == 1
        row = output.iloc[0]
        assert row["anomaly_reason"] == "MISSING_BILL"
        assert row["confidence_score"] >= 0.95
        assert row["expected_total_charge"] == pytest.approx(60.0)
        assert row["bill_count"] == 0

    def test_single_pass_returns_ranked_and_full_outputs(self, monkeypatch):
        sources = _make_sources(billing_lines=_monthly_base_lines(months=JAN_TO_JUN[:-1]))
        pipeline = BillingAnomalyPipeline(asof_month="2024-06", lookback_months=6)
        calls = []
        original = pipeline.validator.validate

        def counting_validate(snapshot):
            calls.append(snapshot)
            return original(snapshot)

        monkeypatch.setattr(pipeline.validator, "validate", counting_validate)
        ranked, comparisons = pipeline.run_with_reconciliation(sources)

        assert len(calls) == 1
        expected_ranked = BillingAnomalyPipeline(asof_month="2024-06", lookback_months=6).run(sources)
        pd.testing.assert_frame_equal(ranked, expected_ranked)
        assert len(comparisons) == 6
        assert comparisons["is_flagged"].sum() == 1
        assert pipeline.data_quality_report.failed_customers == []

    def test_inactive_customer_months_produce_no_rows(self):
        sources = _make_sources(
            customers=("C1", "C2"),
            billing_lines=_monthly_base_lines(months=JAN_TO_JUN),
        )
        output = BillingAnomalyPipeline(asof_month="2024-06", lookback_months=6).run_reconciliation_only(sources)
        assert set(output["customer_id"]) == {"C1"}

    def test_billing_spike_gets_statistical_bonus(self):
        months = ["2023-11-01", "2023-12-01"] + JAN_TO_JUN
        amounts = [60.0, 61.0, 59.0, 60.0, 62.0, 58.0, 60.0, 180.0]
        sources = _make_sources(
            plan_history=[{"customer_id": "C1", "plan_id": "P1", "effective_from": "2023-11-01", "effective_to": None}],
            billing_lines=_monthly_base_lines(months=months, amounts=amounts),
        )
        output = BillingAnomalyPipeline(asof_month="2024-06", lookback_months=8).run(sources)

        assert len(output) == 1
        row = output.iloc[0]
        assert row["anomaly_reason"] == "BASE_PRORATION_MISMATCH"
        assert row["z_score_available"]
        assert row["z_score"] > 2.25
        assert row["confidence_score"] == pytest.approx(1.0)

    def test_failed_customer_is_isolated(self, monkeypatch):
        sources = _make_sources(
            customers=("C1", "C2"),
            plan_history=[
                {"customer_id": "C1", "plan_id": "P1", "effective_from": "2024-01-01", "effective_to": None},
                {"customer_id": "C2", "plan_id": "P1", "effective_from": "2024-01-01", "effective_to": None},
            ],
            billing_lines=_monthly_base_lines(customer_id="C2", months=["2024-06-01"]),
        )
        pipeline = BillingAnomalyPipeline(asof_month="2024-06", lookback_months=1)
        original = pipeline.stats_engine.compute_customer

        def failing_compute(customer_id, history):
            if customer_id == "C1":
                raise ValueError("corrupt history")
            return original(customer_id, history)

        monkeypatch.setattr(pipeline.stats_engine, "compute_customer", failing_compute)
        output = pipeline.run_reconciliation_only(sources)

        assert set(output["customer_id"]) == {"C2"}
        assert pipeline.data_quality_report.failed_customers == ["C1"]
        assert any(i.dataset == "pipeline" for i in pipeline.data_quality_report.issues)

    def test_overlap_warning_recorded(self):
        sources = _make_sources(
            plan_history=[
                {"customer_id": "C1", "plan_id": "P1", "effective_from": "2024-01-01", "effective_to": None},
                {"customer_id": "C1", "plan_id": "P1", "effective_from": "2024-06-10", "effective_to": None},
            ],
            billing_lines=_monthly_base_lines(months=["2024-06-01"]),
        )
        pipeline = BillingAnomalyPipeline(asof_month="2024-06", lookback_months=1)
        pipeline.run(sources)
        assert len(pipeline.data_quality_report.warnings) == 1

    def test_empty_input(self):
        sources = SourceTables.from_frames()
        output = BillingAnomalyPipeline(asof_month="2024-06", lookback_months=3).run(sources)
        assert output.empty
        assert list(output.columns) == OUTPUT_COLUMNS


# =============================================================================
# DRIFT MONITOR TESTS
# =============================================================================

def _comparison_frame(seed=0):
    rng = np.random.default_rng(seed)
    rows = []
    for month in ["2024-01-01", "2024-02-01", "2024-03-01", "2024-04-01", "2024-05-01"]:
        for i in range(20):
            flagged = i < 2
            rows.append({"bill_month": month, "is_flagged": flagged,
                         "anomaly_reason": "MISSING_BILL" if flagged else None,
                         "actual_total_charge": rng.normal(60, 2)})
    for _ in range(20):
        rows.append({"bill_month": "2024-06-01", "is_flagged": True,
                     "anomaly_reason": "OVER_BILLED", "actual_total_charge": rng.normal(150, 2)})
    return pd.DataFrame(rows)


class TestDriftMonitor:
    def test_drift_monitor_detects_shift(self):
        report = BillingDriftMonitor().run(_comparison_frame())

        alert_types = {a.alert_type for a in report.alerts}
        assert {"VOLUME", "AMOUNT_DISTRIBUTION", "REASON_MIX"}.issubset(alert_types)
        assert report.summary["total_alerts"] == len(report.alerts)
        assert report.comparison_window == "2024-06"

    def test_missing_columns_produce_no_alerts(self):
        report = BillingDriftMonitor().run(pd.DataFrame({"customer_id": ["C1"]}))
        assert report.alerts == []
        assert report.summary["total_alerts"] == 0

    def test_psi_computation(self):
        """PSI should be ~0 for identical distributions, >0 for shifted ones."""
        monitor = BillingDriftMonitor()
        rng = np.random.default_rng(42)

        baseline = rng.normal(100, 10, 500)
        same = rng.normal(100, 10, 500)
        psi_same = monitor._compute_psi(baseline, same)
        assert psi_same < 0.1

        shifted = rng.normal(150, 10, 500)
        psi_shifted = monitor._compute_psi(baseline, shifted)
        assert psi_shifted > psi_same


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    pytest.main([__file__, "-v"])
