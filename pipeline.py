"""
pipeline.py
------------
Main orchestration layer. Wires together:
    1. SourceValidator            →  quarantines malformed source rows
    2. Window + grid              →  customer x month analysis grid
    3. PlanCoverageResolver       →  prorated plan intervals per customer-month
    4. ExpectationComposer        →  expected base / usage / discount / tax
    5. ActualsAggregator          →  billed amounts + distinct bill count
    6. Reconciler + Classifier    →  ComparisonRecords with one anomaly reason
    7. HistoricalStatisticsEngine →  leave-current-out trailing z-scores
    8. ConfidenceScorer           →  capped confidence, filter, ranking
    9. Output serialization       →  flat DataFrame of flagged customer-months

This is the single entry point for running the engine. Everything else
is internal machinery.

Usage:
    from pipeline import BillingAnomalyPipeline

    pipeline = BillingAnomalyPipeline(asof_month="2024-06")
    results_df = pipeline.run(sources)
"""

import logging
from datetime import date
from typing import Dict, List, Optional, Tuple

import pandas as pd

from core.actuals import ActualsAggregator
from core.classifier import AnomalyClassifier
from core.expectations import ExpectationComposer
from core.history_stats import HistoricalStatisticsEngine
from core.models import AnomalyResult, ComparisonRecord, DataQualityReport, HistoryStats
from core.month_window import build_customer_month_grid, build_month_window
from core.plan_coverage import PlanCoverageResolver
from core.reconciliation import Reconciler
from core.scoring import ConfidenceScorer
from core.sources import SourceTables
from core.taxonomy import SeverityLookup
from core.validation import SourceValidator
from config.config_loader import get_reconciliation_config, get_run_config

logger = logging.getLogger(__name__)


OUTPUT_COLUMNS = [
    "customer_id", "bill_month",
    "expected_total_charge", "actual_total_charge",
    "pct_diff_pct", "is_unexpected_charge",
    "anomaly_reason", "z_score", "z_score_available", "confidence_score",
    "expected_base_charge", "actual_base",
    "expected_usage_charge", "actual_usage",
    "expected_discounts", "actual_discount",
    "expected_taxes_fees", "actual_taxes_fees",
    "bill_count",
    "pct_diff_base", "pct_diff_usage", "pct_diff_discount", "pct_diff_tax",
]

# Per-customer failures that are contained instead of aborting the batch
CONTAINED_ERRORS = (ValueError, TypeError, KeyError, ArithmeticError)


class BillingAnomalyPipeline:
    """
    End-to-end billing anomaly pipeline.

    Orchestrates validation → expectations/actuals → reconciliation →
    statistics → scoring without exposing internal objects to callers.
    """

    def __init__(
        self,
        asof_month=None,
        lookback_months: int | None = None,
        pct_tolerance: float | None = None,
        z_threshold: float | None = None,
        min_months_for_stats: int | None = None,
    ):
        """
        Args:
            asof_month: Override the as-of month from config (None = current month).
            lookback_months: Override the window length from config.
            pct_tolerance: Override the reconciliation tolerance from config.
            z_threshold: Override the z-score threshold from config.
            min_months_for_stats: Override the history gate from config.
        """
        run_cfg = get_run_config()
        self.asof_month = asof_month if asof_month is not None else run_cfg["asof_month"]
        self.lookback_months = lookback_months or run_cfg["lookback_months"]

        self.validator = SourceValidator()
        self.coverage_resolver = PlanCoverageResolver()
        self.composer = ExpectationComposer()
        self.aggregator = ActualsAggregator()
        self.reconciler = Reconciler()

        severities = SeverityLookup()
        self.classifier = AnomalyClassifier(pct_tolerance=pct_tolerance)
        self.stats_engine = HistoricalStatisticsEngine(min_months_for_stats=min_months_for_stats)
        self.scorer = ConfidenceScorer(z_threshold=z_threshold, severity_lookup=severities)
        self.unexpected_charge_pct = get_reconciliation_config()["unexpected_charge_pct"]

        self.data_quality_report = DataQualityReport()

        logger.info(
            f"Pipeline initialized. "
            f"As-of: {self.asof_month or 'current month'}. "
            f"Lookback: {self.lookback_months} months. "
            f"Rules: {[r.reason.value for r in self.classifier.rules]}."
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(self, sources: SourceTables) -> pd.DataFrame:
        """
        Run the full pipeline.

        Args:
            sources: Snapshot of the seven source datasets.

        Returns:
            DataFrame of flagged customer-months in triage order.
        """
        results = self._run_stages(sources)
        return self._ranked_output(results)

    def run_reconciliation_only(self, sources: SourceTables) -> pd.DataFrame:
        """
        Every compared customer-month (flagged or not), with reasons,
        z-scores and confidence. Useful for debugging and drift monitoring.
        """
        results = self._run_stages(sources)
        return self._reconciliation_output(results)

    def run_with_reconciliation(self, sources: SourceTables) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Both outputs from a single pass over the sources.

        Returns:
            (ranked flagged customer-months, every compared customer-month).
            data_quality_report describes this one pass.
        """
        results = self._run_stages(sources)
        return self._ranked_output(results), self._reconciliation_output(results)

    # -------------------------------------------------------------------------
    # INTERNAL: STAGES
    # -------------------------------------------------------------------------

    def _run_stages(self, sources: SourceTables) -> List[AnomalyResult]:
        logger.info(f"Pipeline starting. Input rows: {sources.row_counts()}.")

        # --- Stage 0: Validation ---
        clean, report = self.validator.validate(sources)
        self.data_quality_report = report

        # --- Stage 1-2: Window and grid ---
        months = build_month_window(self.asof_month, self.lookback_months)
        grid = build_customer_month_grid(clean.customers, months)
        logger.info(
            f"Window {months[0]:%Y-%m} to {months[-1]:%Y-%m}. Grid: {len(grid):,} customer-months."
        )

        # --- Stage 3: Plan coverage ---
        coverage = self.coverage_resolver.resolve(grid, clean.plan_history, clean.plans)
        overlaps = self.coverage_resolver.detect_overlaps(coverage)
        for row in overlaps.itertuples(index=False):
            report.warnings.append(
                f"customer {row.customer_id} {pd.Timestamp(row.bill_month):%Y-%m}: "
                f"{row.plan_count} overlapping plan intervals"
            )
        logger.info(f"Stage 3 complete. Coverage rows: {len(coverage):,}.")

        # --- Stage 4-5: Expectations and actuals ---
        expectations = self.composer.compose(grid, coverage, clean.usage, clean.discounts, clean.taxes_fees)
        actuals = self.aggregator.aggregate(clean.billing_lines, months)
        history = self.aggregator.monthly_totals(clean.billing_lines, months[-1])
        logger.info(f"Stage 5 complete. Billed customer-months in window: {len(actuals):,}.")

        # --- Stage 6: Reconciliation ---
        comparisons = self.reconciler.compare(expectations, actuals)
        logger.info(f"Stage 6 complete. Comparison rows: {len(comparisons):,}.")

        # --- Stage 7-8: Per-customer classification, statistics, scoring ---
        results = self._score_by_customer(comparisons, self.stats_engine.group_totals(history), report)
        logger.info(
            f"Stage 8 complete. Scored: {len(results):,}. "
            f"Failed customers: {len(report.failed_customers):,}."
        )
        return results

    def _score_by_customer(
        self,
        comparisons: List[ComparisonRecord],
        history: Dict[str, List[Tuple[date, float]]],
        report: DataQualityReport,
    ) -> List[AnomalyResult]:
        """
        Classifies, computes statistics and scores one customer at a time.
        A failure is contained to its customer: logged, recorded in the
        report, and the customer's months are left out of the results.
        """
        by_customer: Dict[str, List[ComparisonRecord]] = {}
        for record in comparisons:
            by_customer.setdefault(record.customer_id, []).append(record)

        results: List[AnomalyResult] = []
        for customer_id, records in by_customer.items():
            try:
                results.extend(self._score_customer(customer_id, records, history.get(customer_id, [])))
            except CONTAINED_ERRORS as exc:
                logger.exception(f"Customer {customer_id} skipped: {exc}")
                report.failed_customers.append(customer_id)
                report.add_issue("pipeline", customer_id, f"{type(exc).__name__}: {exc}")

        return results

    def _score_customer(
        self, customer_id: str, records: List[ComparisonRecord], history: List[Tuple[date, float]]
    ) -> List[AnomalyResult]:
        stats_by_month: Dict[date, HistoryStats] = self.stats_engine.compute_customer(customer_id, history)
        scored = []
        for record in records:
            labelled = self.classifier.classify(record)
            # Months without billing lines have no statistics
            stats: Optional[HistoryStats] = stats_by_month.get(record.bill_month)
            scored.append(self.scorer.score(labelled, stats))
        return scored

    # -------------------------------------------------------------------------
    # INTERNAL: OUTPUT SERIALIZATION
    # -------------------------------------------------------------------------

    def _ranked_output(self, results: List[AnomalyResult]) -> pd.DataFrame:
        ranked = self.scorer.rank(results)
        output_df = self._serialize_results(ranked)
        logger.info(f"Pipeline complete. Flagged customer-months: {len(output_df):,}.")
        return output_df

    def _reconciliation_output(self, results: List[AnomalyResult]) -> pd.DataFrame:
        ordered = sorted(results, key=lambda r: (r.comparison.customer_id, r.comparison.bill_month))
        output_df = self._serialize_results(ordered)
        output_df["is_flagged"] = [r.is_flagged for r in ordered]
        return output_df

    def _serialize_results(self, results: List[AnomalyResult]) -> pd.DataFrame:
        """
        Converts AnomalyResult objects to a flat DataFrame. Amounts are
        rounded to 2 decimals here and nowhere earlier.
        """
        if not results:
            return pd.DataFrame(columns=OUTPUT_COLUMNS)

        rows = []
        for r in results:
            c = r.comparison
            pct_diff = c.pct_diff
            if pct_diff is None:
                pct_diff_pct = self.unexpected_charge_pct
            else:
                pct_diff_pct = round(pct_diff * 100, 2)

            rows.append({
                "customer_id": c.customer_id,
                "bill_month": c.bill_month.strftime("%Y-%m-%d"),
                "expected_total_charge": round(c.expected.total, 2),
                "actual_total_charge": round(c.actual.total, 2),
                "pct_diff_pct": pct_diff_pct,
                "is_unexpected_charge": c.is_unexpected_charge,
                "anomaly_reason": c.anomaly_reason.value if c.anomaly_reason is not None else None,
                "z_score": round(r.z_score, 2) if r.z_score is not None else 0.0,
                "z_score_available": r.z_score is not None,
                "confidence_score": round(r.confidence_score, 2),
                "expected_base_charge": round(c.expected.base, 2),
                "actual_base": round(c.actual.base, 2),
                "expected_usage_charge": round(c.expected.usage, 2),
                "actual_usage": round(c.actual.usage, 2),
                "expected_discounts": round(c.expected.discount, 2),
                "actual_discount": round(c.actual.discount, 2),
                "expected_taxes_fees": round(c.expected.tax_fee, 2),
                "actual_taxes_fees": round(c.actual.tax_fee, 2),
                "bill_count": c.actual.bill_count,
                "pct_diff_base": _pct_or_none(c.component_pct_diff("base")),
                "pct_diff_usage": _pct_or_none(c.component_pct_diff("usage")),
                "pct_diff_discount": _pct_or_none(c.component_pct_diff("discount")),
                "pct_diff_tax": _pct_or_none(c.component_pct_diff("tax_fee")),
            })

        return pd.DataFrame(rows, columns=OUTPUT_COLUMNS)


def _pct_or_none(value: Optional[float]) -> Optional[float]:
    return round(value * 100, 2) if value is not None else None
