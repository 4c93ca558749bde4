"""
main.py
--------
Entry point for the Billing Anomaly Engine.

Reads the seven source CSVs from a data directory, runs the full
reconciliation pipeline, and writes output to the outputs/ folder.

Usage (from the project root):
    python main.py

    # With optional arguments:
    python main.py --data-dir path/to/data
    python main.py --asof-month 2024-06 --lookback 12
    python main.py --tolerance 0.10 --z-threshold 3.0
"""

import sys
import os
import argparse
import logging
import pandas as pd
from datetime import datetime

# Ensure project root is on path (for VS Code runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from pipeline import BillingAnomalyPipeline
from core.models import DataQualityReport
from core.sources import load_sources
from core.taxonomy import AnomalyReason, SeverityLookup
from monitoring.drift_monitor import BillingDriftMonitor


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Billing Anomaly Engine: reconcile expected vs. billed telecom charges."
    )
    parser.add_argument(
        "--data-dir", type=str, default=None,
        help="Directory holding the seven source CSVs. Defaults to data/ in project root."
    )
    parser.add_argument(
        "--asof-month", type=str, default=None,
        help="Last month of the analysis window (YYYY-MM). Defaults to config value, else current month."
    )
    parser.add_argument(
        "--lookback", type=int, default=None,
        help="Window length in months. Defaults to config value (12)."
    )
    parser.add_argument(
        "--tolerance", type=float, default=None,
        help="Relative reconciliation tolerance. Defaults to config value (0.12)."
    )
    parser.add_argument(
        "--z-threshold", type=float, default=None,
        help="|z| at or above which the statistical bonus applies. Defaults to config value (2.25)."
    )
    parser.add_argument(
        "--min-months", type=int, default=None,
        help="Prior billed months required for a z-score. Defaults to config value (5)."
    )
    parser.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )
    parser.add_argument(
        "--run-drift-monitor", action="store_true", default=False,
        help="Also run drift monitoring and output a drift report."
    )
    return parser.parse_args()


# =============================================================================
# MAIN
# =============================================================================

def main():
    args = parse_args()

    # --- Resolve paths ---
    data_dir = args.data_dir or os.path.join(PROJECT_ROOT, "data")
    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    # --- Load sources ---
    logger.info(f"Loading source datasets from: {data_dir}")
    if not os.path.isdir(data_dir):
        logger.error(f"Data directory not found: {data_dir}")
        sys.exit(1)
    try:
        sources = load_sources(data_dir)
    except FileNotFoundError as exc:
        logger.error(str(exc))
        sys.exit(1)

    # --- Run pipeline ---
    logger.info("Initializing pipeline...")
    pipeline = BillingAnomalyPipeline(
        asof_month=args.asof_month,
        lookback_months=args.lookback,
        pct_tolerance=args.tolerance,
        z_threshold=args.z_threshold,
        min_months_for_stats=args.min_months,
    )

    logger.info("Running reconciliation pipeline...")
    if args.run_drift_monitor:
        anomalies, comparisons = pipeline.run_with_reconciliation(sources)
    else:
        anomalies = pipeline.run(sources)
    report = pipeline.data_quality_report
    logger.info(f"Flagged customer-months: {len(anomalies):,}.")

    # --- Output: Anomalies + data quality ---
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    anomalies_path = os.path.join(output_dir, f"anomalies_{timestamp}.csv")
    anomalies.to_csv(anomalies_path, index=False)
    logger.info(f"Anomalies saved to: {anomalies_path}")

    quality_path = os.path.join(output_dir, f"data_quality_{timestamp}.csv")
    _data_quality_frame(report).to_csv(quality_path, index=False)
    logger.info(
        f"Data quality report saved to: {quality_path} "
        f"({report.quarantined_rows:,} quarantined rows, {len(report.failed_customers):,} failed customers)"
    )

    # --- Print summary ---
    _print_summary(anomalies)

    # --- Optional: Drift Monitoring ---
    if args.run_drift_monitor:
        logger.info("Running drift monitor...")
        monitor = BillingDriftMonitor()
        drift = monitor.run(comparisons)

        logger.info(f"Drift Report: {drift.summary}")
        for alert in drift.alerts:
            level = {"CRITICAL": logging.ERROR, "WARNING": logging.WARNING}.get(alert.severity, logging.INFO)
            logger.log(level, f"[{alert.alert_type}] {alert.severity}: {alert.message}")

        # Save drift report
        drift_path = os.path.join(output_dir, f"drift_report_{timestamp}.csv")
        if drift.alerts:
            drift_rows = [
                {
                    "alert_type": a.alert_type,
                    "severity": a.severity,
                    "anomaly_reason": a.anomaly_reason,
                    "metric_name": a.metric_name,
                    "metric_value": a.metric_value,
                    "threshold": a.threshold,
                    "message": a.message,
                    "detected_at": a.detected_at,
                }
                for a in drift.alerts
            ]
            pd.DataFrame(drift_rows).to_csv(drift_path, index=False)
            logger.info(f"Drift report saved to: {drift_path}")
        else:
            logger.info("No drift alerts detected.")


def _data_quality_frame(report: DataQualityReport) -> pd.DataFrame:
    rows = [
        {"dataset": i.dataset, "record_ref": i.record_ref, "reason": i.reason, "level": "ERROR"}
        for i in report.issues
    ]
    rows.extend({"dataset": "plan_history", "record_ref": "", "reason": w, "level": "WARNING"} for w in report.warnings)
    return pd.DataFrame(rows, columns=["dataset", "record_ref", "reason", "level"])


def _print_summary(df: pd.DataFrame):
    """Prints a clean summary table to the console."""
    if df.empty:
        print("\n  No anomalies to display.\n")
        return

    print("\n" + "=" * 80)
    print("  BILLING ANOMALY SUMMARY")
    print("=" * 80)

    # By anomaly reason
    print("\n  Flagged Customer-Months by Reason:")
    print("  " + "-" * 60)
    severities = SeverityLookup()
    reasons = df["anomaly_reason"].fillna("Z_SCORE_ONLY")
    for reason in reasons.unique():
        subset = df[reasons == reason]
        with_z = subset["z_score_available"].sum()
        print(f"    {reason:30s}  {len(subset):>5,} rows  (with z-score: {with_z})")
        if reason != "Z_SCORE_ONLY":
            print(f"      {severities.get_description(AnomalyReason(reason))}")

    # By confidence band
    print(f"\n  Confidence Mix:")
    print("  " + "-" * 60)
    bands = [("1.00", df["confidence_score"] >= 1.0),
             (">= 0.80", (df["confidence_score"] >= 0.8) & (df["confidence_score"] < 1.0)),
             ("< 0.80", df["confidence_score"] < 0.8)]
    for label, mask in bands:
        count = mask.sum()
        pct = (count / len(df) * 100) if len(df) > 0 else 0
        print(f"    {label:10s}  {count:>5,}  ({pct:.1f}%)")

    # Coverage
    customers_flagged = df["customer_id"].nunique()
    print(f"\n  Customers with flagged months: {customers_flagged:,}")
    print("=" * 80 + "\n")


if __name__ == "__main__":
    main()
