"""
drift_monitor.py
------------------
Run-level drift monitoring for the billing anomaly engine.

Compares the as-of month against the preceding baseline months of a
reconciliation frame (output of BillingAnomalyPipeline.run_reconciliation_only):
    1. Flagged volume: is the share of flagged customer-months shifting?
    2. Billed amount distribution: has the actual total distribution moved?
    3. Reason mix: is one anomaly reason taking a larger share than usual?

Methods:
    - KS test (Kolmogorov-Smirnov): detects distributional shifts in billed
      totals between the baseline months and the as-of month.
    - PSI (Population Stability Index): quantifies how much a distribution
      has shifted. Usual thresholds: <0.1 = stable, 0.1-0.25 = minor shift,
      >0.25 = major shift.

All thresholds and window sizes come from config.yaml.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from config.config_loader import get_drift_monitoring_config

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = {"bill_month", "is_flagged"}


@dataclass
class DriftAlert:
    """A single drift detection alert."""
    alert_type: str                  # "VOLUME" | "AMOUNT_DISTRIBUTION" | "REASON_MIX"
    severity: str                    # "INFO" | "WARNING" | "CRITICAL"
    anomaly_reason: str              # Which reason (or "ALL")
    metric_name: str                 # e.g. "flagged_rate_ratio", "ks_p_value"
    metric_value: float
    threshold: float
    message: str
    detected_at: str = ""            # ISO timestamp


@dataclass
class DriftReport:
    """Full drift monitoring report, one per run."""
    run_timestamp: str
    baseline_window: str             # e.g. "2024-01 to 2024-05"
    comparison_window: str           # e.g. "2024-06"
    alerts: List[DriftAlert] = field(default_factory=list)
    summary: dict = field(default_factory=dict)


class BillingDriftMonitor:
    """
    Monitors reconciliation output for drift between runs.

    Usage:
        monitor = BillingDriftMonitor()
        report = monitor.run(comparisons_df)
    """

    def __init__(self):
        self.config = get_drift_monitoring_config()
        self.ks_alpha = self.config["ks_alpha"]
        self.psi_minor = self.config["psi_minor"]
        self.psi_major = self.config["psi_major"]
        self.baseline_months = self.config["baseline_months"]
        self.min_baseline_samples = self.config["min_baseline_samples"]
        self.min_comparison_samples = self.config["min_comparison_samples"]
        self.volume_ratio_warning = self.config["volume_ratio_warning"]
        self.volume_ratio_critical = self.config["volume_ratio_critical"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(self, comparisons_df: pd.DataFrame, asof_month=None) -> DriftReport:
        """
        Run full drift monitoring suite.

        Args:
            comparisons_df: Every compared customer-month. Must have columns
                bill_month and is_flagged; actual_total_charge and
                anomaly_reason enable the amount and reason-mix checks.
            asof_month: Month to compare against the baseline. Defaults to the
                latest bill_month in the frame.

        Returns:
            DriftReport with all alerts and summary metrics.
        """
        now = pd.Timestamp.now()
        alerts: List[DriftAlert] = []

        df = self._prepare(comparisons_df)
        if df is None:
            logger.info("Drift monitor skipped: missing columns or no rows.")
            return self._report(now, "n/a", "n/a", alerts)

        comparison_month = (
            pd.Timestamp(asof_month).to_period("M").to_timestamp()
            if asof_month is not None else df["bill_month"].max()
        )
        baseline_start = comparison_month - pd.DateOffset(months=self.baseline_months)

        baseline = df[(df["bill_month"] >= baseline_start) & (df["bill_month"] < comparison_month)]
        comparison = df[df["bill_month"] == comparison_month]

        # --- 1. Volume drift ---
        alerts.extend(self._check_volume_drift(baseline, comparison, now))

        # --- 2. Amount distribution drift ---
        alerts.extend(self._check_amount_drift(baseline, comparison, now))

        # --- 3. Reason mix drift ---
        alerts.extend(self._check_reason_mix(baseline, comparison, now))

        last_baseline = comparison_month - pd.DateOffset(months=1)
        return self._report(
            now,
            f"{baseline_start:%Y-%m} to {last_baseline:%Y-%m}",
            f"{comparison_month:%Y-%m}",
            alerts,
        )

    # -------------------------------------------------------------------------
    # INTERNAL: PREPARATION
    # -------------------------------------------------------------------------

    @staticmethod
    def _prepare(comparisons_df: pd.DataFrame) -> Optional[pd.DataFrame]:
        if comparisons_df.empty or not REQUIRED_COLUMNS.issubset(comparisons_df.columns):
            return None
        df = comparisons_df.copy()
        df["bill_month"] = pd.to_datetime(df["bill_month"]).dt.to_period("M").dt.to_timestamp()
        df["is_flagged"] = df["is_flagged"].astype(bool)
        return df

    @staticmethod
    def _report(now, baseline_window: str, comparison_window: str, alerts: List[DriftAlert]) -> DriftReport:
        summary = {
            "total_alerts": len(alerts),
            "critical_alerts": sum(1 for a in alerts if a.severity == "CRITICAL"),
            "warning_alerts": sum(1 for a in alerts if a.severity == "WARNING"),
            "info_alerts": sum(1 for a in alerts if a.severity == "INFO"),
        }
        return DriftReport(
            run_timestamp=now.isoformat(),
            baseline_window=baseline_window,
            comparison_window=comparison_window,
            alerts=alerts,
            summary=summary,
        )

    # -------------------------------------------------------------------------
    # INTERNAL: VOLUME DRIFT
    # -------------------------------------------------------------------------

    def _check_volume_drift(self, baseline: pd.DataFrame, comparison: pd.DataFrame, now) -> List[DriftAlert]:
        """
        Compares the flagged share of customer-months. Shares rather than
        counts keep windows of different length comparable.
        """
        alerts = []
        if len(baseline) < self.min_baseline_samples or len(comparison) < self.min_comparison_samples:
            return alerts

        baseline_rate = baseline["is_flagged"].mean()
        comparison_rate = comparison["is_flagged"].mean()
        if baseline_rate == 0:
            return alerts  # No flagged baseline to compare against

        ratio = comparison_rate / baseline_rate
        low_warning = 1 / self.volume_ratio_warning
        low_critical = 1 / self.volume_ratio_critical

        if ratio > self.volume_ratio_warning or ratio < low_warning:
            critical = ratio > self.volume_ratio_critical or ratio < low_critical
            alerts.append(DriftAlert(
                alert_type="VOLUME",
                severity="CRITICAL" if critical else "WARNING",
                anomaly_reason="ALL",
                metric_name="flagged_rate_ratio",
                metric_value=round(float(ratio), 3),
                threshold=self.volume_ratio_critical if critical else self.volume_ratio_warning,
                message=(
                    f"Flagged share changed by {((ratio - 1) * 100):+.0f}%. "
                    f"Baseline: {baseline_rate:.1%}, Current: {comparison_rate:.1%}."
                ),
                detected_at=now.isoformat(),
            ))

        return alerts

    # -------------------------------------------------------------------------
    # INTERNAL: AMOUNT DISTRIBUTION DRIFT
    # -------------------------------------------------------------------------

    def _check_amount_drift(self, baseline: pd.DataFrame, comparison: pd.DataFrame, now) -> List[DriftAlert]:
        """KS test + PSI on billed totals between baseline and as-of month."""
        alerts = []
        if "actual_total_charge" not in baseline.columns:
            return alerts

        baseline_amounts = baseline["actual_total_charge"].dropna().to_numpy(dtype=float)
        comparison_amounts = comparison["actual_total_charge"].dropna().to_numpy(dtype=float)

        # Need minimum samples for meaningful tests
        if len(baseline_amounts) < self.min_baseline_samples or len(comparison_amounts) < self.min_comparison_samples:
            return alerts

        # --- KS Test ---
        ks_stat, ks_pvalue = stats.ks_2samp(baseline_amounts, comparison_amounts)
        if ks_pvalue < self.ks_alpha:
            alerts.append(DriftAlert(
                alert_type="AMOUNT_DISTRIBUTION",
                severity="WARNING",
                anomaly_reason="ALL",
                metric_name="ks_p_value",
                metric_value=round(float(ks_pvalue), 4),
                threshold=self.ks_alpha,
                message=(
                    f"Billed total distribution shift detected. "
                    f"KS statistic={ks_stat:.3f}, p-value={ks_pvalue:.4f}."
                ),
                detected_at=now.isoformat(),
            ))

        # --- PSI ---
        psi = self._compute_psi(baseline_amounts, comparison_amounts)
        if psi > self.psi_minor:
            severity = "CRITICAL" if psi > self.psi_major else "WARNING"
            alerts.append(DriftAlert(
                alert_type="AMOUNT_DISTRIBUTION",
                severity=severity,
                anomaly_reason="ALL",
                metric_name="psi",
                metric_value=round(psi, 4),
                threshold=self.psi_major if severity == "CRITICAL" else self.psi_minor,
                message=(
                    f"PSI={psi:.3f} on billed totals. "
                    f"({'Major' if severity == 'CRITICAL' else 'Minor'} distribution shift.)"
                ),
                detected_at=now.isoformat(),
            ))

        return alerts

    # -------------------------------------------------------------------------
    # INTERNAL: REASON MIX
    # -------------------------------------------------------------------------

    def _check_reason_mix(self, baseline: pd.DataFrame, comparison: pd.DataFrame, now) -> List[DriftAlert]:
        """
        Flags reasons whose share of all compared customer-months in the
        as-of month exceeds their baseline share by more than psi_minor.
        A jump larger than psi_major is a WARNING, otherwise INFO.
        """
        alerts = []
        if "anomaly_reason" not in baseline.columns:
            return alerts
        if len(baseline) < self.min_baseline_samples or len(comparison) < self.min_comparison_samples:
            return alerts

        baseline_share = baseline["anomaly_reason"].value_counts() / len(baseline)
        comparison_share = comparison["anomaly_reason"].value_counts() / len(comparison)

        for reason, share in comparison_share.items():
            increase = share - baseline_share.get(reason, 0.0)
            if increase <= self.psi_minor:
                continue
            severity = "WARNING" if increase > self.psi_major else "INFO"
            alerts.append(DriftAlert(
                alert_type="REASON_MIX",
                severity=severity,
                anomaly_reason=str(reason),
                metric_name="share_increase",
                metric_value=round(float(increase), 4),
                threshold=self.psi_major if severity == "WARNING" else self.psi_minor,
                message=(
                    f"{reason} share rose to {share:.1%} "
                    f"from {baseline_share.get(reason, 0.0):.1%} in the baseline."
                ),
                detected_at=now.isoformat(),
            ))

        return alerts

    # -------------------------------------------------------------------------
    # INTERNAL: PSI CALCULATION
    # -------------------------------------------------------------------------

    @staticmethod
    def _compute_psi(baseline: np.ndarray, comparison: np.ndarray, n_bins: int = 10) -> float:
        """
        Computes Population Stability Index between two distributions.

        PSI = Σ (P_actual - P_expected) * ln(P_actual / P_expected)

        Bin edges come from baseline percentiles; comparison values outside
        the baseline range fall into the outer bins.
        """
        bin_edges = np.unique(np.percentile(baseline, np.linspace(0, 100, n_bins + 1)))
        if len(bin_edges) < 3:
            return 0.0  # Not enough variation to compute PSI

        comparison = np.clip(comparison, bin_edges[0], bin_edges[-1])

        baseline_counts, _ = np.histogram(baseline, bins=bin_edges)
        comparison_counts, _ = np.histogram(comparison, bins=bin_edges)

        # Small epsilon to avoid log(0)
        eps = 1e-6
        baseline_freq = (baseline_counts + eps) / (baseline_counts.sum() + eps * len(baseline_counts))
        comparison_freq = (comparison_counts + eps) / (comparison_counts.sum() + eps * len(comparison_counts))

        psi = np.sum((comparison_freq - baseline_freq) * np.log(comparison_freq / baseline_freq))
        return float(psi)
