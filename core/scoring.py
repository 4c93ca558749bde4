"""
scoring.py
-----------
Confidence Scorer & Output Filter.

    confidence = min(severity(reason) + bonus, max_score)
    bonus      = z_bonus when the z-score is present and |z| >= z_threshold

A row is flagged when it has an anomaly reason OR an extreme z-score.
Flagged rows are ranked by confidence desc, |z| desc (absent = 0),
bill month desc, then customer id for a total order.
"""

from typing import List, Optional

from core.models import AnomalyResult, ComparisonRecord, HistoryStats
from core.taxonomy import SeverityLookup
from config.config_loader import get_confidence_config


class ConfidenceScorer:
    """
    Usage:
        scorer = ConfidenceScorer(z_threshold=2.25)
        result = scorer.score(comparison, stats)
        ranked = scorer.rank(results)
    """

    def __init__(self, z_threshold: float | None = None, severity_lookup: SeverityLookup | None = None):
        self.config = get_confidence_config()
        self.z_threshold = z_threshold if z_threshold is not None else self.config["z_threshold"]
        self.z_bonus = self.config["z_bonus"]
        self.max_score = self.config["max_score"]
        self.severities = severity_lookup or SeverityLookup()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def is_extreme(self, z_score: Optional[float]) -> bool:
        return z_score is not None and abs(z_score) >= self.z_threshold

    def score(self, comparison: ComparisonRecord, stats: Optional[HistoryStats]) -> AnomalyResult:
        z_score = stats.z_score if stats is not None else None
        extreme = self.is_extreme(z_score)

        base = self.severities.get_severity(comparison.anomaly_reason)
        bonus = self.z_bonus if extreme else 0.0
        confidence = min(base + bonus, self.max_score)

        return AnomalyResult(
            comparison=comparison,
            stats=stats,
            base_severity=base,
            z_bonus=bonus,
            confidence_score=confidence,
            is_flagged=comparison.anomaly_reason is not None or extreme,
        )

    @staticmethod
    def rank(results: List[AnomalyResult]) -> List[AnomalyResult]:
        """Flagged results only, in triage order."""
        flagged = [r for r in results if r.is_flagged]
        # Stable sorts, least significant key first
        flagged.sort(key=lambda r: r.comparison.customer_id)
        flagged.sort(
            key=lambda r: (r.confidence_score, r.abs_z_score, r.comparison.bill_month),
            reverse=True,
        )
        return flagged
