"""
taxonomy.py
------------
Anomaly reason taxonomy and severity lookup layer.

AnomalyReason is the closed set of labels the classification cascade can
assign. Severities are loaded from the anomaly_severity table in config.yaml
and indexed by reason, linking rule outcomes to the confidence
score.

Severity updates happen in config.yaml, not in code.
"""

from enum import Enum
from typing import Dict, Optional

from config.config_loader import get_anomaly_severity_table


class AnomalyReason(str, Enum):
    """Closed enumeration of anomaly reasons, in cascade priority order."""

    MISSING_BILL = "MISSING_BILL"
    DUPLICATE_BILL = "DUPLICATE_BILL"
    UNEXPECTED_BILL = "UNEXPECTED_BILL"
    ALLOWANCE_MISMATCH = "ALLOWANCE_MISMATCH"
    BASE_PRORATION_MISMATCH = "BASE_PRORATION_MISMATCH"
    USAGE_MISMATCH = "USAGE_MISMATCH"
    DISCOUNT_MISMATCH = "DISCOUNT_MISMATCH"
    TAX_FEE_MISMATCH = "TAX_FEE_MISMATCH"
    OVER_BILLED = "OVER_BILLED"
    UNDER_BILLED = "UNDER_BILLED"


# Billing line_type -> actual charge bucket. tax and fee share one bucket.
LINE_TYPE_BUCKETS: Dict[str, str] = {
    "base": "actual_base",
    "usage": "actual_usage",
    "discount": "actual_discount",
    "tax": "actual_taxes_fees",
    "fee": "actual_taxes_fees",
    "other": "actual_other",
}


class SeverityLookup:
    """
    Lookup from AnomalyReason → base severity + description.

    Built once at init from the config severity table. Thread-safe for reads.
    """

    def __init__(self):
        self._index: Dict[AnomalyReason, Dict] = {}
        self._load_table()

    def _load_table(self) -> None:
        """Builds the lookup index from config."""
        for entry in get_anomaly_severity_table():
            try:
                reason = AnomalyReason(entry["reason"])
            except ValueError:
                raise KeyError(
                    f"Unknown anomaly reason in severity table: '{entry['reason']}'. "
                    f"Available: {[r.value for r in AnomalyReason]}"
                )
            # If duplicate keys exist, keep the higher severity entry
            if reason in self._index and entry["severity"] <= self._index[reason]["severity"]:
                continue
            self._index[reason] = entry

        missing = [r.value for r in AnomalyReason if r not in self._index]
        if missing:
            raise KeyError(f"Severity table has no entry for: {missing}")

    def lookup(self, reason: Optional[AnomalyReason]) -> Optional[Dict]:
        """Returns the config entry for a reason, or None for no reason."""
        if reason is None:
            return None
        return self._index.get(AnomalyReason(reason))

    def get_severity(self, reason: Optional[AnomalyReason]) -> float:
        """Returns the base severity, or 0.0 when no reason was assigned."""
        entry = self.lookup(reason)
        return float(entry["severity"]) if entry else 0.0

    def get_description(self, reason: Optional[AnomalyReason]) -> str:
        entry = self.lookup(reason)
        return entry.get("description", "") if entry else ""

    def __len__(self) -> int:
        return len(self._index)

    def __repr__(self) -> str:
        return f"SeverityLookup(entries={len(self)})"
